"""
Embedding generation and caching.

Usage:
    from polystore.embeddings import EmbeddingGenerator
    embeddings = EmbeddingGenerator.from_config(get_config())
    vector = await embeddings.generate("some text")
"""

from .cache import EmbeddingCache, get_embedding_cache, reset_embedding_cache
from .generator import EmbeddingGenerator

__all__ = [
    "EmbeddingCache",
    "EmbeddingGenerator",
    "get_embedding_cache",
    "reset_embedding_cache",
]
