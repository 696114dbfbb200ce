"""
polystore: one repository contract over a document store (MongoDB), a graph
store (Memgraph) and a key-value store (Redis), with vector similarity
search and embedding generation.
"""

from polystore.errors import (
    BackendOperationError,
    ModelNotRegistered,
    NotConnected,
    NotInitialized,
    PolystoreError,
)
from polystore.models import (
    BackendKind,
    FindOptions,
    ModelSchema,
    ProviderOptions,
    SortOrder,
    VectorSearchOptions,
    VectorSearchResult,
)
from polystore.query import Filter
from polystore.storage import StorageService, supports_vector_search

__all__ = [
    "BackendKind",
    "BackendOperationError",
    "Filter",
    "FindOptions",
    "ModelNotRegistered",
    "ModelSchema",
    "NotConnected",
    "NotInitialized",
    "PolystoreError",
    "ProviderOptions",
    "SortOrder",
    "StorageService",
    "VectorSearchOptions",
    "VectorSearchResult",
    "supports_vector_search",
]
