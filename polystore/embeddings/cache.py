"""
EmbeddingCache: content-hash -> (vector, created_at) with a fixed TTL.

Keys hash a bounded prefix of the text so key size never grows with the
input. Eviction is lazy: a stale entry is dropped when it is read, there is
no background sweep. The cache is unbounded unless max_entries is given, in
which case the least recently used entry is evicted first.
"""

from __future__ import annotations

import hashlib
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 24 * 60 * 60
DEFAULT_PREFIX_LENGTH = 100


@dataclass
class CacheEntry:
    vector: list[float]
    created_at: float


class EmbeddingCache:
    """In-memory embedding cache with lazy TTL eviction."""

    def __init__(
        self,
        ttl: float = DEFAULT_TTL_SECONDS,
        prefix_length: int = DEFAULT_PREFIX_LENGTH,
        max_entries: int | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl = ttl
        self.prefix_length = prefix_length
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()

    def key_for(self, text: str) -> str:
        digest = hashlib.sha256(text[: self.prefix_length].encode("utf-8")).hexdigest()
        return f"emb_{digest}"

    def get(self, text: str) -> list[float] | None:
        """Return the cached vector, or None on a miss or a stale entry."""
        key = self.key_for(text)
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.created_at >= self.ttl:
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return list(entry.vector)

    def set(self, text: str, vector: list[float]):
        key = self.key_for(text)
        self._entries[key] = CacheEntry(vector=list(vector), created_at=self._clock())
        self._entries.move_to_end(key)
        if self.max_entries is not None:
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def clear(self):
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


# ---------------------------------------------------------------------------
# Process-wide instance
# ---------------------------------------------------------------------------

_cache: EmbeddingCache | None = None


def get_embedding_cache() -> EmbeddingCache:
    """Return the process-wide cache, creating it from config on first use."""
    global _cache
    if _cache is None:
        from polystore.config import embedding_settings, get_config

        try:
            settings = embedding_settings(get_config())
        except FileNotFoundError:
            settings = embedding_settings({})
        _cache = EmbeddingCache(
            ttl=settings["cache_ttl"],
            prefix_length=settings["cache_prefix_length"],
            max_entries=settings["cache_max_entries"],
        )
        logger.debug("Embedding cache initialised (ttl=%ss)", settings["cache_ttl"])
    return _cache


def reset_embedding_cache():
    """Forget the process-wide cache (the next get_embedding_cache() builds a new one)."""
    global _cache
    _cache = None
