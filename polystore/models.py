"""
Data models shared by every backend.
These define the shape of data flowing between callers, repositories and
providers. Records themselves stay plain dicts: backends own the data, and
in-process values are transient copies.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping
from uuid import uuid4

from polystore.errors import InvalidQuery, UnknownBackend

Record = dict[str, Any]
EmbeddingVector = list[float]

DEFAULT_FIND_LIMIT = 1000


def new_id() -> str:
    return uuid4().hex


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class BackendKind(str, enum.Enum):
    """Closed set of backend kinds a StorageService can be built over."""
    MONGODB = "mongodb"
    MEMGRAPH = "memgraph"
    REDIS = "redis"

    @classmethod
    def parse(cls, value: "BackendKind | str") -> "BackendKind":
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower()
        kind = _KIND_ALIASES.get(key)
        if kind is None:
            available = ", ".join(k.value for k in cls)
            raise UnknownBackend(f"Unknown storage backend: '{value}'. Available: {available}")
        return kind


_KIND_ALIASES = {
    "mongodb": BackendKind.MONGODB,
    "mongo": BackendKind.MONGODB,
    "document": BackendKind.MONGODB,
    "memgraph": BackendKind.MEMGRAPH,
    "neo4j": BackendKind.MEMGRAPH,
    "graph": BackendKind.MEMGRAPH,
    "redis": BackendKind.REDIS,
    "kv": BackendKind.REDIS,
    "key-value": BackendKind.REDIS,
}


class SortOrder(enum.IntEnum):
    ASC = 1
    DESC = -1

    @classmethod
    def parse(cls, value) -> "SortOrder":
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in ("asc", "ascending", "1"):
                return cls.ASC
            if lowered in ("desc", "descending", "-1"):
                return cls.DESC
        elif value in (1, -1):
            return cls(value)
        raise InvalidQuery(f"Invalid sort direction: {value!r}")


@dataclass(frozen=True)
class FindOptions:
    """Pagination and ordering for find(). limit=None means the backend default."""
    skip: int = 0
    limit: int | None = None
    sort: tuple[tuple[str, SortOrder], ...] = ()

    def __post_init__(self):
        if self.skip is None or self.skip < 0:
            raise InvalidQuery(f"skip must be non-negative, got {self.skip!r}")
        if self.limit is not None and self.limit < 0:
            raise InvalidQuery(f"limit must be non-negative, got {self.limit!r}")

    @classmethod
    def of(
        cls,
        skip: int = 0,
        limit: int | None = None,
        sort: Mapping[str, Any] | None = None,
    ) -> "FindOptions":
        """Build from caller vocabulary: sort={"timestamp": -1, "name": "asc"}."""
        pairs = tuple((name, SortOrder.parse(direction)) for name, direction in (sort or {}).items())
        return cls(skip=skip or 0, limit=limit, sort=pairs)

    def resolved_limit(self, default: int = DEFAULT_FIND_LIMIT) -> int:
        return default if self.limit is None else self.limit


@dataclass(frozen=True)
class VectorSearchOptions:
    limit: int = 10
    min_score: float = 0.7


@dataclass
class VectorSearchResult:
    """A scored match from vector_search(). Never persisted."""
    item: Record
    score: float


@dataclass
class ModelSchema:
    """
    What register_model() receives.

    defaults        : field -> value, or a zero-arg callable evaluated per record
    timestamps      : inject createdAt / updatedAt like a document ODM would
    vector_fields   : fields holding embeddings; the key-value backend mirrors
                      them into a natively indexable form
    """
    collection: str | None = None
    defaults: dict[str, Any] = field(default_factory=dict)
    timestamps: bool = False
    vector_fields: tuple[str, ...] = ("embedding",)

    def apply_defaults(self, record: Mapping[str, Any]) -> Record:
        out: Record = {}
        for key, value in self.defaults.items():
            out[key] = value() if callable(value) else value
        out.update(record)
        if self.timestamps:
            now = utc_now()
            out.setdefault("createdAt", now)
            out.setdefault("updatedAt", now)
        return out

    def stamp_update(self, patch: Mapping[str, Any]) -> Record:
        out = dict(patch)
        if self.timestamps:
            out["updatedAt"] = utc_now()
        return out


@dataclass
class ProviderOptions:
    """Connection parameters shared by all providers."""
    uri: str
    database_name: str = ""
    username: str | None = None
    password: str | None = None
    options: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_config(cls, storage_cfg: Mapping[str, Any]) -> "ProviderOptions":
        return cls(
            uri=storage_cfg.get("uri", ""),
            database_name=storage_cfg.get("database_name", "") or "",
            username=storage_cfg.get("username") or None,
            password=storage_cfg.get("password") or None,
            options=dict(storage_cfg.get("options") or {}),
        )
