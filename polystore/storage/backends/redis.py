"""
Redis backend: key-value storage with client-side querying.

Each record is a hash at "<entity>:<id>". The full record lives JSON-encoded
in the `data` field; every configured vector field is mirrored as packed
float32 bytes under `vec_<field>` so a RediSearch index can cover it.

Redis has no query language over arbitrary JSON, so find/count/update_many/
delete_many SCAN the entity's keys and evaluate the Filter in-process. That
is exhaustive and meant for modest collections.

Native vector search needs the search module plus an index named
"<entity>:<field>:idx" (see RedisProvider.create_vector_index).
"""

from __future__ import annotations

import json
import logging
from datetime import date, datetime
from typing import Any, Mapping, Sequence

import numpy as np
import redis.asyncio as aioredis
from redis.exceptions import RedisError, ResponseError

from polystore.errors import BackendOperationError, InvalidQuery, NotConnected
from polystore.models import (
    DEFAULT_FIND_LIMIT,
    FindOptions,
    ModelSchema,
    ProviderOptions,
    Record,
    VectorSearchResult,
    new_id,
)
from polystore.query import Filter, apply_find_options

from .base import FilterLike, Provider, Repository, VectorSearchMixin

logger = logging.getLogger(__name__)

DATA_FIELD = "data"
VECTOR_PREFIX = "vec_"
SCAN_COUNT = 500


def _json_default(value: Any):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, np.ndarray):
        return value.tolist()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def dumps(record: Mapping[str, Any]) -> str:
    return json.dumps(record, default=_json_default)


def pack_vector(vector: Sequence[float]) -> bytes:
    return np.asarray(vector, dtype=np.float32).tobytes()


def _text(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


class RedisRepository(VectorSearchMixin, Repository):
    """Repository over the hashes under one key prefix."""

    def __init__(
        self,
        client,
        entity_name: str,
        schema: ModelSchema | None = None,
        default_limit: int = DEFAULT_FIND_LIMIT,
    ):
        self._client = client
        self.entity_name = entity_name
        self.schema = schema or ModelSchema()
        self.default_limit = default_limit
        self.prefix = self.schema.collection or entity_name
        self._native_vector_support: dict[str, bool] = {}

    def key(self, id: str) -> str:
        return f"{self.prefix}:{id}"

    def index_name(self, field: str) -> str:
        return f"{self.prefix}:{field}:idx"

    def _error(self, operation: str, e: Exception) -> BackendOperationError:
        logger.error("Error in %s on %s: %s", operation, self.entity_name, e)
        return BackendOperationError(operation, self.entity_name, e)

    # ------------------------------------------------------------------
    # Encoding
    # ------------------------------------------------------------------

    def _encode(self, record: Mapping[str, Any]) -> dict:
        mapping: dict[str, Any] = {DATA_FIELD: dumps(record)}
        for name in self.schema.vector_fields:
            vector = record.get(name)
            if isinstance(vector, (list, tuple)) and vector:
                try:
                    mapping[VECTOR_PREFIX + name] = pack_vector(vector)
                except (TypeError, ValueError):
                    logger.warning("Field %s.%s is not numeric, not indexed", self.entity_name, name)
        return mapping

    def _decode(self, key: Any, raw: Any) -> Record | None:
        if raw is None:
            return None
        try:
            record = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning("Skipping unparsable record at %s: %s", _text(key), e)
            return None
        if not isinstance(record, dict):
            logger.warning("Skipping non-object record at %s", _text(key))
            return None
        return record

    def _write(self, pipe, record: Mapping[str, Any]):
        key = self.key(record["id"])
        # Replace the whole hash so stale vector mirrors disappear
        pipe.delete(key)
        pipe.hset(key, mapping=self._encode(record))

    async def _load_all(self) -> list[Record]:
        keys: dict[bytes | str, None] = {}
        async for key in self._client.scan_iter(match=f"{self.prefix}:*", count=SCAN_COUNT):
            keys[key] = None
        if not keys:
            return []
        pipe = self._client.pipeline(transaction=False)
        ordered = list(keys)
        for key in ordered:
            pipe.hget(key, DATA_FIELD)
        values = await pipe.execute(raise_on_error=False)
        records = []
        for key, raw in zip(ordered, values):
            if isinstance(raw, ResponseError):
                # Non-hash value under the prefix, e.g. a plain JSON string
                logger.warning("Skipping unreadable record at %s: %s", _text(key), raw)
                continue
            if isinstance(raw, Exception):
                raise raw
            record = self._decode(key, raw)
            if record is not None:
                records.append(record)
        return records

    async def _matching(self, operation: str, filter: FilterLike) -> list[Record]:
        flt = Filter.parse(filter)
        try:
            records = await self._load_all()
        except RedisError as e:
            raise self._error(operation, e) from e
        return [r for r in records if flt.matches(r)]

    # ------------------------------------------------------------------
    # Repository interface
    # ------------------------------------------------------------------

    async def find(self, filter: FilterLike = None, options: FindOptions | None = None) -> list[Record]:
        records = await self._matching("find", filter)
        return apply_find_options(records, options, self.default_limit)

    async def find_by_id(self, id: str) -> Record | None:
        key = self.key(id)
        try:
            raw = await self._client.hget(key, DATA_FIELD)
        except RedisError as e:
            raise self._error("find_by_id", e) from e
        return self._decode(key, raw)

    async def count(self, filter: FilterLike = None) -> int:
        return len(await self._matching("count", filter))

    def _prepare(self, record: Mapping[str, Any]) -> Record:
        prepared = self.schema.apply_defaults(record)
        prepared["id"] = str(prepared.get("id") or new_id())
        return prepared

    async def create(self, record: Mapping[str, Any]) -> Record:
        prepared = self._prepare(record)
        pipe = self._client.pipeline(transaction=True)
        self._write(pipe, prepared)
        try:
            await pipe.execute()
        except RedisError as e:
            raise self._error("create", e) from e
        logger.debug("Created %s %s", self.entity_name, prepared["id"])
        return prepared

    async def create_many(self, records: Sequence[Mapping[str, Any]]) -> list[Record]:
        if not records:
            return []
        prepared = [self._prepare(r) for r in records]
        pipe = self._client.pipeline(transaction=False)
        for record in prepared:
            self._write(pipe, record)
        try:
            await pipe.execute()
        except RedisError as e:
            raise self._error("create_many", e) from e
        return prepared

    def _merge(self, existing: Record, patch: Mapping[str, Any]) -> Record:
        cleaned = {k: v for k, v in patch.items() if k != "id"}
        merged = {**existing, **self.schema.stamp_update(cleaned)} if cleaned else dict(existing)
        merged["id"] = existing["id"]
        return merged

    async def update_by_id(self, id: str, patch: Mapping[str, Any]) -> Record | None:
        existing = await self.find_by_id(id)
        if existing is None:
            return None
        existing.setdefault("id", id)
        merged = self._merge(existing, patch)
        pipe = self._client.pipeline(transaction=True)
        self._write(pipe, merged)
        try:
            await pipe.execute()
        except RedisError as e:
            raise self._error("update_by_id", e) from e
        return merged

    async def update_many(self, filter: FilterLike, patch: Mapping[str, Any]) -> int:
        if not any(k != "id" for k in patch):
            return 0
        matched = [r for r in await self._matching("update_many", filter) if r.get("id")]
        if not matched:
            return 0
        pipe = self._client.pipeline(transaction=False)
        for record in matched:
            self._write(pipe, self._merge(record, patch))
        try:
            await pipe.execute()
        except RedisError as e:
            raise self._error("update_many", e) from e
        return len(matched)

    async def delete_by_id(self, id: str) -> Record | None:
        existing = await self.find_by_id(id)
        if existing is None:
            return None
        try:
            await self._client.delete(self.key(id))
        except RedisError as e:
            raise self._error("delete_by_id", e) from e
        return existing

    async def delete_many(self, filter: FilterLike) -> int:
        matched = [r for r in await self._matching("delete_many", filter) if r.get("id")]
        if not matched:
            return 0
        try:
            await self._client.delete(*[self.key(r["id"]) for r in matched])
        except RedisError as e:
            raise self._error("delete_many", e) from e
        return len(matched)

    # ------------------------------------------------------------------
    # Vector search primitives
    # ------------------------------------------------------------------

    async def _probe_native(self, field: str) -> bool:
        modules = await self._client.module_list()
        names = {_text(m.get(b"name", m.get("name", ""))).lower() for m in modules or []}
        if not names & {"search", "searchlight", "ft"}:
            return False
        # Raises when the index does not exist
        await self._client.execute_command("FT.INFO", self.index_name(field))
        return True

    async def _native_search(self, field: str, query_vector: list[float], limit: int) -> list[VectorSearchResult]:
        raw = await self._client.execute_command(
            "FT.SEARCH",
            self.index_name(field),
            f"*=>[KNN {int(limit)} @{VECTOR_PREFIX}{field} $vec AS vector_score]",
            "PARAMS", 2, "vec", pack_vector(query_vector),
            "SORTBY", "vector_score",
            "RETURN", 2, DATA_FIELD, "vector_score",
            "LIMIT", 0, int(limit),
            "DIALECT", 2,
        )
        results = []
        # [total, key, [field, value, ...], key, [...], ...]
        for i in range(1, len(raw) - 1, 2):
            key, values = raw[i], raw[i + 1]
            fields = {_text(values[j]): values[j + 1] for j in range(0, len(values) - 1, 2)}
            record = self._decode(key, fields.get(DATA_FIELD))
            if record is None:
                continue
            distance = float(_text(fields.get("vector_score", 1.0)))
            results.append(VectorSearchResult(item=record, score=1.0 - distance))
        return results

    async def _scan_vectors(self, field: str) -> list[Record]:
        return [r for r in await self._load_all() if r.get(field) is not None]


class RedisProvider(Provider):
    """Owns one redis.asyncio client."""

    kind = "redis"

    def __init__(self, options: ProviderOptions, default_limit: int = DEFAULT_FIND_LIMIT):
        super().__init__(options)
        self.default_limit = default_limit
        self._client = None

    def is_connected(self) -> bool:
        return self._client is not None

    @property
    def client(self):
        """The raw client, for key-value work outside the Repository contract."""
        if self._client is None:
            raise NotConnected("Redis client is not connected")
        return self._client

    async def _open(self):
        kwargs: dict[str, Any] = dict(self.options.options)
        if self.options.username:
            kwargs["username"] = self.options.username
        if self.options.password:
            kwargs["password"] = self.options.password
        client = aioredis.from_url(self.options.uri, **kwargs)
        try:
            await client.ping()
        except Exception:
            await client.aclose()
            raise
        self._client = client

    async def _close(self):
        client, self._client = self._client, None
        await client.aclose()

    def _build_repository(self, entity_name: str) -> Repository:
        return RedisRepository(
            self._client,
            entity_name,
            self.schema_for(entity_name),
            default_limit=self.default_limit,
        )

    async def create_vector_index(
        self,
        name: str,
        field: str,
        dimension: int,
        algorithm: str = "HNSW",
    ) -> str:
        """FT.CREATE a cosine KNN index over `<name>:*` hashes; returns the index name."""
        if not isinstance(dimension, int) or dimension <= 0:
            raise InvalidQuery(f"dimension must be a positive integer, got {dimension!r}")
        prefix = self.schema_for(name).collection or name
        index_name = f"{prefix}:{field}:idx"
        try:
            await self.client.execute_command(
                "FT.CREATE", index_name,
                "ON", "HASH",
                "PREFIX", 1, f"{prefix}:",
                "SCHEMA", f"{VECTOR_PREFIX}{field}", "VECTOR", algorithm.upper(), 6,
                "TYPE", "FLOAT32",
                "DIM", dimension,
                "DISTANCE_METRIC", "COSINE",
            )
        except RedisError as e:
            logger.error("Failed to create vector index %s: %s", index_name, e)
            raise BackendOperationError("create_vector_index", name, e) from e
        logger.info("Vector index %s created", index_name)
        return index_name
