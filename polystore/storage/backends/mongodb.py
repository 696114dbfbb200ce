"""
MongoDB backend: document store over pymongo's asyncio client.

All MongoDB-specific imports and calls live here; nothing outside this file
needs to know about pymongo. Records map `id` <-> `_id` (a string). Filters
become a Mongo match document, find options are applied natively.

Native vector search uses an Atlas `vectorSearch` index when one covers the
requested field; otherwise the shared brute-force scan is used.
"""

from __future__ import annotations

import logging
import re
from contextlib import contextmanager
from typing import Any, Mapping, Sequence

from bson import ObjectId
from pymongo import AsyncMongoClient, ReturnDocument
from pymongo.errors import PyMongoError
from pymongo.operations import SearchIndexModel

from polystore.errors import BackendOperationError, ModelNotRegistered, NotConnected
from polystore.models import (
    DEFAULT_FIND_LIMIT,
    FindOptions,
    ModelSchema,
    ProviderOptions,
    Record,
    VectorSearchResult,
    new_id,
)
from polystore.query import Filter, Operator

from .base import FilterLike, Provider, Repository, VectorSearchMixin

logger = logging.getLogger(__name__)

_MONGO_OPS = {
    Operator.EQ: "$eq",
    Operator.NE: "$ne",
    Operator.GT: "$gt",
    Operator.GTE: "$gte",
    Operator.LT: "$lt",
    Operator.LTE: "$lte",
    Operator.IN: "$in",
}


def _mongo_field(name: str) -> str:
    return "_id" if name == "id" else name


def to_mongo_filter(raw: FilterLike) -> dict:
    """
    Translate a Filter into a Mongo match document.

    Conditions on the same field share one operator document; a repeated
    operator on a field moves the extra condition under $and.
    """
    flt = Filter.parse(raw)
    match: dict[str, Any] = {}
    extra: list[dict] = []

    for cond in flt:
        name = _mongo_field(cond.field)
        if cond.op is Operator.CONTAINS:
            if isinstance(cond.value, str):
                op, value = "$regex", re.escape(cond.value)
            else:
                # Equality on an array field is membership in Mongo
                op, value = "$eq", cond.value
        else:
            op, value = _MONGO_OPS[cond.op], cond.value

        ops = match.setdefault(name, {})
        if op in ops:
            extra.append({name: _single(op, value)})
            continue
        ops.update(_single(op, value))

    # Collapse {"f": {"$eq": v}} to {"f": v} for readability
    for name, ops in list(match.items()):
        if list(ops) == ["$eq"] and not isinstance(ops["$eq"], dict):
            match[name] = ops["$eq"]
    if extra:
        match["$and"] = extra
    return match


def _single(op: str, value: Any) -> dict:
    if op == "$regex":
        return {"$regex": value, "$options": "i"}
    return {op: value}


def _id_query(id: str) -> dict:
    # Documents written by other tools may carry native ObjectIds
    if ObjectId.is_valid(id):
        return {"_id": {"$in": [id, ObjectId(id)]}}
    return {"_id": id}


def _to_record(doc: Mapping[str, Any] | None) -> Record | None:
    if doc is None:
        return None
    record = {k: v for k, v in doc.items() if k != "_id"}
    record = {"id": str(doc.get("_id")), **record}
    return record


class MongoRepository(VectorSearchMixin, Repository):
    """Repository over one MongoDB collection."""

    def __init__(
        self,
        collection,
        entity_name: str,
        schema: ModelSchema | None = None,
        default_limit: int = DEFAULT_FIND_LIMIT,
    ):
        self._collection = collection
        self.entity_name = entity_name
        self.schema = schema or ModelSchema()
        self.default_limit = default_limit
        self._native_vector_support: dict[str, bool] = {}
        self._vector_indexes: dict[str, str] = {}

    @contextmanager
    def _operation(self, operation: str):
        try:
            yield
        except PyMongoError as e:
            logger.error("Error in %s on %s: %s", operation, self.entity_name, e)
            raise BackendOperationError(operation, self.entity_name, e) from e

    # ------------------------------------------------------------------
    # Repository interface
    # ------------------------------------------------------------------

    async def find(self, filter: FilterLike = None, options: FindOptions | None = None) -> list[Record]:
        options = options or FindOptions()
        limit = options.resolved_limit(self.default_limit)
        if limit == 0:
            return []
        match = to_mongo_filter(filter)
        with self._operation("find"):
            cursor = self._collection.find(match)
            if options.sort:
                cursor = cursor.sort([(_mongo_field(name), int(order)) for name, order in options.sort])
            if options.skip:
                cursor = cursor.skip(options.skip)
            cursor = cursor.limit(limit)
            docs = await cursor.to_list(length=None)
        return [_to_record(doc) for doc in docs]

    async def find_by_id(self, id: str) -> Record | None:
        with self._operation("find_by_id"):
            doc = await self._collection.find_one(_id_query(id))
        return _to_record(doc)

    async def find_one(self, filter: FilterLike = None) -> Record | None:
        match = to_mongo_filter(filter)
        with self._operation("find_one"):
            doc = await self._collection.find_one(match)
        return _to_record(doc)

    async def count(self, filter: FilterLike = None) -> int:
        match = to_mongo_filter(filter)
        with self._operation("count"):
            return await self._collection.count_documents(match)

    def _prepare(self, record: Mapping[str, Any]) -> dict:
        doc = self.schema.apply_defaults(record)
        doc.pop("_id", None)
        doc["_id"] = str(doc.pop("id", None) or new_id())
        return doc

    async def create(self, record: Mapping[str, Any]) -> Record:
        doc = self._prepare(record)
        with self._operation("create"):
            await self._collection.insert_one(doc)
        logger.debug("Created %s %s", self.entity_name, doc["_id"])
        return _to_record(doc)

    async def create_many(self, records: Sequence[Mapping[str, Any]]) -> list[Record]:
        if not records:
            return []
        docs = [self._prepare(r) for r in records]
        with self._operation("create_many"):
            await self._collection.insert_many(docs)
        return [_to_record(doc) for doc in docs]

    def _patch(self, patch: Mapping[str, Any]) -> dict:
        cleaned = {k: v for k, v in patch.items() if k not in ("id", "_id")}
        return self.schema.stamp_update(cleaned) if cleaned else {}

    async def update_by_id(self, id: str, patch: Mapping[str, Any]) -> Record | None:
        update = self._patch(patch)
        if not update:
            return await self.find_by_id(id)
        with self._operation("update_by_id"):
            doc = await self._collection.find_one_and_update(
                _id_query(id),
                {"$set": update},
                return_document=ReturnDocument.AFTER,
            )
        return _to_record(doc)

    async def update_many(self, filter: FilterLike, patch: Mapping[str, Any]) -> int:
        update = self._patch(patch)
        if not update:
            return 0
        match = to_mongo_filter(filter)
        with self._operation("update_many"):
            result = await self._collection.update_many(match, {"$set": update})
        return result.modified_count

    async def delete_by_id(self, id: str) -> Record | None:
        with self._operation("delete_by_id"):
            doc = await self._collection.find_one_and_delete(_id_query(id))
        return _to_record(doc)

    async def delete_many(self, filter: FilterLike) -> int:
        match = to_mongo_filter(filter)
        with self._operation("delete_many"):
            result = await self._collection.delete_many(match)
        return result.deleted_count

    # ------------------------------------------------------------------
    # Vector search primitives
    # ------------------------------------------------------------------

    async def _probe_native(self, field: str) -> bool:
        cursor = await self._collection.list_search_indexes()
        indexes = await cursor.to_list(length=None)
        for index in indexes:
            if index.get("type") != "vectorSearch":
                continue
            definition = index.get("latestDefinition") or index.get("definition") or {}
            for spec in definition.get("fields", []):
                if spec.get("type") == "vector" and spec.get("path") == field:
                    self._vector_indexes[field] = index["name"]
                    return True
        return False

    async def _native_search(self, field: str, query_vector: list[float], limit: int) -> list[VectorSearchResult]:
        pipeline = [
            {
                "$vectorSearch": {
                    "index": self._vector_indexes[field],
                    "path": field,
                    "queryVector": query_vector,
                    "numCandidates": max(limit * 10, 100),
                    "limit": limit,
                }
            },
            {"$addFields": {"_vector_score": {"$meta": "vectorSearchScore"}}},
        ]
        cursor = await self._collection.aggregate(pipeline)
        docs = await cursor.to_list(length=None)
        results = []
        for doc in docs:
            score = float(doc.pop("_vector_score", 0.0))
            results.append(VectorSearchResult(item=_to_record(doc), score=score))
        return results

    async def _scan_vectors(self, field: str) -> list[Record]:
        cursor = self._collection.find({field: {"$ne": None}})
        docs = await cursor.to_list(length=None)
        return [_to_record(doc) for doc in docs]


class MongoProvider(Provider):
    """Owns one AsyncMongoClient and the registered collections."""

    kind = "mongodb"
    requires_registration = True

    def __init__(self, options: ProviderOptions, default_limit: int = DEFAULT_FIND_LIMIT):
        super().__init__(options)
        self.default_limit = default_limit
        self._client: AsyncMongoClient | None = None
        self._db = None

    def is_connected(self) -> bool:
        return self._client is not None

    async def _open(self):
        kwargs: dict[str, Any] = dict(self.options.options)
        if self.options.username:
            kwargs["username"] = self.options.username
        if self.options.password:
            kwargs["password"] = self.options.password
        client = AsyncMongoClient(self.options.uri, **kwargs)
        try:
            await client.admin.command("ping")
        except Exception:
            await client.close()
            raise
        self._client = client
        self._db = client[self.options.database_name or "polystore"]
        # Models registered before a disconnect stay registered
        for name, schema in self._schemas.items():
            self._models[name] = self._db[schema.collection or name]

    async def _close(self):
        client, self._client, self._db = self._client, None, None
        await client.close()

    def register_model(self, name: str, schema: ModelSchema | None = None):
        """Bind `name` to a collection. Idempotent; requires a connection."""
        if not self.is_connected():
            raise NotConnected("Cannot register model: MongoDB is not connected")
        if name not in self._models:
            schema = schema or ModelSchema()
            logger.info("Registering model: %s", name)
            self._schemas[name] = schema
            self._models[name] = self._db[schema.collection or name]
        return self._models[name]

    def get_repository(self, entity_name: str) -> Repository:
        if not self.is_connected():
            raise NotConnected("Cannot get repository: MongoDB is not connected")
        if entity_name not in self._models:
            raise ModelNotRegistered(entity_name)
        return super().get_repository(entity_name)

    def _build_repository(self, entity_name: str) -> Repository:
        return MongoRepository(
            self._models[entity_name],
            entity_name,
            self._schemas.get(entity_name),
            default_limit=self.default_limit,
        )

    async def ensure_vector_index(
        self,
        name: str,
        field: str,
        dimension: int,
        similarity: str = "cosine",
    ) -> str:
        """Create an Atlas vector search index for `name`.`field`; returns its name."""
        collection = self.register_model(name, self._schemas.get(name))
        index_name = f"{field.replace('.', '_')}_vector_index"
        model = SearchIndexModel(
            definition={
                "fields": [
                    {"type": "vector", "path": field, "numDimensions": dimension, "similarity": similarity}
                ]
            },
            name=index_name,
            type="vectorSearch",
        )
        try:
            await collection.create_search_index(model)
        except PyMongoError as e:
            logger.error("Failed to create vector index on %s.%s: %s", name, field, e)
            raise BackendOperationError("ensure_vector_index", name, e) from e
        logger.info("Vector index %s created on %s.%s", index_name, name, field)
        return index_name
