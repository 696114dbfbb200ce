"""
Memgraph backend: one node label per entity, over the neo4j async driver.

Memgraph speaks Bolt, so the official neo4j driver is the client. Every
record is a node whose properties are the record's fields; the record id is
an explicit `id` property (internal node ids are reused after deletes and
are not stable identifiers).

Filters compile to a parameterised WHERE clause. Values always travel as
parameters; labels and property names cannot be parameterised in Cypher and
are validated against a strict identifier pattern instead.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Mapping, Sequence

from neo4j import AsyncGraphDatabase
from neo4j.exceptions import DriverError, Neo4jError

from polystore.errors import BackendOperationError, InvalidFilter, InvalidQuery, NotConnected
from polystore.models import (
    DEFAULT_FIND_LIMIT,
    FindOptions,
    ModelSchema,
    ProviderOptions,
    Record,
    SortOrder,
    VectorSearchResult,
    new_id,
)
from polystore.query import Filter, Operator

from .base import FilterLike, Provider, Repository, VectorSearchMixin

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_CYPHER_OPS = {
    Operator.EQ: "=",
    Operator.NE: "<>",
    Operator.GT: ">",
    Operator.GTE: ">=",
    Operator.LT: "<",
    Operator.LTE: "<=",
}


def identifier(name: str) -> str:
    """Backtick-quote a label or property name after validating it."""
    if not isinstance(name, str) or not _IDENTIFIER.match(name):
        raise InvalidFilter(f"Invalid identifier for graph query: {name!r}")
    return f"`{name}`"


def property_ref(alias: str, path: str) -> str:
    """n.`a`.`b` for a dotted path into map properties."""
    return ".".join([alias] + [identifier(part) for part in path.split(".")])


def to_cypher_where(raw: FilterLike, alias: str = "n") -> tuple[str, dict]:
    """
    Compile a filter to (" WHERE ...", params). Empty filter -> ("", {}).

    >>> to_cypher_where({"platform": "twitter"})
    (' WHERE n.`platform` = $p0', {'p0': 'twitter'})
    """
    flt = Filter.parse(raw)
    clauses: list[str] = []
    params: dict[str, Any] = {}

    for i, cond in enumerate(flt):
        ref = property_ref(alias, cond.field)
        param = f"p{i}"
        if cond.op is Operator.EQ and cond.value is None:
            clauses.append(f"{ref} IS NULL")
            continue
        if cond.op is Operator.NE and cond.value is None:
            clauses.append(f"{ref} IS NOT NULL")
            continue

        params[param] = cond.value
        if cond.op is Operator.IN:
            # List properties match when any element is in the set
            clauses.append(
                f'CASE WHEN valueType({ref}) = "LIST" THEN any(x IN {ref} WHERE x IN ${param}) '
                f"ELSE {ref} IN ${param} END"
            )
        elif cond.op is Operator.CONTAINS:
            if isinstance(cond.value, str):
                clauses.append(
                    f'(valueType({ref}) = "STRING" AND toLower({ref}) CONTAINS toLower(${param}))'
                )
            else:
                clauses.append(f'(valueType({ref}) = "LIST" AND ${param} IN {ref})')
        elif cond.op is Operator.NE:
            # A missing property is "not equal" to any value
            clauses.append(f"({ref} IS NULL OR {ref} <> ${param})")
        else:
            clauses.append(f"{ref} {_CYPHER_OPS[cond.op]} ${param}")

    if not clauses:
        return "", {}
    return " WHERE " + " AND ".join(clauses), params


def to_cypher_order(options: FindOptions, alias: str = "n") -> str:
    if not options.sort:
        return ""
    parts = [
        f"{property_ref(alias, name)} {'DESC' if order is SortOrder.DESC else 'ASC'}"
        for name, order in options.sort
    ]
    return " ORDER BY " + ", ".join(parts)


def _node_record(row: Mapping[str, Any], key: str = "n") -> Record:
    value = row[key]
    return dict(value) if value is not None else {}


class MemgraphRepository(VectorSearchMixin, Repository):
    """Repository over all nodes carrying one label."""

    def __init__(
        self,
        driver,
        entity_name: str,
        schema: ModelSchema | None = None,
        default_limit: int = DEFAULT_FIND_LIMIT,
        database: str | None = None,
    ):
        self._driver = driver
        self.entity_name = entity_name
        self.schema = schema or ModelSchema()
        self.default_limit = default_limit
        self._database = database
        self.label = identifier(self.schema.collection or entity_name)
        self._native_vector_support: dict[str, bool] = {}
        self._vector_indexes: dict[str, str] = {}

    async def _run(self, operation: str, cypher: str, params: Mapping[str, Any] | None = None) -> list[dict]:
        logger.debug("Cypher (%s): %s", operation, cypher)
        try:
            async with self._driver.session(database=self._database) as session:
                result = await session.run(cypher, dict(params or {}))
                return await result.data()
        except (Neo4jError, DriverError) as e:
            logger.error("Error in %s on %s: %s", operation, self.entity_name, e)
            raise BackendOperationError(operation, self.entity_name, e) from e

    # ------------------------------------------------------------------
    # Repository interface
    # ------------------------------------------------------------------

    async def find(self, filter: FilterLike = None, options: FindOptions | None = None) -> list[Record]:
        options = options or FindOptions()
        limit = options.resolved_limit(self.default_limit)
        where, params = to_cypher_where(filter)
        cypher = (
            f"MATCH (n:{self.label}){where} RETURN n"
            f"{to_cypher_order(options)} SKIP $skip LIMIT $limit"
        )
        rows = await self._run("find", cypher, {**params, "skip": options.skip, "limit": limit})
        return [_node_record(row) for row in rows]

    async def find_by_id(self, id: str) -> Record | None:
        rows = await self._run(
            "find_by_id",
            f"MATCH (n:{self.label} {{id: $id}}) RETURN n LIMIT 1",
            {"id": id},
        )
        return _node_record(rows[0]) if rows else None

    async def count(self, filter: FilterLike = None) -> int:
        where, params = to_cypher_where(filter)
        rows = await self._run("count", f"MATCH (n:{self.label}){where} RETURN count(n) AS count", params)
        return int(rows[0]["count"]) if rows else 0

    def _prepare(self, record: Mapping[str, Any]) -> Record:
        props = self.schema.apply_defaults(record)
        props["id"] = str(props.get("id") or new_id())
        return props

    async def create(self, record: Mapping[str, Any]) -> Record:
        props = self._prepare(record)
        rows = await self._run(
            "create",
            f"CREATE (n:{self.label}) SET n = $props RETURN n",
            {"props": props},
        )
        logger.debug("Created %s %s", self.entity_name, props["id"])
        return _node_record(rows[0]) if rows else props

    async def create_many(self, records: Sequence[Mapping[str, Any]]) -> list[Record]:
        if not records:
            return []
        rows = await self._run(
            "create_many",
            f"UNWIND $rows AS row CREATE (n:{self.label}) SET n = row RETURN n",
            {"rows": [self._prepare(r) for r in records]},
        )
        return [_node_record(row) for row in rows]

    def _patch(self, patch: Mapping[str, Any]) -> Record:
        cleaned = {k: v for k, v in patch.items() if k != "id"}
        return self.schema.stamp_update(cleaned) if cleaned else {}

    async def update_by_id(self, id: str, patch: Mapping[str, Any]) -> Record | None:
        update = self._patch(patch)
        if not update:
            return await self.find_by_id(id)
        rows = await self._run(
            "update_by_id",
            f"MATCH (n:{self.label} {{id: $id}}) SET n += $patch RETURN n",
            {"id": id, "patch": update},
        )
        return _node_record(rows[0]) if rows else None

    async def update_many(self, filter: FilterLike, patch: Mapping[str, Any]) -> int:
        update = self._patch(patch)
        if not update:
            return 0
        where, params = to_cypher_where(filter)
        rows = await self._run(
            "update_many",
            f"MATCH (n:{self.label}){where} SET n += $patch RETURN count(n) AS count",
            {**params, "patch": update},
        )
        return int(rows[0]["count"]) if rows else 0

    async def delete_by_id(self, id: str) -> Record | None:
        rows = await self._run(
            "delete_by_id",
            f"MATCH (n:{self.label} {{id: $id}}) "
            "WITH n, properties(n) AS props DETACH DELETE n RETURN props",
            {"id": id},
        )
        return dict(rows[0]["props"]) if rows else None

    async def delete_many(self, filter: FilterLike) -> int:
        where, params = to_cypher_where(filter)
        rows = await self._run(
            "delete_many",
            f"MATCH (n:{self.label}){where} DETACH DELETE n RETURN count(*) AS count",
            params,
        )
        return int(rows[0]["count"]) if rows else 0

    # ------------------------------------------------------------------
    # Vector search primitives
    # ------------------------------------------------------------------

    async def _probe_native(self, field: str) -> bool:
        rows = await self._run(
            "vector_index_probe",
            "CALL vector_search.show_index_info() YIELD * RETURN *",
        )
        label = self.label.strip("`")
        for row in rows:
            if row.get("label") == label and row.get("property") == field:
                self._vector_indexes[field] = row["index_name"]
                return True
        return False

    async def _native_search(self, field: str, query_vector: list[float], limit: int) -> list[VectorSearchResult]:
        rows = await self._run(
            "vector_search",
            "CALL vector_search.search($index, $limit, $vector) YIELD node, similarity "
            "RETURN node, similarity",
            {"index": self._vector_indexes[field], "limit": limit, "vector": query_vector},
        )
        return [
            VectorSearchResult(item=_node_record(row, "node"), score=float(row["similarity"]))
            for row in rows
        ]

    async def _scan_vectors(self, field: str) -> list[Record]:
        rows = await self._run(
            "vector_scan",
            f"MATCH (n:{self.label}) WHERE {property_ref('n', field)} IS NOT NULL RETURN n",
        )
        return [_node_record(row) for row in rows]


class MemgraphProvider(Provider):
    """Owns one neo4j AsyncDriver pointed at Memgraph."""

    kind = "memgraph"

    def __init__(self, options: ProviderOptions, default_limit: int = DEFAULT_FIND_LIMIT):
        super().__init__(options)
        self.default_limit = default_limit
        self._driver = None

    def is_connected(self) -> bool:
        return self._driver is not None

    async def _open(self):
        auth = None
        if self.options.username:
            auth = (self.options.username, self.options.password or "")
        driver = AsyncGraphDatabase.driver(self.options.uri, auth=auth, **self.options.options)
        try:
            await driver.verify_connectivity()
        except Exception:
            await driver.close()
            raise
        self._driver = driver

    async def _close(self):
        driver, self._driver = self._driver, None
        await driver.close()

    def _build_repository(self, entity_name: str) -> Repository:
        return MemgraphRepository(
            self._driver,
            entity_name,
            self.schema_for(entity_name),
            default_limit=self.default_limit,
            database=self.options.database_name or None,
        )

    async def query(self, cypher: str, params: Mapping[str, Any] | None = None) -> list[dict]:
        """Run raw Cypher for graph-specific work the Repository contract cannot express."""
        if not self.is_connected():
            raise NotConnected("Cannot run query: memgraph is not connected")
        try:
            async with self._driver.session(database=self.options.database_name or None) as session:
                result = await session.run(cypher, dict(params or {}))
                return await result.data()
        except (Neo4jError, DriverError) as e:
            logger.error("Error executing Cypher query: %s", e)
            raise BackendOperationError("query", "memgraph", e) from e

    async def ensure_vector_index(
        self,
        name: str,
        field: str,
        dimension: int,
        capacity: int = 1000,
        metric: str = "cos",
    ) -> str:
        """CREATE VECTOR INDEX on :Label(field); returns the index name."""
        if not isinstance(dimension, int) or dimension <= 0:
            raise InvalidQuery(f"dimension must be a positive integer, got {dimension!r}")
        label = self.schema_for(name).collection or name
        index_name = f"{label}_{field}_vector_index"
        cypher = (
            f"CREATE VECTOR INDEX {identifier(index_name)} ON :{identifier(label)}({identifier(field)}) "
            "WITH CONFIG {\"dimension\": %d, \"capacity\": %d, \"metric\": \"%s\"}"
            % (dimension, int(capacity), metric.replace('"', ""))
        )
        await self.query(cypher)
        logger.info("Vector index %s created on :%s(%s)", index_name, label, field)
        return index_name
