"""
Tests for the Memgraph graph backend.
The neo4j driver is replaced with mocks; assertions check the Cypher sent.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from neo4j.exceptions import ServiceUnavailable

from polystore.errors import BackendOperationError, InvalidFilter, NotConnected
from polystore.models import FindOptions, ProviderOptions, VectorSearchOptions
from polystore.storage.backends.memgraph import (
    MemgraphProvider,
    MemgraphRepository,
    to_cypher_order,
    to_cypher_where,
)


def _driver(*results):
    """A driver whose session.run() yields the given row lists in order."""
    session = MagicMock()
    outputs = []
    for rows in results:
        result = MagicMock()
        result.data = AsyncMock(return_value=rows)
        outputs.append(result)
    session.run = AsyncMock(side_effect=outputs)
    driver = MagicMock()
    driver.session.return_value.__aenter__ = AsyncMock(return_value=session)
    driver.session.return_value.__aexit__ = AsyncMock(return_value=False)
    return driver, session


def _sent(session, index=-1):
    call = session.run.await_args_list[index]
    return call.args[0], call.args[1]


# ---------------------------------------------------------------------------
# Cypher translation
# ---------------------------------------------------------------------------

def test_where_equality_and_range():
    where, params = to_cypher_where({"platform": "twitter", "timestamp": {"gte": "a", "lt": "b"}})
    assert where == " WHERE n.`platform` = $p0 AND n.`timestamp` >= $p1 AND n.`timestamp` < $p2"
    assert params == {"p0": "twitter", "p1": "a", "p2": "b"}


def test_where_null_checks_take_no_params():
    where, params = to_cypher_where({"embedding": {"ne": None}, "deleted": None})
    assert where == " WHERE n.`embedding` IS NOT NULL AND n.`deleted` IS NULL"
    assert params == {}


def test_where_contains_and_in():
    where, params = to_cypher_where({"text": {"contains": "Vax"}, "classification.topics": {"in": ["a"]}})
    assert "toLower(n.`text`) CONTAINS toLower($p0)" in where
    assert "any(x IN n.`classification`.`topics` WHERE x IN $p1)" in where
    assert params == {"p0": "Vax", "p1": ["a"]}


def test_where_ne_keeps_nodes_missing_the_property():
    where, params = to_cypher_where({"platform": {"ne": "twitter"}})
    assert where == " WHERE (n.`platform` IS NULL OR n.`platform` <> $p0)"
    assert params == {"p0": "twitter"}


def test_where_contains_is_type_guarded():
    where, _ = to_cypher_where({"text": {"contains": "vax"}})
    assert where == ' WHERE (valueType(n.`text`) = "STRING" AND toLower(n.`text`) CONTAINS toLower($p0))'
    where, _ = to_cypher_where({"tags": {"contains": 3}})
    assert where == ' WHERE (valueType(n.`tags`) = "LIST" AND $p0 IN n.`tags`)'


def test_where_empty():
    assert to_cypher_where(None) == ("", {})


@pytest.mark.parametrize("field", ["bad field", "x) DETACH DELETE n //", "1abc", "a.`b"])
def test_where_rejects_unsafe_identifiers(field):
    with pytest.raises(InvalidFilter):
        to_cypher_where({field: 1})


def test_order_clause():
    opts = FindOptions.of(sort={"timestamp": -1, "name": 1})
    assert to_cypher_order(opts) == " ORDER BY n.`timestamp` DESC, n.`name` ASC"
    assert to_cypher_order(FindOptions()) == ""


def test_label_is_validated():
    driver, _ = _driver()
    with pytest.raises(InvalidFilter):
        MemgraphRepository(driver, "Bad Label")


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_create_assigns_id_property():
    driver, session = _driver([{"n": {"id": "will-be-replaced", "text": "hi"}}])
    repo = MemgraphRepository(driver, "Content")
    await repo.create({"text": "hi"})

    cypher, params = _sent(session)
    assert cypher == "CREATE (n:`Content`) SET n = $props RETURN n"
    assert params["props"]["text"] == "hi"
    assert len(params["props"]["id"]) == 32


@pytest.mark.asyncio
async def test_find_emits_order_skip_limit():
    rows = [{"n": {"id": "3", "platform": "twitter"}}, {"n": {"id": "1", "platform": "twitter"}}]
    driver, session = _driver(rows)
    repo = MemgraphRepository(driver, "Content")

    found = await repo.find({"platform": "twitter"}, FindOptions.of(skip=1, limit=2, sort={"timestamp": -1}))

    assert [r["id"] for r in found] == ["3", "1"]
    cypher, params = _sent(session)
    assert cypher == (
        "MATCH (n:`Content`) WHERE n.`platform` = $p0 RETURN n "
        "ORDER BY n.`timestamp` DESC SKIP $skip LIMIT $limit"
    )
    assert params == {"p0": "twitter", "skip": 1, "limit": 2}


@pytest.mark.asyncio
async def test_find_uses_default_limit():
    driver, session = _driver([])
    repo = MemgraphRepository(driver, "Content", default_limit=25)
    assert await repo.find() == []
    assert _sent(session)[1]["limit"] == 25


@pytest.mark.asyncio
async def test_find_by_id_missing():
    driver, _ = _driver([])
    repo = MemgraphRepository(driver, "Content")
    assert await repo.find_by_id("nope") is None


@pytest.mark.asyncio
async def test_count():
    driver, session = _driver([{"count": 7}])
    repo = MemgraphRepository(driver, "Content")
    assert await repo.count({"platform": "x"}) == 7
    assert "RETURN count(n) AS count" in _sent(session)[0]


@pytest.mark.asyncio
async def test_create_many_uses_unwind():
    driver, session = _driver([{"n": {"id": "a"}}, {"n": {"id": "b"}}])
    repo = MemgraphRepository(driver, "Content")
    created = await repo.create_many([{"id": "a"}, {"id": "b"}])
    assert [r["id"] for r in created] == ["a", "b"]
    cypher, params = _sent(session)
    assert cypher.startswith("UNWIND $rows AS row CREATE")
    assert [r["id"] for r in params["rows"]] == ["a", "b"]


@pytest.mark.asyncio
async def test_create_many_empty_skips_driver():
    driver, session = _driver()
    repo = MemgraphRepository(driver, "Content")
    assert await repo.create_many([]) == []
    session.run.assert_not_awaited()


@pytest.mark.asyncio
async def test_update_by_id_missing_returns_none():
    driver, session = _driver([])
    repo = MemgraphRepository(driver, "Content")
    assert await repo.update_by_id("missing", {"text": "b", "id": "x"}) is None
    cypher, params = _sent(session)
    assert "SET n += $patch" in cypher
    assert params == {"id": "missing", "patch": {"text": "b"}}


@pytest.mark.asyncio
async def test_update_many_and_delete():
    driver, session = _driver([{"count": 3}], [{"props": {"id": "a", "text": "x"}}], [{"count": 2}])
    repo = MemgraphRepository(driver, "Content")
    assert await repo.update_many({"platform": "twitter"}, {"flagged": True}) == 3
    assert await repo.delete_by_id("a") == {"id": "a", "text": "x"}
    assert "DETACH DELETE n" in _sent(session, 1)[0]
    assert await repo.delete_many({"platform": "twitter"}) == 2
    assert "DETACH DELETE n" in _sent(session, 2)[0]


@pytest.mark.asyncio
async def test_driver_errors_are_wrapped():
    driver, session = _driver()
    session.run = AsyncMock(side_effect=ServiceUnavailable("gone"))
    repo = MemgraphRepository(driver, "Content")
    with pytest.raises(BackendOperationError) as exc:
        await repo.find_by_id("x")
    assert exc.value.operation == "find_by_id"


# ---------------------------------------------------------------------------
# Vector search
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_native_vector_search():
    index_info = [{"index_name": "content_emb", "label": "Content", "property": "embedding", "dimension": 2}]
    hits = [
        {"node": {"id": "a"}, "similarity": 0.9},
        {"node": {"id": "b"}, "similarity": 0.2},
    ]
    driver, session = _driver(index_info, hits)
    repo = MemgraphRepository(driver, "Content")

    results = await repo.vector_search("embedding", [1, 0], VectorSearchOptions(limit=5, min_score=0.5))

    assert [(r.item["id"], r.score) for r in results] == [("a", 0.9)]
    cypher, params = _sent(session)
    assert cypher.startswith("CALL vector_search.search($index, $limit, $vector)")
    assert params == {"index": "content_emb", "limit": 5, "vector": [1.0, 0.0]}


@pytest.mark.asyncio
async def test_vector_search_without_index_scans():
    scan = [{"n": {"id": "a", "embedding": [1, 0, 0]}}, {"n": {"id": "b", "embedding": [0, 1, 0]}}]
    driver, session = _driver([], scan)
    repo = MemgraphRepository(driver, "Content")

    results = await repo.vector_search("embedding", [1, 0, 0], VectorSearchOptions(min_score=0.5))

    assert [r.item["id"] for r in results] == ["a"]
    assert "IS NOT NULL" in _sent(session)[0]


@pytest.mark.asyncio
async def test_probe_error_falls_back_to_scan():
    driver, session = _driver()
    scan_result = MagicMock()
    scan_result.data = AsyncMock(return_value=[{"n": {"id": "a", "embedding": [0, 1]}}])
    session.run = AsyncMock(side_effect=[ServiceUnavailable("no MAGE module"), scan_result])
    repo = MemgraphRepository(driver, "Content")

    results = await repo.vector_search("embedding", [0, 1])

    assert [r.item["id"] for r in results] == ["a"]


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------

@pytest.fixture
def provider():
    return MemgraphProvider(ProviderOptions(uri="bolt://localhost:7687", username="mg", password="pw"))


def _fake_driver():
    driver = MagicMock()
    driver.verify_connectivity = AsyncMock()
    driver.close = AsyncMock()
    return driver


@pytest.mark.asyncio
async def test_provider_lifecycle(provider):
    driver = _fake_driver()
    with patch("polystore.storage.backends.memgraph.AsyncGraphDatabase.driver", return_value=driver) as factory:
        await provider.connect()
        await provider.connect()
    factory.assert_called_once_with("bolt://localhost:7687", auth=("mg", "pw"))
    assert provider.is_connected()

    assert provider.register_model("Content") is None
    repo = provider.get_repository("Content")
    assert isinstance(repo, MemgraphRepository)
    assert provider.get_repository("Content") is repo

    await provider.disconnect()
    await provider.disconnect()
    driver.close.assert_awaited_once()
    with pytest.raises(NotConnected):
        provider.get_repository("Content")


@pytest.mark.asyncio
async def test_provider_query_requires_connection(provider):
    with pytest.raises(NotConnected):
        await provider.query("RETURN 1")


@pytest.mark.asyncio
async def test_provider_query_passes_params(provider):
    driver, session = _driver([{"x": 1}])
    driver.verify_connectivity = AsyncMock()
    driver.close = AsyncMock()
    with patch("polystore.storage.backends.memgraph.AsyncGraphDatabase.driver", return_value=driver):
        await provider.connect()
    assert await provider.query("RETURN $x AS x", {"x": 1}) == [{"x": 1}]
    assert _sent(session) == ("RETURN $x AS x", {"x": 1})
