"""
Tests for the Redis key-value backend, against fakeredis.
"""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import fakeredis.aioredis
import numpy as np
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from polystore.errors import BackendOperationError, NotConnected
from polystore.models import FindOptions, ModelSchema, ProviderOptions, VectorSearchOptions
from polystore.storage.backends import supports_vector_search
from polystore.storage.backends.redis import RedisProvider, RedisRepository


@pytest.fixture
def client():
    return fakeredis.aioredis.FakeRedis()


@pytest.fixture
def repo(client):
    return RedisRepository(client, "Content", ModelSchema(timestamps=True))


async def _seed_posts(repo):
    rows = [
        {"platform": "twitter", "timestamp": "2024-01-01", "text": "one"},
        {"platform": "facebook", "timestamp": "2024-01-02", "text": "two"},
        {"platform": "twitter", "timestamp": "2024-01-03", "text": "three"},
        {"platform": "twitter", "timestamp": "2024-01-05", "text": "five"},
        {"platform": "facebook", "timestamp": "2024-01-04", "text": "four"},
    ]
    return await repo.create_many(rows)


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_create_and_find_by_id(repo, client):
    created = await repo.create({"text": "hello", "platform": "twitter"})
    assert created["id"]
    assert "createdAt" in created

    fetched = await repo.find_by_id(created["id"])
    assert fetched == created

    raw = await client.hget(f"Content:{created['id']}", "data")
    assert json.loads(raw)["text"] == "hello"


@pytest.mark.asyncio
async def test_create_keeps_caller_id(repo):
    created = await repo.create({"id": "fixed", "text": "x"})
    assert created["id"] == "fixed"
    assert (await repo.find_by_id("fixed"))["text"] == "x"


@pytest.mark.asyncio
async def test_find_by_id_missing(repo):
    assert await repo.find_by_id("nope") is None


@pytest.mark.asyncio
async def test_find_filter_sort_skip_limit(repo):
    await _seed_posts(repo)
    opts = FindOptions.of(skip=1, limit=2, sort={"timestamp": -1})
    results = await repo.find({"platform": "twitter"}, opts)
    assert [r["text"] for r in results] == ["three", "one"]


@pytest.mark.asyncio
async def test_count_and_find_one(repo):
    await _seed_posts(repo)
    assert await repo.count() == 5
    assert await repo.count({"platform": "facebook"}) == 2
    one = await repo.find_one({"text": {"contains": "FIV"}})
    assert one["text"] == "five"
    assert await repo.find_one({"platform": "myspace"}) is None


@pytest.mark.asyncio
async def test_update_by_id_merges(repo):
    created = await repo.create({"text": "a", "metadata": {"k": 1}})
    updated = await repo.update_by_id(created["id"], {"text": "b", "id": "hijack"})
    assert updated["id"] == created["id"]
    assert updated["text"] == "b"
    assert updated["metadata"] == {"k": 1}
    assert (await repo.find_by_id(created["id"]))["text"] == "b"
    assert await repo.find_by_id("hijack") is None


@pytest.mark.asyncio
async def test_update_missing_id_is_noop(repo):
    await repo.create({"text": "a"})
    assert await repo.update_by_id("missing", {"text": "b"}) is None
    assert await repo.count() == 1
    assert await repo.find_by_id("missing") is None


@pytest.mark.asyncio
async def test_update_many_and_delete_many(repo):
    await _seed_posts(repo)
    assert await repo.update_many({"platform": "twitter"}, {"flagged": True}) == 3
    assert await repo.count({"flagged": True}) == 3
    assert await repo.delete_many({"platform": "twitter"}) == 3
    assert await repo.count() == 2
    assert await repo.delete_many({"platform": "twitter"}) == 0


@pytest.mark.asyncio
async def test_delete_by_id(repo):
    created = await repo.create({"text": "bye"})
    deleted = await repo.delete_by_id(created["id"])
    assert deleted["text"] == "bye"
    assert await repo.find_by_id(created["id"]) is None
    assert await repo.delete_by_id(created["id"]) is None


@pytest.mark.asyncio
async def test_unparsable_values_are_skipped(repo, client):
    await repo.create({"text": "good"})
    await client.hset("Content:broken", mapping={"data": "{not json"})
    results = await repo.find()
    assert [r["text"] for r in results] == ["good"]


@pytest.mark.asyncio
async def test_non_hash_keys_under_prefix_are_skipped(repo, client):
    await repo.create({"text": "good", "platform": "twitter"})
    await client.set("Content:legacy", '{"id": "legacy", "platform": "twitter"}')

    assert [r["text"] for r in await repo.find()] == ["good"]
    assert await repo.count({"platform": "twitter"}) == 1
    assert await repo.update_many({"platform": "twitter"}, {"flagged": True}) == 1
    assert await repo.delete_many({"platform": "twitter"}) == 1
    assert await client.get("Content:legacy") is not None


@pytest.mark.asyncio
async def test_update_many_with_only_id_is_noop(repo):
    await _seed_posts(repo)
    by_id = FindOptions.of(sort={"id": 1})
    before = await repo.find({"platform": "twitter"}, by_id)
    assert await repo.update_many({"platform": "twitter"}, {"id": "x"}) == 0
    assert await repo.find({"platform": "twitter"}, by_id) == before


@pytest.mark.asyncio
async def test_other_prefixes_are_ignored(repo, client):
    other = RedisRepository(client, "User")
    await other.create({"name": "x"})
    await repo.create({"text": "y"})
    assert await repo.count() == 1
    assert await other.count() == 1


@pytest.mark.asyncio
async def test_vector_field_is_mirrored_as_float32(repo, client):
    created = await repo.create({"text": "v", "embedding": [0.5, 0.25]})
    raw = await client.hget(f"Content:{created['id']}", "vec_embedding")
    assert np.frombuffer(raw, dtype=np.float32).tolist() == [0.5, 0.25]


@pytest.mark.asyncio
async def test_driver_errors_are_wrapped():
    broken = MagicMock()
    broken.hget = AsyncMock(side_effect=RedisConnectionError("down"))
    repo = RedisRepository(broken, "Content")
    with pytest.raises(BackendOperationError) as exc:
        await repo.find_by_id("x")
    assert "find_by_id" in str(exc.value)
    assert "Content" in str(exc.value)


# ---------------------------------------------------------------------------
# Vector search
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_vector_search_falls_back_to_scan(repo):
    assert supports_vector_search(repo)
    await repo.create({"id": "a", "embedding": [1, 0, 0]})
    await repo.create({"id": "b", "embedding": [0, 1, 0]})
    await repo.create({"id": "c"})

    with patch.object(repo, "_probe_native", AsyncMock(return_value=False)):
        results = await repo.vector_search("embedding", [1, 0, 0], VectorSearchOptions(min_score=0.5))

    assert [r.item["id"] for r in results] == ["a"]
    assert results[0].score == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_probe_failure_means_unavailable_and_is_memoised(repo):
    probe = AsyncMock(side_effect=RedisConnectionError("no MODULE LIST"))
    with patch.object(repo, "_probe_native", probe):
        assert await repo.has_native_vector_search("embedding") is False
        assert await repo.has_native_vector_search("embedding") is False
    assert probe.await_count == 1


@pytest.mark.asyncio
async def test_native_search_parses_knn_reply():
    client = MagicMock()
    client.module_list = AsyncMock(return_value=[{b"name": b"search", b"ver": 20809}])
    reply = [
        2,
        b"Content:a", [b"data", b'{"id": "a"}', b"vector_score", b"0.1"],
        b"Content:b", [b"data", b'{"id": "b"}', b"vector_score", b"0.6"],
    ]
    client.execute_command = AsyncMock(side_effect=[{"index_name": "x"}, reply])
    repo = RedisRepository(client, "Content")

    results = await repo.vector_search("embedding", [1.0, 0.0], VectorSearchOptions(limit=5, min_score=0.5))

    assert [r.item["id"] for r in results] == ["a"]
    assert results[0].score == pytest.approx(0.9)
    search_args = client.execute_command.await_args_list[1].args
    assert search_args[0] == "FT.SEARCH"
    assert search_args[1] == "Content:embedding:idx"
    assert "DIALECT" in search_args


@pytest.mark.asyncio
async def test_native_error_falls_back_to_scan(client):
    repo = RedisRepository(client, "Content")
    await repo.create({"id": "a", "embedding": [1, 0]})
    with patch.object(repo, "_probe_native", AsyncMock(return_value=True)), \
         patch.object(repo, "_native_search", AsyncMock(side_effect=RuntimeError("index gone"))):
        results = await repo.vector_search("embedding", [1, 0])
    assert [r.item["id"] for r in results] == ["a"]


@pytest.mark.asyncio
async def test_scan_failure_returns_empty(repo):
    with patch.object(repo, "_probe_native", AsyncMock(return_value=False)), \
         patch.object(repo, "_scan_vectors", AsyncMock(side_effect=RedisConnectionError("down"))):
        assert await repo.vector_search("embedding", [1, 0]) == []


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------

@pytest.fixture
def provider():
    return RedisProvider(ProviderOptions(uri="redis://localhost:6379/0"))


@pytest.mark.asyncio
async def test_provider_lifecycle(provider):
    fake = fakeredis.aioredis.FakeRedis()
    with patch("polystore.storage.backends.redis.aioredis.from_url", return_value=fake) as from_url:
        await provider.connect()
        await provider.connect()
    from_url.assert_called_once()
    assert provider.is_connected()
    assert provider.client is fake

    provider.register_model("Content")
    repo = provider.get_repository("Content")
    assert provider.get_repository("Content") is repo

    await provider.disconnect()
    await provider.disconnect()
    assert not provider.is_connected()
    with pytest.raises(NotConnected):
        provider.client


@pytest.mark.asyncio
async def test_provider_get_repository_before_connect(provider):
    with pytest.raises(NotConnected):
        provider.get_repository("Content")


@pytest.mark.asyncio
async def test_provider_failed_ping_stays_disconnected(provider):
    fake = MagicMock()
    fake.ping = AsyncMock(side_effect=RedisConnectionError("refused"))
    fake.aclose = AsyncMock()
    with patch("polystore.storage.backends.redis.aioredis.from_url", return_value=fake):
        with pytest.raises(RedisConnectionError):
            await provider.connect()
    assert not provider.is_connected()
    fake.aclose.assert_awaited_once()


@pytest.mark.asyncio
async def test_create_vector_index_command(provider):
    fake = MagicMock()
    fake.ping = AsyncMock(return_value=True)
    fake.execute_command = AsyncMock(return_value=b"OK")
    with patch("polystore.storage.backends.redis.aioredis.from_url", return_value=fake):
        await provider.connect()

    name = await provider.create_vector_index("Content", "embedding", 384)

    assert name == "Content:embedding:idx"
    args = fake.execute_command.await_args.args
    assert args[:2] == ("FT.CREATE", "Content:embedding:idx")
    assert "vec_embedding" in args
    assert 384 in args
