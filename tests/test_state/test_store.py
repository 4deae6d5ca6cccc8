"""
Tests for the distributed batch state store and its degraded mode.
"""

import asyncio

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from app.errors import BatchNotFoundError, StateStoreError, ValidationError
from app.state.store import BatchStateStore, deep_merge


class FlakyRedis:
    """Delegates to a real client until `down` is set, then refuses every call."""

    def __init__(self, backend):
        self.backend = backend
        self.down = False

    def __getattr__(self, name):
        if self.down:
            def unavailable(*args, **kwargs):
                raise RedisConnectionError("connection refused")
            return unavailable
        return getattr(self.backend, name)


class TestDeepMerge:

    def test_nested_mappings_merge(self):
        base = {"status": "analyzing", "items": {"a": {"status": "pending", "folio": None}, "b": {"status": "pending"}}}
        merged = deep_merge(base, {"items": {"a": {"status": "queued", "folio": 800}}})
        assert merged["items"]["a"] == {"status": "queued", "folio": 800}
        assert merged["items"]["b"] == {"status": "pending"}
        assert merged["status"] == "analyzing"

    def test_base_is_not_mutated(self):
        base = {"items": {"a": {"status": "pending"}}}
        deep_merge(base, {"items": {"a": {"status": "queued"}}})
        assert base["items"]["a"]["status"] == "pending"

    def test_non_mapping_replaces(self):
        assert deep_merge({"warnings": ["x"]}, {"warnings": []}) == {"warnings": []}


@pytest.mark.asyncio
class TestBatchStateStore:

    async def test_put_get(self, state_store, redis_client):
        await state_store.put("owner", "b1", {"status": "collecting"})
        assert await state_store.get("owner", "b1") == {"status": "collecting"}
        assert await redis_client.exists("batch:owner:b1") == 1

    async def test_get_missing(self, state_store):
        assert await state_store.get("owner", "nope") is None

    async def test_owners_are_isolated(self, state_store):
        await state_store.put("owner-a", "b1", {"status": "collecting"})
        assert await state_store.get("owner-b", "b1") is None

    async def test_create_only_when_absent(self, state_store, redis_client):
        assert await state_store.create("owner", "b1", {"status": "collecting"}, ttl=60) is True
        assert await state_store.create("owner", "b1", {"status": "analyzing"}, ttl=60) is False
        assert await state_store.get("owner", "b1") == {"status": "collecting"}
        assert 0 < await redis_client.ttl("batch:owner:b1") <= 60

    async def test_concurrent_creates_have_one_winner(self, state_store):
        results = await asyncio.gather(*(
            state_store.create("owner", "b1", {"writer": n}) for n in range(5)
        ))
        assert sorted(results) == [False, False, False, False, True]
        assert (await state_store.get("owner", "b1"))["writer"] == results.index(True)

    async def test_update_merges_and_keeps_ttl(self, state_store, redis_client):
        await state_store.put("owner", "b1", {"status": "analyzing", "items": {"a": {"status": "pending"}}}, ttl=500)
        merged = await state_store.update("owner", "b1", {"items": {"b": {"status": "pending"}}})
        assert set(merged["items"]) == {"a", "b"}
        assert 0 < await redis_client.ttl("batch:owner:b1") <= 500

    async def test_update_missing_raises(self, state_store):
        with pytest.raises(BatchNotFoundError):
            await state_store.update("owner", "nope", {"status": "failed"})

    async def test_update_with_create_ttl_creates(self, state_store, redis_client):
        record = await state_store.update("owner", "g1", {"documents": {"1": "x"}}, create_ttl=120)
        assert record == {"documents": {"1": "x"}}
        assert 0 < await redis_client.ttl("batch:owner:g1") <= 120

    async def test_precondition_aborts_without_writing(self, state_store):
        await state_store.put("owner", "b1", {"status": "canceled"})

        def guard(record):
            raise ValidationError([f"batch is {record['status']}"])

        with pytest.raises(ValidationError):
            await state_store.update("owner", "b1", {"status": "submitting"}, precondition=guard)
        assert (await state_store.get("owner", "b1"))["status"] == "canceled"

    async def test_concurrent_item_updates_all_land(self, redis_client):
        store = BatchStateStore(redis_client, max_update_retries=50)
        await store.put("owner", "b1", {"items": {}})
        await asyncio.gather(*(
            store.update("owner", "b1", {"items": {f"item{i}": {"status": "analyzed"}}})
            for i in range(10)
        ))
        record = await store.get("owner", "b1")
        assert len(record["items"]) == 10

    async def test_delete_and_expire(self, state_store, redis_client):
        await state_store.put("owner", "b1", {"status": "completed"})
        await state_store.expire("owner", "b1", 60)
        assert 0 < await redis_client.ttl("batch:owner:b1") <= 60
        assert await state_store.delete("owner", "b1") is True
        assert await state_store.get("owner", "b1") is None

    async def test_corrupt_record(self, state_store, redis_client):
        await redis_client.set("batch:owner:b1", "not json")
        with pytest.raises(StateStoreError):
            await state_store.get("owner", "b1")


@pytest.mark.asyncio
class TestDegradedMode:

    async def test_no_client_starts_degraded(self):
        store = BatchStateStore(None)
        assert store.degraded is True
        await store.put("owner", "b1", {"status": "collecting"})
        assert await store.get("owner", "b1") == {"status": "collecting"}

    async def test_falls_back_when_redis_fails(self, redis_client):
        flaky = FlakyRedis(redis_client)
        store = BatchStateStore(flaky)
        flaky.down = True

        await store.put("owner", "b1", {"status": "analyzing", "items": {}})
        assert store.degraded is True
        merged = await store.update("owner", "b1", {"items": {"a": {"status": "analyzed"}}})
        assert merged["items"]["a"]["status"] == "analyzed"
        assert (await store.get("owner", "b1"))["items"] == {"a": {"status": "analyzed"}}

    async def test_degraded_create_only_when_absent(self):
        store = BatchStateStore(None)
        assert await store.create("owner", "b1", {"status": "collecting"}) is True
        assert await store.create("owner", "b1", {"status": "analyzing"}) is False
        assert await store.get("owner", "b1") == {"status": "collecting"}

    async def test_degraded_update_missing_raises(self):
        store = BatchStateStore(None)
        with pytest.raises(BatchNotFoundError):
            await store.update("owner", "nope", {"status": "failed"})

    async def test_degraded_precondition(self):
        store = BatchStateStore(None)
        await store.put("owner", "b1", {"status": "canceled"})

        def guard(record):
            raise ValidationError(["closed"])

        with pytest.raises(ValidationError):
            await store.update("owner", "b1", {"status": "analyzing"}, precondition=guard)

    async def test_recover_when_redis_returns(self, redis_client):
        flaky = FlakyRedis(redis_client)
        store = BatchStateStore(flaky)
        flaky.down = True
        await store.put("owner", "b1", {"status": "analyzing"})
        assert await store.recover() is False

        flaky.down = False
        assert await store.recover() is True
        assert store.degraded is False
        # Records written while degraded lived only in this process.
        assert await store.get("owner", "b1") is None

    async def test_recover_without_client(self):
        assert await BatchStateStore(None).recover() is False
