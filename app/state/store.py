"""
Distributed batch state store.

Holds the authoritative BatchJob snapshot for every (owner, batch) pair in
Redis so any worker process can pick up a batch where another left off.
Partial updates are deep-merged inside a WATCH/MULTI transaction: two stages
writing different fields (or different items) of the same batch never
overwrite each other.

When Redis cannot be reached the store keeps serving from an in-process
ExpiringCache and reports `degraded`. In that mode a batch is only visible to
the process that wrote it.
"""

import json
from typing import Any, Callable, Optional

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError, WatchError

from app.errors import BatchNotFoundError, StateStoreError
from app.observability.metrics import state_store_degraded, state_store_fallbacks_total
from app.state.cache import ExpiringCache

logger = structlog.get_logger(__name__)

Record = dict[str, Any]
Precondition = Callable[[Record], None]


def deep_merge(base: Record, partial: Record) -> Record:
    """Merge `partial` into a copy of `base`. Nested mappings merge, everything else replaces."""
    merged = dict(base)
    for key, value in partial.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged


class BatchStateStore:
    """get/put/update/delete of JSON records keyed by (owner_id, record_id)."""

    def __init__(
        self,
        redis: Optional[Redis],
        prefix: str = "batch",
        default_ttl: int = 24 * 3600,
        max_update_retries: int = 10,
        fallback: Optional[ExpiringCache[Record]] = None,
    ):
        self.redis = redis
        self.prefix = prefix
        self.default_ttl = default_ttl
        self.max_update_retries = max_update_retries
        self._memory: ExpiringCache[Record] = fallback or ExpiringCache()
        self._degraded = False
        if redis is None:
            self._enter_degraded("init", "no redis client configured")

    @property
    def degraded(self) -> bool:
        return self._degraded

    def key(self, owner_id: str, record_id: str) -> str:
        return f"{self.prefix}:{owner_id}:{record_id}"

    # ── Public API ───────────────────────────────────────────

    async def get(self, owner_id: str, record_id: str) -> Optional[Record]:
        key = self.key(owner_id, record_id)
        if not self._degraded:
            try:
                raw = await self.redis.get(key)
                return self._decode(key, raw) if raw is not None else None
            except RedisError as e:
                self._enter_degraded("get", e)
        state_store_fallbacks_total.labels(operation="get").inc()
        record = self._memory.get(key)
        return dict(record) if record is not None else None

    async def put(
        self, owner_id: str, record_id: str, record: Record, ttl: Optional[int] = None
    ) -> None:
        key = self.key(owner_id, record_id)
        ttl = ttl or self.default_ttl
        if not self._degraded:
            try:
                await self.redis.set(key, self._encode(record), ex=ttl)
                return
            except RedisError as e:
                self._enter_degraded("put", e)
        state_store_fallbacks_total.labels(operation="put").inc()
        self._memory.set(key, dict(record), ttl=ttl)

    async def create(
        self, owner_id: str, record_id: str, record: Record, ttl: Optional[int] = None
    ) -> bool:
        """Write `record` only if nothing is stored under the key. False when it already exists."""
        key = self.key(owner_id, record_id)
        ttl = ttl or self.default_ttl
        if not self._degraded:
            try:
                return bool(await self.redis.set(key, self._encode(record), ex=ttl, nx=True))
            except RedisError as e:
                self._enter_degraded("create", e)
        state_store_fallbacks_total.labels(operation="create").inc()
        # No await between the check and the write.
        if self._memory.get(key) is not None:
            return False
        self._memory.set(key, dict(record), ttl=ttl)
        return True

    async def update(
        self,
        owner_id: str,
        record_id: str,
        partial: Record,
        precondition: Optional[Precondition] = None,
        create_ttl: Optional[int] = None,
    ) -> Record:
        """
        Atomically merge `partial` into the stored record and return the result.

        `precondition` sees the current record inside the transaction and may
        raise to abort without writing. A missing record raises
        BatchNotFoundError unless `create_ttl` is given, in which case the
        record is created from `partial` with that TTL.
        """
        key = self.key(owner_id, record_id)
        if not self._degraded:
            try:
                return await self._redis_update(key, partial, precondition, create_ttl)
            except (BatchNotFoundError, StateStoreError):
                raise
            except RedisError as e:
                self._enter_degraded("update", e)
        state_store_fallbacks_total.labels(operation="update").inc()
        return self._memory_update(key, partial, precondition, create_ttl)

    async def delete(self, owner_id: str, record_id: str) -> bool:
        key = self.key(owner_id, record_id)
        if not self._degraded:
            try:
                return bool(await self.redis.delete(key))
            except RedisError as e:
                self._enter_degraded("delete", e)
        state_store_fallbacks_total.labels(operation="delete").inc()
        return self._memory.evict(key)

    async def expire(self, owner_id: str, record_id: str, ttl: int) -> None:
        """Shorten (or extend) the remaining lifetime of a record."""
        key = self.key(owner_id, record_id)
        if not self._degraded:
            try:
                await self.redis.expire(key, ttl)
                return
            except RedisError as e:
                self._enter_degraded("expire", e)
        record = self._memory.get(key)
        if record is not None:
            self._memory.set(key, record, ttl=ttl)

    async def recover(self) -> bool:
        """Leave degraded mode if Redis answers again. Returns the new health."""
        if not self._degraded or self.redis is None:
            return not self._degraded
        try:
            await self.redis.ping()
        except RedisError:
            return False
        self._degraded = False
        state_store_degraded.set(0)
        logger.info("state_store_recovered", prefix=self.prefix)
        return True

    # ── Backends ─────────────────────────────────────────────

    async def _redis_update(
        self,
        key: str,
        partial: Record,
        precondition: Optional[Precondition],
        create_ttl: Optional[int],
    ) -> Record:
        for _ in range(self.max_update_retries):
            async with self.redis.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None and create_ttl is None:
                        raise BatchNotFoundError(f"No record at {key}")
                    current = self._decode(key, raw) if raw is not None else {}
                    if precondition is not None:
                        precondition(current)
                    merged = deep_merge(current, partial)
                    pipe.multi()
                    if raw is None:
                        pipe.set(key, self._encode(merged), ex=create_ttl)
                    else:
                        pipe.set(key, self._encode(merged), keepttl=True)
                    await pipe.execute()
                    return merged
                except WatchError:
                    logger.debug("state_update_contention", key=key)
                    continue
        raise StateStoreError(
            f"Gave up updating {key} after {self.max_update_retries} concurrent modifications"
        )

    def _memory_update(
        self,
        key: str,
        partial: Record,
        precondition: Optional[Precondition],
        create_ttl: Optional[int],
    ) -> Record:
        # No await between read and write: atomic within this event loop.
        current = self._memory.get(key)
        if current is None and create_ttl is None:
            raise BatchNotFoundError(f"No record at {key}")
        if precondition is not None:
            precondition(current or {})
        merged = deep_merge(current or {}, partial)
        if current is None:
            self._memory.set(key, merged, ttl=create_ttl)
        else:
            self._memory.set(key, merged, ttl=self._memory.ttl(key))
        return dict(merged)

    # ── Helpers ──────────────────────────────────────────────

    def _enter_degraded(self, operation: str, reason: Any) -> None:
        if not self._degraded:
            logger.warning(
                "state_store_degraded",
                operation=operation,
                reason=str(reason)[:200],
                detail="serving batch state from process memory; cross-process resume unavailable",
            )
        self._degraded = True
        state_store_degraded.set(1)

    @staticmethod
    def _encode(record: Record) -> str:
        return json.dumps(record, default=str)

    @staticmethod
    def _decode(key: str, raw: Any) -> Record:
        try:
            return json.loads(raw)
        except (TypeError, ValueError) as e:
            raise StateStoreError(f"Corrupt record at {key}: {e}") from e
