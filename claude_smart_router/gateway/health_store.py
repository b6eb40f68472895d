from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Protocol

from redis.asyncio import from_url as redis_from_url
from redis.exceptions import RedisError

from claude_smart_router.gateway.health_policy import (
    HEALTHY,
    HealthKey,
    HealthPolicy,
    HealthRecord,
)


class HealthStore(Protocol):
    async def get(self, key: HealthKey) -> HealthRecord: ...

    async def set(self, key: HealthKey, record: HealthRecord) -> None: ...

    async def snapshot(self) -> dict[HealthKey, HealthRecord]: ...

    async def close(self) -> None: ...


class AsyncKeyValueStore(Protocol):
    async def get(self, key: str) -> bytes | str | None: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def keys_with_prefix(self, prefix: str) -> list[str]: ...

    async def close(self) -> None: ...


class KeyValueStoreFactory(Protocol):
    def __call__(self, redis_url: str) -> AsyncKeyValueStore: ...


class InMemoryHealthStore:
    """Process-local health map. Shared by every request, no locking."""

    def __init__(self) -> None:
        self._records: dict[HealthKey, HealthRecord] = {}

    async def get(self, key: HealthKey) -> HealthRecord:
        return self._records.get(key, HEALTHY)

    async def set(self, key: HealthKey, record: HealthRecord) -> None:
        self._records[key] = record

    async def snapshot(self) -> dict[HealthKey, HealthRecord]:
        return dict(self._records)

    async def close(self) -> None:
        return None


class KeyValueHealthStore:
    """Health map shared through an external key-value service.

    Health is advisory: when the service cannot be reached, reads report the key
    as healthy and writes are dropped, so routing never depends on the store.
    """

    def __init__(
        self,
        kv_store: AsyncKeyValueStore,
        key_prefix: str,
        ttl_seconds: int,
        logger: logging.Logger | None = None,
    ) -> None:
        self._kv_store = kv_store
        self._key_prefix = key_prefix
        self._ttl_seconds = max(1, int(ttl_seconds))
        self._logger = logger or logging.getLogger("uvicorn.error")

    async def get(self, key: HealthKey) -> HealthRecord:
        try:
            raw = await self._kv_store.get(self._storage_key(key))
        except RedisError as exc:
            self._log_unavailable("get", key, exc)
            return HEALTHY
        if not raw:
            return HEALTHY
        return _deserialize_record(raw) or HEALTHY

    async def set(self, key: HealthKey, record: HealthRecord) -> None:
        try:
            await self._kv_store.set(
                self._storage_key(key),
                _serialize_record(record),
                ttl_seconds=self._ttl_seconds,
            )
        except RedisError as exc:
            self._log_unavailable("set", key, exc)

    async def snapshot(self) -> dict[HealthKey, HealthRecord]:
        records: dict[HealthKey, HealthRecord] = {}
        try:
            storage_keys = await self._kv_store.keys_with_prefix(self._key_prefix)
        except RedisError as exc:
            self._log_unavailable("snapshot", None, exc)
            return records
        for storage_key in storage_keys:
            try:
                key = HealthKey.parse(storage_key[len(self._key_prefix) :])
            except ValueError:
                continue
            record = await self.get(key)
            if not record.is_zero:
                records[key] = record
        return records

    def _log_unavailable(
        self,
        operation: str,
        key: HealthKey | None,
        exc: Exception,
    ) -> None:
        self._logger.warning(
            "health_store_unavailable operation=%s key=%s error_type=%s error=%s",
            operation,
            key if key is not None else "-",
            exc.__class__.__name__,
            exc,
        )

    async def close(self) -> None:
        await self._kv_store.close()

    def _storage_key(self, key: HealthKey) -> str:
        return f"{self._key_prefix}{key}"


class RedisAsyncKeyValueStore:
    def __init__(self, redis_client: Any) -> None:
        self._redis = redis_client

    async def get(self, key: str) -> bytes | str | None:
        value = await self._redis.get(key)
        if value is None:
            return None
        if isinstance(value, (bytes, str)):
            return value
        return None

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._redis.set(key, value, ex=ttl_seconds)

    async def keys_with_prefix(self, prefix: str) -> list[str]:
        keys: list[str] = []
        async for raw in self._redis.scan_iter(match=f"{prefix}*"):
            keys.append(raw.decode("utf-8") if isinstance(raw, bytes) else str(raw))
        return keys

    async def close(self) -> None:
        await self._redis.aclose()


def build_redis_key_value_store(redis_url: str) -> AsyncKeyValueStore:
    client = redis_from_url(redis_url, decode_responses=False)
    return RedisAsyncKeyValueStore(redis_client=client)


def build_health_store(
    redis_url: str | None = None,
    key_prefix: str = "claude-smart-router:health:",
    ttl_seconds: int = 3600,
    logger: logging.Logger | None = None,
    create_key_value_store: KeyValueStoreFactory | None = None,
) -> HealthStore:
    if not redis_url:
        return InMemoryHealthStore()

    factory = create_key_value_store or build_redis_key_value_store
    try:
        kv_store = factory(redis_url)
    except (RuntimeError, ValueError) as exc:
        if logger is not None:
            logger.warning(
                "health_store_redis_unavailable reason=%s fallback=in_memory",
                str(exc),
            )
        return InMemoryHealthStore()
    return KeyValueHealthStore(
        kv_store=kv_store,
        key_prefix=key_prefix,
        ttl_seconds=ttl_seconds,
        logger=logger,
    )


class HealthTracker:
    def __init__(
        self,
        store: HealthStore,
        policy: HealthPolicy,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._policy = policy
        self._clock = clock

    @property
    def store(self) -> HealthStore:
        return self._store

    async def is_available(self, key: HealthKey) -> bool:
        record = await self._store.get(key)
        return self._policy.is_available(record, self._clock())

    async def record_failure(self, key: HealthKey) -> HealthRecord:
        record = await self._store.get(key)
        updated = self._policy.record_failure(record, self._clock())
        await self._store.set(key, updated)
        return updated

    async def record_success(self, key: HealthKey) -> HealthRecord:
        record = await self._store.get(key)
        if record.is_zero:
            return record
        updated = self._policy.record_success(record)
        await self._store.set(key, updated)
        return updated

    async def snapshot(self) -> dict[HealthKey, HealthRecord]:
        return await self._store.snapshot()


def _serialize_record(record: HealthRecord) -> str:
    payload = {
        "failures": int(record.failures),
        "last_failure_at": float(record.last_failure_at),
        "in_cooldown": bool(record.in_cooldown),
    }
    return json.dumps(payload, ensure_ascii=True, separators=(",", ":"))


def _deserialize_record(raw: bytes | str) -> HealthRecord | None:
    try:
        decoded = raw.decode("utf-8") if isinstance(raw, bytes) else raw
        payload = json.loads(decoded)
        return HealthRecord(
            failures=max(0, int(payload.get("failures", 0))),
            last_failure_at=float(payload.get("last_failure_at", 0.0)),
            in_cooldown=bool(payload.get("in_cooldown", False)),
        )
    except (
        AttributeError,
        TypeError,
        ValueError,
        UnicodeDecodeError,
    ):
        return None
