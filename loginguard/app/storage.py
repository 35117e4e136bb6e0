"""Atomic key-value store integration for the login guard service.

Every read-modify-write sequence used by the engines is expressed as an
:class:`AtomicScript`: a Lua script evaluated server-side by Redis in a single
round trip, plus an equivalent Python routine that :class:`MemoryStore` runs
under its lock.  The Python routines are written against
:class:`MemoryTransaction`, which mirrors the subset of Redis commands the Lua
scripts use, so both versions read alike.
"""
from __future__ import annotations

import asyncio
import fnmatch
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

import redis.asyncio as redis
from redis.exceptions import RedisError

from .config import StoreSettings
from .logging import get_logger


logger = get_logger("loginguard.storage")

Clock = Callable[[], float]
ScriptRoutine = Callable[["MemoryTransaction", list[str], list[str]], Any]


class StoreUnavailable(RuntimeError):
    """Raised when the backing store cannot be reached or rejects a command."""


@dataclass(frozen=True, slots=True)
class AtomicScript:
    """A server-evaluated script and its in-process equivalent."""

    name: str
    lua: str
    emulate: ScriptRoutine


class AtomicStore:
    """Minimal store interface used by the engines."""

    async def run(self, script: AtomicScript, keys: Sequence[str], args: Sequence[Any]) -> Any:  # pragma: no cover - interface
        raise NotImplementedError

    async def get(self, key: str) -> Optional[str]:  # pragma: no cover - interface
        raise NotImplementedError

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def delete(self, *keys: str) -> int:  # pragma: no cover - interface
        raise NotImplementedError

    async def ttl(self, key: str) -> int:  # pragma: no cover - interface
        raise NotImplementedError

    async def hgetall(self, key: str) -> dict[str, str]:  # pragma: no cover - interface
        raise NotImplementedError

    async def count_keys(self, pattern: str) -> int:  # pragma: no cover - interface
        raise NotImplementedError

    async def ping(self) -> bool:  # pragma: no cover - interface
        raise NotImplementedError

    async def close(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError


@dataclass(slots=True)
class _Entry:
    value: Any
    expires_at: Optional[float] = None


@dataclass(slots=True)
class MemoryTransaction:
    """Synchronous view over :class:`MemoryStore` data with Redis semantics.

    Instances only exist while the owning store's lock is held.
    """

    data: dict[str, _Entry]
    now: float

    def _live(self, key: str) -> Optional[_Entry]:
        entry = self.data.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self.now:
            del self.data[key]
            return None
        return entry

    def _typed(self, key: str, kind: type) -> Optional[_Entry]:
        entry = self._live(key)
        if entry is not None and not isinstance(entry.value, kind):
            raise TypeError(f"WRONGTYPE operation against key {key!r}")
        return entry

    def exists(self, key: str) -> bool:
        return self._live(key) is not None

    def get(self, key: str) -> Optional[str]:
        entry = self._typed(key, str)
        return None if entry is None else entry.value

    def set(self, key: str, value: Any, ex: Optional[int] = None) -> None:
        expires_at = self.now + ex if ex else None
        self.data[key] = _Entry(str(value), expires_at)

    def incr(self, key: str) -> int:
        entry = self._typed(key, str)
        current = int(entry.value) if entry is not None else 0
        current += 1
        if entry is None:
            self.data[key] = _Entry(str(current))
        else:
            entry.value = str(current)
        return current

    def expire(self, key: str, seconds: int) -> int:
        entry = self._live(key)
        if entry is None:
            return 0
        entry.expires_at = self.now + seconds
        return 1

    def ttl(self, key: str) -> int:
        entry = self._live(key)
        if entry is None:
            return -2
        if entry.expires_at is None:
            return -1
        remaining_ms = (entry.expires_at - self.now) * 1000
        return int((remaining_ms + 500) // 1000)

    def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._live(key) is not None:
                del self.data[key]
                removed += 1
        return removed

    def hmget(self, key: str, *fields: str) -> list[Optional[str]]:
        entry = self._typed(key, dict)
        mapping = entry.value if entry is not None else {}
        return [mapping.get(name) for name in fields]

    def hgetall(self, key: str) -> dict[str, str]:
        entry = self._typed(key, dict)
        return dict(entry.value) if entry is not None else {}

    def hset(self, key: str, mapping: dict[str, Any]) -> int:
        entry = self._typed(key, dict)
        if entry is None:
            entry = _Entry({})
            self.data[key] = entry
        added = sum(1 for name in mapping if name not in entry.value)
        entry.value.update({name: str(value) for name, value in mapping.items()})
        return added

    def sadd(self, key: str, *members: str) -> int:
        entry = self._typed(key, set)
        if entry is None:
            entry = _Entry(set())
            self.data[key] = entry
        before = len(entry.value)
        entry.value.update(str(member) for member in members)
        return len(entry.value) - before

    def scard(self, key: str) -> int:
        entry = self._typed(key, set)
        return len(entry.value) if entry is not None else 0

    def keys(self, pattern: str) -> list[str]:
        return [key for key in list(self.data) if fnmatch.fnmatchcase(key, pattern) and self._live(key)]


class MemoryStore(AtomicStore):
    """Single-process store used when Redis isn't configured and in tests."""

    def __init__(self, *, clock: Optional[Clock] = None) -> None:
        self._data: dict[str, _Entry] = {}
        self._lock = asyncio.Lock()
        self._clock = clock or time.time

    async def _apply(self, operation: Callable[[MemoryTransaction], Any]) -> Any:
        async with self._lock:
            return operation(MemoryTransaction(self._data, self._clock()))

    async def run(self, script: AtomicScript, keys: Sequence[str], args: Sequence[Any]) -> Any:
        key_list = [str(key) for key in keys]
        arg_list = [str(arg) for arg in args]
        return await self._apply(lambda txn: script.emulate(txn, key_list, arg_list))

    async def get(self, key: str) -> Optional[str]:
        return await self._apply(lambda txn: txn.get(key))

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        await self._apply(lambda txn: txn.set(key, value, ex=ttl))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self._apply(lambda txn: txn.delete(*keys))

    async def ttl(self, key: str) -> int:
        return await self._apply(lambda txn: txn.ttl(key))

    async def hgetall(self, key: str) -> dict[str, str]:
        return await self._apply(lambda txn: txn.hgetall(key))

    async def count_keys(self, pattern: str) -> int:
        return await self._apply(lambda txn: len(txn.keys(pattern)))

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        async with self._lock:
            self._data.clear()


class RedisStore(AtomicStore):
    """Redis backed store using ``redis.asyncio`` with one pool per instance."""

    def __init__(self, settings: StoreSettings | None = None, *, client: Any = None) -> None:
        if client is None:
            settings = settings or StoreSettings()
            client = redis.Redis(connection_pool=self._build_pool(settings))
        self._client = client
        self._scripts: dict[str, Any] = {}

    @staticmethod
    def _build_pool(settings: StoreSettings) -> redis.ConnectionPool:
        options: dict[str, Any] = {
            "socket_connect_timeout": settings.connect_timeout_seconds,
            "socket_timeout": settings.socket_timeout_seconds,
            "max_connections": settings.max_connections,
            "decode_responses": True,
            "health_check_interval": 30,
        }
        if settings.url:
            return redis.ConnectionPool.from_url(settings.url, **options)
        logger.debug(
            "store_pool_initialised",
            host=settings.host,
            port=settings.port,
            database=settings.database,
        )
        return redis.ConnectionPool(
            host=settings.host,
            port=settings.port,
            password=settings.password,
            db=settings.database,
            **options,
        )

    async def _call(self, operation: str, awaitable: Any) -> Any:
        try:
            return await awaitable
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            logger.warning("store_call_failed", operation=operation, error=str(exc))
            raise StoreUnavailable(f"{operation} failed: {exc}") from exc

    def _script(self, script: AtomicScript) -> Any:
        registered = self._scripts.get(script.name)
        if registered is None:
            registered = self._client.register_script(script.lua)
            self._scripts[script.name] = registered
        return registered

    async def run(self, script: AtomicScript, keys: Sequence[str], args: Sequence[Any]) -> Any:
        registered = self._script(script)
        return await self._call(script.name, registered(keys=list(keys), args=[str(arg) for arg in args]))

    async def get(self, key: str) -> Optional[str]:
        return await self._call("get", self._client.get(key))

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        await self._call("set", self._client.set(name=key, value=value, ex=ttl))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._call("delete", self._client.delete(*keys)))

    async def ttl(self, key: str) -> int:
        return int(await self._call("ttl", self._client.ttl(key)))

    async def hgetall(self, key: str) -> dict[str, str]:
        return dict(await self._call("hgetall", self._client.hgetall(key)))

    async def count_keys(self, pattern: str) -> int:
        async def _scan() -> int:
            total = 0
            async for _ in self._client.scan_iter(match=pattern, count=500):
                total += 1
            return total

        return await self._call("scan", _scan())

    async def ping(self) -> bool:
        try:
            return bool(await self._call("ping", self._client.ping()))
        except StoreUnavailable:
            return False

    async def close(self) -> None:
        try:
            await self._client.aclose()
            await self._client.connection_pool.disconnect()
        except (RedisError, OSError) as exc:  # pragma: no cover - shutdown logging
            logger.warning("store_close_failed", error=str(exc))


def build_store(settings: StoreSettings, *, clock: Optional[Clock] = None) -> AtomicStore:
    if settings.backend == "memory":
        return MemoryStore(clock=clock)
    try:
        return RedisStore(settings)
    except (RedisError, ValueError) as exc:
        logger.error("store_initialisation_failed", error=str(exc), fallback="memory")
    return MemoryStore(clock=clock)


__all__ = [
    "AtomicScript",
    "AtomicStore",
    "Clock",
    "MemoryStore",
    "MemoryTransaction",
    "RedisStore",
    "StoreUnavailable",
    "build_store",
]
