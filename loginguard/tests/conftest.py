"""Common test fixtures for login guard unit tests."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any, Optional, Sequence

import fakeredis
import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from loginguard.app.config import EmailDeliverySettings, Settings, SmsDeliverySettings
from loginguard.app.delivery import CodeSender, DeliveryFailure, EmailCodeSender, SmsCodeSender
from loginguard.app.events import MemoryEventSink
from loginguard.app.main import create_app
from loginguard.app.storage import AtomicScript, AtomicStore, MemoryStore, RedisStore, StoreUnavailable


class FakeClock:
    """Manually advanced wall clock in epoch seconds."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSender:
    """Code sender that keeps delivered codes instead of sending them."""

    def __init__(self, delegate: CodeSender, *, fail: bool = False) -> None:
        self.channel = delegate.channel
        self._delegate = delegate
        self.fail = fail
        self.sent: list[dict[str, Any]] = []

    def normalise_recipient(self, recipient: str) -> str:
        return self._delegate.normalise_recipient(recipient)

    def mask_recipient(self, recipient: str) -> str:
        return self._delegate.mask_recipient(recipient)

    async def send(self, recipient: str, code: str, *, realm: str, expiry_minutes: int) -> None:
        if self.fail:
            raise DeliveryFailure("simulated delivery outage")
        self.sent.append(
            {"recipient": recipient, "code": code, "realm": realm, "expiry_minutes": expiry_minutes}
        )

    @property
    def last_code(self) -> Optional[str]:
        return self.sent[-1]["code"] if self.sent else None


class FailingStore(AtomicStore):
    """Store whose every command fails as if Redis were unreachable."""

    async def run(self, script: AtomicScript, keys: Sequence[str], args: Sequence[Any]) -> Any:
        raise StoreUnavailable(f"{script.name} failed: connection refused")

    async def get(self, key: str) -> Optional[str]:
        raise StoreUnavailable("get failed: connection refused")

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        raise StoreUnavailable("set failed: connection refused")

    async def delete(self, *keys: str) -> int:
        raise StoreUnavailable("delete failed: connection refused")

    async def ttl(self, key: str) -> int:
        raise StoreUnavailable("ttl failed: connection refused")

    async def hgetall(self, key: str) -> dict[str, str]:
        raise StoreUnavailable("hgetall failed: connection refused")

    async def count_keys(self, pattern: str) -> int:
        raise StoreUnavailable("scan failed: connection refused")

    async def ping(self) -> bool:
        return False

    async def close(self) -> None:
        return None


def email_sender(*, fail: bool = False) -> RecordingSender:
    return RecordingSender(EmailCodeSender(EmailDeliverySettings()), fail=fail)


def sms_sender(*, fail: bool = False) -> RecordingSender:
    return RecordingSender(SmsCodeSender(SmsDeliverySettings()), fail=fail)


def wrong_code(code: str) -> str:
    return "0" * len(code) if code != "0" * len(code) else "1" * len(code)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> MemoryStore:
    return MemoryStore(clock=clock)


@pytest.fixture
def failing_store() -> FailingStore:
    return FailingStore()


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, env="test", store={"backend": "memory"})


@pytest.fixture
def senders() -> dict[str, RecordingSender]:
    return {"email": email_sender(), "sms": sms_sender()}


@pytest.fixture
def sink() -> MemoryEventSink:
    return MemoryEventSink()


@pytest.fixture
def app(
    settings: Settings,
    store: MemoryStore,
    senders: dict[str, RecordingSender],
    sink: MemoryEventSink,
    clock: FakeClock,
) -> FastAPI:
    return create_app(settings, store=store, senders=senders, sink=sink, clock=clock)


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as http_client:
        yield http_client


@pytest_asyncio.fixture
async def redis_store() -> AsyncIterator[RedisStore]:
    """Store that runs the real Lua scripts on an isolated fake Redis server."""

    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    store = RedisStore(client=client)
    yield store
    await store.close()
