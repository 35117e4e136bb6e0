from __future__ import annotations

import pytest
from fastapi import status
from httpx import ASGITransport, AsyncClient

from loginguard.app.guard import ACCOUNT_LOCKED
from loginguard.app.identity import hash_username
from loginguard.app.main import create_app

from .conftest import email_sender, sms_sender


@pytest.mark.asyncio
async def test_rate_limit_check_returns_429_with_retry_after(client) -> None:
    payload = {"realm": "demo", "clientIp": "198.51.100.7", "username": "alice"}

    for _ in range(3):
        allowed = await client.post("/ratelimit/check", json=payload)
        assert allowed.status_code == status.HTTP_200_OK
        assert allowed.json()["allowed"] is True
        assert set(allowed.json()) == {"allowed", "remainingTokens", "degraded"}

    denied = await client.post("/ratelimit/check", json=payload)

    assert denied.status_code == status.HTTP_429_TOO_MANY_REQUESTS
    assert int(denied.headers["Retry-After"]) >= 1
    assert denied.json()["detail"] == "Too many login attempts. Try again later."


@pytest.mark.asyncio
async def test_rate_limit_check_reads_forwarded_for(client, store) -> None:
    response = await client.post(
        "/ratelimit/check",
        json={"realm": "demo", "attemptedUsername": "alice"},
        headers={"X-Forwarded-For": "203.0.113.9, 10.0.0.1"},
    )

    assert response.status_code == status.HTTP_200_OK
    assert await store.count_keys("rl:i:demo:203.0.113.9") == 1
    assert await store.count_keys(f"rl:c:demo:203.0.113.9:{hash_username('alice')}") == 1


@pytest.mark.asyncio
async def test_lockout_flow_over_http(client, sink) -> None:
    for attempt in range(5):
        response = await client.post(
            "/lockout/demo/events",
            json={"userId": "alice", "success": False, "clientIp": "198.51.100.7"},
        )
        assert response.status_code == status.HTTP_200_OK
    assert response.json()["state"] == "locked_1h"
    assert response.json()["remainingSeconds"] == 3_600
    assert ACCOUNT_LOCKED in sink.actions()

    locked = await client.get("/lockout/demo/users/alice")
    assert locked.status_code == status.HTTP_423_LOCKED
    assert locked.headers["Retry-After"] == "3600"
    detail = locked.json()["detail"]
    assert detail["locked"] is True
    assert detail["tier"] == "1h"
    assert detail["remaining"] == "1h 0m"

    stats = await client.get("/lockout/demo/stats")
    assert stats.json()["lockedAccounts"] == 1
    assert stats.json()["accountsWithFailures"] == 1

    unlocked = await client.delete("/lockout/demo/users/alice")
    assert unlocked.status_code == status.HTTP_204_NO_CONTENT

    cleared = await client.get("/lockout/demo/users/alice")
    assert cleared.status_code == status.HTTP_200_OK
    assert cleared.json()["locked"] is False
    assert cleared.json()["remaining"] == "not locked"

    missing = await client.delete("/lockout/demo/users/alice")
    assert missing.status_code == status.HTTP_404_NOT_FOUND


@pytest.mark.asyncio
async def test_successful_login_event_reports_cleared_failures(client) -> None:
    await client.post("/lockout/demo/events", json={"userId": "alice", "success": False})

    response = await client.post("/lockout/demo/events", json={"userId": "alice", "success": True})

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["clearedFailures"] == 1
    assert response.json()["state"] is None


@pytest.mark.asyncio
async def test_otp_request_and_verify(client, senders) -> None:
    body = {"realm": "demo", "userId": "alice", "recipient": "alice@example.com"}

    issued = await client.post("/otp/email/request", json=body)
    assert issued.status_code == status.HTTP_200_OK
    assert issued.json() == {
        "state": "active",
        "issued": True,
        "cooldownSeconds": 0,
        "expiresIn": 300,
        "recipient": "a***@example.com",
    }

    wrong = await client.post("/otp/email/verify", json={"realm": "demo", "userId": "alice", "code": "abc"})
    assert wrong.json() == {"status": "invalid_code", "verified": False, "attemptsRemaining": 2}

    code = senders["email"].last_code
    verified = await client.post("/otp/email/verify", json={"realm": "demo", "userId": "alice", "code": code})
    assert verified.json()["verified"] is True


@pytest.mark.asyncio
async def test_otp_resend_cooldown_returns_429(client) -> None:
    body = {"realm": "demo", "userId": "alice", "recipient": "010-1234-5678"}
    await client.post("/otp/sms/request", json=body)

    first = await client.post("/otp/sms/resend", json=body)
    second = await client.post("/otp/sms/resend", json=body)

    assert first.status_code == status.HTTP_200_OK
    assert first.json()["delivered"] is True
    assert first.json()["recipient"] == "010-****-5678"
    assert second.status_code == status.HTTP_429_TOO_MANY_REQUESTS
    assert second.headers["Retry-After"] == "60"


@pytest.mark.asyncio
async def test_otp_errors_map_to_http_statuses(client) -> None:
    unknown = await client.post(
        "/otp/fax/request", json={"realm": "demo", "userId": "alice", "recipient": "alice@example.com"}
    )
    invalid_phone = await client.post(
        "/otp/sms/request", json={"realm": "demo", "userId": "alice", "recipient": "02-123-4567"}
    )

    assert unknown.status_code == status.HTTP_404_NOT_FOUND
    assert invalid_phone.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


@pytest.mark.asyncio
async def test_otp_delivery_failure_returns_502(settings, store, sink, clock) -> None:
    app = create_app(
        settings,
        store=store,
        senders={"email": email_sender(fail=True), "sms": sms_sender()},
        sink=sink,
        clock=clock,
    )
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
        response = await client.post(
            "/otp/email/request", json={"realm": "demo", "userId": "alice", "recipient": "alice@example.com"}
        )

    assert response.status_code == status.HTTP_502_BAD_GATEWAY
    assert await store.count_keys("email_otp:*") == 0


@pytest.mark.asyncio
async def test_store_outage_keeps_login_path_open(settings, failing_store, sink, clock) -> None:
    app = create_app(
        settings,
        store=failing_store,
        senders={"email": email_sender(), "sms": sms_sender()},
        sink=sink,
        clock=clock,
    )
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
        rate = await client.post("/ratelimit/check", json={"realm": "demo", "clientIp": "198.51.100.7"})
        lock = await client.get("/lockout/demo/users/alice")
        otp = await client.post(
            "/otp/email/request", json={"realm": "demo", "userId": "alice", "recipient": "alice@example.com"}
        )
        health = await client.get("/system/health")

    assert rate.status_code == status.HTTP_200_OK
    assert rate.json()["degraded"] is True
    assert lock.status_code == status.HTTP_200_OK
    assert otp.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
    assert health.json()["status"] == "degraded"


@pytest.mark.asyncio
async def test_purge_user_endpoint(client, store) -> None:
    await client.post("/lockout/demo/events", json={"userId": "alice", "success": False})
    await client.post(
        "/otp/email/request", json={"realm": "demo", "userId": "alice", "recipient": "alice@example.com"}
    )

    response = await client.delete("/realms/demo/users/alice")

    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"removed": 2}
    assert await store.count_keys("*:demo:alice") == 0


@pytest.mark.asyncio
async def test_health_reports_store_and_channels(client) -> None:
    response = await client.get("/system/health")

    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"status": "ok", "env": "test", "store": "reachable", "channels": ["email", "sms"]}


@pytest.mark.asyncio
async def test_routes_mount_under_prefix(settings, store, senders, sink, clock) -> None:
    app = create_app(settings, store=store, senders=senders, sink=sink, clock=clock, api_prefix="api")

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
        response = await client.get("/api/system/health")

    assert response.status_code == status.HTTP_200_OK
