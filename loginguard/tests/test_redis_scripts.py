"""Engine scenarios executed through the Lua scripts on a Redis server."""

from __future__ import annotations

import pytest

from loginguard.app.config import EmailOtpSettings, LockoutSettings
from loginguard.app.lockout import AccountLockoutEngine, LockoutState, LockTier
from loginguard.app.otp import OneTimeCodeEngine, OtpState, ResendStatus, VerificationStatus
from loginguard.app.ratelimit import Dimension, TokenBucketLimiter

from .conftest import email_sender, wrong_code


RECIPIENT = "alice@example.com"


@pytest.mark.asyncio
async def test_token_bucket_burst_then_denied(redis_store, clock) -> None:
    limiter = TokenBucketLimiter(redis_store, clock=clock)
    key = limiter.bucket_key(Dimension.IP, "demo", "198.51.100.7")

    allowed = [await limiter.check_and_consume(Dimension.IP, key, 5, 0.5, 300) for _ in range(5)]
    denied = await limiter.check_and_consume(Dimension.IP, key, 5, 0.5, 300)

    assert all(decision.allowed and not decision.degraded for decision in allowed)
    assert [decision.remaining_tokens for decision in allowed] == [4.0, 3.0, 2.0, 1.0, 0.0]
    assert not denied.allowed
    assert denied.wait_seconds == 2
    assert 0 < await redis_store.ttl(key) <= 360

    clock.advance(2)
    assert (await limiter.check_and_consume(Dimension.IP, key, 5, 0.5, 300)).allowed


@pytest.mark.asyncio
async def test_token_bucket_without_refill_waits_for_expiry(redis_store, clock) -> None:
    limiter = TokenBucketLimiter(redis_store, clock=clock)
    key = limiter.bucket_key(Dimension.USER, "demo", "alice")

    for _ in range(3):
        await limiter.check_and_consume(Dimension.USER, key, 3, 0.0, 900)
    denied = await limiter.check_and_consume(Dimension.USER, key, 3, 0.0, 900)

    assert not denied.allowed
    assert 955 <= denied.wait_seconds <= 960


@pytest.mark.asyncio
async def test_lockout_locks_then_reports_already_locked(redis_store, clock) -> None:
    engine = AccountLockoutEngine(redis_store, LockoutSettings(), clock=clock)

    states = [(await engine.on_failure("demo", "alice")).state for _ in range(5)]
    again = await engine.on_failure("demo", "alice")
    status = await engine.check_lock("demo", "alice")

    assert states == [
        LockoutState.NORMAL,
        LockoutState.NORMAL,
        LockoutState.WARNING,
        LockoutState.WARNING,
        LockoutState.LOCKED_1H,
    ]
    assert again.state is LockoutState.ALREADY_LOCKED
    assert again.tier is LockTier.ONE_HOUR
    assert again.failure_count == 6
    assert 3_590 <= again.remaining_seconds <= 3_600
    assert status.locked
    assert status.tier is LockTier.ONE_HOUR
    assert status.failure_count == 5

    assert await engine.on_success("demo", "alice") == 6
    assert (await engine.check_lock("demo", "alice")).locked
    assert await engine.unlock("demo", "alice")
    assert not (await engine.check_lock("demo", "alice")).locked


@pytest.mark.asyncio
async def test_lockout_prefers_day_tier_when_thresholds_meet(redis_store, clock) -> None:
    engine = AccountLockoutEngine(
        redis_store, LockoutSettings(warning_threshold=2, threshold_1h=2, threshold_24h=2), clock=clock
    )

    await engine.on_failure("demo", "alice")
    result = await engine.on_failure("demo", "alice")

    assert result.state is LockoutState.LOCKED_24H
    assert result.remaining_seconds == 86_400
    assert (await engine.check_lock("demo", "alice")).tier is LockTier.ONE_DAY


@pytest.mark.asyncio
async def test_suspicious_ip_tracking(redis_store, clock) -> None:
    engine = AccountLockoutEngine(redis_store, LockoutSettings(suspicious_ip_threshold=3), clock=clock)

    results = [
        await engine.detect_suspicious_ip("demo", "203.0.113.50", user) for user in ("alice", "bob", "alice", "carol")
    ]

    assert [result.target_count for result in results] == [1, 2, 2, 3]
    assert results[-1].suspicious
    assert not results[1].suspicious


@pytest.mark.asyncio
async def test_otp_attempts_exceeded(redis_store) -> None:
    sender = email_sender()
    engine = OneTimeCodeEngine(redis_store, "email", EmailOtpSettings(max_attempts=3), sender)
    await engine.request_code("demo", "alice", RECIPIENT)
    wrong = wrong_code(sender.last_code)

    results = [await engine.verify("demo", "alice", wrong) for _ in range(3)]
    late = await engine.verify("demo", "alice", sender.last_code)

    assert [result.status for result in results] == [
        VerificationStatus.INVALID_CODE,
        VerificationStatus.INVALID_CODE,
        VerificationStatus.ATTEMPTS_EXCEEDED,
    ]
    assert results[0].attempts_remaining == 2
    assert late.status is VerificationStatus.ATTEMPTS_EXCEEDED
    assert (await engine.status("demo", "alice")).state is OtpState.ATTEMPTS_EXCEEDED


@pytest.mark.asyncio
async def test_otp_verify_success_clears_state(redis_store) -> None:
    sender = email_sender()
    engine = OneTimeCodeEngine(redis_store, "email", EmailOtpSettings(), sender)
    await engine.request_code("demo", "alice", RECIPIENT)

    assert (await engine.status("demo", "alice")).state is OtpState.ACTIVE
    assert (await engine.verify("demo", "alice", sender.last_code)).verified
    assert (await engine.verify("demo", "alice", sender.last_code)).status is VerificationStatus.EXPIRED
    assert await redis_store.count_keys("email_otp:*") == 0


@pytest.mark.asyncio
async def test_otp_resend_cooldown(redis_store) -> None:
    sender = email_sender()
    engine = OneTimeCodeEngine(redis_store, "email", EmailOtpSettings(resend_cooldown_seconds=60), sender)
    await engine.request_code("demo", "alice", RECIPIENT)

    first = await engine.request_resend("demo", "alice", RECIPIENT)
    second = await engine.request_resend("demo", "alice", RECIPIENT)

    assert first.status is ResendStatus.SUCCESS
    assert first.delivered
    assert await redis_store.get("email_otp:otp:demo:alice") == sender.last_code
    assert second.status is ResendStatus.COOLDOWN
    assert 55 <= second.cooldown_seconds <= 60
    assert len(sender.sent) == 2
