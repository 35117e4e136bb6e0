from __future__ import annotations

import pytest

from loginguard.app.config import Settings
from loginguard.app.events import LoggingEventSink, SecurityEvent, emit_safely
from loginguard.app.guard import ACCOUNT_LOCKED, IP_SUSPICIOUS, LOCKOUT_WARNING, UnknownChannel, build_guard
from loginguard.app.lockout import LockoutState
from loginguard.app.otp import VerificationStatus


def _guard(settings, store, senders, sink, clock):
    return build_guard(settings, store, senders=senders, sink=sink, clock=clock)


@pytest.mark.asyncio
async def test_failed_logins_emit_warning_and_lock_events(settings, store, senders, sink, clock) -> None:
    guard = _guard(settings, store, senders, sink, clock)

    outcomes = [
        await guard.record_login_outcome("demo", "alice", False, client_ip="198.51.100.7") for _ in range(5)
    ]

    assert outcomes[-1].lockout.state is LockoutState.LOCKED_1H
    assert sink.actions() == [LOCKOUT_WARNING, LOCKOUT_WARNING, ACCOUNT_LOCKED]
    locked_event = sink.events[-1]
    assert locked_event.user_id == "alice"
    assert locked_event.ip_address == "198.51.100.7"
    assert locked_event.metadata == {"tier": "1h", "failure_count": 5, "duration_seconds": 3_600}
    assert (await guard.check_account_lock("demo", "alice")).locked


@pytest.mark.asyncio
async def test_notifications_can_be_disabled(store, senders, sink, clock) -> None:
    settings = Settings(_env_file=None, store={"backend": "memory"}, lockout={"notifications_enabled": False})
    guard = _guard(settings, store, senders, sink, clock)

    for _ in range(5):
        await guard.record_login_outcome("demo", "alice", False, client_ip="198.51.100.7")

    assert sink.events == []
    assert (await guard.check_account_lock("demo", "alice")).locked


@pytest.mark.asyncio
async def test_attacks_on_many_accounts_flag_the_ip(store, senders, sink, clock) -> None:
    settings = Settings(_env_file=None, store={"backend": "memory"}, lockout={"suspicious_ip_threshold": 3})
    guard = _guard(settings, store, senders, sink, clock)

    outcomes = [
        await guard.record_login_outcome("demo", user, False, client_ip="203.0.113.50")
        for user in ("alice", "bob", "carol")
    ]

    assert [outcome.suspicious_ip.suspicious for outcome in outcomes] == [False, False, True]
    assert sink.actions() == [IP_SUSPICIOUS]
    assert sink.events[0].metadata == {"target_count": 3}


@pytest.mark.asyncio
async def test_success_clears_failures_and_unknown_users_are_ignored(settings, store, senders, sink, clock) -> None:
    guard = _guard(settings, store, senders, sink, clock)
    await guard.record_login_outcome("demo", "alice", False)
    await guard.record_login_outcome("demo", "alice", False)

    success = await guard.record_login_outcome("demo", "alice", True)
    anonymous = await guard.record_login_outcome("demo", None, False, client_ip="198.51.100.7")

    assert success.cleared_failures == 2
    assert success.lockout is None
    assert anonymous.lockout is None
    assert await store.count_keys("lockout:ip_attacks:*") == 0


@pytest.mark.asyncio
async def test_rate_limit_resolves_identity(settings, store, senders, sink, clock) -> None:
    guard = _guard(settings, store, senders, sink, clock)

    decision = await guard.check_rate_limit(
        "demo",
        headers={"X-Real-IP": "198.51.100.7"},
        remote_addr="10.0.0.1",
        attempted_username="alice",
        form_username="ignored",
    )

    assert decision.allowed
    assert await store.count_keys("rl:i:demo:198.51.100.7") == 1
    assert await store.count_keys("rl:u:demo:alice") == 1


@pytest.mark.asyncio
async def test_otp_round_trip_through_guard(settings, store, senders, sink, clock) -> None:
    guard = _guard(settings, store, senders, sink, clock)

    issued = await guard.request_otp("demo", "alice", "sms", "010-1234-5678")
    verified = await guard.verify_otp("demo", "alice", "sms", senders["sms"].last_code)

    assert issued.issued
    assert verified.status is VerificationStatus.SUCCESS
    assert guard.channels == ["email", "sms"]
    with pytest.raises(UnknownChannel):
        guard.otp_engine("fax")


@pytest.mark.asyncio
async def test_purge_user_removes_every_record(settings, store, senders, sink, clock) -> None:
    guard = _guard(settings, store, senders, sink, clock)
    for _ in range(5):
        await guard.record_login_outcome("demo", "alice", False)
    await guard.request_otp("demo", "alice", "email", "alice@example.com")
    await guard.request_otp("demo", "alice", "sms", "01012345678")
    await guard.resend_otp("demo", "alice", "sms", "01012345678")

    assert await guard.purge_user("demo", "alice") == 5
    assert not (await guard.check_account_lock("demo", "alice")).locked
    assert await store.count_keys("*:demo:alice") == 0


@pytest.mark.asyncio
async def test_failing_sink_does_not_break_login_flow() -> None:
    class ExplodingSink:
        async def emit(self, event: SecurityEvent) -> None:
            raise RuntimeError("sink down")

    await emit_safely(ExplodingSink(), SecurityEvent(action=ACCOUNT_LOCKED, realm="demo"))
    await emit_safely(None, SecurityEvent(action=ACCOUNT_LOCKED, realm="demo"))
    await LoggingEventSink().emit(SecurityEvent(action=ACCOUNT_LOCKED, realm="demo", metadata={"realm": "x"}))
