"""Entry points the hosting authentication pipeline calls per login attempt."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional

from .config import Settings
from .delivery import CodeSender, EmailCodeSender, SmsCodeSender
from .events import SecurityEvent, SecurityEventSink, emit_safely
from .identity import resolve_client_ip, resolve_username
from .lockout import AccountLockoutEngine, LockoutResult, LockoutState, LockStatus, SuspiciousIpResult
from .logging import get_logger
from .otp import CodeRequestResult, OneTimeCodeEngine, ResendResult, VerificationResult
from .ratelimit import LoginRateLimiter, RateLimitDecision, TokenBucketLimiter
from .storage import AtomicStore, Clock


logger = get_logger("loginguard.guard")

ACCOUNT_LOCKED = "account.locked"
LOCKOUT_WARNING = "account.lockout_warning"
IP_SUSPICIOUS = "ip.suspicious"


class UnknownChannel(KeyError):
    """No one-time code engine is registered for the requested channel."""


@dataclass(frozen=True, slots=True)
class LoginOutcome:
    lockout: Optional[LockoutResult] = None
    cleared_failures: int = 0
    suspicious_ip: Optional[SuspiciousIpResult] = None


class LoginGuard:
    """Rate limiting, lockout and one-time codes behind one object."""

    def __init__(
        self,
        *,
        rate_limiter: LoginRateLimiter,
        lockout: AccountLockoutEngine,
        otp_engines: Mapping[str, OneTimeCodeEngine],
        sink: SecurityEventSink | None = None,
        store: AtomicStore | None = None,
    ) -> None:
        self._rate_limiter = rate_limiter
        self._lockout = lockout
        self._otp_engines = dict(otp_engines)
        self._sink = sink
        self._store = store

    @property
    def lockout(self) -> AccountLockoutEngine:
        return self._lockout

    @property
    def channels(self) -> list[str]:
        return sorted(self._otp_engines)

    def otp_engine(self, channel: str) -> OneTimeCodeEngine:
        try:
            return self._otp_engines[channel]
        except KeyError:
            raise UnknownChannel(channel) from None

    async def check_rate_limit(
        self,
        realm: str,
        *,
        headers: Mapping[str, str] | None = None,
        remote_addr: str | None = None,
        authenticated_user: str | None = None,
        attempted_username: str | None = None,
        form_username: str | None = None,
    ) -> RateLimitDecision:
        client_ip = resolve_client_ip(headers, remote_addr)
        username = resolve_username(authenticated_user, attempted_username, form_username)
        return await self._rate_limiter.check(realm, client_ip, username)

    async def check_account_lock(self, realm: str, user_id: str) -> LockStatus:
        return await self._lockout.check_lock(realm, user_id)

    async def record_login_outcome(
        self,
        realm: str,
        user_id: str | None,
        success: bool,
        *,
        client_ip: str | None = None,
    ) -> LoginOutcome:
        """Feed a finished login attempt into the lockout engine.

        Failures may lock the account and flag ``client_ip`` as suspicious;
        successes clear the failure counter.  Attempts without a user are
        ignored.
        """

        if not user_id:
            return LoginOutcome()

        if success:
            cleared = await self._lockout.on_success(realm, user_id)
            return LoginOutcome(cleared_failures=cleared)

        result = await self._lockout.on_failure(realm, user_id)
        notify = self._lockout.settings.notifications_enabled
        if notify and result.state in {LockoutState.LOCKED_1H, LockoutState.LOCKED_24H}:
            await emit_safely(
                self._sink,
                SecurityEvent(
                    action=ACCOUNT_LOCKED,
                    realm=realm,
                    user_id=user_id,
                    ip_address=client_ip,
                    metadata={
                        "tier": result.tier.value if result.tier else None,
                        "failure_count": result.failure_count,
                        "duration_seconds": result.remaining_seconds,
                    },
                ),
            )
        elif notify and result.state is LockoutState.WARNING:
            await emit_safely(
                self._sink,
                SecurityEvent(
                    action=LOCKOUT_WARNING,
                    realm=realm,
                    user_id=user_id,
                    ip_address=client_ip,
                    metadata={"failure_count": result.failure_count},
                ),
            )

        suspicious = None
        if client_ip:
            suspicious = await self._lockout.detect_suspicious_ip(realm, client_ip, user_id)
            if suspicious.suspicious and notify:
                await emit_safely(
                    self._sink,
                    SecurityEvent(
                        action=IP_SUSPICIOUS,
                        realm=realm,
                        ip_address=client_ip,
                        metadata={"target_count": suspicious.target_count},
                    ),
                )
        return LoginOutcome(lockout=result, suspicious_ip=suspicious)

    async def request_otp(self, realm: str, user_id: str, channel: str, recipient: str) -> CodeRequestResult:
        return await self.otp_engine(channel).request_code(realm, user_id, recipient)

    async def verify_otp(self, realm: str, user_id: str, channel: str, code: str | None) -> VerificationResult:
        return await self.otp_engine(channel).verify(realm, user_id, code)

    async def resend_otp(self, realm: str, user_id: str, channel: str, recipient: str) -> ResendResult:
        return await self.otp_engine(channel).request_resend(realm, user_id, recipient)

    async def purge_user(self, realm: str, user_id: str) -> int:
        """Remove every lockout and one-time code record kept for a deleted user."""

        removed = await self._lockout.cleanup_user(realm, user_id)
        for engine in self._otp_engines.values():
            removed += await engine.purge(realm, user_id)
        logger.info("user_records_purged", realm=realm, user_id=user_id, removed=removed)
        return removed

    async def healthy(self) -> bool:
        if self._store is None:
            return await self._lockout.healthy()
        return await self._store.ping()


def build_guard(
    settings: Settings,
    store: AtomicStore,
    *,
    senders: Mapping[str, CodeSender] | None = None,
    sink: SecurityEventSink | None = None,
    clock: Optional[Clock] = None,
) -> LoginGuard:
    """Wire the engines for ``settings`` around a single ``store``."""

    if senders is None:
        senders = {
            "email": EmailCodeSender(settings.delivery.email),
            "sms": SmsCodeSender(settings.delivery.sms),
        }

    limiter = TokenBucketLimiter(store, ttl_grace_seconds=settings.ratelimit.ttl_grace_seconds, clock=clock)
    engines = {
        channel: OneTimeCodeEngine(store, channel, settings.otp_channel(channel), sender)
        for channel, sender in senders.items()
    }
    return LoginGuard(
        rate_limiter=LoginRateLimiter(limiter, settings.ratelimit),
        lockout=AccountLockoutEngine(store, settings.lockout, clock=clock),
        otp_engines=engines,
        sink=sink,
        store=store,
    )


__all__ = [
    "ACCOUNT_LOCKED",
    "IP_SUSPICIOUS",
    "LOCKOUT_WARNING",
    "LoginGuard",
    "LoginOutcome",
    "UnknownChannel",
    "build_guard",
]
