"""Escalating account lockout and suspicious IP detection.

Failure counters, lock records and per-IP attack sets live in the store and
are mutated only through the scripts below, so concurrent login failures for
the same account on different instances are serialized by the store.

Lock records are hashes with ``timestamp`` (epoch seconds), ``tier`` (``1h``
or ``24h``) and ``failure_count`` fields.  They expire on their own; an active
lock is only removed early by :meth:`AccountLockoutEngine.unlock`.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from .config import LockoutSettings
from .logging import get_logger
from .storage import AtomicScript, AtomicStore, Clock, MemoryTransaction, StoreUnavailable


logger = get_logger("loginguard.lockout")

KEY_PREFIX = "lockout"
FAILURES = "failures"
LOCKED = "locked"
SUSPICIOUS_IP = "suspicious_ip"
IP_ATTACKS = "ip_attacks"


class LockoutState(str, Enum):
    NORMAL = "normal"
    WARNING = "warning"
    LOCKED_1H = "locked_1h"
    LOCKED_24H = "locked_24h"
    ALREADY_LOCKED = "already_locked"
    ERROR = "error"


class LockTier(str, Enum):
    ONE_HOUR = "1h"
    ONE_DAY = "24h"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: object) -> "LockTier":
        try:
            return cls(str(value))
        except ValueError:
            return cls.UNKNOWN


@dataclass(frozen=True, slots=True)
class LockoutResult:
    state: LockoutState
    failure_count: int
    remaining_seconds: int = 0
    tier: Optional[LockTier] = None

    @property
    def locked(self) -> bool:
        return self.state in {LockoutState.LOCKED_1H, LockoutState.LOCKED_24H, LockoutState.ALREADY_LOCKED}


@dataclass(frozen=True, slots=True)
class LockStatus:
    locked: bool
    remaining_seconds: int = 0
    tier: Optional[LockTier] = None
    failure_count: int = 0
    locked_at: Optional[datetime] = None

    def remaining_formatted(self) -> str:
        if not self.locked or self.remaining_seconds <= 0:
            return "not locked"
        hours, rest = divmod(self.remaining_seconds, 3600)
        minutes, seconds = divmod(rest, 60)
        if hours:
            return f"{hours}h {minutes}m"
        if minutes:
            return f"{minutes}m {seconds}s"
        return f"{seconds}s"


@dataclass(frozen=True, slots=True)
class SuspiciousIpResult:
    suspicious: bool
    target_count: int


@dataclass(frozen=True, slots=True)
class LockoutStats:
    locked_accounts: int
    accounts_with_failures: int
    suspicious_ips: int
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


_RECORD_FAILURE_LUA = """
local failure_key = KEYS[1]
local lock_key = KEYS[2]
local threshold_1h = tonumber(ARGV[1])
local threshold_24h = tonumber(ARGV[2])
local warning_threshold = tonumber(ARGV[3])
local duration_1h = tonumber(ARGV[4])
local duration_24h = tonumber(ARGV[5])
local failure_ttl = tonumber(ARGV[6])
local now = ARGV[7]

local failure_count = redis.call('INCR', failure_key)
redis.call('EXPIRE', failure_key, failure_ttl)

if redis.call('EXISTS', lock_key) == 1 then
    local lock_ttl = redis.call('TTL', lock_key)
    local tier = redis.call('HGET', lock_key, 'tier') or 'unknown'
    return {'ALREADY_LOCKED', failure_count, lock_ttl, tier}
end

if failure_count >= threshold_24h then
    redis.call('HSET', lock_key, 'timestamp', now, 'tier', '24h', 'failure_count', failure_count)
    redis.call('EXPIRE', lock_key, duration_24h)
    return {'LOCKED_24H', failure_count, duration_24h, '24h'}
elseif failure_count >= threshold_1h then
    redis.call('HSET', lock_key, 'timestamp', now, 'tier', '1h', 'failure_count', failure_count)
    redis.call('EXPIRE', lock_key, duration_1h)
    return {'LOCKED_1H', failure_count, duration_1h, '1h'}
elseif failure_count >= warning_threshold then
    return {'WARNING', failure_count, 0, ''}
end
return {'NORMAL', failure_count, 0, ''}
"""


def _record_failure(txn: MemoryTransaction, keys: list[str], args: list[str]) -> list:
    failure_key, lock_key = keys
    threshold_1h, threshold_24h, warning_threshold = int(args[0]), int(args[1]), int(args[2])
    duration_1h, duration_24h, failure_ttl = int(args[3]), int(args[4]), int(args[5])
    now = args[6]

    failure_count = txn.incr(failure_key)
    txn.expire(failure_key, failure_ttl)

    if txn.exists(lock_key):
        tier = txn.hmget(lock_key, "tier")[0] or "unknown"
        return ["ALREADY_LOCKED", failure_count, txn.ttl(lock_key), tier]

    if failure_count >= threshold_24h:
        txn.hset(lock_key, {"timestamp": now, "tier": "24h", "failure_count": failure_count})
        txn.expire(lock_key, duration_24h)
        return ["LOCKED_24H", failure_count, duration_24h, "24h"]
    if failure_count >= threshold_1h:
        txn.hset(lock_key, {"timestamp": now, "tier": "1h", "failure_count": failure_count})
        txn.expire(lock_key, duration_1h)
        return ["LOCKED_1H", failure_count, duration_1h, "1h"]
    if failure_count >= warning_threshold:
        return ["WARNING", failure_count, 0, ""]
    return ["NORMAL", failure_count, 0, ""]


_CHECK_LOCK_LUA = """
local lock_key = KEYS[1]
local failure_key = KEYS[2]

local failures = tonumber(redis.call('GET', failure_key) or '0')
local raw = redis.call('HGETALL', lock_key)
if #raw == 0 then
    return {0, 0, '', failures, 0}
end

local lock = {}
for i = 1, #raw, 2 do
    lock[raw[i]] = raw[i + 1]
end
local lock_ttl = redis.call('TTL', lock_key)
return {1, lock_ttl, lock['tier'] or 'unknown', tonumber(lock['failure_count'] or failures), tonumber(lock['timestamp'] or '0')}
"""


def _check_lock(txn: MemoryTransaction, keys: list[str], args: list[str]) -> list:
    lock_key, failure_key = keys
    failures = int(txn.get(failure_key) or 0)
    lock = txn.hgetall(lock_key)
    if not lock:
        return [0, 0, "", failures, 0]
    return [
        1,
        txn.ttl(lock_key),
        lock.get("tier") or "unknown",
        int(lock.get("failure_count") or failures),
        int(lock.get("timestamp") or 0),
    ]


_RESET_FAILURES_LUA = """
local previous = redis.call('GET', KEYS[1])
redis.call('DEL', KEYS[1])
return tonumber(previous or '0')
"""


def _reset_failures(txn: MemoryTransaction, keys: list[str], args: list[str]) -> int:
    previous = txn.get(keys[0])
    txn.delete(keys[0])
    return int(previous or 0)


_TRACK_IP_LUA = """
local attacks_key = KEYS[1]
local suspicious_key = KEYS[2]
local target_user_id = ARGV[1]
local threshold = tonumber(ARGV[2])
local ttl = tonumber(ARGV[3])

redis.call('SADD', attacks_key, target_user_id)
redis.call('EXPIRE', attacks_key, ttl)
local target_count = redis.call('SCARD', attacks_key)

if target_count >= threshold then
    redis.call('SET', suspicious_key, target_count, 'EX', ttl)
    return {'SUSPICIOUS', target_count}
end
return {'NORMAL', target_count}
"""


def _track_ip(txn: MemoryTransaction, keys: list[str], args: list[str]) -> list:
    attacks_key, suspicious_key = keys
    target_user_id, threshold, ttl = args[0], int(args[1]), int(args[2])

    txn.sadd(attacks_key, target_user_id)
    txn.expire(attacks_key, ttl)
    target_count = txn.scard(attacks_key)

    if target_count >= threshold:
        txn.set(suspicious_key, target_count, ex=ttl)
        return ["SUSPICIOUS", target_count]
    return ["NORMAL", target_count]


RECORD_FAILURE = AtomicScript(name="lockout_record_failure", lua=_RECORD_FAILURE_LUA, emulate=_record_failure)
CHECK_LOCK = AtomicScript(name="lockout_check_lock", lua=_CHECK_LOCK_LUA, emulate=_check_lock)
RESET_FAILURES = AtomicScript(name="lockout_reset_failures", lua=_RESET_FAILURES_LUA, emulate=_reset_failures)
TRACK_IP = AtomicScript(name="lockout_track_ip", lua=_TRACK_IP_LUA, emulate=_track_ip)


def lockout_key(kind: str, realm: str, identifier: str) -> str:
    return f"{KEY_PREFIX}:{kind}:{realm}:{identifier}"


class AccountLockoutEngine:
    """Track failed logins per (realm, user) and lock accounts in tiers."""

    def __init__(
        self,
        store: AtomicStore,
        settings: LockoutSettings | None = None,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self._store = store
        self._settings = settings or LockoutSettings()
        self._clock = clock or time.time

    @property
    def settings(self) -> LockoutSettings:
        return self._settings

    async def on_failure(
        self,
        realm: str,
        user_id: str,
        policy: LockoutSettings | None = None,
    ) -> LockoutResult:
        """Count a failed login and lock the account once a tier threshold is met.

        The 24h threshold is checked before the 1h threshold.  When a lock is
        already active the counter still increments but the lock is left as is.
        Store failures produce an ``ERROR`` result; the login proceeds.
        """

        policy = policy or self._settings
        keys = [lockout_key(FAILURES, realm, user_id), lockout_key(LOCKED, realm, user_id)]
        args = [
            policy.threshold_1h,
            policy.threshold_24h,
            policy.warning_threshold,
            policy.duration_1h_seconds,
            policy.duration_24h_seconds,
            policy.failure_window_seconds,
            int(self._clock()),
        ]
        try:
            raw = await self._store.run(RECORD_FAILURE, keys=keys, args=args)
        except StoreUnavailable as exc:
            logger.warning("lockout_store_unavailable", operation="on_failure", realm=realm, error=str(exc))
            return LockoutResult(state=LockoutState.ERROR, failure_count=0)

        label, failure_count, remaining, tier = raw
        try:
            state = LockoutState(str(label).lower())
        except ValueError:
            logger.error("lockout_unexpected_result", result=str(label))
            return LockoutResult(state=LockoutState.ERROR, failure_count=int(failure_count))

        result = LockoutResult(
            state=state,
            failure_count=int(failure_count),
            remaining_seconds=max(0, int(remaining)),
            tier=LockTier.parse(tier) if tier else None,
        )
        if state in {LockoutState.LOCKED_1H, LockoutState.LOCKED_24H}:
            logger.warning(
                "account_locked",
                realm=realm,
                user_id=user_id,
                tier=result.tier.value if result.tier else None,
                failure_count=result.failure_count,
                duration_seconds=result.remaining_seconds,
            )
        else:
            logger.info("login_failure_recorded", realm=realm, user_id=user_id, state=state.value, failure_count=result.failure_count)
        return result

    async def on_success(self, realm: str, user_id: str) -> int:
        """Clear the failure counter and return its previous value.

        An active lock record is left untouched.
        """

        try:
            previous = await self._store.run(RESET_FAILURES, keys=[lockout_key(FAILURES, realm, user_id)], args=[])
        except StoreUnavailable as exc:
            logger.warning("lockout_store_unavailable", operation="on_success", realm=realm, error=str(exc))
            return 0
        previous = int(previous or 0)
        if previous:
            logger.info("failure_counter_reset", realm=realm, user_id=user_id, previous_count=previous)
        return previous

    async def check_lock(self, realm: str, user_id: str) -> LockStatus:
        keys = [lockout_key(LOCKED, realm, user_id), lockout_key(FAILURES, realm, user_id)]
        try:
            locked, remaining, tier, failure_count, timestamp = await self._store.run(CHECK_LOCK, keys=keys, args=[])
        except StoreUnavailable as exc:
            logger.warning(
                "lockout_store_unavailable",
                operation="check_lock",
                realm=realm,
                error=str(exc),
                policy="fail_open",
            )
            return LockStatus(locked=False)

        if not int(locked):
            return LockStatus(locked=False, failure_count=int(failure_count))
        timestamp = int(timestamp)
        return LockStatus(
            locked=True,
            remaining_seconds=max(0, int(remaining)),
            tier=LockTier.parse(tier),
            failure_count=int(failure_count),
            locked_at=datetime.fromtimestamp(timestamp, tz=timezone.utc) if timestamp else None,
        )

    async def detect_suspicious_ip(
        self,
        realm: str,
        client_ip: str,
        target_user_id: str,
        threshold: int | None = None,
    ) -> SuspiciousIpResult:
        """Record ``target_user_id`` as attacked from ``client_ip``.

        The result is informational; nothing is blocked by IP here.
        """

        threshold = threshold or self._settings.suspicious_ip_threshold
        keys = [lockout_key(IP_ATTACKS, realm, client_ip), lockout_key(SUSPICIOUS_IP, realm, client_ip)]
        args = [target_user_id, threshold, self._settings.suspicious_ip_ttl_seconds]
        try:
            label, target_count = await self._store.run(TRACK_IP, keys=keys, args=args)
        except StoreUnavailable as exc:
            logger.warning("lockout_store_unavailable", operation="detect_suspicious_ip", realm=realm, error=str(exc))
            return SuspiciousIpResult(suspicious=False, target_count=0)

        result = SuspiciousIpResult(suspicious=label == "SUSPICIOUS", target_count=int(target_count))
        if result.suspicious:
            logger.warning("suspicious_ip_detected", realm=realm, client_ip=client_ip, target_count=result.target_count)
        return result

    async def unlock(self, realm: str, user_id: str) -> bool:
        try:
            deleted = await self._store.delete(lockout_key(LOCKED, realm, user_id), lockout_key(FAILURES, realm, user_id))
        except StoreUnavailable as exc:
            logger.warning("lockout_store_unavailable", operation="unlock", realm=realm, error=str(exc))
            return False
        if deleted:
            logger.info("account_unlocked", realm=realm, user_id=user_id)
        return deleted > 0

    async def cleanup_user(self, realm: str, user_id: str) -> int:
        try:
            deleted = await self._store.delete(lockout_key(FAILURES, realm, user_id), lockout_key(LOCKED, realm, user_id))
        except StoreUnavailable as exc:
            logger.warning("lockout_store_unavailable", operation="cleanup_user", realm=realm, error=str(exc))
            return 0
        if deleted:
            logger.info("lockout_user_data_removed", realm=realm, user_id=user_id, deleted_keys=deleted)
        return deleted

    async def stats(self, realm: str) -> LockoutStats:
        try:
            locked = await self._store.count_keys(lockout_key(LOCKED, realm, "*"))
            failures = await self._store.count_keys(lockout_key(FAILURES, realm, "*"))
            suspicious = await self._store.count_keys(lockout_key(SUSPICIOUS_IP, realm, "*"))
        except StoreUnavailable as exc:
            logger.warning("lockout_store_unavailable", operation="stats", realm=realm, error=str(exc))
            return LockoutStats(0, 0, 0)
        return LockoutStats(locked_accounts=locked, accounts_with_failures=failures, suspicious_ips=suspicious)

    async def healthy(self) -> bool:
        return await self._store.ping()


__all__ = [
    "AccountLockoutEngine",
    "LockStatus",
    "LockTier",
    "LockoutResult",
    "LockoutState",
    "LockoutStats",
    "SuspiciousIpResult",
    "lockout_key",
]
