"""Token bucket rate limiting for login attempts."""
from __future__ import annotations

import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .config import BucketTierSettings, RateLimitSettings
from .identity import hash_username
from .logging import get_logger
from .storage import AtomicScript, AtomicStore, Clock, MemoryTransaction, StoreUnavailable


logger = get_logger("loginguard.ratelimit")

KEY_PREFIX = "rl"


class Dimension(str, Enum):
    """Identity a bucket is keyed by."""

    IP = "ip"
    USER = "user"
    COMBINED = "combined"

    @property
    def key_type(self) -> str:
        return {"ip": "i", "user": "u", "combined": "c"}[self.value]


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
    """Outcome of a bucket check.

    ``degraded`` marks an allow that was granted because the store failed.
    """

    allowed: bool
    wait_seconds: int = 0
    remaining_tokens: Optional[float] = None
    dimension: Optional[Dimension] = None
    degraded: bool = False

    @property
    def retry_after(self) -> str:
        return str(max(1, self.wait_seconds))


_TOKEN_BUCKET_LUA = """
local key = KEYS[1]
local capacity = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local ttl = tonumber(ARGV[3])
local now = tonumber(ARGV[4])

local state = redis.call('HMGET', key, 'tokens', 'last_refill')
local tokens = tonumber(state[1])
local last_refill = tonumber(state[2])
if tokens == nil or last_refill == nil then
    tokens = capacity
    last_refill = now
end

local elapsed = math.max(0, now - last_refill) / 1000
tokens = math.max(0, math.min(capacity, tokens + elapsed * rate))

if tokens >= 1 then
    tokens = tokens - 1
    redis.call('HSET', key, 'tokens', tostring(tokens), 'last_refill', tostring(now))
    redis.call('EXPIRE', key, ttl)
    return {1, tostring(tokens), 0}
end

redis.call('HSET', key, 'tokens', tostring(tokens), 'last_refill', tostring(now))
local remaining = redis.call('TTL', key)
if remaining < 0 then
    redis.call('EXPIRE', key, ttl)
    remaining = ttl
end
local wait = remaining
if rate > 0 then
    wait = math.min(math.ceil((1 - tokens) / rate), remaining)
end
return {0, tostring(tokens), math.max(1, wait)}
"""


def _token_bucket(txn: MemoryTransaction, keys: list[str], args: list[str]) -> list:
    key = keys[0]
    capacity = float(args[0])
    rate = float(args[1])
    ttl = int(args[2])
    now = float(args[3])

    raw_tokens, raw_last_refill = txn.hmget(key, "tokens", "last_refill")
    if raw_tokens is None or raw_last_refill is None:
        tokens, last_refill = capacity, now
    else:
        tokens, last_refill = float(raw_tokens), float(raw_last_refill)

    elapsed = max(0.0, now - last_refill) / 1000
    tokens = max(0.0, min(capacity, tokens + elapsed * rate))

    if tokens >= 1:
        tokens -= 1
        txn.hset(key, {"tokens": tokens, "last_refill": int(now)})
        txn.expire(key, ttl)
        return [1, str(tokens), 0]

    txn.hset(key, {"tokens": tokens, "last_refill": int(now)})
    remaining = txn.ttl(key)
    if remaining < 0:
        txn.expire(key, ttl)
        remaining = ttl
    wait = remaining
    if rate > 0:
        wait = min(math.ceil((1 - tokens) / rate), remaining)
    return [0, str(tokens), max(1, wait)]


TOKEN_BUCKET = AtomicScript(name="token_bucket", lua=_TOKEN_BUCKET_LUA, emulate=_token_bucket)


class TokenBucketLimiter:
    """Refill-and-consume checks against buckets persisted in the store."""

    def __init__(
        self,
        store: AtomicStore,
        *,
        ttl_grace_seconds: int = 60,
        clock: Optional[Clock] = None,
    ) -> None:
        if ttl_grace_seconds < 0:
            raise ValueError("ttl_grace_seconds must not be negative")
        self._store = store
        self._ttl_grace_seconds = ttl_grace_seconds
        self._clock = clock or time.time

    @staticmethod
    def bucket_key(dimension: Dimension, realm: str, identifier: str) -> str:
        return f"{KEY_PREFIX}:{dimension.key_type}:{realm}:{identifier}"

    async def check_and_consume(
        self,
        dimension: Dimension,
        key: str,
        capacity: int,
        refill_per_second: float,
        window_seconds: int,
    ) -> RateLimitDecision:
        """Take one token from the bucket at ``key`` if one is available.

        The refill, the comparison and the write happen in one server-side
        script.  Store failures allow the request.
        """

        now_ms = int(self._clock() * 1000)
        ttl = window_seconds + self._ttl_grace_seconds
        try:
            allowed, tokens, wait = await self._store.run(
                TOKEN_BUCKET,
                keys=[key],
                args=[capacity, refill_per_second, ttl, now_ms],
            )
        except StoreUnavailable as exc:
            logger.warning(
                "rate_limit_store_unavailable",
                dimension=dimension.value,
                error=str(exc),
                policy="fail_open",
            )
            return RateLimitDecision(allowed=True, dimension=dimension, degraded=True)

        return RateLimitDecision(
            allowed=bool(int(allowed)),
            wait_seconds=int(wait),
            remaining_tokens=float(tokens),
            dimension=dimension,
        )


class LoginRateLimiter:
    """Apply the ip, user and ip+user buckets to a login attempt in order."""

    def __init__(self, limiter: TokenBucketLimiter, settings: RateLimitSettings) -> None:
        self._limiter = limiter
        self._settings = settings

    def _tiers(
        self, realm: str, client_ip: str, username: str | None
    ) -> list[tuple[Dimension, str, BucketTierSettings]]:
        tiers = [
            (Dimension.IP, self._limiter.bucket_key(Dimension.IP, realm, client_ip), self._settings.ip),
        ]
        if username:
            combined_id = f"{client_ip}:{hash_username(username)}"
            tiers.append(
                (Dimension.USER, self._limiter.bucket_key(Dimension.USER, realm, username), self._settings.user)
            )
            tiers.append(
                (
                    Dimension.COMBINED,
                    self._limiter.bucket_key(Dimension.COMBINED, realm, combined_id),
                    self._settings.combined,
                )
            )
        return tiers

    async def check(self, realm: str, client_ip: str | None, username: str | None = None) -> RateLimitDecision:
        if not self._settings.enabled:
            return RateLimitDecision(allowed=True)
        if not client_ip:
            logger.debug("rate_limit_skipped", realm=realm, reason="client_ip_unknown")
            return RateLimitDecision(allowed=True)

        remaining: list[float] = []
        degraded = False
        for dimension, key, tier in self._tiers(realm, client_ip, username):
            decision = await self._limiter.check_and_consume(
                dimension,
                key,
                capacity=tier.capacity,
                refill_per_second=tier.refill_per_second,
                window_seconds=tier.window_seconds,
            )
            if not decision.allowed:
                logger.info(
                    "rate_limit_denied",
                    realm=realm,
                    dimension=dimension.value,
                    client_ip=client_ip,
                    user_hash=hash_username(username) if username else None,
                    wait_seconds=decision.wait_seconds,
                )
                return decision
            degraded = degraded or decision.degraded
            if decision.remaining_tokens is not None:
                remaining.append(decision.remaining_tokens)

        return RateLimitDecision(
            allowed=True,
            remaining_tokens=min(remaining) if remaining else None,
            degraded=degraded,
        )


__all__ = [
    "Dimension",
    "LoginRateLimiter",
    "RateLimitDecision",
    "TOKEN_BUCKET",
    "TokenBucketLimiter",
]
