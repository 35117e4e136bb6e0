"""One-time code issuance and verification for e-mail and SMS.

Each (channel, realm, user) owns three records: the active code, the count of
wrong guesses and a resend cooldown sentinel.  Status checks, verification and
resend permission are single store scripts.  A new code is delivered before it
is stored so a failed send never leaves a code the user never received.
"""
from __future__ import annotations

import math
import secrets
import string
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .config import OtpChannelSettings
from .delivery import CodeSender, DeliveryFailure
from .logging import get_logger
from .storage import AtomicScript, AtomicStore, MemoryTransaction, StoreUnavailable


logger = get_logger("loginguard.otp")

CODE_KEY = "otp"
ATTEMPTS_KEY = "att"
RESEND_KEY = "res"

DELIVERY_FAILED = "delivery_failed"
STORE_UNAVAILABLE = "store_unavailable"


class OtpState(str, Enum):
    READY = "ready"
    ACTIVE = "active"
    COOLDOWN = "cooldown"
    ATTEMPTS_EXCEEDED = "attempts_exceeded"


class VerificationStatus(str, Enum):
    SUCCESS = "success"
    INVALID_CODE = "invalid_code"
    EXPIRED = "expired"
    ATTEMPTS_EXCEEDED = "attempts_exceeded"


class ResendStatus(str, Enum):
    SUCCESS = "success"
    COOLDOWN = "cooldown"
    ATTEMPTS_EXCEEDED = "attempts_exceeded"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True, slots=True)
class OtpStatus:
    state: OtpState
    cooldown_seconds: int = 0


@dataclass(frozen=True, slots=True)
class CodeRequestResult:
    """Outcome of :meth:`OneTimeCodeEngine.request_code`.

    ``issued`` is only true when a new code was delivered and stored.
    ``failure`` names why a code that should have been issued was not.
    """

    state: OtpState
    cooldown_seconds: int = 0
    issued: bool = False
    failure: Optional[str] = None
    expires_in: int = 0


@dataclass(frozen=True, slots=True)
class VerificationResult:
    status: VerificationStatus
    attempts_remaining: Optional[int] = None

    @property
    def verified(self) -> bool:
        return self.status is VerificationStatus.SUCCESS


@dataclass(frozen=True, slots=True)
class ResendResult:
    status: ResendStatus
    cooldown_seconds: int = 0
    delivered: bool = False
    failure: Optional[str] = None


_STATUS_LUA = """
local code_key = KEYS[1]
local attempts_key = KEYS[2]
local resend_key = KEYS[3]
local max_attempts = tonumber(ARGV[1])

local attempts = tonumber(redis.call('GET', attempts_key) or '0')
if attempts >= max_attempts then
    return {'ATTEMPTS_EXCEEDED', 0}
end
if redis.call('EXISTS', code_key) == 1 then
    return {'ACTIVE', 0}
end
local resend_ttl = redis.call('TTL', resend_key)
if resend_ttl > 0 then
    return {'COOLDOWN', resend_ttl}
end
return {'READY', 0}
"""


def _status(txn: MemoryTransaction, keys: list[str], args: list[str]) -> list:
    code_key, attempts_key, resend_key = keys
    max_attempts = int(args[0])

    if int(txn.get(attempts_key) or 0) >= max_attempts:
        return ["ATTEMPTS_EXCEEDED", 0]
    if txn.exists(code_key):
        return ["ACTIVE", 0]
    resend_ttl = txn.ttl(resend_key)
    if resend_ttl > 0:
        return ["COOLDOWN", resend_ttl]
    return ["READY", 0]


_VERIFY_LUA = """
local code_key = KEYS[1]
local attempts_key = KEYS[2]
local resend_key = KEYS[3]
local submitted = ARGV[1]
local max_attempts = tonumber(ARGV[2])
local expiry = tonumber(ARGV[3])

local stored = redis.call('GET', code_key)
if not stored then
    return {'EXPIRED', 0}
end
local attempts = tonumber(redis.call('GET', attempts_key) or '0')
if attempts >= max_attempts then
    return {'ATTEMPTS_EXCEEDED', attempts}
end
if stored == submitted then
    redis.call('DEL', code_key, attempts_key, resend_key)
    return {'SUCCESS', 0}
end
attempts = redis.call('INCR', attempts_key)
redis.call('EXPIRE', attempts_key, expiry)
if attempts >= max_attempts then
    return {'ATTEMPTS_EXCEEDED', attempts}
end
return {'INVALID_CODE', attempts}
"""


def _verify(txn: MemoryTransaction, keys: list[str], args: list[str]) -> list:
    code_key, attempts_key, resend_key = keys
    submitted, max_attempts, expiry = args[0], int(args[1]), int(args[2])

    stored = txn.get(code_key)
    if stored is None:
        return ["EXPIRED", 0]
    attempts = int(txn.get(attempts_key) or 0)
    if attempts >= max_attempts:
        return ["ATTEMPTS_EXCEEDED", attempts]
    if stored == submitted:
        txn.delete(code_key, attempts_key, resend_key)
        return ["SUCCESS", 0]
    attempts = txn.incr(attempts_key)
    txn.expire(attempts_key, expiry)
    if attempts >= max_attempts:
        return ["ATTEMPTS_EXCEEDED", attempts]
    return ["INVALID_CODE", attempts]


_RESEND_LUA = """
local attempts_key = KEYS[1]
local resend_key = KEYS[2]
local max_attempts = tonumber(ARGV[1])
local cooldown = tonumber(ARGV[2])

local attempts = tonumber(redis.call('GET', attempts_key) or '0')
if attempts >= max_attempts then
    return {'ATTEMPTS_EXCEEDED', 0}
end
local resend_ttl = redis.call('TTL', resend_key)
if resend_ttl > 0 then
    return {'COOLDOWN', resend_ttl}
end
if cooldown > 0 then
    redis.call('SET', resend_key, '1', 'EX', cooldown)
end
return {'SUCCESS', 0}
"""


def _resend(txn: MemoryTransaction, keys: list[str], args: list[str]) -> list:
    attempts_key, resend_key = keys
    max_attempts, cooldown = int(args[0]), int(args[1])

    if int(txn.get(attempts_key) or 0) >= max_attempts:
        return ["ATTEMPTS_EXCEEDED", 0]
    resend_ttl = txn.ttl(resend_key)
    if resend_ttl > 0:
        return ["COOLDOWN", resend_ttl]
    if cooldown > 0:
        txn.set(resend_key, "1", ex=cooldown)
    return ["SUCCESS", 0]


OTP_STATUS = AtomicScript(name="otp_status", lua=_STATUS_LUA, emulate=_status)
OTP_VERIFY = AtomicScript(name="otp_verify", lua=_VERIFY_LUA, emulate=_verify)
OTP_RESEND = AtomicScript(name="otp_resend", lua=_RESEND_LUA, emulate=_resend)


def generate_code(length: int) -> str:
    """Return ``length`` random decimal digits from the system CSPRNG."""

    return "".join(secrets.choice(string.digits) for _ in range(length))


def otp_key(channel: str, kind: str, realm: str, user_id: str) -> str:
    return f"{channel}_otp:{kind}:{realm}:{user_id}"


class OneTimeCodeEngine:
    """Issue and verify codes for one delivery channel.

    The state machine is the same for every channel; only ``sender`` and
    ``settings`` differ.
    """

    def __init__(
        self,
        store: AtomicStore,
        channel: str,
        settings: OtpChannelSettings,
        sender: CodeSender,
    ) -> None:
        self._store = store
        self._channel = channel
        self._settings = settings
        self._sender = sender

    @property
    def channel(self) -> str:
        return self._channel

    @property
    def settings(self) -> OtpChannelSettings:
        return self._settings

    @property
    def sender(self) -> CodeSender:
        return self._sender

    def _keys(self, realm: str, user_id: str) -> tuple[str, str, str]:
        return (
            otp_key(self._channel, CODE_KEY, realm, user_id),
            otp_key(self._channel, ATTEMPTS_KEY, realm, user_id),
            otp_key(self._channel, RESEND_KEY, realm, user_id),
        )

    @property
    def _expiry_minutes(self) -> int:
        return max(1, math.ceil(self._settings.expiry_seconds / 60))

    async def status(self, realm: str, user_id: str) -> OtpStatus:
        try:
            label, cooldown = await self._store.run(
                OTP_STATUS,
                keys=self._keys(realm, user_id),
                args=[self._settings.max_attempts],
            )
        except StoreUnavailable as exc:
            logger.warning("otp_store_unavailable", operation="status", channel=self._channel, error=str(exc))
            return OtpStatus(state=OtpState.READY)
        return OtpStatus(state=OtpState[str(label)], cooldown_seconds=int(cooldown))

    async def _deliver(self, realm: str, user_id: str, recipient: str) -> str:
        code = generate_code(self._settings.code_length)
        await self._sender.send(recipient, code, realm=realm, expiry_minutes=self._expiry_minutes)
        logger.info(
            "otp_code_delivered",
            channel=self._channel,
            realm=realm,
            user_id=user_id,
            recipient=self._sender.mask_recipient(recipient),
        )
        return code

    async def request_code(self, realm: str, user_id: str, recipient: str) -> CodeRequestResult:
        """Send a fresh code when the user has no active code or pending cooldown.

        Raises :class:`~loginguard.app.delivery.InvalidRecipient` when the
        channel cannot address ``recipient``.
        """

        recipient = self._sender.normalise_recipient(recipient)

        current = await self.status(realm, user_id)
        if current.state is not OtpState.READY:
            return CodeRequestResult(state=current.state, cooldown_seconds=current.cooldown_seconds)

        try:
            code = await self._deliver(realm, user_id, recipient)
        except DeliveryFailure as exc:
            logger.warning("otp_delivery_failed", channel=self._channel, realm=realm, user_id=user_id, error=str(exc))
            return CodeRequestResult(state=OtpState.READY, failure=DELIVERY_FAILED)

        code_key = self._keys(realm, user_id)[0]
        try:
            await self._store.set(code_key, code, ttl=self._settings.expiry_seconds)
        except StoreUnavailable as exc:
            logger.error("otp_persist_failed", channel=self._channel, realm=realm, user_id=user_id, error=str(exc))
            return CodeRequestResult(state=OtpState.READY, failure=STORE_UNAVAILABLE)

        return CodeRequestResult(state=OtpState.ACTIVE, issued=True, expires_in=self._settings.expiry_seconds)

    async def verify(self, realm: str, user_id: str, code: str | None) -> VerificationResult:
        submitted = (code or "").strip()
        # Blank input never reaches the store, even when no code is active.
        if not submitted:
            return VerificationResult(status=VerificationStatus.INVALID_CODE)

        try:
            label, attempts = await self._store.run(
                OTP_VERIFY,
                keys=self._keys(realm, user_id),
                args=[submitted, self._settings.max_attempts, self._settings.expiry_seconds],
            )
        except StoreUnavailable as exc:
            logger.warning("otp_store_unavailable", operation="verify", channel=self._channel, error=str(exc))
            return VerificationResult(status=VerificationStatus.EXPIRED)

        status = VerificationStatus[str(label)]
        remaining = None
        if status is VerificationStatus.INVALID_CODE:
            remaining = max(0, self._settings.max_attempts - int(attempts))
        elif status is VerificationStatus.ATTEMPTS_EXCEEDED:
            remaining = 0
        logger.info("otp_verification", channel=self._channel, realm=realm, user_id=user_id, status=status.value)
        return VerificationResult(status=status, attempts_remaining=remaining)

    async def request_resend(self, realm: str, user_id: str, recipient: str) -> ResendResult:
        """Replace the active code with a new one, subject to the cooldown.

        The cooldown is claimed before delivery; a code that was sent but
        could not be stored is reported and not retried.
        """

        recipient = self._sender.normalise_recipient(recipient)

        code_key, attempts_key, resend_key = self._keys(realm, user_id)
        try:
            label, cooldown = await self._store.run(
                OTP_RESEND,
                keys=[attempts_key, resend_key],
                args=[self._settings.max_attempts, self._settings.resend_cooldown_seconds],
            )
        except StoreUnavailable as exc:
            logger.warning("otp_store_unavailable", operation="resend", channel=self._channel, error=str(exc))
            return ResendResult(status=ResendStatus.UNAVAILABLE, failure=STORE_UNAVAILABLE)

        status = ResendStatus[str(label)]
        if status is not ResendStatus.SUCCESS:
            return ResendResult(status=status, cooldown_seconds=int(cooldown))

        try:
            code = await self._deliver(realm, user_id, recipient)
        except DeliveryFailure as exc:
            logger.warning("otp_delivery_failed", channel=self._channel, realm=realm, user_id=user_id, error=str(exc))
            return ResendResult(status=status, failure=DELIVERY_FAILED)

        try:
            await self._store.set(code_key, code, ttl=self._settings.expiry_seconds)
        except StoreUnavailable as exc:
            logger.error("otp_persist_failed", channel=self._channel, realm=realm, user_id=user_id, error=str(exc))
            return ResendResult(status=status, delivered=True, failure=STORE_UNAVAILABLE)
        return ResendResult(status=status, delivered=True)

    async def purge(self, realm: str, user_id: str) -> int:
        try:
            return await self._store.delete(*self._keys(realm, user_id))
        except StoreUnavailable as exc:
            logger.warning("otp_store_unavailable", operation="purge", channel=self._channel, error=str(exc))
            return 0


__all__ = [
    "CodeRequestResult",
    "OTP_RESEND",
    "OTP_STATUS",
    "OTP_VERIFY",
    "OneTimeCodeEngine",
    "OtpState",
    "OtpStatus",
    "ResendResult",
    "ResendStatus",
    "VerificationResult",
    "VerificationStatus",
    "generate_code",
    "otp_key",
]
