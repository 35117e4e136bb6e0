"""Pydantic models for the HTTP surface."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class RateLimitCheckRequest(BaseModel):
    realm: str = Field(min_length=1, max_length=255)
    client_ip: str | None = Field(default=None, alias="clientIp")
    authenticated_user: str | None = Field(default=None, alias="authenticatedUser")
    attempted_username: str | None = Field(default=None, alias="attemptedUsername")
    username: str | None = None

    model_config = ConfigDict(populate_by_name=True)


class RateLimitCheckResponse(BaseModel):
    allowed: bool
    remaining_tokens: float | None = Field(default=None, alias="remainingTokens")
    degraded: bool = False

    model_config = ConfigDict(populate_by_name=True)


class LockStatusResponse(BaseModel):
    """Response schema for ``GET /lockout/{realm}/users/{user_id}``."""

    locked: bool
    remaining_seconds: int = Field(default=0, alias="remainingSeconds")
    remaining: str
    tier: str | None = None
    failure_count: int = Field(default=0, alias="failureCount")
    locked_at: datetime | None = Field(default=None, alias="lockedAt")

    model_config = ConfigDict(populate_by_name=True)


class LoginEventRequest(BaseModel):
    user_id: str | None = Field(default=None, alias="userId")
    success: bool
    client_ip: str | None = Field(default=None, alias="clientIp")

    model_config = ConfigDict(populate_by_name=True)


class LoginEventResponse(BaseModel):
    state: str | None = None
    failure_count: int | None = Field(default=None, alias="failureCount")
    remaining_seconds: int | None = Field(default=None, alias="remainingSeconds")
    tier: str | None = None
    cleared_failures: int = Field(default=0, alias="clearedFailures")
    suspicious_ip: bool = Field(default=False, alias="suspiciousIp")

    model_config = ConfigDict(populate_by_name=True)


class LockoutStatsResponse(BaseModel):
    locked_accounts: int = Field(alias="lockedAccounts")
    accounts_with_failures: int = Field(alias="accountsWithFailures")
    suspicious_ips: int = Field(alias="suspiciousIps")
    generated_at: datetime = Field(alias="generatedAt")

    model_config = ConfigDict(populate_by_name=True)


class OtpCodeRequest(BaseModel):
    realm: str = Field(min_length=1, max_length=255)
    user_id: str = Field(alias="userId", min_length=1, max_length=255)
    recipient: str = Field(min_length=1, max_length=320)

    model_config = ConfigDict(populate_by_name=True)


class OtpVerifyRequest(BaseModel):
    realm: str = Field(min_length=1, max_length=255)
    user_id: str = Field(alias="userId", min_length=1, max_length=255)
    code: str | None = Field(default=None, max_length=32)

    model_config = ConfigDict(populate_by_name=True)


class OtpRequestResponse(BaseModel):
    state: str
    issued: bool
    cooldown_seconds: int = Field(default=0, alias="cooldownSeconds")
    expires_in: int = Field(default=0, alias="expiresIn")
    recipient: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class OtpVerifyResponse(BaseModel):
    status: str
    verified: bool
    attempts_remaining: int | None = Field(default=None, alias="attemptsRemaining")

    model_config = ConfigDict(populate_by_name=True)


class OtpResendResponse(BaseModel):
    status: str
    delivered: bool
    cooldown_seconds: int = Field(default=0, alias="cooldownSeconds")
    recipient: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class PurgeResponse(BaseModel):
    removed: int


class HealthStatusResponse(BaseModel):
    """Response schema for ``GET /system/health``."""

    status: str
    env: str
    store: str
    channels: list[str]

    model_config = ConfigDict(extra="allow")


__all__ = [
    "HealthStatusResponse",
    "LockStatusResponse",
    "LockoutStatsResponse",
    "LoginEventRequest",
    "LoginEventResponse",
    "OtpCodeRequest",
    "OtpRequestResponse",
    "OtpResendResponse",
    "OtpVerifyRequest",
    "OtpVerifyResponse",
    "PurgeResponse",
    "RateLimitCheckRequest",
    "RateLimitCheckResponse",
]
