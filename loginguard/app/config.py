"""Centralized configuration for the login guard service."""
from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    EmailStr,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from .logging import get_logger


logger = get_logger("loginguard.config")

_ROOT_DIR = Path(__file__).resolve().parents[2]
_DEFAULT_ENV_FILES: tuple[Path, ...] = (_ROOT_DIR / ".env",)


def _validate_or_default(model: type[BaseModel], value: Any, handler: Any, info: ValidationInfo) -> Any:
    """Run field validation and fall back to the declared default on failure."""

    try:
        return handler(value)
    except ValidationError as exc:
        field_name = info.field_name or ""
        field = model.model_fields[field_name]
        default = field.get_default(call_default_factory=True)
        logger.warning(
            "config_value_invalid",
            section=model.__name__,
            field=field_name,
            errors=[error["msg"] for error in exc.errors()],
        )
        return default


class _Section(BaseModel):
    """Configuration section that substitutes defaults for invalid values."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("*", mode="wrap")
    @classmethod
    def _fallback_to_default(cls, value: Any, handler: Any, info: ValidationInfo) -> Any:
        return _validate_or_default(cls, value, handler, info)

    def _restore_defaults(self, *names: str) -> None:
        for name in names:
            default = type(self).model_fields[name].get_default(call_default_factory=True)
            setattr(self, name, default)


class StoreSettings(_Section):
    """Connection parameters for the external key-value store."""

    backend: Literal["redis", "memory"] = "redis"
    url: str | None = Field(default=None, description="redis:// URL, overrides host/port/database.")
    host: str = Field(default="localhost", min_length=1)
    port: int = Field(default=6379, ge=1, le=65_535)
    password: str | None = None
    database: int = Field(default=0, ge=0, le=15)
    connect_timeout_seconds: float = Field(default=2.0, gt=0, le=30)
    socket_timeout_seconds: float = Field(default=2.0, gt=0, le=30)
    max_connections: int = Field(default=20, ge=1, le=1_000)

    @field_validator("url", "password", mode="before")
    @classmethod
    def _clean_optional_strings(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = str(value).strip()
        return cleaned or None


class BucketTierSettings(_Section):
    """Token bucket parameters for a single identity dimension."""

    capacity: int = Field(default=30, ge=1)
    refill_per_second: float = Field(default=1.0, ge=0)
    window_seconds: int = Field(default=3_600, ge=1)


class IpTierSettings(BucketTierSettings):
    pass


class UserTierSettings(BucketTierSettings):
    capacity: int = Field(default=5, ge=1)
    refill_per_second: float = Field(default=0.0167, ge=0)
    window_seconds: int = Field(default=900, ge=1)


class CombinedTierSettings(BucketTierSettings):
    capacity: int = Field(default=3, ge=1)
    refill_per_second: float = Field(default=0.0033, ge=0)
    window_seconds: int = Field(default=300, ge=1)


class RateLimitSettings(_Section):
    """Three-tier login throttling configuration."""

    enabled: bool = True
    ttl_grace_seconds: int = Field(default=60, ge=0, le=86_400)
    ip: IpTierSettings = Field(default_factory=IpTierSettings)
    user: UserTierSettings = Field(default_factory=UserTierSettings)
    combined: CombinedTierSettings = Field(default_factory=CombinedTierSettings)


class LockoutSettings(_Section):
    """Escalating account lockout configuration."""

    warning_threshold: int = Field(default=3, ge=1)
    threshold_1h: int = Field(default=5, ge=1)
    threshold_24h: int = Field(default=10, ge=1)
    duration_1h_seconds: int = Field(default=3_600, ge=1)
    duration_24h_seconds: int = Field(default=86_400, ge=1)
    failure_window_seconds: int = Field(default=3_600, ge=1)
    suspicious_ip_threshold: int = Field(default=10, ge=1)
    suspicious_ip_ttl_seconds: int = Field(default=7_200, ge=1)
    notifications_enabled: bool = True

    @model_validator(mode="after")
    def _check_escalation_order(self) -> "LockoutSettings":
        if not (self.warning_threshold <= self.threshold_1h <= self.threshold_24h):
            logger.warning(
                "config_section_invalid",
                section="LockoutSettings",
                reason="thresholds must satisfy warning <= 1h <= 24h",
            )
            self._restore_defaults("warning_threshold", "threshold_1h", "threshold_24h")
        if self.duration_1h_seconds > self.duration_24h_seconds:
            logger.warning(
                "config_section_invalid",
                section="LockoutSettings",
                reason="1h lock duration exceeds 24h lock duration",
            )
            self._restore_defaults("duration_1h_seconds", "duration_24h_seconds")
        return self


class OtpChannelSettings(_Section):
    """Per-channel one-time code parameters."""

    code_length: int = Field(default=6, ge=4, le=10)
    expiry_seconds: int = Field(default=300, ge=30, le=3_600)
    max_attempts: int = Field(default=3, ge=1, le=20)
    resend_cooldown_seconds: int = Field(default=60, ge=0, le=3_600)


class EmailOtpSettings(OtpChannelSettings):
    pass


class SmsOtpSettings(OtpChannelSettings):
    expiry_seconds: int = Field(default=180, ge=30, le=3_600)


class OtpSettings(_Section):
    email: EmailOtpSettings = Field(default_factory=EmailOtpSettings)
    sms: SmsOtpSettings = Field(default_factory=SmsOtpSettings)


class EmailDeliverySettings(_Section):
    """SMTP relay used to deliver e-mail codes."""

    smtp_host: str | None = None
    smtp_port: int = Field(default=587, ge=1, le=65_535)
    smtp_username: str | None = None
    smtp_password: str | None = None
    smtp_starttls: bool = True
    from_address: EmailStr | None = None
    subject: str = Field(default="Your verification code", min_length=1)
    timeout_seconds: float = Field(default=10.0, gt=0, le=120)

    @field_validator("smtp_host", "smtp_username", "smtp_password", mode="before")
    @classmethod
    def _clean_optional_strings(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = str(value).strip()
        return cleaned or None

    @property
    def configured(self) -> bool:
        return bool(self.smtp_host and self.from_address)


def _normalise_base_url(value: Any) -> str:
    if value is None:
        raise ValueError("SMS API base URL must be provided")
    cleaned = str(value).strip().rstrip("/")
    if not cleaned:
        raise ValueError("SMS API base URL must be a non-empty string")
    return cleaned


class SmsDeliverySettings(_Section):
    """HTTP SMS gateway used to deliver text-message codes."""

    api_base_url: Annotated[str, BeforeValidator(_normalise_base_url)] = Field(
        default="https://apis.aligo.in", min_length=1
    )
    api_key: str | None = None
    user_id: str | None = None
    sender: str | None = None
    timeout_seconds: float = Field(default=30.0, gt=0, le=120)

    @field_validator("api_key", "user_id", "sender", mode="before")
    @classmethod
    def _clean_optional_strings(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = str(value).strip()
        return cleaned or None

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.user_id and self.sender)


class DeliverySettings(_Section):
    email: EmailDeliverySettings = Field(default_factory=EmailDeliverySettings)
    sms: SmsDeliverySettings = Field(default_factory=SmsDeliverySettings)


class Settings(BaseSettings):
    """Top level service configuration."""

    env: str = Field(default="dev", validation_alias=AliasChoices("LOGINGUARD_ENV", "APP_ENV"))
    log_level: str = Field(default="INFO", validation_alias=AliasChoices("LOGINGUARD_LOG_LEVEL", "LOG_LEVEL"))
    redis_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("LOGINGUARD_REDIS_URL", "REDIS_URL"),
    )
    store: StoreSettings = Field(default_factory=StoreSettings)
    ratelimit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    lockout: LockoutSettings = Field(default_factory=LockoutSettings)
    otp: OtpSettings = Field(default_factory=OtpSettings)
    delivery: DeliverySettings = Field(default_factory=DeliverySettings)

    model_config = SettingsConfigDict(
        env_prefix="LOGINGUARD_",
        env_file=_DEFAULT_ENV_FILES,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("*", mode="wrap")
    @classmethod
    def _fallback_to_default(cls, value: Any, handler: Any, info: ValidationInfo) -> Any:
        return _validate_or_default(cls, value, handler, info)

    @model_validator(mode="after")
    def _apply_redis_url(self) -> "Settings":
        if self.redis_url and not self.store.url:
            self.store.url = self.redis_url.strip() or None
        return self

    def otp_channel(self, channel: str) -> OtpChannelSettings:
        if channel not in type(self.otp).model_fields:
            raise KeyError(channel)
        return getattr(self.otp, channel)


def load_settings(**overrides: Any) -> Settings:
    """Build :class:`Settings`; invalid values are logged and replaced by defaults."""

    return Settings(**overrides)


__all__ = [
    "BucketTierSettings",
    "DeliverySettings",
    "EmailDeliverySettings",
    "LockoutSettings",
    "OtpChannelSettings",
    "OtpSettings",
    "RateLimitSettings",
    "Settings",
    "SmsDeliverySettings",
    "StoreSettings",
    "load_settings",
]
