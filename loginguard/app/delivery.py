"""Channel senders delivering one-time codes by e-mail and SMS."""
from __future__ import annotations

import asyncio
import re
import smtplib
import ssl
from email.message import EmailMessage
from typing import Any, Callable, Protocol

import httpx
from pydantic import EmailStr, TypeAdapter, ValidationError

from .config import EmailDeliverySettings, SmsDeliverySettings
from .logging import get_logger


logger = get_logger("loginguard.delivery")

_PHONE_PATTERN = re.compile(r"^01[016789]\d{7,8}$")
_EMAIL_ADAPTER: TypeAdapter[str] = TypeAdapter(EmailStr)


class DeliveryFailure(RuntimeError):
    """The channel could not hand the code to the recipient."""


class InvalidRecipient(ValueError):
    """The recipient address is not usable on this channel."""


class CodeSender(Protocol):
    channel: str

    def normalise_recipient(self, recipient: str) -> str: ...

    def mask_recipient(self, recipient: str) -> str: ...

    async def send(self, recipient: str, code: str, *, realm: str, expiry_minutes: int) -> None: ...


def normalise_phone_number(phone_number: str) -> str:
    """Return ``phone_number`` without dashes or raise :class:`InvalidRecipient`.

    Only Korean mobile numbers (010, 011, 016, 017, 018, 019) are accepted.
    """

    cleaned = (phone_number or "").strip().replace("-", "")
    if not _PHONE_PATTERN.match(cleaned):
        raise InvalidRecipient("phone number must be a Korean mobile number")
    return cleaned


def mask_phone_number(phone_number: str) -> str:
    if len(phone_number) < 8:
        return phone_number
    cleaned = phone_number.replace("-", "")
    return f"{cleaned[:3]}-****-{cleaned[-4:]}"


def mask_email_address(address: str) -> str:
    local, _, domain = address.partition("@")
    if not domain:
        return address
    return f"{local[:1]}***@{domain}"


class EmailCodeSender:
    """Deliver codes through an SMTP relay.

    ``smtplib`` is blocking, so each delivery runs in a worker thread.
    """

    channel = "email"

    def __init__(
        self,
        settings: EmailDeliverySettings,
        *,
        smtp_factory: Callable[..., Any] = smtplib.SMTP,
    ) -> None:
        self._settings = settings
        self._smtp_factory = smtp_factory

    def normalise_recipient(self, recipient: str) -> str:
        try:
            return _EMAIL_ADAPTER.validate_python((recipient or "").strip())
        except ValidationError as exc:
            raise InvalidRecipient("recipient must be a valid e-mail address") from exc

    def mask_recipient(self, recipient: str) -> str:
        return mask_email_address(recipient)

    def build_message(self, recipient: str, code: str, *, realm: str, expiry_minutes: int) -> EmailMessage:
        message = EmailMessage()
        message["From"] = str(self._settings.from_address)
        message["To"] = recipient
        message["Subject"] = self._settings.subject
        message.set_content(
            f"[{realm}] Your verification code is {code}.\n"
            f"It is valid for {expiry_minutes} minutes. Do not share it with anyone."
        )
        return message

    def _deliver(self, message: EmailMessage) -> None:
        settings = self._settings
        with self._smtp_factory(settings.smtp_host, settings.smtp_port, timeout=settings.timeout_seconds) as server:
            server.ehlo()
            if settings.smtp_starttls:
                server.starttls(context=ssl.create_default_context())
                server.ehlo()
            if settings.smtp_username:
                server.login(settings.smtp_username, settings.smtp_password or "")
            server.send_message(message)

    async def send(self, recipient: str, code: str, *, realm: str, expiry_minutes: int) -> None:
        if not self._settings.configured:
            raise DeliveryFailure("e-mail delivery is not configured")
        message = self.build_message(recipient, code, realm=realm, expiry_minutes=expiry_minutes)
        try:
            await asyncio.to_thread(self._deliver, message)
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning("email_delivery_failed", recipient=mask_email_address(recipient), error=str(exc))
            raise DeliveryFailure(f"SMTP delivery failed: {exc}") from exc
        logger.info("email_code_sent", recipient=mask_email_address(recipient), realm=realm)


class SmsCodeSender:
    """Deliver codes through an Aligo-compatible HTTP SMS gateway."""

    channel = "sms"

    def __init__(
        self,
        settings: SmsDeliverySettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._transport = transport

    def normalise_recipient(self, recipient: str) -> str:
        return normalise_phone_number(recipient)

    def mask_recipient(self, recipient: str) -> str:
        return mask_phone_number(recipient)

    @property
    def send_url(self) -> str:
        return f"{self._settings.api_base_url}/send/"

    async def send(self, recipient: str, code: str, *, realm: str, expiry_minutes: int) -> None:
        settings = self._settings
        if not settings.configured:
            raise DeliveryFailure("SMS gateway credentials are not configured")

        payload = {
            "receiver": recipient,
            "msg": f"[{realm}] Verification code: {code} (valid for {expiry_minutes} min)",
            "key": settings.api_key,
            "user_id": settings.user_id,
            "sender": settings.sender,
        }
        masked = mask_phone_number(recipient)
        try:
            async with httpx.AsyncClient(timeout=settings.timeout_seconds, transport=self._transport) as client:
                response = await client.post(self.send_url, data=payload, headers={"Accept": "application/json"})
        except httpx.HTTPError as exc:
            logger.warning("sms_delivery_failed", recipient=masked, error=str(exc))
            raise DeliveryFailure(f"SMS gateway request failed: {exc}") from exc

        if response.status_code != httpx.codes.OK:
            logger.warning("sms_delivery_failed", recipient=masked, status_code=response.status_code)
            raise DeliveryFailure(f"SMS gateway responded with {response.status_code}")

        try:
            body = response.json()
        except ValueError as exc:
            logger.warning("sms_response_unparseable", recipient=masked)
            raise DeliveryFailure("SMS gateway response was not JSON") from exc
        if not isinstance(body, dict):
            logger.warning("sms_response_unparseable", recipient=masked, body_type=type(body).__name__)
            raise DeliveryFailure("SMS gateway response was not a JSON object")

        if str(body.get("result_code")) != "1":
            logger.warning(
                "sms_delivery_rejected",
                recipient=masked,
                result_code=body.get("result_code"),
                message=body.get("message"),
            )
            raise DeliveryFailure(f"SMS gateway rejected the message: {body.get('message')}")

        logger.info("sms_code_sent", recipient=masked, realm=realm, msg_id=body.get("msg_id"))


__all__ = [
    "CodeSender",
    "DeliveryFailure",
    "EmailCodeSender",
    "InvalidRecipient",
    "SmsCodeSender",
    "mask_email_address",
    "mask_phone_number",
    "normalise_phone_number",
]
