"""Security event sinks for lockout and suspicious activity notifications."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Protocol

from .logging import get_logger


logger = get_logger("loginguard.events")


@dataclass(frozen=True, slots=True)
class SecurityEvent:
    action: str
    realm: str
    user_id: str | None = None
    ip_address: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class SecurityEventSink(Protocol):
    async def emit(self, event: SecurityEvent) -> None: ...


class LoggingEventSink:
    """Write security events as structured log records."""

    async def emit(self, event: SecurityEvent) -> None:
        logger.warning(
            "security_event",
            action=event.action,
            realm=event.realm,
            user_id=event.user_id,
            ip_address=event.ip_address,
            occurred_at=event.occurred_at.isoformat(),
            metadata=dict(event.metadata),
        )


class MemoryEventSink:
    """Keep emitted events in a list."""

    def __init__(self) -> None:
        self.events: list[SecurityEvent] = []

    async def emit(self, event: SecurityEvent) -> None:
        self.events.append(event)

    def actions(self) -> list[str]:
        return [event.action for event in self.events]


async def emit_safely(sink: SecurityEventSink | None, event: SecurityEvent) -> None:
    """Deliver ``event`` to ``sink``; sink failures are logged and swallowed."""

    if sink is None:
        return
    try:
        await sink.emit(event)
    except Exception:
        logger.warning("security_event_emit_failed", action=event.action, exc_info=True)


__all__ = [
    "LoggingEventSink",
    "MemoryEventSink",
    "SecurityEvent",
    "SecurityEventSink",
    "emit_safely",
]
