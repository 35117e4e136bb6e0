"""Helpers deriving the identities a login attempt is throttled by."""
from __future__ import annotations

import hashlib
from typing import Mapping


_IP_HEADERS: tuple[str, ...] = ("x-forwarded-for", "x-real-ip")


def _first_hop(value: str | None) -> str | None:
    if not value:
        return None
    candidate = value.split(",", 1)[0].strip()
    return candidate or None


def resolve_client_ip(headers: Mapping[str, str] | None, remote_addr: str | None = None) -> str | None:
    """Return the client address, preferring proxy headers over the socket peer.

    ``X-Forwarded-For`` contributes its first hop only; ``X-Real-IP`` is used
    as-is.  Header lookup is case-insensitive.
    """

    if headers:
        lowered = {str(name).lower(): value for name, value in headers.items()}
        for header in _IP_HEADERS:
            candidate = _first_hop(lowered.get(header))
            if candidate:
                return candidate
    if remote_addr:
        cleaned = remote_addr.strip()
        return cleaned or None
    return None


def resolve_username(
    authenticated_user: str | None = None,
    attempted_username: str | None = None,
    form_username: str | None = None,
) -> str | None:
    """Pick the username for an attempt: authenticated user, session note, then form field."""

    for candidate in (authenticated_user, attempted_username, form_username):
        if candidate is None:
            continue
        cleaned = candidate.strip()
        if cleaned:
            return cleaned
    return None


def hash_username(username: str, *, length: int = 8) -> str:
    """Short SHA-256 fingerprint used in combined ip+user keys and log lines."""

    digest = hashlib.sha256(username.encode("utf-8")).hexdigest()
    return digest[:length]


__all__ = ["hash_username", "resolve_client_ip", "resolve_username"]
