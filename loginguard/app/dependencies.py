"""Common FastAPI dependency helpers."""
from __future__ import annotations

from fastapi import Request

from .config import Settings
from .guard import LoginGuard


def get_guard(request: Request) -> LoginGuard:
    """Return the guard wired up by :func:`~loginguard.app.main.create_app`."""

    return request.app.state.guard


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


__all__ = ["get_guard", "get_settings"]
