"""FastAPI application factory for the login guard service."""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Mapping, Optional

from fastapi import FastAPI

from .config import Settings, load_settings
from .delivery import CodeSender
from .events import LoggingEventSink, SecurityEventSink
from .guard import build_guard
from .logging import get_logger, setup_logging
from .routes import lockout, otp, ratelimit, system, users
from .storage import AtomicStore, Clock, build_store


logger = get_logger("loginguard.main")


@asynccontextmanager
async def _lifespan(app: FastAPI):
    """Release the store connection pool on shutdown."""

    try:
        yield
    finally:
        await app.state.store.close()
        logger.info("store_closed")


def create_app(
    settings: Settings | None = None,
    *,
    store: AtomicStore | None = None,
    senders: Mapping[str, CodeSender] | None = None,
    sink: SecurityEventSink | None = None,
    clock: Optional[Clock] = None,
    api_prefix: str | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Parameters
    ----------
    settings:
        Service configuration; loaded from the environment when omitted.
    store:
        Backing store shared by every engine.  Built from ``settings.store``
        when omitted.
    senders:
        Code senders keyed by channel name.  Defaults to SMTP e-mail and the
        HTTP SMS gateway.
    sink:
        Destination for security events.  Defaults to structured logging.
    api_prefix:
        Optional path prefix under which the routers are mounted.
    """

    settings = settings or load_settings()
    setup_logging(level=settings.log_level)
    store = store or build_store(settings.store, clock=clock)
    guard = build_guard(
        settings,
        store,
        senders=senders,
        sink=sink if sink is not None else LoggingEventSink(),
        clock=clock,
    )

    app = FastAPI(title="Login Guard", version="0.1.0", lifespan=_lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.guard = guard

    router_prefix = ""
    if api_prefix:
        router_prefix = api_prefix.rstrip("/")
        if not router_prefix.startswith("/"):
            router_prefix = f"/{router_prefix}"

    for module in (ratelimit, lockout, otp, users, system):
        app.include_router(module.router, prefix=router_prefix)

    logger.info("app_created", env=settings.env, store=type(store).__name__, channels=guard.channels)
    return app


__all__ = ["create_app"]
