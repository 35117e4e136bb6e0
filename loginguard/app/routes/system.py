"""API routes exposing system level information."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from ..config import Settings
from ..dependencies import get_guard, get_settings
from ..guard import LoginGuard
from ..schemas import HealthStatusResponse


router = APIRouter(prefix="/system", tags=["system"])


@router.get("/health", response_model=HealthStatusResponse)
async def get_health_status(
    guard: LoginGuard = Depends(get_guard),
    settings: Settings = Depends(get_settings),
) -> HealthStatusResponse:
    """Report whether the backing store answers.

    Store outages degrade the service rather than fail it, so this is always 200.
    """

    reachable = await guard.healthy()
    return HealthStatusResponse(
        status="ok" if reachable else "degraded",
        env=settings.env,
        store="reachable" if reachable else "unreachable",
        channels=guard.channels,
    )
