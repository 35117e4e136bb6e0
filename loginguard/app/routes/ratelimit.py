"""Rate limit checks for login attempts."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status

from ..dependencies import get_guard
from ..guard import LoginGuard
from ..schemas import RateLimitCheckRequest, RateLimitCheckResponse


router = APIRouter(prefix="/ratelimit", tags=["ratelimit"])


@router.post("/check", response_model=RateLimitCheckResponse, response_model_by_alias=True)
async def check_rate_limit(
    payload: RateLimitCheckRequest,
    request: Request,
    guard: LoginGuard = Depends(get_guard),
) -> RateLimitCheckResponse:
    """Consume one login attempt for the caller's IP and username."""

    if payload.client_ip:
        headers, remote_addr = None, payload.client_ip
    else:
        headers = dict(request.headers)
        remote_addr = request.client.host if request.client else None

    decision = await guard.check_rate_limit(
        payload.realm,
        headers=headers,
        remote_addr=remote_addr,
        authenticated_user=payload.authenticated_user,
        attempted_username=payload.attempted_username,
        form_username=payload.username,
    )
    if not decision.allowed:
        raise HTTPException(
            status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many login attempts. Try again later.",
            headers={"Retry-After": decision.retry_after},
        )
    return RateLimitCheckResponse(
        allowed=True,
        remaining_tokens=decision.remaining_tokens,
        degraded=decision.degraded,
    )
