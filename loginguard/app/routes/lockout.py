"""Account lockout status, login outcomes and administration."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Response, status

from ..dependencies import get_guard
from ..guard import LoginGuard
from ..schemas import LockoutStatsResponse, LockStatusResponse, LoginEventRequest, LoginEventResponse


router = APIRouter(prefix="/lockout", tags=["lockout"])


@router.get("/{realm}/users/{user_id}", response_model=LockStatusResponse, response_model_by_alias=True)
async def get_lock_status(realm: str, user_id: str, guard: LoginGuard = Depends(get_guard)) -> LockStatusResponse:
    """Return the lock state of an account; locked accounts answer with 423."""

    lock = await guard.check_account_lock(realm, user_id)
    body = LockStatusResponse(
        locked=lock.locked,
        remaining_seconds=lock.remaining_seconds,
        remaining=lock.remaining_formatted(),
        tier=lock.tier.value if lock.tier else None,
        failure_count=lock.failure_count,
        locked_at=lock.locked_at,
    )
    if lock.locked:
        raise HTTPException(
            status.HTTP_423_LOCKED,
            detail=body.model_dump(mode="json", by_alias=True),
            headers={"Retry-After": str(max(1, lock.remaining_seconds))},
        )
    return body


@router.post("/{realm}/events", response_model=LoginEventResponse, response_model_by_alias=True)
async def record_login_event(
    realm: str,
    payload: LoginEventRequest,
    guard: LoginGuard = Depends(get_guard),
) -> LoginEventResponse:
    outcome = await guard.record_login_outcome(
        realm,
        payload.user_id,
        payload.success,
        client_ip=payload.client_ip,
    )
    result = outcome.lockout
    if result is None:
        return LoginEventResponse(cleared_failures=outcome.cleared_failures)
    return LoginEventResponse(
        state=result.state.value,
        failure_count=result.failure_count,
        remaining_seconds=result.remaining_seconds,
        tier=result.tier.value if result.tier else None,
        suspicious_ip=bool(outcome.suspicious_ip and outcome.suspicious_ip.suspicious),
    )


@router.delete("/{realm}/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def unlock_account(realm: str, user_id: str, guard: LoginGuard = Depends(get_guard)) -> Response:
    """Remove an active lock and the failure counter of an account."""

    if not await guard.lockout.unlock(realm, user_id):
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail="No lockout state for this account")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{realm}/stats", response_model=LockoutStatsResponse, response_model_by_alias=True)
async def get_lockout_stats(realm: str, guard: LoginGuard = Depends(get_guard)) -> LockoutStatsResponse:
    stats = await guard.lockout.stats(realm)
    return LockoutStatsResponse(
        locked_accounts=stats.locked_accounts,
        accounts_with_failures=stats.accounts_with_failures,
        suspicious_ips=stats.suspicious_ips,
        generated_at=stats.generated_at,
    )
