"""User lifecycle hooks."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from ..dependencies import get_guard
from ..guard import LoginGuard
from ..schemas import PurgeResponse


router = APIRouter(prefix="/realms", tags=["users"])


@router.delete("/{realm}/users/{user_id}", response_model=PurgeResponse)
async def purge_user(realm: str, user_id: str, guard: LoginGuard = Depends(get_guard)) -> PurgeResponse:
    """Drop lockout and one-time code state kept for a deleted user."""

    return PurgeResponse(removed=await guard.purge_user(realm, user_id))
