"""One-time code issuance, verification and resend."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from ..delivery import InvalidRecipient
from ..dependencies import get_guard
from ..guard import LoginGuard, UnknownChannel
from ..otp import DELIVERY_FAILED, STORE_UNAVAILABLE, OneTimeCodeEngine, ResendStatus
from ..schemas import OtpCodeRequest, OtpRequestResponse, OtpResendResponse, OtpVerifyRequest, OtpVerifyResponse


router = APIRouter(prefix="/otp", tags=["otp"])


def _engine(guard: LoginGuard, channel: str) -> OneTimeCodeEngine:
    try:
        return guard.otp_engine(channel)
    except UnknownChannel:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail=f"Unknown channel: {channel}") from None


def _raise_for_failure(failure: str | None) -> None:
    if failure == DELIVERY_FAILED:
        raise HTTPException(status.HTTP_502_BAD_GATEWAY, detail="Failed to deliver the verification code")
    if failure == STORE_UNAVAILABLE:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, detail="Verification code storage is unavailable")


@router.post("/{channel}/request", response_model=OtpRequestResponse, response_model_by_alias=True)
async def request_code(
    channel: str,
    payload: OtpCodeRequest,
    guard: LoginGuard = Depends(get_guard),
) -> OtpRequestResponse:
    """Send a new code unless one is already active or the user is cooling down."""

    engine = _engine(guard, channel)
    try:
        result = await engine.request_code(payload.realm, payload.user_id, payload.recipient)
    except InvalidRecipient as exc:
        raise HTTPException(status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    _raise_for_failure(result.failure)
    return OtpRequestResponse(
        state=result.state.value,
        issued=result.issued,
        cooldown_seconds=result.cooldown_seconds,
        expires_in=result.expires_in,
        recipient=engine.sender.mask_recipient(payload.recipient) if result.issued else None,
    )


@router.post("/{channel}/verify", response_model=OtpVerifyResponse, response_model_by_alias=True)
async def verify_code(
    channel: str,
    payload: OtpVerifyRequest,
    guard: LoginGuard = Depends(get_guard),
) -> OtpVerifyResponse:
    result = await _engine(guard, channel).verify(payload.realm, payload.user_id, payload.code)
    return OtpVerifyResponse(
        status=result.status.value,
        verified=result.verified,
        attempts_remaining=result.attempts_remaining,
    )


@router.post("/{channel}/resend", response_model=OtpResendResponse, response_model_by_alias=True)
async def resend_code(
    channel: str,
    payload: OtpCodeRequest,
    guard: LoginGuard = Depends(get_guard),
) -> OtpResendResponse:
    engine = _engine(guard, channel)
    try:
        result = await engine.request_resend(payload.realm, payload.user_id, payload.recipient)
    except InvalidRecipient as exc:
        raise HTTPException(status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    if result.status is ResendStatus.COOLDOWN:
        raise HTTPException(
            status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Resend is cooling down",
            headers={"Retry-After": str(max(1, result.cooldown_seconds))},
        )
    if result.status is ResendStatus.UNAVAILABLE or (result.failure and not result.delivered):
        _raise_for_failure(result.failure)
    return OtpResendResponse(
        status=result.status.value,
        delivered=result.delivered,
        cooldown_seconds=result.cooldown_seconds,
        recipient=engine.sender.mask_recipient(payload.recipient) if result.delivered else None,
    )
