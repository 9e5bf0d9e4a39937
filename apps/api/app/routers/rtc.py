"""RTC token issuance endpoint."""
from __future__ import annotations

from fastapi import APIRouter

from ..schemas.rtc import RtcTokenRequest, RtcTokenResponse
from ..services import rtc as rtc_service

router = APIRouter()


@router.post("/token", response_model=RtcTokenResponse)
async def create_rtc_token(payload: RtcTokenRequest) -> RtcTokenResponse:
    """Return a join token for the matched channel."""

    token = await rtc_service.issue_token(payload.channel_id, payload.uid)
    return RtcTokenResponse(
        token=token.token,
        app_id=token.app_id,
        channel_id=token.channel_id,
        uid=token.uid,
        expires_in=token.expires_in,
        signed=token.signed,
    )
