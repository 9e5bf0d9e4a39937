"""Data contracts for RTC endpoints."""
from __future__ import annotations

from pydantic import BaseModel, Field


class RtcTokenRequest(BaseModel):
    channel_id: str = Field(..., min_length=1, description="Media channel to join")
    uid: int = Field(default=0, ge=0, le=0xFFFFFFFF, description="Numeric identity; 0 lets the provider assign one")


class RtcTokenResponse(BaseModel):
    token: str = Field(..., description="Join token, empty when the project runs without a certificate")
    app_id: str
    channel_id: str
    uid: int
    expires_in: int = Field(..., ge=0, description="Seconds until the join privilege expires")
    signed: bool
