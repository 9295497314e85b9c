"""Challenge issuance schemas."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ChallengeResponse(BaseModel):
    challenge: str = Field(..., description="48 hex characters; sign it into the next request's proof.")
    expires_at: str = Field(..., description="ISO-8601 UTC expiry of the challenge.")
