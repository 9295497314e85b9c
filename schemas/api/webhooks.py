"""Store webhook schemas."""

from __future__ import annotations

from pydantic import BaseModel, Field


class AppStoreWebhookRequest(BaseModel):
    signedPayload: str = Field(..., min_length=1, description="App Store Server Notification V2 JWS.")


class WebhookAck(BaseModel):
    ok: bool = True
