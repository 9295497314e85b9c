"""Entitlement query schemas."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class EntitlementResponse(BaseModel):
    plan: Optional[str] = Field(default=None, description="Product id of the resolved entitlement.")
    status: str = Field(..., description="Entitlement status, or 'none' when the identity has no entitlement.")
    expires_at: Optional[str] = Field(default=None, description="ISO-8601 UTC expiry.")
    quota_bytes: str = Field(..., description="Storage quota in bytes, as a decimal string.")
    used_bytes: str = Field(..., description="Stored bytes so far, as a decimal string.")
