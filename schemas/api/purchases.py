"""Purchase claim schemas."""

from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

from schemas.api.entitlement import EntitlementResponse


class PurchaseClaimRequest(BaseModel):
    platform: Literal["ios", "android"] = Field(..., description="Store the purchase was made in.")
    original_transaction_id: Optional[str] = Field(default=None, description="App Store original transaction id.")
    app_account_token: Optional[str] = Field(default=None, description="App Store appAccountToken set by the app.")
    purchase_token: Optional[str] = Field(default=None, description="Google Play purchase token.")

    @model_validator(mode="after")
    def _require_key(self) -> "PurchaseClaimRequest":
        if self.platform == "ios" and not (self.original_transaction_id or self.app_account_token):
            raise ValueError("original_transaction_id or app_account_token is required for ios claims.")
        if self.platform == "android" and not self.purchase_token:
            raise ValueError("purchase_token is required for android claims.")
        return self


class PurchaseClaimResponse(BaseModel):
    platform: str
    claimed: int = Field(..., description="Number of purchase mapping rows bound to the caller.")
    entitlements: List[EntitlementResponse] = Field(default_factory=list)
