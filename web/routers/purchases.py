"""Bind store purchases that arrived before the identity was known."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.logging import get_logger
from database import get_db
from schemas.api.purchases import PurchaseClaimRequest, PurchaseClaimResponse
from services.subscriptions.errors import SubscriptionError
from services.subscriptions.purchase_mappings import claim_apple_purchase, claim_google_purchase
from web.deps import raise_http_error, require_identity
from web.routers.entitlement import serialize_entitlement

router = APIRouter(prefix="/purchases", tags=["Purchases"])

logger = get_logger(__name__)


@router.post("/claim", response_model=PurchaseClaimResponse, summary="Link a purchase to the caller")
def claim_purchase(
    payload: PurchaseClaimRequest,
    npub: str = Depends(require_identity),
    db: Session = Depends(get_db),
) -> PurchaseClaimResponse:
    try:
        if payload.platform == "ios":
            result = claim_apple_purchase(
                db,
                npub,
                original_tx_id=payload.original_transaction_id,
                app_account_token=payload.app_account_token,
            )
        else:
            result = claim_google_purchase(db, npub, purchase_token=payload.purchase_token or "")
        response = PurchaseClaimResponse(
            platform=result.platform,
            claimed=result.claimed,
            entitlements=[serialize_entitlement(item) for item in result.entitlements],
        )
        db.commit()
    except SubscriptionError as exc:
        db.rollback()
        logger.info("Purchase claim by %s refused: %s", npub, exc)
        raise_http_error(exc)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Purchase claim by %s failed.", npub)
        raise
    return response
