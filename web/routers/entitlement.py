"""Entitlement lookup for the authenticated identity."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.logging import get_logger
from database import get_db
from models._types import isoformat_z
from models.entitlement import Entitlement, Usage
from schemas.api.entitlement import EntitlementResponse
from services.subscriptions.entitlement_resolver import resolve_entitlement
from services.subscriptions.entitlement_store import ensure_user
from web.deps import require_identity

router = APIRouter(tags=["Entitlement"])

logger = get_logger(__name__)


def serialize_entitlement(entitlement: Optional[Entitlement], usage: Optional[Usage] = None) -> EntitlementResponse:
    used = str(usage.stored_bytes) if usage is not None else "0"
    if entitlement is None:
        return EntitlementResponse(plan=None, status="none", expires_at=None, quota_bytes="0", used_bytes=used)
    return EntitlementResponse(
        plan=entitlement.product_id,
        status=entitlement.status,
        expires_at=isoformat_z(entitlement.expires_at),
        quota_bytes=str(entitlement.quota_bytes),
        used_bytes=used,
    )


@router.get("/entitlement", response_model=EntitlementResponse, summary="Resolve the caller's entitlement")
def read_entitlement(
    npub: str = Depends(require_identity),
    db: Session = Depends(get_db),
) -> EntitlementResponse:
    try:
        ensure_user(db, npub)
        entitlement = resolve_entitlement(db, npub)
        usage = db.get(Usage, npub)
        response = serialize_entitlement(entitlement, usage)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to resolve entitlement for %s.", npub)
        raise
    return response
