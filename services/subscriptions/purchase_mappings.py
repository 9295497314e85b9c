"""Durable purchase identifier -> identity links and the claim operation."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from core.logging import get_logger
from core.plan_constants import Platform
from models._types import utcnow
from models.entitlement import Entitlement
from models.purchases import ApplePurchase, GooglePurchase
from services.subscriptions.entitlement_store import dialect_insert, ensure_user, upsert_entitlement
from services.subscriptions.errors import ClaimConflict, ClaimNotFound, MalformedPayload
from services.subscriptions.quota import plan_to_quota

logger = get_logger(__name__)


@dataclass
class ClaimResult:
    platform: str
    npub: str
    claimed: int = 0
    entitlements: List[Entitlement] = field(default_factory=list)


def find_apple_identity(
    session: Session,
    original_tx_id: str,
    app_account_token: Optional[str] = None,
) -> Optional[str]:
    """Resolve by original transaction id first, then by app account token."""
    row = session.get(ApplePurchase, original_tx_id, populate_existing=True)
    if row is not None and row.npub:
        return row.npub
    if not app_account_token:
        return None
    stmt = (
        select(ApplePurchase.npub)
        .where(ApplePurchase.app_account_token == app_account_token, ApplePurchase.npub.isnot(None))
        .order_by(ApplePurchase.updated_at.desc())
        .limit(1)
    )
    return session.execute(stmt).scalars().first()


def find_google_identity(session: Session, purchase_token: str) -> Optional[str]:
    row = session.get(GooglePurchase, purchase_token, populate_existing=True)
    return row.npub if row is not None and row.npub else None


def upsert_apple_mapping(
    session: Session,
    *,
    original_tx_id: str,
    app_account_token: Optional[str],
    product_id: str,
    status: str,
    expires_at: datetime,
    npub: Optional[str] = None,
    now: Optional[datetime] = None,
) -> None:
    """Record the latest snapshot for ``original_tx_id``.

    An existing binding or app account token is never cleared by a later
    notification that omits it.
    """
    timestamp = now or utcnow()
    snapshot = {
        "product_id": product_id,
        "status": status,
        "expires_at": expires_at,
        "updated_at": timestamp,
    }
    updates = dict(snapshot)
    if npub:
        updates["npub"] = npub
    if app_account_token:
        updates["app_account_token"] = app_account_token
    stmt = dialect_insert(session, ApplePurchase).values(
        original_tx_id=original_tx_id,
        npub=npub,
        app_account_token=app_account_token,
        created_at=timestamp,
        **snapshot,
    )
    session.execute(stmt.on_conflict_do_update(index_elements=["original_tx_id"], set_=updates))


def upsert_google_mapping(
    session: Session,
    *,
    purchase_token: str,
    package_name: str,
    subscription_id: str,
    status: str,
    expires_at: datetime,
    npub: Optional[str] = None,
    now: Optional[datetime] = None,
) -> None:
    timestamp = now or utcnow()
    snapshot = {
        "package_name": package_name,
        "subscription_id": subscription_id,
        "status": status,
        "expires_at": expires_at,
        "updated_at": timestamp,
    }
    updates = dict(snapshot)
    if npub:
        updates["npub"] = npub
    stmt = dialect_insert(session, GooglePurchase).values(
        purchase_token=purchase_token, npub=npub, created_at=timestamp, **snapshot
    )
    session.execute(stmt.on_conflict_do_update(index_elements=["purchase_token"], set_=updates))


def _bind_rows(session: Session, model, key_filter, npub: str, now: datetime) -> int:
    """Atomically bind unclaimed rows (or rows already ours) matching ``key_filter``."""
    stmt = (
        update(model)
        .where(and_(key_filter, or_(model.npub.is_(None), model.npub == npub)))
        .values(npub=npub, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return session.execute(stmt).rowcount or 0


def _raise_unclaimable(session: Session, model, key_filter, description: str) -> None:
    exists = session.execute(select(model).where(key_filter).limit(1)).scalars().first()
    if exists is None:
        raise ClaimNotFound(f"No purchase found for {description}.")
    raise ClaimConflict(f"Purchase {description} is linked to another identity.")


def claim_apple_purchase(
    session: Session,
    npub: str,
    *,
    original_tx_id: Optional[str] = None,
    app_account_token: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ClaimResult:
    """Bind App Store purchases to ``npub`` and materialise their stored snapshots.

    Does not commit.
    """
    if not original_tx_id and not app_account_token:
        raise MalformedPayload("original_transaction_id or app_account_token is required.", code="purchases.key_missing")
    current = now or utcnow()
    if original_tx_id:
        key_filter = ApplePurchase.original_tx_id == original_tx_id
        description = f"original transaction {original_tx_id}"
    else:
        key_filter = ApplePurchase.app_account_token == app_account_token
        description = f"app account token {app_account_token}"

    ensure_user(session, npub, now=current)
    bound = _bind_rows(session, ApplePurchase, key_filter, npub, current)
    if not bound:
        _raise_unclaimable(session, ApplePurchase, key_filter, description)

    rows: Iterable[ApplePurchase] = (
        session.execute(select(ApplePurchase).where(key_filter).execution_options(populate_existing=True))
        .scalars()
        .all()
    )
    result = ClaimResult(platform=Platform.IOS.value, npub=npub, claimed=bound)
    for row in rows:
        if not (row.product_id and row.status and row.expires_at):
            continue
        result.entitlements.append(
            upsert_entitlement(
                session,
                npub=npub,
                platform=Platform.IOS.value,
                product_id=row.product_id,
                status=row.status,
                expires_at=row.expires_at,
                quota_bytes=plan_to_quota(row.product_id),
                original_tx_id=row.original_tx_id,
                now=current,
            )
        )
    logger.info("Claimed %d App Store purchase(s) for %s.", bound, npub)
    return result


def claim_google_purchase(
    session: Session,
    npub: str,
    *,
    purchase_token: str,
    now: Optional[datetime] = None,
) -> ClaimResult:
    if not purchase_token:
        raise MalformedPayload("purchase_token is required.", code="purchases.key_missing")
    current = now or utcnow()
    key_filter = GooglePurchase.purchase_token == purchase_token

    ensure_user(session, npub, now=current)
    bound = _bind_rows(session, GooglePurchase, key_filter, npub, current)
    if not bound:
        _raise_unclaimable(session, GooglePurchase, key_filter, "for the supplied purchase token")

    row = session.get(GooglePurchase, purchase_token, populate_existing=True)
    result = ClaimResult(platform=Platform.ANDROID.value, npub=npub, claimed=bound)
    if row is not None and row.status and row.expires_at:
        result.entitlements.append(
            upsert_entitlement(
                session,
                npub=npub,
                platform=Platform.ANDROID.value,
                product_id=row.subscription_id,
                status=row.status,
                expires_at=row.expires_at,
                quota_bytes=plan_to_quota(row.subscription_id),
                purchase_token=purchase_token,
                now=current,
            )
        )
    logger.info("Claimed Google Play purchase for %s.", npub)
    return result


__all__ = [
    "ClaimResult",
    "claim_apple_purchase",
    "claim_google_purchase",
    "find_apple_identity",
    "find_google_identity",
    "upsert_apple_mapping",
    "upsert_google_mapping",
]
