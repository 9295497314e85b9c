"""Pick the single authoritative entitlement for an identity."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from core.logging import get_logger
from core.plan_constants import ENTITLED_STATUSES, TRIAL_PRODUCT_ID, EntitlementStatus, Platform
from core.settings import TrialSettings, get_settings
from models._types import as_utc, utcnow
from models.entitlement import Entitlement
from services.subscriptions.entitlement_store import dialect_insert, ensure_user
from services.subscriptions.quota import plan_to_quota

logger = get_logger(__name__)


def trial_entitlement_id(npub: str) -> str:
    return f"{npub}-trial"


def _current_entitlement(session: Session, npub: str, now: datetime) -> Optional[Entitlement]:
    stmt = (
        select(Entitlement)
        .where(
            Entitlement.npub == npub,
            Entitlement.status.in_(sorted(ENTITLED_STATUSES)),
            Entitlement.expires_at > now,
        )
        .order_by(Entitlement.expires_at.desc())
        .limit(1)
    )
    return session.execute(stmt).scalars().first()


def _latest_entitlement(session: Session, npub: str) -> Optional[Entitlement]:
    stmt = (
        select(Entitlement)
        .where(Entitlement.npub == npub)
        .order_by(Entitlement.expires_at.desc(), Entitlement.updated_at.desc())
        .limit(1)
    )
    return session.execute(stmt).scalars().first()


def ensure_trial(
    session: Session, npub: str, *, now: Optional[datetime] = None, days: int = 30
) -> Optional[Entitlement]:
    """Create the trial entitlement on first sight and keep its status in step with its expiry.

    A lapsed trial becomes ``expired``, which is terminal. An unexpired trial in
    any other status is put back to ``active``. Creation is race-safe:
    concurrent callers insert-or-ignore the same row id.
    """
    current = now or utcnow()
    entitlement_id = trial_entitlement_id(npub)
    ensure_user(session, npub, now=current)

    stmt = dialect_insert(session, Entitlement).values(
        id=entitlement_id,
        npub=npub,
        platform=Platform.TRIAL.value,
        product_id=TRIAL_PRODUCT_ID,
        status=EntitlementStatus.ACTIVE.value,
        expires_at=current + timedelta(days=days),
        quota_bytes=plan_to_quota(TRIAL_PRODUCT_ID),
        updated_at=current,
    )
    result = session.execute(stmt.on_conflict_do_nothing())
    if result.rowcount:
        logger.info("Provisioned %d-day trial for %s.", days, npub)

    trial = session.get(Entitlement, entitlement_id, populate_existing=True)
    if trial is None:
        # A purchase already owns the (npub, "trial") slot; nothing to provision.
        return _latest_entitlement(session, npub)

    expired = EntitlementStatus.EXPIRED.value
    active = EntitlementStatus.ACTIVE.value
    if trial.status == expired:
        return trial

    if as_utc(trial.expires_at) <= current:
        target = expired
    elif trial.status != active:
        target = active
    else:
        return trial

    session.execute(
        update(Entitlement)
        .where(Entitlement.id == entitlement_id, Entitlement.status != expired)
        .values(status=target, updated_at=current)
    )
    session.refresh(trial)
    logger.info("Trial for %s is now %s (expires %s).", npub, trial.status, trial.expires_at)
    return trial


def resolve_entitlement(
    session: Session,
    npub: str,
    *,
    now: Optional[datetime] = None,
    trial: Optional[TrialSettings] = None,
) -> Optional[Entitlement]:
    """Return at most one entitlement for ``npub``.

    1. The unexpired active/grace entitlement with the latest expiry.
    2. With trial mode on, the trial (provisioned or expired as needed) if it is
       currently active.
    3. Otherwise the most recent entitlement of any status, or ``None``.
    """
    current = now or utcnow()
    trial_settings = trial or get_settings().trial

    entitlement = _current_entitlement(session, npub, current)
    if entitlement is not None:
        return entitlement

    if trial_settings.enabled:
        provisioned = ensure_trial(session, npub, now=current, days=trial_settings.days)
        if (
            provisioned is not None
            and provisioned.status in ENTITLED_STATUSES
            and as_utc(provisioned.expires_at) > current
        ):
            return provisioned

    return _latest_entitlement(session, npub)


__all__ = ["ensure_trial", "resolve_entitlement", "trial_entitlement_id"]
