"""Row-level writes for users, entitlements and usage counters.

All writes are native ``INSERT ... ON CONFLICT`` statements so concurrent
webhooks or requests for the same identity converge on one row. Callers own
the transaction (commit/rollback).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from models._types import utcnow
from models.entitlement import Entitlement, Usage, _entitlement_id
from models.user import User
from services.subscriptions.errors import SubscriptionError

_INSERT_BY_DIALECT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def dialect_insert(session: Session, model: Any):
    """Return an ``insert()`` construct supporting ``on_conflict_*`` for the bound dialect."""
    dialect = session.get_bind().dialect.name
    factory = _INSERT_BY_DIALECT.get(dialect)
    if factory is None:
        raise SubscriptionError(f"Upserts are not supported on the '{dialect}' dialect.", code="db.unsupported")
    return factory(model)


def ensure_user(session: Session, npub: str, *, now: Optional[datetime] = None) -> None:
    stmt = dialect_insert(session, User).values(npub=npub, created_at=now or utcnow())
    session.execute(stmt.on_conflict_do_nothing(index_elements=["npub"]))


def get_entitlement(session: Session, npub: str, product_id: str) -> Optional[Entitlement]:
    stmt = (
        select(Entitlement)
        .where(Entitlement.npub == npub, Entitlement.product_id == product_id)
        .execution_options(populate_existing=True)
    )
    return session.execute(stmt).scalars().first()


def upsert_entitlement(
    session: Session,
    *,
    npub: str,
    platform: str,
    product_id: str,
    status: str,
    expires_at: datetime,
    quota_bytes: int,
    original_tx_id: Optional[str] = None,
    purchase_token: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Entitlement:
    """Create or update the single entitlement row keyed by (npub, product_id).

    Provider identifiers that are not supplied are left untouched on update.
    """
    timestamp = now or utcnow()
    values: Dict[str, Any] = {
        "id": _entitlement_id(),
        "npub": npub,
        "platform": platform,
        "product_id": product_id,
        "original_tx_id": original_tx_id,
        "purchase_token": purchase_token,
        "status": status,
        "expires_at": expires_at,
        "quota_bytes": quota_bytes,
        "updated_at": timestamp,
    }
    updates: Dict[str, Any] = {
        "platform": platform,
        "status": status,
        "expires_at": expires_at,
        "quota_bytes": quota_bytes,
        "updated_at": timestamp,
    }
    if original_tx_id is not None:
        updates["original_tx_id"] = original_tx_id
    if purchase_token is not None:
        updates["purchase_token"] = purchase_token

    stmt = dialect_insert(session, Entitlement).values(**values)
    stmt = stmt.on_conflict_do_update(index_elements=["npub", "product_id"], set_=updates)
    session.execute(stmt)

    entitlement = get_entitlement(session, npub, product_id)
    if entitlement is None:  # pragma: no cover - the upsert above guarantees a row
        raise SubscriptionError(f"Entitlement for {npub}/{product_id} vanished after upsert.")
    return entitlement


def record_stored_bytes(session: Session, npub: str, size_bytes: int, *, now: Optional[datetime] = None) -> None:
    """Add ``size_bytes`` to the identity's stored-bytes counter."""
    timestamp = now or utcnow()
    stmt = dialect_insert(session, Usage).values(
        npub=npub,
        stored_bytes=size_bytes,
        egress_bytes=0,
        updated_at=timestamp,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["npub"],
        set_={"stored_bytes": Usage.stored_bytes + stmt.excluded.stored_bytes, "updated_at": timestamp},
    )
    session.execute(stmt)


__all__ = [
    "dialect_insert",
    "ensure_user",
    "get_entitlement",
    "record_stored_bytes",
    "upsert_entitlement",
]
