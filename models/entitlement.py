"""Subscription entitlements, usage counters and upload records."""

from __future__ import annotations

import uuid

from sqlalchemy import BigInteger, Column, ForeignKey, Index, String, UniqueConstraint

from database import Base
from models._types import UTCDateTime, utcnow


def _entitlement_id() -> str:
    return uuid.uuid4().hex


class Entitlement(Base):
    """One subscription/quota grant per (npub, product)."""

    __tablename__ = "entitlements"
    __table_args__ = (
        UniqueConstraint("npub", "product_id", name="uq_entitlements_npub_product"),
        Index("ix_entitlements_npub_platform", "npub", "platform"),
        {"extend_existing": True},
    )

    id = Column(String(128), primary_key=True, default=_entitlement_id)
    npub = Column(String(96), ForeignKey("users.npub"), nullable=False)
    platform = Column(String(16), nullable=False)
    product_id = Column(String(255), nullable=False)
    original_tx_id = Column(String(128), nullable=True)
    purchase_token = Column(String(1024), nullable=True)
    status = Column(String(16), nullable=False)
    expires_at = Column(UTCDateTime, nullable=False)
    quota_bytes = Column(BigInteger, nullable=False)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Entitlement {self.id} {self.product_id} ({self.status}) for {self.npub}>"


class Usage(Base):
    """Monotonic storage/egress counters per identity."""

    __tablename__ = "usage"
    __table_args__ = {"extend_existing": True}

    npub = Column(String(96), ForeignKey("users.npub"), primary_key=True)
    stored_bytes = Column(BigInteger, nullable=False, default=0)
    egress_bytes = Column(BigInteger, nullable=False, default=0)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)


class Upload(Base):
    __tablename__ = "uploads"
    __table_args__ = {"extend_existing": True}

    id = Column(String(32), primary_key=True, default=_entitlement_id)
    npub = Column(String(96), ForeignKey("users.npub"), nullable=False, index=True)
    object_key = Column(String(1024), nullable=False, unique=True)
    status = Column(String(16), nullable=False, default="pending")
    size_bytes = Column(BigInteger, nullable=False)
    content_type = Column(String(255), nullable=False)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)


__all__ = ["Entitlement", "Upload", "Usage"]
