"""Purchase identifier -> identity mappings for both stores.

Rows are written for every processed notification, even before the purchase
is linked to an identity (``npub`` unset). The last seen product/status/expiry
is kept so a later claim can materialise the entitlement without waiting for
the next provider notification.
"""

from __future__ import annotations

from sqlalchemy import Column, ForeignKey, String

from database import Base
from models._types import UTCDateTime, utcnow


class ApplePurchase(Base):
    __tablename__ = "apple_purchases"
    __table_args__ = {"extend_existing": True}

    original_tx_id = Column(String(128), primary_key=True)
    npub = Column(String(96), ForeignKey("users.npub"), nullable=True, index=True)
    app_account_token = Column(String(64), nullable=True, index=True)
    product_id = Column(String(255), nullable=True)
    status = Column(String(16), nullable=True)
    expires_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)


class GooglePurchase(Base):
    __tablename__ = "google_purchases"
    __table_args__ = {"extend_existing": True}

    purchase_token = Column(String(1024), primary_key=True)
    npub = Column(String(96), ForeignKey("users.npub"), nullable=True, index=True)
    package_name = Column(String(255), nullable=False)
    subscription_id = Column(String(255), nullable=False)
    status = Column(String(16), nullable=True)
    expires_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)


__all__ = ["ApplePurchase", "GooglePurchase"]
