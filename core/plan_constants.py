"""Entitlement status, platform and quota constants shared across services and routers."""

from __future__ import annotations

from enum import Enum
from typing import FrozenSet, Sequence

GIB = 1024 * 1024 * 1024


class EntitlementStatus(str, Enum):
    ACTIVE = "active"
    GRACE = "grace"
    PAUSED = "paused"
    CANCELED = "canceled"
    EXPIRED = "expired"
    PENDING = "pending"

    def __str__(self) -> str:  # pragma: no cover - convenience
        return self.value


class Platform(str, Enum):
    IOS = "ios"
    ANDROID = "android"
    TRIAL = "trial"

    def __str__(self) -> str:  # pragma: no cover - convenience
        return self.value


SUPPORTED_STATUSES: Sequence[EntitlementStatus] = tuple(EntitlementStatus)

# Statuses that grant access while the entitlement is unexpired.
ENTITLED_STATUSES: FrozenSet[str] = frozenset({EntitlementStatus.ACTIVE.value, EntitlementStatus.GRACE.value})

# Statuses that block uploads even when the row is the most recent one.
LAPSED_STATUSES: FrozenSet[str] = frozenset(
    {EntitlementStatus.EXPIRED.value, EntitlementStatus.CANCELED.value, EntitlementStatus.PAUSED.value}
)

TRIAL_PRODUCT_ID = "trial"

BASE_QUOTA_BYTES = 50 * GIB
PRO_QUOTA_BYTES = 200 * GIB
ULTRA_QUOTA_BYTES = 500 * GIB

__all__ = [
    "BASE_QUOTA_BYTES",
    "ENTITLED_STATUSES",
    "EntitlementStatus",
    "GIB",
    "LAPSED_STATUSES",
    "PRO_QUOTA_BYTES",
    "Platform",
    "SUPPORTED_STATUSES",
    "TRIAL_PRODUCT_ID",
    "ULTRA_QUOTA_BYTES",
]
