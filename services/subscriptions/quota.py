"""Storage quota per product tier."""

from __future__ import annotations

from core.plan_constants import BASE_QUOTA_BYTES, PRO_QUOTA_BYTES, ULTRA_QUOTA_BYTES


def plan_to_quota(product_id: str) -> int:
    """Return the quota in bytes for ``product_id``.

    Matching is a case-insensitive substring test; "pro" is checked first.
    """
    normalized = (product_id or "").lower()
    if "pro" in normalized:
        return PRO_QUOTA_BYTES
    if "ultra" in normalized:
        return ULTRA_QUOTA_BYTES
    return BASE_QUOTA_BYTES


__all__ = ["plan_to_quota"]
