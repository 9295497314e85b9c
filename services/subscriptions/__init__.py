"""Entitlement resolution, provider webhook reconciliation and purchase claims."""

from services.subscriptions.errors import (
    ClaimConflict,
    ClaimNotFound,
    ConfigurationError,
    MalformedPayload,
    ProviderError,
    SubscriptionError,
)
from services.subscriptions.outcomes import ReconcileOutcome, ReconcileResult
from services.subscriptions.quota import plan_to_quota

__all__ = [
    "ClaimConflict",
    "ClaimNotFound",
    "ConfigurationError",
    "MalformedPayload",
    "ProviderError",
    "ReconcileOutcome",
    "ReconcileResult",
    "SubscriptionError",
    "plan_to_quota",
]
