"""Exceptions raised by entitlement reconciliation and purchase claims."""

from __future__ import annotations

from typing import Any, Dict, Optional


class SubscriptionError(RuntimeError):
    """Base error carrying a stable machine readable ``code``."""

    code = "subscriptions.error"

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        if code:
            self.code = code

    def to_detail(self) -> Dict[str, Any]:
        return {"code": self.code, "message": str(self)}


class ConfigurationError(SubscriptionError):
    """Provider credentials or trust anchors required for this invocation are missing."""

    code = "config.missing"


class MalformedPayload(SubscriptionError):
    """Webhook payload failed validation; nothing has been mutated."""

    code = "webhook.payload_invalid"


class ProviderError(SubscriptionError):
    """A provider API call failed.

    ``transient`` tells the HTTP layer whether the sender should retry the
    delivery (network errors, throttling, provider 5xx) or not.
    """

    code = "provider.error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        transient: bool = False,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.transient = transient
        self.payload = payload or {}


class ClaimNotFound(SubscriptionError):
    code = "purchases.not_found"


class ClaimConflict(SubscriptionError):
    code = "purchases.already_linked"


__all__ = [
    "ClaimConflict",
    "ClaimNotFound",
    "ConfigurationError",
    "MalformedPayload",
    "ProviderError",
    "SubscriptionError",
]
