"""Typed provider notification payloads.

Webhook bodies are validated into these models before any reconciliation
logic runs; a ``ValidationError`` is surfaced as ``MalformedPayload``.
"""

from __future__ import annotations

import base64
import binascii
import json
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from services.subscriptions.errors import MalformedPayload

ModelT = TypeVar("ModelT", bound=BaseModel)


class _ProviderModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class AppleNotificationData(_ProviderModel):
    bundle_id: Optional[str] = Field(default=None, alias="bundleId")
    environment: Optional[str] = None
    signed_transaction_info: Optional[str] = Field(default=None, alias="signedTransactionInfo")
    signed_renewal_info: Optional[str] = Field(default=None, alias="signedRenewalInfo")


class AppleNotification(_ProviderModel):
    """Decoded App Store Server Notification V2 ``signedPayload``."""

    notification_type: str = Field(alias="notificationType", min_length=1)
    subtype: Optional[str] = None
    notification_uuid: Optional[str] = Field(default=None, alias="notificationUUID")
    data: Optional[AppleNotificationData] = None


class AppleTransaction(_ProviderModel):
    """Decoded ``signedTransactionInfo``."""

    original_transaction_id: str = Field(alias="originalTransactionId", min_length=1)
    transaction_id: Optional[str] = Field(default=None, alias="transactionId")
    product_id: str = Field(alias="productId", min_length=1)
    expires_date: int = Field(alias="expiresDate")
    app_account_token: Optional[str] = Field(default=None, alias="appAccountToken")
    bundle_id: Optional[str] = Field(default=None, alias="bundleId")

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.expires_date / 1000, tz=timezone.utc)


class GoogleSubscriptionNotification(_ProviderModel):
    package_name: str = Field(alias="packageName", min_length=1)
    subscription_id: str = Field(alias="subscriptionId", min_length=1)
    purchase_token: str = Field(alias="purchaseToken", min_length=1)
    notification_type: Optional[int] = Field(default=None, alias="notificationType")


def validate_payload(model: Type[ModelT], payload: Any, *, label: str) -> ModelT:
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        fields = ", ".join(".".join(str(part) for part in err["loc"]) for err in exc.errors()) or "payload"
        raise MalformedPayload(f"Invalid {label}: {fields}.") from exc


def _decode_pubsub_data(message: Any) -> Mapping[str, Any]:
    if not isinstance(message, Mapping) or not isinstance(message.get("data"), str):
        raise MalformedPayload("Pub/Sub message is missing its data field.")
    try:
        decoded = json.loads(base64.b64decode(message["data"], validate=True).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
        raise MalformedPayload("Pub/Sub message data is not base64 encoded JSON.") from exc
    if not isinstance(decoded, Mapping):
        raise MalformedPayload("Pub/Sub message data must decode to an object.")
    return decoded


def parse_google_notification(body: Any) -> Optional[GoogleSubscriptionNotification]:
    """Accept a direct body or a Pub/Sub push envelope.

    Returns ``None`` for notifications that carry no subscription work
    (Pub/Sub test notifications, one-time product notifications).
    """
    if not isinstance(body, Mapping):
        raise MalformedPayload("Google notification body must be a JSON object.")
    if "message" not in body:
        return validate_payload(GoogleSubscriptionNotification, body, label="Google notification")

    developer_notification = _decode_pubsub_data(body["message"])
    subscription = developer_notification.get("subscriptionNotification")
    if subscription is None:
        return None
    if not isinstance(subscription, Mapping):
        raise MalformedPayload("subscriptionNotification must be an object.")
    payload = dict(subscription)
    payload.setdefault("packageName", developer_notification.get("packageName"))
    return validate_payload(GoogleSubscriptionNotification, payload, label="Google notification")


__all__ = [
    "AppleNotification",
    "AppleNotificationData",
    "AppleTransaction",
    "GoogleSubscriptionNotification",
    "parse_google_notification",
    "validate_payload",
]
