"""Google Play Developer API client and subscription reconciliation."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib.parse import quote

import google.auth.transport.requests
import httpx
from google.auth import exceptions as google_auth_exceptions
from google.oauth2 import service_account
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.logging import get_logger
from core.plan_constants import EntitlementStatus, Platform
from core.settings import DEFAULT_GOOGLE_PLAY_API_BASE_URL, GoogleSettings, get_settings
from models._types import utcnow
from services.subscriptions import purchase_mappings
from services.subscriptions.entitlement_store import ensure_user, upsert_entitlement
from services.subscriptions.errors import ConfigurationError, MalformedPayload, ProviderError
from services.subscriptions.notifications import GoogleSubscriptionNotification
from services.subscriptions.outcomes import ReconcileOutcome, ReconcileResult
from services.subscriptions.quota import plan_to_quota

logger = get_logger(__name__)

ANDROID_PUBLISHER_SCOPE = "https://www.googleapis.com/auth/androidpublisher"
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"


class GooglePlayError(ProviderError):
    """Raised when the Play Developer API call fails.

    ``status_code`` is ``None`` for network level failures.
    """

    code = "provider.google_play"

    def __init__(self, status_code: Optional[int], message: str, *, payload: Optional[Dict[str, Any]] = None) -> None:
        transient = status_code is None or status_code == 429 or status_code >= 500
        super().__init__(message, status_code=status_code, transient=transient, payload=payload)


def build_service_account_credentials(settings: GoogleSettings):
    if not settings.has_credentials:
        raise ConfigurationError("GOOGLE_CLIENT_EMAIL and GOOGLE_PRIVATE_KEY_BASE64 must be configured.")
    info = {
        "type": "service_account",
        "client_email": settings.client_email,
        "private_key": settings.private_key,
        "token_uri": GOOGLE_TOKEN_URI,
    }
    if settings.project_id:
        info["project_id"] = settings.project_id
    try:
        return service_account.Credentials.from_service_account_info(info, scopes=[ANDROID_PUBLISHER_SCOPE])
    except ValueError as exc:
        raise ConfigurationError(f"Google service account credentials are invalid: {exc}") from exc


@dataclass(slots=True)
class GooglePlayClient:
    """Minimal async wrapper around the androidpublisher v3 subscription endpoint."""

    credentials: Any
    base_url: str = DEFAULT_GOOGLE_PLAY_API_BASE_URL
    timeout: float = 10.0

    @classmethod
    def from_settings(cls, settings: Optional[GoogleSettings] = None) -> "GooglePlayClient":
        google = settings or get_settings().google
        return cls(credentials=build_service_account_credentials(google), base_url=google.api_base_url)

    async def _access_token(self) -> str:
        if not self.credentials.valid:
            try:
                await asyncio.to_thread(self.credentials.refresh, google.auth.transport.requests.Request())
            except google_auth_exceptions.RefreshError as exc:
                raise GooglePlayError(401, f"Service account token refresh was rejected: {exc}") from exc
            except google_auth_exceptions.TransportError as exc:
                raise GooglePlayError(None, f"Service account token refresh failed: {exc}") from exc
        return self.credentials.token

    async def get_subscription(self, package_name: str, subscription_id: str, purchase_token: str) -> Dict[str, Any]:
        path = (
            f"/androidpublisher/v3/applications/{quote(package_name, safe='')}"
            f"/purchases/subscriptions/{quote(subscription_id, safe='')}"
            f"/tokens/{quote(purchase_token, safe='')}"
        )
        url = f"{self.base_url.rstrip('/')}{path}"
        headers = {"Authorization": f"Bearer {await self._access_token()}"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(url, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("Google Play API request failed: %s", exc)
            raise GooglePlayError(None, f"Google Play API request failed: {exc}") from exc

        if response.status_code >= 400:
            try:
                payload = response.json()
            except ValueError:
                payload = {"body": response.text}
            error = payload.get("error") if isinstance(payload, dict) else None
            message = (error or {}).get("message") if isinstance(error, dict) else None
            logger.warning("Google Play API error %s: %s", response.status_code, payload)
            raise GooglePlayError(
                response.status_code,
                message or f"Google Play API returned HTTP {response.status_code}.",
                payload=payload if isinstance(payload, dict) else {"body": payload},
            )
        try:
            return response.json()
        except ValueError as exc:
            raise GooglePlayError(response.status_code, "Google Play API returned a non-JSON body.") from exc


def _expiry_from(data: Dict[str, Any]) -> datetime:
    raw = data.get("expiryTimeMillis")
    try:
        millis = int(raw)
    except (TypeError, ValueError) as exc:
        raise GooglePlayError(502, "Subscription response lacks a usable expiryTimeMillis.") from exc
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)


def map_google_status(data: Dict[str, Any], *, now: Optional[datetime] = None) -> str:
    """Derive an entitlement status from a ``SubscriptionPurchase`` resource."""
    if data.get("cancelReason") is not None:
        return EntitlementStatus.CANCELED.value
    payment_state = data.get("paymentState")
    if payment_state == 0:
        return EntitlementStatus.PENDING.value
    if payment_state in (1, 2):
        return EntitlementStatus.ACTIVE.value
    if _expiry_from(data) < (now or utcnow()):
        return EntitlementStatus.EXPIRED.value
    return EntitlementStatus.ACTIVE.value


async def reconcile_google_notification(
    session: Session,
    notification: GoogleSubscriptionNotification,
    *,
    client: Optional[GooglePlayClient] = None,
    now: Optional[datetime] = None,
) -> ReconcileResult:
    """Query the live subscription state and apply it in one transaction."""
    if not isinstance(notification, GoogleSubscriptionNotification):
        raise MalformedPayload("Google notification must be validated before reconciliation.")
    play = client or GooglePlayClient.from_settings()
    current = now or utcnow()

    data = await play.get_subscription(
        notification.package_name, notification.subscription_id, notification.purchase_token
    )
    expires_at = _expiry_from(data)
    status = map_google_status(data, now=current)
    log_context = {
        "package": notification.package_name,
        "subscription_id": notification.subscription_id,
        "notification_type": notification.notification_type,
        "status": status,
    }

    try:
        npub = purchase_mappings.find_google_identity(session, notification.purchase_token)
        if npub is None:
            purchase_mappings.upsert_google_mapping(
                session,
                purchase_token=notification.purchase_token,
                package_name=notification.package_name,
                subscription_id=notification.subscription_id,
                status=status,
                expires_at=expires_at,
                now=current,
            )
            session.commit()
            logger.info("Google Play purchase not linked to an identity yet.", extra={"webhook": log_context})
            return ReconcileResult(outcome=ReconcileOutcome.UNRESOLVED, status=status)

        ensure_user(session, npub, now=current)
        entitlement = upsert_entitlement(
            session,
            npub=npub,
            platform=Platform.ANDROID.value,
            product_id=notification.subscription_id,
            status=status,
            expires_at=expires_at,
            quota_bytes=plan_to_quota(notification.subscription_id),
            purchase_token=notification.purchase_token,
            now=current,
        )
        purchase_mappings.upsert_google_mapping(
            session,
            purchase_token=notification.purchase_token,
            package_name=notification.package_name,
            subscription_id=notification.subscription_id,
            status=status,
            expires_at=expires_at,
            npub=npub,
            now=current,
        )
        entitlement_id = entitlement.id
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        logger.exception("Failed to apply Google Play notification.", extra={"webhook": log_context})
        raise

    logger.info("Applied Google Play notification for %s.", npub, extra={"webhook": log_context})
    return ReconcileResult(
        outcome=ReconcileOutcome.APPLIED,
        status=status,
        npub=npub,
        entitlement_id=entitlement_id,
    )


__all__ = [
    "ANDROID_PUBLISHER_SCOPE",
    "GooglePlayClient",
    "GooglePlayError",
    "build_service_account_credentials",
    "map_google_status",
    "reconcile_google_notification",
]
