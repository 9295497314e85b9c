"""App Store and Google Play server notifications."""

from __future__ import annotations

import json
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from core.logging import get_logger
from database import get_db
from schemas.api.webhooks import AppStoreWebhookRequest, WebhookAck
from services.subscriptions.apple import reconcile_apple_notification
from services.subscriptions.errors import MalformedPayload, ProviderError, SubscriptionError
from services.subscriptions.google_play import reconcile_google_notification
from services.subscriptions.notifications import parse_google_notification, validate_payload
from web.deps import raise_http_error

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

logger = get_logger(__name__)


async def _read_json(request: Request) -> Any:
    raw_body = await request.body()
    try:
        return json.loads(raw_body.decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as exc:
        logger.warning("Webhook payload decode failed: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "webhook.payload_invalid", "message": "Webhook body is not valid JSON."},
        ) from exc


def _log_failure(source: str, exc: SubscriptionError, log_context: Dict[str, Any]) -> None:
    context = {**log_context, "code": exc.code}
    if isinstance(exc, MalformedPayload):
        logger.warning("Rejected %s webhook: %s", source, exc, extra={"webhook": context})
    elif isinstance(exc, ProviderError):
        context["transient"] = exc.transient
        logger.warning("%s webhook provider call failed: %s", source, exc, extra={"webhook": context})
    else:
        logger.error("%s webhook could not be processed: %s", source, exc, extra={"webhook": context})


@router.post("/appstore", response_model=WebhookAck, summary="App Store Server Notifications V2")
async def handle_appstore_webhook(request: Request, db: Session = Depends(get_db)) -> WebhookAck:
    body = await _read_json(request)
    try:
        payload = validate_payload(AppStoreWebhookRequest, body, label="App Store webhook body")
        result = reconcile_apple_notification(db, payload.signedPayload)
    except SubscriptionError as exc:
        _log_failure("App Store", exc, {"source": "appstore"})
        raise_http_error(exc)
    logger.info("App Store webhook processed.", extra={"webhook": {"outcome": result.outcome.value}})
    return WebhookAck()


@router.post("/play", response_model=WebhookAck, summary="Google Play real-time developer notifications")
async def handle_play_webhook(request: Request, db: Session = Depends(get_db)) -> WebhookAck:
    body = await _read_json(request)
    try:
        notification = parse_google_notification(body)
        if notification is None:
            logger.info("Google Play notification carries no subscription; acknowledged.")
            return WebhookAck()
        result = await reconcile_google_notification(db, notification)
    except SubscriptionError as exc:
        _log_failure("Google Play", exc, {"source": "play"})
        raise_http_error(exc)
    logger.info("Google Play webhook processed.", extra={"webhook": {"outcome": result.outcome.value}})
    return WebhookAck()
