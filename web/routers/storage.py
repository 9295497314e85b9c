"""Presigned upload/download URLs gated by entitlement."""

from __future__ import annotations

import time
from datetime import datetime
from pathlib import PurePosixPath
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.logging import get_logger
from core.plan_constants import LAPSED_STATUSES
from database import get_db
from models._types import as_utc, utcnow
from models.entitlement import Entitlement, Upload
from schemas.api.storage import (
    PresignDownloadRequest,
    PresignDownloadResponse,
    PresignUploadRequest,
    PresignUploadResponse,
)
from services import storage_presign
from services.subscriptions.entitlement_resolver import resolve_entitlement
from services.subscriptions.entitlement_store import ensure_user, record_stored_bytes
from services.subscriptions.errors import SubscriptionError
from web.deps import raise_http_error, require_identity

router = APIRouter(prefix="/presign", tags=["Storage"])

logger = get_logger(__name__)


def upload_allowed(entitlement: Optional[Entitlement], now: datetime) -> bool:
    if entitlement is None or entitlement.status in LAPSED_STATUSES:
        return False
    return as_utc(entitlement.expires_at) > now


def object_prefix(npub: str) -> str:
    return f"videos/{npub}/"


def build_object_key(npub: str, filename: str) -> str:
    name = PurePosixPath(filename.replace("\\", "/")).name or "upload"
    return f"{object_prefix(npub)}{int(time.time() * 1000)}/{name}"


@router.post("/upload", response_model=PresignUploadResponse, summary="Presign an upload URL")
def presign_upload(
    payload: PresignUploadRequest,
    npub: str = Depends(require_identity),
    db: Session = Depends(get_db),
) -> PresignUploadResponse:
    now = utcnow()
    ensure_user(db, npub, now=now)
    entitlement = resolve_entitlement(db, npub, now=now)
    if not upload_allowed(entitlement, now):
        db.commit()
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={"code": "entitlement.required", "message": "An active subscription is required to upload."},
        )

    key = build_object_key(npub, payload.filename)
    try:
        presigned = storage_presign.presign_upload(key, payload.content_type)
    except SubscriptionError as exc:
        db.rollback()
        raise_http_error(exc)

    try:
        db.add(
            Upload(
                npub=npub,
                object_key=key,
                status="pending",
                size_bytes=payload.size_bytes,
                content_type=payload.content_type,
                created_at=now,
            )
        )
        record_stored_bytes(db, npub, payload.size_bytes, now=now)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to record upload %s.", key)
        raise
    return PresignUploadResponse(key=key, **presigned)


@router.post("/download", response_model=PresignDownloadResponse, summary="Presign a download URL")
def presign_download(
    payload: PresignDownloadRequest,
    npub: str = Depends(require_identity),
) -> PresignDownloadResponse:
    if not payload.key.startswith(object_prefix(npub)) or ".." in payload.key.split("/"):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "storage.not_found", "message": "Object not found."},
        )
    try:
        presigned = storage_presign.presign_download(payload.key)
    except SubscriptionError as exc:
        raise_http_error(exc)
    return PresignDownloadResponse(**presigned)
