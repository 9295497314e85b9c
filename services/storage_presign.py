"""Presigned upload/download URLs for the video bucket."""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, Optional, Protocol, Tuple, cast
from urllib.parse import urlparse

from minio import Minio

from core.logging import get_logger
from core.settings import StorageSettings, get_settings
from services.subscriptions.errors import ConfigurationError

logger = get_logger(__name__)

DEFAULT_REGION = "us-east-1"


class PresignClientProtocol(Protocol):
    """Subset of MinIO client methods used for presigning."""

    def presigned_put_object(self, bucket_name: str, object_name: str, expires: timedelta = ...) -> str:
        ...

    def presigned_get_object(self, bucket_name: str, object_name: str, expires: timedelta = ...) -> str:
        ...


_client: Optional[PresignClientProtocol] = None
_client_settings: Optional[StorageSettings] = None


def _split_endpoint(endpoint: str, secure: bool) -> Tuple[str, bool]:
    """MinIO wants ``host[:port]``; accept a full URL and derive ``secure`` from its scheme."""
    if "://" not in endpoint:
        return endpoint.rstrip("/"), secure
    parsed = urlparse(endpoint)
    return parsed.netloc, parsed.scheme == "https"


def _init_client(settings: StorageSettings) -> PresignClientProtocol:
    if not settings.is_configured:
        raise ConfigurationError("S3_ENDPOINT, S3_ACCESS_KEY, S3_SECRET_KEY and S3_BUCKET must be configured.")
    endpoint, secure = _split_endpoint(cast(str, settings.endpoint), settings.secure)
    # An explicit region keeps presigning offline (no bucket-location lookup).
    client = Minio(
        endpoint,
        access_key=settings.access_key,
        secret_key=settings.secret_key,
        secure=secure,
        region=settings.region or DEFAULT_REGION,
    )
    logger.info("Presign client ready for %s (bucket=%s).", endpoint, settings.bucket)
    return cast(PresignClientProtocol, client)


def get_presign_client(settings: Optional[StorageSettings] = None) -> PresignClientProtocol:
    global _client, _client_settings  # pylint: disable=global-statement
    storage = settings or get_settings().storage
    if _client is None or _client_settings != storage:
        _client = _init_client(storage)
        _client_settings = storage
    return _client


def reset_presign_client() -> None:
    global _client, _client_settings  # pylint: disable=global-statement
    _client = None
    _client_settings = None


def presign_upload(key: str, content_type: str, *, settings: Optional[StorageSettings] = None) -> Dict[str, Any]:
    storage = settings or get_settings().storage
    client = get_presign_client(storage)
    expires = timedelta(seconds=storage.presign_ttl_seconds)
    url = client.presigned_put_object(cast(str, storage.bucket), key, expires=expires)
    return {
        "url": url,
        "headers": {"Content-Type": content_type},
        "expires_in": storage.presign_ttl_seconds,
    }


def presign_download(key: str, *, settings: Optional[StorageSettings] = None) -> Dict[str, Any]:
    storage = settings or get_settings().storage
    client = get_presign_client(storage)
    expires = timedelta(seconds=storage.presign_ttl_seconds)
    url = client.presigned_get_object(cast(str, storage.bucket), key, expires=expires)
    return {"url": url, "expires_in": storage.presign_ttl_seconds}


__all__ = ["get_presign_client", "presign_download", "presign_upload", "reset_presign_client"]
