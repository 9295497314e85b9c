"""Environment variable helpers."""

from __future__ import annotations

import base64
import binascii
import os
from typing import List, Optional

from core.logging import get_logger

logger = get_logger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "y", "on"}
_FALSE_VALUES = {"0", "false", "no", "n", "off"}


def env_str(key: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(key, default)
    if value is None:
        logger.debug("Environment variable %s not set. Using default=%s.", key, default)
    return value


def env_int(key: str, default: int, *, minimum: Optional[int] = None) -> int:
    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
        if minimum is not None and value < minimum:
            raise ValueError
        return value
    except ValueError:
        logger.warning("Invalid %s value '%s'. Falling back to %d.", key, raw, default)
        return default


def env_bool(key: str, default: bool) -> bool:
    raw = os.getenv(key)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    logger.warning("Invalid boolean env %s='%s'. Using default=%s.", key, raw, default)
    return default


def env_list(key: str, *, separator: str = ",") -> List[str]:
    raw = os.getenv(key)
    if not raw:
        return []
    return [item.strip() for item in raw.split(separator) if item.strip()]


def env_base64(key: str) -> Optional[str]:
    """Decode a base64 encoded secret (PEM keys are shipped this way)."""
    raw = os.getenv(key)
    if not raw:
        return None
    try:
        return base64.b64decode(raw.strip(), validate=True).decode("utf-8")
    except (binascii.Error, ValueError, UnicodeDecodeError):
        logger.warning("Environment variable %s is not valid base64 text. Ignoring it.", key)
        return None


__all__ = ["env_base64", "env_bool", "env_int", "env_list", "env_str"]
