"""Challenge-bound signed request authentication (NIP-98 style).

A client fetches a challenge, then sends

    Authorization: Nostr <base64(JSON event)>

where the event ``content`` is a query string carrying ``challenge``,
``method``, ``url`` (the route template) and optionally ``body`` (hex SHA-256
of the raw request body). Verification yields the signer's npub or ``None``.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from datetime import datetime
from typing import Dict, Optional
from urllib.parse import parse_qsl

from core.logging import get_logger
from models._types import utcnow
from services.auth.challenge_store import ChallengeStore
from services.auth.nostr_event import NostrEvent, NostrEventError

logger = get_logger(__name__)

AUTH_SCHEME = "Nostr"


def body_digest(body: Optional[bytes]) -> str:
    return hashlib.sha256(body or b"").hexdigest()


def build_proof_content(challenge: str, method: str, url: str, body: Optional[bytes] = None) -> str:
    """Query string a client signs; mirrors what ``verify`` expects."""
    parts = [f"challenge={challenge}", f"method={method.upper()}", f"url={url}"]
    if body is not None:
        parts.append(f"body={body_digest(body)}")
    return "&".join(parts)


def _decode_event(authorization: str) -> NostrEvent:
    scheme, _, encoded = authorization.strip().partition(" ")
    if scheme != AUTH_SCHEME or not encoded.strip():
        raise NostrEventError("Authorization header does not use the Nostr scheme.")
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True)
        payload = json.loads(decoded.decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
        raise NostrEventError("Authorization payload is not base64 encoded JSON.") from exc
    return NostrEvent.from_mapping(payload)


class RequestAuthenticator:
    """Verify a signed request proof against the challenge store."""

    def __init__(self, store: ChallengeStore) -> None:
        self.store = store

    def _reject(self, reason: str, *args) -> None:
        logger.debug("Request authentication failed: " + reason, *args)
        return None

    def verify(
        self,
        *,
        method: str,
        route_path: str,
        body: Optional[bytes],
        authorization: Optional[str],
        now: Optional[datetime] = None,
    ) -> Optional[str]:
        if not authorization:
            return None
        current = now or utcnow()
        try:
            event = _decode_event(authorization)
        except NostrEventError as exc:
            return self._reject("%s", exc)

        params: Dict[str, str] = dict(parse_qsl(event.content, keep_blank_values=True))
        challenge = params.get("challenge")
        if not challenge:
            return self._reject("proof carries no challenge")
        if not self.store.is_live(challenge, now=current):
            return self._reject("challenge unknown or expired")
        if params.get("method", "").upper() != method.upper():
            return self._reject("method mismatch (%s != %s)", params.get("method"), method)

        declared_url = params.get("url")
        if declared_url and declared_url != route_path:
            return self._reject("url mismatch (%s != %s)", declared_url, route_path)

        declared_body = params.get("body")
        if declared_body and not hmac.compare_digest(
            declared_body.lower().encode("utf-8"), body_digest(body).encode("ascii")
        ):
            return self._reject("body hash mismatch")

        if not event.verify():
            return self._reject("event id or signature invalid")

        if not self.store.consume(challenge, now=current):
            return self._reject("challenge already consumed")
        return event.npub


__all__ = ["AUTH_SCHEME", "RequestAuthenticator", "body_digest", "build_proof_content"]
