"""Nostr events (NIP-01): canonical id, BIP-340 signature check, npub encoding."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Any, List, Mapping

import bech32
from coincurve import PublicKeyXOnly

NPUB_PREFIX = "npub"
HTTP_AUTH_KIND = 27235


class NostrEventError(ValueError):
    """Raised when a mapping is not a structurally valid Nostr event."""


def _hex_field(data: Mapping[str, Any], name: str, length: int) -> str:
    value = data.get(name)
    if not isinstance(value, str) or len(value) != length:
        raise NostrEventError(f"'{name}' must be a {length}-character hex string.")
    try:
        bytes.fromhex(value)
    except ValueError as exc:
        raise NostrEventError(f"'{name}' is not hex encoded.") from exc
    return value.lower()


@dataclass(frozen=True)
class NostrEvent:
    id: str
    pubkey: str
    created_at: int
    kind: int
    tags: List[List[str]]
    content: str
    sig: str

    @classmethod
    def from_mapping(cls, data: Any) -> "NostrEvent":
        if not isinstance(data, Mapping):
            raise NostrEventError("Event must be a JSON object.")
        created_at = data.get("created_at")
        kind = data.get("kind")
        tags = data.get("tags", [])
        content = data.get("content")
        if not isinstance(created_at, int) or isinstance(created_at, bool):
            raise NostrEventError("'created_at' must be an integer.")
        if not isinstance(kind, int) or isinstance(kind, bool):
            raise NostrEventError("'kind' must be an integer.")
        if not isinstance(content, str):
            raise NostrEventError("'content' must be a string.")
        if not isinstance(tags, list) or not all(
            isinstance(tag, list) and all(isinstance(item, str) for item in tag) for tag in tags
        ):
            raise NostrEventError("'tags' must be a list of string lists.")
        return cls(
            id=_hex_field(data, "id", 64),
            pubkey=_hex_field(data, "pubkey", 64),
            created_at=created_at,
            kind=kind,
            tags=[list(tag) for tag in tags],
            content=content,
            sig=_hex_field(data, "sig", 128),
        )

    def serialize(self) -> bytes:
        payload = [0, self.pubkey, self.created_at, self.kind, self.tags, self.content]
        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")

    def compute_id(self) -> str:
        return hashlib.sha256(self.serialize()).hexdigest()

    def verify(self) -> bool:
        """Check the id commits to the event fields and ``sig`` signs that id."""
        if self.compute_id() != self.id:
            return False
        try:
            return bool(PublicKeyXOnly(bytes.fromhex(self.pubkey)).verify(bytes.fromhex(self.sig), bytes.fromhex(self.id)))
        except (TypeError, ValueError):
            return False

    @property
    def npub(self) -> str:
        return encode_npub(self.pubkey)


def encode_npub(pubkey_hex: str) -> str:
    """Bech32 encode a 32-byte x-only public key with the ``npub`` prefix."""
    raw = bytes.fromhex(pubkey_hex)
    if len(raw) != 32:
        raise NostrEventError("Public key must be 32 bytes.")
    encoded = bech32.bech32_encode(NPUB_PREFIX, bech32.convertbits(raw, 8, 5))
    if encoded is None:  # pragma: no cover - convertbits only fails on out-of-range input
        raise NostrEventError("Public key could not be bech32 encoded.")
    return encoded


def decode_npub(npub: str) -> str:
    hrp, data = bech32.bech32_decode(npub)
    if hrp != NPUB_PREFIX or data is None:
        raise NostrEventError("Not an npub string.")
    raw = bech32.convertbits(data, 5, 8, False)
    if raw is None or len(raw) != 32:
        raise NostrEventError("npub does not carry a 32-byte key.")
    return bytes(raw).hex()


__all__ = ["HTTP_AUTH_KIND", "NostrEvent", "NostrEventError", "decode_npub", "encode_npub"]
