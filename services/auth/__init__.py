"""Challenge issuance and signed request authentication."""

from __future__ import annotations

from .challenge_store import (
    ChallengeStore,
    ChallengeSweeper,
    InMemoryChallengeStore,
    IssuedChallenge,
    RedisChallengeStore,
    build_challenge_store,
    get_challenge_store,
    reset_challenge_store,
)
from .nostr_event import NostrEvent, NostrEventError, decode_npub, encode_npub
from .request_auth import AUTH_SCHEME, RequestAuthenticator, body_digest, build_proof_content

__all__ = [
    "AUTH_SCHEME",
    "ChallengeStore",
    "ChallengeSweeper",
    "InMemoryChallengeStore",
    "IssuedChallenge",
    "NostrEvent",
    "NostrEventError",
    "RedisChallengeStore",
    "RequestAuthenticator",
    "body_digest",
    "build_challenge_store",
    "build_proof_content",
    "decode_npub",
    "encode_npub",
    "get_challenge_store",
    "reset_challenge_store",
]
