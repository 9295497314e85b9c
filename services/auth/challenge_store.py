"""Single-use, time-bound challenges for signed request authentication."""

from __future__ import annotations

import abc
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Dict, Optional

from core.logging import get_logger
from core.settings import ChallengeSettings, get_settings
from models._types import as_utc, utcnow

try:  # pragma: no cover - optional dependency
    import redis  # type: ignore
except ImportError:  # pragma: no cover
    redis = None  # type: ignore

logger = get_logger(__name__)

CHALLENGE_BYTES = 24


@dataclass(frozen=True)
class IssuedChallenge:
    token: str
    expires_at: datetime


def _is_expired(expires_at: datetime, now: datetime) -> bool:
    return as_utc(expires_at) <= as_utc(now)


class ChallengeStore(abc.ABC):
    """Issue, check and atomically consume challenge tokens."""

    def __init__(self, *, ttl_seconds: int) -> None:
        self.ttl_seconds = ttl_seconds

    def issue(self, *, now: Optional[datetime] = None) -> IssuedChallenge:
        current = now or utcnow()
        token = secrets.token_hex(CHALLENGE_BYTES)
        expires_at = current + timedelta(seconds=self.ttl_seconds)
        self._insert(token, expires_at)
        return IssuedChallenge(token=token, expires_at=expires_at)

    @abc.abstractmethod
    def _insert(self, token: str, expires_at: datetime) -> None:
        ...

    @abc.abstractmethod
    def is_live(self, token: str, *, now: Optional[datetime] = None) -> bool:
        """True when ``token`` exists and is unexpired; an expired entry is evicted."""

    @abc.abstractmethod
    def consume(self, token: str, *, now: Optional[datetime] = None) -> bool:
        """Remove ``token``; True for exactly one caller while the token is live."""

    @abc.abstractmethod
    def sweep(self, *, now: Optional[datetime] = None) -> int:
        """Drop expired entries and return how many were removed."""


class InMemoryChallengeStore(ChallengeStore):
    """Process-local store; suitable for a single API instance."""

    def __init__(self, *, ttl_seconds: int) -> None:
        super().__init__(ttl_seconds=ttl_seconds)
        self._entries: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _insert(self, token: str, expires_at: datetime) -> None:
        with self._lock:
            self._entries[token] = expires_at

    def is_live(self, token: str, *, now: Optional[datetime] = None) -> bool:
        current = now or utcnow()
        with self._lock:
            expires_at = self._entries.get(token)
            if expires_at is None:
                return False
            if _is_expired(expires_at, current):
                self._entries.pop(token, None)
                return False
            return True

    def consume(self, token: str, *, now: Optional[datetime] = None) -> bool:
        current = now or utcnow()
        with self._lock:
            expires_at = self._entries.pop(token, None)
        return expires_at is not None and not _is_expired(expires_at, current)

    def sweep(self, *, now: Optional[datetime] = None) -> int:
        current = now or utcnow()
        with self._lock:
            expired = [token for token, expires_at in self._entries.items() if _is_expired(expires_at, current)]
            for token in expired:
                del self._entries[token]
        return len(expired)


class RedisChallengeStore(ChallengeStore):
    """Shared store for multi-instance deployments.

    Entries carry a native TTL, so ``sweep`` has nothing to do. The stored
    value is the expiry timestamp, checked again on read so the configured TTL
    is honoured to the second.
    """

    def __init__(self, client, *, ttl_seconds: int, prefix: str = "nip98") -> None:
        super().__init__(ttl_seconds=ttl_seconds)
        self._client = client
        self._prefix = prefix

    def _key(self, token: str) -> str:
        return f"{self._prefix}:challenge:{token}"

    def _insert(self, token: str, expires_at: datetime) -> None:
        stored = self._client.set(
            self._key(token), repr(as_utc(expires_at).timestamp()), nx=True, ex=self.ttl_seconds
        )
        if not stored:
            raise RuntimeError("Challenge token collision in Redis store.")

    @staticmethod
    def _decode_expiry(raw) -> Optional[float]:
        if raw is None:
            return None
        try:
            return float(raw.decode("utf-8") if isinstance(raw, bytes) else raw)
        except (TypeError, ValueError):
            return None

    def is_live(self, token: str, *, now: Optional[datetime] = None) -> bool:
        current = (now or utcnow()).timestamp()
        try:
            expires_at = self._decode_expiry(self._client.get(self._key(token)))
            if expires_at is None:
                return False
            if expires_at <= current:
                self._client.delete(self._key(token))
                return False
            return True
        except redis.RedisError as exc:
            logger.warning("Challenge store lookup failed: %s", exc)
            return False

    def consume(self, token: str, *, now: Optional[datetime] = None) -> bool:
        current = (now or utcnow()).timestamp()
        try:
            raw = self._client.getdel(self._key(token))
        except redis.RedisError as exc:
            logger.warning("Challenge store consume failed: %s", exc)
            return False
        expires_at = self._decode_expiry(raw)
        return expires_at is not None and expires_at > current

    def sweep(self, *, now: Optional[datetime] = None) -> int:
        return 0


def build_challenge_store(settings: Optional[ChallengeSettings] = None) -> ChallengeStore:
    config = settings or get_settings().challenge
    if config.redis_url:
        if redis is None:
            logger.warning("CHALLENGE_STORE_REDIS_URL is set but redis is not installed; using in-memory store.")
        else:
            client = redis.Redis.from_url(config.redis_url, decode_responses=False)
            logger.info("Using Redis challenge store with prefix '%s'.", config.redis_prefix)
            return RedisChallengeStore(client, ttl_seconds=config.ttl_seconds, prefix=config.redis_prefix)
    return InMemoryChallengeStore(ttl_seconds=config.ttl_seconds)


@lru_cache(maxsize=1)
def get_challenge_store() -> ChallengeStore:
    return build_challenge_store()


def reset_challenge_store() -> None:
    get_challenge_store.cache_clear()


class ChallengeSweeper:
    """Background thread that periodically evicts expired challenges."""

    def __init__(self, store: ChallengeStore, *, interval_seconds: float) -> None:
        self.store = store
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="challenge-sweeper", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
        self._thread = None

    def run_once(self) -> int:
        removed = self.store.sweep()
        if removed:
            logger.debug("Swept %d expired challenge(s).", removed)
        return removed

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.run_once()
            except Exception as exc:  # pragma: no cover - keep the sweeper alive
                logger.warning("Challenge sweep failed: %s", exc, exc_info=True)


__all__ = [
    "CHALLENGE_BYTES",
    "ChallengeStore",
    "ChallengeSweeper",
    "InMemoryChallengeStore",
    "IssuedChallenge",
    "RedisChallengeStore",
    "build_challenge_store",
    "get_challenge_store",
    "reset_challenge_store",
]
