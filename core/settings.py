"""Runtime configuration resolved from the environment."""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from typing import Optional, Tuple

from dotenv import load_dotenv

from core.env import env_base64, env_bool, env_int, env_list, env_str

load_dotenv()

DEFAULT_CHALLENGE_TTL_SECONDS = 300
DEFAULT_CHALLENGE_SWEEP_SECONDS = 60
DEFAULT_TRIAL_DAYS = 30
DEFAULT_PRESIGN_TTL_SECONDS = 600
DEFAULT_GOOGLE_PLAY_API_BASE_URL = "https://androidpublisher.googleapis.com"


@dataclass(frozen=True)
class ChallengeSettings:
    ttl_seconds: int = DEFAULT_CHALLENGE_TTL_SECONDS
    sweep_interval_seconds: int = DEFAULT_CHALLENGE_SWEEP_SECONDS
    redis_url: Optional[str] = None
    redis_prefix: str = "nip98"


@dataclass(frozen=True)
class TrialSettings:
    enabled: bool = False
    days: int = DEFAULT_TRIAL_DAYS


@dataclass(frozen=True)
class AppleSettings:
    root_certificates: Tuple[str, ...] = ()
    bundle_id: Optional[str] = None
    environment: str = "Production"


@dataclass(frozen=True)
class GoogleSettings:
    client_email: Optional[str] = None
    private_key: Optional[str] = None
    project_id: Optional[str] = None
    api_base_url: str = DEFAULT_GOOGLE_PLAY_API_BASE_URL

    @property
    def has_credentials(self) -> bool:
        return bool(self.client_email and self.private_key)


@dataclass(frozen=True)
class StorageSettings:
    endpoint: Optional[str] = None
    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    bucket: Optional[str] = None
    region: Optional[str] = None
    secure: bool = True
    presign_ttl_seconds: int = DEFAULT_PRESIGN_TTL_SECONDS

    @property
    def is_configured(self) -> bool:
        return bool(self.endpoint and self.access_key and self.secret_key and self.bucket)


@dataclass(frozen=True)
class Settings:
    challenge: ChallengeSettings = field(default_factory=ChallengeSettings)
    trial: TrialSettings = field(default_factory=TrialSettings)
    apple: AppleSettings = field(default_factory=AppleSettings)
    google: GoogleSettings = field(default_factory=GoogleSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    cors_allow_origins: Tuple[str, ...] = ("*",)


def load_settings() -> Settings:
    """Build a fresh ``Settings`` snapshot from environment variables."""
    return Settings(
        challenge=ChallengeSettings(
            ttl_seconds=env_int("NIP98_CHALLENGE_TTL_SECONDS", DEFAULT_CHALLENGE_TTL_SECONDS, minimum=1),
            sweep_interval_seconds=env_int(
                "NIP98_CHALLENGE_SWEEP_SECONDS", DEFAULT_CHALLENGE_SWEEP_SECONDS, minimum=1
            ),
            redis_url=env_str("CHALLENGE_STORE_REDIS_URL") or None,
            redis_prefix=env_str("CHALLENGE_STORE_REDIS_PREFIX", "nip98") or "nip98",
        ),
        trial=TrialSettings(
            enabled=env_bool("FREE_TRIAL_MODE", False),
            days=env_int("FREE_TRIAL_DAYS", DEFAULT_TRIAL_DAYS, minimum=0),
        ),
        apple=AppleSettings(
            root_certificates=tuple(env_list("APPLE_ROOT_CERTIFICATES")),
            bundle_id=env_str("APPLE_BUNDLE_ID") or None,
            environment=env_str("APPLE_ENVIRONMENT", "Production") or "Production",
        ),
        google=GoogleSettings(
            client_email=env_str("GOOGLE_CLIENT_EMAIL") or None,
            private_key=env_base64("GOOGLE_PRIVATE_KEY_BASE64"),
            project_id=env_str("GOOGLE_PROJECT_ID") or None,
            api_base_url=env_str("GOOGLE_PLAY_API_BASE_URL", DEFAULT_GOOGLE_PLAY_API_BASE_URL)
            or DEFAULT_GOOGLE_PLAY_API_BASE_URL,
        ),
        storage=StorageSettings(
            endpoint=env_str("S3_ENDPOINT") or None,
            access_key=env_str("S3_ACCESS_KEY") or None,
            secret_key=env_str("S3_SECRET_KEY") or None,
            bucket=env_str("S3_BUCKET") or None,
            region=env_str("S3_REGION") or None,
            secure=env_bool("S3_SECURE", True),
            presign_ttl_seconds=env_int("PRESIGN_TTL_SECONDS", DEFAULT_PRESIGN_TTL_SECONDS, minimum=1),
        ),
        cors_allow_origins=tuple(env_list("CORS_ALLOW_ORIGINS")) or ("*",),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()


def reset_settings_cache() -> None:
    """Drop the cached snapshot so the next call re-reads the environment."""
    get_settings.cache_clear()


__all__ = [
    "AppleSettings",
    "ChallengeSettings",
    "GoogleSettings",
    "Settings",
    "StorageSettings",
    "TrialSettings",
    "get_settings",
    "load_settings",
    "reset_settings_cache",
]
