"""FastAPI application entrypoint."""

from __future__ import annotations

from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from core.logging import get_logger, setup_logging
from core.settings import get_settings
from services.auth.challenge_store import ChallengeSweeper, get_challenge_store
from web import routers

setup_logging()
logger = get_logger(__name__)

app = FastAPI(
    title="ClipVault API",
    description="Signed-request authentication, subscription entitlements and presigned storage.",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(get_settings().cors_allow_origins),
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(routers.health.router)
app.include_router(routers.auth.router)
app.include_router(routers.entitlement.router)
app.include_router(routers.storage.router)
app.include_router(routers.purchases.router)
app.include_router(routers.webhooks.router)

_sweeper: Optional[ChallengeSweeper] = None


@app.on_event("startup")
def start_challenge_sweeper() -> None:
    """Evict expired challenges in the background."""
    global _sweeper  # pylint: disable=global-statement
    interval = get_settings().challenge.sweep_interval_seconds
    _sweeper = ChallengeSweeper(get_challenge_store(), interval_seconds=interval)
    _sweeper.start()
    logger.info("Challenge sweeper started (every %ss).", interval)


@app.on_event("shutdown")
def stop_challenge_sweeper() -> None:
    global _sweeper  # pylint: disable=global-statement
    if _sweeper is not None:
        _sweeper.stop()
        _sweeper = None
