"""Challenge issuance for signed request authentication."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from core.logging import get_logger
from models._types import isoformat_z
from schemas.api.auth import ChallengeResponse
from services.auth.challenge_store import ChallengeStore
from web.deps import get_store

router = APIRouter(prefix="/auth", tags=["Auth"])

logger = get_logger(__name__)


@router.post("/challenge", response_model=ChallengeResponse, summary="Issue a single-use challenge")
def issue_challenge(store: ChallengeStore = Depends(get_store)) -> ChallengeResponse:
    try:
        issued = store.issue()
    except Exception as exc:
        logger.error("Challenge issuance failed: %s", exc, exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "auth.challenge_unavailable", "message": "Challenge store is unavailable."},
        ) from exc
    return ChallengeResponse(challenge=issued.token, expires_at=isoformat_z(issued.expires_at))
