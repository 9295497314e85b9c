"""Shared FastAPI dependencies."""

from __future__ import annotations

from typing import NoReturn, Optional

from fastapi import Depends, HTTPException, Request, status

from services.auth.challenge_store import ChallengeStore, get_challenge_store
from services.auth.request_auth import RequestAuthenticator
from services.subscriptions.errors import (
    ClaimConflict,
    ClaimNotFound,
    ConfigurationError,
    MalformedPayload,
    ProviderError,
    SubscriptionError,
)


def get_store() -> ChallengeStore:
    return get_challenge_store()


def get_request_authenticator(store: ChallengeStore = Depends(get_store)) -> RequestAuthenticator:
    return RequestAuthenticator(store)


async def get_request_identity(
    request: Request,
    authenticator: RequestAuthenticator = Depends(get_request_authenticator),
) -> Optional[str]:
    """Verify the request proof against the matched route template.

    The verified npub is cached on ``request.state`` so the challenge is
    consumed once per request.
    """
    cached = getattr(request.state, "npub", None)
    if cached:
        return cached
    authorization = request.headers.get("authorization")
    if not authorization:
        return None
    route = request.scope.get("route")
    route_path = getattr(route, "path", None) or request.url.path
    body = await request.body()
    npub = authenticator.verify(
        method=request.method,
        route_path=route_path,
        body=body,
        authorization=authorization,
    )
    if npub:
        request.state.npub = npub
    return npub


def require_identity(npub: Optional[str] = Depends(get_request_identity)) -> str:
    if not npub:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "auth.required", "message": "A valid signed request proof is required."},
        )
    return npub


def raise_http_error(exc: SubscriptionError) -> NoReturn:
    """Translate a subscription error into the matching HTTP response."""
    if isinstance(exc, ConfigurationError):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    elif isinstance(exc, MalformedPayload):
        status_code = status.HTTP_400_BAD_REQUEST
    elif isinstance(exc, ProviderError):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE if exc.transient else status.HTTP_502_BAD_GATEWAY
    elif isinstance(exc, ClaimConflict):
        status_code = status.HTTP_409_CONFLICT
    elif isinstance(exc, ClaimNotFound):
        status_code = status.HTTP_404_NOT_FOUND
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    raise HTTPException(status_code=status_code, detail=exc.to_detail()) from exc


__all__ = [
    "get_request_authenticator",
    "get_request_identity",
    "get_store",
    "raise_http_error",
    "require_identity",
]
