"""Liveness endpoint."""

from __future__ import annotations

from fastapi import APIRouter

router = APIRouter(tags=["Health"])


@router.get("/health", summary="Liveness probe")
def read_health():
    return {"ok": True}
