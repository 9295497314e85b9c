"""Result of reconciling one provider notification."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ReconcileOutcome(str, Enum):
    APPLIED = "applied"
    UNRESOLVED = "unresolved"
    IGNORED = "ignored"


@dataclass(frozen=True)
class ReconcileResult:
    outcome: ReconcileOutcome
    status: Optional[str] = None
    npub: Optional[str] = None
    entitlement_id: Optional[str] = None


__all__ = ["ReconcileOutcome", "ReconcileResult"]
