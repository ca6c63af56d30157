"""
Confidence policy gate for role-based whitelist grants.

Pure decision logic, no I/O. The base tier grants plain whitelist access and
needs no identity check; every other (elevated) tier requires a primary
identity link with full confidence.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from roster_control.core.config import get_settings
from roster_control.db.models import GrantType

REQUIRED_CONFIDENCE = 1.0


class Verdict(str, Enum):
    ALLOW = "allow"
    BLOCK = "block"


class BlockReason(str, Enum):
    NO_IDENTITY_LINK = "no_identity_link"
    INSUFFICIENT_CONFIDENCE = "insufficient_confidence"


class LinkLike(Protocol):
    game_id: str | None
    confidence: float


@dataclass(frozen=True, slots=True)
class GateDecision:
    verdict: Verdict
    reason: BlockReason | None = None
    actual_confidence: float | None = None
    required_confidence: float = REQUIRED_CONFIDENCE

    @property
    def allowed(self) -> bool:
        return self.verdict is Verdict.ALLOW


def _base_tier(base_tier: str | None) -> str:
    return base_tier if base_tier is not None else get_settings().base_tier


def is_elevated(tier: str | None, *, base_tier: str | None = None) -> bool:
    """True for any tier other than the base tier (``None`` is not a tier)."""
    return tier is not None and tier != _base_tier(base_tier)


def grant_type_for(tier: str, *, base_tier: str | None = None) -> GrantType:
    return GrantType.STAFF if is_elevated(tier, base_tier=base_tier) else GrantType.WHITELIST


def decide(
    requested_tier: str | None,
    link: LinkLike | None,
    *,
    base_tier: str | None = None,
) -> GateDecision:
    """
    Decide whether ``requested_tier`` may be granted given the subject's primary link.

    A link without a game id counts as no link at all.
    """
    confidence = link.confidence if link is not None else None

    if not is_elevated(requested_tier, base_tier=base_tier):
        return GateDecision(Verdict.ALLOW, actual_confidence=confidence)

    if link is None or not link.game_id:
        return GateDecision(Verdict.BLOCK, BlockReason.NO_IDENTITY_LINK)

    if link.confidence < REQUIRED_CONFIDENCE:
        return GateDecision(
            Verdict.BLOCK,
            BlockReason.INSUFFICIENT_CONFIDENCE,
            actual_confidence=link.confidence,
        )

    return GateDecision(Verdict.ALLOW, actual_confidence=link.confidence)


def denial_message(decision: GateDecision, tier: str | None = None) -> str | None:
    """User-facing explanation of a block, or ``None`` when access is allowed."""
    if decision.allowed:
        return None
    label = f"**{tier}** " if tier else ""
    if decision.reason is BlockReason.NO_IDENTITY_LINK:
        return (
            f"Your {label}whitelist access is pending: you have no Steam account linked. "
            "Link your Steam account to activate it."
        )
    return (
        f"Your {label}whitelist access is on hold: your Steam link is not verified "
        f"(confidence {decision.actual_confidence or 0:.1f} of "
        f"{decision.required_confidence:.1f} required). Re-verify your link to activate it."
    )
