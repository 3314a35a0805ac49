"""Score to discount tier resolution.

Tiers arrive in two stored shapes (open-ended and bounded). Both are
normalized into ascending, explicitly bounded ranges before any lookup: an
open tier ends one point below the next tier's ``min_score`` and the top open
tier has no upper bound.
"""

from typing import Iterable, Optional, Union

from ..models import BoundedTier, DiscountTier, NormalizedTier, parse_tier

TierInput = Union[DiscountTier, NormalizedTier, dict]


def normalize_tiers(tiers: Iterable[TierInput]) -> list[NormalizedTier]:
    """Normalize tiers into ascending bounded ranges.

    Args:
        tiers: Tiers in either stored shape (models or raw camelCase dicts).

    Returns:
        Tiers sorted by ``min_score``. ``max_score=None`` means no upper bound.
    """
    if tiers and all(isinstance(t, NormalizedTier) for t in tiers):
        return sorted(tiers, key=lambda t: t.min_score)

    parsed = sorted((parse_tier(t) for t in tiers), key=lambda t: t.min_score)
    normalized = []
    for index, tier in enumerate(parsed):
        if isinstance(tier, BoundedTier):
            max_score = tier.max_score
        elif index + 1 < len(parsed):
            max_score = parsed[index + 1].min_score - 1
        else:
            max_score = None
        normalized.append(
            NormalizedTier(
                min_score=tier.min_score,
                max_score=max_score,
                discount=tier.discount,
                message=tier.message,
            )
        )
    return normalized


def matching_tier(score: int, tiers: Iterable[TierInput]) -> Optional[NormalizedTier]:
    """Highest tier whose range contains ``score``, scanning from the top down."""
    for tier in reversed(normalize_tiers(list(tiers))):
        if tier.contains(score):
            return tier
    return None


def resolve_tier(score: int, tiers: Iterable[TierInput]) -> int:
    """Discount percentage earned by ``score``. No matching tier (or no tiers) earns 0."""
    tier = matching_tier(score, tiers)
    return tier.discount if tier else 0


def next_tier_threshold(score: int, tiers: Iterable[TierInput]) -> Optional[int]:
    """Smallest ``min_score`` strictly above ``score``, or None once the top tier is reached."""
    higher = [t.min_score for t in normalize_tiers(list(tiers)) if t.min_score > score]
    return min(higher) if higher else None


def score_message(score: int, discount: int, tiers: Iterable[TierInput]) -> str:
    """Player-facing message for a finished game."""
    tiers = list(tiers)
    if discount == 0:
        next_score = next_tier_threshold(score, tiers)
        if next_score is not None:
            return f"Score {next_score} points to earn your first discount!"
        return "Keep hunting for better scores! 🔍"

    tier = matching_tier(score, tiers)
    if tier and tier.message:
        return tier.message
    return f"Great effort! You earned {discount}% off! 🎮"
