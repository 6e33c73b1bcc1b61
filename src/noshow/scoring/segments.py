"""Client segmentation — an ordered list of predicates, first match wins.

Order is part of the contract: a profile that satisfies several predicates
lands in the earliest one, and the final catch-all guarantees every profile
gets exactly one segment. Note the list mixes a value axis (VIP, Loyal,
Promising) with a risk axis (Attention, Risk, Critical).
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from noshow.scoring.risk_profile import RiskProfile

__all__ = ["SEGMENTS", "Segment", "classify"]


@dataclass(frozen=True)
class Segment:
    name: str
    description: str
    priority: int
    predicate: Callable[[RiskProfile], bool]

    def matches(self, profile: RiskProfile) -> bool:
        return self.predicate(profile)


SEGMENTS: tuple[Segment, ...] = (
    Segment(
        "VIP",
        "High-value, low-risk clients",
        1,
        lambda p: p.current_score <= 20 and p.factors.value >= 80,
    ),
    Segment(
        "Loyal",
        "Reliable, stable clients",
        2,
        lambda p: p.current_score <= 30 and p.factors.reliability >= 80,
    ),
    Segment(
        "Promising",
        "Recently active clients with potential",
        3,
        lambda p: p.current_score <= 40 and p.factors.recency >= 80,
    ),
    Segment(
        "Attention",
        "Clients who need special care",
        4,
        lambda p: 50 <= p.current_score < 70,
    ),
    Segment(
        "Risk",
        "Clients with a high no-show risk",
        5,
        lambda p: 70 <= p.current_score < 85,
    ),
    Segment(
        "Critical",
        "Clients with a critical no-show risk",
        6,
        lambda p: p.current_score >= 85,
    ),
    Segment(
        "Regular",
        "Everyone else",
        7,
        lambda p: True,
    ),
)


def classify(profile: RiskProfile, segments: Sequence[Segment] = SEGMENTS) -> Segment:
    """Return the first segment whose predicate matches *profile*."""
    for segment in segments:
        if segment.matches(profile):
            return segment
    msg = "segment list has no catch-all entry"
    raise ValueError(msg)
