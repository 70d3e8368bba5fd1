"""
Orphan safety policy.

A truncated or half-mounted catalog looks exactly like a library whose
books were deleted, so a sync may only orphan a small share of the
tracked library at once.
"""

from dataclasses import dataclass
from typing import Optional

DEFAULT_ORPHAN_THRESHOLD = 0.10


@dataclass(frozen=True)
class OrphanDecision:
    """Outcome of the orphan safety check."""
    accepted: bool
    percentage: float = 0.0
    message: Optional[str] = None


def decide(
    candidate_count: int,
    total_tracked: int,
    threshold: float = DEFAULT_ORPHAN_THRESHOLD,
) -> OrphanDecision:
    """
    Decide whether ``candidate_count`` books may be marked orphaned.

    Args:
        candidate_count: Books missing from the catalog
        total_tracked: Books currently mirrored from the catalog
        threshold: Largest accepted fraction of ``total_tracked``

    Returns:
        OrphanDecision; rejected decisions carry a message for the caller
    """
    if total_tracked <= 0:
        return OrphanDecision(accepted=True)

    percentage = candidate_count / total_tracked
    if percentage > threshold:
        return OrphanDecision(
            accepted=False,
            percentage=percentage,
            message=(
                f"Sync would orphan {candidate_count} books ({percentage * 100:.1f}% of library), "
                f"which exceeds the {threshold * 100:.0f}% safety threshold. "
                "This usually means the Calibre library is incomplete or misconfigured. "
                "No books were marked as orphaned."
            ),
        )

    return OrphanDecision(accepted=True, percentage=percentage)
