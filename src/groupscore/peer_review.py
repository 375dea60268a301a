"""
Peer review signal for contribution scoring.
"""
import logging
from typing import Iterable, Optional

from .models import PeerReview, ProjectConfig

logger = logging.getLogger(__name__)

MIN_REVIEW_SCORE = 1.0
MAX_REVIEW_SCORE = 5.0


def scale_review_score(value: float) -> float:
    """Map a 1-5 review score onto 0-100."""
    return (value - MIN_REVIEW_SCORE) / (MAX_REVIEW_SCORE - MIN_REVIEW_SCORE) * 100


class PeerReviewAggregator:
    """Averages the peer reviews a user received within a project."""

    def aggregate(self, user_id: int, reviews: Iterable[PeerReview], project: ProjectConfig,
                  from_week: Optional[int] = None, to_week: Optional[int] = None) -> float:
        """
        Mean received review score on a 0-100 scale.

        Users without any review in the window get the project's neutral
        score so that the composite weighting stays well-formed.
        """
        received = [
            r.average_score for r in reviews
            if r.reviewee_id == user_id
            and r.project_id == project.id
            and (from_week is None or r.review_week >= from_week)
            and (to_week is None or r.review_week <= to_week)
        ]

        if not received:
            logger.debug(f"User {user_id} has no peer reviews in project {project.id}")
            return project.peer_review_neutral_score

        return scale_review_score(sum(received) / len(received))
