"""
Composite contribution score calculation and manual overrides.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .models import ContributionScore, ProjectConfig, ScoreAuditEntry

logger = logging.getLogger(__name__)

MIN_SCORE = 0.0
MAX_SCORE = 100.0


class ComputationConflict(Exception):
    """Raised when a score row changed while a recompute was in flight."""
    pass


@dataclass(frozen=True)
class ScoreSignals:
    """Upstream signals for one (user, project)."""
    task_completion_score: float
    peer_review_score: float
    commit_count: int
    late_task_count: int


def clamp(value: float, low: float = MIN_SCORE, high: float = MAX_SCORE) -> float:
    return max(low, min(high, value))


def commit_score(commit_count: int, project: ProjectConfig) -> float:
    """Valid commit count mapped onto 0-100, saturating at the project baseline."""
    return min(max(commit_count, 0), project.commit_baseline) / project.commit_baseline * MAX_SCORE


def late_penalty(late_task_count: int, project: ProjectConfig) -> float:
    """Penalty points for late tasks, capped at 100."""
    return min(MAX_SCORE, max(late_task_count, 0) * project.late_penalty_per_task)


def calculate_score(signals: ScoreSignals, project: ProjectConfig) -> float:
    """
    Weighted composite score:

        clamp(0, 100, w1*task + w2*peer + w3*commit - w4*late_penalty)
    """
    raw = (
        project.weight_w1 * signals.task_completion_score
        + project.weight_w2 * signals.peer_review_score
        + project.weight_w3 * commit_score(signals.commit_count, project)
        - project.weight_w4 * late_penalty(signals.late_task_count, project)
    )
    return round(clamp(raw), 2)


class ContributionScoreCalculator:
    """Produces updated ContributionScore values. Never mutates its inputs."""

    def recompute(self, existing: Optional[ContributionScore], signals: ScoreSignals,
                  project: ProjectConfig, user_id: int, score_id: int,
                  now: Optional[datetime] = None) -> ContributionScore:
        """
        Apply freshly aggregated signals to a score row.

        Final rows keep their calculated score; only the component fields
        and `last_computed_score` are refreshed for display.
        """
        now = now or datetime.now()
        computed = calculate_score(signals, project)
        components = {
            "task_completion_score": signals.task_completion_score,
            "peer_review_score": signals.peer_review_score,
            "commit_count": signals.commit_count,
            "late_task_count": signals.late_task_count,
            "last_computed_score": computed,
            "updated_at": now,
        }

        if existing is None:
            return ContributionScore(
                id=score_id,
                user_id=user_id,
                project_id=project.id,
                calculated_score=computed,
                revision=1,
                **components
            )

        if existing.is_final:
            logger.debug(f"Score for user {user_id} is final; keeping {existing.calculated_score}")
        else:
            components["calculated_score"] = computed

        components["revision"] = existing.revision + 1
        return existing.model_copy(update=components)

    def adjust(self, score: ContributionScore, adjusted_score: float, reason: str,
               actor: Optional[str] = None, now: Optional[datetime] = None) -> ContributionScore:
        """Set an operator override; the score becomes final."""
        if reason is None or not reason.strip():
            raise ValueError("Adjustment reason is required")
        if not MIN_SCORE <= adjusted_score <= MAX_SCORE:
            raise ValueError(f"Adjusted score must be between {MIN_SCORE:g} and {MAX_SCORE:g}")

        now = now or datetime.now()
        entry = ScoreAuditEntry(action="adjust", actor=actor, reason=reason.strip(),
                                adjusted_score=adjusted_score, at=now)
        return score.model_copy(update={
            "adjusted_score": adjusted_score,
            "adjustment_reason": reason.strip(),
            "is_final": True,
            "revision": score.revision + 1,
            "updated_at": now,
            "audit_log": score.audit_log + (entry,),
        })

    def clear_adjustment(self, score: ContributionScore, reason: str, actor: Optional[str] = None,
                         now: Optional[datetime] = None) -> ContributionScore:
        """Return a score to automatic calculation, recording who did it."""
        if reason is None or not reason.strip():
            raise ValueError("A reason is required to clear an adjustment")

        now = now or datetime.now()
        entry = ScoreAuditEntry(action="clear", actor=actor, reason=reason.strip(),
                                adjusted_score=score.adjusted_score, at=now)
        return score.model_copy(update={
            "adjusted_score": None,
            "adjustment_reason": None,
            "is_final": False,
            "calculated_score": score.last_computed_score,
            "revision": score.revision + 1,
            "updated_at": now,
            "audit_log": score.audit_log + (entry,),
        })

    def finalize(self, score: ContributionScore, actor: Optional[str] = None,
                 now: Optional[datetime] = None) -> ContributionScore:
        """Freeze the current calculated score without overriding it."""
        if score.is_final:
            return score

        now = now or datetime.now()
        entry = ScoreAuditEntry(action="finalize", actor=actor, at=now)
        return score.model_copy(update={
            "is_final": True,
            "revision": score.revision + 1,
            "updated_at": now,
            "audit_log": score.audit_log + (entry,),
        })
