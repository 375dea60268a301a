"""
Free-rider detection and review case lifecycle.
"""
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional

from .models import (
    CASE_STATUS_DESCRIPTIONS, CaseStatus, ContributionScore, FreeRiderCase,
    FreeRiderCaseDTO, Group, ProjectConfig, TERMINAL_CASE_STATUSES, User
)

logger = logging.getLogger(__name__)

DEFAULT_RISK_VALUE = 0.5

ALLOWED_TRANSITIONS = {
    CaseStatus.PENDING: {CaseStatus.CONTACTED, CaseStatus.RESOLVED, CaseStatus.DISMISSED},
    CaseStatus.CONTACTED: {CaseStatus.RESOLVED, CaseStatus.DISMISSED},
    CaseStatus.RESOLVED: set(),
    CaseStatus.DISMISSED: set(),
}


class CaseTransitionError(Exception):
    """Raised for a lifecycle transition the case state does not allow."""
    pass


@dataclass
class FreeRiderCandidate:
    """A group member flagged by detection, with the evidence behind it."""
    user_id: int
    group_id: int
    calculated_score: float
    group_average: float
    signals: List[str] = field(default_factory=list)
    evidence: Dict = field(default_factory=dict)


def average(values: Iterable[float]) -> float:
    values = list(values)
    return sum(values) / len(values) if values else 0.0


def risk_score(personal: float, group_average: float) -> float:
    """How far below the group average a member sits, from 0 to 1."""
    if group_average <= 0:
        return DEFAULT_RISK_VALUE
    return min(1.0, max(0.0, 1.0 - personal / group_average))


def corroborating_signals(score: ContributionScore, project: ProjectConfig) -> List[str]:
    """Independent low-activity signals that back up a low composite score."""
    signals = []
    if score.commit_count < project.low_commit_floor:
        signals.append("low_commit_count")
    if score.late_task_count > project.late_task_floor:
        signals.append("many_late_tasks")
    if score.task_completion_score < project.task_completion_floor:
        signals.append("low_task_completion")
    return signals


def build_evidence(score: ContributionScore, group_average: float, signals: List[str],
                   project: ProjectConfig) -> Dict:
    """Snapshot of the metrics behind a detection."""
    below = (1 - score.calculated_score / group_average) * 100 if group_average > 0 else 0.0
    return {
        "calculatedScore": score.calculated_score,
        "groupAverageScore": round(group_average, 2),
        "percentageBelowAverage": round(below, 2),
        "freeriderThreshold": project.freerider_threshold,
        "taskCompletionScore": round(score.task_completion_score, 2),
        "peerReviewScore": round(score.peer_review_score, 2),
        "commitCount": score.commit_count,
        "lateTaskCount": score.late_task_count,
        "signals": signals,
    }


class FreeRiderDetector:
    """Flags members whose contribution is anomalously low against their group."""

    def group_scores(self, group: Group, scores: Mapping[int, ContributionScore],
                     users: Mapping[int, User]) -> Dict[int, ContributionScore]:
        """Scores of the group's enabled members that have a score row."""
        return {
            uid: scores[uid] for uid in group.all_member_ids
            if uid in scores and (uid not in users or users[uid].enabled)
        }

    def find_candidates(self, project: ProjectConfig, group: Group,
                        scores: Mapping[int, ContributionScore],
                        users: Mapping[int, User]) -> List[FreeRiderCandidate]:
        """
        Members below `freerider_threshold` x group mean that also show at
        least one corroborating low-activity signal.
        """
        member_scores = self.group_scores(group, scores, users)
        group_avg = average(s.calculated_score for s in member_scores.values())

        if group_avg <= 0:
            return []

        candidates = []
        for uid, score in member_scores.items():
            if score.calculated_score >= project.freerider_threshold * group_avg:
                continue

            signals = corroborating_signals(score, project)
            if not signals:
                logger.info(f"User {uid} in group {group.id} scored {score.calculated_score} "
                            f"(group avg {group_avg:.2f}) without corroborating signals; not flagged")
                continue

            logger.info(f"Detected free rider: user {uid} in group {group.id} - "
                        f"Score: {score.calculated_score} (Group avg: {group_avg:.2f})")
            candidates.append(FreeRiderCandidate(
                user_id=uid,
                group_id=group.id,
                calculated_score=score.calculated_score,
                group_average=group_avg,
                signals=signals,
                evidence=build_evidence(score, group_avg, signals, project)
            ))

        return candidates

    def risk_scores(self, groups: Iterable[Group], scores: Mapping[int, ContributionScore],
                    users: Mapping[int, User]) -> Dict[int, float]:
        result = {}
        for group in groups:
            member_scores = self.group_scores(group, scores, users)
            group_avg = average(s.calculated_score for s in member_scores.values())
            for uid, score in member_scores.items():
                result[uid] = round(risk_score(score.calculated_score, group_avg), 4)
        return result

    def build_report(self, project: ProjectConfig, groups: Iterable[Group],
                     scores: Mapping[int, ContributionScore], users: Mapping[int, User],
                     generated_at: Optional[datetime] = None) -> str:
        """Plain-text free-rider report for instructors."""
        lines = [f"FREE-RIDER REPORT: {project.name or project.id}", "=" * 40, ""]

        for group in groups:
            member_scores = self.group_scores(group, scores, users)
            lines.append(f"GROUP: {group.name or group.id}")
            lines.append("-" * 30)

            if not member_scores:
                lines.append("No scored members in this group.")
                lines.append("")
                continue

            group_avg = average(s.calculated_score for s in member_scores.values())
            lines.append(f"Group average contribution score: {group_avg:.2f}")
            lines.append(f"{'MEMBER':<30} {'SCORE':<10} {'% OF AVG':<10} STATUS")

            for uid, score in sorted(member_scores.items(), key=lambda item: item[1].calculated_score):
                percent = score.calculated_score / group_avg * 100 if group_avg > 0 else 0.0
                if percent < project.freerider_threshold * 100:
                    status = "HIGH RISK"
                elif percent < 70:
                    status = "AT RISK"
                else:
                    status = "NORMAL"
                name = users[uid].username if uid in users else str(uid)
                lines.append(f"{name:<30} {score.calculated_score:<10.2f} {percent:<10.2f} {status}")

            lines.append("")

        lines.append(f"Generated at: {(generated_at or datetime.now()).isoformat()}")
        return "\n".join(lines)


def open_case(candidate: FreeRiderCandidate, case_id: int, project_id: int,
              detected_at: Optional[datetime] = None) -> FreeRiderCase:
    return FreeRiderCase(
        id=case_id,
        student_id=candidate.user_id,
        project_id=project_id,
        group_id=candidate.group_id,
        status=CaseStatus.PENDING,
        evidence=json.dumps(candidate.evidence, sort_keys=True),
        detected_at=detected_at or datetime.now()
    )


def transition(case: FreeRiderCase, target: CaseStatus, resolution: Optional[str] = None,
               notes: Optional[str] = None, now: Optional[datetime] = None) -> FreeRiderCase:
    """Move a case forward in its lifecycle."""
    if target not in ALLOWED_TRANSITIONS[case.status]:
        raise CaseTransitionError(f"Case {case.id} cannot move from {case.status.value} to {target.value}")

    now = now or datetime.now()
    update = {"status": target}
    if notes is not None:
        update["notes"] = notes
    if target == CaseStatus.CONTACTED:
        update["contacted_at"] = now
    if target in TERMINAL_CASE_STATUSES:
        update["resolved_at"] = now
        if resolution is not None:
            update["resolution"] = resolution

    logger.info(f"Free rider case {case.id}: {case.status.value} -> {target.value}")
    return case.model_copy(update=update)


def to_dto(case: FreeRiderCase, student: User) -> FreeRiderCaseDTO:
    return FreeRiderCaseDTO(
        id=case.id,
        student_id=case.student_id,
        student_username=student.username,
        student_full_name=student.full_name,
        project_id=case.project_id,
        group_id=case.group_id,
        status=case.status,
        status_description=CASE_STATUS_DESCRIPTIONS[case.status],
        resolution=case.resolution,
        notes=case.notes,
        evidence=json.loads(case.evidence),
        detected_at=case.detected_at,
        contacted_at=case.contacted_at,
        resolved_at=case.resolved_at
    )
