"""
Workload pressure classification (Total Member Pressure Score).
"""
import logging
from datetime import date
from typing import Iterable, List

from .models import (
    PRESSURE_STATUS_DESCRIPTIONS, PressureScoreResponse, PressureStatus,
    ProjectConfig, Task, User
)

logger = logging.getLogger(__name__)


def urgency_factor(days_until_deadline: int, project: ProjectConfig) -> float:
    """Urgency of a task given the days left; overdue tasks get the maximum."""
    if days_until_deadline < 0:
        return project.overdue_urgency

    for step in project.urgency_steps:
        if days_until_deadline <= step.max_days:
            return step.factor

    return project.default_urgency


def task_pressure(task: Task, today: date, project: ProjectConfig) -> float:
    days = (task.deadline - today).days
    return task.difficulty_weight * urgency_factor(days, project)


def classify(pressure_score: float, project: ProjectConfig) -> PressureStatus:
    """Classify a TMPS against the project's pressure threshold."""
    ratio = pressure_score / project.pressure_threshold

    if ratio >= 1.0:
        return PressureStatus.OVERLOADED
    if ratio >= project.at_risk_ratio:
        return PressureStatus.AT_RISK
    return PressureStatus.SAFE


class PressureClassifier:
    """Evaluates member workload from their open tasks."""

    def total_pressure(self, user_id: int, tasks: Iterable[Task], today: date,
                       project: ProjectConfig) -> tuple:
        """Return the unrounded (TMPS, number of open tasks) for `user_id`."""
        active = [t for t in tasks if t.assignee_id == user_id and not t.is_completed]
        total = sum(task_pressure(t, today, project) for t in active)

        for t in active:
            logger.debug(f"Task {t.id}: DW={t.difficulty_weight}, "
                         f"days={(t.deadline - today).days}, TPS={task_pressure(t, today, project)}")

        return total, len(active)

    def evaluate(self, user: User, tasks: Iterable[Task], today: date,
                 project: ProjectConfig) -> PressureScoreResponse:
        """Build the pressure report for one member."""
        score, task_count = self.total_pressure(user.id, tasks, today, project)
        # classify before rounding for display
        status = classify(score, project)

        if status == PressureStatus.OVERLOADED:
            logger.warning(f"User {user.username} is OVERLOADED with pressure score {score} "
                           f"in project {project.id}")

        return PressureScoreResponse(
            user_id=user.id,
            username=user.username,
            full_name=user.full_name,
            project_id=project.id,
            pressure_score=round(score, 2),
            status=status,
            status_description=PRESSURE_STATUS_DESCRIPTIONS[status],
            task_count=task_count,
            threshold=project.pressure_threshold,
            threshold_percentage=round(score / project.pressure_threshold * 100, 2)
        )

    def evaluate_all(self, users: Iterable[User], tasks: Iterable[Task], today: date,
                     project: ProjectConfig) -> List[PressureScoreResponse]:
        tasks = list(tasks)
        return [self.evaluate(user, tasks, today, project) for user in users]
