"""
Task completion signal for contribution scoring.
"""
import logging
from dataclasses import dataclass
from datetime import date
from typing import Iterable

from .models import Task

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TaskCompletionSummary:
    """Task signals for one (user, project)."""
    task_completion_score: float
    late_task_count: int
    total_tasks: int
    completed_tasks: int

    @property
    def completion_ratio(self) -> float:
        if self.total_tasks == 0:
            return 0.0
        return self.completed_tasks / self.total_tasks


def task_completion(task: Task) -> float:
    """Completion percentage of a task; completed tasks count in full."""
    if task.is_completed:
        return 100.0
    return task.completion_percentage or 0.0


def is_late(task: Task, as_of: date) -> bool:
    """True for tasks finished after their deadline or still open past it."""
    if task.is_completed:
        return task.completed_at is not None and task.completed_at.date() > task.deadline
    return task.deadline < as_of


class TaskCompletionAggregator:
    """Aggregates task records into the task completion signal."""

    def aggregate(self, user_id: int, tasks: Iterable[Task], as_of: date) -> TaskCompletionSummary:
        """
        Summarize the tasks assigned to `user_id`.

        The score is the difficulty-weighted mean completion on a 0-100
        scale. Untouched tasks count as 0 rather than being skipped.
        """
        assigned = [t for t in tasks if t.assignee_id == user_id]

        total_weight = sum(t.difficulty_weight for t in assigned)
        if total_weight == 0:
            return TaskCompletionSummary(0.0, 0, 0, 0)

        weighted = sum(t.difficulty_weight * task_completion(t) for t in assigned)
        score = weighted / total_weight
        late = sum(1 for t in assigned if is_late(t, as_of))
        completed = sum(1 for t in assigned if t.is_completed)

        logger.debug(f"User {user_id}: {len(assigned)} tasks, score={score:.2f}, late={late}")

        return TaskCompletionSummary(
            task_completion_score=score,
            late_task_count=late,
            total_tasks=len(assigned),
            completed_tasks=completed
        )
