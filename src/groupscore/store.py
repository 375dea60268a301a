"""
In-memory reference store for the scoring engine.

Persistence is owned by an external collaborator; this store implements the
narrow interface the engine needs and is used for tests and batch runs.
"""
import itertools
import logging
import threading
from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from .models import (
    CommitRecord, ContributionScore, FreeRiderCase, Group, PeerReview,
    PeerReviewSubmission, ProjectConfig, Task, User
)
from .scoring import ComputationConflict

logger = logging.getLogger(__name__)


class NotFoundError(Exception):
    """Raised when a requested entity does not exist."""
    pass


def _not_after(value: datetime, cutoff: datetime) -> bool:
    # naive datetimes are local time
    if value.tzinfo is None and cutoff.tzinfo is not None:
        value = value.astimezone()
    elif value.tzinfo is not None and cutoff.tzinfo is None:
        value = value.astimezone().replace(tzinfo=None)
    return value <= cutoff


class InMemoryStore:
    """Thread-safe store of projects, rosters, signals, scores and cases."""

    def __init__(self):
        self._lock = threading.RLock()
        self._ids = defaultdict(lambda: itertools.count(1))

        self._projects: Dict[int, ProjectConfig] = {}
        self._users: Dict[int, User] = {}
        self._groups: Dict[int, Group] = {}
        self._tasks: Dict[int, Task] = {}
        self._reviews: Dict[Tuple[int, int, int, int], PeerReview] = {}
        self._commits: Dict[str, CommitRecord] = {}
        self._scores: Dict[Tuple[int, int], ContributionScore] = {}
        self._cases: Dict[int, FreeRiderCase] = {}

    def next_id(self, kind: str) -> int:
        with self._lock:
            return next(self._ids[kind])

    # Projects and rosters

    def add_project(self, project: ProjectConfig) -> ProjectConfig:
        with self._lock:
            self._projects[project.id] = project
        return project

    def get_project(self, project_id: int) -> ProjectConfig:
        with self._lock:
            project = self._projects.get(project_id)
        if project is None:
            raise NotFoundError(f"Project not found with ID: {project_id}")
        return project

    def project_ids(self) -> List[int]:
        with self._lock:
            return sorted(self._projects)

    def add_user(self, user: User) -> User:
        with self._lock:
            self._users[user.id] = user
        return user

    def get_user(self, user_id: int) -> User:
        with self._lock:
            user = self._users.get(user_id)
        if user is None:
            raise NotFoundError(f"User not found with ID: {user_id}")
        return user

    def add_group(self, group: Group) -> Group:
        project = self.get_project(group.project_id)
        if len(group.all_member_ids) > project.max_members:
            raise ValueError(f"Group {group.id} exceeds maximum size ({project.max_members})")
        with self._lock:
            for user_id in group.all_member_ids:
                if user_id not in self._users:
                    raise NotFoundError(f"User not found with ID: {user_id}")
            self._groups[group.id] = group
        return group

    def get_group(self, group_id: int) -> Group:
        with self._lock:
            group = self._groups.get(group_id)
        if group is None:
            raise NotFoundError(f"Group not found with ID: {group_id}")
        return group

    def groups_for_project(self, project_id: int) -> List[Group]:
        with self._lock:
            return sorted((g for g in self._groups.values() if g.project_id == project_id),
                          key=lambda g: g.id)

    def project_members(self, project_id: int) -> List[User]:
        """All users in any group of the project, leaders included."""
        member_ids = []
        for group in self.groups_for_project(project_id):
            member_ids.extend(group.all_member_ids)
        with self._lock:
            return [self._users[uid] for uid in dict.fromkeys(member_ids)]

    # Tasks and reviews

    def upsert_task(self, task: Task) -> Task:
        self.get_group(task.group_id)
        with self._lock:
            self._tasks[task.id] = task
        return task

    def tasks_for_project(self, project_id: int) -> List[Task]:
        group_ids = {g.id for g in self.groups_for_project(project_id)}
        with self._lock:
            return [t for t in self._tasks.values() if t.group_id in group_ids]

    def submit_review(self, submission: PeerReviewSubmission) -> PeerReview:
        """Store a review, replacing the reviewer's earlier one for the same week."""
        key = (submission.reviewer_id, submission.reviewee_id,
               submission.project_id, submission.review_week)
        with self._lock:
            existing = self._reviews.get(key)
            review_id = existing.id if existing else self.next_id("review")
            review = PeerReview(id=review_id, **submission.model_dump())
            self._reviews[key] = review
        return review

    def reviews_for_project(self, project_id: int) -> List[PeerReview]:
        with self._lock:
            return [r for r in self._reviews.values() if r.project_id == project_id]

    # Commits

    def has_commit(self, commit_id: str) -> bool:
        with self._lock:
            return commit_id in self._commits

    def add_commit(self, record: CommitRecord) -> bool:
        """Insert a new commit record. Returns False if the commit id is known."""
        with self._lock:
            if record.commit_id in self._commits:
                return False
            self._commits[record.commit_id] = record
        return True

    def update_commit_resolution(self, record: CommitRecord) -> CommitRecord:
        """Persist new resolution fields for an existing commit."""
        with self._lock:
            current = self._commits.get(record.commit_id)
            if current is None:
                raise NotFoundError(f"Commit not found: {record.commit_id}")
            updated = current.model_copy(update={
                "resolved_user_id": record.resolved_user_id,
                "is_valid": record.is_valid,
            })
            self._commits[record.commit_id] = updated
        return updated

    def commits_for_project(self, project_id: int, cutoff: Optional[datetime] = None) -> List[CommitRecord]:
        """Commits of a project, restricted to those known and authored by `cutoff`."""
        with self._lock:
            records = [c for c in self._commits.values() if c.project_id == project_id]
        if cutoff is not None:
            records = [c for c in records if _not_after(c.ingested_at, cutoff) and _not_after(c.timestamp, cutoff)]
        return sorted(records, key=lambda c: (c.timestamp, c.id))

    def invalid_commits(self, project_id: int, group_id: Optional[int] = None) -> List[CommitRecord]:
        return [
            c for c in self.commits_for_project(project_id)
            if not c.is_valid and (group_id is None or c.group_id == group_id)
        ]

    # Scores

    def get_score(self, user_id: int, project_id: int) -> Optional[ContributionScore]:
        with self._lock:
            return self._scores.get((user_id, project_id))

    def scores_for_project(self, project_id: int) -> List[ContributionScore]:
        with self._lock:
            return sorted((s for s in self._scores.values() if s.project_id == project_id),
                          key=lambda s: s.user_id)

    def save_score(self, score: ContributionScore, expected_revision: Optional[int] = None) -> ContributionScore:
        """
        Write a score row.

        With `expected_revision`, the write only succeeds if the stored row
        is still at that revision (0 meaning no row yet).
        """
        key = (score.user_id, score.project_id)
        with self._lock:
            if expected_revision is not None:
                current = self._scores.get(key)
                current_revision = current.revision if current else 0
                if current_revision != expected_revision:
                    raise ComputationConflict(
                        f"Score for user {score.user_id} in project {score.project_id} "
                        f"changed (revision {current_revision}, expected {expected_revision})"
                    )
            self._scores[key] = score
        return score

    # Free-rider cases

    def find_open_case(self, student_id: int, project_id: int) -> Optional[FreeRiderCase]:
        with self._lock:
            for case in self._cases.values():
                if case.student_id == student_id and case.project_id == project_id and case.is_open:
                    return case
        return None

    def save_case(self, case: FreeRiderCase) -> FreeRiderCase:
        with self._lock:
            self._cases[case.id] = case
        return case

    def get_case(self, case_id: int) -> FreeRiderCase:
        with self._lock:
            case = self._cases.get(case_id)
        if case is None:
            raise NotFoundError(f"Free rider case not found with ID: {case_id}")
        return case

    def cases_for_project(self, project_id: int) -> List[FreeRiderCase]:
        with self._lock:
            return sorted((c for c in self._cases.values() if c.project_id == project_id),
                          key=lambda c: c.id)

    def load_roster(self, project: ProjectConfig, groups: Iterable[Group], users: Iterable[User]):
        """Register a project together with its users and groups."""
        self.add_project(project)
        for user in users:
            self.add_user(user)
        for group in groups:
            self.add_group(group)
        logger.info(f"Loaded roster for project {project.id}")
