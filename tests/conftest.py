"""
Shared fixtures: one project with a three-member group.

alice and bob do all of the work; carol has an untouched overdue task,
no commits and poor peer reviews.
"""
from datetime import date, datetime, timedelta

import pytest

from groupscore.engine import ContributionEngine
from groupscore.models import (
    CommitFeedEntry, Difficulty, Group, PeerReviewSubmission, ProjectConfig,
    Task, TaskStatus, User
)
from groupscore.store import InMemoryStore

TODAY = date(2026, 5, 10)
CUTOFF = datetime(2026, 5, 10, 12, 0)
INGESTED_AT = datetime(2026, 5, 9, 8, 0)


@pytest.fixture
def project():
    return ProjectConfig(id=1, name="Capstone")


@pytest.fixture
def users():
    return [
        User(id=1, username="alice", email="alice@example.com", full_name="Alice Nguyen"),
        User(id=2, username="bob", email="bob@example.com", full_name="Bob Tran"),
        User(id=3, username="carol", email="carol@example.com", full_name="Carol Le"),
    ]


@pytest.fixture
def group():
    return Group(id=10, project_id=1, name="Team Falcon", member_ids=(1, 2, 3), leader_id=1)


@pytest.fixture
def tasks():
    return [
        Task(id=101, group_id=10, assignee_id=1, difficulty=Difficulty.HARD,
             deadline=date(2026, 5, 5), status=TaskStatus.COMPLETED,
             completion_percentage=100, completed_at=datetime(2026, 5, 1, 15, 0)),
        Task(id=102, group_id=10, assignee_id=2, difficulty=Difficulty.HARD,
             deadline=date(2026, 5, 5), status=TaskStatus.COMPLETED,
             completion_percentage=100, completed_at=datetime(2026, 5, 4, 9, 30)),
        Task(id=103, group_id=10, assignee_id=3, difficulty=Difficulty.MEDIUM,
             deadline=date(2026, 5, 1), status=TaskStatus.NOT_STARTED),
    ]


def feed_entries():
    entries = []
    for i in range(10):
        entries.append(CommitFeedEntry(
            commit_id=f"a{i:039d}",
            author_name="Alice N.",
            author_email="Alice@Example.com",
            timestamp=datetime(2026, 5, 1, 10, 0) + timedelta(hours=i),
            message=f"[TASK-101] step {i}"
        ))
        entries.append(CommitFeedEntry(
            commit_id=f"b{i:039d}",
            author_name="bob",
            author_email="bob@laptop.local",
            timestamp=datetime(2026, 5, 2, 10, 0) + timedelta(hours=i),
            message=f"[TASK-102] step {i}"
        ))
    entries.append(CommitFeedEntry(
        commit_id="m" * 40,
        author_name="Mallory",
        author_email="mallory@elsewhere.test",
        timestamp=datetime(2026, 5, 3, 10, 0),
        message="drive-by fix"
    ))
    return entries


@pytest.fixture
def store(project, users, group, tasks):
    store = InMemoryStore()
    store.load_roster(project, [group], users)
    for task in tasks:
        store.upsert_task(task)
    store.submit_review(PeerReviewSubmission(
        reviewer_id=2, reviewee_id=1, project_id=1,
        completion_score=5, cooperation_score=5, review_week=18))
    store.submit_review(PeerReviewSubmission(
        reviewer_id=1, reviewee_id=2, project_id=1,
        completion_score=5, cooperation_score=5, review_week=18))
    store.submit_review(PeerReviewSubmission(
        reviewer_id=1, reviewee_id=3, project_id=1,
        completion_score=1, cooperation_score=1, review_week=18, comment="Did not show up"))
    return store


@pytest.fixture
def engine(store):
    engine = ContributionEngine(store, max_workers=2)
    engine.ingest_commits(1, feed_entries(), group_id=10, ingested_at=INGESTED_AT)
    return engine


class RecordingSender:
    """Notification sender that keeps every event it is given."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.events = []

    def send(self, event):
        if self.fail:
            raise RuntimeError("notification service unavailable")
        self.events.append(event)
        return {}


@pytest.fixture
def sender():
    return RecordingSender()
