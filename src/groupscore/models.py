"""
Data models for group contribution scoring and free-rider review.
"""
from datetime import date, datetime
from typing import List, Optional, Dict, Any, Tuple
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from enum import Enum


class Difficulty(str, Enum):
    """Task difficulty levels."""
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"


DIFFICULTY_WEIGHTS = {
    Difficulty.EASY: 1,
    Difficulty.MEDIUM: 2,
    Difficulty.HARD: 3,
}


class TaskStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class PressureStatus(str, Enum):
    """Workload status of a member relative to the project threshold."""
    SAFE = "safe"
    AT_RISK = "at_risk"
    OVERLOADED = "overloaded"


PRESSURE_STATUS_DESCRIPTIONS = {
    PressureStatus.SAFE: "Safe",
    PressureStatus.AT_RISK: "At risk",
    PressureStatus.OVERLOADED: "Overloaded",
}


class CaseStatus(str, Enum):
    """Lifecycle states of a free-rider review case."""
    PENDING = "pending"
    CONTACTED = "contacted"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


CASE_STATUS_DESCRIPTIONS = {
    CaseStatus.PENDING: "Awaiting review",
    CaseStatus.CONTACTED: "Student contacted",
    CaseStatus.RESOLVED: "Resolved",
    CaseStatus.DISMISSED: "Dismissed",
}

TERMINAL_CASE_STATUSES = frozenset({CaseStatus.RESOLVED, CaseStatus.DISMISSED})


class EventType(str, Enum):
    CASE_CREATED = "case_created"
    USER_OVERLOADED = "user_overloaded"


class UrgencyStep(BaseModel):
    """Urgency factor applied when a deadline is at most `max_days` away."""
    model_config = ConfigDict(frozen=True)

    max_days: int
    factor: float = Field(gt=0)


DEFAULT_URGENCY_STEPS = (
    UrgencyStep(max_days=1, factor=3.0),
    UrgencyStep(max_days=3, factor=2.0),
    UrgencyStep(max_days=7, factor=1.5),
)


class ProjectConfig(BaseModel):
    """Per-project scoring configuration passed into every computation."""
    model_config = ConfigDict(frozen=True)

    id: int
    name: str = ""
    max_members: int = Field(default=6, gt=0)

    weight_w1: float = Field(default=0.4, ge=0)
    weight_w2: float = Field(default=0.3, ge=0)
    weight_w3: float = Field(default=0.2, ge=0)
    weight_w4: float = Field(default=0.1, ge=0)

    freerider_threshold: float = Field(default=0.3, gt=0, le=1)
    pressure_threshold: int = Field(default=15, gt=0)

    # Composite score shape
    commit_baseline: int = Field(default=10, gt=0)
    late_penalty_per_task: float = Field(default=10.0, ge=0)
    peer_review_neutral_score: float = Field(default=50.0, ge=0, le=100)

    # Peer review evaluation window, inclusive; None leaves that side open
    review_from_week: Optional[int] = Field(default=None, ge=1)
    review_to_week: Optional[int] = Field(default=None, ge=1)

    # Pressure classification
    urgency_steps: Tuple[UrgencyStep, ...] = DEFAULT_URGENCY_STEPS
    default_urgency: float = Field(default=1.0, gt=0)
    overdue_urgency: float = Field(default=3.5, gt=0)
    at_risk_ratio: float = Field(default=0.7, gt=0, lt=1)

    # Free-rider corroboration floors
    low_commit_floor: int = Field(default=3, ge=0)
    late_task_floor: int = Field(default=2, ge=0)
    task_completion_floor: float = Field(default=40.0, ge=0, le=100)

    @field_validator('urgency_steps')
    @classmethod
    def sort_urgency_steps(cls, v):
        steps = tuple(sorted(v, key=lambda s: s.max_days))
        factors = [s.factor for s in steps]
        if any(a < b for a, b in zip(factors, factors[1:])):
            raise ValueError("Urgency factors must not increase as deadlines move further away")
        return steps

    @model_validator(mode='after')
    def validate_overdue_urgency(self):
        highest = max([self.default_urgency] + [s.factor for s in self.urgency_steps])
        if self.overdue_urgency < highest:
            raise ValueError("Overdue urgency must be the maximum urgency factor")
        return self

    @model_validator(mode='after')
    def validate_review_window(self):
        if (self.review_from_week is not None and self.review_to_week is not None
                and self.review_from_week > self.review_to_week):
            raise ValueError("Review window start week must not be after its end week")
        return self


class User(BaseModel):
    """A registered user that commits and reviews can be attributed to."""
    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    email: str
    full_name: str = ""
    enabled: bool = True


class Group(BaseModel):
    """A project group. Scores are keyed by (user, project), not by group."""
    model_config = ConfigDict(frozen=True)

    id: int
    project_id: int
    name: str = ""
    member_ids: Tuple[int, ...] = ()
    leader_id: Optional[int] = None

    @property
    def all_member_ids(self) -> Tuple[int, ...]:
        """Members including the leader, without duplicates."""
        ids = list(dict.fromkeys(self.member_ids))
        if self.leader_id is not None and self.leader_id not in ids:
            ids.append(self.leader_id)
        return tuple(ids)


class Task(BaseModel):
    """Snapshot of a task as supplied by the task collaborator."""
    model_config = ConfigDict(frozen=True)

    id: int
    group_id: int
    assignee_id: Optional[int] = None
    difficulty: Difficulty = Difficulty.MEDIUM
    deadline: date
    status: TaskStatus = TaskStatus.NOT_STARTED
    completion_percentage: Optional[float] = Field(default=None, ge=0, le=100)
    completed_at: Optional[datetime] = None

    @property
    def is_completed(self) -> bool:
        return self.status == TaskStatus.COMPLETED

    @property
    def difficulty_weight(self) -> int:
        return DIFFICULTY_WEIGHTS[self.difficulty]


class CommitFeedEntry(BaseModel):
    """Raw commit as delivered by the source-control collaborator."""
    commit_id: str
    author_name: str
    author_email: str
    timestamp: datetime
    message: str = ""
    repository_ref: Optional[str] = None


class CommitRecord(BaseModel):
    """Stored commit. Only the resolution fields change after creation."""
    model_config = ConfigDict(frozen=True)

    id: int
    commit_id: str
    project_id: int
    group_id: Optional[int] = None
    author_name: str
    author_email: str
    timestamp: datetime
    message: str = ""
    task_id: Optional[int] = None
    resolved_user_id: Optional[int] = None
    is_valid: bool = False
    ingested_at: datetime

    @model_validator(mode='after')
    def validate_resolution(self):
        if self.is_valid and self.resolved_user_id is None:
            raise ValueError("A valid commit must be attributed to a user")
        return self


class PeerReviewSubmission(BaseModel):
    """Peer review as submitted by a reviewer."""
    reviewer_id: int
    reviewee_id: int
    project_id: int
    completion_score: float = Field(ge=1, le=5)
    cooperation_score: float = Field(ge=1, le=5)
    review_week: int = Field(ge=1)
    comment: Optional[str] = None

    @model_validator(mode='after')
    def validate_participants(self):
        if self.reviewer_id == self.reviewee_id:
            raise ValueError("Reviewer cannot review themselves")
        return self


class PeerReview(PeerReviewSubmission):
    model_config = ConfigDict(frozen=True)

    id: int

    @property
    def average_score(self) -> float:
        return (self.completion_score + self.cooperation_score) / 2


class ScoreAuditEntry(BaseModel):
    """One manual action taken on a contribution score."""
    model_config = ConfigDict(frozen=True)

    action: str
    actor: Optional[str] = None
    reason: str = ""
    adjusted_score: Optional[float] = None
    at: datetime


class ContributionScore(BaseModel):
    """Composite contribution score for one (user, project)."""
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: int
    project_id: int
    task_completion_score: float = 0.0
    peer_review_score: float = 0.0
    commit_count: int = 0
    late_task_count: int = 0
    calculated_score: float = 0.0
    last_computed_score: float = 0.0
    adjusted_score: Optional[float] = None
    adjustment_reason: Optional[str] = None
    is_final: bool = False
    revision: int = 0
    updated_at: datetime
    audit_log: Tuple[ScoreAuditEntry, ...] = ()

    @property
    def effective_score(self) -> float:
        """Score in effect: the operator override when one is set."""
        if self.is_final and self.adjusted_score is not None:
            return self.adjusted_score
        return self.calculated_score


class FreeRiderCase(BaseModel):
    """Human review case opened for a suspected free-rider."""
    model_config = ConfigDict(frozen=True)

    id: int
    student_id: int
    project_id: int
    group_id: int
    status: CaseStatus = CaseStatus.PENDING
    resolution: Optional[str] = None
    notes: Optional[str] = None
    evidence: str = "{}"
    detected_at: datetime
    contacted_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status not in TERMINAL_CASE_STATUSES


class ContributionScoreResponse(BaseModel):
    user_id: int
    username: str
    full_name: str
    project_id: int
    task_completion_score: float
    peer_review_score: float
    commit_count: int
    late_task_count: int
    calculated_score: float
    last_computed_score: float
    adjusted_score: Optional[float]
    adjustment_reason: Optional[str]
    effective_score: float
    is_final: bool
    updated_at: datetime


class PressureScoreResponse(BaseModel):
    user_id: int
    username: str
    full_name: str
    project_id: int
    pressure_score: float
    status: PressureStatus
    status_description: str
    task_count: int
    threshold: int
    threshold_percentage: float


class FreeRiderCaseDTO(BaseModel):
    id: int
    student_id: int
    student_username: str
    student_full_name: str
    project_id: int
    group_id: int
    status: CaseStatus
    status_description: str
    resolution: Optional[str]
    notes: Optional[str]
    evidence: Dict[str, Any]
    detected_at: datetime
    contacted_at: Optional[datetime]
    resolved_at: Optional[datetime]


class NotificationEvent(BaseModel):
    """Outbound payload handed to the notification collaborator."""
    type: EventType
    project_id: int
    subject_user_id: int
    title: str
    message: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class RecomputeFailure(BaseModel):
    user_id: int
    error: str


class RecomputeResult(BaseModel):
    """Outcome of one recompute pass over a project."""
    project_id: int
    cutoff: datetime
    scores: List[ContributionScore]
    failures: List[RecomputeFailure] = Field(default_factory=list)
    superseded: List[int] = Field(default_factory=list)

    @property
    def is_partial(self) -> bool:
        return bool(self.failures)
