"""
Contribution scoring engine: recompute passes, overrides, pressure and
free-rider detection for a project.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional

from .attribution import CommitAttributionResolver, build_commit_record
from .config import config
from .freerider import FreeRiderDetector, open_case, to_dto, transition
from .models import (
    CaseStatus, CommitFeedEntry, CommitRecord, ContributionScore,
    ContributionScoreResponse, EventType, FreeRiderCase, FreeRiderCaseDTO,
    NotificationEvent, PressureScoreResponse, PressureStatus, RecomputeFailure,
    RecomputeResult, User
)
from .notifications import NotificationDispatcher
from .peer_review import PeerReviewAggregator
from .pressure import PressureClassifier
from .scoring import ComputationConflict, ContributionScoreCalculator, ScoreSignals
from .store import InMemoryStore, NotFoundError
from .task_aggregator import TaskCompletionAggregator

logger = logging.getLogger(__name__)


class ProjectLockRegistry:
    """One lock per project, so unrelated projects never wait on each other."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[int, threading.Lock] = {}

    def get(self, project_id: int) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(project_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[project_id] = lock
            return lock


class ContributionEngine:
    """Runs scoring operations for projects held in a store."""

    def __init__(self, store: InMemoryStore, dispatcher: Optional[NotificationDispatcher] = None,
                 max_workers: Optional[int] = None,
                 resolver: Optional[CommitAttributionResolver] = None,
                 task_aggregator: Optional[TaskCompletionAggregator] = None,
                 peer_review_aggregator: Optional[PeerReviewAggregator] = None,
                 calculator: Optional[ContributionScoreCalculator] = None,
                 pressure_classifier: Optional[PressureClassifier] = None,
                 detector: Optional[FreeRiderDetector] = None):
        self.store = store
        self.dispatcher = dispatcher
        self.max_workers = max_workers or config.engine.max_workers
        self.locks = ProjectLockRegistry()

        self.resolver = resolver or CommitAttributionResolver()
        self.task_aggregator = task_aggregator or TaskCompletionAggregator()
        self.peer_review_aggregator = peer_review_aggregator or PeerReviewAggregator()
        self.calculator = calculator or ContributionScoreCalculator()
        self.pressure_classifier = pressure_classifier or PressureClassifier()
        self.detector = detector or FreeRiderDetector()

    # Commit ingestion

    def ingest_commits(self, project_id: int, entries: Iterable[CommitFeedEntry],
                       group_id: Optional[int] = None,
                       ingested_at: Optional[datetime] = None) -> List[CommitRecord]:
        """Store new commits from the feed, attributed against the project roster."""
        self.store.get_project(project_id)
        roster = self.store.project_members(project_id)

        created = []
        for entry in entries:
            if self.store.has_commit(entry.commit_id):
                logger.debug(f"Skipping known commit {entry.commit_id[:8]}")
                continue

            record = build_commit_record(entry, self.store.next_id("commit"), project_id,
                                         group_id=group_id, ingested_at=ingested_at)
            record = self.resolver.resolve(record, roster)
            if self.store.add_commit(record):
                created.append(record)

        logger.info(f"Ingested {len(created)} new commits for project {project_id}")
        return created

    def reattribute_commits(self, project_id: int) -> List[CommitRecord]:
        """Re-run attribution for every stored commit, e.g. after roster changes."""
        with self.locks.get(project_id):
            roster = self.store.project_members(project_id)
            changed = []
            for record in self.store.commits_for_project(project_id):
                resolved = self.resolver.resolve(record, roster)
                if (resolved.resolved_user_id, resolved.is_valid) != (record.resolved_user_id, record.is_valid):
                    changed.append(self.store.update_commit_resolution(resolved))

        logger.info(f"Re-attributed {len(changed)} commits in project {project_id}")
        return changed

    def invalid_commits(self, project_id: int, group_id: Optional[int] = None) -> List[CommitRecord]:
        return self.store.invalid_commits(project_id, group_id)

    # Contribution scores

    def recompute_project(self, project_id: int, cutoff: Optional[datetime] = None,
                          as_of: Optional[date] = None, from_week: Optional[int] = None,
                          to_week: Optional[int] = None) -> RecomputeResult:
        """
        Recompute every member's score from a snapshot taken at `cutoff`.

        Peer reviews are limited to `from_week`..`to_week`, defaulting to the
        project's review window.

        A failure for one user keeps that user's previous score and is
        reported in the result; the other users are still written.
        """
        project = self.store.get_project(project_id)
        cutoff = cutoff or datetime.now()
        as_of = as_of or cutoff.date()
        from_week = from_week if from_week is not None else project.review_from_week
        to_week = to_week if to_week is not None else project.review_to_week

        with self.locks.get(project_id):
            members = self.store.project_members(project_id)
            tasks = self.store.tasks_for_project(project_id)
            reviews = self.store.reviews_for_project(project_id)
            commits = self.store.commits_for_project(project_id, cutoff=cutoff)
            existing = {s.user_id: s for s in self.store.scores_for_project(project_id)}

            logger.info(f"Recomputing {len(members)} scores for project {project_id} "
                        f"(cutoff {cutoff.isoformat()})")

            def aggregate(user: User) -> ScoreSignals:
                task_summary = self.task_aggregator.aggregate(user.id, tasks, as_of)
                return ScoreSignals(
                    task_completion_score=task_summary.task_completion_score,
                    peer_review_score=self.peer_review_aggregator.aggregate(
                        user.id, reviews, project, from_week=from_week, to_week=to_week),
                    commit_count=sum(1 for c in commits if c.is_valid and c.resolved_user_id == user.id),
                    late_task_count=task_summary.late_task_count
                )

            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                futures = {user.id: executor.submit(aggregate, user) for user in members}

            result = RecomputeResult(project_id=project_id, cutoff=cutoff, scores=[])

            for user in members:
                previous = existing.get(user.id)
                try:
                    signals = futures[user.id].result()
                    score = self.calculator.recompute(
                        previous, signals, project, user.id,
                        score_id=previous.id if previous else self.store.next_id("score"),
                        now=cutoff
                    )
                    self.store.save_score(score, expected_revision=previous.revision if previous else 0)
                    result.scores.append(score)

                except ComputationConflict as e:
                    logger.warning(f"Recompute superseded for user {user.id}: {e}")
                    result.superseded.append(user.id)
                    current = self.store.get_score(user.id, project_id)
                    if current is not None:
                        result.scores.append(current)

                except Exception as e:
                    logger.error(f"Score computation failed for user {user.id} in project {project_id}: {e}")
                    result.failures.append(RecomputeFailure(user_id=user.id, error=str(e)))
                    if previous is not None:
                        result.scores.append(previous)

        if result.is_partial:
            logger.warning(f"Recompute of project {project_id} finished with "
                           f"{len(result.failures)} failures")
        return result

    def adjust_score(self, project_id: int, user_id: int, adjusted_score: float, reason: str,
                     actor: Optional[str] = None) -> ContributionScore:
        """Apply an operator override under the project lock."""
        with self.locks.get(project_id):
            score = self._require_score(user_id, project_id)
            updated = self.calculator.adjust(score, adjusted_score, reason, actor=actor)
            self.store.save_score(updated, expected_revision=score.revision)

        logger.info(f"Score for user {user_id} in project {project_id} adjusted to {adjusted_score} "
                    f"by {actor or 'unknown'}")
        return updated

    def clear_adjustment(self, project_id: int, user_id: int, reason: str,
                         actor: Optional[str] = None) -> ContributionScore:
        with self.locks.get(project_id):
            score = self._require_score(user_id, project_id)
            updated = self.calculator.clear_adjustment(score, reason, actor=actor)
            self.store.save_score(updated, expected_revision=score.revision)

        logger.info(f"Override cleared for user {user_id} in project {project_id} by {actor or 'unknown'}")
        return updated

    def finalize_project(self, project_id: int, actor: Optional[str] = None) -> List[ContributionScore]:
        """Freeze all current scores of a project."""
        with self.locks.get(project_id):
            finalized = []
            for score in self.store.scores_for_project(project_id):
                updated = self.calculator.finalize(score, actor=actor)
                if updated is not score:
                    self.store.save_score(updated, expected_revision=score.revision)
                finalized.append(updated)

        logger.info(f"Finalized {len(finalized)} scores in project {project_id}")
        return finalized

    def get_scores(self, project_id: int) -> List[ContributionScoreResponse]:
        self.store.get_project(project_id)
        return [self._score_response(s) for s in self.store.scores_for_project(project_id)]

    def _require_score(self, user_id: int, project_id: int) -> ContributionScore:
        score = self.store.get_score(user_id, project_id)
        if score is None:
            raise NotFoundError(f"Contribution score not found for user {user_id} in project {project_id}")
        return score

    def _score_response(self, score: ContributionScore) -> ContributionScoreResponse:
        user = self.store.get_user(score.user_id)
        return ContributionScoreResponse(
            user_id=score.user_id,
            username=user.username,
            full_name=user.full_name,
            project_id=score.project_id,
            task_completion_score=round(score.task_completion_score, 2),
            peer_review_score=round(score.peer_review_score, 2),
            commit_count=score.commit_count,
            late_task_count=score.late_task_count,
            calculated_score=score.calculated_score,
            last_computed_score=score.last_computed_score,
            adjusted_score=score.adjusted_score,
            adjustment_reason=score.adjustment_reason,
            effective_score=score.effective_score,
            is_final=score.is_final,
            updated_at=score.updated_at
        )

    # Pressure

    def evaluate_pressure(self, project_id: int, today: Optional[date] = None,
                          notify: bool = True) -> List[PressureScoreResponse]:
        """Classify the workload of every project member."""
        project = self.store.get_project(project_id)
        today = today or date.today()

        responses = self.pressure_classifier.evaluate_all(
            self.store.project_members(project_id),
            self.store.tasks_for_project(project_id),
            today,
            project
        )

        if notify:
            for response in responses:
                if response.status == PressureStatus.OVERLOADED:
                    self._notify(NotificationEvent(
                        type=EventType.USER_OVERLOADED,
                        project_id=project_id,
                        subject_user_id=response.user_id,
                        title="Workload overloaded",
                        message=f"{response.username} has a pressure score of {response.pressure_score} "
                                f"({response.threshold_percentage:.0f}% of threshold {response.threshold})",
                        payload=response.model_dump(mode="json"),
                        created_at=datetime.now()
                    ))

        return responses

    # Free riders

    def detect_free_riders(self, project_id: int, notify: bool = True,
                           now: Optional[datetime] = None) -> List[FreeRiderCase]:
        """Open review cases for newly detected free-riders; returns the new cases."""
        project = self.store.get_project(project_id)
        now = now or datetime.now()
        created = []

        with self.locks.get(project_id):
            scores = {s.user_id: s for s in self.store.scores_for_project(project_id)}
            users = {u.id: u for u in self.store.project_members(project_id)}

            for group in self.store.groups_for_project(project_id):
                for candidate in self.detector.find_candidates(project, group, scores, users):
                    existing = self.store.find_open_case(candidate.user_id, project_id)
                    if existing is not None:
                        logger.info(f"Open case {existing.id} already exists for user {candidate.user_id}")
                        continue

                    case = open_case(candidate, self.store.next_id("case"), project_id, detected_at=now)
                    self.store.save_case(case)
                    created.append(case)

        if notify:
            for case in created:
                student = self.store.get_user(case.student_id)
                self._notify(NotificationEvent(
                    type=EventType.CASE_CREATED,
                    project_id=project_id,
                    subject_user_id=case.student_id,
                    title="Possible free-rider detected",
                    message=f"{student.username} ({student.email}) scored well below the group average "
                            f"in project {project.name or project_id}",
                    payload=to_dto(case, student).model_dump(mode="json"),
                    created_at=now
                ))

        logger.info(f"Opened {len(created)} free rider cases in project {project_id}")
        return created

    def risk_scores(self, project_id: int) -> Dict[int, float]:
        self.store.get_project(project_id)
        scores = {s.user_id: s for s in self.store.scores_for_project(project_id)}
        users = {u.id: u for u in self.store.project_members(project_id)}
        return self.detector.risk_scores(self.store.groups_for_project(project_id), scores, users)

    def free_rider_report(self, project_id: int) -> str:
        project = self.store.get_project(project_id)
        scores = {s.user_id: s for s in self.store.scores_for_project(project_id)}
        users = {u.id: u for u in self.store.project_members(project_id)}
        return self.detector.build_report(project, self.store.groups_for_project(project_id), scores, users)

    def list_cases(self, project_id: int) -> List[FreeRiderCaseDTO]:
        self.store.get_project(project_id)
        return [to_dto(c, self.store.get_user(c.student_id)) for c in self.store.cases_for_project(project_id)]

    def contact_case(self, case_id: int, notes: Optional[str] = None) -> FreeRiderCase:
        return self._transition_case(case_id, CaseStatus.CONTACTED, notes=notes)

    def resolve_case(self, case_id: int, resolution: str, notes: Optional[str] = None) -> FreeRiderCase:
        return self._transition_case(case_id, CaseStatus.RESOLVED, resolution=resolution, notes=notes)

    def dismiss_case(self, case_id: int, notes: Optional[str] = None) -> FreeRiderCase:
        return self._transition_case(case_id, CaseStatus.DISMISSED, resolution="dismissed", notes=notes)

    def _transition_case(self, case_id: int, target: CaseStatus, resolution: Optional[str] = None,
                         notes: Optional[str] = None) -> FreeRiderCase:
        project_id = self.store.get_case(case_id).project_id
        with self.locks.get(project_id):
            case = transition(self.store.get_case(case_id), target, resolution=resolution, notes=notes)
            return self.store.save_case(case)

    def _notify(self, event: NotificationEvent):
        if self.dispatcher is not None:
            self.dispatcher.dispatch(event)
