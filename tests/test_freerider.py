import json
from datetime import datetime

import pytest

from groupscore.freerider import (
    CaseTransitionError, FreeRiderDetector, open_case, risk_score, to_dto, transition
)
from groupscore.models import CaseStatus, ContributionScore, Group, ProjectConfig, User

NOW = datetime(2026, 5, 10, 12, 0)


def score(user_id, calculated, task=80.0, commits=10, late=0):
    return ContributionScore(id=user_id, user_id=user_id, project_id=1, calculated_score=calculated,
                             last_computed_score=calculated, task_completion_score=task,
                             commit_count=commits, late_task_count=late, updated_at=NOW)


@pytest.fixture
def project():
    return ProjectConfig(id=1, name="Capstone")


@pytest.fixture
def group():
    return Group(id=10, project_id=1, name="Team Falcon", member_ids=(1, 2, 3), leader_id=1)


@pytest.fixture
def users():
    return {
        1: User(id=1, username="alice", email="alice@example.com", full_name="Alice Nguyen"),
        2: User(id=2, username="bob", email="bob@example.com", full_name="Bob Tran"),
        3: User(id=3, username="carol", email="carol@example.com", full_name="Carol Le"),
    }


@pytest.fixture
def detector():
    return FreeRiderDetector()


class TestDetection:
    def test_low_score_with_signal_is_flagged(self, detector, project, group, users):
        scores = {1: score(1, 80), 2: score(2, 80), 3: score(3, 10, task=20, commits=1)}
        candidates = detector.find_candidates(project, group, scores, users)

        assert [c.user_id for c in candidates] == [3]
        carol = candidates[0]
        assert carol.group_id == 10
        assert carol.signals == ["low_commit_count", "low_task_completion"]
        assert carol.evidence["calculatedScore"] == 10
        assert carol.evidence["groupAverageScore"] == 56.67
        assert carol.evidence["percentageBelowAverage"] == 82.35
        assert carol.evidence["freeriderThreshold"] == 0.3

    def test_low_score_without_signal_is_not_flagged(self, detector, project, group, users):
        scores = {1: score(1, 80), 2: score(2, 80), 3: score(3, 10)}
        assert detector.find_candidates(project, group, scores, users) == []

    def test_many_late_tasks_is_a_signal(self, detector, project, group, users):
        scores = {1: score(1, 80), 2: score(2, 80), 3: score(3, 10, late=3)}
        candidates = detector.find_candidates(project, group, scores, users)
        assert candidates[0].signals == ["many_late_tasks"]

    def test_score_at_threshold_is_not_flagged(self, detector, project, group, users):
        # mean 50, threshold 15
        scores = {1: score(1, 70), 2: score(2, 65), 3: score(3, 15, task=0, commits=0)}
        assert detector.find_candidates(project, group, scores, users) == []

    def test_zero_group_average_is_skipped(self, detector, project, group, users):
        scores = {uid: score(uid, 0, task=0, commits=0) for uid in (1, 2, 3)}
        assert detector.find_candidates(project, group, scores, users) == []

    def test_disabled_members_excluded(self, detector, project, group, users):
        users[3] = users[3].model_copy(update={"enabled": False})
        scores = {1: score(1, 80), 2: score(2, 80), 3: score(3, 10, task=20, commits=1)}
        assert detector.find_candidates(project, group, scores, users) == []

    def test_members_without_score_rows_ignored(self, detector, project, group, users):
        scores = {1: score(1, 80), 3: score(3, 10, task=20, commits=1)}
        candidates = detector.find_candidates(project, group, scores, users)
        assert candidates[0].group_average == 45.0

    def test_project_threshold_applies(self, detector, group, users):
        strict = ProjectConfig(id=1, freerider_threshold=0.9)
        scores = {1: score(1, 80), 2: score(2, 80), 3: score(3, 60, commits=0)}
        assert [c.user_id for c in detector.find_candidates(strict, group, scores, users)] == [3]


class TestRiskScores:
    def test_distance_below_average(self, detector, group, users):
        scores = {1: score(1, 80), 2: score(2, 80), 3: score(3, 10)}
        risks = detector.risk_scores([group], scores, users)
        assert risks == {1: 0.0, 2: 0.0, 3: 0.8235}

    def test_default_when_average_is_zero(self):
        assert risk_score(5, 0) == 0.5
        assert risk_score(0, -1) == 0.5

    def test_bounds(self):
        assert risk_score(0, 50) == 1.0
        assert risk_score(100, 50) == 0.0


class TestReport:
    def test_report_lists_statuses(self, detector, project, group, users):
        scores = {1: score(1, 80), 2: score(2, 40), 3: score(3, 10)}
        report = detector.build_report(project, [group], scores, users, generated_at=NOW)

        assert report.startswith("FREE-RIDER REPORT: Capstone")
        assert "GROUP: Team Falcon" in report
        assert "Group average contribution score: 43.33" in report
        lines = report.splitlines()
        assert any(line.startswith("carol") and line.endswith("HIGH RISK") for line in lines)
        assert any(line.startswith("bob") and line.endswith("NORMAL") for line in lines)
        assert any(line.startswith("alice") and line.endswith("NORMAL") for line in lines)
        assert report.endswith("Generated at: 2026-05-10T12:00:00")

    def test_at_risk_band(self, detector, project, group, users):
        scores = {1: score(1, 100), 2: score(2, 100), 3: score(3, 40)}
        report = detector.build_report(project, [group], scores, users, generated_at=NOW)
        assert any(line.startswith("carol") and line.endswith("AT RISK") for line in report.splitlines())

    def test_group_without_scores(self, detector, project, group, users):
        report = detector.build_report(project, [group], {}, users, generated_at=NOW)
        assert "No scored members in this group." in report


@pytest.fixture
def case(detector, project, group, users):
    scores = {1: score(1, 80), 2: score(2, 80), 3: score(3, 10, task=20, commits=1)}
    candidate = detector.find_candidates(project, group, scores, users)[0]
    return open_case(candidate, case_id=1, project_id=1, detected_at=NOW)


class TestCaseLifecycle:
    def test_opened_case(self, case):
        assert case.status == CaseStatus.PENDING
        assert case.is_open
        assert case.detected_at == NOW
        assert json.loads(case.evidence)["commitCount"] == 1

    def test_contact_then_resolve(self, case):
        contacted = transition(case, CaseStatus.CONTACTED, notes="Emailed student", now=NOW)
        assert contacted.contacted_at == NOW
        assert contacted.is_open

        resolved = transition(contacted, CaseStatus.RESOLVED, resolution="Grade reduced", now=NOW)
        assert resolved.status == CaseStatus.RESOLVED
        assert resolved.resolution == "Grade reduced"
        assert resolved.notes == "Emailed student"
        assert resolved.resolved_at == NOW
        assert not resolved.is_open

    def test_pending_can_be_dismissed_directly(self, case):
        dismissed = transition(case, CaseStatus.DISMISSED, resolution="dismissed", now=NOW)
        assert dismissed.status == CaseStatus.DISMISSED
        assert dismissed.contacted_at is None

    @pytest.mark.parametrize("terminal", [CaseStatus.RESOLVED, CaseStatus.DISMISSED])
    def test_terminal_states_are_final(self, case, terminal):
        closed = transition(case, terminal, now=NOW)
        for target in CaseStatus:
            with pytest.raises(CaseTransitionError):
                transition(closed, target)

    def test_cannot_return_to_pending(self, case):
        contacted = transition(case, CaseStatus.CONTACTED, now=NOW)
        with pytest.raises(CaseTransitionError):
            transition(contacted, CaseStatus.PENDING)
        with pytest.raises(CaseTransitionError):
            transition(contacted, CaseStatus.CONTACTED)

    def test_to_dto(self, case, users):
        dto = to_dto(case, users[3])
        assert dto.student_username == "carol"
        assert dto.student_full_name == "Carol Le"
        assert dto.status_description == "Awaiting review"
        assert dto.evidence["signals"] == ["low_commit_count", "low_task_completion"]
