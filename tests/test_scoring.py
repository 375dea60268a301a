from datetime import datetime

import pytest

from groupscore.models import ProjectConfig
from groupscore.scoring import (
    ContributionScoreCalculator, ScoreSignals, calculate_score, commit_score, late_penalty
)

NOW = datetime(2026, 5, 10, 12, 0)


@pytest.fixture
def project():
    return ProjectConfig(id=1)


@pytest.fixture
def calculator():
    return ContributionScoreCalculator()


def signals(task=80.0, peer=60.0, commits=5, late=1):
    return ScoreSignals(task_completion_score=task, peer_review_score=peer,
                        commit_count=commits, late_task_count=late)


class TestFormula:
    def test_commit_score_saturates_at_baseline(self, project):
        assert commit_score(0, project) == 0.0
        assert commit_score(5, project) == 50.0
        assert commit_score(10, project) == 100.0
        assert commit_score(250, project) == 100.0

    def test_late_penalty_is_capped(self, project):
        assert late_penalty(2, project) == 20.0
        assert late_penalty(50, project) == 100.0

    def test_weighted_composite(self, project):
        # 0.4*80 + 0.3*60 + 0.2*50 - 0.1*10
        assert calculate_score(signals(), project) == 59.0

    def test_full_marks_with_default_weights(self, project):
        assert calculate_score(signals(100, 100, 10, 0), project) == 90.0

    def test_clamped_at_upper_bound(self):
        heavy = ProjectConfig(id=1, weight_w1=5, weight_w2=5, weight_w3=5, weight_w4=0)
        assert calculate_score(signals(100, 100, 1000, 0), heavy) == 100.0

    def test_clamped_at_lower_bound(self):
        penalty_only = ProjectConfig(id=1, weight_w1=0, weight_w2=0, weight_w3=0, weight_w4=3)
        assert calculate_score(signals(0, 0, 0, 40), penalty_only) == 0.0

    def test_rejects_negative_weights(self):
        with pytest.raises(ValueError):
            ProjectConfig(id=1, weight_w3=-0.1)


class TestRecompute:
    def test_new_row(self, calculator, project):
        score = calculator.recompute(None, signals(), project, user_id=7, score_id=1, now=NOW)
        assert score.user_id == 7
        assert score.project_id == 1
        assert score.calculated_score == 59.0
        assert score.last_computed_score == 59.0
        assert score.revision == 1
        assert score.is_final is False

    def test_idempotent(self, calculator, project):
        first = calculator.recompute(None, signals(), project, 7, 1, now=NOW)
        second = calculator.recompute(first, signals(), project, 7, 1, now=NOW)
        assert second.calculated_score == first.calculated_score
        assert second.model_dump(exclude={"revision"}) == first.model_dump(exclude={"revision"})

    def test_final_score_is_not_overwritten(self, calculator, project):
        score = calculator.recompute(None, signals(), project, 7, 1, now=NOW)
        adjusted = calculator.adjust(score, 90, "Led the integration work", actor="instructor", now=NOW)

        refreshed = calculator.recompute(adjusted, signals(10, 10, 0, 5), project, 7, 1, now=NOW)

        assert refreshed.calculated_score == 59.0
        assert refreshed.last_computed_score == 2.0
        assert refreshed.task_completion_score == 10
        assert refreshed.effective_score == 90
        assert refreshed.is_final is True


class TestManualAdjustment:
    def test_adjust_sets_final(self, calculator, project):
        score = calculator.recompute(None, signals(), project, 7, 1, now=NOW)
        adjusted = calculator.adjust(score, 90, "  Carried the demo  ", actor="instructor", now=NOW)
        assert adjusted.adjusted_score == 90
        assert adjusted.adjustment_reason == "Carried the demo"
        assert adjusted.is_final is True
        assert adjusted.audit_log[-1].action == "adjust"
        assert adjusted.audit_log[-1].actor == "instructor"
        assert score.adjusted_score is None

    @pytest.mark.parametrize("reason", ["", "   ", None])
    def test_adjust_requires_reason(self, calculator, project, reason):
        score = calculator.recompute(None, signals(), project, 7, 1, now=NOW)
        with pytest.raises(ValueError):
            calculator.adjust(score, 90, reason)

    @pytest.mark.parametrize("value", [-1, 100.5])
    def test_adjust_rejects_out_of_range(self, calculator, project, value):
        score = calculator.recompute(None, signals(), project, 7, 1, now=NOW)
        with pytest.raises(ValueError):
            calculator.adjust(score, value, "reason")

    def test_clear_returns_to_automatic(self, calculator, project):
        score = calculator.recompute(None, signals(), project, 7, 1, now=NOW)
        adjusted = calculator.adjust(score, 90, "reason", now=NOW)
        refreshed = calculator.recompute(adjusted, signals(100, 100, 10, 0), project, 7, 1, now=NOW)

        cleared = calculator.clear_adjustment(refreshed, "Appeal withdrawn", actor="instructor", now=NOW)

        assert cleared.is_final is False
        assert cleared.adjusted_score is None
        assert cleared.adjustment_reason is None
        assert cleared.calculated_score == 90.0
        assert [e.action for e in cleared.audit_log] == ["adjust", "clear"]
        assert cleared.audit_log[-1].adjusted_score == 90

    def test_clear_requires_reason(self, calculator, project):
        score = calculator.recompute(None, signals(), project, 7, 1, now=NOW)
        with pytest.raises(ValueError):
            calculator.clear_adjustment(score, " ")

    def test_finalize_freezes_without_override(self, calculator, project):
        score = calculator.recompute(None, signals(), project, 7, 1, now=NOW)
        final = calculator.finalize(score, actor="instructor", now=NOW)
        assert final.is_final is True
        assert final.adjusted_score is None
        assert final.effective_score == 59.0
        assert calculator.finalize(final) is final
