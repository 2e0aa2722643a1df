from datetime import timedelta

import pytest

from engines.attendance import AttendanceSummary
from engines.risk_scorer import AlternanceRiskInputs, RiskScorer, risk_level_for
from models import ProgressState, RiskSignal

from conftest import T0


def _summary(rate=100.0, absent=0):
    return AttendanceSummary("s1", rate, total_sessions=10, present=10 - absent, late=0, absent=absent, excused=0)


def _state(**overrides):
    base = dict(
        student_id="s1",
        formation_id="F1",
        started_at=T0,
        expected_end=T0 + timedelta(days=365),
        last_activity=T0,
        completion_percentage=0.0,
        activity_count=1,
    )
    base.update(overrides)
    return ProgressState(**base)


def test_long_inactivity_with_half_attendance_is_at_risk():
    scorer = RiskScorer()
    as_of = T0 + timedelta(days=90)
    outcome = scorer.compute(_state(expected_end=None), _summary(rate=50.0), (), as_of=as_of)

    assert outcome.factors.stagnation == 1.0
    assert outcome.factors.attendance == 0.5
    assert outcome.risk_score >= 70
    assert outcome.at_risk_of_dropout
    assert "prolonged_inactivity" in outcome.difficulty_signals
    assert "poor_attendance" in outcome.difficulty_signals
    assert outcome.intervention_priority >= 16
    assert outcome.recommendations


def test_active_student_is_low_risk():
    as_of = T0 + timedelta(days=10)
    outcome = RiskScorer().compute(
        _state(last_activity=as_of, completion_percentage=10.0, activity_count=12),
        _summary(),
        (),
        as_of=as_of,
    )
    assert outcome.risk_score < 20
    assert outcome.risk_level == "low"
    assert not outcome.at_risk_of_dropout


def test_stagnation_follows_the_planned_pace():
    scorer = RiskScorer()
    as_of = T0 + timedelta(days=15)
    intensive = _state(expected_end=T0 + timedelta(days=30))
    default_plan = _state(expected_end=None)
    yearly = _state(expected_end=T0 + timedelta(days=360))

    # 15 idle days against horizons of 15, 30 and 180 days
    assert scorer.stagnation_factor(intensive, as_of) == 1.0
    assert scorer.stagnation_factor(default_plan, as_of) == pytest.approx(0.5)
    assert scorer.stagnation_factor(yearly, as_of) == pytest.approx(15 / 180)


def test_stagnation_horizon_without_start_date():
    scorer = RiskScorer()
    assert scorer.stagnation_horizon(_state(started_at=None)) == 30.0
    assert scorer.stagnation_horizon(_state(expected_end=T0 - timedelta(days=1))) == 30.0


@pytest.mark.parametrize("days", [0, 1, 15, 400, 4000])
@pytest.mark.parametrize("rate", [0.0, 55.5, 100.0])
def test_score_is_bounded(days, rate):
    signals = [
        RiskSignal(f"sig{i}", "s1", "company_visit", 1.0, 1, T0) for i in range(20)
    ]
    outcome = RiskScorer().compute(_state(), _summary(rate=rate), signals, as_of=T0 + timedelta(days=days))
    assert 0.0 <= outcome.risk_score <= 100.0
    assert 0 <= outcome.engagement_score <= 100


def test_same_inputs_same_outcome():
    as_of = T0 + timedelta(days=21)
    scorer = RiskScorer()
    first = scorer.compute(_state(), _summary(rate=80.0), (), as_of=as_of)
    second = scorer.compute(_state(), _summary(rate=80.0), (), as_of=as_of)
    assert first == second


def test_negative_signals_lower_risk_and_decay():
    scorer = RiskScorer()
    as_of = T0 + timedelta(days=20)
    reassuring = [RiskSignal("good", "s1", "skills_assessment", 1.0, -1, as_of - timedelta(days=1))]
    plain = scorer.compute(_state(), _summary(rate=70.0), (), as_of=as_of)
    helped = scorer.compute(_state(), _summary(rate=70.0), reassuring, as_of=as_of)
    assert helped.risk_score < plain.risk_score

    old = [RiskSignal("old", "s1", "skills_assessment", 1.0, -1, as_of - timedelta(days=600))]
    faded = scorer.compute(_state(), _summary(rate=70.0), old, as_of=as_of)
    assert faded.risk_score == pytest.approx(plain.risk_score, abs=0.02)


def test_engagement_combines_recency_attendance_completion_frequency():
    as_of = T0 + timedelta(days=10)
    state = _state(last_activity=as_of, completion_percentage=40.0, activity_count=10)
    # 30 recency + 25 attendance + 10 completion + 20 frequency
    assert RiskScorer().engagement_score(state, _summary(), as_of) == 85


def test_risk_levels():
    assert risk_level_for(10) == "low"
    assert risk_level_for(35) == "moderate"
    assert risk_level_for(59.9) == "high"
    assert risk_level_for(60) == "critical"


def test_alternance_risk_is_a_separate_signal():
    scorer = RiskScorer()
    as_of = T0 + timedelta(days=5)
    base = scorer.compute(_state(last_activity=as_of), _summary(), (), as_of=as_of)
    alternance = scorer.compute_alternance_risk(
        base, AlternanceRiskInputs(center_completion=30, company_completion=80, skills_acquired=2)
    )
    # low center completion (20) + gap over 30 (10) + few skills (10)
    assert alternance.alternance_risk_score == int(round(base.risk_score + 40))
    assert alternance.factors["low_center_completion"] == "high"
    assert alternance.alternance_status in {"active", "needs_support", "at_risk"}

    done = scorer.compute_alternance_risk(
        base, AlternanceRiskInputs(center_completion=98, company_completion=96, skills_acquired=12)
    )
    assert done.alternance_status == "completed"
