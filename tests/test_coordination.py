from datetime import timedelta

import pytest

from engines.coordination import CoordinationLedger, decay_multiplier, effective_contribution, fold_event
from models import CompanyVisit, CoordinationMeeting, ProgressAssessment, RiskSignal, SkillsAssessment

from conftest import T0


def test_meeting_satisfaction_maps_to_signed_signal():
    low = fold_event(CoordinationMeeting("m1", "s1", T0, satisfaction_rating=1))
    assert low.direction == 1 and low.weight == 1.0
    high = fold_event(CoordinationMeeting("m2", "s1", T0, satisfaction_rating=5))
    assert high.direction == -1 and high.weight == 1.0
    assert fold_event(CoordinationMeeting("m3", "s1", T0, satisfaction_rating=3)) is None


def test_company_visit_follow_up_adds_risk():
    plain = fold_event(CompanyVisit("v1", "s1", T0, overall_rating=5))
    flagged = fold_event(CompanyVisit("v2", "s1", T0, overall_rating=5, follow_up_required=True))
    assert plain.direction == 1
    assert flagged.weight == pytest.approx(plain.weight + 0.25, abs=1e-4)


def test_skills_ratings():
    assert fold_event(SkillsAssessment("a1", "s1", T0, "excellent")).direction == -1
    assert fold_event(SkillsAssessment("a2", "s1", T0, "insufficient")).direction == 1
    assert fold_event(SkillsAssessment("a3", "s1", T0, "not_evaluated")) is None
    with pytest.raises(ValueError):
        fold_event(SkillsAssessment("a4", "s1", T0, "superb"))


def test_progress_assessment_is_clamped():
    signal = fold_event(
        ProgressAssessment("p1", "s1", T0, risk_level=5, difficulties=("a", "b", "c", "d", "e", "f"))
    )
    assert signal.weight == 1.0
    with pytest.raises(ValueError):
        fold_event(ProgressAssessment("p2", "s1", T0, risk_level=9))


def test_decay_halves_every_half_life_and_ignores_future():
    signal = RiskSignal("x", "s1", "company_visit", 1.0, 1, T0)
    assert decay_multiplier(signal, T0 + timedelta(days=60), 60) == pytest.approx(0.5)
    assert decay_multiplier(signal, T0 - timedelta(days=1), 60) == 0.0
    assert effective_contribution(signal, T0, 60, 0.5) == 0.5


def test_ledger_dedupes_and_keeps_history():
    ledger = CoordinationLedger()
    first = ledger.record(CompanyVisit("v1", "s1", T0, overall_rating=2))
    again = ledger.record(CompanyVisit("v1", "s1", T0, overall_rating=2))
    ledger.record(SkillsAssessment("a1", "s1", T0 + timedelta(days=3), "not_evaluated"))
    ledger.record(CoordinationMeeting("m1", "s1", T0 + timedelta(days=10), satisfaction_rating=1))

    assert again == first
    assert len(ledger.events_for("s1")) == 3
    assert [s.event_id for s in ledger.signals_for("s1")] == ["v1", "m1"]
    assert [s.event_id for s in ledger.signals_for("s1", as_of=T0 + timedelta(days=5))] == ["v1"]
