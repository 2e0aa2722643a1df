from dataclasses import replace
from datetime import date, timedelta

import pytest

from engines.alternance_scheduler import AmendmentRecord, ContractAmendment
from errors import DuplicateAttendanceError, SchedulingConflictError, UnknownEntityError
from models import (
    AlternanceCalendarEntry,
    AlternanceContract,
    AttendanceCorrection,
    AttendanceRecord,
    AttendanceStatus,
    CalendarLocation,
    CompanyVisit,
    CompletionEvent,
    CompletionKind,
    ContractStatus,
    CoordinationMeeting,
    ProgressAssessment,
    ProgressState,
    SkillsAssessment,
)
from retry_utils import DeadLetter

from conftest import T0


def _event(event_id, minutes=0):
    return CompletionEvent(
        event_id, "s1", "E1", CompletionKind.EXERCISE_SUBMITTED, True, T0 + timedelta(minutes=minutes), score=80
    )


def test_completion_events_are_append_only(temp_store):
    assert temp_store.append_completion(_event("b", minutes=5))
    assert temp_store.append_completion(_event("a"))
    assert not temp_store.append_completion(_event("a"))

    stored = temp_store.completion_events("s1")
    assert [e.event_id for e in stored] == ["a", "b"]
    assert stored[0].timestamp == T0
    assert stored[0].kind is CompletionKind.EXERCISE_SUBMITTED
    assert temp_store.completion_events("nobody") == []


def test_attendance_unique_per_session(temp_store):
    record = AttendanceRecord("s1", "S1", AttendanceStatus.ABSENT, T0, session_date=date(2024, 1, 1))
    temp_store.insert_attendance(record)
    with pytest.raises(DuplicateAttendanceError):
        temp_store.insert_attendance(record)

    loaded = temp_store.attendance_records("s1")
    assert loaded == [record]


def test_correction_updates_record_and_keeps_history(temp_store):
    temp_store.insert_attendance(AttendanceRecord("s1", "S1", AttendanceStatus.ABSENT, T0))
    temp_store.insert_correction(
        AttendanceCorrection("s1", "S1", AttendanceStatus.EXCUSED, "sick note", T0 + timedelta(days=1))
    )

    assert temp_store.attendance_records("s1")[0].status is AttendanceStatus.EXCUSED
    assert temp_store.correction_count("s1", "S1") == 1
    with pytest.raises(UnknownEntityError):
        temp_store.insert_correction(AttendanceCorrection("s1", "S9", AttendanceStatus.PRESENT, "typo", T0))
    assert temp_store.correction_count("s1", "S9") == 0


def test_calendar_replacement_and_week_uniqueness(temp_store):
    first = [
        AlternanceCalendarEntry("s1", "c1", 2024, w, CalendarLocation.CENTER, center_hours=35)
        for w in (2, 3)
    ]
    temp_store.replace_calendar("c1", first)
    replanned = [
        AlternanceCalendarEntry(
            "s1", "c1", 2024, 3, CalendarLocation.COMPANY, company_hours=35,
            company_activities=("audit",), is_confirmed=True, confirmed_by="tutor",
        )
    ]
    temp_store.replace_calendar("c1", replanned)
    assert temp_store.calendar_entries("s1") == replanned

    with pytest.raises(SchedulingConflictError):
        temp_store.replace_calendar(
            "c2", [AlternanceCalendarEntry("s1", "c2", 2024, 3, CalendarLocation.CENTER)]
        )
    assert temp_store.calendar_entries("s1") == replanned


def test_progress_state_cache(temp_store):
    state = ProgressState(
        "s1",
        "F1",
        completion_percentage=60.0,
        module_progress={"M1": 100.0, "M2": 0.0},
        last_activity=T0,
        difficulty_signals=("poor_attendance",),
        risk_score=42.5,
    )
    temp_store.save_progress_state(state)
    temp_store.save_progress_state(state)

    loaded = temp_store.load_progress_state("s1", "F1")
    assert loaded.completion_percentage == 60.0
    assert dict(loaded.module_progress) == {"M1": 100.0, "M2": 0.0}
    assert loaded.last_activity == T0
    assert loaded.difficulty_signals == ("poor_attendance",)
    assert temp_store.load_progress_state("s1", "F2") is None


def test_dead_letters_survive(temp_store):
    temp_store.add_dead_letter(DeadLetter("append_completion", {"event_id": "e1"}, "disk I/O error", 3))
    letters = temp_store.dead_letters()
    assert letters[0]["operation"] == "append_completion"
    assert letters[0]["payload"] == {"event_id": "e1"}
    assert letters[0]["attempts"] == 3


def test_contract_upsert_keeps_latest_status(temp_store):
    contract = AlternanceContract(
        "c1", "s1", "sess", 60, 40, 35, 35, date(2024, 1, 8), date(2024, 3, 15),
        rhythm="1_week_1_week", holiday_weeks=frozenset({(2024, 4)}), mentor_id="m1",
    )
    temp_store.save_contract(contract)
    active = replace(contract, status=ContractStatus.ACTIVE)
    temp_store.save_contract(active)

    assert temp_store.contracts() == [active]
    assert temp_store.contracts("s2") == []


def test_amendment_history(temp_store):
    previous = AlternanceContract("c1", "s1", "sess", 60, 40, 35, 35, date(2024, 1, 8), date(2024, 3, 15))
    record = AmendmentRecord(
        contract_id="c1",
        amendment=ContractAmendment(actor="coordinator", reason="extension", end_date=date(2024, 3, 29)),
        previous=previous,
        amended_at=T0,
        regenerated_weeks=((2024, 6), (2024, 7)),
    )
    temp_store.add_amendment(record)
    temp_store.add_amendment(replace(record, amendment=ContractAmendment(actor="me", reason="rhythm", rhythm="2_2")))

    history = temp_store.amendments("c1")
    assert history[0] == record
    assert history[1].amendment.end_date is None
    assert temp_store.amendments("c9") == []


def test_coordination_events_keep_their_type(temp_store):
    events = [
        CoordinationMeeting("m1", "s1", T0, satisfaction_rating=2, meeting_type="problem_solving"),
        CompanyVisit("v1", "s1", T0 + timedelta(days=1), overall_rating=8),
        SkillsAssessment("k1", "s1", T0 + timedelta(days=2), overall_rating="excellent"),
        ProgressAssessment("p1", "s1", T0 + timedelta(days=3), risk_level=4, difficulties=("pace", "tools")),
    ]
    for event in events:
        assert temp_store.append_coordination_event(event)
    assert not temp_store.append_coordination_event(events[0])

    assert temp_store.coordination_events("s1") == events
    assert temp_store.coordination_events("s2") == []
