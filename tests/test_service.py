import logging
import sqlite3
from datetime import date, datetime, timedelta, timezone

import pytest

from engines.alternance_scheduler import ContractAmendment
from errors import (
    DecodeError,
    DuplicateAttendanceError,
    InvalidContractError,
    OrphanEventError,
    PersistenceError,
    UnknownEntityError,
)
from event_store import SQLiteEventStore
from models import (
    AlternanceCalendarEntry,
    AlternanceContract,
    AttendanceRecord,
    AttendanceStatus,
    CalendarLocation,
    CompanyVisit,
    CompletionEvent,
    CompletionKind,
    ContractStatus,
    ProgressAssessment,
    RequestContext,
)
from service import ProgressTrackingService
from settings import TrackingSettings

from conftest import T0, two_module_formation

CTX = RequestContext(request_id="req-1", actor="tester")


def _completion(event_id, student="s1", leaf="E1", at=T0):
    return CompletionEvent(event_id, student, leaf, CompletionKind.EXERCISE_SUBMITTED, True, at)


def _attendance(student, session, status, at=T0):
    return AttendanceRecord(student, session, status, at)


@pytest.fixture
def service():
    svc = ProgressTrackingService(settings=TrackingSettings())
    svc.content_changed("F1", two_module_formation(), CTX).unwrap()
    return svc


def test_completion_flows_into_progress(service):
    service.enroll("s1", "F1", T0, ctx=CTX).unwrap()
    delta = service.record_completion(_completion("e1"), CTX).unwrap()

    assert delta.completion_percentage == 60.0
    state = service.get_progress("s1", "F1")
    assert state.completion_percentage == 60.0
    assert state.module_progress["M1"] == 100.0
    assert state.started_at == T0


def test_write_paths_return_failures_instead_of_raising(service):
    enrolled = service.enroll("s1", "F9", T0, ctx=CTX)
    assert isinstance(enrolled.error, UnknownEntityError)

    orphan = service.record_completion(_completion("e1", leaf="ghost"), CTX)
    assert isinstance(orphan.error, OrphanEventError)

    service.record_attendance(_attendance("s1", "S1", AttendanceStatus.PRESENT), CTX).unwrap()
    again = service.record_attendance(_attendance("s1", "S1", AttendanceStatus.ABSENT), CTX)
    assert isinstance(again.error, DuplicateAttendanceError)

    visit = service.record_coordination_event(CompanyVisit("v1", "s1", T0, overall_rating=11), CTX)
    assert isinstance(visit.error, DecodeError)

    with pytest.raises(UnknownEntityError):
        service.get_progress("nobody", "F1")


def test_nightly_batch_and_sorted_alerts(service):
    service.enroll("s1", "F1", T0).unwrap()
    service.record_completion(_completion("e1")).unwrap()
    service.record_attendance(_attendance("s1", "S1", AttendanceStatus.PRESENT)).unwrap()
    service.record_attendance(_attendance("s1", "S2", AttendanceStatus.ABSENT)).unwrap()

    service.enroll("s2", "F1", T0 + timedelta(days=85)).unwrap()
    service.record_completion(_completion("e2", student="s2", at=T0 + timedelta(days=89))).unwrap()

    report = service.run_nightly_batch(as_of=T0 + timedelta(days=90))
    assert report.processed == 2
    assert report.failed == 0

    alerts = service.get_risk_alerts()
    assert [a.student_id for a in alerts] == ["s1"]
    assert alerts[0].risk_score >= 70
    assert "prolonged_inactivity" in alerts[0].difficulty_signals

    everyone = service.get_risk_alerts(threshold_override=0)
    assert [a.student_id for a in everyone] == ["s1", "s2"]
    assert everyone[0].risk_score >= everyone[1].risk_score

    state = service.get_progress("s1", "F1")
    assert state.at_risk_of_dropout
    assert state.attendance_rate == 50.0
    assert state.missed_sessions == 1


def test_stored_events_replay_after_restart(tmp_path):
    path = str(tmp_path / "tracking.db")
    first = ProgressTrackingService(settings=TrackingSettings(), store=SQLiteEventStore(path))
    first.content_changed("F1", two_module_formation()).unwrap()
    first.record_completion(_completion("e1")).unwrap()
    first.record_attendance(_attendance("s1", "S1", AttendanceStatus.ABSENT)).unwrap()
    first.shutdown()

    second = ProgressTrackingService(settings=TrackingSettings(), store=SQLiteEventStore(path))
    try:
        assert second.attendance.rate("s1") == 0.0
        second.content_changed("F1", two_module_formation()).unwrap()
        assert second.get_progress("s1", "F1").completion_percentage == 60.0
    finally:
        second.shutdown()


class _LockedStore(SQLiteEventStore):
    def append_completion(self, event):
        raise sqlite3.OperationalError("database is locked")


def test_exhausted_write_is_dead_lettered(tmp_path):
    store = _LockedStore(str(tmp_path / "tracking.db"))
    svc = ProgressTrackingService(settings=TrackingSettings(), store=store, sleep=lambda _: None)
    try:
        svc.content_changed("F1", two_module_formation()).unwrap()
        result = svc.record_completion(_completion("e1"), CTX)

        assert isinstance(result.error, PersistenceError)
        assert len(svc.dead_letters) == 1
        letters = store.dead_letters()
        assert letters[0]["operation"] == "append_completion"
        assert letters[0]["payload"]["event_id"] == "e1"
    finally:
        svc.shutdown()


def test_contract_calendar_is_persisted(tmp_path):
    store = SQLiteEventStore(str(tmp_path / "tracking.db"))
    svc = ProgressTrackingService(settings=TrackingSettings(), store=store)
    try:
        contract = AlternanceContract("c1", "s1", "sess", 60, 40, 35, 35, date(2024, 1, 8), date(2024, 3, 15))
        svc.create_contract(contract, CTX).unwrap()
        generation = svc.validate_contract("c1", CTX).unwrap()

        assert len(generation.entries) == 10
        assert len(store.calendar_entries("s1")) == 10
        svc.confirm_calendar_week("s1", "c1", 2024, 2, "tutor", CTX).unwrap()
        assert store.calendar_entries("s1")[0].is_confirmed
        assert svc.calendar_conflicts("s1").severity == "none"

        bad = AlternanceContract("c2", "s1", "sess", 60, 50, 35, 35, date(2024, 4, 1), date(2024, 5, 1))
        svc.create_contract(bad).unwrap()
        failed = svc.validate_contract("c2", CTX)
        assert isinstance(failed.error, InvalidContractError)
        assert failed.error.fatal
    finally:
        svc.shutdown()


def test_background_ingestion_then_debounced_recompute(service, caplog):
    caplog.set_level(logging.INFO, logger="service")
    service.enroll("s1", "F1", T0).unwrap()
    service.start_background(workers=2, debounce=60)
    try:
        futures = [
            service.submit(_completion("e1")),
            service.submit(_completion("e2", leaf="E2", at=T0 + timedelta(minutes=5))),
            service.submit(_attendance("s1", "S1", AttendanceStatus.PRESENT)),
        ]
        assert all(f.result(timeout=5).ok for f in futures)

        assert service.flush() == 1
        assert "Debounced recompute of s1 in F1" in caplog.text
        assert service.get_progress("s1", "F1").completion_percentage == 100.0
        assert service.get_risk_alerts(threshold_override=0)[0].student_id == "s1"
    finally:
        service.shutdown()


class _FlakyStore(SQLiteEventStore):
    failing = True

    def append_completion(self, event):
        if self.failing:
            raise sqlite3.OperationalError("database is locked")
        return super().append_completion(event)


def test_completion_is_only_applied_once_stored(tmp_path):
    store = _FlakyStore(str(tmp_path / "tracking.db"))
    svc = ProgressTrackingService(settings=TrackingSettings(), store=store, sleep=lambda _: None)
    try:
        svc.content_changed("F1", two_module_formation()).unwrap()
        first = svc.record_completion(_completion("e1"), CTX)
        assert isinstance(first.error, PersistenceError)
        assert svc.aggregator.snapshot("s1", "F1").completion_percentage == 0.0

        store.failing = False
        retry = svc.record_completion(_completion("e1"), CTX).unwrap()
        assert not retry.duplicate
        assert retry.completion_percentage == 60.0
        assert [e.event_id for e in store.completion_events("s1")] == ["e1"]

        again = svc.record_completion(_completion("e1"), CTX).unwrap()
        assert again.duplicate
        assert len(store.completion_events("s1")) == 1
    finally:
        svc.shutdown()


def test_completion_before_its_leaf_exists_is_replayed_later(tmp_path):
    store = SQLiteEventStore(str(tmp_path / "tracking.db"))
    svc = ProgressTrackingService(settings=TrackingSettings(), store=store)
    try:
        second_module_only = [n for n in two_module_formation() if n.id not in {"M1", "C1", "K1", "E1"}]
        svc.content_changed("F1", second_module_only).unwrap()

        early = svc.record_completion(_completion("e1"), CTX)
        assert isinstance(early.error, OrphanEventError)
        assert [e.event_id for e in store.completion_events("s1")] == ["e1"]

        svc.content_changed("F1", two_module_formation(), CTX).unwrap()
        assert svc.get_progress("s1", "F1").completion_percentage == 60.0
    finally:
        svc.shutdown()


def test_contracts_survive_restart(tmp_path):
    path = str(tmp_path / "tracking.db")
    first = ProgressTrackingService(settings=TrackingSettings(), store=SQLiteEventStore(path))
    contract = AlternanceContract("c1", "s1", "sess", 60, 40, 35, 35, date(2024, 1, 8), date(2024, 3, 15))
    first.create_contract(contract, CTX).unwrap()
    first.validate_contract("c1", CTX).unwrap()
    first.activate_contract("c1", CTX).unwrap()
    first.shutdown()

    second = ProgressTrackingService(settings=TrackingSettings(), store=SQLiteEventStore(path))
    try:
        assert second.scheduler.get_contract("c1").status is ContractStatus.ACTIVE
        confirmed = second.confirm_calendar_week("s1", "c1", 2024, 2, "tutor", CTX).unwrap()
        assert confirmed.is_confirmed
        amended = second.amend_contract(
            "c1",
            ContractAmendment(actor="coordinator", reason="extension", end_date=date(2024, 3, 29)),
            as_of=datetime(2024, 2, 1, tzinfo=timezone.utc),
            ctx=CTX,
        ).unwrap()
        assert len(amended.entries) == 8
    finally:
        second.shutdown()

    third = ProgressTrackingService(settings=TrackingSettings(), store=SQLiteEventStore(path))
    try:
        reloaded = third.scheduler.get_contract("c1")
        assert reloaded.status is ContractStatus.ACTIVE
        assert reloaded.end_date == date(2024, 3, 29)
        history = third.scheduler.amendments("c1")
        assert [(r.amendment.actor, r.previous.end_date) for r in history] == [
            ("coordinator", date(2024, 3, 15))
        ]
        calendar = third.get_calendar("s1", "c1")
        assert len(calendar) == 12
        assert calendar[0].is_confirmed
        assert third.complete_contract("c1", CTX).unwrap().status is ContractStatus.COMPLETED
    finally:
        third.shutdown()


def test_calendar_week_of_unknown_contract_is_a_failure(tmp_path):
    path = str(tmp_path / "tracking.db")
    store = SQLiteEventStore(path)
    store.replace_calendar(
        "c1", [AlternanceCalendarEntry("s1", "c1", 2024, 2, CalendarLocation.CENTER, center_hours=35.0)]
    )
    store.close()

    svc = ProgressTrackingService(settings=TrackingSettings(), store=SQLiteEventStore(path))
    try:
        result = svc.confirm_calendar_week("s1", "c1", 2024, 2, "tutor", CTX)
        assert isinstance(result.error, UnknownEntityError)
    finally:
        svc.shutdown()


def test_coordination_history_survives_restart(tmp_path):
    path = str(tmp_path / "tracking.db")
    first = ProgressTrackingService(settings=TrackingSettings(), store=SQLiteEventStore(path))
    first.record_coordination_event(
        CompanyVisit("v1", "s1", T0, overall_rating=2, follow_up_required=True), CTX
    ).unwrap()
    first.record_coordination_event(
        ProgressAssessment("p1", "s1", T0 + timedelta(days=3), risk_level=4, difficulties=("motivation",)), CTX
    ).unwrap()
    before = first.coordination.signals_for("s1")
    first.shutdown()

    second = ProgressTrackingService(settings=TrackingSettings(), store=SQLiteEventStore(path))
    try:
        assert len(before) == 2
        assert second.coordination.signals_for("s1") == before
        assert second.coordination.events_for("s1")[1].difficulties == ("motivation",)
        second.record_coordination_event(CompanyVisit("v1", "s1", T0, overall_rating=2), CTX).unwrap()
        assert len(second.store.coordination_events("s1")) == 2
    finally:
        second.shutdown()
