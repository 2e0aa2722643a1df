from datetime import date, datetime, timezone

import pytest

from engines.alternance_conflicts import (
    analyze_rhythm,
    build_conflict_report,
    detect_duplicate_weeks,
    detect_location_conflicts,
    detect_missing_weeks,
    detect_rhythm_inconsistency,
    detect_week_gaps,
    severity_for,
)
from engines.alternance_scheduler import AlternanceScheduler
from models import AlternanceCalendarEntry, AlternanceContract, CalendarLocation

C, K = CalendarLocation.CENTER, CalendarLocation.COMPANY
NOW = datetime(2024, 4, 1, tzinfo=timezone.utc)


def _entry(week, location=C, contract="c1", **extra):
    return AlternanceCalendarEntry("s1", contract, 2024, week, location, **extra)


def _contract(start=date(2024, 1, 8), end=date(2024, 2, 2)):
    return AlternanceContract("c1", "s1", "sess", 60, 40, 35, 35, start, end)


def test_duplicate_weeks():
    conflicts = detect_duplicate_weeks([_entry(2), _entry(2, contract="c2"), _entry(3)])
    assert len(conflicts) == 1
    assert conflicts[0].weeks == ((2024, 2),)
    assert conflicts[0].details["count"] == 2


def test_missing_weeks_and_gaps():
    entries = [_entry(2), _entry(3), _entry(5)]
    missing = detect_missing_weeks(_contract(), entries)
    assert [c.weeks for c in missing] == [((2024, 4),)]

    assert detect_week_gaps(entries) == []
    gaps = detect_week_gaps([_entry(2), _entry(6)])
    assert gaps[0].details["gap_days"] == 28


def test_location_conflicts():
    entries = [
        _entry(2, C, company_activities=("onboarding",)),
        _entry(3, K, center_sessions=("math",)),
        _entry(4, CalendarLocation.HOLIDAY, center_sessions=("math",)),
        _entry(5, K, company_activities=("onboarding",)),
    ]
    assert [c.weeks[0][1] for c in detect_location_conflicts(entries)] == [2, 3, 4]


def test_rhythm_analysis():
    regular = analyze_rhythm([C, K] * 4)
    assert regular.inconsistency_score == 0.0

    blocky = analyze_rhythm([C] * 4 + [K] * 4)
    assert blocky.actual_transitions == 1
    assert blocky.expected_transitions == 7
    assert blocky.inconsistency_score == pytest.approx(6 / 7)


def test_rhythm_inconsistency_needs_enough_plain_weeks():
    contract = _contract(end=date(2024, 3, 1))
    blocky = [_entry(w, C) for w in range(2, 6)] + [_entry(w, K) for w in range(6, 10)]
    assert detect_rhythm_inconsistency(contract, blocky)[0].kind == "rhythm_inconsistency"
    assert detect_rhythm_inconsistency(contract, blocky[:3]) == []

    mixed = [_entry(w, CalendarLocation.MIXED) for w in range(2, 10)]
    assert detect_rhythm_inconsistency(contract, mixed) == []


def test_severity_scale():
    assert [severity_for(n) for n in (0, 1, 2, 3, 5, 6)] == [
        "none", "low", "low", "medium", "medium", "high",
    ]


def test_generated_calendar_is_clean():
    scheduler = AlternanceScheduler()
    contract = scheduler.create_contract(_contract(end=date(2024, 3, 15)))
    scheduler.validate_contract(contract.contract_id)

    report = build_conflict_report(
        "s1", scheduler.get_calendar("s1"), scheduler.contracts_for("s1"), NOW
    )
    assert report.conflicts == ()
    assert report.severity == "none"
    assert report.recommendations == ()


def test_report_groups_conflicts_and_recommends():
    entries = [_entry(2), _entry(2, contract="c2"), _entry(5, C, company_activities=("x",))]
    report = build_conflict_report("s1", entries, [_contract()], NOW)

    grouped = report.by_kind()
    assert set(grouped) == {"duplicate_week", "missing_week", "location_conflict", "week_gap"}
    assert len(grouped["missing_week"]) == 2
    assert report.severity == "medium"
    assert [r["action"] for r in report.recommendations] == [
        "resolve_duplicates",
        "create_missing",
        "move_activities",
        "review_gaps",
    ]
