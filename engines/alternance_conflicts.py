"""Consistency checks over a student's alternance calendar."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from engines.alternance_scheduler import contract_weeks
from models import AlternanceCalendarEntry, AlternanceContract, CalendarLocation, WeekKey

_LOGGER = logging.getLogger(__name__)

RHYTHM_INCONSISTENCY_THRESHOLD = 0.3
MAX_GAP_DAYS = 14
MIN_WEEKS_FOR_RHYTHM = 4


@dataclass(frozen=True)
class CalendarConflict:
    kind: str
    message: str
    weeks: Tuple[WeekKey, ...] = ()
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RhythmAnalysis:
    total_weeks: int
    actual_transitions: int
    expected_transitions: int
    inconsistency_score: float
    center_weeks: int
    company_weeks: int


@dataclass(frozen=True)
class ConflictReport:
    student_id: str
    generated_at: datetime
    conflicts: Tuple[CalendarConflict, ...]
    severity: str
    recommendations: Tuple[Dict[str, str], ...] = ()

    def by_kind(self) -> Dict[str, List[CalendarConflict]]:
        grouped: Dict[str, List[CalendarConflict]] = {}
        for conflict in self.conflicts:
            grouped.setdefault(conflict.kind, []).append(conflict)
        return grouped


def _monday(key: WeekKey) -> date:
    return date.fromisocalendar(key[0], key[1], 1)


def _fmt(key: WeekKey) -> str:
    return f"{key[0]}-W{key[1]:02d}"


def detect_duplicate_weeks(entries: Iterable[AlternanceCalendarEntry]) -> List[CalendarConflict]:
    """Weeks appearing more than once for the same student."""

    counts = Counter((e.student_id, e.key) for e in entries)
    return [
        CalendarConflict(
            kind="duplicate_week",
            message=f"Week {_fmt(key)} is planned {count} times for student {student_id}",
            weeks=(key,),
            details={"student_id": student_id, "count": count},
        )
        for (student_id, key), count in sorted(counts.items())
        if count > 1
    ]


def detect_missing_weeks(
    contract: AlternanceContract, entries: Iterable[AlternanceCalendarEntry]
) -> List[CalendarConflict]:
    """Contract weeks without any calendar entry."""

    planned = {e.key for e in entries if e.contract_id == contract.contract_id}
    return [
        CalendarConflict(
            kind="missing_week",
            message=f"Week {_fmt(key)} of contract {contract.contract_id} has no calendar entry",
            weeks=(key,),
            details={"contract_id": contract.contract_id},
        )
        for key in contract_weeks(contract.start_date, contract.end_date)
        if key not in planned
    ]


def detect_week_gaps(
    entries: Iterable[AlternanceCalendarEntry], max_gap_days: int = MAX_GAP_DAYS
) -> List[CalendarConflict]:
    keys = sorted({e.key for e in entries})
    conflicts: List[CalendarConflict] = []
    for previous, current in zip(keys, keys[1:]):
        gap = (_monday(current) - _monday(previous)).days
        if gap > max_gap_days:
            conflicts.append(
                CalendarConflict(
                    kind="week_gap",
                    message=f"{gap} days between planned weeks {_fmt(previous)} and {_fmt(current)}",
                    weeks=(previous, current),
                    details={"gap_days": gap},
                )
            )
    return conflicts


def detect_location_conflicts(entries: Iterable[AlternanceCalendarEntry]) -> List[CalendarConflict]:
    """Activities that contradict the week's location."""

    conflicts: List[CalendarConflict] = []
    for entry in sorted(entries, key=lambda e: e.key):
        problem: Optional[str] = None
        if entry.location is CalendarLocation.CENTER and entry.company_activities:
            problem = "center week has company activities"
        elif entry.location is CalendarLocation.COMPANY and entry.center_sessions:
            problem = "company week has center sessions"
        elif entry.location is CalendarLocation.HOLIDAY and (
            entry.center_sessions or entry.company_activities
        ):
            problem = "holiday week has planned activities"
        if problem:
            conflicts.append(
                CalendarConflict(
                    kind="location_conflict",
                    message=f"Week {_fmt(entry.key)}: {problem}",
                    weeks=(entry.key,),
                    details={"contract_id": entry.contract_id, "location": entry.location.value},
                )
            )
    return conflicts


def analyze_rhythm(locations: Sequence[CalendarLocation]) -> RhythmAnalysis:
    """Compare actual center/company transitions with what the split suggests."""

    working = [loc for loc in locations if loc is not CalendarLocation.HOLIDAY]
    total = len(working)
    transitions = sum(1 for a, b in zip(working, working[1:]) if a is not b)
    center = sum(1 for loc in working if loc is CalendarLocation.CENTER)
    company = total - center

    if abs(center - company) <= 1:
        expected = max(0, total - 1)
    else:
        expected = min(center, company) * 2
    score = abs(transitions - expected) / expected if expected > 0 else 0.0

    return RhythmAnalysis(
        total_weeks=total,
        actual_transitions=transitions,
        expected_transitions=expected,
        inconsistency_score=min(score, 1.0),
        center_weeks=center,
        company_weeks=company,
    )


def detect_rhythm_inconsistency(
    contract: AlternanceContract,
    entries: Iterable[AlternanceCalendarEntry],
    threshold: float = RHYTHM_INCONSISTENCY_THRESHOLD,
) -> List[CalendarConflict]:
    own = sorted((e for e in entries if e.contract_id == contract.contract_id), key=lambda e: e.key)
    if len(own) < MIN_WEEKS_FOR_RHYTHM:
        return []
    # Day-split weeks have no week-to-week rhythm.
    if any(e.location is CalendarLocation.MIXED for e in own):
        return []
    analysis = analyze_rhythm([e.location for e in own])
    if analysis.inconsistency_score <= threshold:
        return []
    return [
        CalendarConflict(
            kind="rhythm_inconsistency",
            message=(
                f"Irregular rhythm for contract {contract.contract_id} "
                f"(inconsistency {analysis.inconsistency_score * 100:.1f}%)"
            ),
            details={
                "contract_id": contract.contract_id,
                "actual_transitions": analysis.actual_transitions,
                "expected_transitions": analysis.expected_transitions,
            },
        )
    ]


def severity_for(count: int) -> str:
    if count == 0:
        return "none"
    if count <= 2:
        return "low"
    if count <= 5:
        return "medium"
    return "high"


_RECOMMENDATIONS = (
    ("duplicate_week", "high", "resolve_duplicates", "Remove duplicate entries, keeping the latest"),
    ("missing_week", "high", "create_missing", "Plan the missing weeks following the contract rhythm"),
    ("rhythm_inconsistency", "medium", "regularize_rhythm", "Bring the calendar back to the contract rhythm"),
    ("location_conflict", "medium", "move_activities", "Move activities to a week at the matching location"),
    ("week_gap", "low", "review_gaps", "Check the unplanned period between weeks"),
)


def build_conflict_report(
    student_id: str,
    entries: Sequence[AlternanceCalendarEntry],
    contracts: Iterable[AlternanceContract],
    generated_at: datetime,
) -> ConflictReport:
    entries = [e for e in entries if e.student_id == student_id]
    conflicts: List[CalendarConflict] = []
    conflicts.extend(detect_duplicate_weeks(entries))
    for contract in contracts:
        conflicts.extend(detect_missing_weeks(contract, entries))
        conflicts.extend(detect_rhythm_inconsistency(contract, entries))
    conflicts.extend(detect_week_gaps(entries))
    conflicts.extend(detect_location_conflicts(entries))

    kinds = {c.kind for c in conflicts}
    recommendations = tuple(
        {"priority": priority, "action": action, "message": message}
        for kind, priority, action, message in _RECOMMENDATIONS
        if kind in kinds
    )
    report = ConflictReport(
        student_id=student_id,
        generated_at=generated_at,
        conflicts=tuple(conflicts),
        severity=severity_for(len(conflicts)),
        recommendations=recommendations,
    )
    if conflicts:
        _LOGGER.warning(
            "%s calendar conflicts for student %s (severity %s)",
            len(conflicts),
            student_id,
            report.severity,
        )
    return report
