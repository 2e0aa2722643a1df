"""Immutable domain records shared by the tracking engines.

Every timestamp is normalised to an aware UTC ``datetime`` on construction so
that engines can subtract timestamps coming from different collaborators.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Dict, FrozenSet, Mapping, Optional, Tuple, Union


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return ``value`` as an aware UTC datetime (naive values are taken as UTC)."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _normalise(instance: object, *names: str) -> None:
    for name in names:
        object.__setattr__(instance, name, as_utc(getattr(instance, name)))


# ---------------------------------------------------------------------------
# Content
# ---------------------------------------------------------------------------


class NodeKind(str, Enum):
    FORMATION = "formation"
    MODULE = "module"
    CHAPTER = "chapter"
    COURSE = "course"
    EXERCISE = "exercise"
    QCM = "qcm"

    @property
    def is_leaf(self) -> bool:
        return self in (NodeKind.EXERCISE, NodeKind.QCM)


@dataclass(frozen=True)
class ContentNode:
    """One node of a formation's content hierarchy."""

    id: str
    kind: NodeKind
    parent_id: Optional[str]
    order_index: int
    duration_minutes: int = 0
    is_active: bool = True
    title: str = ""
    max_score: float = 100.0
    passing_score: Optional[float] = None


# ---------------------------------------------------------------------------
# Learner activity
# ---------------------------------------------------------------------------


class CompletionKind(str, Enum):
    EXERCISE_SUBMITTED = "exercise_submitted"
    QCM_ATTEMPTED = "qcm_attempted"
    CHAPTER_VIEWED = "chapter_viewed"


@dataclass(frozen=True)
class CompletionEvent:
    """Append-only learner activity event."""

    event_id: str
    student_id: str
    leaf_id: str
    kind: CompletionKind
    passed: bool
    timestamp: datetime
    score: Optional[float] = None
    formation_id: Optional[str] = None

    def __post_init__(self) -> None:
        _normalise(self, "timestamp")


class AttendanceStatus(str, Enum):
    PRESENT = "present"
    ABSENT = "absent"
    LATE = "late"
    EXCUSED = "excused"


@dataclass(frozen=True)
class AttendanceRecord:
    student_id: str
    session_id: str
    status: AttendanceStatus
    recorded_at: datetime
    minutes_late: int = 0
    session_date: Optional[date] = None
    recorded_by: Optional[str] = None

    def __post_init__(self) -> None:
        _normalise(self, "recorded_at")

    @property
    def effective_date(self) -> date:
        return self.session_date or self.recorded_at.date()


@dataclass(frozen=True)
class AttendanceCorrection:
    """Explicit superseding record for an existing attendance entry."""

    student_id: str
    session_id: str
    status: AttendanceStatus
    reason: str
    recorded_at: datetime
    minutes_late: int = 0
    recorded_by: Optional[str] = None

    def __post_init__(self) -> None:
        _normalise(self, "recorded_at")


# ---------------------------------------------------------------------------
# Progress read model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProgressState:
    """Materialised progress of one student in one formation.

    The state is a cache recomputable from the event log; only the aggregator
    and the risk scorer produce new versions of it.
    """

    student_id: str
    formation_id: str
    completion_percentage: float = 0.0
    module_progress: Mapping[str, float] = field(default_factory=dict)
    chapter_progress: Mapping[str, float] = field(default_factory=dict)
    engagement_score: int = 0
    risk_score: float = 0.0
    at_risk_of_dropout: bool = False
    attendance_rate: float = 100.0
    last_activity: Optional[datetime] = None
    started_at: Optional[datetime] = None
    expected_end: Optional[datetime] = None
    activity_count: int = 0
    missed_sessions: int = 0
    difficulty_signals: Tuple[str, ...] = ()
    risk_level: str = "low"
    alternance_risk_score: Optional[int] = None
    alternance_status: Optional[str] = None
    last_risk_assessment: Optional[datetime] = None

    def __post_init__(self) -> None:
        _normalise(
            self,
            "last_activity",
            "started_at",
            "expected_end",
            "last_risk_assessment",
        )

    @property
    def is_completed(self) -> bool:
        return self.completion_percentage >= 100.0


# ---------------------------------------------------------------------------
# Alternance
# ---------------------------------------------------------------------------


class ContractStatus(str, Enum):
    DRAFT = "draft"
    VALIDATED = "validated"
    ACTIVE = "active"
    COMPLETED = "completed"
    TERMINATED = "terminated"


class CalendarLocation(str, Enum):
    CENTER = "center"
    COMPANY = "company"
    MIXED = "mixed"
    HOLIDAY = "holiday"


WeekKey = Tuple[int, int]
"""ISO ``(year, week)`` pair."""


@dataclass(frozen=True)
class AlternanceContract:
    contract_id: str
    student_id: str
    session_id: str
    center_percentage: float
    company_percentage: float
    weekly_center_hours: float
    weekly_company_hours: float
    start_date: date
    end_date: date
    status: ContractStatus = ContractStatus.DRAFT
    rhythm: Optional[str] = None
    holiday_weeks: FrozenSet[WeekKey] = frozenset()
    mentor_id: Optional[str] = None
    supervisor_id: Optional[str] = None


@dataclass(frozen=True)
class AlternanceCalendarEntry:
    student_id: str
    contract_id: str
    year: int
    week: int
    location: CalendarLocation
    center_hours: float = 0.0
    company_hours: float = 0.0
    center_sessions: Tuple[str, ...] = ()
    company_activities: Tuple[str, ...] = ()
    is_confirmed: bool = False
    confirmed_by: Optional[str] = None

    @property
    def key(self) -> WeekKey:
        return (self.year, self.week)

    @property
    def week_start(self) -> date:
        return date.fromisocalendar(self.year, self.week, 1)

    @property
    def week_end(self) -> date:
        return self.week_start + timedelta(days=6)


# ---------------------------------------------------------------------------
# Coordination
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CoordinationMeeting:
    event_id: str
    student_id: str
    occurred_at: datetime
    satisfaction_rating: Optional[int] = None
    meeting_type: str = "follow_up"
    author: Optional[str] = None

    def __post_init__(self) -> None:
        _normalise(self, "occurred_at")


@dataclass(frozen=True)
class CompanyVisit:
    event_id: str
    student_id: str
    occurred_at: datetime
    overall_rating: Optional[int] = None
    follow_up_required: bool = False
    author: Optional[str] = None

    def __post_init__(self) -> None:
        _normalise(self, "occurred_at")


@dataclass(frozen=True)
class SkillsAssessment:
    event_id: str
    student_id: str
    occurred_at: datetime
    overall_rating: str = "not_evaluated"
    author: Optional[str] = None

    def __post_init__(self) -> None:
        _normalise(self, "occurred_at")


@dataclass(frozen=True)
class ProgressAssessment:
    event_id: str
    student_id: str
    occurred_at: datetime
    risk_level: int = 1
    completion_delta: float = 0.0
    difficulties: Tuple[str, ...] = ()
    author: Optional[str] = None

    def __post_init__(self) -> None:
        _normalise(self, "occurred_at")


CoordinationEvent = Union[CoordinationMeeting, CompanyVisit, SkillsAssessment, ProgressAssessment]


@dataclass(frozen=True)
class RiskSignal:
    """Bounded, decaying contribution of a coordination event to dropout risk."""

    event_id: str
    student_id: str
    source: str
    weight: float
    direction: int
    timestamp: datetime
    reason: str = ""

    def __post_init__(self) -> None:
        _normalise(self, "timestamp")


# ---------------------------------------------------------------------------
# Request context
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RequestContext:
    """Explicit caller context logged on every write path."""

    request_id: str = "-"
    actor: str = "system"

    def log_extra(self) -> Dict[str, str]:
        return {"request_id": self.request_id, "actor": self.actor}
