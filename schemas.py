"""Pydantic boundary schemas and decoding helpers.

Every payload that enters the service (HTTP bodies, stored JSON columns) is
validated here. A payload of the wrong shape becomes a :class:`DecodeError`;
nothing downstream ever sees an untyped bag of values.
"""

from __future__ import annotations

import json
from datetime import date, datetime
from typing import Any, Dict, List, Literal, Mapping, Type, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from errors import DecodeError
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
    ContentNode,
    CoordinationEvent,
    CoordinationMeeting,
    NodeKind,
    ProgressAssessment,
    ProgressState,
    SkillsAssessment,
)

__all__ = [
    "ContentNodeIn",
    "ContentStructureIn",
    "CompletionEventIn",
    "AttendanceIn",
    "AttendanceCorrectionIn",
    "CoordinationEventIn",
    "ContractIn",
    "AmendmentIn",
    "TransitionIn",
    "ConfirmWeekIn",
    "ProgressStateModel",
    "CalendarEntryOut",
    "RiskAlertOut",
    "DIFFICULTY_SIGNALS",
    "decode",
    "decode_json",
    "decode_progress_state",
]

DIFFICULTY_SIGNALS = (
    "low_engagement",
    "prolonged_inactivity",
    "poor_attendance",
    "slow_progress",
    "frequent_absences",
)

_T = TypeVar("_T", bound=BaseModel)


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid")


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class ContentNodeIn(_Payload):
    id: str = Field(min_length=1)
    kind: NodeKind
    parent_id: str | None = None
    order_index: int = Field(default=0, ge=0)
    duration_minutes: int = Field(default=0, ge=0)
    is_active: bool = True
    title: str = ""
    max_score: float = Field(default=100.0, gt=0.0)
    passing_score: float | None = Field(default=None, ge=0.0)

    def to_domain(self) -> ContentNode:
        return ContentNode(**self.model_dump())


class ContentStructureIn(_Payload):
    nodes: List[ContentNodeIn] = Field(min_length=1)

    def to_domain(self) -> List[ContentNode]:
        return [node.to_domain() for node in self.nodes]


class CompletionEventIn(_Payload):
    event_id: str = Field(min_length=1)
    student_id: str = Field(min_length=1)
    leaf_id: str = Field(min_length=1)
    kind: CompletionKind
    passed: bool = False
    timestamp: datetime
    score: float | None = Field(default=None, ge=0.0)
    formation_id: str | None = None

    def to_domain(self) -> CompletionEvent:
        return CompletionEvent(**self.model_dump())


class AttendanceIn(_Payload):
    student_id: str = Field(min_length=1)
    session_id: str = Field(min_length=1)
    status: AttendanceStatus
    recorded_at: datetime
    minutes_late: int = Field(default=0, ge=0)
    session_date: date | None = None
    recorded_by: str | None = None

    def to_domain(self) -> AttendanceRecord:
        return AttendanceRecord(**self.model_dump())


class AttendanceCorrectionIn(_Payload):
    student_id: str = Field(min_length=1)
    session_id: str = Field(min_length=1)
    status: AttendanceStatus
    reason: str = Field(min_length=1)
    recorded_at: datetime
    minutes_late: int = Field(default=0, ge=0)
    recorded_by: str | None = None

    def to_domain(self) -> AttendanceCorrection:
        return AttendanceCorrection(**self.model_dump())


class CoordinationEventIn(_Payload):
    """Union payload for the four coordination event types."""

    type: Literal["meeting", "company_visit", "skills_assessment", "progress_assessment"]
    event_id: str = Field(min_length=1)
    student_id: str = Field(min_length=1)
    occurred_at: datetime
    author: str | None = None
    satisfaction_rating: int | None = Field(default=None, ge=1, le=5)
    meeting_type: str = "follow_up"
    overall_rating: Union[int, str, None] = None
    follow_up_required: bool = False
    risk_level: int = Field(default=1, ge=1, le=5)
    completion_delta: float = 0.0
    difficulties: List[str] = Field(default_factory=list)

    def to_domain(self) -> CoordinationEvent:
        common = dict(
            event_id=self.event_id,
            student_id=self.student_id,
            occurred_at=self.occurred_at,
            author=self.author,
        )
        if self.type == "meeting":
            return CoordinationMeeting(
                satisfaction_rating=self.satisfaction_rating,
                meeting_type=self.meeting_type,
                **common,
            )
        if self.type == "company_visit":
            rating = self.overall_rating
            if rating is not None and (not isinstance(rating, int) or not 1 <= rating <= 10):
                raise DecodeError("Company visit rating must be an integer between 1 and 10")
            return CompanyVisit(
                overall_rating=rating,
                follow_up_required=self.follow_up_required,
                **common,
            )
        if self.type == "skills_assessment":
            rating = self.overall_rating if self.overall_rating is not None else "not_evaluated"
            if rating not in ("excellent", "satisfactory", "average", "insufficient", "not_evaluated"):
                raise DecodeError(f"Unknown skills assessment rating: {rating}")
            return SkillsAssessment(overall_rating=str(rating), **common)
        return ProgressAssessment(
            risk_level=self.risk_level,
            completion_delta=self.completion_delta,
            difficulties=tuple(self.difficulties),
            **common,
        )


class ContractIn(_Payload):
    contract_id: str = Field(min_length=1)
    student_id: str = Field(min_length=1)
    session_id: str = Field(min_length=1)
    center_percentage: float
    company_percentage: float
    weekly_center_hours: float
    weekly_company_hours: float
    start_date: date
    end_date: date
    rhythm: str | None = None
    holiday_weeks: List[List[int]] = Field(default_factory=list)
    mentor_id: str | None = None
    supervisor_id: str | None = None

    @field_validator("holiday_weeks")
    @classmethod
    def _week_pairs(cls, value: List[List[int]]) -> List[List[int]]:
        for pair in value:
            if len(pair) != 2 or not 1 <= pair[1] <= 53:
                raise ValueError("holiday_weeks entries must be [iso_year, iso_week]")
        return value

    def to_domain(self) -> AlternanceContract:
        data = self.model_dump()
        data["holiday_weeks"] = frozenset((y, w) for y, w in self.holiday_weeks)
        return AlternanceContract(**data)


class AmendmentIn(_Payload):
    actor: str = Field(min_length=1)
    reason: str = Field(min_length=1)
    as_of: datetime
    end_date: date | None = None
    center_percentage: float | None = None
    company_percentage: float | None = None
    weekly_center_hours: float | None = None
    weekly_company_hours: float | None = None
    rhythm: str | None = None


class TransitionIn(_Payload):
    actor: str | None = None
    reason: str = ""


class ConfirmWeekIn(_Payload):
    contract_id: str = Field(min_length=1)
    year: int
    week: int = Field(ge=1, le=53)
    actor: str = Field(min_length=1)


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------


class ProgressStateModel(BaseModel):
    """Typed shape of a persisted or returned progress state."""

    student_id: str
    formation_id: str
    completion_percentage: float = Field(default=0.0, ge=0.0, le=100.0)
    module_progress: Dict[str, float] = Field(default_factory=dict)
    chapter_progress: Dict[str, float] = Field(default_factory=dict)
    engagement_score: int = Field(default=0, ge=0, le=100)
    risk_score: float = Field(default=0.0, ge=0.0, le=100.0)
    at_risk_of_dropout: bool = False
    attendance_rate: float = Field(default=100.0, ge=0.0, le=100.0)
    last_activity: datetime | None = None
    started_at: datetime | None = None
    expected_end: datetime | None = None
    activity_count: int = Field(default=0, ge=0)
    missed_sessions: int = Field(default=0, ge=0)
    difficulty_signals: List[str] = Field(default_factory=list)
    risk_level: Literal["low", "moderate", "high", "critical"] = "low"
    alternance_risk_score: int | None = Field(default=None, ge=0, le=100)
    alternance_status: str | None = None
    last_risk_assessment: datetime | None = None

    @field_validator("module_progress", "chapter_progress")
    @classmethod
    def _percentages(cls, value: Dict[str, float]) -> Dict[str, float]:
        for key, pct in value.items():
            if not 0.0 <= pct <= 100.0:
                raise ValueError(f"progress of {key} must be within [0, 100]")
        return value

    @field_validator("difficulty_signals")
    @classmethod
    def _known_signals(cls, value: List[str]) -> List[str]:
        unknown = [signal for signal in value if signal not in DIFFICULTY_SIGNALS]
        if unknown:
            raise ValueError(f"unknown difficulty signals: {unknown}")
        return value

    @classmethod
    def from_state(cls, state: ProgressState) -> "ProgressStateModel":
        data = {name: getattr(state, name) for name in cls.model_fields}
        data["module_progress"] = dict(state.module_progress)
        data["chapter_progress"] = dict(state.chapter_progress)
        data["difficulty_signals"] = list(state.difficulty_signals)
        return cls.model_validate(data)

    def to_domain(self) -> ProgressState:
        data = self.model_dump()
        data["difficulty_signals"] = tuple(self.difficulty_signals)
        return ProgressState(**data)


class CalendarEntryOut(BaseModel):
    student_id: str
    contract_id: str
    year: int
    week: int
    week_start: date
    location: CalendarLocation
    center_hours: float
    company_hours: float
    center_sessions: List[str] = Field(default_factory=list)
    company_activities: List[str] = Field(default_factory=list)
    is_confirmed: bool = False
    confirmed_by: str | None = None

    @classmethod
    def from_entry(cls, entry: AlternanceCalendarEntry) -> "CalendarEntryOut":
        return cls(
            student_id=entry.student_id,
            contract_id=entry.contract_id,
            year=entry.year,
            week=entry.week,
            week_start=entry.week_start,
            location=entry.location,
            center_hours=entry.center_hours,
            company_hours=entry.company_hours,
            center_sessions=list(entry.center_sessions),
            company_activities=list(entry.company_activities),
            is_confirmed=entry.is_confirmed,
            confirmed_by=entry.confirmed_by,
        )


class RiskAlertOut(BaseModel):
    student_id: str
    formation_id: str
    risk_score: float
    risk_level: str
    difficulty_signals: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    intervention_priority: int = 0


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def decode(model: Type[_T], payload: Any) -> _T:
    """Validate a mapping against ``model``; shape errors become :class:`DecodeError`."""

    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise DecodeError(
            f"Invalid {model.__name__} payload",
            errors=[
                {"loc": ".".join(str(part) for part in err["loc"]), "msg": err["msg"]}
                for err in exc.errors()
            ],
        ) from exc


def decode_json(text: str | bytes, model: Type[_T]) -> _T:
    """Parse a JSON document into ``model``."""

    try:
        payload = json.loads(text)
    except (TypeError, ValueError) as exc:
        raise DecodeError(f"Malformed JSON for {model.__name__}: {exc}") from exc
    return decode(model, payload)


def decode_progress_state(raw: Mapping[str, Any] | str | bytes) -> ProgressState:
    """Decode a stored progress state, including its JSON-typed columns."""

    if isinstance(raw, (str, bytes)):
        return decode_json(raw, ProgressStateModel).to_domain()
    data: Dict[str, Any] = dict(raw)
    for column in ("module_progress", "chapter_progress", "difficulty_signals"):
        value = data.get(column)
        if isinstance(value, (str, bytes)):
            try:
                data[column] = json.loads(value)
            except ValueError as exc:
                raise DecodeError(f"Column {column} does not hold valid JSON", column=column) from exc
    return decode(ProgressStateModel, data).to_domain()
