"""Dropout risk and engagement model.

Everything here is a pure function of its inputs: the same progress state,
attendance summary, signals and ``as_of`` always give the same outcome.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from engines.attendance import AttendanceSummary
from engines.coordination import effective_contribution
from models import ProgressState, RiskSignal, as_utc
from settings import CoordinationSettings, EngagementSettings, RiskSettings

_LOGGER = logging.getLogger(__name__)

_SECONDS_PER_DAY = 86400.0

RECOMMENDATIONS: Dict[str, Tuple[str, ...]] = {
    "low_engagement": (
        "Individual motivation interview",
        "Review of learning objectives",
    ),
    "prolonged_inactivity": (
        "Immediate phone follow-up",
        "Offer a catch-up session",
    ),
    "poor_attendance": (
        "Analyse personal constraints",
        "Adapt the schedule where possible",
    ),
    "slow_progress": (
        "Personalised tutoring",
        "Additional learning resources",
    ),
    "frequent_absences": (
        "Interview about the difficulties encountered",
        "Personalised catch-up plan",
    ),
}

INTERVENTION_PRIORITY: Dict[str, int] = {
    "prolonged_inactivity": 10,
    "frequent_absences": 8,
    "poor_attendance": 6,
    "low_engagement": 4,
    "slow_progress": 2,
}

# Upper bounds (exclusive) for each label; anything above is critical.
_RISK_LEVELS = ((20.0, "low"), (40.0, "moderate"), (60.0, "high"))


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return min(high, max(low, value))


def _days_between(start: Optional[datetime], end: datetime) -> float:
    if start is None:
        return 0.0
    return max(0.0, (end - start).total_seconds() / _SECONDS_PER_DAY)


def risk_level_for(score: float) -> str:
    for bound, label in _RISK_LEVELS:
        if score < bound:
            return label
    return "critical"


@dataclass(frozen=True)
class RiskFactors:
    stagnation: float
    attendance: float
    velocity: float
    coordination: float

    def as_dict(self) -> Dict[str, float]:
        return {
            "stagnation": self.stagnation,
            "attendance": self.attendance,
            "velocity": self.velocity,
            "coordination": self.coordination,
        }


@dataclass(frozen=True)
class RiskOutcome:
    student_id: str
    formation_id: str
    risk_score: float
    at_risk_of_dropout: bool
    factors: RiskFactors
    risk_level: str
    engagement_score: int
    difficulty_signals: Tuple[str, ...] = ()
    recommendations: Tuple[str, ...] = ()
    intervention_priority: int = 0
    assessed_at: Optional[datetime] = None


@dataclass(frozen=True)
class AlternanceRiskInputs:
    """Alternance-side measurements supplied by the coordination team."""

    center_completion: float
    company_completion: float
    skills_acquired: int = 0

    @property
    def overall_completion(self) -> float:
        return (self.center_completion + self.company_completion) / 2.0


@dataclass(frozen=True)
class AlternanceRiskOutcome:
    student_id: str
    formation_id: str
    alternance_risk_score: int
    alternance_status: str
    factors: Mapping[str, str] = field(default_factory=dict)


class RiskScorer:
    """Weighted risk model; weights and thresholds come from settings."""

    def __init__(
        self,
        risk: Optional[RiskSettings] = None,
        engagement: Optional[EngagementSettings] = None,
        coordination: Optional[CoordinationSettings] = None,
    ) -> None:
        self.risk = risk or RiskSettings()
        self.engagement = engagement or EngagementSettings()
        self.coordination = coordination or CoordinationSettings()

    # ----- factors -------------------------------------------------------
    def planned_days(self, state: ProgressState) -> Optional[float]:
        if state.started_at is None:
            return None
        if state.expected_end is not None and state.expected_end > state.started_at:
            return _days_between(state.started_at, state.expected_end)
        return self.risk.default_planned_days

    def stagnation_horizon(self, state: ProgressState) -> float:
        """Idle days that count as full stagnation at this enrollment's expected pace.

        The configured horizon applies to a formation planned over
        ``default_planned_days``; longer plans tolerate proportionally longer
        pauses, shorter ones less. Without a start date the configured
        horizon is used as is.
        """

        planned = self.planned_days(state)
        if planned is None:
            return self.risk.stagnation_horizon_days
        return self.risk.stagnation_horizon_days * planned / self.risk.default_planned_days

    def stagnation_factor(self, state: ProgressState, as_of: datetime) -> float:
        reference = state.last_activity or state.started_at
        inactive = _days_between(reference, as_of)
        return _clamp(inactive / self.stagnation_horizon(state))

    @staticmethod
    def attendance_factor(attendance: AttendanceSummary) -> float:
        return _clamp(1.0 - attendance.rate / 100.0)

    def velocity_factor(self, state: ProgressState, as_of: datetime) -> float:
        if state.started_at is None or state.is_completed:
            return 0.0
        planned = self.planned_days(state)
        expected = 100.0 * _clamp(_days_between(state.started_at, as_of) / planned)
        return _clamp((expected - state.completion_percentage) / 100.0)

    def coordination_factor(self, signals: Iterable[RiskSignal], as_of: datetime) -> float:
        total = sum(
            effective_contribution(
                signal,
                as_of,
                self.coordination.half_life_days,
                self.coordination.max_signal_weight,
            )
            for signal in signals
        )
        return _clamp(total, -1.0, 1.0)

    # ----- engagement ----------------------------------------------------
    def engagement_score(
        self, state: ProgressState, attendance: AttendanceSummary, as_of: datetime
    ) -> int:
        """Engagement in [0, 100] from recency, attendance, completion and frequency."""

        as_of = as_utc(as_of)
        score = 0.0
        if state.last_activity is not None:
            idle = _days_between(state.last_activity, as_of)
            for limit, points in sorted(self.engagement.recency_points.items()):
                if idle <= limit:
                    score += points
                    break

        score += attendance.rate * self.engagement.attendance_share
        score += state.completion_percentage * self.engagement.completion_share

        enrolled_days = max(1.0, _days_between(state.started_at, as_of))
        per_day = state.activity_count / enrolled_days
        for minimum, points in sorted(self.engagement.frequency_points.items(), reverse=True):
            if per_day >= minimum:
                score += points
                break

        return int(round(_clamp(score, 0.0, 100.0)))

    # ----- signals -------------------------------------------------------
    def difficulty_signals(
        self,
        state: ProgressState,
        attendance: AttendanceSummary,
        engagement: int,
        velocity: float,
        as_of: datetime,
    ) -> Tuple[str, ...]:
        signals: List[str] = []
        if engagement < self.risk.low_engagement_below:
            signals.append("low_engagement")
        reference = state.last_activity or state.started_at
        if reference is not None and _days_between(reference, as_of) > self.risk.inactivity_days_above:
            signals.append("prolonged_inactivity")
        if attendance.rate < self.risk.poor_attendance_below:
            signals.append("poor_attendance")
        if velocity > 0.2:
            signals.append("slow_progress")
        if attendance.missed_sessions >= self.risk.frequent_absences_from:
            signals.append("frequent_absences")
        return tuple(signals)

    @staticmethod
    def recommendations_for(signals: Iterable[str]) -> Tuple[str, ...]:
        seen: Dict[str, None] = {}
        for signal in signals:
            for item in RECOMMENDATIONS.get(signal, ()):
                seen.setdefault(item, None)
        return tuple(seen)

    @staticmethod
    def intervention_priority(signals: Iterable[str]) -> int:
        return sum(INTERVENTION_PRIORITY.get(signal, 0) for signal in set(signals))

    # ----- scoring -------------------------------------------------------
    def compute(
        self,
        state: ProgressState,
        attendance: AttendanceSummary,
        coordination_signals: Iterable[RiskSignal] = (),
        *,
        as_of: datetime,
    ) -> RiskOutcome:
        """Score dropout risk for ``state`` at ``as_of``."""

        as_of = as_utc(as_of)
        factors = RiskFactors(
            stagnation=self.stagnation_factor(state, as_of),
            attendance=self.attendance_factor(attendance),
            velocity=self.velocity_factor(state, as_of),
            coordination=self.coordination_factor(coordination_signals, as_of),
        )
        raw = (
            self.risk.stagnation_weight * factors.stagnation
            + self.risk.attendance_weight * factors.attendance
            + self.risk.velocity_weight * factors.velocity
            + self.risk.coordination_weight * factors.coordination
        )
        score = round(_clamp(100.0 * raw, 0.0, 100.0), 2)

        engagement = self.engagement_score(state, attendance, as_of)
        signals = self.difficulty_signals(state, attendance, engagement, factors.velocity, as_of)
        outcome = RiskOutcome(
            student_id=state.student_id,
            formation_id=state.formation_id,
            risk_score=score,
            at_risk_of_dropout=score >= self.risk.threshold,
            factors=factors,
            risk_level=risk_level_for(score),
            engagement_score=engagement,
            difficulty_signals=signals,
            recommendations=self.recommendations_for(signals),
            intervention_priority=self.intervention_priority(signals),
            assessed_at=as_of,
        )
        _LOGGER.debug(
            "Risk for %s in %s: %.2f (%s) factors=%s",
            state.student_id,
            state.formation_id,
            score,
            outcome.risk_level,
            factors.as_dict(),
        )
        return outcome

    def compute_alternance_risk(
        self, outcome: RiskOutcome, inputs: AlternanceRiskInputs
    ) -> AlternanceRiskOutcome:
        """Alternance-specific risk, kept separate from the dropout score."""

        factors: Dict[str, str] = {}
        score = outcome.risk_score
        if inputs.center_completion < 50:
            factors["low_center_completion"] = "high"
        if inputs.company_completion < 50:
            factors["low_company_completion"] = "high"
        if abs(inputs.center_completion - inputs.company_completion) > 30:
            factors["center_company_gap"] = "medium"
        if inputs.skills_acquired < 5:
            factors["few_skills_acquired"] = "medium"
        for level in factors.values():
            score += 20 if level == "high" else 10
        final = int(round(_clamp(score, 0.0, 100.0)))

        overall = inputs.overall_completion
        if overall >= 95:
            status = "completed"
        elif final >= 70:
            status = "at_risk"
        elif final >= 50:
            status = "needs_support"
        elif overall < 10:
            status = "paused"
        else:
            status = "active"

        return AlternanceRiskOutcome(
            student_id=outcome.student_id,
            formation_id=outcome.formation_id,
            alternance_risk_score=final,
            alternance_status=status,
            factors=factors,
        )
