"""Coordination events folded into decaying risk signals.

Mentor meetings, company visits and assessments become bounded
``RiskSignal`` records. Old feedback is not deleted; its influence fades
through a half-life multiplier applied at scoring time.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Dict, List, Optional

from models import (
    CompanyVisit,
    CoordinationEvent,
    CoordinationMeeting,
    ProgressAssessment,
    RiskSignal,
    SkillsAssessment,
    as_utc,
)

_LOGGER = logging.getLogger(__name__)

SKILLS_RATING_EFFECT: Dict[str, Optional[float]] = {
    "excellent": -1.0,
    "satisfactory": -0.5,
    "average": 0.25,
    "insufficient": 1.0,
    "not_evaluated": None,
}

_PROBLEM_SOLVING_PENALTY = 0.3
_FOLLOW_UP_PENALTY = 0.25
_DIFFICULTY_STEP = 0.1
_DIFFICULTY_CAP = 0.5


def _clamp(value: float, low: float = -1.0, high: float = 1.0) -> float:
    return min(high, max(low, value))


def _net_effect(event: CoordinationEvent) -> Optional[float]:
    """Signed risk effect in [-1, 1]; positive raises risk. ``None`` means no signal."""

    if isinstance(event, CoordinationMeeting):
        net = 0.0
        if event.satisfaction_rating is not None:
            if not 1 <= event.satisfaction_rating <= 5:
                raise ValueError("satisfaction_rating must be between 1 and 5")
            net += (3 - event.satisfaction_rating) / 2.0
        if event.meeting_type == "problem_solving":
            net += _PROBLEM_SOLVING_PENALTY
        return _clamp(net)

    if isinstance(event, CompanyVisit):
        net = 0.0
        if event.overall_rating is not None:
            if not 1 <= event.overall_rating <= 10:
                raise ValueError("overall_rating must be between 1 and 10")
            net += (5.5 - event.overall_rating) / 4.5
        if event.follow_up_required:
            net += _FOLLOW_UP_PENALTY
        return _clamp(net)

    if isinstance(event, SkillsAssessment):
        if event.overall_rating not in SKILLS_RATING_EFFECT:
            raise ValueError(f"Unknown skills assessment rating: {event.overall_rating}")
        return SKILLS_RATING_EFFECT[event.overall_rating]

    if isinstance(event, ProgressAssessment):
        if not 1 <= event.risk_level <= 5:
            raise ValueError("risk_level must be between 1 and 5")
        net = (event.risk_level - 3) / 2.0
        net += min(_DIFFICULTY_CAP, _DIFFICULTY_STEP * len(event.difficulties))
        net -= event.completion_delta / 100.0
        return _clamp(net)

    raise TypeError(f"Unsupported coordination event: {type(event).__name__}")


_SOURCES = {
    CoordinationMeeting: "coordination_meeting",
    CompanyVisit: "company_visit",
    SkillsAssessment: "skills_assessment",
    ProgressAssessment: "progress_assessment",
}


def fold_event(event: CoordinationEvent) -> Optional[RiskSignal]:
    """Translate one coordination event into a risk signal (or nothing)."""

    net = _net_effect(event)
    if net is None or net == 0.0:
        return None
    source = _SOURCES[type(event)]
    return RiskSignal(
        event_id=event.event_id,
        student_id=event.student_id,
        source=source,
        weight=round(abs(net), 4),
        direction=1 if net > 0 else -1,
        timestamp=event.occurred_at,
        reason=f"{source} effect {net:+.2f}",
    )


def decay_multiplier(signal: RiskSignal, as_of: datetime, half_life_days: float) -> float:
    """Recency multiplier: halves every ``half_life_days``; 0 for future signals."""

    age_days = (as_utc(as_of) - signal.timestamp).total_seconds() / 86400.0
    if age_days < 0:
        return 0.0
    return 0.5 ** (age_days / half_life_days)


def effective_contribution(
    signal: RiskSignal,
    as_of: datetime,
    half_life_days: float,
    max_signal_weight: float,
) -> float:
    """Signed, bounded, decayed contribution of ``signal`` at ``as_of``."""

    weight = min(signal.weight, max_signal_weight)
    return signal.direction * weight * decay_multiplier(signal, as_of, half_life_days)


class CoordinationLedger:
    """Keeps every coordination event and the signal it produced."""

    def __init__(self) -> None:
        self._events: Dict[str, List[CoordinationEvent]] = {}
        self._signals: Dict[str, List[RiskSignal]] = {}
        self._seen: set[str] = set()
        self._lock = threading.Lock()

    def record(self, event: CoordinationEvent) -> Optional[RiskSignal]:
        with self._lock:
            if event.event_id in self._seen:
                _LOGGER.debug("Coordination event %s already recorded", event.event_id)
                return next(
                    (s for s in self._signals.get(event.student_id, ()) if s.event_id == event.event_id),
                    None,
                )
            signal = fold_event(event)
            self._seen.add(event.event_id)
            self._events.setdefault(event.student_id, []).append(event)
            if signal is not None:
                self._signals.setdefault(event.student_id, []).append(signal)
        if signal is not None:
            _LOGGER.info(
                "Coordination signal for %s from %s: direction %+d weight %.2f",
                signal.student_id,
                signal.source,
                signal.direction,
                signal.weight,
            )
        return signal

    def signals_for(self, student_id: str, as_of: Optional[datetime] = None) -> List[RiskSignal]:
        signals = list(self._signals.get(student_id, ()))
        if as_of is not None:
            cutoff = as_utc(as_of)
            signals = [s for s in signals if s.timestamp <= cutoff]
        return sorted(signals, key=lambda s: (s.timestamp, s.event_id))

    def events_for(self, student_id: str) -> List[CoordinationEvent]:
        return list(self._events.get(student_id, ()))
