"""Attendance bookkeeping per (student, session)."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import date
from typing import Dict, List, Optional, Tuple

from errors import DecodeError, DuplicateAttendanceError, UnknownEntityError
from models import AttendanceCorrection, AttendanceRecord, AttendanceStatus

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class AttendanceSummary:
    student_id: str
    rate: float
    total_sessions: int
    present: int
    late: int
    absent: int
    excused: int

    @property
    def missed_sessions(self) -> int:
        return self.absent


class AttendanceTracker:
    """Stores one attendance record per (student, session).

    A second submission for the same pair is rejected; changing a recorded
    status goes through :meth:`correct`, which keeps the superseded record.
    """

    def __init__(self, late_weight: float = 0.8) -> None:
        if not 0.0 <= late_weight <= 1.0:
            raise ValueError("late_weight must be within [0, 1]")
        self.late_weight = float(late_weight)
        self._records: Dict[Tuple[str, str], AttendanceRecord] = {}
        self._history: Dict[Tuple[str, str], List[AttendanceCorrection]] = {}
        self._lock = threading.Lock()

    def record(self, att: AttendanceRecord) -> float:
        """Store ``att`` and return the student's updated attendance rate."""

        key = (att.student_id, att.session_id)
        with self._lock:
            if key in self._records:
                raise DuplicateAttendanceError(
                    f"Attendance for student {att.student_id} in session {att.session_id} "
                    "is already recorded; submit a correction instead",
                    student_id=att.student_id,
                    session_id=att.session_id,
                )
            self._records[key] = att
        rate = self.rate(att.student_id)
        _LOGGER.debug(
            "Recorded %s for %s in %s (rate %.2f)",
            att.status.value,
            att.student_id,
            att.session_id,
            rate,
        )
        return rate

    def correct(self, correction: AttendanceCorrection) -> float:
        """Supersede an existing record; the reason is mandatory."""

        if not correction.reason or not correction.reason.strip():
            raise DecodeError(
                "An attendance correction requires a reason",
                student_id=correction.student_id,
                session_id=correction.session_id,
            )
        key = (correction.student_id, correction.session_id)
        with self._lock:
            current = self._records.get(key)
            if current is None:
                raise UnknownEntityError(
                    f"No attendance recorded for student {correction.student_id} "
                    f"in session {correction.session_id}",
                    student_id=correction.student_id,
                    session_id=correction.session_id,
                )
            self._records[key] = replace(
                current,
                status=correction.status,
                minutes_late=correction.minutes_late,
                recorded_at=correction.recorded_at,
                recorded_by=correction.recorded_by or current.recorded_by,
            )
            self._history.setdefault(key, []).append(correction)
        _LOGGER.info(
            "Attendance of %s in %s corrected %s -> %s: %s",
            correction.student_id,
            correction.session_id,
            current.status.value,
            correction.status.value,
            correction.reason,
        )
        return self.rate(correction.student_id)

    def get(self, student_id: str, session_id: str) -> Optional[AttendanceRecord]:
        return self._records.get((student_id, session_id))

    def history(self, student_id: str, session_id: str) -> List[AttendanceCorrection]:
        return list(self._history.get((student_id, session_id), ()))

    def records_for(
        self,
        student_id: str,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> List[AttendanceRecord]:
        records = [r for (sid, _), r in list(self._records.items()) if sid == student_id]
        if start is not None:
            records = [r for r in records if r.effective_date >= start]
        if end is not None:
            records = [r for r in records if r.effective_date <= end]
        return sorted(records, key=lambda r: (r.effective_date, r.session_id))

    def summary(
        self,
        student_id: str,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> AttendanceSummary:
        counts = {status: 0 for status in AttendanceStatus}
        for record in self.records_for(student_id, start, end):
            counts[record.status] += 1

        denominator = (
            counts[AttendanceStatus.PRESENT]
            + counts[AttendanceStatus.LATE]
            + counts[AttendanceStatus.ABSENT]
        )
        if denominator == 0:
            rate = 100.0
        else:
            attended = counts[AttendanceStatus.PRESENT] + self.late_weight * counts[AttendanceStatus.LATE]
            rate = round(min(100.0, max(0.0, 100.0 * attended / denominator)), 2)

        return AttendanceSummary(
            student_id=student_id,
            rate=rate,
            total_sessions=sum(counts.values()),
            present=counts[AttendanceStatus.PRESENT],
            late=counts[AttendanceStatus.LATE],
            absent=counts[AttendanceStatus.ABSENT],
            excused=counts[AttendanceStatus.EXCUSED],
        )

    def rate(
        self,
        student_id: str,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> float:
        """Present-equivalent sessions over non-excused sessions, in percent."""

        return self.summary(student_id, start, end).rate

    def students(self) -> List[str]:
        return sorted({sid for sid, _ in list(self._records)})
