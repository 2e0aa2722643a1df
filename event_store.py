"""Append-only SQLite store backing the tracking engines.

Completion events, attendance, contracts and coordination events are the
source of truth; progress states are a cache that can always be rebuilt
from them. Use a file path: every
pooled connection to ``:memory:`` would see its own empty database.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import asdict
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional

from db_pool import SQLiteConnectionPool
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
    CoordinationEvent,
    CoordinationMeeting,
    ProgressAssessment,
    ProgressState,
    SkillsAssessment,
)
from retry_utils import DeadLetter
from schemas import ProgressStateModel, decode_progress_state

logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS completion_events (
        event_id TEXT PRIMARY KEY,
        student_id TEXT NOT NULL,
        leaf_id TEXT NOT NULL,
        kind TEXT NOT NULL,
        passed INTEGER NOT NULL,
        score REAL,
        formation_id TEXT,
        occurred_at TEXT NOT NULL,
        stored_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_completion_student ON completion_events(student_id, occurred_at)",
    """
    CREATE TABLE IF NOT EXISTS attendance_records (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        student_id TEXT NOT NULL,
        session_id TEXT NOT NULL,
        status TEXT NOT NULL,
        minutes_late INTEGER NOT NULL DEFAULT 0,
        session_date TEXT,
        recorded_at TEXT NOT NULL,
        recorded_by TEXT,
        UNIQUE(student_id, session_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS attendance_corrections (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        student_id TEXT NOT NULL,
        session_id TEXT NOT NULL,
        status TEXT NOT NULL,
        minutes_late INTEGER NOT NULL DEFAULT 0,
        reason TEXT NOT NULL,
        recorded_at TEXT NOT NULL,
        recorded_by TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS calendar_entries (
        student_id TEXT NOT NULL,
        contract_id TEXT NOT NULL,
        year INTEGER NOT NULL,
        week INTEGER NOT NULL,
        location TEXT NOT NULL,
        center_hours REAL NOT NULL DEFAULT 0,
        company_hours REAL NOT NULL DEFAULT 0,
        center_sessions TEXT NOT NULL DEFAULT '[]',
        company_activities TEXT NOT NULL DEFAULT '[]',
        is_confirmed INTEGER NOT NULL DEFAULT 0,
        confirmed_by TEXT,
        UNIQUE(student_id, year, week)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS contracts (
        contract_id TEXT PRIMARY KEY,
        student_id TEXT NOT NULL,
        status TEXT NOT NULL,
        document TEXT NOT NULL,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS contract_amendments (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        contract_id TEXT NOT NULL,
        actor TEXT NOT NULL,
        reason TEXT NOT NULL,
        amendment TEXT NOT NULL,
        previous TEXT NOT NULL,
        amended_at TEXT NOT NULL,
        regenerated_weeks TEXT NOT NULL DEFAULT '[]'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS coordination_events (
        event_id TEXT PRIMARY KEY,
        student_id TEXT NOT NULL,
        type TEXT NOT NULL,
        occurred_at TEXT NOT NULL,
        payload TEXT NOT NULL,
        stored_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS progress_states (
        student_id TEXT NOT NULL,
        formation_id TEXT NOT NULL,
        state TEXT NOT NULL,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (student_id, formation_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS dead_letters (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        operation TEXT NOT NULL,
        payload TEXT NOT NULL,
        error TEXT NOT NULL,
        attempts INTEGER NOT NULL,
        failed_at TEXT NOT NULL
    )
    """,
)


def _iso(value: Optional[datetime | date]) -> Optional[str]:
    return value.isoformat() if value is not None else None


_DATE_FIELDS = ("start_date", "end_date")

_COORDINATION_TYPES: Dict[str, type] = {
    "meeting": CoordinationMeeting,
    "company_visit": CompanyVisit,
    "skills_assessment": SkillsAssessment,
    "progress_assessment": ProgressAssessment,
}


def _contract_document(contract: AlternanceContract) -> str:
    data = asdict(contract)
    data["status"] = contract.status.value
    data["holiday_weeks"] = sorted([list(key) for key in contract.holiday_weeks])
    for name in _DATE_FIELDS:
        data[name] = _iso(data[name])
    return json.dumps(data)


def _contract_from_document(document: str) -> AlternanceContract:
    data = json.loads(document)
    data["status"] = ContractStatus(data["status"])
    data["holiday_weeks"] = frozenset(tuple(key) for key in data["holiday_weeks"])
    for name in _DATE_FIELDS:
        data[name] = date.fromisoformat(data[name])
    return AlternanceContract(**data)


def _amendment_document(amendment: ContractAmendment) -> str:
    data = asdict(amendment)
    data["end_date"] = _iso(amendment.end_date)
    return json.dumps(data)


def _amendment_from_document(document: str) -> ContractAmendment:
    data = json.loads(document)
    if data["end_date"]:
        data["end_date"] = date.fromisoformat(data["end_date"])
    return ContractAmendment(**data)


class SQLiteEventStore:
    """Thin repository over the pooled SQLite database."""

    def __init__(self, database: str, max_connections: int = 5):
        self.database = database
        self._pool = SQLiteConnectionPool(database, max_connections=max_connections)
        self._init_tables()

    def _init_tables(self) -> None:
        with self._pool.get_connection() as con:
            for statement in _SCHEMA:
                con.execute(statement)
            con.commit()
        logger.debug("Event store ready at %s", self.database)

    def close(self) -> None:
        self._pool.close()

    # ----- completion events ---------------------------------------------
    def append_completion(self, event: CompletionEvent) -> bool:
        """Insert ``event``; returns ``False`` when its id was already stored."""

        with self._pool.get_connection() as con:
            cur = con.execute(
                """
                INSERT OR IGNORE INTO completion_events
                    (event_id, student_id, leaf_id, kind, passed, score, formation_id, occurred_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.event_id,
                    event.student_id,
                    event.leaf_id,
                    event.kind.value,
                    int(event.passed),
                    event.score,
                    event.formation_id,
                    _iso(event.timestamp),
                ),
            )
            con.commit()
            return cur.rowcount == 1

    def completion_events(self, student_id: Optional[str] = None) -> List[CompletionEvent]:
        sql = "SELECT * FROM completion_events"
        params: tuple = ()
        if student_id is not None:
            sql += " WHERE student_id = ?"
            params = (student_id,)
        sql += " ORDER BY occurred_at, event_id"
        with self._pool.get_connection() as con:
            rows = con.execute(sql, params).fetchall()
        return [
            CompletionEvent(
                event_id=row["event_id"],
                student_id=row["student_id"],
                leaf_id=row["leaf_id"],
                kind=CompletionKind(row["kind"]),
                passed=bool(row["passed"]),
                timestamp=datetime.fromisoformat(row["occurred_at"]),
                score=row["score"],
                formation_id=row["formation_id"],
            )
            for row in rows
        ]

    # ----- attendance ----------------------------------------------------
    def insert_attendance(self, record: AttendanceRecord) -> None:
        try:
            with self._pool.get_connection() as con:
                con.execute(
                    """
                    INSERT INTO attendance_records
                        (student_id, session_id, status, minutes_late, session_date, recorded_at, recorded_by)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.student_id,
                        record.session_id,
                        record.status.value,
                        record.minutes_late,
                        _iso(record.session_date),
                        _iso(record.recorded_at),
                        record.recorded_by,
                    ),
                )
                con.commit()
        except sqlite3.IntegrityError as exc:
            raise DuplicateAttendanceError(
                f"Attendance for student {record.student_id} in session {record.session_id} "
                "is already stored",
                student_id=record.student_id,
                session_id=record.session_id,
            ) from exc

    def insert_correction(self, correction: AttendanceCorrection) -> None:
        """Store the correction and supersede the current record in one transaction."""

        with self._pool.get_connection() as con:
            cur = con.execute(
                """
                UPDATE attendance_records
                   SET status = ?, minutes_late = ?, recorded_at = ?,
                       recorded_by = COALESCE(?, recorded_by)
                 WHERE student_id = ? AND session_id = ?
                """,
                (
                    correction.status.value,
                    correction.minutes_late,
                    _iso(correction.recorded_at),
                    correction.recorded_by,
                    correction.student_id,
                    correction.session_id,
                ),
            )
            if cur.rowcount == 0:
                raise UnknownEntityError(
                    f"No stored attendance for student {correction.student_id} "
                    f"in session {correction.session_id}",
                    student_id=correction.student_id,
                    session_id=correction.session_id,
                )
            con.execute(
                """
                INSERT INTO attendance_corrections
                    (student_id, session_id, status, minutes_late, reason, recorded_at, recorded_by)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    correction.student_id,
                    correction.session_id,
                    correction.status.value,
                    correction.minutes_late,
                    correction.reason,
                    _iso(correction.recorded_at),
                    correction.recorded_by,
                ),
            )
            con.commit()

    def attendance_records(self, student_id: Optional[str] = None) -> List[AttendanceRecord]:
        sql = "SELECT * FROM attendance_records"
        params: tuple = ()
        if student_id is not None:
            sql += " WHERE student_id = ?"
            params = (student_id,)
        with self._pool.get_connection() as con:
            rows = con.execute(sql + " ORDER BY id", params).fetchall()
        return [
            AttendanceRecord(
                student_id=row["student_id"],
                session_id=row["session_id"],
                status=AttendanceStatus(row["status"]),
                recorded_at=datetime.fromisoformat(row["recorded_at"]),
                minutes_late=row["minutes_late"],
                session_date=date.fromisoformat(row["session_date"]) if row["session_date"] else None,
                recorded_by=row["recorded_by"],
            )
            for row in rows
        ]

    def correction_count(self, student_id: str, session_id: str) -> int:
        with self._pool.get_connection() as con:
            row = con.execute(
                "SELECT COUNT(*) FROM attendance_corrections WHERE student_id = ? AND session_id = ?",
                (student_id, session_id),
            ).fetchone()
        return int(row[0])

    # ----- calendar ------------------------------------------------------
    def replace_calendar(self, contract_id: str, entries: Iterable[AlternanceCalendarEntry]) -> None:
        """Replace every stored week of ``contract_id`` atomically."""

        try:
            with self._pool.get_connection() as con:
                con.execute("DELETE FROM calendar_entries WHERE contract_id = ?", (contract_id,))
                con.executemany(
                    """
                    INSERT INTO calendar_entries
                        (student_id, contract_id, year, week, location, center_hours, company_hours,
                         center_sessions, company_activities, is_confirmed, confirmed_by)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            e.student_id,
                            e.contract_id,
                            e.year,
                            e.week,
                            e.location.value,
                            e.center_hours,
                            e.company_hours,
                            json.dumps(list(e.center_sessions)),
                            json.dumps(list(e.company_activities)),
                            int(e.is_confirmed),
                            e.confirmed_by,
                        )
                        for e in entries
                    ],
                )
                con.commit()
        except sqlite3.IntegrityError as exc:
            raise SchedulingConflictError(
                f"Calendar of contract {contract_id} overlaps a stored week",
                contract_id=contract_id,
            ) from exc

    def calendar_entries(self, student_id: Optional[str] = None) -> List[AlternanceCalendarEntry]:
        sql = "SELECT * FROM calendar_entries"
        params: tuple = ()
        if student_id is not None:
            sql += " WHERE student_id = ?"
            params = (student_id,)
        with self._pool.get_connection() as con:
            rows = con.execute(sql + " ORDER BY student_id, year, week", params).fetchall()
        return [
            AlternanceCalendarEntry(
                student_id=row["student_id"],
                contract_id=row["contract_id"],
                year=row["year"],
                week=row["week"],
                location=CalendarLocation(row["location"]),
                center_hours=row["center_hours"],
                company_hours=row["company_hours"],
                center_sessions=tuple(json.loads(row["center_sessions"])),
                company_activities=tuple(json.loads(row["company_activities"])),
                is_confirmed=bool(row["is_confirmed"]),
                confirmed_by=row["confirmed_by"],
            )
            for row in rows
        ]

    # ----- contracts -----------------------------------------------------
    def save_contract(self, contract: AlternanceContract) -> None:
        with self._pool.get_connection() as con:
            con.execute(
                """
                INSERT INTO contracts (contract_id, student_id, status, document, updated_at)
                VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(contract_id)
                DO UPDATE SET status = excluded.status, document = excluded.document,
                              updated_at = CURRENT_TIMESTAMP
                """,
                (contract.contract_id, contract.student_id, contract.status.value, _contract_document(contract)),
            )
            con.commit()

    def contracts(self, student_id: Optional[str] = None) -> List[AlternanceContract]:
        sql = "SELECT document FROM contracts"
        params: tuple = ()
        if student_id is not None:
            sql += " WHERE student_id = ?"
            params = (student_id,)
        with self._pool.get_connection() as con:
            rows = con.execute(sql + " ORDER BY contract_id", params).fetchall()
        return [_contract_from_document(row["document"]) for row in rows]

    def add_amendment(self, record: AmendmentRecord) -> None:
        with self._pool.get_connection() as con:
            con.execute(
                """
                INSERT INTO contract_amendments
                    (contract_id, actor, reason, amendment, previous, amended_at, regenerated_weeks)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.contract_id,
                    record.amendment.actor,
                    record.amendment.reason,
                    _amendment_document(record.amendment),
                    _contract_document(record.previous),
                    _iso(record.amended_at),
                    json.dumps([list(key) for key in record.regenerated_weeks]),
                ),
            )
            con.commit()

    def amendments(self, contract_id: Optional[str] = None) -> List[AmendmentRecord]:
        sql = "SELECT * FROM contract_amendments"
        params: tuple = ()
        if contract_id is not None:
            sql += " WHERE contract_id = ?"
            params = (contract_id,)
        with self._pool.get_connection() as con:
            rows = con.execute(sql + " ORDER BY id", params).fetchall()
        return [
            AmendmentRecord(
                contract_id=row["contract_id"],
                amendment=_amendment_from_document(row["amendment"]),
                previous=_contract_from_document(row["previous"]),
                amended_at=datetime.fromisoformat(row["amended_at"]),
                regenerated_weeks=tuple(tuple(key) for key in json.loads(row["regenerated_weeks"])),
            )
            for row in rows
        ]

    # ----- coordination --------------------------------------------------
    def append_coordination_event(self, event: CoordinationEvent) -> bool:
        """Insert ``event``; returns ``False`` when its id was already stored."""

        kind = next(name for name, cls in _COORDINATION_TYPES.items() if isinstance(event, cls))
        payload = asdict(event)
        for name in ("event_id", "student_id", "occurred_at"):
            payload.pop(name)
        with self._pool.get_connection() as con:
            cur = con.execute(
                """
                INSERT OR IGNORE INTO coordination_events (event_id, student_id, type, occurred_at, payload)
                VALUES (?, ?, ?, ?, ?)
                """,
                (event.event_id, event.student_id, kind, _iso(event.occurred_at), json.dumps(payload)),
            )
            con.commit()
            return cur.rowcount == 1

    def coordination_events(self, student_id: Optional[str] = None) -> List[CoordinationEvent]:
        sql = "SELECT * FROM coordination_events"
        params: tuple = ()
        if student_id is not None:
            sql += " WHERE student_id = ?"
            params = (student_id,)
        with self._pool.get_connection() as con:
            rows = con.execute(sql + " ORDER BY occurred_at, event_id", params).fetchall()
        events = []
        for row in rows:
            payload = json.loads(row["payload"])
            if "difficulties" in payload:
                payload["difficulties"] = tuple(payload["difficulties"])
            events.append(
                _COORDINATION_TYPES[row["type"]](
                    event_id=row["event_id"],
                    student_id=row["student_id"],
                    occurred_at=datetime.fromisoformat(row["occurred_at"]),
                    **payload,
                )
            )
        return events

    # ----- progress cache ------------------------------------------------
    def save_progress_state(self, state: ProgressState) -> None:
        document = ProgressStateModel.from_state(state).model_dump_json()
        with self._pool.get_connection() as con:
            con.execute(
                """
                INSERT INTO progress_states (student_id, formation_id, state, updated_at)
                VALUES (?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(student_id, formation_id)
                DO UPDATE SET state = excluded.state, updated_at = CURRENT_TIMESTAMP
                """,
                (state.student_id, state.formation_id, document),
            )
            con.commit()

    def load_progress_state(self, student_id: str, formation_id: str) -> Optional[ProgressState]:
        with self._pool.get_connection() as con:
            row = con.execute(
                "SELECT state FROM progress_states WHERE student_id = ? AND formation_id = ?",
                (student_id, formation_id),
            ).fetchone()
        if row is None:
            return None
        return decode_progress_state(row["state"])

    # ----- dead letters --------------------------------------------------
    def add_dead_letter(self, letter: DeadLetter) -> None:
        with self._pool.get_connection() as con:
            con.execute(
                """
                INSERT INTO dead_letters (operation, payload, error, attempts, failed_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    letter.operation,
                    json.dumps(letter.payload, default=str),
                    letter.error,
                    letter.attempts,
                    _iso(letter.failed_at),
                ),
            )
            con.commit()

    def dead_letters(self) -> List[Dict[str, Any]]:
        with self._pool.get_connection() as con:
            rows = con.execute("SELECT * FROM dead_letters ORDER BY id").fetchall()
        result = []
        for row in rows:
            item = dict(row)
            item["payload"] = json.loads(item["payload"])
            result.append(item)
        return result
