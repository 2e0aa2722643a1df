"""Alternance contracts and their weekly center/company calendar.

A contract moves through ``draft -> validated -> active -> completed`` (or
``terminated`` from active). Validation generates one calendar entry per ISO
week of the contract; an amendment only re-plans future weeks that have not
been confirmed yet.
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from errors import (
    InvalidContractError,
    InvalidTransitionError,
    ScheduleDriftWarning,
    SchedulingConflictError,
    UnknownEntityError,
)
from models import (
    AlternanceCalendarEntry,
    AlternanceContract,
    CalendarLocation,
    ContractStatus,
    WeekKey,
    as_utc,
)

_LOGGER = logging.getLogger(__name__)

_TRANSITIONS: Dict[ContractStatus, Tuple[ContractStatus, ...]] = {
    ContractStatus.DRAFT: (ContractStatus.VALIDATED,),
    ContractStatus.VALIDATED: (ContractStatus.ACTIVE,),
    ContractStatus.ACTIVE: (ContractStatus.COMPLETED, ContractStatus.TERMINATED),
    ContractStatus.COMPLETED: (),
    ContractStatus.TERMINATED: (),
}

_WORKING_DAYS = 5
_EPSILON = 1e-9


# ---------------------------------------------------------------------------
# Rhythms
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Rhythm:
    """Either a block rhythm (whole weeks) or a weekly day split."""

    key: str
    center_weeks: int = 0
    company_weeks: int = 0
    center_days: int = 0
    company_days: int = 0

    @property
    def weekly_pattern(self) -> bool:
        return self.center_days + self.company_days > 0

    @property
    def cycle(self) -> int:
        return self.center_weeks + self.company_weeks

    def location_at(self, position: int) -> CalendarLocation:
        if self.weekly_pattern:
            return CalendarLocation.MIXED
        if position % self.cycle < self.center_weeks:
            return CalendarLocation.CENTER
        return CalendarLocation.COMPANY


RHYTHMS: Mapping[str, Rhythm] = MappingProxyType(
    {
        "1_week_1_week": Rhythm("1_week_1_week", center_weeks=1, company_weeks=1),
        "2_weeks_2_weeks": Rhythm("2_weeks_2_weeks", center_weeks=2, company_weeks=2),
        "3_weeks_1_week": Rhythm("3_weeks_1_week", center_weeks=3, company_weeks=1),
        "2_days_3_days": Rhythm("2_days_3_days", center_days=2, company_days=3),
        "3_days_2_days": Rhythm("3_days_2_days", center_days=3, company_days=2),
    }
)

_FREE_TEXT_RHYTHM = re.compile(
    r"^\s*(\d+)\s*weeks?\s*(?:at\s+)?(?:the\s+)?cent(?:er|re)\s*[/,]\s*"
    r"(\d+)\s*weeks?\s*(?:at\s+)?(?:the\s+)?company\s*$",
    re.IGNORECASE,
)


def parse_rhythm(text: Optional[str]) -> Optional[Rhythm]:
    """Resolve a catalogue key or a "N weeks center / M weeks company" text.

    Returns ``None`` for an empty rhythm and raises :class:`InvalidContractError`
    for text that cannot be understood.
    """

    if text is None or not text.strip():
        return None
    known = RHYTHMS.get(text.strip())
    if known is not None:
        return known
    match = _FREE_TEXT_RHYTHM.match(text)
    if match is None:
        raise InvalidContractError(f"Unrecognised alternance rhythm: {text!r}", rhythm=text)
    center, company = int(match.group(1)), int(match.group(2))
    if center + company == 0:
        raise InvalidContractError("A rhythm needs at least one week", rhythm=text)
    return Rhythm(f"{center}_weeks_{company}_weeks", center_weeks=center, company_weeks=company)


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CalendarGeneration:
    """Outcome of planning a contract's weeks."""

    contract_id: str
    entries: Tuple[AlternanceCalendarEntry, ...] = ()
    conflicts: Tuple[SchedulingConflictError, ...] = ()
    warnings: Tuple[ScheduleDriftWarning, ...] = ()
    center_share: Optional[float] = None


@dataclass(frozen=True)
class ContractAmendment:
    actor: str
    reason: str
    end_date: Optional[date] = None
    center_percentage: Optional[float] = None
    company_percentage: Optional[float] = None
    weekly_center_hours: Optional[float] = None
    weekly_company_hours: Optional[float] = None
    rhythm: Optional[str] = None


@dataclass(frozen=True)
class AmendmentRecord:
    contract_id: str
    amendment: ContractAmendment
    previous: AlternanceContract
    amended_at: datetime
    regenerated_weeks: Tuple[WeekKey, ...] = ()


@dataclass
class _Totals:
    center_hours: float = 0.0
    company_hours: float = 0.0
    position: int = 0

    def add(self, entry: AlternanceCalendarEntry) -> None:
        if entry.location is CalendarLocation.HOLIDAY:
            return
        self.center_hours += entry.center_hours
        self.company_hours += entry.company_hours
        self.position += 1

    @property
    def center_share(self) -> Optional[float]:
        total = self.center_hours + self.company_hours
        if total <= 0:
            return None
        return 100.0 * self.center_hours / total


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def validate_contract(contract: AlternanceContract) -> None:
    """Raise :class:`InvalidContractError` when the contract is inconsistent."""

    problems: List[str] = []
    for name in ("center_percentage", "company_percentage"):
        value = getattr(contract, name)
        if not 0.0 <= value <= 100.0:
            problems.append(f"{name} must be within [0, 100], got {value}")
    if abs(contract.center_percentage + contract.company_percentage - 100.0) > _EPSILON:
        problems.append(
            "center_percentage + company_percentage must equal 100, got "
            f"{contract.center_percentage + contract.company_percentage}"
        )
    if contract.end_date < contract.start_date:
        problems.append("end_date is before start_date")
    for share, hours in (
        ("center", contract.weekly_center_hours),
        ("company", contract.weekly_company_hours),
    ):
        if hours < 0:
            problems.append(f"weekly_{share}_hours cannot be negative")
        elif hours == 0 and getattr(contract, f"{share}_percentage") > 0:
            problems.append(f"weekly_{share}_hours must be positive for a non-zero {share} share")
    if problems:
        raise InvalidContractError(
            f"Contract {contract.contract_id} is invalid: " + "; ".join(problems),
            contract_id=contract.contract_id,
            problems=problems,
        )
    parse_rhythm(contract.rhythm)


def contract_weeks(start: date, end: date) -> List[WeekKey]:
    """ISO ``(year, week)`` keys of every week intersecting ``[start, end]``."""

    monday = start - timedelta(days=start.weekday())
    weeks: List[WeekKey] = []
    while monday <= end:
        iso = monday.isocalendar()
        weeks.append((iso[0], iso[1]))
        monday += timedelta(days=7)
    return weeks


def _bucket_location(contract: AlternanceContract, totals: _Totals) -> CalendarLocation:
    if contract.company_percentage <= 0:
        return CalendarLocation.CENTER
    if contract.center_percentage <= 0:
        return CalendarLocation.COMPANY
    target = contract.center_percentage / 100.0
    c, k = totals.center_hours, totals.company_hours
    if_center = (c + contract.weekly_center_hours) / (c + k + contract.weekly_center_hours)
    if_company = c / (c + k + contract.weekly_company_hours)
    if abs(if_center - target) <= abs(if_company - target) + _EPSILON:
        return CalendarLocation.CENTER
    return CalendarLocation.COMPANY


def _entry_for(
    contract: AlternanceContract,
    key: WeekKey,
    location: CalendarLocation,
    rhythm: Optional[Rhythm],
) -> AlternanceCalendarEntry:
    center = company = 0.0
    if location is CalendarLocation.CENTER:
        center = contract.weekly_center_hours
    elif location is CalendarLocation.COMPANY:
        company = contract.weekly_company_hours
    elif location is CalendarLocation.MIXED and rhythm is not None:
        center = contract.weekly_center_hours * rhythm.center_days / _WORKING_DAYS
        company = contract.weekly_company_hours * rhythm.company_days / _WORKING_DAYS
    return AlternanceCalendarEntry(
        student_id=contract.student_id,
        contract_id=contract.contract_id,
        year=key[0],
        week=key[1],
        location=location,
        center_hours=round(center, 2),
        company_hours=round(company, 2),
    )


def plan_weeks(
    contract: AlternanceContract,
    weeks: Iterable[WeekKey],
    occupied: Mapping[WeekKey, AlternanceCalendarEntry],
    totals: Optional[_Totals] = None,
) -> Tuple[List[AlternanceCalendarEntry], List[SchedulingConflictError], _Totals]:
    """Assign a location to each week; weeks held by another contract are reported."""

    rhythm = parse_rhythm(contract.rhythm)
    totals = totals or _Totals()
    entries: List[AlternanceCalendarEntry] = []
    conflicts: List[SchedulingConflictError] = []
    for key in weeks:
        holder = occupied.get(key)
        if holder is not None and holder.contract_id != contract.contract_id:
            conflicts.append(
                SchedulingConflictError(
                    f"Week {key[0]}-W{key[1]:02d} of student {contract.student_id} is already "
                    f"planned by contract {holder.contract_id}",
                    student_id=contract.student_id,
                    contract_id=contract.contract_id,
                    year=key[0],
                    week=key[1],
                    held_by=holder.contract_id,
                )
            )
            continue
        if key in contract.holiday_weeks:
            location = CalendarLocation.HOLIDAY
        elif rhythm is not None:
            location = rhythm.location_at(totals.position)
        else:
            location = _bucket_location(contract, totals)
        entry = _entry_for(contract, key, location, rhythm)
        totals.add(entry)
        entries.append(entry)
    return entries, conflicts, totals


def drift_warning(
    contract: AlternanceContract, totals: _Totals, tolerance: float
) -> Optional[ScheduleDriftWarning]:
    share = totals.center_share
    if share is None:
        return None
    drift = share - contract.center_percentage
    if abs(drift) <= tolerance:
        return None
    return ScheduleDriftWarning(
        f"Contract {contract.contract_id} plans {share:.1f}% center hours against "
        f"{contract.center_percentage:.1f}% agreed",
        contract_id=contract.contract_id,
        student_id=contract.student_id,
        center_share=round(share, 2),
        target=contract.center_percentage,
        drift=round(drift, 2),
    )


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class AlternanceScheduler:
    """Owns contracts and calendars.

    Writers take a per-contract lock; calendars are replaced copy-on-write so
    readers never lock and always see a complete snapshot.
    """

    def __init__(self, drift_tolerance: float = 5.0) -> None:
        self.drift_tolerance = drift_tolerance
        self._contracts: Dict[str, AlternanceContract] = {}
        self._calendars: Dict[str, Mapping[WeekKey, AlternanceCalendarEntry]] = {}
        self._amendments: Dict[str, List[AmendmentRecord]] = {}
        self._contract_locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._calendar_lock = threading.Lock()

    # ----- contracts -----------------------------------------------------
    def _lock_for(self, contract_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._contract_locks.get(contract_id)
            if lock is None:
                lock = self._contract_locks[contract_id] = threading.Lock()
            return lock

    def get_contract(self, contract_id: str) -> AlternanceContract:
        contract = self._contracts.get(contract_id)
        if contract is None:
            raise UnknownEntityError(f"Unknown contract: {contract_id}", contract_id=contract_id)
        return contract

    def contracts_for(self, student_id: str) -> List[AlternanceContract]:
        return sorted(
            (c for c in list(self._contracts.values()) if c.student_id == student_id),
            key=lambda c: (c.start_date, c.contract_id),
        )

    def create_contract(self, contract: AlternanceContract) -> AlternanceContract:
        with self._registry_lock:
            if contract.contract_id in self._contracts:
                raise InvalidContractError(
                    f"Contract {contract.contract_id} already exists",
                    contract_id=contract.contract_id,
                )
            draft = replace(contract, status=ContractStatus.DRAFT)
            self._contracts[contract.contract_id] = draft
        _LOGGER.info("Contract %s created for student %s", draft.contract_id, draft.student_id)
        return draft

    @staticmethod
    def _require(contract: AlternanceContract, target: ContractStatus) -> None:
        if target not in _TRANSITIONS[contract.status]:
            raise InvalidTransitionError(
                f"Contract {contract.contract_id} cannot move from "
                f"{contract.status.value} to {target.value}",
                contract_id=contract.contract_id,
                current=contract.status.value,
                target=target.value,
            )

    def _transition(self, contract: AlternanceContract, target: ContractStatus) -> AlternanceContract:
        self._require(contract, target)
        updated = replace(contract, status=target)
        self._contracts[contract.contract_id] = updated
        _LOGGER.info(
            "Contract %s: %s -> %s", contract.contract_id, contract.status.value, target.value
        )
        return updated

    def validate_contract(self, contract_id: str) -> CalendarGeneration:
        """Check the contract, plan its calendar and mark it validated.

        The status and the calendar change together or not at all.
        """

        with self._lock_for(contract_id):
            contract = self.get_contract(contract_id)
            self._require(contract, ContractStatus.VALIDATED)
            validate_contract(contract)
            generation = self._generate(contract)
            self._transition(contract, ContractStatus.VALIDATED)
        return generation

    def activate_contract(self, contract_id: str) -> AlternanceContract:
        with self._lock_for(contract_id):
            return self._transition(self.get_contract(contract_id), ContractStatus.ACTIVE)

    def complete_contract(self, contract_id: str) -> AlternanceContract:
        with self._lock_for(contract_id):
            return self._transition(self.get_contract(contract_id), ContractStatus.COMPLETED)

    def terminate_contract(self, contract_id: str, reason: str = "") -> AlternanceContract:
        with self._lock_for(contract_id):
            updated = self._transition(self.get_contract(contract_id), ContractStatus.TERMINATED)
        if reason:
            _LOGGER.info("Contract %s terminated: %s", contract_id, reason)
        return updated

    # ----- calendar ------------------------------------------------------
    def _occupied(self, student_id: str) -> Mapping[WeekKey, AlternanceCalendarEntry]:
        return self._calendars.get(student_id, MappingProxyType({}))

    def _publish(
        self,
        student_id: str,
        contract_id: str,
        keep: Iterable[AlternanceCalendarEntry],
        add: Iterable[AlternanceCalendarEntry],
    ) -> None:
        with self._calendar_lock:
            current = self._calendars.get(student_id, {})
            updated = {k: e for k, e in current.items() if e.contract_id != contract_id}
            for entry in keep:
                updated[entry.key] = entry
            for entry in add:
                if entry.key in updated:
                    # Another contract took the week since planning started.
                    raise SchedulingConflictError(
                        f"Week {entry.year}-W{entry.week:02d} was taken concurrently",
                        student_id=student_id,
                        contract_id=contract_id,
                        year=entry.year,
                        week=entry.week,
                    )
                updated[entry.key] = entry
            self._calendars[student_id] = MappingProxyType(updated)

    def generate_calendar(self, contract: AlternanceContract) -> CalendarGeneration:
        """Plan a contract's calendar without storing it."""

        validate_contract(contract)
        weeks = contract_weeks(contract.start_date, contract.end_date)
        entries, conflicts, totals = plan_weeks(
            contract, weeks, self._occupied(contract.student_id)
        )
        warning = drift_warning(contract, totals, self.drift_tolerance)
        return CalendarGeneration(
            contract_id=contract.contract_id,
            entries=tuple(entries),
            conflicts=tuple(conflicts),
            warnings=(warning,) if warning else (),
            center_share=totals.center_share,
        )

    def _generate(self, contract: AlternanceContract) -> CalendarGeneration:
        generation = self.generate_calendar(contract)
        self._publish(contract.student_id, contract.contract_id, (), generation.entries)
        self._report(contract, generation)
        return generation

    def _report(self, contract: AlternanceContract, generation: CalendarGeneration) -> None:
        _LOGGER.info(
            "Calendar for contract %s: %s weeks planned, %s conflicts",
            contract.contract_id,
            len(generation.entries),
            len(generation.conflicts),
        )
        for conflict in generation.conflicts:
            _LOGGER.warning("Scheduling conflict: %s", conflict.message)
        for warning in generation.warnings:
            _LOGGER.warning("Schedule drift: %s", warning.message)

    def amend_contract(
        self, contract_id: str, amendment: ContractAmendment, *, as_of: datetime
    ) -> CalendarGeneration:
        """Apply ``amendment`` and re-plan weeks starting after ``as_of``.

        Confirmed and already started weeks are kept as they are and seed the
        cumulative totals, so the rhythm continues where it stood.
        """

        if not amendment.actor or not amendment.actor.strip():
            raise InvalidContractError("An amendment requires an actor", contract_id=contract_id)
        if not amendment.reason or not amendment.reason.strip():
            raise InvalidContractError("An amendment requires a reason", contract_id=contract_id)

        as_of = as_utc(as_of)
        today = as_of.date()
        with self._lock_for(contract_id):
            previous = self.get_contract(contract_id)
            if previous.status not in (ContractStatus.VALIDATED, ContractStatus.ACTIVE):
                raise InvalidTransitionError(
                    f"Contract {contract_id} cannot be amended while {previous.status.value}",
                    contract_id=contract_id,
                    current=previous.status.value,
                )
            changes = {
                name: getattr(amendment, name)
                for name in (
                    "end_date",
                    "center_percentage",
                    "company_percentage",
                    "weekly_center_hours",
                    "weekly_company_hours",
                    "rhythm",
                )
                if getattr(amendment, name) is not None
            }
            amended = replace(previous, **changes)
            validate_contract(amended)

            occupied = self._occupied(amended.student_id)
            own = sorted(
                (e for e in occupied.values() if e.contract_id == contract_id),
                key=lambda e: e.key,
            )
            kept = [e for e in own if e.is_confirmed or e.week_start <= today]
            kept_keys = {e.key for e in kept}
            totals = _Totals()
            for entry in kept:
                totals.add(entry)

            future = [
                key
                for key in contract_weeks(amended.start_date, amended.end_date)
                if key not in kept_keys and date.fromisocalendar(key[0], key[1], 1) > today
            ]
            others = {k: e for k, e in occupied.items() if e.contract_id != contract_id}
            entries, conflicts, totals = plan_weeks(amended, future, others, totals)
            warning = drift_warning(amended, totals, self.drift_tolerance)

            self._publish(amended.student_id, contract_id, kept, entries)
            self._contracts[contract_id] = amended
            self._amendments.setdefault(contract_id, []).append(
                AmendmentRecord(
                    contract_id=contract_id,
                    amendment=amendment,
                    previous=previous,
                    amended_at=as_of,
                    regenerated_weeks=tuple(e.key for e in entries),
                )
            )
        generation = CalendarGeneration(
            contract_id=contract_id,
            entries=tuple(entries),
            conflicts=tuple(conflicts),
            warnings=(warning,) if warning else (),
            center_share=totals.center_share,
        )
        _LOGGER.info(
            "Contract %s amended by %s (%s); %s weeks kept, %s re-planned",
            contract_id,
            amendment.actor,
            amendment.reason,
            len(kept),
            len(entries),
        )
        self._report(amended, generation)
        return generation

    def amendments(self, contract_id: str) -> List[AmendmentRecord]:
        return list(self._amendments.get(contract_id, ()))

    def confirm_week(
        self, student_id: str, contract_id: str, year: int, week: int, actor: str
    ) -> AlternanceCalendarEntry:
        with self._lock_for(contract_id):
            entry = self._occupied(student_id).get((year, week))
            if entry is None or entry.contract_id != contract_id:
                raise UnknownEntityError(
                    f"No week {year}-W{week:02d} planned for contract {contract_id}",
                    student_id=student_id,
                    contract_id=contract_id,
                    year=year,
                    week=week,
                )
            if entry.is_confirmed:
                return entry
            confirmed = replace(entry, is_confirmed=True, confirmed_by=actor)
            with self._calendar_lock:
                updated = dict(self._calendars[student_id])
                updated[confirmed.key] = confirmed
                self._calendars[student_id] = MappingProxyType(updated)
        _LOGGER.info("Week %s-W%02d of contract %s confirmed by %s", year, week, contract_id, actor)
        return confirmed

    def get_calendar(
        self,
        student_id: str,
        contract_id: Optional[str] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> List[AlternanceCalendarEntry]:
        snapshot = self._occupied(student_id)
        entries = [
            e
            for e in snapshot.values()
            if (contract_id is None or e.contract_id == contract_id)
            and (start is None or e.week_end >= start)
            and (end is None or e.week_start <= end)
        ]
        return sorted(entries, key=lambda e: e.key)

    def load_contracts(
        self, contracts: Iterable[AlternanceContract], amendments: Iterable[AmendmentRecord] = ()
    ) -> None:
        """Seed contracts as stored, keeping their status and amendment history (startup)."""

        with self._registry_lock:
            for contract in contracts:
                self._contracts[contract.contract_id] = contract
            for record in amendments:
                self._amendments.setdefault(record.contract_id, []).append(record)

    def load_entries(self, entries: Iterable[AlternanceCalendarEntry]) -> None:
        """Seed calendars from persisted entries (startup)."""

        with self._calendar_lock:
            grouped: Dict[str, Dict[WeekKey, AlternanceCalendarEntry]] = {}
            for entry in entries:
                grouped.setdefault(entry.student_id, dict(self._occupied(entry.student_id)))
                grouped[entry.student_id][entry.key] = entry
            for student_id, weeks in grouped.items():
                self._calendars[student_id] = MappingProxyType(weeks)
