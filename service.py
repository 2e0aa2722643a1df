"""Progress tracking facade used by the HTTP surface and batch jobs.

Write paths return :class:`Result`; domain errors raised by the engines are
logged with the caller's request context and handed back as values.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from dataclasses import asdict, dataclass
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from engines.alternance_conflicts import ConflictReport, build_conflict_report
from engines.alternance_scheduler import (
    AlternanceScheduler,
    AmendmentRecord,
    CalendarGeneration,
    ContractAmendment,
)
from engines.attendance import AttendanceTracker
from engines.caching import ContentTreeRegistry
from engines.content_tree import ContentTree
from engines.coordination import CoordinationLedger, fold_event
from engines.progress_aggregator import ProgressAggregator, ProgressDelta
from engines.risk_scorer import (
    AlternanceRiskInputs,
    AlternanceRiskOutcome,
    RiskOutcome,
    RiskScorer,
)
from errors import BatchReport, DecodeError, DomainError, OrphanEventError, Result, UnknownEntityError
from event_store import SQLiteEventStore
from models import (
    AlternanceCalendarEntry,
    AlternanceContract,
    AttendanceCorrection,
    AttendanceRecord,
    CompletionEvent,
    ContentNode,
    CoordinationEvent,
    ProgressState,
    RequestContext,
    RiskSignal,
    as_utc,
)
from retry_utils import DeadLetterQueue, PersistenceGateway
from settings import TrackingSettings, default_settings
from workers import IngestionPool, RecomputeScheduler

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")
StudentFormation = Tuple[str, str]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Enrollment:
    student_id: str
    formation_id: str
    started_at: datetime
    expected_end: Optional[datetime] = None


@dataclass(frozen=True)
class StudentRiskAlert:
    student_id: str
    formation_id: str
    risk_score: float
    risk_level: str
    difficulty_signals: Tuple[str, ...]
    recommendations: Tuple[str, ...]
    intervention_priority: int
    assessed_at: Optional[datetime]


class ProgressTrackingService:
    """Owns the engines and keeps the progress read model consistent."""

    def __init__(
        self,
        settings: Optional[TrackingSettings] = None,
        registry: Optional[ContentTreeRegistry] = None,
        store: Optional[SQLiteEventStore] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        self.settings = settings or default_settings()
        self.registry = registry or ContentTreeRegistry()
        self.store = store
        self.aggregator = ProgressAggregator(self.registry)
        self.attendance = AttendanceTracker(late_weight=self.settings.attendance.late_weight)
        self.scorer = RiskScorer(
            risk=self.settings.risk,
            engagement=self.settings.engagement,
            coordination=self.settings.coordination,
        )
        self.coordination = CoordinationLedger()
        self.scheduler = AlternanceScheduler(drift_tolerance=self.settings.scheduler.drift_tolerance)
        self.dead_letters = DeadLetterQueue(sink=store.add_dead_letter if store else None)
        gateway_kwargs: Dict[str, Any] = {}
        if sleep is not None:
            gateway_kwargs["sleep"] = sleep
        self.gateway = PersistenceGateway(
            self.dead_letters,
            attempts=self.settings.workers.retry_attempts,
            initial_delay=self.settings.workers.retry_initial_delay,
            max_delay=self.settings.workers.retry_max_delay,
            **gateway_kwargs,
        )

        self._enrollments: Dict[StudentFormation, Enrollment] = {}
        self._risk: Dict[StudentFormation, RiskOutcome] = {}
        self._alternance: Dict[StudentFormation, AlternanceRiskOutcome] = {}
        self._pending_replay: List[CompletionEvent] = []
        self._lock = threading.Lock()
        self._pool: Optional[IngestionPool] = None
        self._recompute: Optional[RecomputeScheduler] = None

        if store is not None:
            self._load_from_store(store)

    # ----- plumbing ------------------------------------------------------
    def _load_from_store(self, store: SQLiteEventStore) -> None:
        for record in store.attendance_records():
            self.attendance.record(record)
        contracts = store.contracts()
        self.scheduler.load_contracts(contracts, store.amendments())
        self.scheduler.load_entries(store.calendar_entries())
        coordination = store.coordination_events()
        for event in coordination:
            self.coordination.record(event)
        # Completion events need their content tree; they are replayed on content_changed.
        self._pending_replay = store.completion_events()
        _LOGGER.info(
            "Loaded %s contracts, %s coordination events and %s completion events for replay from %s",
            len(contracts),
            len(coordination),
            len(self._pending_replay),
            store.database,
        )

    def _hold_for_replay(self, event: CompletionEvent) -> None:
        with self._lock:
            if all(e.event_id != event.event_id for e in self._pending_replay):
                self._pending_replay.append(event)

    def _fail(self, operation: str, error: DomainError, ctx: RequestContext) -> Result[Any]:
        log = _LOGGER.error if error.fatal else _LOGGER.warning
        log("%s rejected: %s", operation, error.message, extra=ctx.log_extra())
        return Result.failure(error)

    def _persist(self, operation: str, func: Callable[..., T], *args: Any, payload: Optional[Dict[str, Any]] = None) -> Result[T]:
        if self.store is None:
            return Result.success(None)
        return self.gateway.write(operation, func, *args, payload=payload)

    def _formations_of(self, student_id: str) -> List[str]:
        formations = {f for s, f in self._enrollments if s == student_id}
        formations.update(f for s, f in self.aggregator.students() if s == student_id)
        return sorted(formations)

    def _schedule_recompute(self, student_id: str, formation_id: Optional[str] = None) -> None:
        if self._recompute is None:
            return
        targets = [formation_id] if formation_id else self._formations_of(student_id)
        for target in targets:
            self._recompute.trigger(student_id, target)

    # ----- content -------------------------------------------------------
    def content_changed(
        self, formation_id: str, nodes: Iterable[ContentNode], ctx: Optional[RequestContext] = None
    ) -> Result[ContentTree]:
        ctx = ctx or RequestContext()
        try:
            tree = self.registry.on_content_changed(formation_id, list(nodes))
        except DomainError as exc:
            return self._fail("content_changed", exc, ctx)

        for student_id, _ in self.aggregator.students(formation_id):
            self.aggregator.rebuild(student_id, formation_id)
            self._schedule_recompute(student_id, formation_id)

        with self._lock:
            replay = [
                e for e in self._pending_replay
                if (e.formation_id or formation_id) == formation_id and e.leaf_id in tree
            ]
            replayed = {e.event_id for e in replay}
            self._pending_replay = [e for e in self._pending_replay if e.event_id not in replayed]
        if replay:
            report = self.aggregator.apply_many(replay)
            rejected = {error.details.get("event_id") for error in report.failures}
            for event in replay:
                if event.event_id in rejected:
                    self._hold_for_replay(event)
                else:
                    self._schedule_recompute(event.student_id, formation_id)
            _LOGGER.info(
                "Replayed %s stored events into %s (%s orphaned)",
                report.processed,
                formation_id,
                report.failed,
                extra=ctx.log_extra(),
            )
        _LOGGER.info(
            "Formation %s now at version %s", formation_id, tree.version, extra=ctx.log_extra()
        )
        return Result.success(tree)

    def enroll(
        self,
        student_id: str,
        formation_id: str,
        started_at: datetime,
        expected_end: Optional[datetime] = None,
        ctx: Optional[RequestContext] = None,
    ) -> Result[Enrollment]:
        ctx = ctx or RequestContext()
        if self.registry.get(formation_id) is None:
            return self._fail(
                "enroll",
                UnknownEntityError(f"Unknown formation: {formation_id}", formation_id=formation_id),
                ctx,
            )
        enrollment = Enrollment(student_id, formation_id, as_utc(started_at), as_utc(expected_end))
        self._enrollments[(student_id, formation_id)] = enrollment
        _LOGGER.info("Enrolled %s in %s", student_id, formation_id, extra=ctx.log_extra())
        return Result.success(enrollment)

    # ----- learner activity ----------------------------------------------
    def record_completion(
        self, event: CompletionEvent, ctx: Optional[RequestContext] = None
    ) -> Result[ProgressDelta]:
        ctx = ctx or RequestContext()
        # Stored before it is applied; the insert is idempotent, so a retry re-confirms it.
        # A failed write is dead-lettered with the full event so it can be replayed.
        stored = self._persist(
            "append_completion",
            self.store.append_completion if self.store else None,
            event,
            payload=asdict(event),
        )
        if not stored.ok:
            return Result.failure(stored.error)
        try:
            delta = self.aggregator.apply(event)
        except OrphanEventError as exc:
            # Kept in the log and replayed once a content change brings its node.
            self._hold_for_replay(event)
            return self._fail("record_completion", exc, ctx)
        if not delta.duplicate:
            self._schedule_recompute(event.student_id, delta.formation_id)
        _LOGGER.debug(
            "Completion %s for %s: %.2f%%",
            event.event_id,
            event.student_id,
            delta.completion_percentage,
            extra=ctx.log_extra(),
        )
        return Result.success(delta)

    def record_attendance(
        self, record: AttendanceRecord, ctx: Optional[RequestContext] = None
    ) -> Result[float]:
        ctx = ctx or RequestContext()
        # The store enforces uniqueness too; the tracker check covers store-less use.
        stored = self._persist(
            "insert_attendance",
            self.store.insert_attendance if self.store else None,
            record,
            payload={"student_id": record.student_id, "session_id": record.session_id, "status": record.status.value},
        )
        if not stored.ok:
            return self._fail("record_attendance", stored.error, ctx)
        try:
            rate = self.attendance.record(record)
        except DomainError as exc:
            return self._fail("record_attendance", exc, ctx)
        self._schedule_recompute(record.student_id)
        _LOGGER.info(
            "Attendance %s for %s in %s",
            record.status.value,
            record.student_id,
            record.session_id,
            extra=ctx.log_extra(),
        )
        return Result.success(rate)

    def correct_attendance(
        self, correction: AttendanceCorrection, ctx: Optional[RequestContext] = None
    ) -> Result[float]:
        ctx = ctx or RequestContext()
        try:
            rate = self.attendance.correct(correction)
        except DomainError as exc:
            return self._fail("correct_attendance", exc, ctx)
        stored = self._persist(
            "insert_correction",
            self.store.insert_correction if self.store else None,
            correction,
            payload={"student_id": correction.student_id, "session_id": correction.session_id, "reason": correction.reason},
        )
        if not stored.ok:
            return self._fail("correct_attendance", stored.error, ctx)
        self._schedule_recompute(correction.student_id)
        return Result.success(rate)

    def record_coordination_event(
        self, event: CoordinationEvent, ctx: Optional[RequestContext] = None
    ) -> Result[Optional[RiskSignal]]:
        ctx = ctx or RequestContext()
        try:
            fold_event(event)
        except (ValueError, TypeError) as exc:
            return self._fail(
                "record_coordination_event",
                DecodeError(str(exc), event_id=getattr(event, "event_id", None)),
                ctx,
            )
        stored = self._persist(
            "append_coordination_event",
            self.store.append_coordination_event if self.store else None,
            event,
            payload=asdict(event),
        )
        if not stored.ok:
            return Result.failure(stored.error)
        signal = self.coordination.record(event)
        self._schedule_recompute(event.student_id)
        return Result.success(signal)

    # ----- risk ----------------------------------------------------------
    def _build_state(self, student_id: str, formation_id: str) -> ProgressState:
        key = (student_id, formation_id)
        snapshot = self.aggregator.snapshot(student_id, formation_id)
        summary = self.attendance.summary(student_id)
        enrollment = self._enrollments.get(key)
        outcome = self._risk.get(key)
        alternance = self._alternance.get(key)

        started_at = enrollment.started_at if enrollment else None
        if started_at is None:
            events = self.aggregator.events(student_id, formation_id)
            started_at = events[0].timestamp if events else None

        return ProgressState(
            student_id=student_id,
            formation_id=formation_id,
            completion_percentage=snapshot.completion_percentage,
            module_progress=dict(snapshot.module_progress),
            chapter_progress=dict(snapshot.chapter_progress),
            engagement_score=outcome.engagement_score if outcome else 0,
            risk_score=outcome.risk_score if outcome else 0.0,
            at_risk_of_dropout=outcome.at_risk_of_dropout if outcome else False,
            attendance_rate=summary.rate,
            last_activity=snapshot.last_activity,
            started_at=started_at,
            expected_end=enrollment.expected_end if enrollment else None,
            activity_count=snapshot.activity_count,
            missed_sessions=summary.missed_sessions,
            difficulty_signals=outcome.difficulty_signals if outcome else (),
            risk_level=outcome.risk_level if outcome else "low",
            alternance_risk_score=alternance.alternance_risk_score if alternance else None,
            alternance_status=alternance.alternance_status if alternance else None,
            last_risk_assessment=outcome.assessed_at if outcome else None,
        )

    def _known(self, student_id: str, formation_id: str) -> Optional[UnknownEntityError]:
        if self.registry.get(formation_id) is None:
            return UnknownEntityError(f"Unknown formation: {formation_id}", formation_id=formation_id)
        if (student_id, formation_id) not in self._enrollments and not self.aggregator.events(
            student_id, formation_id
        ):
            return UnknownEntityError(
                f"Student {student_id} has no progress in {formation_id}",
                student_id=student_id,
                formation_id=formation_id,
            )
        return None

    def recompute_risk(
        self,
        student_id: str,
        formation_id: str,
        as_of: Optional[datetime] = None,
        ctx: Optional[RequestContext] = None,
    ) -> Result[RiskOutcome]:
        ctx = ctx or RequestContext()
        missing = self._known(student_id, formation_id)
        if missing is not None:
            return self._fail("recompute_risk", missing, ctx)
        as_of = as_utc(as_of) or _utcnow()
        state = self._build_state(student_id, formation_id)
        outcome = self.scorer.compute(
            state,
            self.attendance.summary(student_id),
            self.coordination.signals_for(student_id, as_of),
            as_of=as_of,
        )
        self._risk[(student_id, formation_id)] = outcome
        if outcome.at_risk_of_dropout:
            _LOGGER.warning(
                "Student %s at risk of dropout in %s (score %.2f, priority %s)",
                student_id,
                formation_id,
                outcome.risk_score,
                outcome.intervention_priority,
                extra=ctx.log_extra(),
            )
        stored = self._persist(
            "save_progress_state",
            self.store.save_progress_state if self.store else None,
            self._build_state(student_id, formation_id),
            payload={"student_id": student_id, "formation_id": formation_id},
        )
        if not stored.ok:
            return Result.failure(stored.error)
        return Result.success(outcome)

    def run_nightly_batch(self, as_of: Optional[datetime] = None) -> BatchReport:
        """Recompute every known student; one failure never stops the run."""

        as_of = as_utc(as_of) or _utcnow()
        ctx = RequestContext(request_id=f"nightly-{as_of.date().isoformat()}", actor="batch")
        pairs = set(self._enrollments) | set(self.aggregator.students())
        report = BatchReport()
        for student_id, formation_id in sorted(pairs):
            result = self.recompute_risk(student_id, formation_id, as_of, ctx)
            if result.ok:
                report.record_success()
            else:
                report.record_failure(result.error)
        _LOGGER.info(
            "Nightly batch: %s processed, %s failed",
            report.processed,
            report.failed,
            extra=ctx.log_extra(),
        )
        return report

    def get_progress(self, student_id: str, formation_id: str) -> ProgressState:
        missing = self._known(student_id, formation_id)
        if missing is not None:
            raise missing
        return self._build_state(student_id, formation_id)

    def get_risk_alerts(self, threshold_override: Optional[float] = None) -> List[StudentRiskAlert]:
        threshold = self.settings.risk.threshold if threshold_override is None else threshold_override
        alerts = [
            StudentRiskAlert(
                student_id=o.student_id,
                formation_id=o.formation_id,
                risk_score=o.risk_score,
                risk_level=o.risk_level,
                difficulty_signals=o.difficulty_signals,
                recommendations=o.recommendations,
                intervention_priority=o.intervention_priority,
                assessed_at=o.assessed_at,
            )
            for o in list(self._risk.values())
            if o.risk_score >= threshold
        ]
        return sorted(alerts, key=lambda a: (-a.risk_score, a.student_id, a.formation_id))

    def alternance_risk(
        self,
        student_id: str,
        formation_id: str,
        inputs: AlternanceRiskInputs,
        as_of: Optional[datetime] = None,
        ctx: Optional[RequestContext] = None,
    ) -> Result[AlternanceRiskOutcome]:
        base = self.recompute_risk(student_id, formation_id, as_of, ctx)
        if not base.ok:
            return Result.failure(base.error)
        outcome = self.scorer.compute_alternance_risk(base.value, inputs)
        self._alternance[(student_id, formation_id)] = outcome
        return Result.success(outcome)

    # ----- alternance ----------------------------------------------------
    def _store_contract(
        self,
        operation: str,
        contract_id: str,
        ctx: RequestContext,
        calendar: bool = False,
        amendment: Optional[AmendmentRecord] = None,
    ) -> Result[None]:
        """Write the contract as it now stands, plus its calendar or amendment when asked."""

        try:
            contract = self.scheduler.get_contract(contract_id)
        except DomainError as exc:
            return self._fail(operation, exc, ctx)
        stored = self._persist(
            "save_contract",
            self.store.save_contract if self.store else None,
            contract,
            payload={"contract_id": contract_id, "status": contract.status.value},
        )
        if stored.ok and amendment is not None:
            stored = self._persist(
                "add_amendment",
                self.store.add_amendment if self.store else None,
                amendment,
                payload={"contract_id": contract_id, "actor": amendment.amendment.actor},
            )
        if stored.ok and calendar:
            entries = self.scheduler.get_calendar(contract.student_id, contract_id)
            stored = self._persist(
                "replace_calendar",
                self.store.replace_calendar if self.store else None,
                contract_id,
                entries,
                payload={"contract_id": contract_id, "weeks": [list(e.key) for e in entries]},
            )
        return stored

    def _contract_call(
        self,
        operation: str,
        func: Callable[..., T],
        *args: Any,
        ctx: Optional[RequestContext] = None,
        contract_id: Optional[str] = None,
        calendar: bool = False,
        **kwargs: Any,
    ) -> Result[T]:
        ctx = ctx or RequestContext()
        try:
            value = func(*args, **kwargs)
        except DomainError as exc:
            return self._fail(operation, exc, ctx)
        _LOGGER.info("%s %s", operation, args[0] if args else "", extra=ctx.log_extra())
        if contract_id is not None:
            stored = self._store_contract(operation, contract_id, ctx, calendar=calendar)
            if not stored.ok:
                return Result.failure(stored.error)
        return Result.success(value)

    def create_contract(
        self, contract: AlternanceContract, ctx: Optional[RequestContext] = None
    ) -> Result[AlternanceContract]:
        return self._contract_call(
            "create_contract", self.scheduler.create_contract, contract, ctx=ctx, contract_id=contract.contract_id
        )

    def validate_contract(
        self, contract_id: str, ctx: Optional[RequestContext] = None
    ) -> Result[CalendarGeneration]:
        return self._contract_call(
            "validate_contract",
            self.scheduler.validate_contract,
            contract_id,
            ctx=ctx,
            contract_id=contract_id,
            calendar=True,
        )

    def activate_contract(self, contract_id: str, ctx: Optional[RequestContext] = None) -> Result[AlternanceContract]:
        return self._contract_call(
            "activate_contract", self.scheduler.activate_contract, contract_id, ctx=ctx, contract_id=contract_id
        )

    def complete_contract(self, contract_id: str, ctx: Optional[RequestContext] = None) -> Result[AlternanceContract]:
        return self._contract_call(
            "complete_contract", self.scheduler.complete_contract, contract_id, ctx=ctx, contract_id=contract_id
        )

    def terminate_contract(
        self, contract_id: str, reason: str = "", ctx: Optional[RequestContext] = None
    ) -> Result[AlternanceContract]:
        return self._contract_call(
            "terminate_contract",
            self.scheduler.terminate_contract,
            contract_id,
            reason,
            ctx=ctx,
            contract_id=contract_id,
        )

    def amend_contract(
        self,
        contract_id: str,
        amendment: ContractAmendment,
        as_of: datetime,
        ctx: Optional[RequestContext] = None,
    ) -> Result[CalendarGeneration]:
        ctx = ctx or RequestContext()
        result = self._contract_call(
            "amend_contract", self.scheduler.amend_contract, contract_id, amendment, as_of=as_of, ctx=ctx
        )
        if not result.ok:
            return result
        history = self.scheduler.amendments(contract_id)
        stored = self._store_contract(
            "amend_contract", contract_id, ctx, calendar=True, amendment=history[-1] if history else None
        )
        if not stored.ok:
            return Result.failure(stored.error)
        return result

    def confirm_calendar_week(
        self,
        student_id: str,
        contract_id: str,
        year: int,
        week: int,
        actor: str,
        ctx: Optional[RequestContext] = None,
    ) -> Result[AlternanceCalendarEntry]:
        return self._contract_call(
            "confirm_calendar_week",
            self.scheduler.confirm_week,
            student_id,
            contract_id,
            year,
            week,
            actor,
            ctx=ctx,
            contract_id=contract_id,
            calendar=True,
        )

    def get_calendar(
        self,
        student_id: str,
        contract_id: Optional[str] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> List[AlternanceCalendarEntry]:
        return self.scheduler.get_calendar(student_id, contract_id, start, end)

    def calendar_conflicts(self, student_id: str, as_of: Optional[datetime] = None) -> ConflictReport:
        return build_conflict_report(
            student_id,
            self.scheduler.get_calendar(student_id),
            self.scheduler.contracts_for(student_id),
            as_utc(as_of) or _utcnow(),
        )

    # ----- background work -----------------------------------------------
    def start_background(self, workers: Optional[int] = None, debounce: Optional[float] = None) -> None:
        if self._pool is not None:
            return
        self._pool = IngestionPool(self._ingest, workers or self.settings.workers.ingestion_workers)
        self._recompute = RecomputeScheduler(
            lambda student_id, formation_id: self.recompute_risk(student_id, formation_id),
            delay=self.settings.workers.recompute_debounce_seconds if debounce is None else debounce,
            on_result=self._recompute_finished,
        )

    def _recompute_finished(self, student_id: str, formation_id: str, result: Result[RiskOutcome]) -> None:
        if result.ok:
            _LOGGER.info(
                "Debounced recompute of %s in %s: risk %.2f (%s)",
                student_id,
                formation_id,
                result.value.risk_score,
                result.value.risk_level,
            )
        else:
            _LOGGER.warning(
                "Debounced recompute of %s in %s failed: %s", student_id, formation_id, result.error.message
            )

    def _ingest(self, job: Tuple[Any, RequestContext]) -> Result[Any]:
        item, ctx = job
        if isinstance(item, CompletionEvent):
            return self.record_completion(item, ctx)
        if isinstance(item, AttendanceRecord):
            return self.record_attendance(item, ctx)
        if isinstance(item, AttendanceCorrection):
            return self.correct_attendance(item, ctx)
        return self.record_coordination_event(item, ctx)

    def submit(self, item: Any, ctx: Optional[RequestContext] = None) -> Future:
        """Queue an activity item on its student's ingestion lane."""

        if self._pool is None:
            raise RuntimeError("Background workers are not started")
        return self._pool.submit(item.student_id, (item, ctx or RequestContext()))

    def flush(self) -> int:
        if self._pool is not None:
            self._pool.join()
        return self._recompute.flush() if self._recompute is not None else 0

    def shutdown(self, drain: bool = True) -> None:
        if self._pool is not None:
            self._pool.stop(drain=drain)
            self._pool = None
        if self._recompute is not None:
            self._recompute.cancel_all()
            self._recompute = None
        if self.store is not None:
            self.store.close()
