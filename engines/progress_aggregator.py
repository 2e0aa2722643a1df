"""Roll learner completion events up the content tree.

Percentages are a pure function of the event log and the current tree: a
leaf's credit is the best credit any of its events earned, so replaying a
log, reordering it or adding an already applied event yields the same
state, and a new passing event can only raise the percentages above it.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

from engines.caching import ContentTreeRegistry
from engines.content_tree import ContentTree
from errors import BatchReport, OrphanEventError
from models import CompletionEvent, CompletionKind, ContentNode, NodeKind

_LOGGER = logging.getLogger(__name__)

_LEAF_KIND_FOR_EVENT = {
    CompletionKind.EXERCISE_SUBMITTED: NodeKind.EXERCISE,
    CompletionKind.QCM_ATTEMPTED: NodeKind.QCM,
    CompletionKind.CHAPTER_VIEWED: NodeKind.CHAPTER,
}

StudentFormation = Tuple[str, str]


def _clamp_percentage(value: float) -> float:
    return round(min(100.0, max(0.0, value)), 2)


def leaf_credit(node: ContentNode, event: CompletionEvent) -> float:
    """Return the credit (0..1) an event earns on its leaf."""

    if node.kind is NodeKind.QCM and node.passing_score is not None:
        passed = event.score is not None and event.score >= node.passing_score
    else:
        passed = bool(event.passed)
    if passed:
        return 1.0
    if event.score is None or node.max_score <= 0:
        return 0.0
    return min(1.0, max(0.0, float(event.score) / float(node.max_score)))


@dataclass(frozen=True)
class ProgressSnapshot:
    """Completion view of one student in one formation."""

    student_id: str
    formation_id: str
    completion_percentage: float
    module_progress: Mapping[str, float]
    chapter_progress: Mapping[str, float]
    last_activity: Optional[datetime]
    activity_count: int
    viewed_chapters: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ProgressDelta:
    """What a single :meth:`ProgressAggregator.apply` call changed."""

    student_id: str
    formation_id: str
    event_id: str
    leaf_id: str
    previous_completion: float
    completion_percentage: float
    changed_nodes: Mapping[str, Tuple[float, float]] = field(default_factory=dict)
    duplicate: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.changed_nodes) or self.previous_completion != self.completion_percentage


@dataclass
class _Ledger:
    events: Dict[str, CompletionEvent] = field(default_factory=dict)
    credits: Dict[str, float] = field(default_factory=dict)
    viewed: Set[str] = field(default_factory=set)
    orphaned: Dict[str, CompletionEvent] = field(default_factory=dict)
    last_activity: Optional[datetime] = None


def _node_percentage(tree: ContentTree, node_id: str, credits: Mapping[str, float]) -> float:
    weights = tree.leaf_weights()
    leaves = tree.leaves_under(node_id)
    total = sum(weights[leaf] for leaf in leaves)
    if total <= 0:
        return 0.0
    earned = sum(weights[leaf] * credits.get(leaf, 0.0) for leaf in leaves)
    return _clamp_percentage(100.0 * earned / total)


def _snapshot(
    tree: ContentTree, student_id: str, credits: Mapping[str, float], ledger: _Ledger
) -> ProgressSnapshot:
    modules = {m: _node_percentage(tree, m, credits) for m in tree.modules()}
    chapters = {c: _node_percentage(tree, c, credits) for c in tree.chapters()}
    return ProgressSnapshot(
        student_id=student_id,
        formation_id=tree.formation_id,
        completion_percentage=_node_percentage(tree, tree.formation_id, credits),
        module_progress=MappingProxyType(modules),
        chapter_progress=MappingProxyType(chapters),
        last_activity=ledger.last_activity,
        activity_count=len(ledger.events),
        viewed_chapters=tuple(sorted(ledger.viewed)),
    )


def _credit_for(tree: ContentTree, event: CompletionEvent) -> Optional[float]:
    """Return the leaf credit, ``None`` for chapter views; raise for orphans."""

    node = tree.get(event.leaf_id)
    expected = _LEAF_KIND_FOR_EVENT[event.kind]
    if node is None:
        raise OrphanEventError(
            f"Event {event.event_id} references unknown node {event.leaf_id}",
            event_id=event.event_id,
            student_id=event.student_id,
            leaf_id=event.leaf_id,
            formation_id=tree.formation_id,
        )
    if node.kind is not expected:
        raise OrphanEventError(
            f"Event {event.event_id} of kind {event.kind.value} targets "
            f"{node.kind.value} {node.id}",
            event_id=event.event_id,
            student_id=event.student_id,
            leaf_id=event.leaf_id,
            formation_id=tree.formation_id,
        )
    if event.kind is CompletionKind.CHAPTER_VIEWED:
        return None
    return leaf_credit(node, event)


def aggregate(tree: ContentTree, student_id: str, events: Iterable[CompletionEvent]) -> ProgressSnapshot:
    """Pure recomputation of a student's progress from an event log.

    Orphan events are ignored; events are deduplicated by ``event_id``.
    """

    ledger = _Ledger()
    for event in events:
        if event.student_id != student_id or event.event_id in ledger.events:
            continue
        try:
            credit = _credit_for(tree, event)
        except OrphanEventError:
            continue
        _fold(ledger, event, credit)
    return _snapshot(tree, student_id, ledger.credits, ledger)


def _fold(ledger: _Ledger, event: CompletionEvent, credit: Optional[float]) -> None:
    ledger.events[event.event_id] = event
    if credit is None:
        ledger.viewed.add(event.leaf_id)
    elif credit > ledger.credits.get(event.leaf_id, 0.0) or event.leaf_id not in ledger.credits:
        ledger.credits[event.leaf_id] = credit
    if ledger.last_activity is None or event.timestamp > ledger.last_activity:
        ledger.last_activity = event.timestamp


class ProgressAggregator:
    """Stateful front-end over :func:`aggregate` for event-at-a-time ingestion.

    The aggregator keeps the event log per (student, formation) so that any
    state can be rebuilt after a content change or a data correction.
    """

    def __init__(self, registry: ContentTreeRegistry) -> None:
        self.registry = registry
        self._ledgers: Dict[StudentFormation, _Ledger] = {}
        self._lock = threading.Lock()

    # ----- helpers -------------------------------------------------------
    def _tree_for(self, event: CompletionEvent) -> ContentTree:
        formation_id = event.formation_id or self.registry.find_formation_for(event.leaf_id)
        tree = self.registry.get(formation_id) if formation_id else None
        if tree is None:
            raise OrphanEventError(
                f"No formation contains node {event.leaf_id}",
                event_id=event.event_id,
                student_id=event.student_id,
                leaf_id=event.leaf_id,
                formation_id=formation_id,
            )
        return tree

    def _ledger(self, key: StudentFormation) -> _Ledger:
        with self._lock:
            ledger = self._ledgers.get(key)
            if ledger is None:
                ledger = self._ledgers[key] = _Ledger()
            return ledger

    # ----- public API ----------------------------------------------------
    def apply(self, event: CompletionEvent) -> ProgressDelta:
        """Fold one event into its student's progress.

        Raises :class:`OrphanEventError` when the event's node is unknown.
        """

        tree = self._tree_for(event)
        key = (event.student_id, tree.formation_id)
        ledger = self._ledger(key)

        if event.event_id in ledger.events or event.event_id in ledger.orphaned:
            current = _node_percentage(tree, tree.formation_id, ledger.credits)
            _LOGGER.debug("Ignoring already applied event %s", event.event_id)
            return ProgressDelta(
                student_id=event.student_id,
                formation_id=tree.formation_id,
                event_id=event.event_id,
                leaf_id=event.leaf_id,
                previous_completion=current,
                completion_percentage=current,
                duplicate=True,
            )

        credit = _credit_for(tree, event)
        chain = [event.leaf_id] + tree.ancestors(event.leaf_id)
        before = {node_id: _node_percentage(tree, node_id, ledger.credits) for node_id in chain}
        _fold(ledger, event, credit)
        after = {node_id: _node_percentage(tree, node_id, ledger.credits) for node_id in chain}

        changed = {
            node_id: (before[node_id], after[node_id])
            for node_id in chain
            if before[node_id] != after[node_id]
        }
        delta = ProgressDelta(
            student_id=event.student_id,
            formation_id=tree.formation_id,
            event_id=event.event_id,
            leaf_id=event.leaf_id,
            previous_completion=before[tree.formation_id],
            completion_percentage=after[tree.formation_id],
            changed_nodes=MappingProxyType(changed),
        )
        _LOGGER.debug(
            "Applied %s for %s on %s: %.2f -> %.2f",
            event.kind.value,
            event.student_id,
            event.leaf_id,
            delta.previous_completion,
            delta.completion_percentage,
        )
        return delta

    def apply_many(self, events: Iterable[CompletionEvent]) -> BatchReport:
        """Apply events in order; orphan events are logged, skipped and reported."""

        report = BatchReport()
        for event in events:
            try:
                self.apply(event)
            except OrphanEventError as exc:
                _LOGGER.warning("Skipping orphan completion event: %s", exc.message)
                report.record_failure(exc)
            else:
                report.record_success()
        return report

    def snapshot(self, student_id: str, formation_id: str) -> ProgressSnapshot:
        tree = self.registry.get(formation_id)
        ledger = self._ledgers.get((student_id, formation_id)) or _Ledger()
        if tree is None:
            return ProgressSnapshot(
                student_id=student_id,
                formation_id=formation_id,
                completion_percentage=0.0,
                module_progress=MappingProxyType({}),
                chapter_progress=MappingProxyType({}),
                last_activity=ledger.last_activity,
                activity_count=len(ledger.events),
            )
        return _snapshot(tree, student_id, ledger.credits, ledger)

    def events(self, student_id: str, formation_id: str) -> List[CompletionEvent]:
        ledger = self._ledgers.get((student_id, formation_id))
        if ledger is None:
            return []
        return sorted(ledger.events.values(), key=lambda e: (e.timestamp, e.event_id))

    def rebuild(self, student_id: str, formation_id: str) -> BatchReport:
        """Replay a student's stored log against the formation's current tree."""

        tree = self.registry.get(formation_id)
        report = BatchReport()
        key = (student_id, formation_id)
        old = self._ledgers.get(key)
        if tree is None or old is None:
            return report

        fresh = _Ledger()
        log = list(old.events.values()) + list(old.orphaned.values())
        for event in sorted(log, key=lambda e: (e.timestamp, e.event_id)):
            try:
                credit = _credit_for(tree, event)
            except OrphanEventError as exc:
                # Kept aside: the log is an audit trail and the node may come back.
                fresh.orphaned[event.event_id] = event
                report.record_failure(exc)
                continue
            _fold(fresh, event, credit)
            report.record_success()
        with self._lock:
            self._ledgers[key] = fresh
        _LOGGER.info(
            "Rebuilt progress of %s in %s from %s events (%s orphaned)",
            student_id,
            formation_id,
            report.processed,
            report.failed,
        )
        return report

    def students(self, formation_id: Optional[str] = None) -> List[StudentFormation]:
        keys = list(self._ledgers)
        if formation_id is not None:
            keys = [key for key in keys if key[1] == formation_id]
        return sorted(keys)
