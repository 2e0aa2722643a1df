"""Background execution: per-student ingestion lanes and debounced recomputes."""

from __future__ import annotations

import logging
import queue
import threading
import zlib
from concurrent.futures import Future
from typing import Any, Callable, Dict, List, Optional, Tuple

_LOGGER = logging.getLogger(__name__)

_STOP = object()

StudentFormation = Tuple[str, str]


class IngestionPool:
    """Fixed set of lanes, each a queue drained by one thread.

    A student always maps to the same lane, so that student's items are
    handled in arrival order while different students run in parallel.
    """

    def __init__(self, handler: Callable[[Any], Any], workers: int = 4, name: str = "ingest") -> None:
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self._handler = handler
        self._queues: List[queue.Queue] = [queue.Queue() for _ in range(workers)]
        self._threads: List[threading.Thread] = []
        self._stopped = False
        self._lock = threading.Lock()
        for index, lane in enumerate(self._queues):
            thread = threading.Thread(
                target=self._run, args=(lane,), name=f"{name}-{index}", daemon=True
            )
            thread.start()
            self._threads.append(thread)
        _LOGGER.debug("Started %s ingestion lanes", workers)

    @property
    def workers(self) -> int:
        return len(self._queues)

    def lane_for(self, student_id: str) -> int:
        return zlib.crc32(student_id.encode("utf-8")) % len(self._queues)

    def submit(self, student_id: str, item: Any) -> Future:
        future: Future = Future()
        with self._lock:
            if self._stopped:
                raise RuntimeError("Ingestion pool is stopped")
            self._queues[self.lane_for(student_id)].put((item, future))
        return future

    def _run(self, lane: queue.Queue) -> None:
        while True:
            job = lane.get()
            try:
                if job is _STOP:
                    return
                item, future = job
                if not future.set_running_or_notify_cancel():
                    continue
                try:
                    future.set_result(self._handler(item))
                except Exception as exc:  # the lane outlives a failing item
                    _LOGGER.exception("Ingestion handler failed")
                    future.set_exception(exc)
            finally:
                lane.task_done()

    def join(self) -> None:
        """Block until every submitted item has been handled."""

        for lane in self._queues:
            lane.join()

    def stop(self, drain: bool = True, timeout: Optional[float] = None) -> None:
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
        if not drain:
            for lane in self._queues:
                while True:
                    try:
                        job = lane.get_nowait()
                    except queue.Empty:
                        break
                    if job is not _STOP:
                        job[1].cancel()
                    lane.task_done()
        for lane in self._queues:
            lane.put(_STOP)
        for thread in self._threads:
            thread.join(timeout)
        _LOGGER.debug("Ingestion pool stopped (drain=%s)", drain)


class RecomputeScheduler:
    """Coalesces bursts of triggers for the same (student, formation).

    Each trigger restarts the timer. A computation started for generation N
    is discarded when a newer trigger arrived while it was running.
    """

    def __init__(
        self,
        compute: Callable[[str, str], Any],
        delay: float = 60.0,
        on_result: Optional[Callable[[str, str, Any], None]] = None,
    ) -> None:
        self._compute = compute
        self._on_result = on_result
        self.delay = delay
        self._timers: Dict[StudentFormation, threading.Timer] = {}
        self._generations: Dict[StudentFormation, int] = {}
        self._lock = threading.Lock()

    def trigger(self, student_id: str, formation_id: str) -> int:
        key = (student_id, formation_id)
        with self._lock:
            generation = self._generations.get(key, 0) + 1
            self._generations[key] = generation
            previous = self._timers.pop(key, None)
            if previous is not None:
                previous.cancel()
            timer = threading.Timer(self.delay, self._fire, args=(key, generation))
            timer.daemon = True
            self._timers[key] = timer
            timer.start()
        return generation

    def pending(self) -> List[StudentFormation]:
        with self._lock:
            return sorted(self._timers)

    def _fire(self, key: StudentFormation, generation: int) -> None:
        with self._lock:
            if self._generations.get(key) != generation:
                return
            self._timers.pop(key, None)
        try:
            result = self._compute(*key)
        except Exception:
            _LOGGER.exception("Recompute failed for %s/%s", *key)
            return
        with self._lock:
            superseded = self._generations.get(key) != generation
        if superseded:
            _LOGGER.debug("Discarding superseded recompute for %s/%s", *key)
            return
        if self._on_result is not None:
            self._on_result(key[0], key[1], result)

    def flush(self) -> int:
        """Run every pending computation now, in the caller's thread."""

        with self._lock:
            pending = [(key, self._generations[key]) for key in self._timers]
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
        for key, generation in pending:
            self._fire(key, generation)
        return len(pending)

    def cancel_all(self) -> None:
        with self._lock:
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
