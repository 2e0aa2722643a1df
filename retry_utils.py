"""Retry, dead-letter and persistence gateway utilities for write paths."""

import logging
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar

from errors import DomainError, PersistenceError, Result

logger = logging.getLogger(__name__)

T = TypeVar('T')


class RetryExhaustedError(Exception):
    """Raised when retry attempts are exhausted."""

    def __init__(self, message: str, attempts: int):
        super().__init__(message)
        self.attempts = attempts


def with_retry(
    max_retries: int = 3,
    initial_delay: float = 0.5,
    max_delay: float = 8.0,
    backoff_factor: float = 2.0,
    exceptions: tuple[Type[Exception], ...] = (sqlite3.OperationalError,),
    sleep: Callable[[float], None] = time.sleep,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator retrying transient failures with exponential backoff.

    Domain errors are never retried: they are answers, not failures.
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            delay = initial_delay
            last_exception: Optional[Exception] = None

            for attempt in range(max_retries):
                try:
                    return func(*args, **kwargs)
                except DomainError:
                    raise
                except exceptions as e:
                    last_exception = e
                    logger.warning(
                        "Write %s failed (attempt %s/%s): %s",
                        func.__name__,
                        attempt + 1,
                        max_retries,
                        e,
                    )
                    if attempt < max_retries - 1:
                        sleep(min(delay, max_delay))
                        delay *= backoff_factor

            raise RetryExhaustedError(
                f"{func.__name__} failed after {max_retries} attempts", max_retries
            ) from last_exception

        return wrapper
    return decorator


@dataclass(frozen=True)
class DeadLetter:
    operation: str
    payload: Dict[str, Any]
    error: str
    attempts: int
    failed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class DeadLetterQueue:
    """In-memory list of writes that could not be persisted.

    When a ``sink`` is given (the event store), each letter is also written
    there so it survives a restart.
    """

    def __init__(self, sink: Optional[Callable[[DeadLetter], None]] = None):
        self._letters: List[DeadLetter] = []
        self._lock = threading.Lock()
        self._sink = sink

    def put(self, letter: DeadLetter) -> None:
        with self._lock:
            self._letters.append(letter)
        logger.error(
            "Dead-lettered %s after %s attempts: %s",
            letter.operation,
            letter.attempts,
            letter.error,
        )
        if self._sink is not None:
            try:
                self._sink(letter)
            except sqlite3.Error:
                logger.exception("Could not persist dead letter for %s", letter.operation)

    def drain(self) -> List[DeadLetter]:
        with self._lock:
            letters, self._letters = self._letters, []
        return letters

    def __len__(self) -> int:
        return len(self._letters)


class PersistenceGateway:
    """Runs store writes with retry and turns exhaustion into ``Result.failure``."""

    def __init__(
        self,
        dead_letters: DeadLetterQueue,
        attempts: int = 3,
        initial_delay: float = 0.5,
        max_delay: float = 8.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.dead_letters = dead_letters
        self.attempts = attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self._sleep = sleep

    def write(self, operation: str, func: Callable[..., T], *args: Any, payload: Optional[Dict[str, Any]] = None) -> Result[T]:
        retrying = with_retry(
            max_retries=self.attempts,
            initial_delay=self.initial_delay,
            max_delay=self.max_delay,
            sleep=self._sleep,
        )(func)
        try:
            return Result.success(retrying(*args))
        except DomainError as exc:
            return Result.failure(exc)
        except RetryExhaustedError as exc:
            cause = exc.__cause__
            self.dead_letters.put(
                DeadLetter(
                    operation=operation,
                    payload=payload or {},
                    error=str(cause or exc),
                    attempts=exc.attempts,
                )
            )
            return Result.failure(
                PersistenceError(
                    f"Could not persist {operation} after {exc.attempts} attempts",
                    operation=operation,
                    cause=str(cause or exc),
                )
            )
