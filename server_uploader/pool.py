"""Bounded-parallelism runner with settle-all semantics."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Any, Callable, Iterable, TypeVar

from server_uploader.errors import CancellationNotice, ConfigError
from server_uploader.models import TaskOutcome

logger = logging.getLogger(__name__)

T = TypeVar("T")


def validate_limit(limit: int) -> int:
    """Return *limit* if it is a positive integer, else raise ConfigError."""
    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
        raise ConfigError(f"Concurrency limit must be a positive integer, got {limit!r}")
    return limit


class ConcurrencyPool:
    """Runs a worker over a list of items with at most *limit* in flight.

    Items are admitted in FIFO order as soon as a slot frees up.  A failing
    item never cancels or blocks its siblings: :meth:`run_all` waits for
    every item to settle and returns one :class:`TaskOutcome` per item, in
    input order.

    Usage::

        pool = ConcurrencyPool(limit=3)
        outcomes = pool.run_all(tasks, upload_one)
        # from another thread:
        pool.cancel_pending()
    """

    def __init__(self, limit: int, cancel_event: threading.Event | None = None) -> None:
        """Validate *limit*; zero, negative or non-integer is a ConfigError.

        *cancel_event* may be shared with other parts of the same operation;
        once it is set no further item is admitted.
        """
        self.limit = validate_limit(limit)
        self._cancel_event = cancel_event or threading.Event()
        self._state_lock = threading.Lock()
        self._in_flight = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def in_flight(self) -> int:
        """Number of items whose worker is currently executing."""
        with self._state_lock:
            return self._in_flight

    def cancel_pending(self) -> None:
        """Stop admitting items; not-yet-started ones settle as cancelled.

        Items already executing are left alone; interrupting them is the
        caller's job.
        """
        logger.info("Pool cancel requested — queued items will not start")
        self._cancel_event.set()

    def run_all(self, items: Iterable[T], worker: Callable[[T], Any]) -> list[TaskOutcome]:
        """Run *worker* over *items* and wait for every item to settle."""
        items = list(items)
        if not items:
            return []

        outcomes = [TaskOutcome(item=item) for item in items]
        with ThreadPoolExecutor(
            max_workers=min(self.limit, len(items)),
            thread_name_prefix="transfer",
        ) as executor:
            futures = [
                executor.submit(self._run_one, worker, outcome) for outcome in outcomes
            ]
            wait(futures)

        failed = sum(1 for o in outcomes if not o.ok)
        logger.debug("Pool settled: %d ok, %d failed", len(outcomes) - failed, failed)
        return outcomes

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _run_one(self, worker: Callable[[Any], Any], outcome: TaskOutcome) -> None:
        """Execute one item, recording its value or exception on *outcome*."""
        if self._cancel_event.is_set():
            outcome.error = CancellationNotice("Cancelled before start")
            return
        with self._state_lock:
            self._in_flight += 1
        try:
            outcome.value = worker(outcome.item)
        except Exception as exc:
            outcome.error = exc
        finally:
            with self._state_lock:
                self._in_flight -= 1


def run_all(items: Iterable[T], limit: int, worker: Callable[[T], Any]) -> list[TaskOutcome]:
    """Convenience wrapper: ``ConcurrencyPool(limit).run_all(items, worker)``."""
    return ConcurrencyPool(limit).run_all(items, worker)
