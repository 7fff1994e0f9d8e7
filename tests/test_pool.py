"""Tests for server_uploader/pool.py — ConcurrencyPool."""

from __future__ import annotations

import random
import threading
import time

import pytest

from server_uploader.errors import CancellationNotice, ConfigError
from server_uploader.pool import ConcurrencyPool, run_all, validate_limit


def _tracking_worker(limit_box: dict):
    """Worker that records the peak number of simultaneously running calls."""
    lock = threading.Lock()
    limit_box.update(current=0, peak=0)

    def _work(item: int) -> int:
        with lock:
            limit_box["current"] += 1
            limit_box["peak"] = max(limit_box["peak"], limit_box["current"])
        time.sleep(random.uniform(0.005, 0.03))
        with lock:
            limit_box["current"] -= 1
        return item * 10

    return _work


class TestLimits:
    @pytest.mark.parametrize(("limit", "count"), [(1, 5), (2, 9), (3, 10), (4, 3), (8, 20)])
    def test_never_exceeds_limit(self, limit: int, count: int) -> None:
        box: dict = {}
        outcomes = run_all(range(count), limit, _tracking_worker(box))
        assert box["peak"] <= limit
        assert len(outcomes) == count

    def test_uses_available_parallelism(self) -> None:
        """With enough work, more than one item runs at once."""
        barrier = threading.Barrier(3, timeout=5)
        outcomes = run_all(range(3), 3, lambda _: barrier.wait())
        assert all(o.ok for o in outcomes)

    @pytest.mark.parametrize("limit", [0, -1, 1.5, "3", True])
    def test_invalid_limit_raises_config_error(self, limit) -> None:
        with pytest.raises(ConfigError):
            ConcurrencyPool(limit)

    def test_invalid_limit_rejected_even_for_empty_input(self) -> None:
        with pytest.raises(ConfigError):
            run_all([], 0, lambda item: item)

    @pytest.mark.parametrize("limit", [0, -1, 1.5, "3", True, None])
    def test_validate_limit_rejects(self, limit) -> None:
        with pytest.raises(ConfigError):
            validate_limit(limit)

    def test_validate_limit_returns_valid_limit(self) -> None:
        assert validate_limit(4) == 4


class TestSettleAll:
    def test_empty_input_returns_empty_list(self) -> None:
        assert run_all([], 3, lambda item: item) == []

    def test_results_preserve_input_order(self) -> None:
        box: dict = {}
        outcomes = run_all(list(range(12)), 4, _tracking_worker(box))
        assert [o.item for o in outcomes] == list(range(12))
        assert [o.value for o in outcomes] == [i * 10 for i in range(12)]

    def test_failure_does_not_stop_siblings(self) -> None:
        """One failing item still lets every other item run to completion."""
        ran: list[int] = []
        lock = threading.Lock()

        def _work(item: int) -> int:
            with lock:
                ran.append(item)
            if item == 1:
                raise RuntimeError("boom")
            return item

        outcomes = run_all(range(5), 2, _work)
        assert sorted(ran) == [0, 1, 2, 3, 4]
        assert [o.ok for o in outcomes] == [True, False, True, True, True]
        assert str(outcomes[1].error) == "boom"


class TestCancelPending:
    def test_queued_items_do_not_start_after_cancel(self) -> None:
        started = threading.Event()
        release = threading.Event()
        pool = ConcurrencyPool(1)
        calls: list[int] = []

        def _work(item: int) -> int:
            calls.append(item)
            if item == 0:
                started.set()
                release.wait(timeout=5)
            return item

        result: dict = {}
        runner = threading.Thread(target=lambda: result.update(out=pool.run_all(range(4), _work)))
        runner.start()
        assert started.wait(timeout=5)
        pool.cancel_pending()
        release.set()
        runner.join(timeout=5)

        outcomes = result["out"]
        assert calls == [0]
        assert outcomes[0].ok
        assert all(isinstance(o.error, CancellationNotice) for o in outcomes[1:])

    def test_in_flight_counter_returns_to_zero(self) -> None:
        pool = ConcurrencyPool(2)
        pool.run_all(range(4), lambda item: item)
        assert pool.in_flight == 0

    def test_shared_event_set_before_run_starts_nothing(self) -> None:
        event = threading.Event()
        event.set()
        calls: list[int] = []
        outcomes = ConcurrencyPool(2, cancel_event=event).run_all(range(3), calls.append)
        assert calls == []
        assert all(isinstance(o.error, CancellationNotice) for o in outcomes)
