"""Tests for credman.scheduler -- task handles and the thread-pool scheduler."""

from __future__ import annotations

import threading
import time

import pytest

from credman.scheduler import ScheduledTask, ThreadPoolScheduler


# ---------------------------------------------------------------------------
# ScheduledTask
# ---------------------------------------------------------------------------


class TestScheduledTask:
    def test_one_shot_runs_once(self) -> None:
        calls = []
        task = ScheduledTask(lambda: calls.append(1))
        task.run()
        task.run()
        assert calls == [1]
        assert task.done

    def test_periodic_runs_repeatedly(self) -> None:
        calls = []
        task = ScheduledTask(lambda: calls.append(1), period=10)
        task.run()
        task.run()
        assert calls == [1, 1]
        assert not task.done

    def test_cancel_pending_task(self) -> None:
        calls = []
        task = ScheduledTask(lambda: calls.append(1))
        assert task.cancel() is True
        task.run()
        assert calls == []
        assert task.cancelled
        assert task.done

    def test_cancel_finished_task_returns_false(self) -> None:
        task = ScheduledTask(lambda: None)
        task.run()
        assert task.cancel() is False

    def test_cancel_while_running_returns_false(self) -> None:
        results = []

        def body() -> None:
            results.append(task.cancel())

        task = ScheduledTask(body, period=5)
        task.run()
        assert results == [False]
        assert task.done

    def test_overlapping_run_is_skipped(self) -> None:
        calls = []

        def body() -> None:
            calls.append(1)
            task.run()

        task = ScheduledTask(body, period=5)
        task.run()
        assert calls == [1]

    def test_exception_is_logged_and_swallowed(self, caplog) -> None:
        def boom() -> None:
            raise RuntimeError("boom")

        task = ScheduledTask(boom, period=5)
        task.run()
        assert "raised an exception" in caplog.text
        assert not task.done


# ---------------------------------------------------------------------------
# ThreadPoolScheduler
# ---------------------------------------------------------------------------


class TestThreadPoolScheduler:
    def test_schedule_runs_after_delay(self) -> None:
        done = threading.Event()
        with ThreadPoolScheduler(max_workers=2) as scheduler:
            start = time.monotonic()
            scheduler.schedule(0.05, done.set)
            assert done.wait(2)
            assert time.monotonic() - start >= 0.05

    def test_execute_runs_immediately(self) -> None:
        done = threading.Event()
        with ThreadPoolScheduler() as scheduler:
            scheduler.execute(done.set)
            assert done.wait(2)

    def test_fixed_rate_repeats_until_cancelled(self) -> None:
        count = 0
        reached = threading.Event()

        def tick() -> None:
            nonlocal count
            count += 1
            if count >= 3:
                reached.set()

        with ThreadPoolScheduler() as scheduler:
            task = scheduler.schedule_at_fixed_rate(0, 0.01, tick)
            assert reached.wait(2)
            task.cancel()

    def test_fixed_rate_needs_positive_period(self) -> None:
        with ThreadPoolScheduler() as scheduler:
            with pytest.raises(ValueError):
                scheduler.schedule_at_fixed_rate(0, 0, lambda: None)

    def test_cancelled_task_never_runs(self) -> None:
        calls = []
        with ThreadPoolScheduler() as scheduler:
            task = scheduler.schedule(0.05, lambda: calls.append(1))
            assert task.cancel()
            time.sleep(0.1)
        assert calls == []

    def test_shutdown_abandons_pending_tasks(self) -> None:
        scheduler = ThreadPoolScheduler()
        task = scheduler.schedule(60, lambda: None)
        scheduler.shutdown()
        assert scheduler.is_shutdown
        assert task.cancelled

    def test_schedule_after_shutdown_raises(self) -> None:
        scheduler = ThreadPoolScheduler()
        scheduler.shutdown()
        with pytest.raises(RuntimeError):
            scheduler.schedule(1, lambda: None)

    def test_shutdown_is_idempotent(self) -> None:
        scheduler = ThreadPoolScheduler()
        scheduler.shutdown()
        scheduler.shutdown()

    def test_shutdown_waits_for_running_task(self) -> None:
        started = threading.Event()
        finished = []

        def slow() -> None:
            started.set()
            time.sleep(0.05)
            finished.append(1)

        scheduler = ThreadPoolScheduler()
        scheduler.execute(slow)
        assert started.wait(2)
        scheduler.shutdown(wait=True)
        assert finished == [1]

    def test_shutdown_from_worker_does_not_deadlock(self) -> None:
        done = threading.Event()
        scheduler = ThreadPoolScheduler()

        def stop() -> None:
            scheduler.shutdown(wait=True)
            done.set()

        scheduler.execute(stop)
        assert done.wait(2)
