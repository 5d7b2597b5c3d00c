"""Background task scheduling for device-flow polling and token refresh.

Controllers never create threads themselves; they receive a
:class:`Scheduler` and express their timing needs through it:

* :meth:`Scheduler.schedule` -- run once after a delay (device-flow ticks);
* :meth:`Scheduler.schedule_at_fixed_rate` -- run repeatedly (refresh cycles);
* :meth:`Scheduler.execute` -- run as soon as a worker is free;
* :meth:`Scheduler.shutdown` -- stop accepting work, optionally draining.

:class:`ThreadPoolScheduler` is the production implementation: a single
timer thread watches a min-heap of due times and hands due tasks to a
:class:`concurrent.futures.ThreadPoolExecutor`. Tests substitute a
virtual-clock implementation of the same interface.

Exceptions raised by scheduled callables are logged and never stop the
scheduler. Fixed-rate tasks use a skip-if-busy policy: a run that comes due
while the previous run of the same task is still executing is skipped.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional

logger = logging.getLogger(__name__)

_PENDING = "pending"
_RUNNING = "running"
_DONE = "done"
_CANCELLED = "cancelled"


class ScheduledTask:
    """Handle for a callable submitted to a :class:`Scheduler`.

    Args:
        fn: The zero-argument callable to run.
        period: Seconds between runs for fixed-rate tasks, ``None`` for
            one-shot tasks.
    """

    def __init__(self, fn: Callable[[], object], period: Optional[float] = None):
        self.fn = fn
        self.period = period
        self._lock = threading.Lock()
        self._state = _PENDING
        self._cancel_requested = False

    def __repr__(self) -> str:
        name = getattr(self.fn, "__qualname__", repr(self.fn))
        return f"<ScheduledTask {name} state={self._state}>"

    @property
    def cancelled(self) -> bool:
        return self._cancel_requested

    @property
    def done(self) -> bool:
        """Whether the task will never run again."""
        with self._lock:
            return self._state in (_DONE, _CANCELLED)

    def cancel(self) -> bool:
        """Prevent any further runs of this task.

        Returns:
            ``True`` if the task was waiting and cancelling it prevented a
            run; ``False`` if it is currently executing or has already
            finished.
        """
        with self._lock:
            self._cancel_requested = True
            if self._state == _PENDING:
                self._state = _CANCELLED
                return True
            return False

    def run(self) -> None:
        """Execute the callable once, honouring cancellation and the busy check."""
        with self._lock:
            if self._cancel_requested or self._state in (_DONE, _CANCELLED):
                return
            if self._state == _RUNNING:
                logger.debug("Skipping %r: previous run still in progress", self)
                return
            self._state = _RUNNING
        try:
            self.fn()
        except Exception:
            logger.exception("Scheduled task %r raised an exception", self)
        finally:
            with self._lock:
                if self._cancel_requested:
                    self._state = _CANCELLED
                elif self.period is None:
                    self._state = _DONE
                else:
                    self._state = _PENDING


class Scheduler(ABC):
    """Abstract timer/executor used by authentication controllers."""

    @abstractmethod
    def schedule(self, delay: float, fn: Callable[[], object]) -> ScheduledTask:
        """Run *fn* once after *delay* seconds."""

    @abstractmethod
    def schedule_at_fixed_rate(
        self, initial_delay: float, period: float, fn: Callable[[], object]
    ) -> ScheduledTask:
        """Run *fn* after *initial_delay* seconds and then every *period* seconds."""

    @abstractmethod
    def execute(self, fn: Callable[[], object]) -> None:
        """Run *fn* as soon as possible on a background worker."""

    @abstractmethod
    def shutdown(self, wait: bool = True) -> None:
        """Stop the scheduler.

        Args:
            wait: If ``True``, block until tasks already executing have
                finished. Tasks still waiting for their due time are
                abandoned either way.
        """

    def __enter__(self) -> Scheduler:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()


class ThreadPoolScheduler(Scheduler):
    """A :class:`Scheduler` backed by a timer thread and a thread pool.

    Args:
        max_workers: Size of the worker pool.
        clock: Monotonic time source in seconds. Injected by tests.
    """

    def __init__(
        self,
        max_workers: int = 4,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._clock = clock
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="credman-worker"
        )
        self._heap: list[tuple[float, int, ScheduledTask]] = []
        self._sequence = itertools.count()
        self._condition = threading.Condition()
        self._shutdown = False
        self._local = threading.local()
        self._timer = threading.Thread(
            target=self._run_timer, name="credman-scheduler", daemon=True
        )
        self._timer.start()

    @property
    def is_shutdown(self) -> bool:
        return self._shutdown

    def schedule(self, delay: float, fn: Callable[[], object]) -> ScheduledTask:
        task = ScheduledTask(fn)
        self._push(self._clock() + max(0.0, delay), task)
        return task

    def schedule_at_fixed_rate(
        self, initial_delay: float, period: float, fn: Callable[[], object]
    ) -> ScheduledTask:
        if period <= 0:
            raise ValueError(f"period must be positive, got {period}")
        task = ScheduledTask(fn, period=period)
        self._push(self._clock() + max(0.0, initial_delay), task)
        return task

    def execute(self, fn: Callable[[], object]) -> None:
        self._submit(ScheduledTask(fn))

    def shutdown(self, wait: bool = True) -> None:
        with self._condition:
            if self._shutdown:
                return
            self._shutdown = True
            abandoned = [task for _, _, task in self._heap]
            self._heap.clear()
            self._condition.notify_all()
        for task in abandoned:
            task.cancel()
        if threading.current_thread() is not self._timer:
            self._timer.join()
        # A worker cannot wait for itself
        if getattr(self._local, "in_worker", False):
            wait = False
        self._executor.shutdown(wait=wait, cancel_futures=not wait)
        logger.debug("Scheduler shut down (wait=%s, abandoned=%d)", wait, len(abandoned))

    # -- internals --

    def _push(self, due: float, task: ScheduledTask) -> None:
        with self._condition:
            if self._shutdown:
                raise RuntimeError("cannot schedule new tasks after shutdown")
            heapq.heappush(self._heap, (due, next(self._sequence), task))
            self._condition.notify()

    def _submit(self, task: ScheduledTask) -> None:
        self._executor.submit(self._run_in_worker, task)

    def _run_in_worker(self, task: ScheduledTask) -> None:
        self._local.in_worker = True
        try:
            task.run()
        finally:
            self._local.in_worker = False

    def _run_timer(self) -> None:
        with self._condition:
            while not self._shutdown:
                if not self._heap:
                    self._condition.wait()
                    continue
                due, _, task = self._heap[0]
                if task.cancelled:
                    heapq.heappop(self._heap)
                    continue
                remaining = due - self._clock()
                if remaining > 0:
                    self._condition.wait(remaining)
                    continue
                heapq.heappop(self._heap)
                if task.period is not None:
                    heapq.heappush(
                        self._heap, (due + task.period, next(self._sequence), task)
                    )
                try:
                    self._submit(task)
                except RuntimeError:
                    # Executor already shut down; the loop exits on the next check
                    logger.debug("Dropped %r: executor is shut down", task)
