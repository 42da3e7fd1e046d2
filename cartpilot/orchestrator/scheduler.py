"""Priority task scheduler.

Holds every task the orchestrator knows about and decides which one runs
next.  Queued tasks live in a heap ordered by ``(priority rank, enqueue
sequence)``; a task is only *eligible* once its ``not_before`` timestamp has
passed.  Running and finished tasks are tracked in side tables so status
queries and duplicate detection cover the task's whole life.

All methods are synchronous.  The orchestrator calls them from the event
loop only, so each call is atomic with respect to other coroutines.

Retry delays
~~~~~~~~~~~~
:func:`retry_delay` computes the backoff before a retryable failure is
retried: ``base × 2^(attempts-1)`` capped at ``max``, plus uniform jitter in
``[0, jitter]``.  All three values come from
:class:`~cartpilot.core.settings.Settings`.

Typical usage::

    scheduler = TaskScheduler(max_attempts=settings.max_attempts)
    scheduler.enqueue(Task(spec=spec))

    task = scheduler.next_eligible(active_count=0, max_concurrent=4)
    if task is not None:
        ...
        scheduler.requeue(task, retry_delay(settings, task.attempts + 1))
"""

from __future__ import annotations

import heapq
import itertools
import logging
import random
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

from cartpilot.core import events
from cartpilot.core.exceptions import DuplicateTaskError, UnknownTaskError
from cartpilot.core.failures import FailureKind
from cartpilot.core.models import PRIORITY_RANK, Task, TaskStatus

if TYPE_CHECKING:
    from cartpilot.core.settings import Settings

__all__ = [
    "TaskScheduler",
    "retry_delay",
]

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Backoff helper
# ---------------------------------------------------------------------------


def retry_delay(
    settings: Settings,
    attempts: int,
    *,
    rng: random.Random | None = None,
) -> float:
    """Return the delay before retry number *attempts*.

    Args:
        settings: Active settings with the backoff base, cap, and jitter.
        attempts: Counted attempts including the one that just failed (≥ 1).
        rng: Random source for the jitter.

    Returns:
        ``min(base × 2^(attempts-1), max) + uniform(0, jitter)`` seconds.
    """
    exponent = max(attempts - 1, 0)
    backoff = min(settings.retry_backoff_base_s * (2**exponent), settings.retry_backoff_max_s)
    jitter = (rng or random).uniform(0.0, settings.retry_jitter_s) if settings.retry_jitter_s else 0.0
    return backoff + jitter


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class TaskScheduler:
    """Priority queue plus status tables for every submitted task.

    Args:
        max_attempts: Counted attempts after which a requeued task fails
            permanently with ``attempts_exhausted``.
        clock: Monotonic clock used for ``not_before``.  Defaults to
            :func:`time.monotonic`.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        *,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be ≥ 1, got {max_attempts!r}.")
        self._max_attempts = max_attempts
        self._clock = clock or time.monotonic
        self._seq = itertools.count()

        # Heap entries: (rank, seq, task_id); one live entry per queued task.
        self._heap: list[tuple[int, int, str]] = []
        self._entry_seq: dict[str, int] = {}

        self._queued: dict[str, Task] = {}
        self._running: dict[str, Task] = {}
        self._finished: dict[str, Task] = {}

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    @property
    def queued_count(self) -> int:
        return len(self._queued)

    @property
    def running_count(self) -> int:
        return len(self._running)

    @property
    def finished_count(self) -> int:
        return len(self._finished)

    @property
    def is_drained(self) -> bool:
        """``True`` when nothing is queued or running."""
        return not self._queued and not self._running

    def counts(self) -> dict[str, int]:
        return {
            "queued": self.queued_count,
            "running": self.running_count,
            "finished": self.finished_count,
        }

    def get(self, task_id: str) -> Task:
        """Return the task with *task_id* wherever it currently lives.

        Raises:
            UnknownTaskError: If the scheduler has never seen the id.
        """
        for table in (self._queued, self._running, self._finished):
            if task_id in table:
                return table[task_id]
        raise UnknownTaskError(task_id)

    def status(self, task_id: str) -> TaskStatus:
        return self.get(task_id).status

    def finished(self) -> list[Task]:
        """Terminal tasks in completion order."""
        return list(self._finished.values())

    def next_due_in(self) -> float | None:
        """Seconds until the earliest queued task becomes eligible.

        Returns ``0.0`` when one is already due and ``None`` when the queue
        is empty.
        """
        if not self._queued:
            return None
        now = self._clock()
        earliest = min(task.not_before for task in self._queued.values())
        return max(earliest - now, 0.0)

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------

    def enqueue(self, task: Task) -> None:
        """Accept a new task.

        A task id that finished earlier may be submitted again and its old
        terminal record is replaced.  The exception is a task that failed
        with ``attempts_exhausted``: that failure is permanent.

        Raises:
            DuplicateTaskError: If the id is queued, running, or exhausted.
        """
        if task.id in self._queued or task.id in self._running:
            raise DuplicateTaskError(task.id)
        previous = self._finished.get(task.id)
        if previous is not None and previous.last_failure == FailureKind.ATTEMPTS_EXHAUSTED:
            raise DuplicateTaskError(task.id, "already failed after exhausting its attempts")
        self._finished.pop(task.id, None)

        task.set_status(TaskStatus.QUEUED)
        self._push(task)
        logger.info(
            "Task %s queued (priority=%s, retailer=%s).",
            task.id,
            task.spec.priority,
            task.spec.retailer,
            extra={"event": events.TASK_QUEUED},
        )

    def _push(self, task: Task) -> None:
        seq = next(self._seq)
        self._entry_seq[task.id] = seq
        self._queued[task.id] = task
        heapq.heappush(self._heap, (PRIORITY_RANK[task.spec.priority], seq, task.id))

    def next_eligible(self, active_count: int, max_concurrent: int) -> Task | None:
        """Pop the best due task and mark it running.

        Returns ``None`` without changing anything when ``active_count`` has
        reached ``max_concurrent`` or no queued task is due.  A task that is
        not yet due does not block lower-priority tasks that are.
        """
        if active_count >= max_concurrent or not self._queued:
            return None

        now = self._clock()
        chosen: tuple[int, int, str] | None = None
        for entry in sorted(self._heap):
            _, seq, task_id = entry
            if self._entry_seq.get(task_id) != seq:
                continue
            if self._queued[task_id].not_before <= now:
                chosen = entry
                break
        if chosen is None:
            return None

        self._heap.remove(chosen)
        heapq.heapify(self._heap)
        task_id = chosen[2]
        del self._entry_seq[task_id]
        task = self._queued.pop(task_id)
        task.set_status(TaskStatus.RUNNING)
        self._running[task_id] = task
        return task

    def requeue(self, task: Task, delay: float, *, count_attempt: bool = True) -> bool:
        """Put a running task back in the queue after *delay* seconds.

        Args:
            task: A task currently marked running.
            delay: Seconds before the task becomes eligible again.
            count_attempt: Increment ``attempts``.  ``False`` for runs that
                never started (no free resource).

        Returns:
            ``True`` if requeued; ``False`` if attempts are exhausted and
            the task was moved to the finished table as failed.
        """
        self._running.pop(task.id, None)
        if count_attempt:
            task.attempts += 1

        if task.attempts >= self._max_attempts:
            last = task.last_failure
            task.record_failure(
                FailureKind.ATTEMPTS_EXHAUSTED,
                f"gave up after {task.attempts} attempt(s); last failure: {last or 'n/a'}",
            )
            self._finish(task, TaskStatus.FAILED)
            return False

        task.not_before = self._clock() + max(delay, 0.0)
        task.set_status(TaskStatus.QUEUED)
        self._push(task)
        logger.info(
            "Task %s requeued in %.1f s (attempt %d/%d).",
            task.id,
            delay,
            task.attempts,
            self._max_attempts,
            extra={"event": events.TASK_REQUEUED},
        )
        return True

    def complete(self, task: Task, status: TaskStatus) -> None:
        """Move a running task to the finished table with a terminal *status*."""
        if status not in (TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.CANCELLED):
            raise ValueError(f"complete() needs a terminal status, got {status!r}.")
        self._running.pop(task.id, None)
        self._finish(task, status)

    def _finish(self, task: Task, status: TaskStatus) -> None:
        task.set_status(status)
        task.clear_binding()
        self._finished[task.id] = task

    def cancel(self, task_id: str) -> bool:
        """Cancel a task.

        * queued → removed from the queue and marked cancelled;
        * running → ``cancel_requested`` set; the run stops at its next
          stage boundary;
        * terminal → nothing happens.

        Returns:
            ``True`` if a cancellation took effect or was requested.

        Raises:
            UnknownTaskError: If the id was never submitted.
        """
        if task_id in self._queued:
            task = self._queued.pop(task_id)
            seq = self._entry_seq.pop(task_id, None)
            self._heap = [e for e in self._heap if e[1] != seq]
            heapq.heapify(self._heap)
            task.record_failure(FailureKind.CANCELLED, "cancelled while queued")
            self._finish(task, TaskStatus.CANCELLED)
            logger.info("Task %s cancelled while queued.", task_id, extra={"event": events.TASK_CANCELLED})
            return True
        if task_id in self._running:
            self._running[task_id].cancel_requested = True
            logger.info("Cancellation requested for running task %s.", task_id)
            return True
        if task_id in self._finished:
            return False
        raise UnknownTaskError(task_id)
