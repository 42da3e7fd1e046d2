"""Control loop binding tasks to resources and driving checkout runs.

The :class:`Orchestrator` owns a :class:`~cartpilot.orchestrator.scheduler.TaskScheduler`,
the account and proxy :class:`~cartpilot.pool.pool.ResourcePool` instances,
an adapter factory, and a :class:`~cartpilot.notifiers.notifier.Notifier`.

Admission
~~~~~~~~~
While a concurrency slot is free the loop pulls the next eligible task,
leases an account and then a proxy for the task's retailer scope, and
starts a worker (one ``asyncio.Task`` per run).  If either pool is
exhausted the task goes back to the queue with ``resource_retry_delay_s``
and no counted attempt; the account lease is returned when only the proxy
was missing.  A task waiting longer than ``max_resource_wait_s`` fails with
``no_resource``.  When nothing can be admitted the loop sleeps on a wake-up
event (submission, cancel, finished run) with a timeout equal to the
earliest of the next due task and the next pool cooldown/ban expiry.

Workers
~~~~~~~
A worker opens the adapter through the factory, drives one
:class:`~cartpilot.checkout.state_machine.CheckoutRun`, and in a ``finally``
block applies the damage recorded on each lease, persists updated session
blobs, and releases both leases.  The outcome is then routed by
:class:`~cartpilot.core.failures.FailureKind`:

* success → terminal ``succeeded``, non-urgent notification;
* ``cancelled`` → terminal ``cancelled``, non-urgent notification;
* fatal kind → terminal ``failed``, urgent notification;
* retryable kind → requeued with exponential backoff (notified only when
  ``notify_retries`` is set), or terminal ``failed`` with
  ``attempts_exhausted`` and an urgent notification.

Every terminal outcome produces exactly one notification.  A task that gave
up after a CAPTCHA carries a manual-intervention hint in its ``failed``
event; with ``notify_retries`` a CAPTCHA retry is reported as an urgent
``intervention`` event instead of a plain ``retrying`` one.

Opening and closing the adapter are bounded by ``stage_timeout_s``.  An
open that fails or expires is a ``transient_error`` or ``timeout`` for the
attempt.  A close that fails is logged and never changes the outcome the
run already produced.

Typical usage::

    orchestrator = Orchestrator(
        scheduler, account_pool, proxy_pool, adapter_factory, notifier, settings, ctx
    )
    for spec in specs:
        orchestrator.submit(spec)
    await orchestrator.run_until_drained()
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable

from cartpilot.checkout.state_machine import CheckoutRun, RunConfig, RunOutcome, Stage
from cartpilot.core import events
from cartpilot.core.criteria import AcquireCriteria
from cartpilot.core.exceptions import NoResourceAvailableError, OrchestratorError, StorageError
from cartpilot.core.failures import FailureKind, is_fatal
from cartpilot.core.logging_config import task_log_context
from cartpilot.core.models import Task, TaskSpec, TaskStatus
from cartpilot.core.run_context import RunContext
from cartpilot.core.settings import Settings
from cartpilot.notifiers.notifier import Notifier, NotifyEvent, NotifyKind
from cartpilot.orchestrator.metrics import OrchestratorStats
from cartpilot.orchestrator.scheduler import TaskScheduler, retry_delay
from cartpilot.pool.pool import ResourcePool
from cartpilot.pool.resources import Lease
from cartpilot.retailers.base import RetailerAdapter
from cartpilot.retailers.registry import AdapterFactory
from cartpilot.storage.repository import OutcomeRepository, SessionRepository

__all__ = ["Orchestrator"]

logger = logging.getLogger(__name__)

#: Lower bound on an idle wait, so a deadline that is already due cannot
#: turn the loop into a busy spin.
_MIN_IDLE_WAIT_S: float = 0.01


def _intervention_hint(task: Task, account_id: str | None) -> str:
    return (
        f"Manual intervention needed: CAPTCHA on {task.spec.retailer} "
        f"with account {account_id or 'n/a'}."
    )


class Orchestrator:
    """Admission loop, worker supervisor, and submission surface.

    Args:
        scheduler: Task queue and status tables.
        account_pool: Pool of retailer accounts.
        proxy_pool: Pool of proxies.
        adapter_factory: Builds a retailer adapter for a task and its leases.
        notifier: Sink for outcome notifications.
        settings: Concurrency, backoff, and timing configuration.
        ctx: Runtime flags.  Defaults to a live context.
        outcome_repo: Optional store for terminal outcomes.
        session_repo: Optional store for session blobs.
        clock: Monotonic clock used for resource-wait accounting.  Should be
            the scheduler's clock.
        sleep: Sleep handed to checkout runs for monitor waits.
        rng: Random source for retry and monitor jitter.
    """

    def __init__(
        self,
        scheduler: TaskScheduler,
        account_pool: ResourcePool,
        proxy_pool: ResourcePool,
        adapter_factory: AdapterFactory,
        notifier: Notifier,
        settings: Settings,
        ctx: RunContext | None = None,
        *,
        outcome_repo: OutcomeRepository | None = None,
        session_repo: SessionRepository | None = None,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._scheduler = scheduler
        self._accounts = account_pool
        self._proxies = proxy_pool
        self._factory = adapter_factory
        self._notifier = notifier
        self._settings = settings
        self._ctx = ctx or RunContext()
        self._outcomes = outcome_repo
        self._sessions = session_repo
        self._clock = clock or time.monotonic
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._run_config = RunConfig.from_settings(settings)

        self.stats = OrchestratorStats()
        self._workers: dict[str, asyncio.Task[None]] = {}
        self._wake = asyncio.Event()
        self._running = False
        self._stopping = False

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def scheduler(self) -> TaskScheduler:
        return self._scheduler

    @property
    def pools(self) -> tuple[ResourcePool, ResourcePool]:
        return (self._accounts, self._proxies)

    @property
    def active_count(self) -> int:
        """Number of checkout runs currently executing."""
        return len(self._workers)

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Submission surface
    # ------------------------------------------------------------------

    def submit(self, spec: TaskSpec) -> str:
        """Queue a new task and return its id.

        Raises:
            DuplicateTaskError: If a task with the same id is queued or running,
                or already failed after exhausting its attempts.
        """
        task = Task(spec=spec)
        self._scheduler.enqueue(task)
        self.stats.submitted += 1
        self._wake.set()
        return task.id

    async def cancel(self, task_id: str) -> bool:
        """Cancel a queued task, or request cancellation of a running one.

        A queued task is finished and notified immediately.  A running task
        stops at its next stage boundary and is notified by its worker.

        Returns:
            ``True`` if cancellation took effect or was requested.

        Raises:
            UnknownTaskError: If the id was never submitted.
        """
        was_queued = self._scheduler.status(task_id) == TaskStatus.QUEUED
        accepted = self._scheduler.cancel(task_id)
        if accepted and was_queued:
            task = self._scheduler.get(task_id)
            self.stats.cancelled += 1
            await self._finish(
                task,
                NotifyEvent(
                    task_id=task_id,
                    kind=NotifyKind.CANCELLED,
                    message="Cancelled while queued.",
                    failure=FailureKind.CANCELLED,
                ),
            )
        self._wake.set()
        return accepted

    def status(self, task_id: str) -> TaskStatus:
        """Current status of *task_id*.

        Raises:
            UnknownTaskError: If the id was never submitted.
        """
        return self._scheduler.status(task_id)

    def stop(self) -> None:
        """Stop admitting tasks.  Runs already in flight finish normally."""
        if not self._stopping:
            logger.info("Orchestrator stop requested; %d run(s) in flight.", self.active_count)
        self._stopping = True
        self._wake.set()

    # ------------------------------------------------------------------
    # Control loop
    # ------------------------------------------------------------------

    async def run_forever(self) -> None:
        """Admit and supervise runs until :meth:`stop` is called."""
        await self._loop(until_drained=False)

    async def run_until_drained(self) -> None:
        """Admit and supervise runs until no task is queued or running."""
        await self._loop(until_drained=True)

    async def _loop(self, *, until_drained: bool) -> None:
        if self._running:
            raise OrchestratorError("Orchestrator loop is already running.")
        self._running = True
        self._stopping = False
        logger.info(
            "Orchestrator started (max_concurrent=%d, mode=%s).",
            self._settings.max_concurrent,
            self._ctx.mode_label,
        )
        try:
            while not self._stopping:
                self._wake.clear()
                await self._admit()
                if until_drained and self._scheduler.is_drained and not self._workers:
                    break
                await self._idle()
        finally:
            if self._workers:
                logger.info("Waiting for %d in-flight run(s) to finish.", len(self._workers))
                await asyncio.gather(*self._workers.values(), return_exceptions=True)
            self._running = False
            logger.info("Orchestrator stopped.\n%s", self.stats.format_summary())

    async def _idle(self) -> None:
        """Sleep until woken or until the next deadline that could admit a task."""
        timeout = self._idle_timeout()
        try:
            await asyncio.wait_for(self._wake.wait(), timeout)
        except TimeoutError:
            pass

    def _idle_timeout(self) -> float | None:
        if self.active_count >= self._settings.max_concurrent:
            # Only a finishing run can free a slot; it sets the wake event.
            return None
        due_in = self._scheduler.next_due_in()
        if due_in is None:
            return None
        candidates = [due_in]
        for pool in self.pools:
            expiry_in = pool.next_expiry_in()
            if expiry_in is not None:
                candidates.append(expiry_in)
        return max(min(candidates), _MIN_IDLE_WAIT_S)

    async def _admit(self) -> None:
        """Start runs for eligible tasks while slots and resources allow."""
        deferred: set[str] = set()
        while not self._stopping:
            task = self._scheduler.next_eligible(self.active_count, self._settings.max_concurrent)
            if task is None:
                return
            if task.id in deferred:
                # Requeued earlier in this pass with no delay; try again later.
                self._scheduler.requeue(task, self._settings.resource_retry_delay_s, count_attempt=False)
                return

            leases = await self._acquire(task)
            if leases is None:
                deferred.add(task.id)
                continue

            account_lease, proxy_lease = leases
            worker = asyncio.create_task(
                self._work(task, account_lease, proxy_lease),
                name=f"cartpilot-run-{task.id}",
            )
            self._workers[task.id] = worker

    async def _acquire(self, task: Task) -> tuple[Lease, Lease] | None:
        """Lease an account then a proxy; ``None`` if the task was deferred."""
        criteria = AcquireCriteria.for_task(task.spec)
        timeout = self._settings.acquire_timeout_s
        try:
            account_lease = await self._accounts.acquire(criteria, task_id=task.id, timeout=timeout)
        except NoResourceAvailableError as exc:
            await self._defer(task, exc)
            return None
        try:
            proxy_lease = await self._proxies.acquire(criteria, task_id=task.id, timeout=timeout)
        except NoResourceAvailableError as exc:
            await self._accounts.release(account_lease.resource_id)
            await self._defer(task, exc)
            return None

        task.waiting_since = None
        task.account_id = account_lease.resource_id
        task.proxy_id = proxy_lease.resource_id
        return account_lease, proxy_lease

    async def _defer(self, task: Task, exc: NoResourceAvailableError) -> None:
        """Requeue a task that found no free resource, or give up on it."""
        if task.cancel_requested:
            await self._complete_cancelled(task, "cancelled while waiting for resources")
            return

        now = self._clock()
        if task.waiting_since is None:
            task.waiting_since = now
        waited = now - task.waiting_since

        if waited >= self._settings.max_resource_wait_s:
            task.record_failure(
                FailureKind.NO_RESOURCE,
                f"no free resource after waiting {waited:.0f} s ({exc})",
            )
            self.stats.record_failure(FailureKind.NO_RESOURCE)
            await self._complete_failed(task)
            return

        task.record_failure(FailureKind.NO_RESOURCE, str(exc))
        self.stats.waiting_for_resources += 1
        logger.info(
            "Task %s waiting for resources (%s); retry in %.1f s.",
            task.id,
            exc,
            self._settings.resource_retry_delay_s,
            extra={"event": events.TASK_WAITING_FOR_RESOURCES},
        )
        self._scheduler.requeue(task, self._settings.resource_retry_delay_s, count_attempt=False)

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    async def _work(self, task: Task, account_lease: Lease, proxy_lease: Lease) -> None:
        with task_log_context(task.id):
            try:
                outcome = await self._execute(task, account_lease, proxy_lease)
                await self._route(task, outcome)
            except asyncio.CancelledError:
                logger.warning("Run for task %s was cancelled.", task.id)
                raise
            except Exception:
                logger.exception("Unhandled error while supervising task %s.", task.id)
                if task.status == TaskStatus.RUNNING:
                    task.record_failure(FailureKind.TRANSIENT_ERROR, "orchestrator error")
                    self._scheduler.complete(task, TaskStatus.FAILED)
                    self.stats.failed += 1
            finally:
                self._workers.pop(task.id, None)
                self._wake.set()

    async def _execute(self, task: Task, account_lease: Lease, proxy_lease: Lease) -> RunOutcome:
        self.stats.started += 1
        logger.info(
            "Task %s started with account %s and proxy %s (attempt %d).",
            task.id,
            account_lease.resource_id,
            proxy_lease.resource_id,
            task.attempts + 1,
            extra={"event": events.TASK_STARTED},
        )
        try:
            opened = await self._open_adapter(task, account_lease, proxy_lease)
            if isinstance(opened, RunOutcome):
                return opened
            try:
                run = CheckoutRun(
                    task,
                    opened,
                    account_lease,
                    proxy_lease,
                    self._run_config,
                    sleep=self._sleep,
                    rng=self._rng,
                )
                return await run.run()
            finally:
                await self._close_adapter(task, opened)
        finally:
            try:
                await self._return_lease(self._accounts, account_lease)
            finally:
                await self._return_lease(self._proxies, proxy_lease)

    async def _open_adapter(
        self, task: Task, account_lease: Lease, proxy_lease: Lease
    ) -> RetailerAdapter | RunOutcome:
        """Build and open the adapter, or return the failed outcome of the attempt.

        Opening is bounded by ``stage_timeout``.  Expiry is a ``timeout``;
        any other error is a ``transient_error``.  Both count one failure
        against the proxy.
        """
        timeout = self._run_config.stage_timeout
        try:
            adapter = self._factory(task, account_lease, proxy_lease)
        except Exception as exc:  # noqa: BLE001
            logger.error("Adapter for task %s could not be built: %s", task.id, exc)
            return self._open_failure(task, proxy_lease, FailureKind.TRANSIENT_ERROR, f"adapter error: {exc}")

        try:
            await asyncio.wait_for(adapter.open(), timeout=timeout)
        except TimeoutError:
            logger.error("Adapter for task %s did not open within %.0f s.", task.id, timeout)
            await self._close_adapter(task, adapter)
            return self._open_failure(
                task, proxy_lease, FailureKind.TIMEOUT, f"adapter open exceeded {timeout:.0f} s"
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("Adapter for task %s could not be opened: %s", task.id, exc)
            await self._close_adapter(task, adapter)
            return self._open_failure(task, proxy_lease, FailureKind.TRANSIENT_ERROR, f"adapter error: {exc}")
        return adapter

    @staticmethod
    def _open_failure(task: Task, proxy_lease: Lease, kind: FailureKind, detail: str) -> RunOutcome:
        proxy_lease.flag_failure(task.spec.retailer)
        return RunOutcome(task_id=task.id, stage=Stage.FAILED, failure=kind, detail=detail)

    async def _close_adapter(self, task: Task, adapter: RetailerAdapter) -> None:
        """Close *adapter* within ``stage_timeout``.  Errors are logged, never raised."""
        timeout = self._run_config.stage_timeout
        try:
            await asyncio.wait_for(adapter.close(), timeout=timeout)
        except TimeoutError:
            logger.warning("Adapter for task %s did not close within %.0f s.", task.id, timeout)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Adapter for task %s failed to close: %s", task.id, exc)

    async def _return_lease(self, pool: ResourcePool, lease: Lease) -> None:
        """Apply recorded damage, persist the session blob, then release."""
        try:
            await pool.apply_damage(lease)
            if lease.session_updated and self._sessions is not None:
                await self._sessions.save(pool.kind, lease.resource_id, lease.session_blob)
        except StorageError as exc:
            logger.warning("Session for %s %s not persisted: %s", pool.name, lease.resource_id, exc)
        finally:
            await pool.release(lease.resource_id)

    # ------------------------------------------------------------------
    # Outcome routing
    # ------------------------------------------------------------------

    async def _route(self, task: Task, outcome: RunOutcome) -> None:
        if outcome.succeeded:
            task.order_reference = outcome.order_reference
            self._scheduler.complete(task, TaskStatus.SUCCEEDED)
            self.stats.succeeded += 1
            logger.info(
                "Task %s succeeded (order %s).",
                task.id,
                outcome.order_reference or "n/a",
                extra={"event": events.TASK_SUCCEEDED},
            )
            await self._finish(
                task,
                NotifyEvent(
                    task_id=task.id,
                    kind=NotifyKind.SUCCEEDED,
                    message=f"Order placed for {task.spec.item_ref} "
                    f"(order {outcome.order_reference or 'n/a'}).",
                ),
            )
            return

        kind = outcome.failure or FailureKind.TRANSIENT_ERROR
        task.record_failure(kind, outcome.detail)
        self.stats.record_failure(kind)

        if kind == FailureKind.CANCELLED:
            await self._complete_cancelled(task, outcome.detail)
        elif is_fatal(kind):
            await self._complete_failed(task)
        else:
            await self._retry(task, kind)

    async def _retry(self, task: Task, kind: FailureKind) -> None:
        if task.cancel_requested:
            await self._complete_cancelled(task, f"cancelled after {kind}")
            return

        account_id = task.account_id
        delay = retry_delay(self._settings, task.attempts + 1, rng=self._rng)
        if not self._scheduler.requeue(task, delay):
            # The scheduler recorded attempts_exhausted and finished the task.
            self.stats.record_failure(FailureKind.ATTEMPTS_EXHAUSTED)
            self.stats.failed += 1
            logger.error(
                "Task %s failed: %s",
                task.id,
                task.last_error,
                extra={"event": events.TASK_FAILED},
            )
            await self._finish(task, self._failure_event(task, cause=kind, account_id=account_id))
            return

        self.stats.retried += 1
        if self._ctx.notify_retries:
            message = f"Attempt {task.attempts} failed with {kind}; retrying in {delay:.0f} s."
            captcha = kind == FailureKind.CAPTCHA
            if captcha:
                message += " " + _intervention_hint(task, account_id)
            await self._notifier.notify(
                NotifyEvent(
                    task_id=task.id,
                    kind=NotifyKind.INTERVENTION if captcha else NotifyKind.RETRYING,
                    message=message,
                    urgent=captcha,
                    failure=kind,
                )
            )

    async def _complete_failed(self, task: Task) -> None:
        self._scheduler.complete(task, TaskStatus.FAILED)
        self.stats.failed += 1
        logger.error(
            "Task %s failed (%s): %s",
            task.id,
            task.last_failure,
            task.last_error,
            extra={"event": events.TASK_FAILED},
        )
        await self._finish(task, self._failure_event(task))

    async def _complete_cancelled(self, task: Task, detail: str) -> None:
        task.record_failure(FailureKind.CANCELLED, detail)
        self._scheduler.complete(task, TaskStatus.CANCELLED)
        self.stats.cancelled += 1
        logger.info("Task %s cancelled.", task.id, extra={"event": events.TASK_CANCELLED})
        await self._finish(
            task,
            NotifyEvent(
                task_id=task.id,
                kind=NotifyKind.CANCELLED,
                message=detail or "Cancelled.",
                failure=FailureKind.CANCELLED,
            ),
        )

    @staticmethod
    def _failure_event(
        task: Task, *, cause: FailureKind | None = None, account_id: str | None = None
    ) -> NotifyEvent:
        message = f"{task.spec.retailer} {task.spec.item_ref}: {task.last_error or task.last_failure}"
        if cause == FailureKind.CAPTCHA:
            message += "\n" + _intervention_hint(task, account_id)
        return NotifyEvent(
            task_id=task.id,
            kind=NotifyKind.FAILED,
            message=message,
            urgent=True,
            failure=task.last_failure,
        )

    async def _finish(self, task: Task, event: NotifyEvent) -> None:
        """Persist a terminal outcome (best effort) and send its notification."""
        if self._outcomes is not None:
            try:
                await self._outcomes.record(task)
            except StorageError as exc:
                logger.warning("Outcome for task %s not persisted: %s", task.id, exc)
        await self._notifier.notify(event)
