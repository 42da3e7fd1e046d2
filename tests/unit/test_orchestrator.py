"""Unit tests for :mod:`cartpilot.orchestrator.orchestrator`.

End-to-end scenarios over real pools, a real scheduler, and scripted
adapters:

- Resource contention: a task that finds no free account is requeued
  without losing an attempt and runs once the holder releases.
- A detection block bans the proxy for that retailer only; the retry uses
  another proxy.
- Outcome routing: fatal failures, attempt exhaustion, retries, cancellation,
  and adapter factory errors.
- Adapter lifecycle: bounded open and close; a failing close never changes
  the outcome, and a failing lease return never strands the other lease.
- Persistence hooks: session blobs and terminal outcomes.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from cartpilot.core.criteria import AcquireCriteria
from cartpilot.core.exceptions import (
    DuplicateTaskError,
    NotLeasedError,
    OrchestratorError,
    UnknownTaskError,
)
from cartpilot.core.failures import FailureKind
from cartpilot.core.models import Priority, Task, TaskSpec, TaskStatus
from cartpilot.core.run_context import RunContext
from cartpilot.core.settings import Settings
from cartpilot.notifiers.notifier import Notifier, NotifyEvent, NotifyKind
from cartpilot.orchestrator.orchestrator import Orchestrator
from cartpilot.orchestrator.scheduler import TaskScheduler
from cartpilot.pool.pool import ResourcePool
from cartpilot.pool.resources import (
    AccountCredentials,
    Lease,
    ProxyEndpoint,
    Resource,
    ResourceKind,
    ResourceStatus,
)
from cartpilot.retailers.base import (
    CartResult,
    CheckoutResult,
    LoginResult,
    RetailerAdapter,
    StockResult,
)
from cartpilot.storage.repository import OutcomeRepository, SessionRepository

if TYPE_CHECKING:
    from tests.conftest import FakeClock

pytestmark = pytest.mark.usefixtures("clean_env")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class ScriptedAdapter(RetailerAdapter):
    """Adapter with fixed per-stage results and an optional checkout delay."""

    retailer = "costco"

    def __init__(
        self,
        *,
        login: LoginResult | None = None,
        stock: StockResult | None = None,
        cart: CartResult | None = None,
        checkout: CheckoutResult | None = None,
        checkout_delay: float = 0.0,
        login_gate: asyncio.Event | None = None,
    ) -> None:
        self._login = login or LoginResult(session_blob=b"cookie")
        self._stock = stock or StockResult(in_stock=True, price=10.0)
        self._cart = cart or CartResult()
        self._checkout = checkout or CheckoutResult(order_reference="ORD-1")
        self._checkout_delay = checkout_delay
        self._login_gate = login_gate
        self.closed = False

    async def close(self) -> None:
        self.closed = True

    async def login(self, account: AccountCredentials) -> LoginResult:
        if self._login_gate is not None:
            await self._login_gate.wait()
        return self._login

    async def check_stock(self, item_ref: str) -> StockResult:
        return self._stock

    async def add_to_cart(self, item_ref: str, quantity: int) -> CartResult:
        return self._cart

    async def checkout(self, account: AccountCredentials) -> CheckoutResult:
        if self._checkout_delay:
            await asyncio.sleep(self._checkout_delay)
        return self._checkout


class RecordingFactory:
    """Hands out adapters in order (the last one repeats) and logs bindings."""

    def __init__(self, *adapters: RetailerAdapter) -> None:
        self._adapters = list(adapters) or [ScriptedAdapter()]
        self.bindings: list[tuple[str, str, str]] = []

    def __call__(self, task: Task, account_lease: Lease, proxy_lease: Lease) -> RetailerAdapter:
        self.bindings.append((task.id, account_lease.resource_id, proxy_lease.resource_id))
        if len(self._adapters) > 1:
            return self._adapters.pop(0)
        return self._adapters[0]


def _account(rid: str) -> Resource:
    return Resource(
        id=rid,
        kind=ResourceKind.ACCOUNT,
        payload=AccountCredentials(email=f"{rid}@example.com", password="pw"),
    )


def _proxy(rid: str) -> Resource:
    return Resource(id=rid, kind=ResourceKind.PROXY, payload=ProxyEndpoint(host="10.0.0.1", port=8080))


def _spec(task_id: str, **overrides: Any) -> TaskSpec:
    fields: dict[str, Any] = {"id": task_id, "retailer": "costco", "item_ref": f"https://x/{task_id}"}
    fields.update(overrides)
    return TaskSpec(**fields)


def _settings(**overrides: Any) -> Settings:
    fields: dict[str, Any] = {
        "max_concurrent": 2,
        "max_attempts": 3,
        "stage_timeout_s": 2.0,
        "acquire_timeout_s": 1.0,
        "retry_backoff_base_s": 0.01,
        "retry_backoff_max_s": 0.05,
        "retry_jitter_s": 0.0,
        "resource_retry_delay_s": 0.01,
        "max_resource_wait_s": 30.0,
    }
    fields.update(overrides)
    return Settings(**fields)


def _notifier() -> MagicMock:
    notifier = MagicMock(spec=Notifier)
    notifier.notify = AsyncMock(return_value=True)
    return notifier


def _sent(notifier: MagicMock) -> list[NotifyEvent]:
    return [call.args[0] for call in notifier.notify.await_args_list]


def _build(
    factory: RecordingFactory,
    *,
    accounts: list[Resource] | None = None,
    proxies: list[Resource] | None = None,
    clock: FakeClock | None = None,
    ctx: RunContext | None = None,
    **settings_overrides: Any,
) -> tuple[Orchestrator, MagicMock]:
    settings = _settings(**settings_overrides)
    notifier = _notifier()
    orchestrator = Orchestrator(
        TaskScheduler(max_attempts=settings.max_attempts),
        ResourcePool(ResourceKind.ACCOUNT, accounts or [_account("a1")], clock=clock),
        ResourcePool(ResourceKind.PROXY, proxies or [_proxy("p1")], clock=clock),
        factory,
        notifier,
        settings,
        ctx,
    )
    return orchestrator, notifier


async def _drain(orchestrator: Orchestrator) -> None:
    await asyncio.wait_for(orchestrator.run_until_drained(), timeout=5.0)


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------


class TestResourceContention:
    @pytest.mark.asyncio
    async def test_second_task_waits_for_released_account(self, clock: FakeClock) -> None:
        factory = RecordingFactory(ScriptedAdapter(checkout_delay=0.05))
        orchestrator, notifier = _build(
            factory, accounts=[_account("a1"), _account("a2")], clock=clock
        )
        accounts, proxies = orchestrator.pools
        accounts.get("a2").health.cooldown_until = clock.now + 10_000

        orchestrator.submit(_spec("t1", priority=Priority.HIGH))
        orchestrator.submit(_spec("t2", priority=Priority.HIGH))
        await _drain(orchestrator)

        assert factory.bindings == [("t1", "a1", "p1"), ("t2", "a1", "p1")]
        assert orchestrator.status("t1") == TaskStatus.SUCCEEDED
        assert orchestrator.status("t2") == TaskStatus.SUCCEEDED
        assert orchestrator.scheduler.get("t2").attempts == 0
        assert orchestrator.stats.waiting_for_resources >= 1
        assert accounts.status_of("a2") == ResourceStatus.COOLDOWN
        assert accounts.health_snapshot().leased == 0
        assert proxies.health_snapshot().leased == 0
        assert [e.kind for e in _sent(notifier)] == [NotifyKind.SUCCEEDED, NotifyKind.SUCCEEDED]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_resource_wait(self) -> None:
        factory = RecordingFactory()
        orchestrator, notifier = _build(factory, max_resource_wait_s=0.05)
        accounts, _ = orchestrator.pools
        await accounts.mark_banned("a1", None)

        orchestrator.submit(_spec("t1"))
        await _drain(orchestrator)

        task = orchestrator.scheduler.get("t1")
        assert task.status == TaskStatus.FAILED
        assert task.last_failure == FailureKind.NO_RESOURCE
        assert task.attempts == 0
        assert factory.bindings == []
        (event,) = _sent(notifier)
        assert event.urgent
        assert event.failure == FailureKind.NO_RESOURCE


class TestDetectionBlock:
    @pytest.mark.asyncio
    async def test_proxy_banned_for_retailer_and_retry_uses_another(self) -> None:
        blocked = ScriptedAdapter(
            cart=CartResult(ok=False, failure=FailureKind.DETECTION_BLOCKED, detail="Access Denied")
        )
        factory = RecordingFactory(blocked, ScriptedAdapter())
        orchestrator, notifier = _build(factory, proxies=[_proxy("p1"), _proxy("p2")])

        orchestrator.submit(_spec("t1"))
        await _drain(orchestrator)

        assert [b[2] for b in factory.bindings] == ["p1", "p2"]
        task = orchestrator.scheduler.get("t1")
        assert task.status == TaskStatus.SUCCEEDED
        assert task.attempts == 1
        assert orchestrator.stats.retried == 1

        _, proxies = orchestrator.pools
        assert proxies.status_of("p1", "costco") == ResourceStatus.BANNED
        assert proxies.status_of("p1", "bestbuy") == ResourceStatus.ACTIVE
        lease = await proxies.acquire(AcquireCriteria(scope="bestbuy"), task_id="lookup")
        await proxies.release(lease.resource_id)
        assert [e.kind for e in _sent(notifier)] == [NotifyKind.SUCCEEDED]


# ---------------------------------------------------------------------------
# Outcome routing
# ---------------------------------------------------------------------------


class TestRouting:
    @pytest.mark.asyncio
    async def test_fatal_failure_is_terminal_and_urgent(self) -> None:
        factory = RecordingFactory(ScriptedAdapter(stock=StockResult(in_stock=False)))
        orchestrator, notifier = _build(factory)

        orchestrator.submit(_spec("t1"))
        await _drain(orchestrator)

        task = orchestrator.scheduler.get("t1")
        assert task.status == TaskStatus.FAILED
        assert task.last_failure == FailureKind.NOT_IN_STOCK
        assert len(factory.bindings) == 1
        (event,) = _sent(notifier)
        assert event.kind == NotifyKind.FAILED
        assert event.urgent

    @pytest.mark.asyncio
    async def test_attempts_exhausted_after_retryable_failures(self) -> None:
        factory = RecordingFactory(
            ScriptedAdapter(checkout=CheckoutResult(ok=False, failure=FailureKind.TIMEOUT))
        )
        orchestrator, notifier = _build(factory, max_attempts=2)

        orchestrator.submit(_spec("t1"))
        await _drain(orchestrator)

        task = orchestrator.scheduler.get("t1")
        assert task.status == TaskStatus.FAILED
        assert task.last_failure == FailureKind.ATTEMPTS_EXHAUSTED
        assert task.attempts == 2
        assert len(factory.bindings) == 2
        (event,) = _sent(notifier)
        assert event.urgent
        assert event.failure == FailureKind.ATTEMPTS_EXHAUSTED

        _, proxies = orchestrator.pools
        assert len(proxies.get("p1").health.failures) == 2

    @pytest.mark.asyncio
    async def test_retries_notify_only_when_enabled(self) -> None:
        factory = RecordingFactory(
            ScriptedAdapter(checkout=CheckoutResult(ok=False, failure=FailureKind.TRANSIENT_ERROR)),
            ScriptedAdapter(),
        )
        orchestrator, notifier = _build(factory, ctx=RunContext(notify_retries=True))

        orchestrator.submit(_spec("t1"))
        await _drain(orchestrator)

        kinds = [e.kind for e in _sent(notifier)]
        assert kinds == [NotifyKind.RETRYING, NotifyKind.SUCCEEDED]
        assert not _sent(notifier)[0].urgent

    @pytest.mark.asyncio
    async def test_captcha_gives_one_terminal_event_with_hint(self) -> None:
        factory = RecordingFactory(
            ScriptedAdapter(login=LoginResult(ok=False, failure=FailureKind.CAPTCHA)),
        )
        orchestrator, notifier = _build(factory, max_attempts=2, proxies=[_proxy("p1"), _proxy("p2")])

        orchestrator.submit(_spec("t1"))
        await _drain(orchestrator)

        assert len(factory.bindings) == 2
        (event,) = _sent(notifier)
        assert event.kind == NotifyKind.FAILED
        assert event.urgent
        assert event.failure == FailureKind.ATTEMPTS_EXHAUSTED
        assert "Manual intervention needed" in event.message

    @pytest.mark.asyncio
    async def test_captcha_retry_reported_as_intervention_when_enabled(self) -> None:
        factory = RecordingFactory(
            ScriptedAdapter(login=LoginResult(ok=False, failure=FailureKind.CAPTCHA)),
            ScriptedAdapter(),
        )
        orchestrator, notifier = _build(
            factory, ctx=RunContext(notify_retries=True), proxies=[_proxy("p1"), _proxy("p2")]
        )

        orchestrator.submit(_spec("t1"))
        await _drain(orchestrator)

        retry, final = _sent(notifier)
        assert retry.kind == NotifyKind.INTERVENTION
        assert retry.urgent
        assert retry.failure == FailureKind.CAPTCHA
        assert final.kind == NotifyKind.SUCCEEDED

    @pytest.mark.asyncio
    async def test_factory_error_counts_as_transient(self) -> None:
        def broken(task: Task, account_lease: Lease, proxy_lease: Lease) -> RetailerAdapter:
            raise OrchestratorError("no adapter for costco")

        orchestrator, notifier = _build(RecordingFactory(), max_attempts=1)
        orchestrator._factory = broken

        orchestrator.submit(_spec("t1"))
        await _drain(orchestrator)

        task = orchestrator.scheduler.get("t1")
        assert task.status == TaskStatus.FAILED
        assert orchestrator.stats.failures_by_kind["transient_error"] == 1
        accounts, proxies = orchestrator.pools
        assert accounts.health_snapshot().leased == 0
        assert proxies.health_snapshot().leased == 0
        assert len(proxies.get("p1").health.failures) == 1

    @pytest.mark.asyncio
    async def test_adapter_is_closed_after_run(self) -> None:
        adapter = ScriptedAdapter()
        orchestrator, _ = _build(RecordingFactory(adapter))
        orchestrator.submit(_spec("t1"))
        await _drain(orchestrator)
        assert adapter.closed


# ---------------------------------------------------------------------------
# Adapter lifecycle
# ---------------------------------------------------------------------------


class CloseFails(ScriptedAdapter):
    """Completes checkout, then fails while closing its browser."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.checkouts = 0

    async def checkout(self, account: AccountCredentials) -> CheckoutResult:
        self.checkouts += 1
        return await super().checkout(account)

    async def close(self) -> None:
        raise RuntimeError("browser already gone")


class OpenHangs(ScriptedAdapter):
    """Never finishes launching its browser."""

    async def open(self) -> None:
        await asyncio.Event().wait()


class TestAdapterLifecycle:
    @pytest.mark.asyncio
    async def test_close_error_keeps_successful_outcome(self) -> None:
        adapter = CloseFails()
        factory = RecordingFactory(adapter)
        orchestrator, notifier = _build(factory)

        orchestrator.submit(_spec("t1"))
        await _drain(orchestrator)

        task = orchestrator.scheduler.get("t1")
        assert task.status == TaskStatus.SUCCEEDED
        assert task.order_reference == "ORD-1"
        assert adapter.checkouts == 1
        assert len(factory.bindings) == 1
        assert [e.kind for e in _sent(notifier)] == [NotifyKind.SUCCEEDED]

        accounts, proxies = orchestrator.pools
        assert accounts.health_snapshot().leased == 0
        assert proxies.health_snapshot().leased == 0
        assert len(proxies.get("p1").health.failures) == 0

    @pytest.mark.asyncio
    async def test_hanging_open_times_out_and_frees_the_slot(self) -> None:
        adapter = OpenHangs()
        orchestrator, notifier = _build(RecordingFactory(adapter), max_attempts=1, stage_timeout_s=0.1)

        orchestrator.submit(_spec("t1"))
        await _drain(orchestrator)

        task = orchestrator.scheduler.get("t1")
        assert task.status == TaskStatus.FAILED
        assert orchestrator.stats.failures_by_kind["timeout"] == 1
        assert adapter.closed
        (event,) = _sent(notifier)
        assert event.kind == NotifyKind.FAILED

        accounts, proxies = orchestrator.pools
        assert accounts.health_snapshot().leased == 0
        assert proxies.health_snapshot().leased == 0
        assert len(proxies.get("p1").health.failures) == 1

    @pytest.mark.asyncio
    async def test_proxy_released_when_account_release_fails(self) -> None:
        orchestrator, _ = _build(RecordingFactory())
        accounts, proxies = orchestrator.pools
        accounts.release = AsyncMock(side_effect=NotLeasedError("account", "a1"))

        orchestrator.submit(_spec("t1"))
        await _drain(orchestrator)

        assert orchestrator.scheduler.get("t1").status == TaskStatus.FAILED
        accounts.release.assert_awaited_once_with("a1")
        assert proxies.health_snapshot().leased == 0


# ---------------------------------------------------------------------------
# Submission surface
# ---------------------------------------------------------------------------


class TestSubmission:
    @pytest.mark.asyncio
    async def test_duplicate_submit(self) -> None:
        orchestrator, _ = _build(RecordingFactory())
        orchestrator.submit(_spec("t1"))
        with pytest.raises(DuplicateTaskError):
            orchestrator.submit(_spec("t1"))
        assert orchestrator.stats.submitted == 1

    @pytest.mark.asyncio
    async def test_exhausted_task_is_not_run_again(self) -> None:
        factory = RecordingFactory(
            ScriptedAdapter(checkout=CheckoutResult(ok=False, failure=FailureKind.TIMEOUT))
        )
        orchestrator, _ = _build(factory, max_attempts=1)

        orchestrator.submit(_spec("t1"))
        await _drain(orchestrator)
        assert orchestrator.scheduler.get("t1").last_failure == FailureKind.ATTEMPTS_EXHAUSTED

        with pytest.raises(DuplicateTaskError, match="exhausting its attempts"):
            orchestrator.submit(_spec("t1"))
        await _drain(orchestrator)

        assert len(factory.bindings) == 1
        assert orchestrator.status("t1") == TaskStatus.FAILED
        assert orchestrator.stats.submitted == 1

    @pytest.mark.asyncio
    async def test_cancel_queued_task(self) -> None:
        factory = RecordingFactory()
        orchestrator, notifier = _build(factory)
        orchestrator.submit(_spec("t1"))

        assert await orchestrator.cancel("t1") is True
        await _drain(orchestrator)

        assert orchestrator.status("t1") == TaskStatus.CANCELLED
        assert factory.bindings == []
        (event,) = _sent(notifier)
        assert event.kind == NotifyKind.CANCELLED
        assert not event.urgent

    @pytest.mark.asyncio
    async def test_cancel_running_task_stops_at_stage_boundary(self) -> None:
        gate = asyncio.Event()
        factory = RecordingFactory(ScriptedAdapter(login_gate=gate))
        orchestrator, notifier = _build(factory)
        orchestrator.submit(_spec("t1"))

        loop_task = asyncio.create_task(orchestrator.run_until_drained())
        while orchestrator.active_count == 0:
            await asyncio.sleep(0.001)
        assert orchestrator.status("t1") == TaskStatus.RUNNING

        assert await orchestrator.cancel("t1") is True
        gate.set()
        await asyncio.wait_for(loop_task, timeout=5.0)

        assert orchestrator.status("t1") == TaskStatus.CANCELLED
        (event,) = _sent(notifier)
        assert event.kind == NotifyKind.CANCELLED
        assert not event.urgent

    @pytest.mark.asyncio
    async def test_cancel_unknown(self) -> None:
        orchestrator, _ = _build(RecordingFactory())
        with pytest.raises(UnknownTaskError):
            await orchestrator.cancel("ghost")

    @pytest.mark.asyncio
    async def test_stop_ends_run_forever(self) -> None:
        orchestrator, _ = _build(RecordingFactory())
        loop_task = asyncio.create_task(orchestrator.run_forever())
        await asyncio.sleep(0.01)
        assert orchestrator.is_running

        with pytest.raises(OrchestratorError):
            await orchestrator.run_until_drained()

        orchestrator.stop()
        await asyncio.wait_for(loop_task, timeout=5.0)
        assert not orchestrator.is_running

    @pytest.mark.asyncio
    async def test_run_forever_picks_up_late_submissions(self) -> None:
        factory = RecordingFactory()
        orchestrator, _ = _build(factory)
        loop_task = asyncio.create_task(orchestrator.run_forever())
        await asyncio.sleep(0.01)

        orchestrator.submit(_spec("late"))
        while orchestrator.scheduler.finished_count == 0:
            await asyncio.sleep(0.005)
        orchestrator.stop()
        await asyncio.wait_for(loop_task, timeout=5.0)

        assert orchestrator.status("late") == TaskStatus.SUCCEEDED


# ---------------------------------------------------------------------------
# Persistence hooks
# ---------------------------------------------------------------------------


class TestPersistence:
    @pytest.mark.asyncio
    async def test_session_and_outcome_saved(self) -> None:
        sessions = MagicMock(spec=SessionRepository)
        sessions.save = AsyncMock()
        outcomes = MagicMock(spec=OutcomeRepository)
        outcomes.record = AsyncMock()

        settings = _settings()
        orchestrator = Orchestrator(
            TaskScheduler(max_attempts=settings.max_attempts),
            ResourcePool(ResourceKind.ACCOUNT, [_account("a1")]),
            ResourcePool(ResourceKind.PROXY, [_proxy("p1")]),
            RecordingFactory(),
            _notifier(),
            settings,
            outcome_repo=outcomes,
            session_repo=sessions,
        )
        orchestrator.submit(_spec("t1"))
        await _drain(orchestrator)

        sessions.save.assert_awaited_once_with(ResourceKind.ACCOUNT, "a1", b"cookie")
        outcomes.record.assert_awaited_once()
        recorded: Task = outcomes.record.await_args.args[0]
        assert recorded.id == "t1"
        assert recorded.order_reference == "ORD-1"
        accounts, _ = orchestrator.pools
        assert accounts.get("a1").session_blob == b"cookie"
