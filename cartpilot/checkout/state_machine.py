"""Per-task checkout state machine.

:class:`CheckoutRun` drives one attempt of one task through the retailer
flow using a :class:`~cartpilot.retailers.base.RetailerAdapter` and the two
leases the orchestrator acquired for it.

Stages
~~~~~~
::

    idle ─▶ authenticating ─▶ checking_stock ─▶ adding_to_cart ─▶ checking_out ─▶ succeeded
                                 ▲      │
                                 │      ▼
                             waiting_for_stock        (monitor mode only)

    any non-terminal stage ─▶ failed

``succeeded`` and ``failed`` are terminal.  Every transition emits exactly one
:class:`StageEvent`; a run emits exactly one terminal event.

Classification
~~~~~~~~~~~~~~
Adapter outcomes are reduced to a
:class:`~cartpilot.core.failures.FailureKind` exactly once, here:

* an unsuccessful result object → its ``failure`` kind;
* :class:`~cartpilot.core.exceptions.RetailerFlowError` → its ``kind``;
* a stage exceeding ``stage_timeout`` → ``timeout``;
* any other exception → ``transient_error``.

Resource damage is recorded on the leases (never on the pools):

=====================  ==========================================
kind                   damage
=====================  ==========================================
account_locked         account banned for the retailer scope
detection_blocked      proxy banned for the retailer scope
captcha                proxy banned for the retailer scope
timeout                proxy failure mark
transient_error        proxy failure mark
=====================  ==========================================

Cancellation is cooperative: ``task.cancel_requested`` is checked before
every stage and around every monitor sleep.  An adapter call already in
flight always finishes first.

Typical usage::

    run = CheckoutRun(task, adapter, account_lease, proxy_lease,
                      RunConfig.from_settings(settings), on_event=print)
    outcome = await run.run()
    if outcome.succeeded:
        print(outcome.order_reference)
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Final, TypeVar

from cartpilot.core import events
from cartpilot.core.exceptions import RetailerFlowError
from cartpilot.core.failures import FailureKind
from cartpilot.core.models import FulfillmentMode, Task
from cartpilot.pool.resources import Lease
from cartpilot.retailers.base import RetailerAdapter, StageResult

if TYPE_CHECKING:
    from cartpilot.core.settings import Settings

__all__ = [
    "Stage",
    "TERMINAL_STAGES",
    "StageEvent",
    "RunOutcome",
    "RunConfig",
    "CheckoutRun",
]

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=StageResult)


# ---------------------------------------------------------------------------
# Stages and transitions
# ---------------------------------------------------------------------------


class Stage(StrEnum):
    """Stages of one checkout run."""

    IDLE = "idle"
    AUTHENTICATING = "authenticating"
    CHECKING_STOCK = "checking_stock"
    WAITING_FOR_STOCK = "waiting_for_stock"
    ADDING_TO_CART = "adding_to_cart"
    CHECKING_OUT = "checking_out"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_STAGES: Final[frozenset[Stage]] = frozenset({Stage.SUCCEEDED, Stage.FAILED})

_TRANSITIONS: Final[dict[Stage, frozenset[Stage]]] = {
    Stage.IDLE: frozenset({Stage.AUTHENTICATING, Stage.FAILED}),
    Stage.AUTHENTICATING: frozenset({Stage.CHECKING_STOCK, Stage.FAILED}),
    Stage.CHECKING_STOCK: frozenset(
        {Stage.WAITING_FOR_STOCK, Stage.ADDING_TO_CART, Stage.FAILED}
    ),
    Stage.WAITING_FOR_STOCK: frozenset({Stage.CHECKING_STOCK, Stage.FAILED}),
    Stage.ADDING_TO_CART: frozenset({Stage.CHECKING_OUT, Stage.FAILED}),
    Stage.CHECKING_OUT: frozenset({Stage.SUCCEEDED, Stage.FAILED}),
    Stage.SUCCEEDED: frozenset(),
    Stage.FAILED: frozenset(),
}

#: Which lease a failure kind damages, and how.
_BANS_ACCOUNT: Final[frozenset[FailureKind]] = frozenset({FailureKind.ACCOUNT_LOCKED})
_BANS_PROXY: Final[frozenset[FailureKind]] = frozenset(
    {FailureKind.DETECTION_BLOCKED, FailureKind.CAPTCHA}
)
_MARKS_PROXY: Final[frozenset[FailureKind]] = frozenset(
    {FailureKind.TIMEOUT, FailureKind.TRANSIENT_ERROR}
)


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StageEvent:
    """One stage transition of one run."""

    task_id: str
    from_stage: Stage
    to_stage: Stage
    timestamp: datetime
    detail: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.to_stage in TERMINAL_STAGES


@dataclass
class RunOutcome:
    """Result of :meth:`CheckoutRun.run`.

    Attributes:
        task_id: The task the run belonged to.
        stage: Final stage, ``succeeded`` or ``failed``.
        failure: Classification when ``stage`` is ``failed``.
        detail: Detail of the terminal transition.
        order_reference: Retailer order id on success, if one was reported.
        events: Every transition, in order.
    """

    task_id: str
    stage: Stage
    failure: FailureKind | None = None
    detail: str = ""
    order_reference: str | None = None
    events: list[StageEvent] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.stage == Stage.SUCCEEDED


@dataclass(frozen=True)
class RunConfig:
    """Timing and damage parameters of a run.

    Attributes:
        stage_timeout: Seconds allowed for one adapter call.
        monitor_interval_min: Lower bound of the jittered stock re-check wait.
        monitor_interval_max: Upper bound of the jittered stock re-check wait.
        max_monitor_duration: Total monitoring budget in seconds.
        account_lock_ban: Ban for a locked account; ``None`` = forever.
        detection_ban: Ban for a detected proxy; ``None`` = forever.
    """

    stage_timeout: float = 90.0
    monitor_interval_min: float = 20.0
    monitor_interval_max: float = 40.0
    max_monitor_duration: float = 3600.0
    account_lock_ban: float | None = None
    detection_ban: float | None = 21600.0

    @classmethod
    def from_settings(cls, settings: Settings) -> RunConfig:
        return cls(
            stage_timeout=settings.stage_timeout_s,
            monitor_interval_min=settings.monitor_interval_min_s,
            monitor_interval_max=settings.monitor_interval_max_s,
            max_monitor_duration=settings.max_monitor_duration_s,
            account_lock_ban=settings.account_lock_ban,
            detection_ban=settings.detection_ban,
        )


EventCallback = Callable[[StageEvent], None]


# ---------------------------------------------------------------------------
# Run
# ---------------------------------------------------------------------------


class CheckoutRun:
    """One attempt of one task through the retailer flow.

    A run is single-use: :meth:`run` may be awaited once.

    Args:
        task: The running task.  Only ``spec`` and ``cancel_requested`` are
            read; the run never changes task state.
        adapter: Entered adapter bound to this task.
        account_lease: Account lease; receives bans and the session blob.
        proxy_lease: Proxy lease; receives bans and failure marks.
        config: Timing and damage parameters.
        on_event: Called synchronously with every :class:`StageEvent`.
            Exceptions from the callback are logged and ignored.
        sleep: Sleep used for monitor waits.  Override in tests.
        rng: Random source for monitor jitter.
        clock: Monotonic clock measuring the monitoring budget.
    """

    def __init__(
        self,
        task: Task,
        adapter: RetailerAdapter,
        account_lease: Lease,
        proxy_lease: Lease,
        config: RunConfig | None = None,
        *,
        on_event: EventCallback | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        rng: random.Random | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._task = task
        self._adapter = adapter
        self._account = account_lease
        self._proxy = proxy_lease
        self._config = config or RunConfig()
        self._on_event = on_event
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._clock = clock or time.monotonic

        self._stage = Stage.IDLE
        self._events: list[StageEvent] = []
        self._failure: FailureKind | None = None
        self._detail = ""
        self._order_reference: str | None = None
        self._started = False

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def stage(self) -> Stage:
        return self._stage

    @property
    def is_terminal(self) -> bool:
        return self._stage in TERMINAL_STAGES

    @property
    def scope(self) -> str:
        """Ban scope for damage recorded by this run: the retailer tag."""
        return self._task.spec.retailer

    def outcome(self) -> RunOutcome:
        return RunOutcome(
            task_id=self._task.id,
            stage=self._stage,
            failure=self._failure,
            detail=self._detail,
            order_reference=self._order_reference,
            events=list(self._events),
        )

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(self) -> RunOutcome:
        """Drive the run to a terminal stage and return its outcome.

        If the enclosing asyncio task is cancelled, the run is closed with a
        ``cancelled`` failure event and the cancellation propagates.

        Raises:
            RuntimeError: If the run was already started.
        """
        if self._started:
            raise RuntimeError(f"CheckoutRun for {self._task.id} already started.")
        self._started = True

        try:
            await self._drive()
        except asyncio.CancelledError:
            if not self.is_terminal:
                self._fail(FailureKind.CANCELLED, "run task cancelled")
            raise

        if not self.is_terminal:  # pragma: no cover
            self._fail(FailureKind.TRANSIENT_ERROR, f"run stopped in {self._stage}")
        return self.outcome()

    async def _drive(self) -> None:
        spec = self._task.spec
        adapter = self._adapter

        # -- authenticating ------------------------------------------------
        if self._cancel_requested():
            return
        self._transition(Stage.AUTHENTICATING)
        login = await self._call(lambda: adapter.login(self._account.payload))
        if not login.ok:
            self._fail_from(login)
            return
        session_blob = getattr(login, "session_blob", None)
        if session_blob is not None:
            self._account.update_session(session_blob)

        # -- checking_stock / waiting_for_stock ----------------------------
        monitor_started: float | None = None
        while True:
            if self._cancel_requested():
                return
            self._transition(Stage.CHECKING_STOCK)
            stock = await self._call(lambda: adapter.check_stock(spec.item_ref))
            if not stock.ok:
                self._fail_from(stock)
                return
            if getattr(stock, "in_stock", False):
                break

            if spec.mode == FulfillmentMode.INSTANT:
                self._fail(FailureKind.NOT_IN_STOCK, stock.detail or "out of stock")
                return

            now = self._clock()
            if monitor_started is None:
                monitor_started = now
            delay = self._next_monitor_delay()
            if (now - monitor_started) + delay > self._config.max_monitor_duration:
                self._fail(
                    FailureKind.STOCK_TIMEOUT,
                    f"still out of stock after {now - monitor_started:.0f} s",
                )
                return

            self._transition(Stage.WAITING_FOR_STOCK, f"next check in {delay:.1f} s")
            if self._cancel_requested():
                return
            await self._sleep(delay)

        price = getattr(stock, "price", None)
        if spec.max_price is not None and price is not None and price > spec.max_price:
            self._fail(
                FailureKind.PRICE_TOO_HIGH,
                f"price {price:.2f} above limit {spec.max_price:.2f}",
            )
            return

        # -- adding_to_cart ------------------------------------------------
        if self._cancel_requested():
            return
        self._transition(Stage.ADDING_TO_CART)
        cart = await self._call(lambda: adapter.add_to_cart(spec.item_ref, spec.quantity))
        if not cart.ok:
            self._fail_from(cart)
            return

        # -- checking_out --------------------------------------------------
        if self._cancel_requested():
            return
        self._transition(Stage.CHECKING_OUT)
        result = await self._call(lambda: adapter.checkout(self._account.payload))
        if not result.ok:
            self._fail_from(result)
            return

        self._order_reference = getattr(result, "order_reference", None)
        self._transition(Stage.SUCCEEDED, result.detail or "order placed")

    # ------------------------------------------------------------------
    # Adapter boundary
    # ------------------------------------------------------------------

    async def _call(self, call: Callable[[], Awaitable[R]]) -> R | StageResult:
        """Run one adapter call under the stage timeout and classify errors."""
        stage = self._stage
        try:
            return await asyncio.wait_for(call(), timeout=self._config.stage_timeout)
        except TimeoutError:
            return StageResult(
                ok=False,
                failure=FailureKind.TIMEOUT,
                detail=f"{stage} exceeded {self._config.stage_timeout:.0f} s",
            )
        except RetailerFlowError as exc:
            return StageResult(ok=False, failure=exc.kind, detail=str(exc))
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Adapter raised during %s for task %s: %s",
                stage,
                self._task.id,
                exc,
                exc_info=True,
            )
            return StageResult(
                ok=False,
                failure=FailureKind.TRANSIENT_ERROR,
                detail=f"{type(exc).__name__}: {exc}",
            )

    def _next_monitor_delay(self) -> float:
        low = self._config.monitor_interval_min
        high = self._config.monitor_interval_max
        return min(max(self._rng.uniform(low, high), low), high)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _cancel_requested(self) -> bool:
        if not self._task.cancel_requested:
            return False
        self._fail(FailureKind.CANCELLED, f"cancelled before {self._stage}")
        return True

    def _fail_from(self, result: StageResult) -> None:
        kind = result.failure or FailureKind.TRANSIENT_ERROR
        self._fail(kind, result.detail or str(kind))

    def _fail(self, kind: FailureKind, detail: str) -> None:
        self._record_damage(kind)
        self._failure = kind
        self._transition(Stage.FAILED, detail)

    def _record_damage(self, kind: FailureKind) -> None:
        if kind in _BANS_ACCOUNT:
            self._account.flag_banned(self.scope, self._config.account_lock_ban)
        elif kind in _BANS_PROXY:
            self._proxy.flag_banned(self.scope, self._config.detection_ban)
        elif kind in _MARKS_PROXY:
            self._proxy.flag_failure(self.scope)

    def _transition(self, to_stage: Stage, detail: str = "") -> None:
        if to_stage not in _TRANSITIONS[self._stage]:
            raise RuntimeError(f"Illegal stage transition {self._stage} -> {to_stage}")

        event = StageEvent(
            task_id=self._task.id,
            from_stage=self._stage,
            to_stage=to_stage,
            timestamp=datetime.now(UTC),
            detail=detail,
        )
        self._stage = to_stage
        self._events.append(event)
        if event.is_terminal:
            self._detail = detail

        logger.log(
            logging.INFO if event.is_terminal else logging.DEBUG,
            "Stage %s -> %s%s",
            event.from_stage,
            event.to_stage,
            f" ({detail})" if detail else "",
            extra={"event": events.STAGE_TRANSITION, "stage": str(to_stage)},
        )

        if self._on_event is not None:
            try:
                self._on_event(event)
            except Exception:  # noqa: BLE001
                logger.exception("Stage event callback failed for task %s.", self._task.id)
