"""Unit tests for the ``cartpilot.core`` package.

Covers:
- :class:`~cartpilot.core.settings.Settings`: defaults, env loading,
  validators, and derived helpers.
- :mod:`~cartpilot.core.logging_config`: task-id filter and JSON output.
- :mod:`~cartpilot.core.failures`: the retryable / fatal split.
- :class:`~cartpilot.core.models.TaskSpec` validation and
  :class:`~cartpilot.core.criteria.AcquireCriteria` matching.
- :mod:`~cartpilot.core.ids`, :mod:`~cartpilot.core.exceptions`,
  :class:`~cartpilot.core.run_context.RunContext`.
"""

from __future__ import annotations

import json
import logging
import re
import sys

import pytest
from pydantic import ValidationError

from cartpilot.core import events
from cartpilot.core.criteria import AcquireCriteria
from cartpilot.core.exceptions import (
    CartpilotError,
    DuplicateTaskError,
    NoResourceAvailableError,
    NotLeasedError,
    PoolError,
    RetailerFlowError,
    WebhookError,
    WebhookRateLimitError,
)
from cartpilot.core.failures import FATAL_KINDS, RETRYABLE_KINDS, FailureKind, is_fatal, is_retryable
from cartpilot.core.ids import new_task_id, resource_key
from cartpilot.core.logging_config import (
    TASK_ID_CTX,
    JsonFormatter,
    TaskContextFilter,
    configure_logging,
    task_log_context,
)
from cartpilot.core.models import FulfillmentMode, Priority, Task, TaskSpec, TaskStatus
from cartpilot.core.run_context import RunContext
from cartpilot.core.settings import Settings

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.mark.usefixtures("clean_env")
class TestSettings:
    def test_defaults(self) -> None:
        settings = Settings()
        assert settings.max_concurrent == 4
        assert settings.max_attempts == 3
        assert settings.stage_timeout_s == 90.0
        assert (settings.monitor_interval_min_s, settings.monitor_interval_max_s) == (20.0, 40.0)
        assert settings.max_monitor_duration_s == 3600.0
        assert settings.webhook_configured is False
        assert settings.dry_run is False

    def test_reads_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MAX_CONCURRENT", "8")
        monkeypatch.setenv("WEBHOOK_URL", "https://discord.test/hook")
        monkeypatch.setenv("LOG_LEVEL", "debug")
        settings = Settings()
        assert settings.max_concurrent == 8
        assert settings.webhook_configured
        assert settings.log_level == "DEBUG"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"max_concurrent": 0},
            {"stage_timeout_s": 0},
            {"monitor_interval_min_s": 50, "monitor_interval_max_s": 40},
            {"retry_backoff_base_s": 400, "retry_backoff_max_s": 300},
            {"cooldown_base_s": 7200, "cooldown_max_s": 3600},
            {"log_format": "xml"},
            {"log_level": "LOUD"},
            {"adapter_factory": "no_colon_here"},
        ],
    )
    def test_invalid_values_rejected(self, overrides: dict[str, object]) -> None:
        with pytest.raises(ValidationError):
            Settings(**overrides)

    def test_zero_ban_means_forever(self) -> None:
        settings = Settings(account_lock_ban_s=0, detection_ban_s=0)
        assert settings.account_lock_ban is None
        assert settings.detection_ban is None
        assert Settings().detection_ban == 21600.0

    def test_cooldown_policy_built_from_settings(self) -> None:
        policy = Settings(
            failure_threshold=5,
            failure_window_s=120,
            cooldown_base_s=30,
            cooldown_max_s=300,
            cooldown_multiplier=3,
        ).to_cooldown_policy()
        assert policy.failure_threshold == 5
        assert policy.failure_window == 120
        assert policy.base_cooldown == 30
        assert policy.max_cooldown == 300
        assert policy.backoff_multiplier == 3


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


def _record(msg: str = "hello %s", args: tuple[object, ...] = ("world",)) -> logging.LogRecord:
    return logging.LogRecord("cartpilot.test", logging.INFO, __file__, 1, msg, args, None)


class TestLogging:
    def test_filter_injects_current_task_id(self) -> None:
        record = _record()
        token = TASK_ID_CTX.set("ps5-costco")
        try:
            assert TaskContextFilter().filter(record) is True
        finally:
            TASK_ID_CTX.reset(token)
        assert record.task_id == "ps5-costco"

    def test_filter_default_outside_runs(self) -> None:
        record = _record()
        TaskContextFilter().filter(record)
        assert record.task_id == "-"

    def test_task_log_context_scopes_the_id(self) -> None:
        with task_log_context("t1"):
            with task_log_context("t2"):
                assert TASK_ID_CTX.get() == "t2"
            assert TASK_ID_CTX.get() == "t1"
        assert TASK_ID_CTX.get() == "-"

    def test_json_formatter_shape(self) -> None:
        record = _record()
        record.task_id = "t1"
        record.event = events.TASK_SUCCEEDED
        record.proxy = "p1"
        payload = json.loads(JsonFormatter().format(record))

        assert payload["level"] == "INFO"
        assert payload["logger"] == "cartpilot.test"
        assert payload["message"] == "hello world"
        assert payload["task_id"] == "t1"
        assert payload["event"] == events.TASK_SUCCEEDED
        assert payload["extra"] == {"proxy": "p1"}
        assert "exc_info" not in payload
        assert re.fullmatch(r"\d{4}-\d\d-\d\dT\d\d:\d\d:\d\d\.\d{3}Z", payload["ts"])

    def test_json_formatter_without_event(self) -> None:
        payload = json.loads(JsonFormatter().format(_record()))
        assert payload["event"] is None
        assert payload["task_id"] == "-"
        assert payload["extra"] == {}

    def test_json_formatter_includes_traceback(self) -> None:
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.LogRecord(
                "cartpilot.test", logging.ERROR, __file__, 1, "failed", (), sys.exc_info()
            )
        payload = json.loads(JsonFormatter().format(record))
        assert "RuntimeError: boom" in payload["exc_info"]

    def test_configure_logging_json(self) -> None:
        configure_logging(level="INFO", fmt="json", force=True)
        handler = next(
            h
            for h in logging.getLogger().handlers
            if any(isinstance(f, TaskContextFilter) for f in h.filters)
        )
        assert isinstance(handler.formatter, JsonFormatter)
        assert logging.getLogger("httpx").level == logging.WARNING

    @pytest.mark.parametrize("kwargs", [{"level": "CHATTY"}, {"fmt": "yaml"}])
    def test_configure_logging_rejects_unknown(self, kwargs: dict[str, str]) -> None:
        with pytest.raises(ValueError):
            configure_logging(force=True, **kwargs)


# ---------------------------------------------------------------------------
# Failure taxonomy
# ---------------------------------------------------------------------------


class TestFailures:
    def test_every_kind_is_classified(self) -> None:
        classified = RETRYABLE_KINDS | FATAL_KINDS | {FailureKind.CANCELLED}
        assert classified == set(FailureKind)
        assert not RETRYABLE_KINDS & FATAL_KINDS

    @pytest.mark.parametrize(
        ("kind", "retryable"),
        [
            (FailureKind.NO_RESOURCE, True),
            (FailureKind.DETECTION_BLOCKED, True),
            (FailureKind.TIMEOUT, True),
            (FailureKind.NOT_IN_STOCK, False),
            (FailureKind.PRICE_TOO_HIGH, False),
            (FailureKind.PAYMENT_DECLINED, False),
        ],
    )
    def test_split(self, kind: FailureKind, retryable: bool) -> None:
        assert is_retryable(kind) is retryable
        assert is_fatal(kind) is not retryable

    def test_cancelled_is_neither(self) -> None:
        assert not is_retryable(FailureKind.CANCELLED)
        assert not is_fatal(FailureKind.CANCELLED)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class TestTaskSpec:
    def test_defaults_and_normalisation(self) -> None:
        spec = TaskSpec(id="t1", retailer="  Costco ", item_ref="https://x/1", region=" ")
        assert spec.retailer == "costco"
        assert spec.quantity == 1
        assert spec.max_price is None
        assert spec.mode == FulfillmentMode.INSTANT
        assert spec.priority == Priority.NORMAL
        assert spec.region is None

    @pytest.mark.parametrize(
        "overrides",
        [{"id": ""}, {"quantity": 0}, {"max_price": 0}, {"mode": "camp"}, {"priority": "urgent"}],
    )
    def test_invalid(self, overrides: dict[str, object]) -> None:
        fields: dict[str, object] = {"id": "t1", "retailer": "costco", "item_ref": "https://x/1"}
        fields.update(overrides)
        with pytest.raises(ValidationError):
            TaskSpec(**fields)

    def test_frozen(self) -> None:
        spec = TaskSpec(id="t1", retailer="costco", item_ref="https://x/1")
        with pytest.raises(ValidationError):
            spec.quantity = 2  # type: ignore[misc]

    def test_task_state(self) -> None:
        task = Task(spec=TaskSpec(id="t1", retailer="costco", item_ref="https://x/1"))
        assert task.id == "t1"
        assert task.status == TaskStatus.QUEUED
        assert not task.is_terminal

        task.account_id, task.proxy_id = "a1", "p1"
        task.record_failure(FailureKind.TIMEOUT, "slow page")
        task.set_status(TaskStatus.FAILED)
        task.clear_binding()

        assert task.is_terminal
        assert (task.last_failure, task.last_error) == (FailureKind.TIMEOUT, "slow page")
        assert (task.account_id, task.proxy_id) == (None, None)


class TestAcquireCriteria:
    def test_for_task_uses_retailer_and_region(self) -> None:
        spec = TaskSpec(id="t1", retailer="costco", item_ref="https://x/1", region="US-West")
        criteria = AcquireCriteria.for_task(spec)
        assert criteria.scope == "costco"
        assert criteria.required_tags == frozenset({"us-west"})

    def test_tag_matching_is_case_insensitive(self) -> None:
        criteria = AcquireCriteria(required_tags=["Residential", "us-west"])
        assert criteria.matches_tags({"residential", "US-WEST", "fast"})
        assert not criteria.matches_tags({"residential"})
        assert AcquireCriteria().matches_tags(set())

    def test_retailer_allow_list(self) -> None:
        criteria = AcquireCriteria(scope="Costco")
        assert criteria.allows_retailers([])
        assert criteria.allows_retailers(["COSTCO", "bestbuy"])
        assert not criteria.allows_retailers(["bestbuy"])
        assert AcquireCriteria(scope="  ").scope is None


# ---------------------------------------------------------------------------
# Ids, exceptions, run context
# ---------------------------------------------------------------------------


class TestIds:
    def test_new_task_id(self) -> None:
        first, second = new_task_id(" Costco"), new_task_id("costco")
        assert re.fullmatch(r"costco-[0-9a-f]{8}", first)
        assert first != second

    def test_resource_key(self) -> None:
        assert resource_key("proxy", "p1") == "proxy:p1"


class TestExceptions:
    def test_hierarchy(self) -> None:
        assert issubclass(NoResourceAvailableError, PoolError)
        assert issubclass(PoolError, CartpilotError)
        assert issubclass(WebhookRateLimitError, WebhookError)

    def test_messages_carry_context(self) -> None:
        assert str(NotLeasedError("proxy", "p1")) == "[proxy pool] resource 'p1' is not leased"
        assert "t1" in str(DuplicateTaskError("t1"))
        assert WebhookRateLimitError(2.5).status_code == 429

    def test_retailer_flow_error_keeps_kind(self) -> None:
        exc = RetailerFlowError("costco", FailureKind.CAPTCHA, "challenge page")
        assert exc.kind == FailureKind.CAPTCHA
        assert str(exc) == "[costco] captcha: challenge page"


class TestRunContext:
    def test_modes(self) -> None:
        assert RunContext().should_post
        assert RunContext().mode_label == "live"
        dry = RunContext(dry_run=True)
        assert not dry.should_post
        assert "dry-run" in str(dry)
