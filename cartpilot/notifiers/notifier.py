"""Fire-and-forget notifier sink for Cartpilot.

Provides :class:`Notifier`, the single object the orchestrator calls to
report task outcomes.  It owns the decision of *whether* to send (based on
:class:`~cartpilot.core.run_context.RunContext` and on whether a webhook is
configured) and delegates to:

* :func:`~cartpilot.notifiers.formatter.build_payload`: message formatting.
* :class:`~cartpilot.notifiers.webhook.WebhookClient`: transport.

:meth:`Notifier.notify` **never raises**.  A notification that cannot be
delivered is logged and counted; the purchase pipeline is never held up by
the notification channel.

Typical usage::

    from cartpilot.notifiers.notifier import Notifier, NotifyEvent, NotifyKind

    async with WebhookClient(url=settings.webhook_url) as client:
        notifier = Notifier(client=client, ctx=ctx)
        await notifier.notify(
            NotifyEvent(task_id="ps5-costco", kind=NotifyKind.SUCCEEDED, message="order 123")
        )
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum

from cartpilot.core import events
from cartpilot.core.failures import FailureKind
from cartpilot.core.run_context import RunContext
from cartpilot.notifiers.formatter import build_payload, format_event
from cartpilot.notifiers.webhook import WebhookClient

__all__ = ["Notifier", "NotifyEvent", "NotifyKind"]

logger = logging.getLogger(__name__)


class NotifyKind(StrEnum):
    """What a notification reports."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    RETRYING = "retrying"
    INTERVENTION = "intervention"


@dataclass(frozen=True)
class NotifyEvent:
    """One notification.

    Attributes:
        task_id: Task the event is about.
        kind: :class:`NotifyKind`.
        message: Human-readable body.
        urgent: Urgent events ping the channel.
        failure: Failure classification, when the event reports one.
    """

    task_id: str
    kind: NotifyKind
    message: str = ""
    urgent: bool = False
    failure: FailureKind | None = None


class Notifier:
    """Formats and delivers :class:`NotifyEvent` objects, swallowing failures.

    Modes:

    * **no client** (no webhook configured): events are logged only.
    * **dry-run** (``ctx.dry_run=True``): the payload is formatted and
      logged at ``INFO`` instead of being posted.
    * **live**: the payload is posted via the webhook client.

    Args:
        client: Open :class:`WebhookClient`, or ``None``.  The Notifier does
            not manage the client's lifecycle.
        ctx: Runtime operating mode flags.
    """

    def __init__(self, client: WebhookClient | None, ctx: RunContext) -> None:
        self._client = client
        self._ctx = ctx
        self.sent = 0
        self.failed = 0

    async def notify(self, event: NotifyEvent) -> bool:
        """Deliver *event*; never raises.

        Returns:
            ``True`` if the event was posted (live) or logged (dry-run / no
            client); ``False`` if delivery failed.
        """
        try:
            payload = build_payload(event)

            if self._client is None or not self._ctx.should_post:
                logger.info(
                    "[%s] Notification for %s: %s",
                    "dry-run" if self._ctx.dry_run else "no-webhook",
                    event.task_id,
                    format_event(event),
                    extra={"event": events.NOTIFY_SENT},
                )
                self.sent += 1
                return True

            await self._client.post(payload)
        except Exception as exc:  # noqa: BLE001
            self.failed += 1
            logger.error(
                "Notification for %s (%s) not delivered: %s",
                event.task_id,
                event.kind,
                exc,
                extra={"event": events.NOTIFY_ERROR},
            )
            return False

        self.sent += 1
        logger.info(
            "Notification sent for %s (%s%s).",
            event.task_id,
            event.kind,
            ", urgent" if event.urgent else "",
            extra={"event": events.NOTIFY_SENT},
        )
        return True
