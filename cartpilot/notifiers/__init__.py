"""Webhook notification delivery and message formatting."""

from cartpilot.notifiers.formatter import build_payload, escape_markdown, format_event
from cartpilot.notifiers.notifier import Notifier, NotifyEvent, NotifyKind
from cartpilot.notifiers.webhook import WebhookClient

__all__ = [
    "Notifier",
    "NotifyEvent",
    "NotifyKind",
    "WebhookClient",
    "build_payload",
    "escape_markdown",
    "format_event",
]
