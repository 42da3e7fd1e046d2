"""Discord message formatter for notifier events.

Converts a :class:`~cartpilot.notifiers.notifier.NotifyEvent` into a
Discord webhook payload ``{"content": ..., "allowed_mentions": ...}``.

Rules
-----
* Urgent events are prefixed with ``@everyone 🚨`` and are the only ones
  allowed to ping; non-urgent payloads disable every mention.
* Free text (task ids, adapter details) is escaped so that Discord markdown
  characters render literally and a stray ``@everyone`` inside a detail
  string never pings.
* Content is truncated to Discord's 2000-character limit.

Typical usage::

    from cartpilot.notifiers.formatter import build_payload

    await webhook_client.post(build_payload(event))
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Any, Final

if TYPE_CHECKING:
    from cartpilot.notifiers.notifier import NotifyEvent

__all__ = [
    "URGENT_PREFIX",
    "escape_markdown",
    "format_event",
    "build_payload",
]

logger = logging.getLogger(__name__)

#: Prefix of every urgent message.
URGENT_PREFIX: Final[str] = "@everyone 🚨"

#: Discord rejects message content longer than this.
MAX_CONTENT_LENGTH: Final[int] = 2000

_MARKDOWN_SPECIAL = re.compile(r"([\\*_~`|>])")
_MENTION = re.compile(r"@(everyone|here)")

_TITLES: Final[dict[str, str]] = {
    "succeeded": "✅ Checkout succeeded",
    "failed": "❌ Task failed",
    "cancelled": "⏹️ Task cancelled",
    "retrying": "🔁 Retrying task",
    "intervention": "🔴 Manual intervention needed",
}


def escape_markdown(text: str) -> str:
    """Escape Discord markdown characters and defuse mass mentions."""
    escaped = _MARKDOWN_SPECIAL.sub(r"\\\1", text)
    return _MENTION.sub("@\u200b\\1", escaped)


def format_event(event: NotifyEvent) -> str:
    """Render *event* as Discord message content.

    Layout::

        @everyone 🚨 **❌ Task failed** `ps5-costco`
        price_too_high: price 649.00 above limit 549.99
    """
    title = _TITLES.get(str(event.kind), str(event.kind))
    lines = [f"**{title}** `{event.task_id.replace('`', '')}`"]
    if event.message:
        lines.append(escape_markdown(event.message))

    content = "\n".join(lines)
    if event.urgent:
        content = f"{URGENT_PREFIX} {content}"

    if len(content) > MAX_CONTENT_LENGTH:
        content = content[: MAX_CONTENT_LENGTH - 1] + "…"
    return content


def build_payload(event: NotifyEvent) -> dict[str, Any]:
    """Build the JSON payload for a Discord-compatible webhook."""
    return {
        "content": format_event(event),
        "allowed_mentions": {"parse": ["everyone"] if event.urgent else []},
    }
