"""Repositories for terminal task outcomes and resource session blobs.

* :class:`OutcomeRepository`: append-only audit trail of finished tasks
  (``task_outcomes`` table).
* :class:`SessionRepository`: latest session blob per resource
  (``resource_sessions`` table), keyed by
  :func:`~cartpilot.core.ids.resource_key`.

Neither class owns the connection lifecycle; the caller supplies an open
:class:`aiosqlite.Connection` (see :func:`~cartpilot.storage.database.open_db`)
and closes it when done.  Database errors surface as
:class:`~cartpilot.core.exceptions.StorageError`.

Typical usage::

    conn = await open_db(settings.database_path_resolved)
    outcomes = OutcomeRepository(conn)
    sessions = SessionRepository(conn)

    account_pool.load_sessions(await sessions.load_all("account"))
    await outcomes.record(task, detail="order placed")
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

import aiosqlite

from cartpilot.core.exceptions import StorageError
from cartpilot.core.ids import RESOURCE_KEY_SEPARATOR, resource_key
from cartpilot.core.models import Task

__all__ = [
    "OutcomeRepository",
    "SessionRepository",
]

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Task outcomes
# ---------------------------------------------------------------------------


class OutcomeRepository:
    """Data-access object for the ``task_outcomes`` table."""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def record(self, task: Task) -> None:
        """Append the terminal outcome of *task*.

        Raises:
            StorageError: If the insert fails.
        """
        try:
            await self._conn.execute(
                """
                INSERT INTO task_outcomes
                    (task_id, retailer, item_ref, status, failure, detail,
                     attempts, order_reference, finished_at)
                VALUES
                    (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    task.id,
                    task.spec.retailer,
                    task.spec.item_ref,
                    str(task.status),
                    str(task.last_failure) if task.last_failure else None,
                    task.last_error,
                    task.attempts,
                    task.order_reference,
                    datetime.now(UTC).isoformat(),
                ),
            )
            await self._conn.commit()
        except aiosqlite.Error as exc:
            raise StorageError(f"Could not record outcome for {task.id}: {exc}") from exc
        logger.debug("Recorded outcome for %s (%s)", task.id, task.status)

    async def for_task(self, task_id: str) -> list[dict[str, Any]]:
        """All recorded outcomes for *task_id*, oldest first."""
        cursor = await self._conn.execute(
            "SELECT * FROM task_outcomes WHERE task_id = ? ORDER BY id",
            (task_id,),
        )
        return [dict(row) for row in await cursor.fetchall()]

    async def count_by_status(self) -> dict[str, int]:
        """``{status: count}`` over the whole table."""
        cursor = await self._conn.execute(
            "SELECT status, COUNT(*) AS n FROM task_outcomes GROUP BY status"
        )
        return {row["status"]: row["n"] for row in await cursor.fetchall()}


# ---------------------------------------------------------------------------
# Session blobs
# ---------------------------------------------------------------------------


class SessionRepository:
    """Data-access object for the ``resource_sessions`` table."""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def save(self, kind: str, resource_id: str, blob: bytes | None) -> None:
        """Upsert the blob for one resource; ``None`` deletes the row.

        Raises:
            StorageError: If the write fails.
        """
        key = resource_key(kind, resource_id)
        try:
            if blob is None:
                await self._conn.execute(
                    "DELETE FROM resource_sessions WHERE resource_key = ?",
                    (key,),
                )
            else:
                await self._conn.execute(
                    """
                    INSERT INTO resource_sessions (resource_key, blob, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(resource_key) DO UPDATE SET
                        blob = excluded.blob,
                        updated_at = excluded.updated_at
                    """,
                    (key, blob, datetime.now(UTC).isoformat()),
                )
            await self._conn.commit()
        except aiosqlite.Error as exc:
            raise StorageError(f"Could not save session for {key}: {exc}") from exc
        logger.debug("Saved session blob for %s (%s)", key, "deleted" if blob is None else f"{len(blob)} bytes")

    async def load(self, kind: str, resource_id: str) -> bytes | None:
        cursor = await self._conn.execute(
            "SELECT blob FROM resource_sessions WHERE resource_key = ?",
            (resource_key(kind, resource_id),),
        )
        row = await cursor.fetchone()
        return bytes(row["blob"]) if row is not None else None

    async def load_all(self, kind: str) -> dict[str, bytes]:
        """``{resource_id: blob}`` for every stored resource of *kind*."""
        prefix = f"{kind}{RESOURCE_KEY_SEPARATOR}"
        cursor = await self._conn.execute(
            "SELECT resource_key, blob FROM resource_sessions WHERE resource_key LIKE ?",
            (f"{prefix}%",),
        )
        return {
            row["resource_key"][len(prefix):]: bytes(row["blob"])
            for row in await cursor.fetchall()
        }
