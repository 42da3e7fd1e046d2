"""Unit tests for :mod:`cartpilot.storage`.

All tests run against in-memory SQLite through the real :func:`open_db`
bootstrap, so the schema and the repositories are exercised together.
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import aiosqlite
import pytest

from cartpilot.core.exceptions import StorageError
from cartpilot.core.failures import FailureKind
from cartpilot.core.models import Task, TaskSpec, TaskStatus
from cartpilot.storage import OutcomeRepository, SessionRepository, open_db


def _finished_task(task_id: str, status: TaskStatus, failure: FailureKind | None = None) -> Task:
    task = Task(spec=TaskSpec(id=task_id, retailer="Costco", item_ref="https://x/item"))
    task.set_status(status)
    if failure is not None:
        task.record_failure(failure, f"{failure} detail")
    task.attempts = 2
    return task


# ---------------------------------------------------------------------------
# Schema bootstrap
# ---------------------------------------------------------------------------


class TestOpenDb:
    @pytest.mark.asyncio
    async def test_memory_db_has_tables(self) -> None:
        conn = await open_db(":memory:")
        try:
            cursor = await conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
            names = {row["name"] for row in await cursor.fetchall()}
        finally:
            await conn.close()
        assert {"task_outcomes", "resource_sessions"} <= names

    @pytest.mark.asyncio
    async def test_file_db_creates_parent_directory(self, tmp_path: Path) -> None:
        target = tmp_path / "nested" / "cartpilot.db"
        conn = await open_db(target)
        await conn.close()
        assert target.exists()

    @pytest.mark.asyncio
    async def test_reopen_keeps_data(self, tmp_path: Path) -> None:
        target = tmp_path / "cartpilot.db"
        conn = await open_db(target)
        await SessionRepository(conn).save("account", "a1", b"cookie")
        await conn.close()

        conn = await open_db(target)
        try:
            assert await SessionRepository(conn).load("account", "a1") == b"cookie"
        finally:
            await conn.close()


# ---------------------------------------------------------------------------
# OutcomeRepository
# ---------------------------------------------------------------------------


class TestOutcomeRepository:
    @pytest.mark.asyncio
    async def test_record_and_read_back(self) -> None:
        conn = await open_db(":memory:")
        try:
            repo = OutcomeRepository(conn)
            succeeded = _finished_task("t1", TaskStatus.SUCCEEDED)
            succeeded.order_reference = "ORD-9"
            await repo.record(succeeded)

            (row,) = await repo.for_task("t1")
        finally:
            await conn.close()

        assert row["retailer"] == "costco"
        assert row["status"] == "succeeded"
        assert row["failure"] is None
        assert row["attempts"] == 2
        assert row["order_reference"] == "ORD-9"
        assert row["finished_at"]

    @pytest.mark.asyncio
    async def test_history_and_counts(self) -> None:
        conn = await open_db(":memory:")
        try:
            repo = OutcomeRepository(conn)
            await repo.record(_finished_task("t1", TaskStatus.FAILED, FailureKind.TIMEOUT))
            await repo.record(_finished_task("t1", TaskStatus.SUCCEEDED))
            await repo.record(_finished_task("t2", TaskStatus.CANCELLED, FailureKind.CANCELLED))

            history = await repo.for_task("t1")
            counts = await repo.count_by_status()
        finally:
            await conn.close()

        assert [r["status"] for r in history] == ["failed", "succeeded"]
        assert history[0]["failure"] == "timeout"
        assert history[0]["detail"] == "timeout detail"
        assert counts == {"failed": 1, "succeeded": 1, "cancelled": 1}

    @pytest.mark.asyncio
    async def test_driver_error_becomes_storage_error(self) -> None:
        conn = MagicMock(spec=aiosqlite.Connection)
        conn.execute = AsyncMock(side_effect=aiosqlite.OperationalError("disk I/O error"))
        with pytest.raises(StorageError, match="disk I/O error"):
            await OutcomeRepository(conn).record(_finished_task("t1", TaskStatus.FAILED))


# ---------------------------------------------------------------------------
# SessionRepository
# ---------------------------------------------------------------------------


class TestSessionRepository:
    @pytest.mark.asyncio
    async def test_upsert_load_all_and_delete(self) -> None:
        conn = await open_db(":memory:")
        try:
            repo = SessionRepository(conn)
            await repo.save("account", "a1", b"old")
            await repo.save("account", "a1", b"new")
            await repo.save("account", "a2", b"two")
            await repo.save("proxy", "p1", b"proxy")

            accounts = await repo.load_all("account")
            proxies = await repo.load_all("proxy")

            await repo.save("account", "a2", None)
            after_delete = await repo.load_all("account")
            missing = await repo.load("account", "a2")
        finally:
            await conn.close()

        assert accounts == {"a1": b"new", "a2": b"two"}
        assert proxies == {"p1": b"proxy"}
        assert after_delete == {"a1": b"new"}
        assert missing is None

    @pytest.mark.asyncio
    async def test_driver_error_becomes_storage_error(self) -> None:
        conn = MagicMock(spec=aiosqlite.Connection)
        conn.execute = AsyncMock(side_effect=aiosqlite.OperationalError("database is locked"))
        with pytest.raises(StorageError, match="account:a1"):
            await SessionRepository(conn).save("account", "a1", b"blob")
