"""SQLite database initialisation for Cartpilot.

This module is responsible for:

* Opening (or creating) the SQLite file.
* Configuring PRAGMA settings (WAL journal mode, foreign keys).
* Bootstrapping the schema via ``CREATE TABLE IF NOT EXISTS``, which is
  idempotent and safe on every startup.

Two tables are kept:

* ``task_outcomes``: one row per terminal task outcome (audit trail).
* ``resource_sessions``: the latest session blob (cookies) per resource,
  loaded into the pools at startup and written back on lease release.

Typical usage::

    from cartpilot.storage.database import open_db

    conn = await open_db(settings.database_path_resolved)
    ...
    await conn.close()
"""

from __future__ import annotations

import logging
from pathlib import Path

import aiosqlite

__all__ = [
    "DEFAULT_DB_PATH",
    "open_db",
    "create_schema",
]

logger = logging.getLogger(__name__)

#: Fallback database path when no explicit path is passed to :func:`open_db`.
DEFAULT_DB_PATH: Path = Path("data/cartpilot.db")

# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

#: Column notes
#: ------------
#: task_id          Task identifier.  Not unique: a task id may be
#:                  resubmitted after it finished.
#: status           Terminal status (succeeded / failed / cancelled).
#: failure          FailureKind value, NULL on success.
#: attempts         Counted attempts at completion.
#: order_reference  Retailer order id, NULL unless succeeded.
#: finished_at      ISO-8601 UTC timestamp, set by the application.
_DDL_TASK_OUTCOMES = """\
CREATE TABLE IF NOT EXISTS task_outcomes (
    id               INTEGER  PRIMARY KEY AUTOINCREMENT,
    task_id          TEXT     NOT NULL,
    retailer         TEXT     NOT NULL,
    item_ref         TEXT     NOT NULL,
    status           TEXT     NOT NULL,
    failure          TEXT,
    detail           TEXT     NOT NULL DEFAULT '',
    attempts         INTEGER  NOT NULL DEFAULT 0,
    order_reference  TEXT,
    finished_at      TEXT     NOT NULL
)"""

_DDL_TASK_OUTCOMES_INDEX = (
    "CREATE INDEX IF NOT EXISTS idx_task_outcomes_task_id ON task_outcomes (task_id)"
)

#: resource_key is ``"<kind>:<resource_id>"`` (see cartpilot.core.ids).
_DDL_RESOURCE_SESSIONS = """\
CREATE TABLE IF NOT EXISTS resource_sessions (
    resource_key  TEXT  NOT NULL,
    blob          BLOB  NOT NULL,
    updated_at    TEXT  NOT NULL,
    PRIMARY KEY (resource_key)
)"""


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def open_db(path: Path | str | None = None) -> aiosqlite.Connection:
    """Open (or create) the SQLite database and bootstrap the schema.

    Args:
        path: Filesystem path for the SQLite file, or ``":memory:"``.
            Defaults to :data:`DEFAULT_DB_PATH`.

    Returns:
        An open :class:`aiosqlite.Connection` with ``row_factory`` set to
        :class:`aiosqlite.Row`.  The caller closes it.
    """
    target = str(path) if path is not None else str(DEFAULT_DB_PATH)
    if target != ":memory:":
        Path(target).parent.mkdir(parents=True, exist_ok=True)

    logger.debug("Opening SQLite database at %s", target)
    conn: aiosqlite.Connection = await aiosqlite.connect(target)
    conn.row_factory = aiosqlite.Row

    await _configure_pragmas(conn)
    await create_schema(conn)
    logger.info("SQLite database ready at %s", target)
    return conn


async def create_schema(conn: aiosqlite.Connection) -> None:
    """Create all tables and indexes if absent.  Never drops or alters data."""
    await conn.execute(_DDL_TASK_OUTCOMES)
    await conn.execute(_DDL_TASK_OUTCOMES_INDEX)
    await conn.execute(_DDL_RESOURCE_SESSIONS)
    await conn.commit()
    logger.debug("Schema bootstrap complete (task_outcomes, resource_sessions)")


# ---------------------------------------------------------------------------
# Internals
# ---------------------------------------------------------------------------


async def _configure_pragmas(conn: aiosqlite.Connection) -> None:
    result = await conn.execute("PRAGMA journal_mode=WAL")
    row = await result.fetchone()
    mode = row[0] if row else "unknown"
    if mode != "wal":
        logger.debug("SQLite journal_mode is %r (in-memory databases cannot use WAL).", mode)
    await conn.execute("PRAGMA foreign_keys=ON")
