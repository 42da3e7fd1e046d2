"""SQLite-backed stores for task outcomes and resource session blobs."""

from cartpilot.core.ids import resource_key
from cartpilot.storage.database import DEFAULT_DB_PATH, create_schema, open_db
from cartpilot.storage.repository import OutcomeRepository, SessionRepository

__all__ = [
    "DEFAULT_DB_PATH",
    "open_db",
    "create_schema",
    "OutcomeRepository",
    "SessionRepository",
    "resource_key",
]
