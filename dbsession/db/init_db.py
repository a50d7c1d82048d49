"""Initialize the database with the session table"""

import logging
from pathlib import Path
from typing import Optional

from sqlalchemy.engine import make_url

from dbsession.core.config import SessionSettings, get_settings
from dbsession.session.record_store import SessionRecordStore

logger = logging.getLogger("dbsession.database")


def ensure_sqlite_directory(database_url: str) -> None:
    """Create the parent directory of a file-based SQLite database"""
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite" or not url.database or url.database == ":memory:":
        return
    Path(url.database).expanduser().resolve().parent.mkdir(parents=True, exist_ok=True)


def init_database(settings: Optional[SessionSettings] = None) -> SessionRecordStore:
    """Create the session table if it does not exist yet"""
    settings = settings or get_settings()
    try:
        ensure_sqlite_directory(settings.database_url)
        store = SessionRecordStore.from_settings(settings)
        store.ensure_table()
        logger.info("Session table ready", extra={"table": settings.table})
        return store
    except Exception as e:
        logger.error(f"Error initializing database: {e}", extra={
            "error_type": type(e).__name__,
            "database_url": "[REDACTED]"  # Don't log connection strings
        })
        raise
