"""Server-side session records on any SQLAlchemy database.

One row per session identifier in a single table with columns
`id`, `payload` and `last_activity`. Every method opens its own short
database session so no lock or transaction spans a whole request.
"""
from __future__ import annotations

import logging
import time
from threading import Lock
from typing import Callable, Optional, Set
from weakref import WeakKeyDictionary

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from dbsession.core.config import SessionSettings
from dbsession.core.errors import StorageUnavailable
from dbsession.core.security import mask_session_id
from dbsession.db.base import metadata
from dbsession.db.models.session_record import SessionRecord, session_table
from dbsession.db.session import create_db_engine, create_session_factory, get_db_sync

logger = logging.getLogger(__name__)

# Table names known to exist, per database engine
_tables_initialized: "WeakKeyDictionary[Engine, Set[str]]" = WeakKeyDictionary()

# Threading primitive for table initialization
_tables_init_lock: Lock = Lock()


def _now() -> int:
    return int(time.time())


class SessionRecordStore:
    """CRUD and garbage collection over the session table."""

    def __init__(
        self,
        engine: Engine,
        table_name: str = "sessions",
        clock: Callable[[], int] = _now,
    ):
        self.engine = engine
        self.table = session_table(table_name, metadata)
        self.clock = clock
        self._session_factory: sessionmaker = create_session_factory(engine)

    @classmethod
    def from_settings(cls, settings: SessionSettings, **kwargs) -> "SessionRecordStore":
        return cls(create_db_engine(settings.database_url), settings.table, **kwargs)

    def ensure_table(self) -> None:
        """Ensure the session table exists in a thread-safe manner."""
        name = self.table.name

        # Fast path
        if name in _tables_initialized.get(self.engine, ()):
            return

        with _tables_init_lock:
            # Double-check after acquiring lock
            if name in _tables_initialized.get(self.engine, ()):
                return
            try:
                self.table.create(bind=self.engine, checkfirst=True)
            except SQLAlchemyError as e:
                logger.error(f"Failed to initialize session table {name}: {e}")
                raise StorageUnavailable(f"Cannot create session table {name}") from e
            _tables_initialized.setdefault(self.engine, set()).add(name)
            logger.debug("Session table %s initialized", name)

    def find(self, session_id: str) -> Optional[SessionRecord]:
        """Return the record for the given id, if any."""
        t = self.table
        try:
            with get_db_sync(self._session_factory) as db:
                row = db.execute(
                    select(t.c.id, t.c.payload, t.c.last_activity).where(t.c.id == session_id)
                ).first()
        except SQLAlchemyError as e:
            logger.error(f"Session lookup failed for {mask_session_id(session_id)}: {e}")
            raise StorageUnavailable("Session lookup failed") from e

        if row is None:
            return None
        return SessionRecord(id=row.id, payload=row.payload, last_activity=row.last_activity)

    def upsert(self, session_id: str, payload: str) -> SessionRecord:
        """
        Write or replace the row for the given id.

        Args:
            session_id: The session identifier
            payload: The encoded attribute map

        Returns:
            The record as written, with last_activity set to now

        Raises:
            StorageUnavailable: If the database operation fails
        """
        t = self.table
        last_activity = self.clock()
        values = {"payload": payload, "last_activity": last_activity}

        with get_db_sync(self._session_factory) as db:
            try:
                # Try to update existing record first
                result = db.execute(update(t).where(t.c.id == session_id).values(**values))

                # If no rows were updated, insert a new record
                if result.rowcount == 0:
                    try:
                        db.execute(insert(t).values(id=session_id, **values))
                    except IntegrityError:
                        # Another request inserted between our UPDATE and INSERT
                        db.rollback()
                        logger.debug(
                            "Insert raced for session %s, retrying update",
                            mask_session_id(session_id),
                        )
                        result = db.execute(
                            update(t).where(t.c.id == session_id).values(**values)
                        )
                        if result.rowcount == 0:
                            raise StorageUnavailable(
                                f"Failed to insert or update session {mask_session_id(session_id)}"
                            )

                db.commit()

            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Session write failed for {mask_session_id(session_id)}: {e}")
                raise StorageUnavailable("Session write failed") from e

        return SessionRecord(id=session_id, payload=payload, last_activity=last_activity)

    def delete(self, session_id: str) -> None:
        """Remove the row for the given id. Missing rows are not an error."""
        t = self.table
        with get_db_sync(self._session_factory) as db:
            try:
                db.execute(delete(t).where(t.c.id == session_id))
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Session delete failed for {mask_session_id(session_id)}: {e}")
                raise StorageUnavailable("Session delete failed") from e

    def garbage_collect(self, max_age_seconds: int) -> int:
        """
        Delete every record whose last activity is older than max_age_seconds.

        Runs as a single DELETE statement in its own transaction.

        Returns:
            Number of rows removed
        """
        t = self.table
        cutoff = self.clock() - max_age_seconds
        with get_db_sync(self._session_factory) as db:
            try:
                result = db.execute(delete(t).where(t.c.last_activity < cutoff))
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Session garbage collection failed: {e}")
                raise StorageUnavailable("Session garbage collection failed") from e

        removed = result.rowcount or 0
        if removed:
            logger.info(
                "Garbage collected expired sessions",
                extra={"removed": removed, "table": t.name, "cutoff": cutoff},
            )
        return removed

    def count(self) -> int:
        """Number of stored session rows."""
        t = self.table
        try:
            with get_db_sync(self._session_factory) as db:
                return db.execute(select(func.count()).select_from(t)).scalar_one()
        except SQLAlchemyError as e:
            logger.error(f"Session count failed: {e}")
            raise StorageUnavailable("Session count failed") from e
