"""Database models"""

from dbsession.db.models.session_record import SessionRecord, session_table

__all__ = [
    "SessionRecord",
    "session_table",
]
