"""Session lifecycle: codec, record store and engine"""

from dbsession.session.codec import PayloadCodec
from dbsession.session.engine import SessionEngine, SessionState, open_session
from dbsession.session.record_store import SessionRecordStore

__all__ = [
    "PayloadCodec",
    "SessionEngine",
    "SessionRecordStore",
    "SessionState",
    "open_session",
]
