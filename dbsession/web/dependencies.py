from fastapi import Request

from dbsession.core.errors import SessionStateError
from dbsession.session.engine import SessionEngine


def get_session(request: Request) -> SessionEngine:
    """Dependency for getting the request's session"""
    engine = getattr(request.state, "session", None)
    if engine is None:
        raise SessionStateError("SessionMiddleware is not installed")
    return engine
