"""
Cookie transport for the session engine.

Reads the session identifier from the incoming cookie, loads the session
before the endpoint runs, saves it at the end of the request and writes the
cookie back when the identifier is new or has changed.
"""

import logging
from typing import Any, Callable, Dict, Optional

from fastapi import Request, Response
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from dbsession.core.config import SessionSettings, get_settings
from dbsession.core.facade import register_handle, release_handle
from dbsession.core.security import mask_session_id
from dbsession.session.engine import SessionEngine
from dbsession.session.record_store import SessionRecordStore

logger = logging.getLogger(__name__)


def session_cookie_params(settings: SessionSettings) -> Dict[str, Any]:
    """Cookie attributes for the session cookie, minus its value"""
    return {
        "key": settings.name,
        # None makes it a browser-session cookie
        "max_age": settings.cookie_max_age or None,
        "path": settings.path,
        "domain": settings.domain,
        "secure": settings.secure,
        "httponly": True,
        "samesite": settings.same_site,
    }


class SessionMiddleware(BaseHTTPMiddleware):
    """
    Middleware that gives every request a database-backed session.

    The engine is available as request.state.session, and through the
    global accessor when settings.global_alias is set.
    """

    def __init__(
        self,
        app: ASGIApp,
        store: SessionRecordStore,
        settings: Optional[SessionSettings] = None,
        engine_factory: Optional[Callable[[], SessionEngine]] = None,
    ):
        super().__init__(app)
        self.store = store
        self.settings = settings or get_settings()
        self.engine_factory = engine_factory or self._build_engine

    def _build_engine(self) -> SessionEngine:
        return SessionEngine(self.store, self.settings)

    async def dispatch(self, request: Request, call_next):
        presented_id = request.cookies.get(self.settings.name) or None

        # Database work stays off the event loop
        engine = await run_in_threadpool(self.engine_factory)
        await run_in_threadpool(engine.load, presented_id)
        request.state.session = engine

        alias = self.settings.global_alias
        token = register_handle(engine, alias) if alias else None
        completed = False
        try:
            response = await call_next(request)
            completed = True
        finally:
            if token is not None:
                release_handle(token)
            # A failed request sends no cookie, so only the presented id stays reachable
            if completed or engine.id == presented_id:
                await run_in_threadpool(engine.save)
            else:
                logger.debug("Request failed, not storing unissued session %s", mask_session_id(engine.id))

        if presented_id is None or engine.expired or engine.id_changed:
            self._set_cookie(response, engine.id)
        return response

    def _set_cookie(self, response: Response, session_id: str) -> None:
        response.set_cookie(value=session_id, **session_cookie_params(self.settings))
        logger.debug("Issued session cookie for %s", mask_session_id(session_id))
