import logging
from typing import Optional

from fastapi import FastAPI

from dbsession import __version__
from dbsession.core.config import SessionSettings, get_settings
from dbsession.core.errors import StorageUnavailable
from dbsession.core.logging_config import init_application_logging
from dbsession.db.init_db import init_database
from dbsession.session.record_store import SessionRecordStore
from dbsession.web.middleware import SessionMiddleware

logger = logging.getLogger("dbsession.main")


def create_app(
    settings: Optional[SessionSettings] = None,
    store: Optional[SessionRecordStore] = None,
    configure_logging: bool = True,
) -> FastAPI:
    """Build a FastAPI application with database-backed sessions"""
    settings = settings or get_settings()
    if configure_logging:
        init_application_logging(settings)

    # Table bootstrap happens once per process, not per request
    store = store or init_database(settings)

    app = FastAPI(
        title="dbsession",
        description="Database-persisted HTTP sessions",
        version=__version__,
    )
    app.state.session_store = store
    app.state.session_settings = settings

    app.add_middleware(SessionMiddleware, store=store, settings=settings)

    @app.get("/health")
    def health_check():
        """Basic health check endpoint."""
        return {"status": "healthy"}

    @app.get("/api/health")
    def api_health_check():
        """Health check including the session table."""
        try:
            sessions = store.count()
        except StorageUnavailable as e:
            logger.warning("Session store health check failed: %s", e)
            return {
                "status": "unhealthy",
                "version": __version__,
                "session_store": {"table": settings.table, "connected": False},
            }
        return {
            "status": "healthy",
            "version": __version__,
            "session_store": {"table": settings.table, "connected": True, "sessions": sessions},
        }

    logger.info("Session middleware initialized", extra={"table": settings.table})
    return app
