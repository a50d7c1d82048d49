"""
Global accessor for the active session.

Lets call sites reach the current request's session by alias without
passing the engine around. There is one globally reachable handle per
alias per request lifecycle: registration is write-once within the
current context and a second registration under the same alias fails.

The handles live in a ContextVar, so each request (or asyncio task)
sees only its own session.
"""
from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar, Token
from types import MappingProxyType
from typing import TYPE_CHECKING, Generator, Mapping

from dbsession.core.errors import DuplicateGlobalHandle, SessionStateError

if TYPE_CHECKING:
    from dbsession.session.engine import SessionEngine

DEFAULT_ALIAS = "Session"

_EMPTY: Mapping[str, "SessionEngine"] = MappingProxyType({})

_handles: ContextVar[Mapping[str, "SessionEngine"]] = ContextVar('session_handles', default=_EMPTY)


def register_handle(engine: "SessionEngine", alias: str = DEFAULT_ALIAS) -> Token:
    """
    Make the engine reachable under alias for the current context.

    Returns:
        Token to pass to release_handle

    Raises:
        DuplicateGlobalHandle: If alias is already bound in this context
    """
    current = _handles.get()
    if alias in current:
        raise DuplicateGlobalHandle(f"A session handle named {alias!r} is already registered")
    return _handles.set(MappingProxyType({**current, alias: engine}))


def release_handle(token: Token) -> None:
    """Undo the registration that returned token."""
    _handles.reset(token)


def current_session(alias: str = DEFAULT_ALIAS) -> "SessionEngine":
    """Return the session registered under alias in the current context."""
    try:
        return _handles.get()[alias]
    except KeyError:
        raise SessionStateError(f"No session handle named {alias!r} is registered") from None


def is_registered(alias: str = DEFAULT_ALIAS) -> bool:
    return alias in _handles.get()


@contextmanager
def bound_session(engine: "SessionEngine", alias: str = DEFAULT_ALIAS) -> Generator["SessionEngine", None, None]:
    """Register the engine for the duration of the block."""
    token = register_handle(engine, alias)
    try:
        yield engine
    finally:
        release_handle(token)
