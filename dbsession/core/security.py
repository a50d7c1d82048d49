"""
Security utilities for the session store

This module issues and validates session identifiers and provides
log-safe renderings of them.
"""

import logging
import secrets
import string
from typing import Any

from dbsession.core.errors import EntropyUnavailable

logger = logging.getLogger(__name__)

SESSION_ID_LENGTH = 40
SESSION_ID_ALPHABET = string.ascii_letters + string.digits
_SESSION_ID_CHARS = frozenset(SESSION_ID_ALPHABET)


def _random_string(length: int) -> str:
    try:
        return "".join(secrets.choice(SESSION_ID_ALPHABET) for _ in range(length))
    except (OSError, NotImplementedError) as e:
        logger.critical("System randomness source unavailable: %s", e)
        raise EntropyUnavailable("cannot read system randomness source") from e


def generate_session_id() -> str:
    """
    Generate a cryptographically unpredictable session identifier.

    40 characters from a 62 symbol alphabet gives roughly 238 bits of
    entropy, and the alphabet is safe to place in a cookie or URL.

    Returns:
        A new session identifier

    Raises:
        EntropyUnavailable: If the OS randomness source cannot be read
    """
    return _random_string(SESSION_ID_LENGTH)


def generate_csrf_token() -> str:
    """Generate a per-session CSRF token"""
    return _random_string(SESSION_ID_LENGTH)


def is_valid_session_id(value: Any) -> bool:
    """
    Check that a presented identifier has the generator's format.

    Args:
        value: The identifier taken from the cookie

    Returns:
        True if the value could have been issued by generate_session_id
    """
    if not isinstance(value, str) or len(value) != SESSION_ID_LENGTH:
        return False
    return all(ch in _SESSION_ID_CHARS for ch in value)


def mask_session_id(value: Any) -> str:
    """Render a session identifier for logs without exposing it"""
    if not value:
        return "<none>"
    return f"{str(value)[:6]}…"
