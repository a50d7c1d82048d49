"""
Exception hierarchy for the session store.

Decoding failures are absorbed by the engine and turned into a fresh session.
Storage failures propagate to whoever called load/save/regenerate.
"""


class SessionError(Exception):
    """Base class for all session store errors"""
    pass


class EntropyUnavailable(SessionError):
    """Raised when the OS randomness source cannot be read.

    Sessions must never be issued with weak identifiers, so this is fatal.
    """
    pass


class CorruptPayload(SessionError):
    """Raised when a stored payload cannot be decoded"""
    pass


class TypeMismatch(SessionError, TypeError):
    """Raised when a session value has the wrong type for the operation"""
    pass


class StorageUnavailable(SessionError):
    """Raised when a database operation against the session table fails"""
    pass


class DuplicateGlobalHandle(SessionError):
    """Raised when a global session handle is registered twice under one alias"""
    pass


class SessionStateError(SessionError):
    """Raised when the session lifecycle is used out of order"""
    pass
