"""
Session engine: the per-request session lifecycle.

An engine is built for every request, loads the state for the presented
identifier, exposes the mutation and query API to application code and
persists the state once at the end of the request.

    Unloaded -> Loaded(fresh) | Loaded(existing) -> Saved

Flash data is tracked in two ordered key lists stored alongside the
attributes. Keys flashed during a request move to the "old" list on the
next load and are removed from the attributes on the load after that,
unless they were flashed again, reflashed or kept.
"""
from __future__ import annotations

import copy
import logging
import random
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generator, Iterable, List, Mapping, Optional, Tuple, Union

from dbsession.core.config import SessionSettings, get_settings
from dbsession.core.errors import CorruptPayload, SessionStateError, StorageUnavailable, TypeMismatch
from dbsession.core.security import generate_csrf_token, generate_session_id, is_valid_session_id, mask_session_id
from dbsession.db.models.session_record import SessionRecord
from dbsession.session.codec import PayloadCodec
from dbsession.session.record_store import SessionRecordStore

logger = logging.getLogger(__name__)

FLASH_KEY = "_flash"
TOKEN_KEY = "_token"
PREVIOUS_KEY = "_previous"

Keys = Union[str, Iterable[str]]


@dataclass
class SessionState:
    """In-memory session state for a single request."""

    id: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    new_flash: List[str] = field(default_factory=list)
    old_flash: List[str] = field(default_factory=list)
    started: bool = False
    dirty: bool = False
    saved: bool = False


def _as_key_list(keys: Keys) -> List[str]:
    if isinstance(keys, str):
        return [keys]
    return list(keys)


def _add_unique(target: List[str], keys: Iterable[str]) -> None:
    for key in keys:
        if key not in target:
            target.append(key)


def _remove_all(target: List[str], keys: Iterable[str]) -> None:
    drop = set(keys)
    target[:] = [key for key in target if key not in drop]


class SessionEngine:
    """Load, mutate and save one visitor's session."""

    def __init__(
        self,
        store: SessionRecordStore,
        settings: Optional[SessionSettings] = None,
        *,
        codec: Optional[PayloadCodec] = None,
        id_generator: Callable[[], str] = generate_session_id,
        lottery: Callable[[], float] = random.random,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.codec = codec or PayloadCodec.from_settings(self.settings)
        self._generate_id = id_generator

        self._state: Optional[SessionState] = None
        self._presented_id: Optional[str] = None
        self._expired = False
        self._id_changed = False

        self.store.ensure_table()
        if lottery() < self.settings.gc_probability:
            self._collect_garbage()

    def _collect_garbage(self) -> None:
        try:
            self.store.garbage_collect(self.settings.gc_max_age)
        except StorageUnavailable as e:
            # Stale rows are still rejected on load
            logger.warning(f"Session garbage collection skipped: {e}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def load(self, presented_id: Optional[str] = None) -> Tuple[SessionState, bool]:
        """
        Load the session for the identifier presented by the client.

        Args:
            presented_id: Identifier from the session cookie, or None

        Returns:
            The loaded state and whether the presented session had expired.
            A missing identifier is not an expiry; an unknown, stale,
            malformed or corrupt one is.

        Raises:
            StorageUnavailable: If the session table cannot be read
            SessionStateError: If the engine was already loaded
        """
        if self._state is not None:
            raise SessionStateError("Session already loaded")

        self._presented_id = presented_id or None

        if not presented_id:
            self._state = self._fresh_state()
            self._expired = False
        elif not is_valid_session_id(presented_id):
            logger.info("Rejected malformed session identifier")
            self._state = self._fresh_state()
            self._expired = True
        else:
            loaded = self._read_live_payload(self.store.find(presented_id))
            if loaded is None:
                self._state = self._fresh_state()
                self._expired = True
                logger.debug("Session %s expired, issued a new one", mask_session_id(presented_id))
            else:
                self._state = loaded
                self._expired = False

        return self._state, self._expired

    def _fresh_state(self) -> SessionState:
        return SessionState(id=self._generate_id(), started=True)

    def _read_live_payload(self, record: Optional[SessionRecord]) -> Optional[SessionState]:
        if record is None:
            return None

        if record.last_activity < self.store.clock() - self.settings.gc_max_age:
            return None

        try:
            attributes = self.codec.decode(record.payload)
            new_flash, old_flash = self._split_flash(attributes.pop(FLASH_KEY, None))
        except CorruptPayload as e:
            logger.warning(f"Discarding corrupt session {mask_session_id(record.id)}: {e}")
            return None

        # Age out the previous request's flash data
        for key in old_flash:
            if key not in new_flash:
                attributes.pop(key, None)

        return SessionState(
            id=record.id,
            attributes=attributes,
            new_flash=[],
            old_flash=new_flash,
            started=True,
        )

    @staticmethod
    def _split_flash(meta: Any) -> Tuple[List[str], List[str]]:
        if meta is None:
            return [], []
        if not isinstance(meta, dict):
            raise CorruptPayload("Flash metadata is not a mapping")
        new_flash = meta.get("new", [])
        old_flash = meta.get("old", [])
        for keys in (new_flash, old_flash):
            if not isinstance(keys, list) or not all(isinstance(k, str) for k in keys):
                raise CorruptPayload("Flash metadata is not a list of keys")
        return list(new_flash), list(old_flash)

    def save(self) -> None:
        """
        Persist the session and close it.

        Calling save again on a saved session does nothing.

        Raises:
            StorageUnavailable: If the session table cannot be written
            TypeMismatch: If an attribute cannot be encoded
        """
        state = self._require_state()
        if state.saved:
            logger.debug("Session %s already saved", mask_session_id(state.id))
            return

        payload = dict(state.attributes)
        payload[FLASH_KEY] = {"new": list(state.new_flash), "old": list(state.old_flash)}

        self.store.upsert(state.id, self.codec.encode(payload))
        state.saved = True
        state.dirty = False

    def regenerate(self, destroy_old: bool = False) -> str:
        """
        Move the session to a new identifier.

        Args:
            destroy_old: Delete the previous record right away

        Returns:
            The new session identifier
        """
        state = self._require_mutable()
        old_id = state.id
        new_id = self._generate_id()

        if destroy_old:
            self.store.delete(old_id)

        state.id = new_id
        state.dirty = True
        self._id_changed = True
        logger.debug(
            "Regenerated session %s -> %s (destroy_old=%s)",
            mask_session_id(old_id), mask_session_id(new_id), destroy_old,
        )
        return new_id

    def invalidate(self) -> str:
        """Drop all session data and move to a new identifier."""
        self.flush()
        return self.regenerate(destroy_old=True)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        """
        Return a copy of the value for key, or default.

        A callable default is only called when the key is absent. Changes
        to the returned value are not stored until passed back to put.
        """
        attributes = self._require_state().attributes
        if key in attributes:
            return copy.deepcopy(attributes[key])
        return default() if callable(default) else default

    def has(self, key: str) -> bool:
        return self._require_state().attributes.get(key) is not None

    def exists(self, key: str) -> bool:
        return key in self._require_state().attributes

    def missing(self, key: str) -> bool:
        return not self.exists(key)

    def all(self) -> Dict[str, Any]:
        return copy.deepcopy(self._require_state().attributes)

    def only(self, keys: Keys) -> Dict[str, Any]:
        attributes = self._require_state().attributes
        return {
            key: copy.deepcopy(attributes[key])
            for key in _as_key_list(keys) if key in attributes
        }

    def token(self) -> str:
        """Return the session's CSRF token, creating it on first use."""
        token = self.get(TOKEN_KEY)
        if not token:
            token = self.regenerate_token()
        return token

    def previous_url(self) -> Optional[str]:
        previous = self.get(PREVIOUS_KEY)
        if isinstance(previous, dict):
            return previous.get("url")
        return None

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def put(self, key: Union[str, Mapping[str, Any]], value: Any = None) -> None:
        """Set one value, or several when given a mapping."""
        state = self._require_mutable()
        items = list(key.items()) if isinstance(key, Mapping) else [(key, value)]
        # Nothing is written unless every key is valid
        for k, _ in items:
            if not isinstance(k, str):
                raise TypeMismatch(f"Session keys must be strings, got {type(k).__name__}")
            if k == FLASH_KEY:
                raise ValueError(f"{FLASH_KEY!r} is reserved for flash tracking")
        state.attributes.update(items)
        state.dirty = True

    def push(self, key: str, value: Any) -> None:
        """Append value to the list stored at key, creating the list if needed."""
        self._require_mutable()
        current = self.get(key)
        if current is None:
            current = []
        elif not isinstance(current, (list, tuple)):
            raise TypeMismatch(f"Session value at {key!r} is {type(current).__name__}, not a list")
        self.put(key, list(current) + [value])

    def pull(self, key: str, default: Any = None) -> Any:
        """Return the value for key and remove it."""
        value = self.get(key, default)
        self.forget(key)
        return value

    def increment(self, key: str, amount: Union[int, float] = 1) -> Union[int, float]:
        current = self.get(key, 0)
        if isinstance(current, bool) or not isinstance(current, (int, float)):
            raise TypeMismatch(f"Session value at {key!r} is not a number")
        value = current + amount
        self.put(key, value)
        return value

    def decrement(self, key: str, amount: Union[int, float] = 1) -> Union[int, float]:
        return self.increment(key, -amount)

    def forget(self, keys: Keys) -> None:
        state = self._require_mutable()
        keys = _as_key_list(keys)
        for key in keys:
            state.attributes.pop(key, None)
        _remove_all(state.new_flash, keys)
        _remove_all(state.old_flash, keys)
        state.dirty = True

    def flush(self) -> None:
        state = self._require_mutable()
        state.attributes.clear()
        state.new_flash.clear()
        state.old_flash.clear()
        state.dirty = True

    def replace(self, attributes: Mapping[str, Any]) -> None:
        """Merge the given mapping into the session."""
        self.put(attributes)

    def set_previous_url(self, url: str) -> None:
        self.put(PREVIOUS_KEY, {"url": url})

    def regenerate_token(self) -> str:
        token = generate_csrf_token()
        self.put(TOKEN_KEY, token)
        return token

    # ------------------------------------------------------------------
    # Flash data
    # ------------------------------------------------------------------

    def flash(self, key: str, value: Any = True) -> None:
        """Store a value that stays available for the next request only."""
        self.put(key, value)
        state = self._require_mutable()
        _add_unique(state.new_flash, [key])
        _remove_all(state.old_flash, [key])

    def now(self, key: str, value: Any) -> None:
        """Store a value that is only available for the current request."""
        self.put(key, value)
        _add_unique(self._require_mutable().old_flash, [key])

    def reflash(self) -> None:
        """Keep all flash data for one more request."""
        state = self._require_mutable()
        _add_unique(state.new_flash, state.old_flash)
        state.old_flash.clear()
        state.dirty = True

    def keep(self, keys: Keys) -> None:
        """Keep the given flash keys for one more request. Unknown keys are ignored."""
        state = self._require_mutable()
        kept = [key for key in _as_key_list(keys) if key in state.old_flash]
        _add_unique(state.new_flash, kept)
        _remove_all(state.old_flash, kept)
        state.dirty = True

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def id(self) -> str:
        return self._require_state().id

    @property
    def state(self) -> Optional[SessionState]:
        return self._state

    @property
    def presented_id(self) -> Optional[str]:
        return self._presented_id

    @property
    def expired(self) -> bool:
        return self._expired

    @property
    def id_changed(self) -> bool:
        return self._id_changed

    @property
    def is_started(self) -> bool:
        return self._state is not None and self._state.started

    @property
    def is_saved(self) -> bool:
        return self._state is not None and self._state.saved

    @property
    def is_dirty(self) -> bool:
        return self._state is not None and self._state.dirty

    def _require_state(self) -> SessionState:
        if self._state is None:
            raise SessionStateError("Session has not been loaded")
        return self._state

    def _require_mutable(self) -> SessionState:
        state = self._require_state()
        if state.saved:
            raise SessionStateError("Session has already been saved")
        return state


@contextmanager
def open_session(
    store: SessionRecordStore,
    presented_id: Optional[str] = None,
    settings: Optional[SessionSettings] = None,
    **kwargs,
) -> Generator[SessionEngine, None, None]:
    """Load a session and always save it on exit, including on errors."""
    engine = SessionEngine(store, settings, **kwargs)
    engine.load(presented_id)
    try:
        yield engine
    finally:
        engine.save()
