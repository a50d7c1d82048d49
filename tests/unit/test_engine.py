"""
Tests for the session engine lifecycle and attribute API
"""

from unittest.mock import MagicMock

import pytest

from dbsession.core.errors import SessionStateError, StorageUnavailable, TypeMismatch
from dbsession.core.security import generate_session_id, is_valid_session_id
from dbsession.session.engine import SessionEngine, open_session
from dbsession.session.record_store import SessionRecordStore

pytestmark = pytest.mark.unit


def new_request(make_engine, session_id=None, **kwargs):
    """Simulate the start of a request"""
    engine = make_engine(**kwargs)
    state, expired = engine.load(session_id)
    return engine, state, expired


class TestLoad:

    def test_load_without_identifier_starts_fresh(self, make_engine, store):
        engine, state, expired = new_request(make_engine)

        assert expired is False
        assert is_valid_session_id(state.id)
        assert store.find(state.id) is None
        assert engine.all() == {}
        assert engine.is_started

    def test_empty_identifier_counts_as_absent(self, make_engine):
        _, _, expired = new_request(make_engine, "")
        assert expired is False

    def test_load_existing_record(self, make_engine, store, codec):
        session_id = generate_session_id()
        attributes = {"user": 7, "cart": [1, 2], "prefs": {"lang": "nl"}}
        store.upsert(session_id, codec.encode(attributes))

        engine, state, expired = new_request(make_engine, session_id)

        assert expired is False
        assert state.id == session_id
        assert engine.all() == attributes

    def test_unknown_identifier_is_expired(self, make_engine):
        presented = generate_session_id()

        engine, state, expired = new_request(make_engine, presented)

        assert expired is True
        assert state.id != presented
        assert is_valid_session_id(state.id)
        assert engine.all() == {}

    def test_malformed_identifier_is_expired_without_lookup(self, make_engine, store):
        store.upsert("short", "whatever")

        engine, state, expired = new_request(make_engine, "short")

        assert expired is True
        assert state.id != "short"

    def test_corrupt_payload_starts_fresh_session(self, make_engine, store):
        presented = generate_session_id()
        store.upsert(presented, "%%% definitely not a payload %%%")

        engine, state, expired = new_request(make_engine, presented)

        assert expired is True
        assert state.id != presented
        assert engine.all() == {}

    def test_corrupt_flash_metadata_starts_fresh_session(self, make_engine, store, codec):
        presented = generate_session_id()
        store.upsert(presented, codec.encode({"a": 1, "_flash": "nonsense"}))

        _, state, expired = new_request(make_engine, presented)

        assert expired is True
        assert state.id != presented

    def test_stale_record_is_expired_before_gc_runs(self, make_engine, store, codec, clock, settings):
        presented = generate_session_id()
        store.upsert(presented, codec.encode({"a": 1}))
        clock.advance(settings.gc_max_age + 1)

        # Never sweep, so only the per-load check can notice
        _, state, expired = new_request(make_engine, presented, lottery=lambda: 1.0)

        assert expired is True
        assert state.id != presented
        assert store.find(presented) is not None

    def test_load_twice_is_rejected(self, make_engine):
        engine, _, _ = new_request(make_engine)

        with pytest.raises(SessionStateError):
            engine.load(None)

    def test_api_requires_load(self, make_engine):
        engine = make_engine()

        with pytest.raises(SessionStateError):
            engine.get("a")
        with pytest.raises(SessionStateError):
            engine.save()

    def test_storage_errors_propagate(self, settings):
        store = MagicMock(spec=SessionRecordStore)
        store.find.side_effect = StorageUnavailable("db down")
        engine = SessionEngine(store, settings)

        with pytest.raises(StorageUnavailable):
            engine.load(generate_session_id())


class TestConstruction:

    def test_bootstraps_table_and_collects_garbage(self, settings):
        store = MagicMock(spec=SessionRecordStore)

        SessionEngine(store, settings, lottery=lambda: 0.0)

        store.ensure_table.assert_called_once_with()
        store.garbage_collect.assert_called_once_with(settings.gc_max_age)

    def test_lottery_can_skip_collection(self, settings):
        store = MagicMock(spec=SessionRecordStore)
        settings = settings.model_copy(update={"gc_probability": 0.0})

        SessionEngine(store, settings, lottery=lambda: 0.0)

        store.garbage_collect.assert_not_called()

    def test_gc_failure_does_not_break_the_request(self, settings):
        store = MagicMock(spec=SessionRecordStore)
        store.garbage_collect.side_effect = StorageUnavailable("locked")

        engine = SessionEngine(store, settings, lottery=lambda: 0.0)

        assert engine.state is None

    def test_sweeps_stale_rows(self, make_engine, store, clock, settings):
        store.upsert("stale-row", "p")
        clock.advance(settings.gc_max_age + 10)

        make_engine(lottery=lambda: 0.0)

        assert store.find("stale-row") is None


class TestAttributes:

    @pytest.fixture
    def engine(self, make_engine):
        engine, _, _ = new_request(make_engine)
        return engine

    def test_get_put(self, engine):
        engine.put("user", 1)

        assert engine.get("user") == 1
        assert engine.get("missing") is None
        assert engine.get("missing", "fallback") == "fallback"
        assert engine.is_dirty

    def test_put_many(self, engine):
        engine.put({"a": 1, "b": 2})
        assert engine.all() == {"a": 1, "b": 2}

    def test_put_rejects_non_string_keys(self, engine):
        with pytest.raises(TypeMismatch):
            engine.put({1: "one"})

    def test_put_rejects_reserved_flash_key(self, engine):
        with pytest.raises(ValueError):
            engine.put("_flash", {})

    def test_callable_default_only_called_when_missing(self, engine):
        engine.put("present", "value")
        fallback = MagicMock(return_value="computed")

        assert engine.get("present", fallback) == "value"
        fallback.assert_not_called()

        assert engine.get("absent", fallback) == "computed"
        fallback.assert_called_once_with()

    def test_has_treats_none_as_absent(self, engine):
        engine.put("empty", None)

        assert not engine.has("empty")
        assert not engine.has("missing")
        assert engine.exists("empty")
        assert engine.missing("missing")

    def test_all_returns_a_copy(self, engine):
        engine.put("cart", [1])

        snapshot = engine.all()
        snapshot["cart"].append(2)
        snapshot["other"] = True

        assert engine.all() == {"cart": [1]}

    def test_only(self, engine):
        engine.put({"a": 1, "b": 2, "c": 3})
        assert engine.only(["a", "c", "zzz"]) == {"a": 1, "c": 3}

    def test_push_creates_and_appends(self, engine):
        engine.push("list", "a")
        assert engine.get("list") == ["a"]

        engine.push("list", "b")
        assert engine.get("list") == ["a", "b"]

    def test_push_onto_non_list_fails(self, engine):
        engine.put("count", 3)

        with pytest.raises(TypeMismatch):
            engine.push("count", "x")
        assert engine.get("count") == 3

    def test_put_many_is_all_or_nothing(self, engine):
        engine.put("kept", True)

        with pytest.raises(ValueError):
            engine.put({"a": 1, "_flash": 2})
        with pytest.raises(TypeMismatch):
            engine.put({"b": 1, 2: "two"})

        assert engine.all() == {"kept": True}

    def test_replace_merges_mapping(self, engine):
        engine.put({"a": 1, "b": 2})

        engine.replace({"b": 20, "c": 30})

        assert engine.all() == {"a": 1, "b": 20, "c": 30}

    def test_replace_rejects_invalid_mapping_without_changes(self, engine):
        engine.put("a", 1)

        with pytest.raises(ValueError):
            engine.replace({"b": 2, "_flash": {}})

        assert engine.all() == {"a": 1}

    def test_get_returns_a_copy(self, engine):
        engine.put("items", ["a"])

        engine.get("items").append("b")

        assert engine.get("items") == ["a"]

    def test_push_onto_tuple(self, engine):
        engine.put("pair", (1, 2))

        engine.push("pair", 3)

        assert engine.get("pair") == [1, 2, 3]

    def test_pull(self, engine):
        engine.put("k", "v")

        assert engine.pull("k", "d") == "v"
        assert not engine.has("k")
        assert engine.pull("k", "d") == "d"

    def test_forget_and_flush(self, engine):
        engine.put({"a": 1, "b": 2, "c": 3})

        engine.forget("a")
        assert engine.all() == {"b": 2, "c": 3}

        engine.forget(["b", "missing"])
        assert engine.all() == {"c": 3}

        engine.flush()
        assert engine.all() == {}

    def test_increment_and_decrement(self, engine):
        assert engine.increment("visits") == 1
        assert engine.increment("visits", 5) == 6
        assert engine.decrement("visits", 2) == 4

        engine.put("name", "x")
        with pytest.raises(TypeMismatch):
            engine.increment("name")

    def test_token_is_created_lazily(self, engine):
        assert "_token" not in engine.all()

        token = engine.token()

        assert engine.token() == token
        assert engine.regenerate_token() != token

    def test_previous_url(self, engine):
        assert engine.previous_url() is None

        engine.set_previous_url("/cart")

        assert engine.previous_url() == "/cart"


class TestSave:

    def test_end_to_end(self, make_engine):
        engine, state, _ = new_request(make_engine)
        first_id = state.id
        engine.put("user", 1)
        engine.save()

        engine, state, expired = new_request(make_engine, first_id)

        assert expired is False
        assert state.id == first_id
        assert engine.get("user", 0) == 1

    def test_save_twice_is_a_noop(self, make_engine, store, clock):
        engine, state, _ = new_request(make_engine)
        engine.put("a", 1)
        engine.save()
        written_at = store.find(state.id).last_activity

        clock.advance(60)
        engine.save()

        assert store.find(state.id).last_activity == written_at
        assert engine.is_saved

    def test_mutation_after_save_is_rejected(self, make_engine):
        engine, _, _ = new_request(make_engine)
        engine.save()

        with pytest.raises(SessionStateError):
            engine.put("late", True)
        with pytest.raises(SessionStateError):
            engine.regenerate()

    def test_push_after_save_leaves_state_unchanged(self, make_engine):
        engine, _, _ = new_request(make_engine)
        engine.put("items", ["a"])
        engine.save()

        with pytest.raises(SessionStateError):
            engine.push("items", "b")

        assert engine.get("items") == ["a"]

    def test_saved_state_cannot_be_changed_through_get(self, make_engine):
        engine, state, _ = new_request(make_engine)
        engine.put("items", ["a"])
        engine.save()

        engine.get("items").append("b")

        assert state.attributes["items"] == ["a"]

    def test_reads_after_save_still_work(self, make_engine):
        engine, _, _ = new_request(make_engine)
        engine.put("a", 1)
        engine.save()

        assert engine.get("a") == 1

    def test_save_touches_last_activity(self, make_engine, store, clock):
        engine, state, _ = new_request(make_engine)
        engine.save()
        session_id = state.id

        clock.advance(500)
        engine, _, _ = new_request(make_engine, session_id)
        engine.save()

        assert store.find(session_id).last_activity == clock.now

    def test_unencodable_value_fails_save(self, make_engine):
        engine, _, _ = new_request(make_engine)
        engine.put("bad", object())

        with pytest.raises(TypeMismatch):
            engine.save()
        assert not engine.is_saved

    def test_flash_metadata_is_hidden_from_all(self, make_engine, store, codec):
        engine, state, _ = new_request(make_engine)
        engine.flash("notice", "hi")
        engine.save()

        stored = codec.decode(store.find(state.id).payload)
        assert stored["_flash"] == {"new": ["notice"], "old": []}

        engine, _, _ = new_request(make_engine, state.id)
        assert "_flash" not in engine.all()


class TestRegenerate:

    def test_regenerate_destroying_old_record(self, make_engine, store, codec):
        engine, state, _ = new_request(make_engine)
        engine.put("user", 1)
        engine.save()
        old_id = state.id

        engine, _, _ = new_request(make_engine, old_id)
        new_id = engine.regenerate(destroy_old=True)

        assert new_id != old_id
        assert engine.id == new_id
        assert engine.id_changed
        assert store.find(old_id) is None

        engine.save()
        record = store.find(new_id)
        assert record is not None
        assert codec.decode(record.payload)["user"] == 1

    def test_regenerate_keeping_old_record(self, make_engine, store):
        engine, state, _ = new_request(make_engine)
        engine.save()
        old_id = state.id

        engine, _, _ = new_request(make_engine, old_id)
        new_id = engine.regenerate()
        engine.save()

        assert store.find(old_id) is not None
        assert store.find(new_id) is not None

    def test_repeated_regenerate(self, make_engine, store):
        engine, state, _ = new_request(make_engine)
        engine.save()
        original = state.id

        engine, _, _ = new_request(make_engine, original)
        first = engine.regenerate(destroy_old=True)
        second = engine.regenerate(destroy_old=True)
        engine.save()

        assert len({original, first, second}) == 3
        assert store.find(original) is None
        assert store.find(first) is None
        assert store.find(second) is not None

    def test_regenerate_on_fresh_session(self, make_engine):
        engine, state, _ = new_request(make_engine)
        fresh_id = state.id

        assert engine.regenerate(destroy_old=True) != fresh_id

    def test_invalidate(self, make_engine, store):
        engine, state, _ = new_request(make_engine)
        engine.put("user", 1)
        engine.save()
        old_id = state.id

        engine, _, _ = new_request(make_engine, old_id)
        new_id = engine.invalidate()

        assert new_id != old_id
        assert engine.all() == {}
        assert store.find(old_id) is None


class TestOpenSession:

    def test_saves_on_normal_exit(self, store, settings):
        with open_session(store, settings=settings) as engine:
            engine.put("a", 1)
            session_id = engine.id

        assert store.find(session_id) is not None

    def test_saves_on_error(self, store, settings):
        with pytest.raises(RuntimeError):
            with open_session(store, settings=settings) as engine:
                engine.put("a", 1)
                session_id = engine.id
                raise RuntimeError("handler failed")

        with open_session(store, session_id, settings=settings) as engine:
            assert engine.get("a") == 1
