"""Tests for the key-value store backends."""

import fnmatch
import json

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from sproutsession.storage.common import family_key, read_int, read_json, write_json
from sproutsession.storage.errors import StorageError
from sproutsession.storage.memory import MemoryStore
from sproutsession.storage.redis_cache import RedisStore


class FakeRedis:
    """Just enough of the redis client for RedisStore."""

    def __init__(self, fail: bool = False):
        self.data = {}
        self.fail = fail
        self.closed = False

    def _check(self):
        if self.fail:
            raise RedisConnectionError("connection refused")

    def ping(self):
        self._check()
        return True

    def get(self, key):
        self._check()
        return self.data.get(key)

    def set(self, key, value, get=False):
        self._check()
        old = self.data.get(key)
        self.data[key] = value
        return old if get else True

    def getdel(self, key):
        self._check()
        return self.data.pop(key, None)

    def scan_iter(self, match=None):
        self._check()
        return [k for k in list(self.data) if match is None or fnmatch.fnmatch(k, match)]

    def close(self):
        self.closed = True


class TestCommonHelpers:
    def test_family_key(self):
        assert family_key("selectedBaby", "fam-1") == "selectedBaby_fam-1"
        assert family_key("selectedBaby", None) == "selectedBaby"

    def test_json_round_trip_and_bad_values(self):
        store = MemoryStore()
        write_json(store, "k", {"a": [1, 2]})

        assert read_json(store, "k") == {"a": [1, 2]}
        store.set_item("k", "{not json")
        assert read_json(store, "k") is None
        assert read_json(store, "missing") is None

    def test_read_int(self):
        store = MemoryStore()
        store.set_item("n", "1800")
        store.set_item("bad", "x")

        assert read_int(store, "n") == 1800
        assert read_int(store, "bad") is None
        assert read_int(store, "missing") is None


class TestMemoryStore:
    def test_set_get_remove(self):
        store = MemoryStore()
        store.set_item("authToken", "t1")
        store.set_item("authToken", "t2")

        assert store.get_item("authToken") == "t2"
        store.remove_item("authToken")
        assert store.get_item("authToken") is None
        store.remove_item("authToken")

    def test_rejects_non_string_values(self):
        with pytest.raises(StorageError):
            MemoryStore().set_item("unlockTime", 123)

    def test_listeners_see_changes_only(self):
        store = MemoryStore()
        seen = []
        listener = lambda key, old, new: seen.append((key, old, new))  # noqa: E731
        store.add_listener(listener)

        store.set_item("a", "1")
        store.set_item("a", "1")
        store.set_item("a", "2")
        store.remove_item("a")
        store.remove_listener(listener)
        store.set_item("a", "3")

        assert seen == [("a", None, "1"), ("a", "1", "2"), ("a", "2", None)]

    def test_failing_listener_does_not_undo_write(self):
        store = MemoryStore()

        def boom(key, old, new):
            raise RuntimeError("listener bug")

        store.add_listener(boom)
        store.set_item("a", "1")

        assert store.get_item("a") == "1"

    def test_clear_notifies_each_key(self):
        store = MemoryStore()
        store.set_item("a", "1")
        store.set_item("b", "2")
        removed = []
        store.add_listener(lambda key, old, new: removed.append(key))

        store.clear()

        assert sorted(removed) == ["a", "b"]
        assert store.keys() == []

    def test_file_backend_survives_restart(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        store.set_item("authToken", "tok")
        store.set_item("unlockTime", "1700000000000")

        reopened = MemoryStore(fs_root=str(tmp_path))

        assert reopened.get_item("authToken") == "tok"
        assert sorted(reopened.keys()) == ["authToken", "unlockTime"]

    def test_encrypted_file_hides_values(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path), encryption_key="k1")
        store.set_item("authToken", "very-secret-token")

        raw = (tmp_path / "state" / "session_store.json").read_bytes()

        assert b"very-secret-token" not in raw
        assert MemoryStore(fs_root=str(tmp_path), encryption_key="k1").get_item(
            "authToken"
        ) == "very-secret-token"

    def test_wrong_key_starts_empty(self, tmp_path):
        MemoryStore(fs_root=str(tmp_path), encryption_key="k1").set_item("authToken", "x")

        assert MemoryStore(fs_root=str(tmp_path), encryption_key="k2").keys() == []

    def test_corrupt_file_starts_empty(self, tmp_path):
        state = tmp_path / "state"
        state.mkdir()
        (state / "session_store.json").write_text("{broken")

        assert MemoryStore(fs_root=str(tmp_path)).keys() == []

    def test_persisted_format_is_plain_json(self, tmp_path):
        MemoryStore(fs_root=str(tmp_path)).set_item("caretakerId", "ct-1")

        data = json.loads((tmp_path / "state" / "session_store.json").read_text())

        assert data == {"caretakerId": "ct-1"}

    def test_state_path_requires_file_backend(self):
        store = MemoryStore()

        store.set_item("caretakerId", "ct-1")

        with pytest.raises(StorageError):
            store._state_path()


class TestRedisStore:
    def test_prefixes_keys(self):
        client = FakeRedis()
        store = RedisStore("redis://unused", key_prefix="t:", client=client)

        store.set_item("authToken", "tok")

        assert client.data == {"t:authToken": "tok"}
        assert store.get_item("authToken") == "tok"
        assert store.keys() == ["authToken"]

    def test_listeners_receive_previous_value(self):
        store = RedisStore("redis://unused", client=FakeRedis())
        seen = []
        store.add_listener(lambda key, old, new: seen.append((old, new)))

        store.set_item("k", "1")
        store.set_item("k", "1")
        store.set_item("k", "2")
        store.remove_item("k")
        store.remove_item("k")

        assert seen == [(None, "1"), ("1", "2"), ("2", None)]

    def test_clear_only_touches_prefix(self):
        client = FakeRedis()
        client.data["other:key"] = "keep"
        store = RedisStore("redis://unused", key_prefix="t:", client=client)
        store.set_item("a", "1")

        store.clear()

        assert client.data == {"other:key": "keep"}

    def test_errors_become_storage_errors(self):
        store = RedisStore("redis://unused", client=FakeRedis(fail=True))

        with pytest.raises(StorageError):
            store.verify_connection()
        with pytest.raises(StorageError):
            store.get_item("a")
        with pytest.raises(StorageError):
            store.set_item("a", "1")
        with pytest.raises(StorageError):
            store.remove_item("a")

    def test_close(self):
        client = FakeRedis()
        RedisStore("redis://unused", client=client).close()

        assert client.closed
