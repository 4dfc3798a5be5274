"""Tests for micropub_store.py."""
import logging
import sys
from pathlib import Path

import pytest
from pydantic import ValidationError

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from micropub_errors import UnknownClient
from micropub_store import (
    AUTHORIZATIONS_DIR,
    AuthorizationRecord,
    AuthorizationStore,
    AuthToken,
    FileKeyValueStore,
    MemoryKeyValueStore,
    is_usable_key,
)


@pytest.fixture
def file_store(tmp_path):
    return AuthorizationStore.on_disk(tmp_path)


def _record(key="client.example", code="code-1", token=None):
    return AuthorizationRecord(
        client_id=key,
        auth_code=code,
        auth_token=AuthToken(value=token) if token else None,
    )


# ---------------------------------------------------------------------------
# Record serialization
# ---------------------------------------------------------------------------

class TestAuthorizationRecord:
    def test_json_uses_camel_case_keys(self):
        data = _record(token="tok").to_json()
        assert b'"clientID"' in data
        assert b'"authCode"' in data
        assert b'"authToken"' in data

    def test_token_keeps_value_and_date(self):
        record = AuthorizationRecord.from_json(_record(token="tok").to_json())
        assert record.auth_token.value == "tok"
        assert record.auth_token.date.tzinfo is not None

    def test_missing_token_is_none(self):
        record = AuthorizationRecord.from_json(
            b'{"clientID": "client.example", "authCode": "abc"}')
        assert record.auth_token is None
        assert record.me is None


# ---------------------------------------------------------------------------
# File backend
# ---------------------------------------------------------------------------

class TestFileKeyValueStore:
    def test_directory_created_on_first_put(self, tmp_path):
        kv = FileKeyValueStore.for_root(tmp_path)
        assert not (tmp_path / AUTHORIZATIONS_DIR).exists()
        kv.put("client.example", b"{}")
        assert (tmp_path / AUTHORIZATIONS_DIR / "client.example").read_bytes() == b"{}"

    def test_get_missing_returns_none(self, tmp_path):
        kv = FileKeyValueStore.for_root(tmp_path)
        assert kv.get("nope.example") is None

    def test_list_on_fresh_store_is_empty(self, tmp_path):
        kv = FileKeyValueStore.for_root(tmp_path)
        assert list(kv.list()) == []

    def test_put_overwrites(self, tmp_path):
        kv = FileKeyValueStore.for_root(tmp_path)
        kv.put("a.example", b"first")
        kv.put("a.example", b"second")
        assert kv.get("a.example") == b"second"

    def test_no_temp_files_left_behind(self, tmp_path):
        kv = FileKeyValueStore.for_root(tmp_path)
        kv.put("a.example", b"1")
        kv.put("b.example", b"2")
        names = sorted(p.name for p in (tmp_path / AUTHORIZATIONS_DIR).iterdir())
        assert names == ["a.example", "b.example"]

    def test_list_hides_temp_files(self, tmp_path):
        kv = FileKeyValueStore.for_root(tmp_path)
        kv.put("a.example", b"1")
        (tmp_path / AUTHORIZATIONS_DIR / ".tmp-abc123").write_bytes(b"{partial")
        assert list(kv.list()) == ["a.example"]

    @pytest.mark.parametrize("key", ["", ".", "..", "a/b", "..\\x", ".tmp-x", "a\x00b"])
    def test_rejects_unusable_keys(self, tmp_path, key):
        kv = FileKeyValueStore.for_root(tmp_path)
        with pytest.raises(ValueError, match="Unusable storage key"):
            kv.put(key, b"x")
        assert not is_usable_key(key)

    def test_plain_host_is_usable(self):
        assert is_usable_key("client.example")


# ---------------------------------------------------------------------------
# AuthorizationStore
# ---------------------------------------------------------------------------

class TestAuthorizationStore:
    def test_exists_and_load(self, file_store):
        assert not file_store.exists("client.example")
        file_store.save("client.example", _record())
        assert file_store.exists("client.example")
        assert file_store.load("client.example").auth_code == "code-1"

    def test_load_unknown_raises(self, file_store):
        with pytest.raises(UnknownClient) as exc_info:
            file_store.load("ghost.example")
        assert exc_info.value.key == "ghost.example"

    def test_load_corrupt_record_raises(self, tmp_path, file_store):
        path = tmp_path / AUTHORIZATIONS_DIR / "client.example"
        path.parent.mkdir(parents=True)
        path.write_bytes(b"{garbage")

        assert file_store.exists("client.example")
        with pytest.raises(ValidationError):
            file_store.load("client.example")

    def test_save_replaces_whole_record(self, file_store):
        file_store.save("client.example", _record(token="old"))
        file_store.save("client.example", _record(token="new"))
        assert file_store.load("client.example").auth_token.value == "new"

    def test_list_all_yields_every_record(self, file_store):
        file_store.save("a.example", _record("a.example", "ca"))
        file_store.save("b.example", _record("b.example", "cb"))
        codes = sorted(r.auth_code for r in file_store.list_all())
        assert codes == ["ca", "cb"]

    def test_list_all_skips_corrupt_records(self, tmp_path, file_store, caplog):
        file_store.save("good.example", _record("good.example", token="tok"))
        (tmp_path / AUTHORIZATIONS_DIR / "bad.example").write_bytes(b"not json at all")

        with caplog.at_level(logging.WARNING, logger="micropub-store"):
            records = list(file_store.list_all())

        assert [r.client_id for r in records] == ["good.example"]
        assert "bad.example" in caplog.text

    def test_list_all_is_lazy(self):
        store = AuthorizationStore(MemoryKeyValueStore())
        it = store.list_all()
        store.save("late.example", _record("late.example"))
        assert [r.client_id for r in it] == ["late.example"]

    def test_memory_backend_roundtrip(self):
        store = AuthorizationStore(MemoryKeyValueStore())
        store.save("client.example", _record(token="tok"))
        assert store.load("client.example").auth_token.value == "tok"
