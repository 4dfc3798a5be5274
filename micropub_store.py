"""
micropub_store.py — durable authorization records for the Micropub server.

One record per authorized client, keyed by the client's host. Records sit
on top of a tiny key-value interface so the protocol code never touches
the filesystem directly:

  FileKeyValueStore    — one file per key under <root>/authorizations/
  MemoryKeyValueStore  — dict-backed, for tests and throwaway runs

Writes go to a temp file in the same directory and are os.replace()d into
place, so readers never observe half-written JSON.
"""

import logging
import os
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Iterator
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from micropub_errors import UnknownClient

logger = logging.getLogger("micropub-store")

AUTHORIZATIONS_DIR = "authorizations"
_TMP_PREFIX = ".tmp-"


def is_usable_key(key: str) -> bool:
    """True if key can name a file directly inside the store directory."""
    if not key or key in (".", "..") or key.startswith(_TMP_PREFIX):
        return False
    return not any(c in key for c in ("/", "\\", "\x00"))


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

class AuthToken(BaseModel):
    value: str
    date: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class AuthorizationRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    client_id: str = Field(alias="clientID")
    auth_code: str = Field(alias="authCode")
    auth_token: AuthToken | None = Field(default=None, alias="authToken")
    me: str | None = None

    def to_json(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode()

    @classmethod
    def from_json(cls, data: bytes) -> "AuthorizationRecord":
        return cls.model_validate_json(data)


# ---------------------------------------------------------------------------
# Key-value backends
# ---------------------------------------------------------------------------

class KeyValueStore(ABC):
    """Raw bytes by string key."""

    @abstractmethod
    def get(self, key: str) -> bytes | None:
        """Return the stored bytes, or None if the key is absent."""

    @abstractmethod
    def put(self, key: str, data: bytes) -> None:
        """Store bytes under key, replacing any previous value."""

    @abstractmethod
    def list(self) -> Iterator[str]:
        """Iterate over every stored key."""


class MemoryKeyValueStore(KeyValueStore):
    def __init__(self):
        self._items: dict[str, bytes] = {}

    def get(self, key: str) -> bytes | None:
        return self._items.get(key)

    def put(self, key: str, data: bytes) -> None:
        self._items[key] = bytes(data)

    def list(self) -> Iterator[str]:
        return iter(list(self._items))


class FileKeyValueStore(KeyValueStore):
    """One file per key in a single directory.

    The directory is created lazily on the first write, so an untouched
    store leaves no trace on disk.
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    @classmethod
    def for_root(cls, storage_root: Path) -> "FileKeyValueStore":
        return cls(Path(storage_root) / AUTHORIZATIONS_DIR)

    def _path(self, key: str) -> Path:
        if not is_usable_key(key):
            raise ValueError(f"Unusable storage key: {key!r}")
        return self.directory / key

    def get(self, key: str) -> bytes | None:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    def put(self, key: str, data: bytes) -> None:
        path = self._path(key)
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=_TMP_PREFIX, dir=self.directory)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def list(self) -> Iterator[str]:
        if not self.directory.is_dir():
            return
        for entry in sorted(self.directory.iterdir()):
            if entry.name.startswith(_TMP_PREFIX) or not entry.is_file():
                continue
            yield entry.name


# ---------------------------------------------------------------------------
# Authorization store
# ---------------------------------------------------------------------------

class AuthorizationStore:
    """Client key -> AuthorizationRecord, one record per client."""

    def __init__(self, backend: KeyValueStore):
        self.backend = backend

    @classmethod
    def on_disk(cls, storage_root: Path) -> "AuthorizationStore":
        return cls(FileKeyValueStore.for_root(storage_root))

    def exists(self, key: str) -> bool:
        return self.backend.get(key) is not None

    def load(self, key: str) -> AuthorizationRecord:
        data = self.backend.get(key)
        if data is None:
            raise UnknownClient(key)
        return AuthorizationRecord.from_json(data)

    def save(self, key: str, record: AuthorizationRecord) -> None:
        self.backend.put(key, record.to_json())

    def list_all(self) -> Iterator[AuthorizationRecord]:
        """Yield every readable record.

        Best effort: a record that can't be read or decoded is logged and
        skipped so one bad file can't lock every client out.
        """
        for key in self.backend.list():
            try:
                data = self.backend.get(key)
                if data is None:
                    continue
                yield AuthorizationRecord.from_json(data)
            except (OSError, ValueError, ValidationError) as e:
                logger.warning("list_all: skipping unreadable record %s: %s", key, e)
