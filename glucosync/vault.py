"""Secret storage shared by the feed clients.

The vault is deliberately dumb: it maps a key to opaque bytes.  Each client
serializes its own credential type and decides what a missing or stale
value means.

Two implementations:
    MemoryCredentialVault - process-local dict, for tests and throwaway runs
    FileCredentialVault   - one 0600 file per key under a private directory
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path

from glucosync.errors import PersistenceFailure

logger = logging.getLogger("glucosync.vault")

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")


def _check_key(key: str) -> None:
    if not key or not _KEY_PATTERN.match(key) or key in (".", ".."):
        raise ValueError(f"Invalid vault key: {key!r}")


class CredentialVault(ABC):
    """Key → bytes store, safe for concurrent use."""

    @abstractmethod
    def store(self, key: str, secret: bytes) -> None:
        """Persist ``secret`` under ``key``, replacing any previous value.

        Raises:
            PersistenceFailure: If the backing storage is unavailable.
        """

    @abstractmethod
    def load(self, key: str) -> bytes | None:
        """Return the bytes stored under ``key``, or None if absent.

        Raises:
            PersistenceFailure: If the backing storage is unavailable.
        """

    @abstractmethod
    def clear(self, key: str) -> None:
        """Remove ``key``.  Clearing a missing key is a no-op.

        Raises:
            PersistenceFailure: If the backing storage is unavailable.
        """


class MemoryCredentialVault(CredentialVault):
    def __init__(self) -> None:
        self._items: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def store(self, key: str, secret: bytes) -> None:
        _check_key(key)
        with self._lock:
            self._items[key] = bytes(secret)

    def load(self, key: str) -> bytes | None:
        _check_key(key)
        with self._lock:
            return self._items.get(key)

    def clear(self, key: str) -> None:
        _check_key(key)
        with self._lock:
            self._items.pop(key, None)

    def __len__(self) -> int:
        return len(self._items)


class FileCredentialVault(CredentialVault):
    """File-per-key vault.

    Writes go through a temp file in the same directory followed by
    ``os.replace`` so a reader never sees a half-written secret.

    Usage::

        vault = FileCredentialVault(Path("~/.glucosync/vault").expanduser())
        vault.store("official.oauth", credential.to_bytes())
    """

    def __init__(self, directory: Path | str) -> None:
        self._dir = Path(directory)
        self._lock = threading.Lock()
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            os.chmod(self._dir, 0o700)
        except OSError as exc:
            raise PersistenceFailure(f"Cannot prepare vault directory {self._dir}: {exc}") from exc

    @property
    def directory(self) -> Path:
        return self._dir

    def _path(self, key: str) -> Path:
        _check_key(key)
        return self._dir / f"{key}.secret"

    def store(self, key: str, secret: bytes) -> None:
        target = self._path(key)
        with self._lock:
            tmp_name: str | None = None
            try:
                fd, tmp_name = tempfile.mkstemp(dir=self._dir, prefix=".tmp-")
                with os.fdopen(fd, "wb") as fh:
                    fh.write(secret)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.chmod(tmp_name, 0o600)
                os.replace(tmp_name, target)
                tmp_name = None
            except OSError as exc:
                logger.error("Vault write failed for key %s: %s", key, exc)
                raise PersistenceFailure(f"Cannot write vault key {key!r}: {exc}") from exc
            finally:
                if tmp_name is not None and os.path.exists(tmp_name):
                    os.unlink(tmp_name)

    def load(self, key: str) -> bytes | None:
        target = self._path(key)
        with self._lock:
            try:
                return target.read_bytes()
            except FileNotFoundError:
                return None
            except OSError as exc:
                logger.error("Vault read failed for key %s: %s", key, exc)
                raise PersistenceFailure(f"Cannot read vault key {key!r}: {exc}") from exc

    def clear(self, key: str) -> None:
        target = self._path(key)
        with self._lock:
            try:
                target.unlink()
            except FileNotFoundError:
                return
            except OSError as exc:
                logger.error("Vault delete failed for key %s: %s", key, exc)
                raise PersistenceFailure(f"Cannot delete vault key {key!r}: {exc}") from exc
