"""Secret storage backends for flow and token records.

:class:`SecretStorage` is the narrow interface the flow and token stores
persist through: string values under fixed keys. Two backends ship:

* :class:`FileSecretStorage` -- one file per key under the secrets
  directory (typically ``~/.local/share/cloudlogin/secrets/``), written
  atomically with ``0o600`` permissions so that secrets are never
  world-readable, even momentarily.
* :class:`MemorySecretStorage` -- process-local dictionary, used by tests
  and headless embedding.

Encryption at rest is left to the backend; the file backend relies on
owner-only permissions.
"""

from __future__ import annotations

import abc
import logging
import re
import threading
from pathlib import Path
from typing import Optional

from cloudlogin.config import atomic_write
from cloudlogin.exceptions import SecretStoreError

logger = logging.getLogger(__name__)

_SAFE_KEY = re.compile(r"^[A-Za-z0-9._-]+$")


class SecretStorage(abc.ABC):
    """Key/value store for secret strings."""

    @abc.abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the value stored under *key*, or ``None`` if absent."""

    @abc.abstractmethod
    def store(self, key: str, value: str) -> None:
        """Store *value* under *key*, replacing any previous value."""

    @abc.abstractmethod
    def delete(self, key: str) -> None:
        """Remove *key*. A no-op when the key is absent."""


class FileSecretStorage(SecretStorage):
    """Persist each key as ``<directory>/<key>.json``.

    Args:
        directory: Directory for secret files; created if missing.

    Example::

        storage = FileSecretStorage(get_secrets_dir())
        storage.store("cloudlogin.oauth.tokens", payload)
        assert storage.get("cloudlogin.oauth.tokens") == payload
    """

    def __init__(self, directory: Path) -> None:
        self._directory = directory
        self._directory.mkdir(parents=True, exist_ok=True)

    @property
    def directory(self) -> Path:
        return self._directory

    def path_for(self, key: str) -> Path:
        """Return the file backing *key*.

        Raises:
            SecretStoreError: If *key* contains characters unsafe for a file name.
        """
        if not _SAFE_KEY.match(key):
            raise SecretStoreError(f"Invalid secret key: {key!r}")
        return self._directory / f"{key}.json"

    def get(self, key: str) -> Optional[str]:
        path = self.path_for(key)
        if not path.is_file():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except OSError as exc:
            logger.warning("Could not read secret '%s': %s", key, exc)
            return None

    def store(self, key: str, value: str) -> None:
        try:
            atomic_write(self.path_for(key), value, mode=0o600)
        except OSError as exc:
            raise SecretStoreError(f"Could not write secret '{key}': {exc}") from exc

    def delete(self, key: str) -> None:
        path = self.path_for(key)
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise SecretStoreError(f"Could not delete secret '{key}': {exc}") from exc


class MemorySecretStorage(SecretStorage):
    """In-process secret storage. Contents vanish with the process."""

    def __init__(self) -> None:
        self._values: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._values.get(key)

    def store(self, key: str, value: str) -> None:
        with self._lock:
            self._values[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._values)
