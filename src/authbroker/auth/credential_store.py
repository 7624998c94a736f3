"""Persisted credential store, keyed by provider id.

The broker only needs two operations from its store -- ``get`` and ``set`` --
so any object implementing :class:`CredentialStore` can be plugged in (a
host application's own auth database, a keyring, ...).  Two reference
implementations ship here:

- :class:`FileCredentialStore` -- one JSON file per provider under
  ``~/.local/share/authbroker/credentials/`` (XDG) or the platform
  equivalent, written atomically with ``0o600`` permissions.
- :class:`MemoryCredentialStore` -- a dict, for embedding and tests.

See Also:
    :func:`authbroker.auth.sources.read_persisted` -- the reader on top of
    this contract.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from authbroker.config import atomic_write, get_credentials_dir
from authbroker.models import Credential

logger = logging.getLogger(__name__)


class CredentialStore(ABC):
    """Contract for the persisted-credential store."""

    @abstractmethod
    async def get(self, provider_id: str) -> Optional[Credential]:
        """Return the stored credential for *provider_id*, or ``None``."""
        ...

    @abstractmethod
    async def set(self, provider_id: str, credential: Credential) -> None:
        """Create or overwrite the credential for *provider_id*."""
        ...

    async def clear(self, provider_id: str) -> None:
        """Remove the credential for *provider_id*.  No-op by default."""
        return None


class MemoryCredentialStore(CredentialStore):
    """Keep credentials in a dict for the lifetime of the process."""

    def __init__(self, initial: Optional[dict[str, Credential]] = None) -> None:
        self._data: dict[str, Credential] = dict(initial or {})

    async def get(self, provider_id: str) -> Optional[Credential]:
        credential = self._data.get(provider_id)
        return credential.model_copy() if credential is not None else None

    async def set(self, provider_id: str, credential: Credential) -> None:
        self._data[provider_id] = credential.model_copy()

    async def clear(self, provider_id: str) -> None:
        self._data.pop(provider_id, None)


class FileCredentialStore(CredentialStore):
    """Read/write one JSON credential file per provider.

    All writes are atomic: content is written to a temporary file in the
    same directory, fsynced, then renamed into place.

    Args:
        directory: Where the files live.  Defaults to
            :func:`~authbroker.config.get_credentials_dir`.

    Example::

        store = FileCredentialStore()
        await store.set("google", Credential(refresh="1//r"))
        assert (await store.get("google")).refresh == "1//r"
    """

    def __init__(self, directory: Optional[Path] = None) -> None:
        self._directory = directory

    @property
    def directory(self) -> Path:
        """The directory holding the credential files."""
        if self._directory is None:
            self._directory = get_credentials_dir()
        return self._directory

    def path_for(self, provider_id: str) -> Path:
        """The filesystem path of *provider_id*'s credential file."""
        return self.directory / f"{provider_id}.json"

    async def get(self, provider_id: str) -> Optional[Credential]:
        """Load the stored credential.

        Returns:
            The deserialised :class:`~authbroker.models.Credential`, or
            ``None`` if the file does not exist or cannot be parsed.
        """
        path = self.path_for(provider_id)
        if not path.is_file():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return Credential.model_validate(data)
        except (json.JSONDecodeError, ValueError, OSError) as exc:
            logger.warning("Ignoring unreadable credential file %s: %s", path, exc)
            return None

    async def set(self, provider_id: str, credential: Credential) -> None:
        """Persist *credential* atomically with ``0o600`` permissions.

        Raises:
            OSError: If the file cannot be written (permissions, disk full, etc.).
        """
        text = json.dumps(credential.model_dump(mode="json"), indent=2) + "\n"
        atomic_write(self.path_for(provider_id), text)

    async def clear(self, provider_id: str) -> None:
        """Delete the credential file if it exists."""
        path = self.path_for(provider_id)
        if path.is_file():
            path.unlink()
