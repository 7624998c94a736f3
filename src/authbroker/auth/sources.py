"""Credential source readers and the merge step that picks between them.

Three sources can hold a usable credential for the provider:

1. the broker's own persisted store (:func:`read_persisted`);
2. the provider CLI's ``oauth_creds.json`` (:func:`read_external_tool_file`);
3. the cloud SDK's application default credentials
   (:func:`read_adc_file`).

Each reader normalises its input into a
:class:`~authbroker.models.SourcedCredential` tagged with its
:class:`~authbroker.models.CredentialKind`, and never raises for a missing
or malformed file.  :func:`merge_credentials` is the only place that
decides which candidate wins.

The broker never writes to the external files; it only imports from them.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Iterable, Optional

from authbroker.auth.credential_store import CredentialStore
from authbroker.models import (
    AdcCredentialFile,
    BrokerSettings,
    Credential,
    CredentialKind,
    ExternalToolCredentialFile,
    SourcedCredential,
)

logger = logging.getLogger(__name__)

_ADC_USER_TYPE = "authorized_user"


def _load_json_object(path: Path) -> Optional[dict[str, Any]]:
    """Parse *path* as a JSON object, or return ``None`` for anything else."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError):
        return None
    if not isinstance(data, dict):
        return None
    return data


async def read_persisted(
    store: CredentialStore, provider_id: str
) -> Optional[SourcedCredential]:
    """Read the broker's own credential for *provider_id*."""
    credential = await store.get(provider_id)
    if credential is None:
        return None
    return SourcedCredential.from_credential(credential, CredentialKind.PERSISTED)


async def read_external_tool_file(paths: Iterable[Path]) -> Optional[SourcedCredential]:
    """Return the first candidate file that holds an access or refresh token.

    Args:
        paths: Candidate locations, override first.

    Returns:
        The normalised credential, or ``None`` when no candidate qualifies.
    """
    for path in paths:
        data = _load_json_object(path)
        if data is None:
            continue
        try:
            creds = ExternalToolCredentialFile.model_validate(data)
        except ValueError:
            logger.debug("Skipping malformed credential file %s", path)
            continue
        if not creds.access_token and not creds.refresh_token:
            continue
        logger.debug("Found external tool credentials at %s", path)
        return SourcedCredential(
            kind=CredentialKind.EXTERNAL_FILE,
            access=creds.access_token,
            refresh=creds.refresh_token,
            expires_at=int(creds.expiry_date or 0),
            client_id=creds.client_id,
            client_secret=creds.client_secret,
        )
    return None


async def read_adc_file(path: Optional[Path]) -> Optional[SourcedCredential]:
    """Read an ``authorized_user`` application default credentials file.

    Service-account and other credential types are rejected: they cannot be
    exchanged through this provider's user OAuth flow.
    """
    if path is None:
        return None
    data = _load_json_object(path)
    if data is None:
        return None
    try:
        creds = AdcCredentialFile.model_validate(data)
    except ValueError:
        return None
    if creds.type != _ADC_USER_TYPE:
        if creds.type:
            logger.debug("Ignoring ADC file %s of type %r", path, creds.type)
        return None
    if not creds.refresh_token:
        return None
    return SourcedCredential(
        kind=CredentialKind.ADC,
        refresh=creds.refresh_token,
        client_id=creds.client_id,
        client_secret=creds.client_secret,
        quota_project_id=creds.quota_project_id,
    )


def pick_best(*candidates: Optional[SourcedCredential]) -> Optional[SourcedCredential]:
    """Pick the most authoritative candidate, keeping its source tag.

    Only candidates with a refresh token qualify.  Candidates that also
    carry an access token beat refresh-only ones; within each group the
    furthest-future ``expires_at`` wins, so ``0`` (unknown) is used only
    when nothing better exists.  Ties go to the earlier argument, which is
    why callers pass the persisted credential first.

    Returns:
        The winning candidate, or ``None`` when no candidate qualifies.
    """
    usable = [c for c in candidates if c is not None and c.refresh]
    if not usable:
        return None
    # max() keeps the first of equal keys
    return max(usable, key=lambda c: (bool(c.access), c.expires_at))


def merge_credentials(*candidates: Optional[SourcedCredential]) -> Optional[Credential]:
    """Return :func:`pick_best`'s winner as a plain :class:`~authbroker.models.Credential`."""
    best = pick_best(*candidates)
    if best is None:
        return None
    logger.debug("Using %s credential", best.kind.value)
    return best.to_credential()


class CredentialSources:
    """All readers bound to one store, provider and settings.

    Args:
        store: The persisted credential store.
        provider_id: Key of the provider in *store*.
        settings: Supplies the external file locations.
    """

    def __init__(
        self, store: CredentialStore, provider_id: str, settings: BrokerSettings
    ) -> None:
        self._store = store
        self._provider_id = provider_id
        self._settings = settings

    async def persisted(self) -> Optional[SourcedCredential]:
        return await read_persisted(self._store, self._provider_id)

    async def external_file(self) -> Optional[SourcedCredential]:
        return await read_external_tool_file(self._settings.creds_paths)

    async def adc(self) -> Optional[SourcedCredential]:
        return await read_adc_file(self._settings.adc_path)

    async def external(self) -> Optional[Credential]:
        """Best credential from the external files alone (used by the import flow)."""
        return merge_credentials(await self.external_file(), await self.adc())

    async def latest(self) -> Optional[Credential]:
        """Freshest credential across the store and both external files."""
        return merge_credentials(
            await self.persisted(), await self.external_file(), await self.adc()
        )

    async def latest_sourced(self) -> Optional[SourcedCredential]:
        """Like :meth:`latest`, but keeps the winning source's tag."""
        return pick_best(
            await self.persisted(), await self.external_file(), await self.adc()
        )
