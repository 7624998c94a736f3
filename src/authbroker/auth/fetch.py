"""Request-time credential repair around a plain ``fetch`` primitive.

:class:`AuthenticatedFetch` is what upstream API calls go through.  For each
request it:

1. resolves the freshest credential (store, provider CLI file, ADC file);
2. refreshes it first when the access token is missing or expired;
3. replaces any caller-supplied auth (``Authorization``, ``x-goog-api-key``,
   ``?key=``) with ``Authorization: Bearer <token>`` and sends;
4. on ``401`` refreshes once and retries once;
5. on a ``403`` scope error walks the :class:`RecoveryStrategy` list,
   importing and refreshing each external credential until a retry is no
   longer a scope error;
6. returns every other response untouched.

Every credential that is successfully refreshed or imported is written back
to the store before it is used.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, NamedTuple, Optional, Sequence

import httpx

from authbroker.auth.credential_store import CredentialStore
from authbroker.auth.sources import CredentialSources
from authbroker.auth.tokens import TokenClient
from authbroker.models import (
    BrokerSettings,
    Credential,
    ProviderConfig,
    SourcedCredential,
)

logger = logging.getLogger(__name__)

FetchFn = Callable[[httpx.Request], Awaitable[httpx.Response]]
"""The generic fetch primitive: send one request, return its response."""

_STRIPPED_HEADERS = ("authorization", "x-goog-api-key")
_STRIPPED_PARAMS = ("key",)
_QUOTA_PROJECT_HEADER = "x-goog-user-project"


class RecoveryStrategy(NamedTuple):
    """One external source tried when a request fails with a scope error."""

    name: str
    read: Callable[[], Awaitable[Optional[SourcedCredential]]]


def default_recovery_chain(sources: CredentialSources) -> list[RecoveryStrategy]:
    """Provider CLI file first, then application default credentials."""
    return [
        RecoveryStrategy("external-file", sources.external_file),
        RecoveryStrategy("adc", sources.adc),
    ]


def authorize_request(request: httpx.Request, credential: Credential) -> httpx.Request:
    """Copy *request* with its auth replaced by *credential*'s bearer token.

    The body of *request* must already be read; see :func:`_buffer_body`.
    """
    headers = httpx.Headers(request.headers)
    for name in _STRIPPED_HEADERS:
        headers.pop(name, None)
    # Length headers are re-derived from the buffered body.
    headers.pop("Transfer-Encoding", None)
    headers.pop("Content-Length", None)
    if credential.access:
        headers["Authorization"] = f"Bearer {credential.access}"
    if credential.quota_project_id:
        headers[_QUOTA_PROJECT_HEADER] = credential.quota_project_id

    url = request.url
    for param in _STRIPPED_PARAMS:
        url = url.copy_remove_param(param)

    return httpx.Request(
        request.method,
        url,
        headers=headers,
        content=request.content,
        extensions=request.extensions,
    )


async def _buffer_body(request: httpx.Request) -> None:
    if isinstance(request.stream, httpx.AsyncByteStream):
        await request.aread()
    else:
        request.read()


class AuthenticatedFetch:
    """Wrap *send* so every request carries a working bearer token.

    Args:
        send: The underlying fetch primitive.
        sources: Credential readers and merger.
        store: Where refreshed and imported credentials are persisted.
        tokens: Token endpoint client.
        provider: Supplies the provider id and the scope-error marker.
        settings: Supplies the simulate-expiry toggle.
        refresh_lock: Serialises refreshes; share one per provider.
        recovery: Scope-error recovery chain.  Defaults to
            :func:`default_recovery_chain`.
    """

    def __init__(
        self,
        send: FetchFn,
        *,
        sources: CredentialSources,
        store: CredentialStore,
        tokens: TokenClient,
        provider: ProviderConfig,
        settings: BrokerSettings,
        refresh_lock: Optional[asyncio.Lock] = None,
        recovery: Optional[Sequence[RecoveryStrategy]] = None,
    ) -> None:
        self._send = send
        self._sources = sources
        self._store = store
        self._tokens = tokens
        self._provider = provider
        self._settings = settings
        self._lock = refresh_lock or asyncio.Lock()
        self._recovery = list(recovery) if recovery is not None else default_recovery_chain(sources)

    @property
    def recovery(self) -> list[RecoveryStrategy]:
        return self._recovery

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        credential = await self._sources.latest()
        if credential is None:
            logger.debug("No credential available; sending %s unauthenticated", request.url)
            return await self._send(request)

        if (
            not credential.access
            or credential.is_expired()
            or self._settings.simulate_expiry
        ):
            renewed = await self._renew(
                credential, reuse_stored=not self._settings.simulate_expiry
            )
            if renewed is not None:
                credential = renewed

        # The body may be sent more than once.
        await _buffer_body(request)
        first = await self._send(authorize_request(request, credential))

        if first.status_code == 401:
            return await self._retry_unauthorized(request, credential, first)
        if await self._is_scope_error(first):
            return await self._recover_scope(request, first)
        return first

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    async def _renew(
        self, credential: Credential, reuse_stored: bool = True
    ) -> Optional[Credential]:
        """Refresh *credential* and persist the result.

        With *reuse_stored*, a credential that another caller refreshed
        while this one waited for the lock is returned instead of spending
        the refresh token a second time.
        """
        async with self._lock:
            if reuse_stored:
                stored = await self._store.get(self._provider.provider_id)
                if (
                    stored is not None
                    and stored.refresh == credential.refresh
                    and stored.access
                    and stored.access != credential.access
                    and not stored.is_expired()
                ):
                    logger.debug("Reusing credential refreshed by a concurrent request")
                    return stored

            logger.debug("Refreshing access token")
            renewed = await self._tokens.refresh(
                credential.refresh, credential.client_id, credential.client_secret
            )
            if renewed is None:
                return None
            updated = credential.model_copy(
                update={
                    "access": renewed.access,
                    "expires_at": renewed.expires_at,
                    "refresh": renewed.refresh or credential.refresh,
                }
            )
            await self._store.set(self._provider.provider_id, updated)
            return updated

    async def _retry_unauthorized(
        self,
        request: httpx.Request,
        credential: Credential,
        first: httpx.Response,
    ) -> httpx.Response:
        renewed = await self._renew(credential)
        if renewed is None or not renewed.access:
            logger.debug("Refresh after 401 failed; returning original response")
            return first
        logger.debug("Retrying request after 401 with refreshed token")
        return await self._send(authorize_request(request, renewed))

    async def _recover_scope(
        self, request: httpx.Request, first: httpx.Response
    ) -> httpx.Response:
        for strategy in self._recovery:
            candidate = await strategy.read()
            if candidate is None or not candidate.refresh:
                continue
            renewed = await self._tokens.refresh(
                candidate.refresh, candidate.client_id, candidate.client_secret
            )
            if renewed is None:
                logger.debug("Could not refresh %s credential", strategy.name)
                continue

            imported = candidate.to_credential().model_copy(
                update={
                    "access": renewed.access,
                    "expires_at": renewed.expires_at,
                    "refresh": renewed.refresh or candidate.refresh,
                }
            )
            await self._store.set(self._provider.provider_id, imported)
            logger.debug("Retrying with %s credential after scope error", strategy.name)

            retried = await self._send(authorize_request(request, imported))
            if not await self._is_scope_error(retried):
                return retried
        return first

    async def _is_scope_error(self, response: httpx.Response) -> bool:
        if response.status_code != 403:
            return False
        await response.aread()
        return self._provider.scope_error_marker in response.text.lower()
