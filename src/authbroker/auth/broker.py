"""The broker facade: one object per process owning every piece of auth state.

:class:`AuthBroker` ties the components together:

- :meth:`AuthBroker.authorize` -- the PKCE "connect" flow.  Returns an
  :class:`AuthorizationRequest` whose URL the user opens and whose
  :meth:`~AuthorizationRequest.callback` is awaited for the result.
- :meth:`AuthBroker.import_credentials` -- adopt a login made with the
  provider's own CLI or the cloud SDK instead.
- :attr:`AuthBroker.fetch` -- the :class:`~authbroker.auth.fetch.AuthenticatedFetch`
  every upstream call should go through.
- :meth:`AuthBroker.health` / :meth:`AuthBroker.credential` -- inspection.

The callback listener, the token client and the refresh lock are instance
fields, so nothing is shared between brokers.

Example::

    async with AuthBroker(FileCredentialStore()) as broker:
        request = await broker.authorize()
        print(request.url)
        result = await request.callback()
        response = await broker.fetch(httpx.Request("GET", api_url))
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

import httpx

from authbroker.auth.authorize import build_authorize_url, scopes_for
from authbroker.auth.credential_store import CredentialStore
from authbroker.auth.fetch import AuthenticatedFetch, FetchFn
from authbroker.auth.health import check_health
from authbroker.auth.listener import CallbackListener
from authbroker.auth.pkce import generate_pkce_pair, generate_state
from authbroker.auth.sources import CredentialSources
from authbroker.auth.tokens import TokenClient, expires_at_from
from authbroker.config import load_settings
from authbroker.exceptions import (
    AuthError,
    BrokerError,
    CallbackTimeoutError,
    ConnectionError_,
    InsufficientScopeError,
    TokenExchangeError,
)
from authbroker.models import (
    ACCESS_ONLY_PREFIX,
    AuthorizationResult,
    AuthorizationSession,
    BrokerSettings,
    Credential,
    HealthReason,
    HealthResult,
    ProviderConfig,
    now_ms,
)
from authbroker.providers import GOOGLE

logger = logging.getLogger(__name__)

RESTART_HINT = "Start sign-in again to get a new link."
RELOGIN_HINT = (
    "Run `gemini` and finish Google login (or run "
    "`gcloud auth application-default login`), then import again."
)
IMPORT_INSTRUCTIONS = (
    "Run `gemini` and finish Google login (or run "
    "`gcloud auth application-default login`), then wait here while "
    "credentials are imported."
)
_IMPORTED_FALLBACK_TTL_MS = 30 * 60 * 1000


class AuthorizationRequest:
    """What a sign-in method hands to the UI.

    Args:
        url: Page the user must open.
        instructions: Human-readable next step.
        callback: Coroutine function resolving to the outcome.
        method: ``"auto"`` -- the result is detected without user input.
    """

    def __init__(
        self,
        url: str,
        instructions: str,
        callback: Callable[[], Awaitable[AuthorizationResult]],
        method: str = "auto",
    ) -> None:
        self.url = url
        self.instructions = instructions
        self.method = method
        self._callback = callback

    async def callback(self) -> AuthorizationResult:
        """Wait for the flow to finish.  Expected failures are returned, not raised."""
        return await self._callback()


class AuthBroker:
    """Authenticate against *provider* and keep the credential working.

    Args:
        store: The persisted credential store.
        settings: Runtime settings.  Defaults to
            :func:`~authbroker.config.load_settings`.
        provider: Endpoints and scopes.  Defaults to Google.
        http_client: Client for the token and token-info endpoints.  Created
            and owned by the broker when omitted.
        send: Fetch primitive wrapped by :attr:`fetch`.  Defaults to
            ``http_client.send``.
        listener: Callback listener.  Created from the provider's port range
            when omitted.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Optional[BrokerSettings] = None,
        provider: ProviderConfig = GOOGLE,
        http_client: Optional[httpx.AsyncClient] = None,
        send: Optional[FetchFn] = None,
        listener: Optional[CallbackListener] = None,
    ) -> None:
        self._store = store
        self._provider = provider
        self._settings = settings or load_settings(provider)
        self._tokens = TokenClient(provider, self._settings, http_client)
        self._listener = listener or CallbackListener(
            port_range=provider.port_range, callback_path=provider.callback_path
        )
        self._sources = CredentialSources(store, provider.provider_id, self._settings)
        self._refresh_lock = asyncio.Lock()
        self._session: Optional[AuthorizationSession] = None
        self._fetch = AuthenticatedFetch(
            send or self._tokens.http.send,
            sources=self._sources,
            store=store,
            tokens=self._tokens,
            provider=provider,
            settings=self._settings,
            refresh_lock=self._refresh_lock,
        )

    # ------------------------------------------------------------------ #
    # Async context manager
    # ------------------------------------------------------------------ #

    async def __aenter__(self) -> AuthBroker:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Stop the callback listener and close owned HTTP resources."""
        self._listener.stop()
        await self._tokens.aclose()

    # ------------------------------------------------------------------ #
    # Accessors
    # ------------------------------------------------------------------ #

    @property
    def provider(self) -> ProviderConfig:
        return self._provider

    @property
    def settings(self) -> BrokerSettings:
        return self._settings

    @property
    def listener(self) -> CallbackListener:
        return self._listener

    @property
    def sources(self) -> CredentialSources:
        return self._sources

    @property
    def fetch(self) -> AuthenticatedFetch:
        """The authenticated fetch wrapper for upstream API calls."""
        return self._fetch

    @property
    def session(self) -> Optional[AuthorizationSession]:
        """The in-flight authorization attempt, if any."""
        return self._session

    async def credential(self) -> Optional[Credential]:
        """The credential the next request would start from."""
        return await self._sources.latest()

    async def health(self) -> HealthResult:
        """Check the current credential against the token-info endpoint.

        Raises:
            AuthError: If no credential with an access token is available.
        """
        credential = await self.credential()
        if credential is None or not credential.access:
            raise AuthError(
                f"No {self._provider.provider_id} credential available. "
                "Sign in first."
            )
        return await check_health(self._tokens.http, self._provider, credential.access)

    async def logout(self) -> None:
        """Forget the persisted credential.  External files are left alone."""
        await self._store.clear(self._provider.provider_id)

    # ------------------------------------------------------------------ #
    # Sign-in methods
    # ------------------------------------------------------------------ #

    async def authorize(self) -> AuthorizationRequest:
        """Begin the PKCE authorization-code flow.

        Starts (or reuses) the callback listener, discards codes left over
        from earlier attempts, and prepares a fresh session.

        Returns:
            The request to show the user.

        Raises:
            ListenerError: If no callback port can be bound.
        """
        redirect_uri = self._listener.start()
        self._listener.reset()
        verifier, challenge = generate_pkce_pair()
        session = AuthorizationSession(
            state=generate_state(),
            verifier=verifier,
            challenge=challenge,
            client_id=self._settings.client_id,
            redirect_uri=redirect_uri,
        )
        self._session = session
        url = build_authorize_url(
            self._provider,
            client_id=session.client_id,
            redirect_uri=session.redirect_uri,
            state=session.state,
            challenge=session.challenge,
            scopes=scopes_for(self._provider, self._settings.enable_extra_scope),
        )

        async def callback() -> AuthorizationResult:
            try:
                credential = await self._complete(session)
            except BrokerError as exc:
                logger.warning("Authorization failed: %s", exc)
                message = str(exc)
                if not isinstance(exc, CallbackTimeoutError):
                    message = f"{message} {RESTART_HINT}"
                return AuthorizationResult(ok=False, error=message)
            finally:
                if self._session is session:
                    self._session = None
            return AuthorizationResult(ok=True, credential=credential)

        return AuthorizationRequest(
            url=url,
            instructions=(
                "Complete sign-in in your browser. The redirect to localhost "
                "is detected automatically."
            ),
            callback=callback,
        )

    async def _complete(self, session: AuthorizationSession) -> Credential:
        code = await self._listener.wait_for_code(
            session.state, self._settings.callback_timeout
        )

        client_secret = self._settings.client_secret
        if not client_secret:
            external = await self._sources.external()
            client_secret = external.client_secret if external else None

        try:
            token = await self._tokens.exchange(
                code,
                session.redirect_uri,
                session.verifier,
                session.client_id,
                client_secret,
            )
        except (TokenExchangeError, ConnectionError_) as exc:
            # A login completed meanwhile in the provider CLI or the cloud
            # SDK still counts as a successful sign-in.
            logger.warning("Code exchange failed (%s); looking for an external login", exc)
            try:
                adopted = await self._adopt_external()
            except AuthError:
                adopted = None
            if adopted is None:
                raise
            return adopted
        assert token.access_token is not None  # exchange() guarantees this

        health = await check_health(self._tokens.http, self._provider, token.access_token)
        if not health.ok:
            logger.warning(
                "New token failed the health check (%s)",
                health.reason.value if health.reason else "unknown",
            )

        refresh = token.refresh_token
        if not refresh:
            current = await self._sources.external()
            refresh = current.refresh if current else f"{ACCESS_ONLY_PREFIX}{now_ms()}"

        credential = Credential(
            access=token.access_token,
            refresh=refresh,
            expires_at=expires_at_from(token.expires_in),
            client_id=session.client_id,
            client_secret=client_secret,
        )
        await self._store.set(self._provider.provider_id, credential)
        return credential

    async def import_credentials(self) -> AuthorizationRequest:
        """Adopt a login made with the provider CLI or the cloud SDK.

        The callback polls the external credential files until one carries a
        refresh token, makes sure its access token is live and scoped, and
        persists it.
        """

        async def callback() -> AuthorizationResult:
            try:
                credential = await self._import()
            except BrokerError as exc:
                logger.warning("Credential import failed: %s", exc)
                return AuthorizationResult(ok=False, error=str(exc))
            return AuthorizationResult(ok=True, credential=credential)

        return AuthorizationRequest(
            url=self._provider.docs_url,
            instructions=IMPORT_INSTRUCTIONS,
            callback=callback,
        )

    async def _wait_for_external(self) -> Optional[Credential]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.import_timeout
        while True:
            credential = await self._sources.external()
            if credential is not None:
                return credential
            if loop.time() >= deadline:
                return None
            await asyncio.sleep(self._settings.import_poll_interval)

    async def _import(self) -> Credential:
        credential = await self._wait_for_external()
        if credential is None:
            raise AuthError(f"No external login found. {RELOGIN_HINT}")

        if not credential.access or credential.is_expired():
            credential = await self._refresh_imported(credential)

        assert credential.access is not None
        health = await check_health(self._tokens.http, self._provider, credential.access)
        if health.reason is HealthReason.TOKEN_EXPIRED:
            credential = await self._refresh_imported(credential)
            assert credential.access is not None
            health = await check_health(self._tokens.http, self._provider, credential.access)
        if health.reason is HealthReason.SCOPE_MISSING:
            raise InsufficientScopeError(
                f"The imported login lacks the required scopes. {RELOGIN_HINT}"
            )

        return await self._persist_imported(credential)

    async def _adopt_external(self) -> Optional[Credential]:
        credential = await self._wait_for_external()
        if credential is None:
            return None
        if not credential.access or credential.is_expired():
            credential = await self._refresh_imported(credential)
        return await self._persist_imported(credential)

    async def _persist_imported(self, credential: Credential) -> Credential:
        if not credential.expires_at:
            credential = credential.model_copy(
                update={"expires_at": now_ms() + _IMPORTED_FALLBACK_TTL_MS}
            )
        await self._store.set(self._provider.provider_id, credential)
        return credential

    async def _refresh_imported(self, credential: Credential) -> Credential:
        renewed = await self._tokens.refresh(
            credential.refresh, credential.client_id, credential.client_secret
        )
        if renewed is None:
            raise AuthError(f"Could not refresh the imported login. {RELOGIN_HINT}")
        return credential.model_copy(
            update={
                "access": renewed.access,
                "expires_at": renewed.expires_at,
                "refresh": renewed.refresh or credential.refresh,
            }
        )
