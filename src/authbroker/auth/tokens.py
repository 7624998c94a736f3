"""Token endpoint calls: authorization-code exchange and refresh.

:class:`TokenClient` wraps an :class:`httpx.AsyncClient` and speaks the two
grants the broker needs against the provider's token endpoint:

* ``authorization_code`` with the PKCE verifier (:meth:`TokenClient.exchange`);
  failures raise, carrying the provider's status and body.
* ``refresh_token`` (:meth:`TokenClient.refresh`); failures return ``None``
  because a fallback chain above this layer decides what to do next.

Neither call is retried here.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from authbroker.exceptions import ConnectionError_, TokenExchangeError
from authbroker.models import (
    ACCESS_ONLY_PREFIX,
    BrokerSettings,
    ProviderConfig,
    RefreshedToken,
    TokenResponse,
    now_ms,
)

logger = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN = 3600
"""Seconds assumed when the provider omits ``expires_in``."""

_FORM_HEADERS = {
    "Accept": "application/json",
    "Content-Type": "application/x-www-form-urlencoded",
}


def expires_at_from(expires_in: Optional[int]) -> int:
    """Turn a relative ``expires_in`` (seconds) into an epoch-ms deadline."""
    return now_ms() + int(expires_in or DEFAULT_EXPIRES_IN) * 1000


class TokenClient:
    """Exchange and refresh tokens at the provider's token endpoint.

    Args:
        provider: Supplies ``token_url``.
        settings: Supplies the fallback client id and secret.
        client: HTTP client to use.  When omitted one is created and closed
            by :meth:`aclose`.
    """

    def __init__(
        self,
        provider: ProviderConfig,
        settings: BrokerSettings,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._provider = provider
        self._settings = settings
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=30.0)

    @property
    def http(self) -> httpx.AsyncClient:
        """The underlying HTTP client (shared with the health check)."""
        return self._client

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def exchange(
        self,
        code: str,
        redirect_uri: str,
        verifier: str,
        client_id: str,
        client_secret: Optional[str] = None,
    ) -> TokenResponse:
        """Exchange an authorization code for tokens.

        Args:
            code: The code delivered to the callback listener.
            redirect_uri: Must equal the one in the authorize URL.
            verifier: The PKCE verifier behind the URL's challenge.
            client_id: The client the code was issued to.
            client_secret: Only for confidential clients; falls back to
                the configured secret.

        Returns:
            The parsed token response (``access_token`` guaranteed).

        Raises:
            TokenExchangeError: On a non-2xx response or a body without
                ``access_token``.
            ConnectionError_: If the token endpoint cannot be reached.
        """
        data: dict[str, str] = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": client_id,
            "code_verifier": verifier,
            "redirect_uri": redirect_uri,
        }
        secret = client_secret or self._settings.client_secret
        if secret:
            data["client_secret"] = secret

        try:
            response = await self._client.post(
                self._provider.token_url, data=data, headers=_FORM_HEADERS
            )
        except httpx.HTTPError as exc:
            raise ConnectionError_(f"Token exchange failed: {exc}") from exc

        if not response.is_success:
            raise TokenExchangeError(
                f"Token exchange failed with status {response.status_code}: "
                f"{response.text}",
                status_code=response.status_code,
                body=response.text,
            )

        try:
            token = TokenResponse.model_validate(response.json())
        except ValueError as exc:
            raise TokenExchangeError(
                f"Token exchange returned an unreadable body: {response.text}",
                status_code=response.status_code,
                body=response.text,
            ) from exc
        if not token.access_token:
            raise TokenExchangeError(
                "Token response missing 'access_token' field",
                status_code=response.status_code,
                body=response.text,
            )
        return token

    async def refresh(
        self,
        refresh_token: str,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
    ) -> Optional[RefreshedToken]:
        """Renew an access token.

        Access-only sentinels short-circuit without touching the network.

        Returns:
            The renewed token, or ``None`` if it could not be refreshed.
        """
        if refresh_token.startswith(ACCESS_ONLY_PREFIX):
            logger.debug("Credential is access-only; skipping refresh")
            return None

        data: dict[str, str] = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": client_id or self._settings.client_id,
        }
        secret = client_secret or self._settings.client_secret
        if secret:
            data["client_secret"] = secret

        try:
            response = await self._client.post(
                self._provider.token_url, data=data, headers=_FORM_HEADERS
            )
        except httpx.HTTPError as exc:
            logger.warning("Token refresh failed: %s", exc)
            return None

        if not response.is_success:
            logger.warning(
                "Token refresh rejected with status %d: %s",
                response.status_code,
                response.text[:200],
            )
            return None

        try:
            body: Any = response.json()
        except ValueError:
            logger.warning("Token refresh returned a non-JSON body")
            return None
        if not isinstance(body, dict) or not body.get("access_token"):
            logger.warning("Token refresh response missing 'access_token' field")
            return None

        return RefreshedToken(
            access=body["access_token"],
            expires_at=expires_at_from(body.get("expires_in")),
            refresh=body.get("refresh_token"),
        )
