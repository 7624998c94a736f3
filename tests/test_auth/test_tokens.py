"""Tests for the token exchanger/refresher."""

from __future__ import annotations

import httpx
import pytest

from authbroker.auth.tokens import DEFAULT_EXPIRES_IN, TokenClient, expires_at_from
from authbroker.exceptions import ConnectionError_, TokenExchangeError
from authbroker.models import BrokerSettings, now_ms
from authbroker.providers import GOOGLE


def _client(handler) -> httpx.AsyncClient:  # noqa: ANN001
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _raise_connect(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("connection refused", request=request)


class TestExpiresAt:
    def test_relative_to_now(self) -> None:
        before = now_ms()
        value = expires_at_from(60)
        assert before + 60_000 <= value <= now_ms() + 60_000

    def test_default_when_missing(self) -> None:
        before = now_ms()
        assert expires_at_from(None) >= before + DEFAULT_EXPIRES_IN * 1000


# ---------------------------------------------------------------------------
# Exchange
# ---------------------------------------------------------------------------


class TestExchange:
    @pytest.mark.asyncio
    async def test_sends_pkce_form(self, google, http_client, settings: BrokerSettings) -> None:
        tokens = TokenClient(GOOGLE, settings, http_client)
        token = await tokens.exchange(
            "the-code", "http://localhost:1717/auth/callback", "the-verifier", "cid"
        )
        assert token.access_token == "ya29.fresh-1"
        assert token.refresh_token == "1//issued-refresh"
        assert token.expires_in == 3600
        assert google.exchange_calls == [
            {
                "grant_type": "authorization_code",
                "code": "the-code",
                "client_id": "cid",
                "code_verifier": "the-verifier",
                "redirect_uri": "http://localhost:1717/auth/callback",
            }
        ]

    @pytest.mark.asyncio
    async def test_client_secret_included(self, google, http_client, settings: BrokerSettings) -> None:
        tokens = TokenClient(GOOGLE, settings, http_client)
        await tokens.exchange("c", "r", "v", "cid", client_secret="shh")
        assert google.exchange_calls[0]["client_secret"] == "shh"

    @pytest.mark.asyncio
    async def test_client_secret_falls_back_to_settings(self, google, http_client) -> None:
        settings = BrokerSettings(client_id="cid", client_secret="from-env")
        tokens = TokenClient(GOOGLE, settings, http_client)
        await tokens.exchange("c", "r", "v", "cid")
        assert google.exchange_calls[0]["client_secret"] == "from-env"

    @pytest.mark.asyncio
    async def test_rejection_carries_status_and_body(
        self, google, http_client, settings: BrokerSettings
    ) -> None:
        google.token_status = 400
        tokens = TokenClient(GOOGLE, settings, http_client)
        with pytest.raises(TokenExchangeError) as exc_info:
            await tokens.exchange("c", "r", "v", "cid")
        assert exc_info.value.status_code == 400
        assert "invalid_grant" in (exc_info.value.body or "")
        assert "invalid_grant" in str(exc_info.value)
        assert exc_info.value.exit_code == 3

    @pytest.mark.asyncio
    async def test_missing_access_token(self, google, http_client, settings: BrokerSettings) -> None:
        google.token_queue.append(httpx.Response(200, json={"token_type": "Bearer"}))
        tokens = TokenClient(GOOGLE, settings, http_client)
        with pytest.raises(TokenExchangeError, match="access_token"):
            await tokens.exchange("c", "r", "v", "cid")

    @pytest.mark.asyncio
    async def test_non_json_body(self, google, http_client, settings: BrokerSettings) -> None:
        google.token_queue.append(httpx.Response(200, text="<html>oops</html>"))
        tokens = TokenClient(GOOGLE, settings, http_client)
        with pytest.raises(TokenExchangeError, match="unreadable"):
            await tokens.exchange("c", "r", "v", "cid")

    @pytest.mark.asyncio
    async def test_unreachable(self, settings: BrokerSettings) -> None:
        tokens = TokenClient(GOOGLE, settings, _client(_raise_connect))
        with pytest.raises(ConnectionError_):
            await tokens.exchange("c", "r", "v", "cid")


# ---------------------------------------------------------------------------
# Refresh
# ---------------------------------------------------------------------------


class TestRefresh:
    @pytest.mark.asyncio
    async def test_success(self, google, http_client, settings: BrokerSettings) -> None:
        tokens = TokenClient(GOOGLE, settings, http_client)
        renewed = await tokens.refresh("1//r", "cid", "sec")
        assert renewed is not None
        assert renewed.access == "ya29.fresh-1"
        assert renewed.refresh is None
        assert renewed.expires_at > now_ms()
        assert google.refresh_calls == [
            {
                "grant_type": "refresh_token",
                "refresh_token": "1//r",
                "client_id": "cid",
                "client_secret": "sec",
            }
        ]

    @pytest.mark.asyncio
    async def test_client_id_defaults_to_settings(
        self, google, http_client, settings: BrokerSettings
    ) -> None:
        tokens = TokenClient(GOOGLE, settings, http_client)
        await tokens.refresh("1//r")
        assert google.refresh_calls[0]["client_id"] == "test-client-id"
        assert "client_secret" not in google.refresh_calls[0]

    @pytest.mark.asyncio
    async def test_rotated_refresh_token_returned(
        self, google, http_client, settings: BrokerSettings
    ) -> None:
        google.rotate_refresh_token = True
        tokens = TokenClient(GOOGLE, settings, http_client)
        renewed = await tokens.refresh("1//r")
        assert renewed is not None
        assert renewed.refresh == "1//rotated-1"

    @pytest.mark.asyncio
    async def test_access_only_sentinel_makes_no_request(
        self, google, http_client, settings: BrokerSettings
    ) -> None:
        tokens = TokenClient(GOOGLE, settings, http_client)
        assert await tokens.refresh("access-only:1700000000000") is None
        assert google.token_calls == []

    @pytest.mark.asyncio
    async def test_rejection_returns_none(self, google, http_client, settings: BrokerSettings) -> None:
        google.token_status = 400
        tokens = TokenClient(GOOGLE, settings, http_client)
        assert await tokens.refresh("1//revoked") is None

    @pytest.mark.asyncio
    async def test_missing_access_token_returns_none(
        self, google, http_client, settings: BrokerSettings
    ) -> None:
        google.token_queue.append(httpx.Response(200, json={"expires_in": 10}))
        tokens = TokenClient(GOOGLE, settings, http_client)
        assert await tokens.refresh("1//r") is None

    @pytest.mark.asyncio
    async def test_unreachable_returns_none(self, settings: BrokerSettings) -> None:
        tokens = TokenClient(GOOGLE, settings, _client(_raise_connect))
        assert await tokens.refresh("1//r") is None


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_owned_client_closed(self, settings: BrokerSettings) -> None:
        tokens = TokenClient(GOOGLE, settings)
        await tokens.aclose()
        assert tokens.http.is_closed

    @pytest.mark.asyncio
    async def test_borrowed_client_left_open(self, http_client, settings: BrokerSettings) -> None:
        tokens = TokenClient(GOOGLE, settings, http_client)
        await tokens.aclose()
        assert not http_client.is_closed
