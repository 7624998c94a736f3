"""Shared test fixtures for authbroker.

Provides an isolated filesystem and environment, a fake Google identity
provider served through :class:`httpx.MockTransport`, and ready-made
settings and stores.  These fixtures are automatically discovered by pytest
and available to all test modules without explicit imports.
"""

from __future__ import annotations

import logging
import socket
from pathlib import Path
from typing import Any, Optional
from urllib.parse import parse_qsl

import httpx
import pytest

from authbroker.auth.credential_store import MemoryCredentialStore
from authbroker.models import BrokerSettings, ProviderConfig
from authbroker.output import OutputFormat, OutputManager, reset_output, set_output
from authbroker.providers import CLOUD_PLATFORM_SCOPE, GOOGLE


# ---------------------------------------------------------------------------
# Auto-reset global output state between tests
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_output_between_tests() -> None:
    """Reset the global OutputManager after every test.

    The OutputManager caches references to sys.stdout/sys.stderr at
    creation time.  When Typer's CliRunner redirects those streams during
    a test and the test finishes, the cached references become stale
    ("I/O operation on closed file").  Resetting forces a fresh manager
    to be created on next use.
    """
    yield
    reset_output()


@pytest.fixture(autouse=True)
def _restore_authbroker_logger() -> None:
    """Undo ``install_log_handler`` side effects on the ``authbroker`` logger.

    CLI invocations attach a RichHandler and disable propagation on the
    package logger; restoring its handlers, level and propagation keeps
    that state from leaking into later tests.
    """
    logger = logging.getLogger("authbroker")
    handlers, level, propagate = list(logger.handlers), logger.level, logger.propagate
    yield
    logger.handlers = handlers
    logger.setLevel(level)
    logger.propagate = propagate


# ---------------------------------------------------------------------------
# Environment isolation
# ---------------------------------------------------------------------------


_ENV_VARS = [
    "AUTHBROKER_OAUTH_CLIENT_ID",
    "AUTHBROKER_OAUTH_CLIENT_SECRET",
    "AUTHBROKER_OAUTH_CREDS_PATH",
    "AUTHBROKER_ADC_PATH",
    "AUTHBROKER_SIMULATE_TOKEN_EXPIRY",
    "AUTHBROKER_ENABLE_EXTRA_SCOPE",
    "AUTHBROKER_CALLBACK_TIMEOUT",
    "GEMINI_OAUTH_CLIENT_ID",
    "GEMINI_OAUTH_CLIENT_SECRET",
    "GEMINI_OAUTH_CREDS_PATH",
]


@pytest.fixture
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Isolate configuration to a temporary directory.

    Points HOME and XDG_DATA_HOME at subdirectories of tmp_path so that
    tests never read a real Gemini CLI or gcloud login and never write to
    the real credential directory.  Clears every AUTHBROKER_* and
    GEMINI_OAUTH_* variable.

    Returns:
        The tmp_path root directory for additional file creation.
    """
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    monkeypatch.setattr("authbroker.config._is_xdg_platform", lambda: True)
    for var in _ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    return tmp_path


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def find_free_port() -> int:
    """Return a TCP port that is currently free on localhost."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class FakeGoogle:
    """In-memory stand-in for Google's token and token-info endpoints.

    Every call is recorded.  Responses can be overridden per endpoint by
    setting ``token_status`` / ``tokeninfo_status`` or by queueing explicit
    responses in ``token_queue``.
    """

    def __init__(self) -> None:
        self.token_calls: list[dict[str, str]] = []
        self.tokeninfo_calls: list[dict[str, str]] = []
        self.token_queue: list[httpx.Response] = []
        self.token_status = 200
        self.tokeninfo_status = 200
        self.scopes = [CLOUD_PLATFORM_SCOPE]
        self.issue_refresh_token = True
        self.rotate_refresh_token = False
        self._counter = 0

    @property
    def refresh_calls(self) -> list[dict[str, str]]:
        return [c for c in self.token_calls if c.get("grant_type") == "refresh_token"]

    @property
    def exchange_calls(self) -> list[dict[str, str]]:
        return [c for c in self.token_calls if c.get("grant_type") == "authorization_code"]

    def handler(self, request: httpx.Request) -> httpx.Response:
        form = dict(parse_qsl(request.content.decode()))
        if str(request.url) == GOOGLE.token_url:
            self.token_calls.append(form)
            return self._token(form)
        if str(request.url) == GOOGLE.token_info_url:
            self.tokeninfo_calls.append(form)
            if self.tokeninfo_status != 200:
                return httpx.Response(self.tokeninfo_status, json={"error": "invalid_token"})
            return httpx.Response(200, json={"scope": " ".join(self.scopes)})
        return httpx.Response(404)

    def _token(self, form: dict[str, str]) -> httpx.Response:
        if self.token_queue:
            return self.token_queue.pop(0)
        if self.token_status != 200:
            return httpx.Response(self.token_status, json={"error": "invalid_grant"})
        self._counter += 1
        body: dict[str, Any] = {
            "access_token": f"ya29.fresh-{self._counter}",
            "expires_in": 3600,
            "token_type": "Bearer",
            "scope": " ".join(self.scopes),
        }
        if form.get("grant_type") == "authorization_code" and self.issue_refresh_token:
            body["refresh_token"] = "1//issued-refresh"
        if form.get("grant_type") == "refresh_token" and self.rotate_refresh_token:
            body["refresh_token"] = f"1//rotated-{self._counter}"
        return httpx.Response(200, json=body)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def google() -> FakeGoogle:
    return FakeGoogle()


@pytest.fixture
def http_client(google: FakeGoogle) -> httpx.AsyncClient:
    """An AsyncClient whose requests are answered by :class:`FakeGoogle`."""
    return httpx.AsyncClient(transport=httpx.MockTransport(google.handler))


@pytest.fixture
def provider() -> ProviderConfig:
    """Google, with the callback range narrowed to one free port."""
    port = find_free_port()
    return GOOGLE.model_copy(update={"port_range": (port, port)})


@pytest.fixture
def settings(tmp_path: Path) -> BrokerSettings:
    """Settings whose external credential files live under tmp_path."""
    return BrokerSettings(
        client_id="test-client-id",
        creds_paths=[tmp_path / "gemini" / "oauth_creds.json"],
        adc_path=tmp_path / "gcloud" / "application_default_credentials.json",
        callback_timeout=5.0,
        import_timeout=0.2,
        import_poll_interval=0.05,
    )


@pytest.fixture
def store() -> MemoryCredentialStore:
    return MemoryCredentialStore()


@pytest.fixture
def quiet_output() -> Optional[OutputManager]:
    """Install a PLAIN-format, quiet OutputManager as the global output."""
    output = OutputManager(format=OutputFormat.PLAIN, quiet=True)
    set_output(output)
    yield output
    reset_output()


@pytest.fixture
def cli_runner():
    """Typer CLI test runner."""
    from typer.testing import CliRunner

    return CliRunner()
