"""Tests for the authbroker command line."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from authbroker.app import app, main
from authbroker.auth import FileCredentialStore
from authbroker.auth.broker import AuthorizationRequest
from authbroker.exceptions import AuthError, ListenerError
from authbroker.models import (
    AuthorizationResult,
    Credential,
    HealthReason,
    HealthResult,
    now_ms,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


SIGN_IN_URL = "https://accounts.google.com/o/oauth2/v2/auth?state=s"


class FakeBroker:
    """Stands in for AuthBroker inside the commands."""

    def __init__(self, result: AuthorizationResult, error: Exception | None = None) -> None:
        self._result = result
        self._error = error

    async def __aenter__(self) -> "FakeBroker":
        return self

    async def __aexit__(self, *args: object) -> None:
        return None

    async def _request(self) -> AuthorizationRequest:
        if self._error is not None:
            raise self._error

        async def callback() -> AuthorizationResult:
            return self._result

        return AuthorizationRequest(SIGN_IN_URL, "Complete sign-in in your browser.", callback)

    async def authorize(self) -> AuthorizationRequest:
        return await self._request()

    async def import_credentials(self) -> AuthorizationRequest:
        return await self._request()


def _store_credential(**kwargs: object) -> FileCredentialStore:
    defaults: dict[str, object] = {
        "access": "ya29.stored-token",
        "refresh": "1//stored-refresh",
        "expires_at": now_ms() + 600_000,
    }
    defaults.update(kwargs)
    store = FileCredentialStore()
    asyncio.run(store.set("google", Credential(**defaults)))  # type: ignore[arg-type]
    return store


# ---------------------------------------------------------------------------
# Global options
# ---------------------------------------------------------------------------


class TestGlobalOptions:
    def test_version(self, cli_runner) -> None:
        from authbroker import __version__

        result = cli_runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert f"authbroker {__version__}" in result.output

    def test_help_lists_commands(self, cli_runner) -> None:
        result = cli_runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for name in ("login", "import", "status", "logout"):
            assert name in result.output


# ---------------------------------------------------------------------------
# login / import
# ---------------------------------------------------------------------------


class TestLogin:
    def test_success_prints_url(self, cli_runner, isolated_config: Path) -> None:
        fake = FakeBroker(AuthorizationResult(ok=True))
        with patch("authbroker.commands.auth._make_broker", return_value=fake), patch(
            "authbroker.commands.auth._open_browser"
        ) as mock_open:
            result = cli_runner.invoke(app, ["login"])

        assert result.exit_code == 0, result.output
        assert SIGN_IN_URL in result.output
        assert "Signed in." in result.output
        mock_open.assert_called_once_with(SIGN_IN_URL)

    def test_no_browser(self, cli_runner, isolated_config: Path) -> None:
        fake = FakeBroker(AuthorizationResult(ok=True))
        with patch("authbroker.commands.auth._make_broker", return_value=fake), patch(
            "authbroker.commands.auth._open_browser"
        ) as mock_open:
            result = cli_runner.invoke(app, ["login", "--no-browser"])

        assert result.exit_code == 0
        mock_open.assert_not_called()

    def test_timeout_option_passed(self, cli_runner, isolated_config: Path) -> None:
        fake = FakeBroker(AuthorizationResult(ok=True))
        with patch(
            "authbroker.commands.auth._make_broker", return_value=fake
        ) as mock_make, patch("authbroker.commands.auth._open_browser"):
            cli_runner.invoke(app, ["login", "--timeout", "30"])
        mock_make.assert_called_once_with(30)

    def test_failed_result_exits_3(self, cli_runner, isolated_config: Path) -> None:
        fake = FakeBroker(AuthorizationResult(ok=False, error="Timed out. Link expired."))
        with patch("authbroker.commands.auth._make_broker", return_value=fake), patch(
            "authbroker.commands.auth._open_browser"
        ):
            result = cli_runner.invoke(app, ["login"])

        assert result.exit_code == 3
        assert "Link expired." in result.output

    def test_listener_error_exit_code(self, cli_runner, isolated_config: Path) -> None:
        fake = FakeBroker(
            AuthorizationResult(ok=True),
            error=ListenerError("Unable to start local OAuth callback server on ports 1717-1730"),
        )
        with patch("authbroker.commands.auth._make_broker", return_value=fake):
            result = cli_runner.invoke(app, ["login", "--no-browser"])

        assert result.exit_code == 1
        assert "1717-1730" in result.output

    def test_bad_timeout_rejected(self, cli_runner, isolated_config: Path) -> None:
        result = cli_runner.invoke(app, ["login", "--timeout", "0"])
        assert result.exit_code == 2


class TestImport:
    def test_success(self, cli_runner, isolated_config: Path) -> None:
        fake = FakeBroker(AuthorizationResult(ok=True))
        with patch("authbroker.commands.auth._make_broker", return_value=fake):
            result = cli_runner.invoke(app, ["import"])
        assert result.exit_code == 0
        assert "Credentials imported." in result.output

    def test_failure(self, cli_runner, isolated_config: Path) -> None:
        fake = FakeBroker(AuthorizationResult(ok=False, error="No external login found."))
        with patch("authbroker.commands.auth._make_broker", return_value=fake):
            result = cli_runner.invoke(app, ["import"])
        assert result.exit_code == 3
        assert "No external login found." in result.output


# ---------------------------------------------------------------------------
# status
# ---------------------------------------------------------------------------


class TestStatus:
    def test_not_signed_in(self, cli_runner, isolated_config: Path) -> None:
        result = cli_runner.invoke(app, ["status"])
        assert result.exit_code == 0
        assert "Not signed in." in result.output

    def test_table_without_check(self, cli_runner, isolated_config: Path) -> None:
        _store_credential(quota_project_id="proj-7")
        result = cli_runner.invoke(app, ["--plain", "status", "--no-check"])
        assert result.exit_code == 0, result.output
        lines = result.output.splitlines()
        assert "Source\tpersisted" in lines
        assert "Access Token\tya29.sto..." in lines
        assert "Expired\tFalse" in lines
        assert "Quota Project\tproj-7" in lines
        assert not any(line.startswith("Health") for line in lines)

    def test_json_output(self, cli_runner, isolated_config: Path) -> None:
        _store_credential(refresh="access-only:1700000000000")
        result = cli_runner.invoke(app, ["--json", "status", "--no-check"])
        assert result.exit_code == 0
        rows = {row["Field"]: row["Value"] for row in json.loads(result.output)}
        assert rows["Refresh Token"] == "none"

    def test_external_file_reported(self, cli_runner, isolated_config: Path) -> None:
        creds = isolated_config / "home" / ".gemini" / "oauth_creds.json"
        creds.parent.mkdir(parents=True)
        creds.write_text(
            json.dumps(
                {
                    "access_token": "ya29.from-cli",
                    "refresh_token": "1//cli",
                    "expiry_date": now_ms() + 600_000,
                }
            )
        )
        result = cli_runner.invoke(app, ["--plain", "status", "--no-check"])
        assert "Source\texternal-file" in result.output.splitlines()

    def test_health_reported(self, cli_runner, isolated_config: Path) -> None:
        _store_credential()
        unhealthy = HealthResult(ok=False, reason=HealthReason.SCOPE_MISSING)
        with patch("authbroker.auth.broker.check_health", new=AsyncMock(return_value=unhealthy)):
            result = cli_runner.invoke(app, ["--plain", "status"])

        assert result.exit_code == 0
        assert "Health\tscope_missing" in result.output.splitlines()
        assert "authbroker login" in result.output

    def test_health_error_exit_code(self, cli_runner, isolated_config: Path) -> None:
        _store_credential()
        with patch(
            "authbroker.auth.broker.check_health",
            new=AsyncMock(side_effect=AuthError("No google credential available.")),
        ):
            result = cli_runner.invoke(app, ["status"])
        assert result.exit_code == 3


# ---------------------------------------------------------------------------
# logout
# ---------------------------------------------------------------------------


class TestLogout:
    def test_nothing_stored(self, cli_runner, isolated_config: Path) -> None:
        result = cli_runner.invoke(app, ["logout", "--force"])
        assert result.exit_code == 0
        assert "No stored credential." in result.output

    def test_force_deletes(self, cli_runner, isolated_config: Path) -> None:
        store = _store_credential()
        result = cli_runner.invoke(app, ["logout", "--force"])
        assert result.exit_code == 0
        assert not store.path_for("google").exists()

    def test_confirmation_declined(self, cli_runner, isolated_config: Path) -> None:
        store = _store_credential()
        result = cli_runner.invoke(app, ["logout"], input="n\n")
        assert result.exit_code == 0
        assert store.path_for("google").exists()
        assert "Cancelled." in result.output


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


class TestMain:
    def test_broker_error_maps_to_exit_code(
        self, isolated_config: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def boom() -> None:
            raise AuthError("nope")

        monkeypatch.setattr("authbroker.app._setup_signal_handlers", lambda: None)
        monkeypatch.setattr("authbroker.app.app", boom)
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 3

    def test_conflicting_formats_exit_2(
        self, capfd, isolated_config: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr("authbroker.app._setup_signal_handlers", lambda: None)
        monkeypatch.setattr("sys.argv", ["authbroker", "--json", "--plain", "status"])
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 2
        assert "--json and --plain cannot be combined." in capfd.readouterr().err

    def test_unexpected_error_writes_crash_log(
        self, isolated_config: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def boom() -> None:
            raise RuntimeError("kaput")

        monkeypatch.setattr("authbroker.app._setup_signal_handlers", lambda: None)
        monkeypatch.setattr("authbroker.app.app", boom)
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 1
        logs = list((isolated_config / "data" / "authbroker" / "logs").glob("crash-*.log"))
        assert len(logs) == 1
        assert "RuntimeError: kaput" in logs[0].read_text()
