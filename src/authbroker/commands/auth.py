"""Auth commands -- sign in, import, inspect, and sign out.

Each command builds an :class:`~authbroker.auth.AuthBroker` over the
on-disk :class:`~authbroker.auth.FileCredentialStore`, runs one coroutine
with :func:`asyncio.run`, and reports the outcome on stderr.  Only the
authorize URL and the status table go to stdout.

Typical workflow::

    authbroker login            # browser sign-in
    authbroker status           # which credential, is it healthy?
    authbroker logout           # forget the stored credential
"""

from __future__ import annotations

import asyncio
import threading
import webbrowser
from datetime import datetime
from typing import Optional

import typer

from authbroker.exceptions import BrokerError
from authbroker.exit_codes import EXIT_AUTH_FAILURE
from authbroker.output import error, info, print_data, print_table, success, suggest


def _open_browser(url: str) -> None:
    """Open *url* without blocking the event loop."""
    browser_thread = threading.Thread(target=webbrowser.open, args=(url,), daemon=True)
    browser_thread.start()


def _make_broker(callback_timeout: Optional[int] = None):  # noqa: ANN202
    from authbroker.auth import AuthBroker, FileCredentialStore
    from authbroker.config import load_settings

    settings = load_settings()
    if callback_timeout is not None:
        settings = settings.model_copy(update={"callback_timeout": float(callback_timeout)})
    return AuthBroker(FileCredentialStore(), settings=settings)


def _truncate(secret: Optional[str]) -> str:
    if not secret:
        return "-"
    return secret[:8] + "..." if len(secret) > 8 else secret


def _format_expiry(expires_at: int) -> str:
    if not expires_at:
        return "unknown"
    return datetime.fromtimestamp(expires_at / 1000).isoformat(timespec="seconds")


def login_command(
    no_browser: bool = typer.Option(
        False, "--no-browser", help="Print the sign-in URL without opening a browser."
    ),
    timeout: Optional[int] = typer.Option(
        None, "--timeout", min=1, help="Seconds to wait for the browser redirect."
    ),
) -> None:
    """Sign in with Google through the browser (OAuth 2.0 + PKCE).

    Prints the authorize URL to stdout, opens it in the default browser,
    and waits for the redirect to ``http://localhost:<port>/auth/callback``.
    On success the credential is written to the credential store.

    Raises:
        typer.Exit: With code 3 if sign-in fails or times out, or the
            error's own exit code if the flow cannot start.

    Example::

        authbroker login
        authbroker login --no-browser --timeout 120
    """

    async def _run():  # noqa: ANN202
        async with _make_broker(timeout) as broker:
            request = await broker.authorize()
            print_data(request.url)
            info(request.instructions)
            if not no_browser:
                _open_browser(request.url)
            return await request.callback()

    try:
        result = asyncio.run(_run())
    except BrokerError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None

    if not result.ok:
        error(result.error or "Sign-in failed.")
        raise typer.Exit(code=EXIT_AUTH_FAILURE)
    success("Signed in.")
    suggest("Check it: authbroker status")


def import_command() -> None:
    """Import a login made with the Gemini CLI or ``gcloud``.

    Waits for ``oauth_creds.json`` or the application default credentials
    file to hold a refresh token, checks the token's scopes, and stores it.

    Raises:
        typer.Exit: With code 3 if no usable login turns up.

    Example::

        authbroker import
    """

    async def _run():  # noqa: ANN202
        async with _make_broker() as broker:
            request = await broker.import_credentials()
            info(request.instructions)
            info(f"See {request.url}")
            return await request.callback()

    try:
        result = asyncio.run(_run())
    except BrokerError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None

    if not result.ok:
        error(result.error or "Import failed.")
        raise typer.Exit(code=EXIT_AUTH_FAILURE)
    success("Credentials imported.")


def status_command(
    check: bool = typer.Option(
        True, "--check/--no-check", help="Ask the token-info endpoint about the token."
    ),
) -> None:
    """Show the credential the next request would use.

    The table lists where the credential came from, a truncated preview
    of each token, the expiry, and (unless ``--no-check``) the health
    check result.

    Example::

        authbroker status
        authbroker --json status --no-check
    """

    async def _run():  # noqa: ANN202
        async with _make_broker() as broker:
            sourced = await broker.sources.latest_sourced()
            if sourced is None or not check or not sourced.access:
                return sourced, None
            return sourced, await broker.health()

    try:
        sourced, health = asyncio.run(_run())
    except BrokerError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None

    if sourced is None:
        info("Not signed in.")
        suggest("Sign in: authbroker login")
        return

    credential = sourced.to_credential()
    rows = [
        ["Source", sourced.kind.value],
        ["Access Token", _truncate(credential.access)],
        ["Refresh Token", _truncate(credential.refresh) if credential.refreshable else "none"],
        ["Expires At", _format_expiry(credential.expires_at)],
        ["Expired", str(credential.is_expired())],
        ["Quota Project", credential.quota_project_id or "-"],
    ]
    if health is not None:
        rows.append(["Health", "ok" if health.ok else health.reason.value])
    print_table(["Field", "Value"], rows, title="Current Credential")

    if health is not None and not health.ok:
        suggest("Sign in again: authbroker login")


def logout_command(
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation."),
) -> None:
    """Delete the stored credential.

    Files written by the Gemini CLI or ``gcloud`` are left untouched.

    Example::

        authbroker logout --force
    """
    from authbroker.auth import FileCredentialStore
    from authbroker.providers import GOOGLE

    store = FileCredentialStore()
    if not store.path_for(GOOGLE.provider_id).is_file():
        info("No stored credential.")
        return

    if not force:
        confirmed = typer.confirm("Delete the stored credential?")
        if not confirmed:
            info("Cancelled.")
            raise typer.Exit()

    asyncio.run(store.clear(GOOGLE.provider_id))
    success("Stored credential deleted.")
