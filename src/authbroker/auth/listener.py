"""Local HTTP listener that receives the OAuth redirect.

:class:`CallbackListener` binds a small threaded HTTP server to the first
free port of a fixed range (so the redirect URI stays predictable) and
serves exactly one route, ``/auth/callback``.  Codes delivered there are
matched to waiting coroutines by their ``state`` parameter.

Correlation works without polling: :meth:`CallbackListener.wait_for_code`
registers an :class:`asyncio.Future` under its state, and the request
handler thread resolves it through ``loop.call_soon_threadsafe``.  A code
that arrives before anyone waits is parked in the pending map.

Some browsers and redirect chains drop or rewrite ``state``.  To cope, the
most recent code is also kept regardless of state; a waiter whose state
never shows up takes that code instead, which clears every other pending
entry.  As a consequence only one authorization per listener can be in
flight at a time.
"""

from __future__ import annotations

import asyncio
import html
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Optional
from urllib.parse import parse_qs, urlparse

from authbroker.exceptions import CallbackTimeoutError, ListenerError

logger = logging.getLogger(__name__)

_SUCCESS_PAGE = "Authorization successful. You can close this tab."
_FAILURE_PAGE = "Authorization failed. You can close this tab."


def _resolve(future: asyncio.Future[str], code: str) -> None:
    if not future.done():
        future.set_result(code)


def _page(message: str) -> bytes:
    return f"<html><body><h2>{html.escape(message)}</h2></body></html>".encode("utf-8")


class CallbackListener:
    """Receive authorization codes on ``http://localhost:<port><path>``.

    Args:
        port_range: Inclusive ``(first, last)`` ports to try in order.
        callback_path: The only path that is served.
        host: Interface to bind.

    Example::

        listener = CallbackListener()
        redirect_uri = listener.start()
        code = await listener.wait_for_code(state, timeout=300)
        listener.stop()
    """

    def __init__(
        self,
        port_range: tuple[int, int] = (1717, 1730),
        callback_path: str = "/auth/callback",
        host: str = "127.0.0.1",
    ) -> None:
        self._port_range = port_range
        self._callback_path = callback_path
        self._host = host
        self._server: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._redirect_uri: Optional[str] = None

        self._lock = threading.Lock()
        self._codes: dict[str, str] = {}
        self._latest: Optional[str] = None
        self._waiters: dict[str, tuple[asyncio.AbstractEventLoop, asyncio.Future[str]]] = {}

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    @property
    def running(self) -> bool:
        return self._server is not None

    @property
    def redirect_uri(self) -> Optional[str]:
        """The redirect URI of the running server, or ``None``."""
        return self._redirect_uri

    def start(self) -> str:
        """Start serving, or return the existing redirect URI if already running.

        Returns:
            ``http://localhost:<port><callback_path>``.

        Raises:
            ListenerError: If every port in the range is taken.
        """
        if self._server is not None and self._redirect_uri is not None:
            return self._redirect_uri

        first, last = self._port_range
        handler = self._make_handler()
        for port in range(first, last + 1):
            try:
                server = ThreadingHTTPServer((self._host, port), handler)
            except OSError as exc:
                logger.debug("Callback port %d unavailable: %s", port, exc)
                continue
            server.daemon_threads = True
            self._server = server
            self._thread = threading.Thread(
                target=server.serve_forever,
                name=f"authbroker-callback-{port}",
                daemon=True,
            )
            self._thread.start()
            self._redirect_uri = f"http://localhost:{port}{self._callback_path}"
            logger.debug("Callback listener started on port %d", port)
            return self._redirect_uri

        raise ListenerError(
            f"Unable to start local OAuth callback server on ports {first}-{last}"
        )

    def stop(self) -> None:
        """Shut the server down and abandon every waiter.  Safe to call twice."""
        server, thread = self._server, self._thread
        self._server = None
        self._thread = None
        self._redirect_uri = None
        if server is not None:
            server.shutdown()
            server.server_close()
        if thread is not None:
            thread.join(timeout=5)
        with self._lock:
            waiters = list(self._waiters.values())
            self._waiters.clear()
            self._codes.clear()
            self._latest = None
        for loop, future in waiters:
            if not loop.is_closed():
                loop.call_soon_threadsafe(future.cancel)

    def reset(self) -> None:
        """Forget every pending code, e.g. before a new authorization attempt."""
        with self._lock:
            self._codes.clear()
            self._latest = None

    @property
    def has_pending(self) -> bool:
        """Whether any undelivered code is parked."""
        with self._lock:
            return bool(self._codes) or self._latest is not None

    # ------------------------------------------------------------------ #
    # Code correlation
    # ------------------------------------------------------------------ #

    def _take(self, state: str) -> Optional[str]:
        """Consume the code for *state*, else the most recent one.  Lock must be held."""
        code = self._codes.pop(state, None)
        if code is not None:
            if self._latest == code:
                self._latest = None
            return code
        if self._latest is not None:
            code = self._latest
            self._latest = None
            self._codes.clear()
            return code
        return None

    def deliver(self, state: str, code: str) -> None:
        """Register a code received for *state* and wake whoever waits for it.

        Called from the HTTP handler thread; also usable directly when a
        redirect was captured some other way.
        """
        ready: list[tuple[asyncio.AbstractEventLoop, asyncio.Future[str], str]] = []
        with self._lock:
            self._codes[state] = code
            self._latest = code
            order = sorted(self._waiters, key=lambda s: s != state)
            for waiting_state in order:
                taken = self._take(waiting_state)
                if taken is None:
                    break
                loop, future = self._waiters.pop(waiting_state)
                ready.append((loop, future, taken))
        for loop, future, taken in ready:
            loop.call_soon_threadsafe(_resolve, future, taken)

    async def wait_for_code(self, state: str, timeout: float) -> str:
        """Wait until the code for *state* arrives.

        Resolves at once if the code is already pending, or if a most
        recent code exists (which also clears all other pending codes).

        Args:
            state: The CSRF state of the authorize URL handed out.
            timeout: Seconds to wait.

        Returns:
            The authorization code.

        Raises:
            CallbackTimeoutError: If nothing arrives within *timeout*.
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future[str] = loop.create_future()
        with self._lock:
            code = self._take(state)
            if code is None:
                self._waiters[state] = (loop, future)
        if code is not None:
            return code

        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            raise CallbackTimeoutError(
                "Timed out waiting for the browser to complete sign-in. "
                "This sign-in link has expired; start again to get a new one."
            ) from None
        finally:
            with self._lock:
                entry = self._waiters.get(state)
                if entry is not None and entry[1] is future:
                    del self._waiters[state]

    # ------------------------------------------------------------------ #
    # HTTP handling
    # ------------------------------------------------------------------ #

    def _make_handler(self) -> type[BaseHTTPRequestHandler]:
        listener = self
        callback_path = self._callback_path

        class CallbackHandler(BaseHTTPRequestHandler):
            def do_GET(self) -> None:
                parsed = urlparse(self.path)
                if parsed.path != callback_path:
                    self._respond(404, "Not found")
                    return

                params = parse_qs(parsed.query)
                code = params.get("code", [""])[0]
                state = params.get("state", [""])[0]
                error = params.get("error", [""])[0]
                description = params.get("error_description", [""])[0]

                if error:
                    logger.warning("Provider returned OAuth error: %s", error)
                    self._respond(400, description or _FAILURE_PAGE)
                    return
                if not code or not state:
                    self._respond(400, _FAILURE_PAGE)
                    return

                listener.deliver(state, code)
                self._respond(200, _SUCCESS_PAGE)

            def _respond(self, status: int, message: str) -> None:
                body = _page(message)
                self.send_response(status)
                self.send_header("Content-Type", "text/html; charset=utf-8")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, format: str, *args: Any) -> None:
                logger.debug("callback: " + format, *args)

        return CallbackHandler
