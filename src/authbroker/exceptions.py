"""Exception hierarchy for authbroker.

All exceptions inherit from :class:`BrokerError`, which carries an
``exit_code`` attribute mapped to a constant from :mod:`authbroker.exit_codes`.
The top-level error handler in :func:`authbroker.app.main` catches
``BrokerError`` and exits with the appropriate code, while unexpected
exceptions produce a crash log and exit with :data:`EXIT_GENERIC_FAILURE`.

Subclass hierarchy::

    BrokerError (exit 1)
    +-- InvalidUsageError          (exit 2)
    +-- AuthError                  (exit 3)
    |   +-- TokenExchangeError     (exit 3)
    |   +-- CallbackTimeoutError   (exit 3)
    |   +-- InsufficientScopeError (exit 3)
    +-- ConnectionError_           (exit 6)
    +-- ConfigError                (exit 1)
        +-- ListenerError          (exit 1)
"""

from authbroker.exit_codes import (
    EXIT_AUTH_FAILURE,
    EXIT_CONNECTION_ERROR,
    EXIT_GENERIC_FAILURE,
    EXIT_INVALID_USAGE,
)


class BrokerError(Exception):
    """Base exception for all authbroker errors.

    Args:
        message: Human-readable error description printed to stderr.
        exit_code: Optional override for the class-level exit code.
    """

    exit_code: int = EXIT_GENERIC_FAILURE

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class InvalidUsageError(BrokerError):
    """Raised for invalid CLI arguments."""

    exit_code = EXIT_INVALID_USAGE


class AuthError(BrokerError):
    """Raised when authentication or authorisation fails."""

    exit_code = EXIT_AUTH_FAILURE


class TokenExchangeError(AuthError):
    """Raised when the token endpoint rejects an authorization code.

    The HTTP status and the raw response body are kept so the caller can
    show the provider's own explanation (``invalid_grant``,
    ``redirect_uri_mismatch``, ...).

    Args:
        message: Human-readable error description.
        status_code: HTTP status returned by the token endpoint, if any.
        body: Raw response body returned by the token endpoint, if any.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class CallbackTimeoutError(AuthError):
    """Raised when the browser redirect does not arrive in time.

    The authorize link that was handed out is stale at that point; the user
    has to restart sign-in and open a new one.
    """


class InsufficientScopeError(AuthError):
    """Raised when a token is valid but lacks a required OAuth scope."""


class ConnectionError_(BrokerError):
    """Raised on network-level failures (timeout, DNS resolution, connection refused).

    Named with a trailing underscore to avoid shadowing the built-in
    ``ConnectionError``.
    """

    exit_code = EXIT_CONNECTION_ERROR


class ConfigError(BrokerError):
    """Raised for configuration problems (bad environment values, unwritable paths)."""

    exit_code = EXIT_GENERIC_FAILURE


class ListenerError(ConfigError):
    """Raised when no port in the callback range can be bound."""
