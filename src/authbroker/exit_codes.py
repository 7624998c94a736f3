"""Numeric process exit codes following `clig.dev <https://clig.dev/>`_ conventions.

Each constant maps to a specific error category and is referenced by the
corresponding :class:`~authbroker.exceptions.BrokerError` subclass.
Shell wrappers can inspect the exit code to tell an expired sign-in apart
from a network outage without parsing stderr.

Example::

    $ authbroker login
    $ echo $?
    3   # EXIT_AUTH_FAILURE -- the browser redirect never arrived
"""

EXIT_SUCCESS = 0
"""The command completed successfully."""

EXIT_GENERIC_FAILURE = 1
"""An unclassified error occurred."""

EXIT_INVALID_USAGE = 2
"""The command was invoked with invalid arguments."""

EXIT_AUTH_FAILURE = 3
"""Authentication or authorisation failed."""

EXIT_CONNECTION_ERROR = 6
"""A network-level error occurred (timeout, DNS failure, connection refused)."""
