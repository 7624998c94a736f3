"""The OAuth credential broker.

The main entry points are:

- :class:`AuthBroker` -- owns the callback listener, token client and
  credential sources for one provider; starts sign-in flows and exposes the
  authenticated fetch wrapper.
- :class:`AuthenticatedFetch` -- injects, refreshes and repairs bearer
  tokens around a plain ``fetch`` primitive.
- :class:`CredentialStore` -- the persisted-store contract, with
  :class:`FileCredentialStore` and :class:`MemoryCredentialStore`
  implementations.

Typical usage::

    from authbroker.auth import AuthBroker, FileCredentialStore

    async with AuthBroker(FileCredentialStore()) as broker:
        request = await broker.authorize()
        print(request.url, request.instructions)
        result = await request.callback()
"""

from authbroker.auth.broker import AuthBroker, AuthorizationRequest
from authbroker.auth.credential_store import (
    CredentialStore,
    FileCredentialStore,
    MemoryCredentialStore,
)
from authbroker.auth.fetch import AuthenticatedFetch, RecoveryStrategy
from authbroker.auth.listener import CallbackListener

__all__ = [
    "AuthBroker",
    "AuthorizationRequest",
    "AuthenticatedFetch",
    "CallbackListener",
    "CredentialStore",
    "FileCredentialStore",
    "MemoryCredentialStore",
    "RecoveryStrategy",
]
