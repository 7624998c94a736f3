"""authbroker -- OAuth credential broker for command-line agents.

Signs a CLI into a Google-style identity provider with the PKCE
authorization-code flow, keeps the resulting tokens fresh, and repairs
expired or under-scoped credentials transparently on every API call.

Typical workflow::

    authbroker login    # browser sign-in, credential stored locally
    authbroker status   # which credential is used and whether it is healthy

Library use::

    from authbroker.auth import AuthBroker, FileCredentialStore

    async with AuthBroker(FileCredentialStore()) as broker:
        response = await broker.fetch(request)

Modules:
    app: Typer application and CLI entry point.
    models: Pydantic models shared across the entire package.
    config: XDG paths, atomic writes and environment overrides.
    providers: Endpoint definitions of the supported identity providers.
    exceptions: Exception hierarchy with exit-code mapping.
    exit_codes: Numeric exit codes following clig.dev conventions.
    output: stdout/stderr formatting system with Rich support.
"""

__version__ = "0.1.0"
