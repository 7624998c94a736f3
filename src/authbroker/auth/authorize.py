"""Build the provider's authorize URL for the PKCE authorization-code flow."""

from __future__ import annotations

from typing import Optional, Sequence
from urllib.parse import urlencode

from authbroker.models import ProviderConfig


def scopes_for(provider: ProviderConfig, extra: bool = False) -> list[str]:
    """Return the provider's scope set, plus its extra scope when *extra* is on."""
    scopes = list(provider.scopes)
    if extra and provider.extra_scope and provider.extra_scope not in scopes:
        scopes.append(provider.extra_scope)
    return scopes


def build_authorize_url(
    provider: ProviderConfig,
    *,
    client_id: str,
    redirect_uri: str,
    state: str,
    challenge: str,
    scopes: Optional[Sequence[str]] = None,
) -> str:
    """Combine the flow parameters into the provider's authorize URL.

    ``access_type=offline`` asks for a refresh token and ``prompt=consent``
    forces one to be issued even when the user has consented before.

    *state* must be fresh for every call; the callback listener uses it to
    match the redirect back to this attempt.
    """
    params = {
        "access_type": "offline",
        "client_id": client_id,
        "code_challenge": challenge,
        "code_challenge_method": "S256",
        "prompt": "consent",
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": " ".join(scopes if scopes is not None else provider.scopes),
        "state": state,
    }
    return f"{provider.authorize_url}?{urlencode(params)}"
