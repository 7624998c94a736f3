"""Token health check against the provider's token-info endpoint.

The two failure reasons lead to different repairs: an expired token is
refreshed silently, while a missing scope needs re-consent or a credential
imported from a tool that already holds the scope.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

import httpx

from authbroker.models import HealthReason, HealthResult, ProviderConfig

logger = logging.getLogger(__name__)


async def check_health(
    client: httpx.AsyncClient,
    provider: ProviderConfig,
    access_token: str,
    required_scopes: Optional[Sequence[str]] = None,
) -> HealthResult:
    """Ask the token-info endpoint whether *access_token* is live and scoped.

    Args:
        client: HTTP client used for the lookup.
        provider: Supplies ``token_info_url`` and the default required scopes.
        access_token: The token to inspect.
        required_scopes: Overrides ``provider.required_scopes``.

    Returns:
        ``ok=True``, or ``ok=False`` with ``token_expired`` (non-2xx),
        ``scope_missing`` (2xx without a required scope) or ``unreachable``.
    """
    required = list(required_scopes if required_scopes is not None else provider.required_scopes)
    try:
        response = await client.post(
            provider.token_info_url,
            data={"access_token": access_token},
            headers={"Accept": "application/json"},
        )
    except httpx.HTTPError as exc:
        logger.warning("Token info lookup failed: %s", exc)
        return HealthResult(ok=False, reason=HealthReason.UNREACHABLE)

    if not response.is_success:
        return HealthResult(ok=False, reason=HealthReason.TOKEN_EXPIRED)

    try:
        body = response.json()
    except ValueError:
        body = {}
    scope_value = body.get("scope", "") if isinstance(body, dict) else ""
    scopes = scope_value.split() if isinstance(scope_value, str) else []

    missing = [s for s in required if s not in scopes]
    if missing:
        logger.debug("Token lacks scopes: %s", ", ".join(missing))
        return HealthResult(ok=False, reason=HealthReason.SCOPE_MISSING, scopes=scopes)
    return HealthResult(ok=True, scopes=scopes)
