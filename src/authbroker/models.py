"""Canonical Pydantic models shared across all authbroker modules.

This is the single source of truth for data shapes in the project. Every other
module imports from here rather than defining its own models. The models fall
into three groups:

**Credential models** -- what the broker stores, reads and hands out:
    :class:`Credential`, :class:`CredentialKind`, :class:`SourcedCredential`,
    :class:`ExternalToolCredentialFile`, and :class:`AdcCredentialFile`.

**Protocol models** -- transient values produced while talking to the
identity provider:
    :class:`AuthorizationSession`, :class:`TokenResponse`,
    :class:`RefreshedToken`, :class:`HealthResult`, and
    :class:`AuthorizationResult`.

**Configuration models** -- endpoints and resolved settings:
    :class:`ProviderConfig` and :class:`BrokerSettings`.

Every timestamp is an absolute epoch-millisecond deadline; use
:func:`now_ms` to compare against it.
"""

from __future__ import annotations

import enum
import time
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

ACCESS_ONLY_PREFIX = "access-only:"
"""Refresh-token prefix marking a credential that cannot be refreshed."""


def now_ms() -> int:
    """Return the current wall-clock time as epoch milliseconds."""
    return int(time.time() * 1000)


# --- Credentials ---


class Credential(BaseModel):
    """An OAuth credential as held by the persisted store.

    ``refresh`` is always present.  A credential imported without a genuine
    refresh token carries a value starting with :data:`ACCESS_ONLY_PREFIX`
    so that storage stays uniform and the refresher knows to skip it.

    Example::

        cred = Credential(access="ya29.x", refresh="1//r", expires_at=now_ms() + 60_000)
        assert not cred.is_expired()
    """

    access: Optional[str] = Field(default=None, description="Bearer access token")
    refresh: str = Field(description="Refresh token or access-only sentinel")
    expires_at: int = Field(
        default=0, description="Absolute expiry of the access token (epoch ms)"
    )
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    quota_project_id: Optional[str] = None

    @property
    def refreshable(self) -> bool:
        """Whether the refresh token can be sent to the token endpoint."""
        return not self.refresh.startswith(ACCESS_ONLY_PREFIX)

    def is_expired(self, now: Optional[int] = None) -> bool:
        """Return ``True`` when ``expires_at`` is at or before *now*."""
        if now is None:
            now = now_ms()
        return self.expires_at <= now


class CredentialKind(str, enum.Enum):
    """Where a candidate credential was read from."""

    PERSISTED = "persisted"
    EXTERNAL_FILE = "external-file"
    ADC = "adc"


class SourcedCredential(BaseModel):
    """A candidate credential tagged with the source that produced it.

    Unlike :class:`Credential`, every token is optional: an external tool
    may have written only an access token.  Only candidates carrying a
    refresh token can become a :class:`Credential`.
    """

    kind: CredentialKind
    access: Optional[str] = None
    refresh: Optional[str] = None
    expires_at: int = 0
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    quota_project_id: Optional[str] = None

    @classmethod
    def from_credential(
        cls, credential: Credential, kind: CredentialKind = CredentialKind.PERSISTED
    ) -> SourcedCredential:
        return cls(kind=kind, **credential.model_dump())

    def to_credential(self) -> Credential:
        """Drop the source tag.

        Raises:
            ValueError: If the candidate has no refresh token.
        """
        if not self.refresh:
            raise ValueError(f"{self.kind.value} credential has no refresh token")
        return Credential.model_validate(self.model_dump(exclude={"kind"}))


class ExternalToolCredentialFile(BaseModel):
    """``oauth_creds.json`` as written by the provider's own CLI."""

    model_config = ConfigDict(extra="ignore")

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expiry_date: Optional[float] = Field(
        default=None, description="Access-token expiry (epoch ms)"
    )
    client_id: Optional[str] = None
    client_secret: Optional[str] = None


class AdcCredentialFile(BaseModel):
    """``application_default_credentials.json`` as written by the cloud SDK."""

    model_config = ConfigDict(extra="ignore")

    type: Optional[str] = None
    refresh_token: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    quota_project_id: Optional[str] = None


# --- Protocol values ---


class AuthorizationSession(BaseModel):
    """Per-attempt state of one authorization-code flow.

    Lives only in process memory and is discarded once the callback
    resolves, fails, or times out.
    """

    state: str
    verifier: str
    challenge: str
    client_id: str
    redirect_uri: str


class TokenResponse(BaseModel):
    """Body of a successful authorization-code exchange."""

    model_config = ConfigDict(extra="ignore")

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    scope: Optional[str] = None
    token_type: Optional[str] = None


class RefreshedToken(BaseModel):
    """A renewed access token.  ``refresh`` is set only when the provider rotated it."""

    access: str
    expires_at: int
    refresh: Optional[str] = None


class HealthReason(str, enum.Enum):
    """Why a token failed the health check."""

    TOKEN_EXPIRED = "token_expired"
    SCOPE_MISSING = "scope_missing"
    UNREACHABLE = "unreachable"


class HealthResult(BaseModel):
    """Outcome of a token-info lookup."""

    ok: bool
    reason: Optional[HealthReason] = None
    scopes: list[str] = Field(default_factory=list)


class AuthorizationResult(BaseModel):
    """What an authorization callback hands back to the caller."""

    ok: bool
    credential: Optional[Credential] = None
    error: Optional[str] = None


# --- Configuration ---


class ProviderConfig(BaseModel):
    """Endpoints and fixed parameters of one OAuth identity provider."""

    provider_id: str = Field(description="Key under which credentials are stored")
    authorize_url: str
    token_url: str
    token_info_url: str
    docs_url: str = Field(description="Page shown by the import method")
    default_client_id: str
    scopes: list[str] = Field(default_factory=list)
    extra_scope: Optional[str] = Field(
        default=None, description="Optional scope behind a feature toggle"
    )
    required_scopes: list[str] = Field(
        default_factory=list, description="Scopes the health check insists on"
    )
    scope_error_marker: str = Field(
        description="Lower-case substring of a 403 body that signals a scope error"
    )
    callback_path: str = "/auth/callback"
    port_range: tuple[int, int] = (1717, 1730)


class BrokerSettings(BaseModel):
    """Resolved runtime configuration.  See :func:`authbroker.config.load_settings`."""

    client_id: str
    client_secret: Optional[str] = None
    creds_paths: list[Path] = Field(
        default_factory=list, description="External tool credential files, in order"
    )
    adc_path: Optional[Path] = None
    simulate_expiry: bool = False
    enable_extra_scope: bool = False
    callback_timeout: float = Field(
        default=300.0, description="Seconds to wait for the browser redirect"
    )
    import_timeout: float = Field(
        default=120.0, description="Seconds to wait for an external login to land"
    )
    import_poll_interval: float = 1.5
