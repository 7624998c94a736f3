"""PKCE (:rfc:`7636`) verifier/challenge generation and CSRF state tokens.

All randomness comes from :mod:`secrets`; nothing here may fall back to
:mod:`random`.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
import string

# RFC 7636 section 4.1: ALPHA / DIGIT / "-" / "." / "_" / "~"
_UNRESERVED = string.ascii_letters + string.digits + "-._~"

VERIFIER_LENGTH = 43
_MIN_VERIFIER_LENGTH = 43
_MAX_VERIFIER_LENGTH = 128


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def generate_verifier(length: int = VERIFIER_LENGTH) -> str:
    """Generate a ``code_verifier`` of *length* unreserved characters.

    Raises:
        ValueError: If *length* is outside the 43-128 range allowed by the RFC.
    """
    if not _MIN_VERIFIER_LENGTH <= length <= _MAX_VERIFIER_LENGTH:
        raise ValueError(
            f"PKCE verifier length must be between {_MIN_VERIFIER_LENGTH} and "
            f"{_MAX_VERIFIER_LENGTH}, got {length}"
        )
    return "".join(secrets.choice(_UNRESERVED) for _ in range(length))


def challenge_for(verifier: str) -> str:
    """Return the S256 ``code_challenge`` for *verifier*."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return _b64url(digest)


def generate_state() -> str:
    """Return an unguessable CSRF ``state`` token (32 random bytes, Base64URL)."""
    return _b64url(secrets.token_bytes(32))


def generate_pkce_pair() -> tuple[str, str]:
    """Generate a PKCE code_verifier and code_challenge (S256).

    Returns:
        A tuple of ``(code_verifier, code_challenge)``.
    """
    verifier = generate_verifier()
    return verifier, challenge_for(verifier)
