"""Configuration management with XDG paths, atomic writes, and environment overrides.

This module handles all persistent configuration for authbroker:

* **Directory layout** -- XDG Base Directory compliant on Linux/BSD,
  ``~/.authbroker/`` on macOS and Windows. See :func:`get_data_dir` and
  :func:`get_credentials_dir`.
* **Environment overrides** -- :func:`read_env` and :func:`env_flag` read
  ``AUTHBROKER_*`` variables, falling back to the Gemini CLI's own
  ``GEMINI_OAUTH_*`` names for the OAuth client settings.
* **External credential locations** -- :func:`external_creds_paths` and
  :func:`adc_path` list where other tools keep their logins.
* **Settings resolution** -- :func:`load_settings` folds all of the above
  into a :class:`~authbroker.models.BrokerSettings`.

All file writes use an atomic temp-file-then-rename strategy
(:func:`atomic_write`) so a crash never leaves a half-written credential.
"""

from __future__ import annotations

import os
import platform
import tempfile
from pathlib import Path
from typing import Optional

from authbroker.exceptions import ConfigError
from authbroker.models import BrokerSettings, ProviderConfig
from authbroker.providers import GOOGLE

_APP_NAME = "authbroker"
_ENV_PREFIX = "AUTHBROKER_"
_OAUTH_PREFIX = "AUTHBROKER_OAUTH_"
_LEGACY_OAUTH_PREFIX = "GEMINI_OAUTH_"

ENV_CLIENT_ID = "AUTHBROKER_OAUTH_CLIENT_ID"
ENV_CLIENT_SECRET = "AUTHBROKER_OAUTH_CLIENT_SECRET"
ENV_CREDS_PATH = "AUTHBROKER_OAUTH_CREDS_PATH"
ENV_ADC_PATH = "AUTHBROKER_ADC_PATH"
ENV_SIMULATE_EXPIRY = "AUTHBROKER_SIMULATE_TOKEN_EXPIRY"
ENV_EXTRA_SCOPE = "AUTHBROKER_ENABLE_EXTRA_SCOPE"
ENV_CALLBACK_TIMEOUT = "AUTHBROKER_CALLBACK_TIMEOUT"


# --- XDG path resolution ---


def _is_xdg_platform() -> bool:
    """Return True if the platform follows the XDG Base Directory layout (Linux/FreeBSD)."""
    return platform.system() == "Linux" or platform.system().endswith("BSD")


def _fallback_base_dir() -> Path:
    """Fallback base directory for non-XDG platforms (macOS, Windows)."""
    return Path.home() / f".{_APP_NAME}"


def get_data_dir() -> Path:
    """Return the data directory (credentials, crash logs), creating it if necessary.

    On Linux/BSD: ``$XDG_DATA_HOME/authbroker/`` (default ``~/.local/share/authbroker/``).
    On macOS/Windows: ``~/.authbroker/``.

    Returns:
        Absolute path to the data directory (guaranteed to exist).
    """
    if _is_xdg_platform():
        env_value = os.environ.get("XDG_DATA_HOME", "")
        base = Path(env_value) if env_value else Path.home() / ".local" / "share"
        path = base / _APP_NAME
    else:
        path = _fallback_base_dir()
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_credentials_dir() -> Path:
    """Return ``<data_dir>/credentials``, creating it if necessary."""
    path = get_data_dir() / "credentials"
    path.mkdir(parents=True, exist_ok=True)
    return path


# --- Atomic file writes ---


def atomic_write(path: Path, data: str, mode: int = 0o600) -> None:
    """Write data to file atomically using temp file + rename.

    The temporary file is created in the same directory as *path* so that
    ``os.replace`` is guaranteed to be an atomic rename on POSIX systems.
    Permissions are set before any content is written so secrets are never
    world-readable, even momentarily.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    fd = None
    tmp_path: Optional[str] = None
    try:
        fd = tempfile.NamedTemporaryFile(
            mode="w",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
            encoding="utf-8",
        )
        tmp_path = fd.name
        os.chmod(tmp_path, mode)
        fd.write(data)
        fd.flush()
        os.fsync(fd.fileno())
        fd.close()
        fd = None  # prevent double-close below
        os.replace(tmp_path, path)
    except BaseException:
        if fd is not None:
            fd.close()
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
        raise


# --- Environment ---


def read_env(key: str) -> Optional[str]:
    """Read an environment variable, honouring the Gemini CLI's names.

    ``AUTHBROKER_OAUTH_CLIENT_ID`` falls back to ``GEMINI_OAUTH_CLIENT_ID``
    and so on, so a machine already configured for the provider's own CLI
    needs no extra setup.  Empty values count as unset.

    Args:
        key: The ``AUTHBROKER_*`` variable name.

    Returns:
        The value, or ``None`` when neither name is set.
    """
    value = os.environ.get(key)
    if value:
        return value
    if key.startswith(_OAUTH_PREFIX):
        legacy = os.environ.get(_LEGACY_OAUTH_PREFIX + key[len(_OAUTH_PREFIX):])
        if legacy:
            return legacy
    return None


def env_flag(key: str) -> bool:
    """Return ``True`` when *key* is set to ``1`` or ``true`` (any case)."""
    value = read_env(key)
    return value is not None and value.strip().lower() in ("1", "true")


def _env_seconds(key: str, default: float) -> float:
    value = read_env(key)
    if value is None:
        return default
    try:
        seconds = int(value)
    except ValueError:
        raise ConfigError(f"{key} must be a whole number of seconds, got '{value}'") from None
    if seconds <= 0:
        raise ConfigError(f"{key} must be positive, got {seconds}")
    return float(seconds)


# --- External credential locations ---


def external_creds_paths() -> list[Path]:
    """Candidate locations of the provider CLI's ``oauth_creds.json``, in order.

    The override variable comes first, followed by the paths the Gemini CLI
    has used across releases.
    """
    home = Path.home()
    paths: list[Path] = []
    override = read_env(ENV_CREDS_PATH)
    if override:
        paths.append(Path(override).expanduser())
    paths.extend(
        [
            home / ".gemini" / "oauth_creds.json",
            home / ".config" / "gemini" / "oauth_creds.json",
            home / ".config" / "google-gemini" / "oauth_creds.json",
        ]
    )
    return paths


def adc_path() -> Path:
    """Location of the cloud SDK's application default credentials file."""
    override = read_env(ENV_ADC_PATH)
    if override:
        return Path(override).expanduser()
    if platform.system() == "Windows":
        appdata = os.environ.get("APPDATA")
        if appdata:
            return Path(appdata) / "gcloud" / "application_default_credentials.json"
    return Path.home() / ".config" / "gcloud" / "application_default_credentials.json"


# --- Settings resolution ---


def load_settings(provider: ProviderConfig = GOOGLE) -> BrokerSettings:
    """Resolve the broker settings from the environment.

    Evaluated at call time rather than import time so tests and wrapper
    scripts can change the environment between calls.

    Args:
        provider: Supplies the default client id.

    Returns:
        A populated :class:`~authbroker.models.BrokerSettings`.

    Raises:
        ConfigError: If a numeric override is malformed.
    """
    return BrokerSettings(
        client_id=read_env(ENV_CLIENT_ID) or provider.default_client_id,
        client_secret=read_env(ENV_CLIENT_SECRET),
        creds_paths=external_creds_paths(),
        adc_path=adc_path(),
        simulate_expiry=env_flag(ENV_SIMULATE_EXPIRY),
        enable_extra_scope=env_flag(ENV_EXTRA_SCOPE),
        callback_timeout=_env_seconds(ENV_CALLBACK_TIMEOUT, 300.0),
    )
