"""Configuration management with XDG paths, atomic writes, and precedence resolution.

This module handles all persistent configuration for cloudlogin:

* **Directory layout** -- XDG Base Directory compliant on Linux/BSD,
  ``~/.cloudlogin/`` on macOS and Windows. See :func:`get_config_dir`,
  :func:`get_data_dir`, :func:`get_secrets_dir`.
* **Global config** -- A single :class:`~cloudlogin.models.GlobalConfig`
  JSON file storing defaults (environment, browser and listener switches,
  flow timeout).
* **Precedence resolution** -- :func:`resolve_environment` merges the CLI
  flag, the ``CLOUDLOGIN_ENVIRONMENT`` variable, and the global config into
  the environment a flow targets.

Endpoint URIs and client IDs are compiled in (see
:mod:`cloudlogin.auth.endpoints`) and are not configurable here.

All file writes use an atomic temp-file-then-rename strategy
(:func:`atomic_write`) to prevent data loss on crash or power failure.
"""

from __future__ import annotations

import json
import os
import platform
import tempfile
from pathlib import Path
from typing import Optional

from cloudlogin.exceptions import ConfigError
from cloudlogin.models import CloudEnvironment, GlobalConfig

_APP_NAME = "cloudlogin"
_CONFIG_FILENAME = "config.json"
ENVIRONMENT_ENV_VAR = "CLOUDLOGIN_ENVIRONMENT"

_ENVIRONMENT_ALIASES = {
    "prod": CloudEnvironment.PRODUCTION,
    "stag": CloudEnvironment.STAGING,
    "dev": CloudEnvironment.DEVELOPMENT,
    "devel": CloudEnvironment.DEVELOPMENT,
}


# --- XDG path resolution ---


def _is_xdg_platform() -> bool:
    """Return True if the platform supports XDG Base Directory spec (Linux/FreeBSD)."""
    return platform.system() == "Linux" or platform.system().endswith("BSD")


def _fallback_base_dir() -> Path:
    """Fallback base directory for non-XDG platforms (macOS, Windows)."""
    return Path.home() / f".{_APP_NAME}"


def _xdg_base(env_var: str, default_segments: tuple[str, ...]) -> Path:
    """Resolve an XDG base directory from an env var with fallback segments under $HOME."""
    env_value = os.environ.get(env_var, "")
    if env_value:
        return Path(env_value)
    base = Path.home()
    for seg in default_segments:
        base = base / seg
    return base


def get_config_dir() -> Path:
    """Return the configuration directory, creating it if necessary.

    On Linux/BSD: ``$XDG_CONFIG_HOME/cloudlogin/`` (default ``~/.config/cloudlogin/``).
    On macOS/Windows: ``~/.cloudlogin/``.

    Returns:
        Absolute path to the configuration directory (guaranteed to exist).
    """
    if _is_xdg_platform():
        base = _xdg_base("XDG_CONFIG_HOME", (".config",))
        path = base / _APP_NAME
    else:
        path = _fallback_base_dir()
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_dir() -> Path:
    """Return the data directory (crash logs, secret records), creating it if necessary.

    On Linux/BSD: ``$XDG_DATA_HOME/cloudlogin/`` (default ``~/.local/share/cloudlogin/``).
    On macOS/Windows: ``~/.cloudlogin/data/``.

    Returns:
        Absolute path to the data directory (guaranteed to exist).
    """
    if _is_xdg_platform():
        base = _xdg_base("XDG_DATA_HOME", (".local", "share"))
        path = base / _APP_NAME
    else:
        path = _fallback_base_dir() / "data"
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_secrets_dir(config: Optional[GlobalConfig] = None) -> Path:
    """Return the directory holding secret records, creating it with ``0o700``.

    Args:
        config: Global config whose ``secrets_dir`` overrides the default
            ``<data_dir>/secrets`` location.
    """
    if config is not None and config.secrets_dir:
        path = Path(config.secrets_dir).expanduser()
    else:
        path = get_data_dir() / "secrets"
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, 0o700)
    return path


# --- Atomic file writes ---


def atomic_write(path: Path, data: str, mode: Optional[int] = None) -> None:
    """Write data to file atomically using temp file + rename.

    The temporary file is created in the same directory as *path* so that
    ``os.replace`` is guaranteed to be an atomic rename on POSIX systems.
    On success the temp file is renamed over *path*; on any failure the temp
    file is cleaned up.

    Args:
        path: Destination file.
        data: Text content to write.
        mode: Permission bits applied to the temp file before any content
            is written (e.g. ``0o600`` for secrets).
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
        if mode is not None:
            os.chmod(tmp_path, mode)
        fd.write(data)
        fd.flush()
        os.fsync(fd.fileno())
        fd.close()
        fd = None  # prevent double-close in the handler below
        os.replace(tmp_path, path)
    except BaseException:
        # Clean up the temp file on any error (including KeyboardInterrupt).
        if fd is not None:
            fd.close()
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
        raise


# --- Global config ---


def _global_config_path() -> Path:
    """Path to the global config file."""
    return get_config_dir() / _CONFIG_FILENAME


def load_global_config() -> GlobalConfig:
    """Load the global configuration from the XDG config directory.

    Returns:
        The deserialised :class:`~cloudlogin.models.GlobalConfig`. If the
        file does not exist, a default instance is returned.

    Raises:
        ConfigError: If the file exists but contains invalid JSON or fails
            Pydantic validation.
    """
    path = _global_config_path()
    if not path.is_file():
        return GlobalConfig()
    try:
        text = path.read_text(encoding="utf-8")
        data = json.loads(text)
        return GlobalConfig.model_validate(data)
    except (json.JSONDecodeError, ValueError) as exc:
        raise ConfigError(f"Invalid global config at {path}: {exc}") from exc


def save_global_config(config: GlobalConfig) -> None:
    """Persist the global configuration atomically to disk.

    Args:
        config: The configuration to save.
    """
    data = config.model_dump(mode="json")
    atomic_write(_global_config_path(), json.dumps(data, indent=2) + "\n")


# --- Precedence resolution ---


def parse_environment(value: str) -> CloudEnvironment:
    """Parse an environment name or short alias (``prod``, ``stag``, ``dev``).

    Raises:
        ConfigError: If *value* names no known environment.
    """
    normalized = value.strip().lower()
    if normalized in _ENVIRONMENT_ALIASES:
        return _ENVIRONMENT_ALIASES[normalized]
    try:
        return CloudEnvironment(normalized)
    except ValueError:
        choices = ", ".join(env.value for env in CloudEnvironment)
        raise ConfigError(
            f"Unknown environment '{value}'. Expected one of: {choices}"
        ) from None


def resolve_environment(
    cli_environment: Optional[str] = None,
    config: Optional[GlobalConfig] = None,
) -> CloudEnvironment:
    """Resolve the target environment with the full precedence chain.

    Precedence (high to low):
        1. CLI flag (``--env``)
        2. Environment variable (``CLOUDLOGIN_ENVIRONMENT``)
        3. User config (``default_environment``)
        4. Production

    Args:
        cli_environment: Value of the ``--env`` flag, if given.
        config: Pre-loaded global config; loaded from disk when ``None``.

    Returns:
        The resolved :class:`~cloudlogin.models.CloudEnvironment`.
    """
    if cli_environment:
        return parse_environment(cli_environment)

    env_value = os.environ.get(ENVIRONMENT_ENV_VAR)
    if env_value:
        return parse_environment(env_value)

    if config is None:
        config = load_global_config()
    return config.default_environment
