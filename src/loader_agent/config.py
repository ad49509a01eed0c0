"""
Loader Agent configuration.

Single source for local runtime settings. Values come from environment
variables, optionally loaded from standard env files. The remote document
that decides *what* to install is fetched separately (see core.remote_config).

Priority (lowest -> highest):
1) /etc/loader/agent.env (system install)
2) ~/.config/loader-agent/.env (user install)
3) ./.env (project override)
4) process environment variables (always win)
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from importlib.metadata import PackageNotFoundError, version as _pkg_version
from pathlib import Path
from typing import Iterable, Optional

from dotenv import load_dotenv

_CAPABILITY_CHOICES = ("auto", "content", "file")
_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


class ConfigError(ValueError):
    """Raised when configuration is missing or invalid."""


def _package_version() -> str:
    try:
        return _pkg_version("loader-agent")
    except PackageNotFoundError:
        return "0.0.0+dev"


def _env_paths() -> Iterable[Path]:
    # 1) system install
    yield Path("/etc/loader/agent.env")

    # 2) user config dir
    if sys.platform == "win32":
        base = Path(os.environ.get("APPDATA", str(Path.home())))
    else:
        base = Path(os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config")))
    yield base / "loader-agent" / ".env"

    # 3) project override
    yield Path(".env")


def _require_env(key: str) -> str:
    v = os.getenv(key)
    if v is None or v == "":
        raise ConfigError(f"Missing required environment variable: {key}")
    return v


def _parse_int(key: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid integer for {key}: {raw!r}") from exc


def _parse_float(key: str, raw: str) -> float:
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid number for {key}: {raw!r}") from exc


def _parse_bool(key: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ConfigError(f"Invalid boolean for {key}: {raw!r}")


def _non_negative(key: str, value: float) -> float:
    if value < 0:
        raise ConfigError(f"{key} must be >= 0")
    return value


@dataclass(frozen=True, slots=True)
class AgentConfig:
    mqtt_host: str
    mqtt_port: int
    mqtt_username: Optional[str]
    mqtt_password: Optional[str]
    agent_id: str
    agent_version: str
    config_root: str
    fetch_timeout_s: float
    retry_interval_s: float
    download_timeout_s: float
    download_retries: int
    download_backoff_s: float
    artifact_extension: str
    provider_authority: str
    install_capability: str  # auto | content | file
    halt_on_incomplete: bool


def load_config(*, dotenv_enabled: bool = True) -> AgentConfig:
    """
    Load config by reading env files and then validating environment variables.

    Returns an immutable AgentConfig. Raises ConfigError on failure.
    """
    if dotenv_enabled:
        for p in _env_paths():
            if p.is_file():
                # do not override existing env vars; later files can fill missing
                load_dotenv(p, override=False)

    mqtt_host = _require_env("MQTT_HOST")
    mqtt_port = _parse_int("MQTT_PORT", _require_env("MQTT_PORT"))
    if not (1 <= mqtt_port <= 65535):
        raise ConfigError(f"MQTT_PORT out of range: {mqtt_port}")

    config_root = os.getenv("LOADER_CONFIG_ROOT", "app").strip("/")
    if not config_root or any(c in config_root for c in "+#"):
        raise ConfigError(f"Invalid LOADER_CONFIG_ROOT: {config_root!r}")

    download_retries = _parse_int("LOADER_DOWNLOAD_RETRIES", os.getenv("LOADER_DOWNLOAD_RETRIES", "3"))
    if download_retries < 0:
        raise ConfigError("LOADER_DOWNLOAD_RETRIES must be >= 0")

    extension = os.getenv("LOADER_ARTIFACT_EXTENSION", ".apk")
    if not extension.startswith("."):
        extension = "." + extension

    capability = os.getenv("LOADER_INSTALL_CAPABILITY", "auto").strip().lower()
    if capability not in _CAPABILITY_CHOICES:
        raise ConfigError(
            f"LOADER_INSTALL_CAPABILITY must be one of {', '.join(_CAPABILITY_CHOICES)}: {capability!r}"
        )

    download_timeout_s = _parse_float("LOADER_DOWNLOAD_TIMEOUT", os.getenv("LOADER_DOWNLOAD_TIMEOUT", "300"))
    if download_timeout_s <= 0:
        raise ConfigError("LOADER_DOWNLOAD_TIMEOUT must be > 0")

    return AgentConfig(
        mqtt_host=mqtt_host,
        mqtt_port=mqtt_port,
        mqtt_username=os.getenv("MQTT_USERNAME") or None,
        mqtt_password=os.getenv("MQTT_PASSWORD") or None,
        agent_id=os.getenv("AGENT_ID", "loader"),
        agent_version=_package_version(),
        config_root=config_root,
        fetch_timeout_s=_non_negative(
            "LOADER_FETCH_TIMEOUT", _parse_float("LOADER_FETCH_TIMEOUT", os.getenv("LOADER_FETCH_TIMEOUT", "10"))
        ),
        retry_interval_s=_non_negative(
            "LOADER_RETRY_INTERVAL", _parse_float("LOADER_RETRY_INTERVAL", os.getenv("LOADER_RETRY_INTERVAL", "10"))
        ),
        download_timeout_s=download_timeout_s,
        download_retries=download_retries,
        download_backoff_s=_non_negative(
            "LOADER_DOWNLOAD_BACKOFF",
            _parse_float("LOADER_DOWNLOAD_BACKOFF", os.getenv("LOADER_DOWNLOAD_BACKOFF", "2")),
        ),
        artifact_extension=extension,
        provider_authority=os.getenv("LOADER_PROVIDER_AUTHORITY", "loader_agent.provider"),
        install_capability=capability,
        halt_on_incomplete=_parse_bool(
            "LOADER_HALT_ON_INCOMPLETE", os.getenv("LOADER_HALT_ON_INCOMPLETE", "true")
        ),
    )
