"""
Remote configuration — the document that says what to install.

ConfigClient.fetch() never raises: any field that cannot be read falls back to
its safe default, which downstream leaves the agent disabled.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from loader_agent.core.context import CancelToken
from loader_agent.mqtt_client import FetchResult
from loader_agent.paths import is_plain_file_stem

logger = logging.getLogger(__name__)

KEY_ENABLED = "enabled"
KEY_PACKAGE_NAME = "package_name"
KEY_NAME = "name"
KEY_URL = "url"

CONFIG_KEYS = (KEY_ENABLED, KEY_PACKAGE_NAME, KEY_NAME, KEY_URL)


@dataclass(frozen=True, slots=True)
class RemoteConfig:
    enabled: bool = False
    package_id: str = ""
    display_name: str = ""
    download_url: str = ""

    @property
    def has_safe_name(self) -> bool:
        """The display name is used as a file name under the downloads directory."""
        return not self.display_name or is_plain_file_stem(self.display_name)

    @property
    def is_complete(self) -> bool:
        return bool(self.package_id and self.display_name and self.download_url) and self.has_safe_name

    def to_dict(self) -> dict[str, object]:
        return {
            KEY_ENABLED: self.enabled,
            KEY_PACKAGE_NAME: self.package_id,
            KEY_NAME: self.display_name,
            KEY_URL: self.download_url,
        }


class ConfigStore(Protocol):
    """What ConfigClient needs from the remote store."""

    def open(self, timeout: float) -> bool:
        ...

    def read_many(
        self, keys: tuple[str, ...], *, timeout: float, cancel: Optional[CancelToken] = None
    ) -> dict[str, FetchResult]:
        ...

    def close(self) -> None:
        ...


class ConfigClient:
    def __init__(self, store: ConfigStore, *, timeout_s: float, cancel: Optional[CancelToken] = None) -> None:
        self._store = store
        self._timeout_s = timeout_s
        self._cancel = cancel

    def fetch(self) -> RemoteConfig:
        """Read all four fields; missing or failed fields take their defaults."""
        try:
            if self._store.open(self._timeout_s):
                results = self._store.read_many(CONFIG_KEYS, timeout=self._timeout_s, cancel=self._cancel)
            else:
                logger.warning("Remote config store unavailable; using defaults")
                results = {}
        except Exception:
            logger.exception("Remote config fetch failed; using defaults")
            results = {}
        finally:
            try:
                self._store.close()
            except Exception as exc:
                logger.warning("Failed to close remote config store: %s", exc)

        def field(key: str) -> FetchResult:
            return results.get(key) or FetchResult(key, value=None)

        for key in CONFIG_KEYS:
            result = results.get(key)
            if result is not None and not result.ok:
                logger.warning("Remote config field %s unavailable (%s); using default", key, result.error.reason)

        cfg = RemoteConfig(
            enabled=field(KEY_ENABLED).unwrap_or(False),
            package_id=field(KEY_PACKAGE_NAME).unwrap_or(""),
            display_name=field(KEY_NAME).unwrap_or(""),
            download_url=field(KEY_URL).unwrap_or(""),
        )
        logger.info("Remote config: %s", cfg.to_dict())
        return cfg
