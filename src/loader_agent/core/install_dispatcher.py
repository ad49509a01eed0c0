"""
Hands a local artifact to the platform installer.

Fire-and-forget: the platform shows its own confirmation UI and the outcome is
only observed through the next installed-state query.
"""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path
from typing import Optional, Protocol
from urllib.parse import quote

from loader_agent.core.host import (
    ACTION_VIEW,
    EXTRA_NOT_UNKNOWN_SOURCE,
    FLAG_ACTIVITY_NEW_TASK,
    FLAG_GRANT_READ_URI_PERMISSION,
    PACKAGE_ARCHIVE_MIME,
    HostCommandError,
    Intent,
)

logger = logging.getLogger(__name__)

CONTENT_HANDLE_MIN_SDK = 24


class InstallCapability(str, Enum):
    CONTENT_URI = "content"  # permission-scoped content handle
    FILE_URI = "file"  # raw file location, legacy platforms


class InstallDispatchError(RuntimeError):
    """Raised when the platform refuses to start the install flow."""


class ActivityStarter(Protocol):
    def start_activity(self, intent: Intent) -> None:
        ...


class SdkSource(Protocol):
    def sdk_level(self) -> Optional[int]:
        ...


def resolve_capability(setting: str, platform: SdkSource) -> InstallCapability:
    """
    Resolve once at startup. "content"/"file" force a variant; "auto" asks the
    platform for its SDK level and assumes the newer model when unknown.
    """
    if setting != "auto":
        return InstallCapability(setting)
    sdk = platform.sdk_level()
    if sdk is not None and sdk < CONTENT_HANDLE_MIN_SDK:
        return InstallCapability.FILE_URI
    return InstallCapability.CONTENT_URI


class FileShareProvider:
    """
    Maps files under a shared root to content://<authority>/<name>/<relative>.
    Files outside the root are refused.
    """

    def __init__(self, authority: str, root: Path, *, name: str = "downloads") -> None:
        self.authority = authority
        self.root = Path(root)
        self.name = name

    def uri_for_file(self, path: Path) -> str:
        resolved = Path(path).resolve()
        try:
            relative = resolved.relative_to(self.root.resolve())
        except ValueError as exc:
            raise ValueError(f"{path} is outside shared root {self.root}") from exc
        return f"content://{self.authority}/{self.name}/{quote(relative.as_posix())}"


class InstallDispatcher:
    def __init__(
        self,
        capability: InstallCapability,
        starter: ActivityStarter,
        share_provider: FileShareProvider,
    ) -> None:
        self.capability = capability
        self._starter = starter
        self._share_provider = share_provider

    def install(self, path: Path) -> None:
        if self.capability is InstallCapability.CONTENT_URI:
            intent = Intent(
                action=ACTION_VIEW,
                data=self._share_provider.uri_for_file(path),
                flags=FLAG_GRANT_READ_URI_PERMISSION | FLAG_ACTIVITY_NEW_TASK,
                extras={EXTRA_NOT_UNKNOWN_SOURCE: True},
            )
        else:
            intent = Intent(
                action=ACTION_VIEW,
                data=Path(path).resolve().as_uri(),
                mime_type=PACKAGE_ARCHIVE_MIME,
                flags=FLAG_ACTIVITY_NEW_TASK,
            )

        logger.info("Dispatching install (%s): %s", self.capability.value, intent.data)
        try:
            self._starter.start_activity(intent)
        except HostCommandError as exc:
            raise InstallDispatchError(str(exc)) from exc
