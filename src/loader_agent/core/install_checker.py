from __future__ import annotations

import logging
from typing import Optional, Protocol

from loader_agent.core.host import HostCommandError

logger = logging.getLogger(__name__)


class InstallQueryError(RuntimeError):
    """Raised when the package registry cannot answer (not a plain not-found)."""


class PackageRegistry(Protocol):
    def package_path(self, package_id: str) -> Optional[str]:
        ...


class InstallChecker:
    def __init__(self, registry: PackageRegistry) -> None:
        self._registry = registry

    def is_installed(self, package_id: str) -> bool:
        """Not found -> False. Empty id is never installed. Other failures raise InstallQueryError."""
        if not package_id:
            return False
        try:
            path = self._registry.package_path(package_id)
        except HostCommandError as exc:
            raise InstallQueryError(f"cannot query {package_id}: {exc}") from exc
        if path is None:
            logger.debug("Package %s not installed", package_id)
            return False
        logger.debug("Package %s installed at %s", package_id, path)
        return True
