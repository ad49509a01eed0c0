from __future__ import annotations

import logging
from pathlib import Path

logger = logging.getLogger(__name__)


class ArtifactStore:
    """Local artifact presence check. I/O errors count as absent."""

    def exists(self, path: Path) -> bool:
        try:
            return Path(path).is_file()
        except OSError as exc:
            logger.warning("Cannot stat artifact %s: %s", path, exc)
            return False
