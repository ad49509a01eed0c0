"""
Central path configuration for the Loader Agent.

All filesystem paths are derived from a single base directory.

Path Structure:
    /data/local/tmp/loader-agent/
    ├── downloads/         (Fetched artifacts, shared with the installer)
    └── run/               (Runtime state: foreground grant lock)

Usage:
    from loader_agent.paths import get_paths

    paths = get_paths()
    artifact = paths.artifact_path("App", ".apk")
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

DEFAULT_BASE_DIR = "/data/local/tmp/loader-agent"


@dataclass(frozen=True, slots=True)
class Paths:
    """
    Immutable container for all filesystem paths used by the agent.

    All paths are absolute and derived from base_dir.
    """

    base_dir: Path
    downloads_dir: Path
    runtime_dir: Path

    @property
    def grant_lock_path(self) -> Path:
        """Lock file held while the agent owns the foreground grant."""
        return self.runtime_dir / "foreground.lock"

    def artifact_path(self, display_name: str, extension: str) -> Path:
        """
        Deterministic artifact location: <downloads_dir>/<display_name><extension>.

        Raises ValueError for names that would leave downloads_dir.
        """
        if not is_plain_file_stem(display_name):
            raise ValueError(f"Invalid artifact name: {display_name!r}")
        path = self.downloads_dir / f"{display_name}{extension}"
        if path.parent != self.downloads_dir or path.name in (".", ".."):
            raise ValueError(f"Invalid artifact name: {display_name!r}")
        return path


def is_plain_file_stem(name: str) -> bool:
    """True if name can be used as a file name inside one directory (no separators, no dot-dirs)."""
    if name in (".", ".."):
        return False
    return not any(ch in name for ch in ("/", "\\", "\x00"))


def build_paths(base_dir: Optional[Path] = None) -> Paths:
    """
    Build Paths object from base directory.

    Args:
        base_dir: Base directory for all agent files.
                  Defaults to /data/local/tmp/loader-agent.
                  Can be overridden via LOADER_AGENT_BASE_DIR env var.

    Returns:
        Immutable Paths object with all filesystem paths.
    """
    if base_dir is None:
        base_dir = Path(os.environ.get("LOADER_AGENT_BASE_DIR", DEFAULT_BASE_DIR))

    return Paths(
        base_dir=base_dir,
        downloads_dir=base_dir / "downloads",
        runtime_dir=base_dir / "run",
    )


def ensure_dirs(paths: Paths) -> None:
    """
    Create all required directories if they don't exist.

    downloads_dir is world-readable so the platform installer can open
    artifacts handed to it by path.

    Raises:
        OSError: If directory creation fails due to permissions or other issues.
    """
    for dir_path, mode in [
        (paths.base_dir, 0o755),
        (paths.downloads_dir, 0o755),
        (paths.runtime_dir, 0o750),
    ]:
        dir_path.mkdir(parents=True, exist_ok=True)
        # mkdir applies umask
        dir_path.chmod(mode)


_paths: Optional[Paths] = None


def get_paths() -> Paths:
    """Return the global Paths instance, building it from defaults on first use."""
    global _paths
    if _paths is None:
        _paths = build_paths()
    return _paths


def set_paths(paths: Paths) -> None:
    global _paths
    _paths = paths


def reset_paths() -> None:
    """Forget the global Paths instance; the next get_paths() rebuilds it."""
    global _paths
    _paths = None
