"""
Host platform adapter.

Talks to the device through its own command line tools:
  pm path <pkg>                      installed-state query
  am start ...                       launch an intent
  cmd package resolve-activity ...   launcher entry point of a package
  getprop ro.build.version.sdk       platform security-model level
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass, field
from typing import Optional, Sequence

logger = logging.getLogger(__name__)

ACTION_VIEW = "android.intent.action.VIEW"
ACTION_MAIN = "android.intent.action.MAIN"
CATEGORY_LAUNCHER = "android.intent.category.LAUNCHER"
EXTRA_NOT_UNKNOWN_SOURCE = "android.intent.extra.NOT_UNKNOWN_SOURCE"
PACKAGE_ARCHIVE_MIME = "application/vnd.android.package-archive"

FLAG_GRANT_READ_URI_PERMISSION = 0x00000001
FLAG_ACTIVITY_NEW_TASK = 0x10000000

COMMAND_TIMEOUT_S = 30


class HostCommandError(RuntimeError):
    """Raised when a host tool cannot be run or reports an error."""


@dataclass(frozen=True)
class Intent:
    action: str
    data: Optional[str] = None
    mime_type: Optional[str] = None
    component: Optional[str] = None
    categories: tuple[str, ...] = ()
    flags: int = 0
    extras: dict[str, bool] = field(default_factory=dict)

    def to_am_args(self) -> list[str]:
        args = ["-a", self.action]
        if self.data is not None:
            args += ["-d", self.data]
        if self.mime_type is not None:
            args += ["-t", self.mime_type]
        for category in self.categories:
            args += ["-c", category]
        if self.component is not None:
            args += ["-n", self.component]
        if self.flags:
            args += ["-f", str(self.flags)]
        for key, value in sorted(self.extras.items()):
            args += ["--ez", key, "true" if value else "false"]
        return args


class HostPlatform:
    def __init__(self, *, timeout_s: float = COMMAND_TIMEOUT_S) -> None:
        self.timeout_s = timeout_s

    def _run(self, cmd: Sequence[str]) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                list(cmd),
                check=False,
                capture_output=True,
                text=True,
                timeout=self.timeout_s,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise HostCommandError(f"{cmd[0]} failed: {exc}") from exc

    def package_path(self, package_id: str) -> Optional[str]:
        """
        Installed APK path of package_id, or None when the package is unknown.

        Raises HostCommandError for anything other than a clean not-found.
        """
        completed = self._run(["pm", "path", package_id])
        stdout = (completed.stdout or "").strip()
        stderr = (completed.stderr or "").strip()

        if completed.returncode == 0:
            for line in stdout.splitlines():
                if line.startswith("package:"):
                    return line[len("package:"):]
            raise HostCommandError(f"pm path returned no package line: {stdout!r}")

        # pm exits non-zero silently for unknown packages
        if not stderr and not stdout:
            return None

        raise HostCommandError(
            f"pm path failed rc={completed.returncode}\n"
            f"stdout:\n{stdout}\n"
            f"stderr:\n{stderr}"
        )

    def start_activity(self, intent: Intent) -> None:
        completed = self._run(["am", "start", *intent.to_am_args()])
        output = f"{completed.stdout or ''}\n{completed.stderr or ''}"
        # am reports most failures on stdout with rc=0
        if completed.returncode != 0 or "Error:" in output:
            raise HostCommandError(f"am start failed rc={completed.returncode}: {output.strip()}")
        logger.debug("Started activity: %s", intent)

    def resolve_launch_component(self, package_id: str) -> Optional[str]:
        """The package's launcher activity as 'pkg/.Activity', or None."""
        completed = self._run(
            ["cmd", "package", "resolve-activity", "--brief", "-c", CATEGORY_LAUNCHER, package_id]
        )
        if completed.returncode != 0:
            raise HostCommandError(
                f"resolve-activity failed rc={completed.returncode}: {(completed.stderr or '').strip()}"
            )
        for line in reversed((completed.stdout or "").strip().splitlines()):
            line = line.strip()
            if "/" in line and " " not in line:
                return line
        return None

    def sdk_level(self) -> Optional[int]:
        try:
            completed = self._run(["getprop", "ro.build.version.sdk"])
        except HostCommandError as exc:
            logger.warning("Cannot read SDK level: %s", exc)
            return None
        raw = (completed.stdout or "").strip()
        try:
            return int(raw)
        except ValueError:
            logger.warning("Unexpected SDK level %r", raw)
            return None
