"""
Agent context — process-wide lifecycle state passed explicitly to components.

Holds the resolved paths and settings, the cancellation token checked at every
suspension point, and the foreground grant that marks this process as the one
agent working on the base directory.
"""

from __future__ import annotations

import fcntl
import logging
import os
import threading
from dataclasses import dataclass, field
from typing import IO, Optional

from loader_agent.config import AgentConfig
from loader_agent.paths import Paths

logger = logging.getLogger(__name__)


class Cancelled(RuntimeError):
    """Raised at a suspension point once the cancellation token is set."""


class ForegroundBusyError(RuntimeError):
    """Raised when another agent process already holds the foreground grant."""


class CancelToken:
    """Cooperative cancellation flag; waits return early once cancelled."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to timeout seconds. Returns True if cancelled."""
        return self._event.wait(timeout=max(0.0, timeout))

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled("cancelled")


class ForegroundGrant:
    """
    Exclusive lifecycle grant backed by an flock on run/foreground.lock.

    acquire() is non-blocking and raises ForegroundBusyError if another process
    holds the lock. release() is idempotent.
    """

    def __init__(self, lock_path: os.PathLike) -> None:
        self.lock_path = lock_path
        self._fh: Optional[IO[str]] = None

    @property
    def held(self) -> bool:
        return self._fh is not None

    def acquire(self) -> None:
        if self._fh is not None:
            return
        fh = open(self.lock_path, "a+", encoding="utf-8")
        try:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            fh.close()
            raise ForegroundBusyError(f"foreground grant held by another process: {self.lock_path}") from exc
        fh.seek(0)
        fh.truncate()
        fh.write(f"{os.getpid()}\n")
        fh.flush()
        self._fh = fh
        logger.debug("Foreground grant acquired: %s", self.lock_path)

    def release(self) -> None:
        if self._fh is None:
            return
        fh, self._fh = self._fh, None
        try:
            fh.seek(0)
            fh.truncate()
            fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
        finally:
            fh.close()
        logger.info("Foreground grant released")


@dataclass
class AgentContext:
    config: AgentConfig
    paths: Paths
    cancel: CancelToken = field(default_factory=CancelToken)
    grant: Optional[ForegroundGrant] = None

    @classmethod
    def create(cls, config: AgentConfig, paths: Paths) -> "AgentContext":
        """Build the context and take the foreground grant."""
        grant = ForegroundGrant(paths.grant_lock_path)
        grant.acquire()
        return cls(config=config, paths=paths, grant=grant)

    def close(self) -> None:
        """Tear down lifecycle resources. Safe to call more than once."""
        if self.grant is not None:
            self.grant.release()
