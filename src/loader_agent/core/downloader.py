"""
Makes sure the artifact is present locally.

Reuses an existing file without touching the network. Otherwise submits the
transfer and waits on that submission's own future, bounded by a timeout and
retried with exponential backoff.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import CancelledError, TimeoutError as FutureTimeout
from pathlib import Path
from typing import Protocol

from loader_agent.core.artifact_store import ArtifactStore
from loader_agent.core.context import CancelToken, Cancelled
from loader_agent.core.download_service import DownloadHandle

logger = logging.getLogger(__name__)

MAX_BACKOFF_S = 60.0
_WAIT_SLICE_S = 0.5


class DownloadError(RuntimeError):
    """Raised when the artifact could not be made available locally."""


class DownloadSubmitter(Protocol):
    def enqueue(self, url: str, destination: Path) -> DownloadHandle:
        ...


class Downloader:
    def __init__(
        self,
        store: ArtifactStore,
        service: DownloadSubmitter,
        *,
        timeout_s: float,
        retries: int = 3,
        backoff_s: float = 2.0,
    ) -> None:
        self._store = store
        self._service = service
        self._timeout_s = timeout_s
        self._retries = retries
        self._backoff_s = backoff_s

    def ensure_local(self, url: str, destination: Path, cancel: CancelToken) -> Path:
        """
        Return destination once the artifact exists there.

        Raises:
            DownloadError: every attempt failed or timed out
            Cancelled: the token was set while waiting
        """
        destination = Path(destination)
        if self._store.exists(destination):
            logger.debug("Artifact already present: %s", destination)
            return destination

        last_error = "no attempt made"
        for attempt in range(self._retries + 1):
            cancel.raise_if_cancelled()
            if attempt:
                delay = min(MAX_BACKOFF_S, self._backoff_s * (2 ** (attempt - 1)))
                logger.info("Retrying download in %.1fs (attempt %d/%d)", delay, attempt + 1, self._retries + 1)
                if cancel.wait(delay):
                    raise Cancelled("cancelled during download backoff")

            handle = self._service.enqueue(url, destination)
            try:
                self._await(handle, cancel)
            except FutureTimeout:
                handle.cancel()
                last_error = f"timed out after {self._timeout_s:.1f}s"
                logger.warning("Download id=%s %s", handle.task_id, last_error)
                continue
            except (CancelledError, Cancelled):
                handle.cancel()
                raise Cancelled("cancelled during download")
            except Exception as exc:
                last_error = str(exc)
                logger.warning("Download id=%s failed: %s", handle.task_id, exc)
                continue

            if self._store.exists(destination):
                return destination
            last_error = "download reported complete but artifact is missing"
            logger.warning("Download id=%s %s", handle.task_id, last_error)

        raise DownloadError(f"could not download {url!r}: {last_error}")

    def _await(self, handle: DownloadHandle, cancel: CancelToken) -> None:
        deadline = time.monotonic() + self._timeout_s
        while True:
            cancel.raise_if_cancelled()
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise FutureTimeout()
            try:
                handle.future.result(timeout=min(_WAIT_SLICE_S, remaining))
                return
            except FutureTimeout:
                continue
