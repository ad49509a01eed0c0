"""
Asynchronous download service.

Transfers run on worker threads. Each submission gets its own task id and
future, so a caller only ever observes the completion of the download it
asked for. Files are streamed into a temp file next to the destination and
renamed into place once complete. A stopped task never reaches the
destination.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from urllib.request import Request, urlopen

logger = logging.getLogger(__name__)

MAX_ARTIFACT_BYTES = 500 * 1024 * 1024  # 500MB safety cap
SOCKET_TIMEOUT_S = 30
_CHUNK = 64 * 1024


class DownloadFailed(RuntimeError):
    """Raised inside a download task when the transfer cannot complete."""


class DownloadStopped(DownloadFailed):
    """Raised inside a download task once its stop flag is set."""


@dataclass(frozen=True, slots=True)
class DownloadTask:
    task_id: str
    url: str
    destination: Path
    stop: threading.Event = field(default_factory=threading.Event, compare=False, repr=False)


@dataclass(frozen=True, slots=True)
class DownloadHandle:
    task: DownloadTask
    future: Future

    @property
    def task_id(self) -> str:
        return self.task.task_id

    def cancel(self) -> bool:
        """
        Stop the task. A queued task never starts; a running transfer aborts at
        its next chunk and removes its partial file.
        """
        self.task.stop.set()
        return self.future.cancel()


class DownloadService:
    def __init__(
        self,
        *,
        max_workers: int = 1,
        max_bytes: int = MAX_ARTIFACT_BYTES,
        socket_timeout_s: float = SOCKET_TIMEOUT_S,
        user_agent: str = "loader-agent",
    ) -> None:
        self.max_bytes = max_bytes
        self.socket_timeout_s = socket_timeout_s
        self.user_agent = user_agent
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="download")
        self._active: dict[str, DownloadTask] = {}
        self._active_lock = threading.Lock()

    def enqueue(self, url: str, destination: Path) -> DownloadHandle:
        task = DownloadTask(task_id=uuid.uuid4().hex, url=url, destination=Path(destination))
        with self._active_lock:
            self._active[task.task_id] = task
        future = self._executor.submit(self._run, task)
        future.add_done_callback(lambda _f: self._forget(task.task_id))
        logger.info("Download queued id=%s url=%s dest=%s", task.task_id, url, task.destination)
        return DownloadHandle(task=task, future=future)

    def shutdown(self) -> None:
        """Drop queued tasks and stop running ones so worker threads exit promptly."""
        with self._active_lock:
            active = list(self._active.values())
        for task in active:
            task.stop.set()
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _forget(self, task_id: str) -> None:
        with self._active_lock:
            self._active.pop(task_id, None)

    def _run(self, task: DownloadTask) -> Path:
        if task.stop.is_set():
            raise DownloadStopped(f"download id={task.task_id} stopped")
        if not task.url:
            raise DownloadFailed("download url is empty")

        task.destination.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{task.destination.name}.", suffix=".part", dir=str(task.destination.parent)
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as f:
                read = self._stream(task, f)
                f.flush()
                os.fsync(f.fileno())
            if task.stop.is_set():
                raise DownloadStopped(f"download id={task.task_id} stopped")
            os.replace(tmp_path, task.destination)
            # the platform installer opens the file as another user
            task.destination.chmod(0o644)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

        logger.info("Download complete id=%s bytes=%d", task.task_id, read)
        return task.destination

    def _stream(self, task: DownloadTask, out) -> int:
        req = Request(task.url, headers={"User-Agent": self.user_agent})
        read = 0
        try:
            with urlopen(req, timeout=self.socket_timeout_s) as resp:
                while True:
                    if task.stop.is_set():
                        raise DownloadStopped(f"download id={task.task_id} stopped after {read} bytes")
                    chunk = resp.read(_CHUNK)
                    if not chunk:
                        break
                    read += len(chunk)
                    if read > self.max_bytes:
                        raise DownloadFailed(f"download exceeded max_bytes={self.max_bytes}")
                    out.write(chunk)
        except DownloadFailed:
            raise
        except (OSError, ValueError) as exc:
            raise DownloadFailed(f"download failed: {exc}") from exc
        return read
