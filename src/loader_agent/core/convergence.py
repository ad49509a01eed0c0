"""
Convergence loop — drives the device toward "target package installed and running".

    init -> gated -> polling <-> (download + install + wait) -> converged
                  +-> disabled | halted
    any non-terminal state -> cancelled

The remote config is fetched once. Each polling iteration re-checks installed
state first; the install dispatch result is never trusted on its own.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Optional, Protocol

from loader_agent.core.context import AgentContext, Cancelled
from loader_agent.core.downloader import Downloader, DownloadError
from loader_agent.core.host import (
    ACTION_MAIN,
    CATEGORY_LAUNCHER,
    FLAG_ACTIVITY_NEW_TASK,
    HostCommandError,
    Intent,
)
from loader_agent.core.install_checker import InstallChecker, InstallQueryError
from loader_agent.core.install_dispatcher import InstallDispatcher, InstallDispatchError
from loader_agent.core.remote_config import ConfigClient, RemoteConfig

logger = logging.getLogger(__name__)


class LoopState(str, Enum):
    INIT = "init"
    GATED = "gated"
    POLLING = "polling"
    CONVERGED = "converged"
    DISABLED = "disabled"
    HALTED = "halted"
    CANCELLED = "cancelled"


# Fail-closed: anything not listed here is illegal.
_ALLOWED: dict[LoopState, frozenset[LoopState]] = {
    LoopState.INIT: frozenset({LoopState.GATED, LoopState.CANCELLED}),
    LoopState.GATED: frozenset(
        {LoopState.POLLING, LoopState.DISABLED, LoopState.HALTED, LoopState.CANCELLED}
    ),
    LoopState.POLLING: frozenset({LoopState.CONVERGED, LoopState.CANCELLED}),
}

TERMINAL_STATES = frozenset(
    {LoopState.CONVERGED, LoopState.DISABLED, LoopState.HALTED, LoopState.CANCELLED}
)


class IllegalTransition(RuntimeError):
    """Raised on a state change the loop does not allow."""


class Launcher(Protocol):
    def resolve_launch_component(self, package_id: str) -> Optional[str]:
        ...

    def start_activity(self, intent: Intent) -> None:
        ...


class ConvergenceLoop:
    def __init__(
        self,
        ctx: AgentContext,
        config_client: ConfigClient,
        checker: InstallChecker,
        downloader: Downloader,
        dispatcher: InstallDispatcher,
        launcher: Launcher,
    ) -> None:
        self._ctx = ctx
        self._config_client = config_client
        self._checker = checker
        self._downloader = downloader
        self._dispatcher = dispatcher
        self._launcher = launcher

        self.state = LoopState.INIT
        self.remote_config: Optional[RemoteConfig] = None
        self.attempts = 0

    def run(self) -> LoopState:
        """Run to a terminal state. Lifecycle resources are released on every exit."""
        try:
            self._run()
        except Cancelled:
            logger.info("Convergence cancelled in state %s", self.state.value)
            self._transition(LoopState.CANCELLED)
        finally:
            self._ctx.close()
        return self.state

    def _run(self) -> None:
        cancel = self._ctx.cancel

        cfg = self._config_client.fetch()
        self.remote_config = cfg
        cancel.raise_if_cancelled()
        self._transition(LoopState.GATED)

        if not cfg.enabled:
            logger.info("Remote config disabled; nothing to do")
            self._transition(LoopState.DISABLED)
            return

        if not cfg.has_safe_name:
            logger.error("Remote config name %r is not a plain file name; halting", cfg.display_name)
            self._transition(LoopState.HALTED)
            return

        if not cfg.is_complete and self._ctx.config.halt_on_incomplete:
            logger.error(
                "Remote config enabled but incomplete (package=%r name=%r url=%r); halting",
                cfg.package_id,
                cfg.display_name,
                cfg.download_url,
            )
            self._transition(LoopState.HALTED)
            return

        self._transition(LoopState.POLLING)
        destination = self._ctx.paths.artifact_path(cfg.display_name, self._ctx.config.artifact_extension)
        interval = self._ctx.config.retry_interval_s

        while True:
            cancel.raise_if_cancelled()
            try:
                if self._checker.is_installed(cfg.package_id):
                    break
                path = self._downloader.ensure_local(cfg.download_url, destination, cancel)
                self.attempts += 1
                self._dispatcher.install(path)
            except (InstallQueryError, DownloadError, InstallDispatchError) as exc:
                logger.warning("Convergence attempt failed: %s", exc)

            logger.info("Package %s not installed yet; next check in %.0fs", cfg.package_id, interval)
            if cancel.wait(interval):
                raise Cancelled("cancelled between attempts")

        logger.info("Package %s installed after %d attempt(s)", cfg.package_id, self.attempts)
        self._transition(LoopState.CONVERGED)
        self._launch(cfg.package_id)

    def _launch(self, package_id: str) -> None:
        try:
            component = self._launcher.resolve_launch_component(package_id)
            if component is None:
                logger.warning("No launcher activity for %s; not starting it", package_id)
                return
            self._launcher.start_activity(
                Intent(
                    action=ACTION_MAIN,
                    categories=(CATEGORY_LAUNCHER,),
                    component=component,
                    flags=FLAG_ACTIVITY_NEW_TASK,
                )
            )
            logger.info("Launched %s", component)
        except HostCommandError as exc:
            logger.warning("Failed to launch %s: %s", package_id, exc)

    def _transition(self, target: LoopState) -> None:
        if target not in _ALLOWED.get(self.state, frozenset()):
            raise IllegalTransition(f"{self.state.value} -> {target.value}")
        logger.debug("Loop state %s -> %s", self.state.value, target.value)
        self.state = target
