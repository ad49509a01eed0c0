"""
Loader Agent entrypoint.

CLI:
  loader-agent run            -> converge on the remotely configured package, then exit
  loader-agent fetch-config   -> print the remote config document as JSON
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import threading
from dataclasses import dataclass
from importlib.metadata import PackageNotFoundError, version as pkg_version
from typing import Optional

from loader_agent.core.log_config import configure_logging

configure_logging()
logger = logging.getLogger(__name__)

_JOIN_SLICE_S = 0.5


def get_version_string() -> str:
    try:
        return pkg_version("loader-agent")
    except PackageNotFoundError:
        return "0.0.0+dev"


@dataclass
class Runtime:
    cancel: object
    loop: Optional[object] = None
    download_service: Optional[object] = None


def _install_signal_handlers(rt: Runtime) -> None:
    def _handler(signum: int, frame) -> None:  # frame is unused, keep signature
        logger.info("Received signal %s; requesting shutdown", signum)
        rt.cancel.cancel()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def _build_config_client(cfg, cancel=None):
    from loader_agent.core.remote_config import ConfigClient
    from loader_agent.mqtt_client import RemoteConfigStore
    from loader_agent.mqtt_topics import ConfigTopics

    store = RemoteConfigStore(
        cfg.mqtt_host,
        cfg.mqtt_port,
        ConfigTopics(cfg.config_root),
        client_id=f"loader.agent.{cfg.agent_id}",
        username=cfg.mqtt_username,
        password=cfg.mqtt_password,
    )
    return ConfigClient(store, timeout_s=cfg.fetch_timeout_s, cancel=cancel)


def run_agent() -> int:
    """
    Runtime mode: fetch remote config once, converge, launch, exit.
    Returns process exit code.
    """
    # Lazy imports keep --version and the parser free of runtime deps.
    from loader_agent.config import ConfigError, load_config
    from loader_agent.core.artifact_store import ArtifactStore
    from loader_agent.core.context import AgentContext, ForegroundBusyError
    from loader_agent.core.convergence import ConvergenceLoop, LoopState
    from loader_agent.core.download_service import DownloadService
    from loader_agent.core.downloader import Downloader
    from loader_agent.core.host import HostPlatform
    from loader_agent.core.install_checker import InstallChecker
    from loader_agent.core.install_dispatcher import FileShareProvider, InstallDispatcher, resolve_capability
    from loader_agent.paths import ensure_dirs, get_paths

    try:
        cfg = load_config()
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 1

    paths = get_paths()
    ensure_dirs(paths)

    try:
        ctx = AgentContext.create(cfg, paths)
    except ForegroundBusyError as exc:
        logger.error("%s", exc)
        return 1

    logger.info("============================================================")
    logger.info("Loader Agent")
    logger.info("Version: %s", get_version_string())
    logger.info("Config root: %s @ %s:%s", cfg.config_root, cfg.mqtt_host, cfg.mqtt_port)
    logger.info("============================================================")

    rt = Runtime(cancel=ctx.cancel)
    _install_signal_handlers(rt)

    host = HostPlatform()
    capability = resolve_capability(cfg.install_capability, host)
    logger.info("Install capability: %s", capability.value)

    download_service = DownloadService(user_agent=f"loader-agent/{cfg.agent_version}")
    rt.download_service = download_service

    loop = ConvergenceLoop(
        ctx,
        _build_config_client(cfg, ctx.cancel),
        InstallChecker(host),
        Downloader(
            ArtifactStore(),
            download_service,
            timeout_s=cfg.download_timeout_s,
            retries=cfg.download_retries,
            backoff_s=cfg.download_backoff_s,
        ),
        InstallDispatcher(capability, host, FileShareProvider(cfg.provider_authority, paths.downloads_dir)),
        host,
    )
    rt.loop = loop

    result: dict[str, LoopState] = {}

    def _worker() -> None:
        try:
            result["state"] = loop.run()
        except Exception:
            logger.exception("Convergence loop crashed")

    worker = threading.Thread(target=_worker, name="convergence", daemon=True)
    worker.start()
    try:
        # join in slices so signal handlers run on the main thread
        while worker.is_alive():
            worker.join(timeout=_JOIN_SLICE_S)
    finally:
        download_service.shutdown()

    state = result.get("state")
    logger.info("Agent finished in state %s", state.value if state else "error")
    if state in (LoopState.CONVERGED, LoopState.DISABLED, LoopState.CANCELLED):
        return 0
    return 1


def fetch_config() -> int:
    from loader_agent.config import ConfigError, load_config

    try:
        cfg = load_config()
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 1

    remote = _build_config_client(cfg).fetch()
    print(json.dumps(remote.to_dict(), indent=2, sort_keys=True))
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="loader-agent")
    p.add_argument("--version", action="version", version=get_version_string())

    sub = p.add_subparsers(dest="cmd", required=True)
    sub.add_parser("run", help="Converge on the remotely configured package")
    sub.add_parser("fetch-config", help="Print the remote configuration document and exit")
    return p


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)

    if args.cmd == "run":
        raise SystemExit(run_agent())

    if args.cmd == "fetch-config":
        raise SystemExit(fetch_config())

    raise SystemExit(2)


if __name__ == "__main__":
    main()
