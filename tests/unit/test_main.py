import json
import logging

import pytest

import loader_agent.config as config_mod
import loader_agent.core.convergence as convergence_mod
import loader_agent.main as main_mod
from loader_agent.config import ConfigError
from loader_agent.core.context import ForegroundGrant
from loader_agent.core.convergence import LoopState
from loader_agent.core.log_config import _parse_level
from loader_agent.core.remote_config import RemoteConfig
from loader_agent.paths import reset_paths, set_paths


@pytest.fixture
def runtime(monkeypatch, make_config, agent_paths):
    """Wire run_agent to test paths and config; signal handlers stay untouched."""
    set_paths(agent_paths)
    monkeypatch.setattr(config_mod, "load_config", lambda: make_config())
    monkeypatch.setattr(main_mod, "_install_signal_handlers", lambda rt: None)
    yield agent_paths
    reset_paths()


def _fake_loop(final_state):
    class FakeLoop:
        def __init__(self, ctx, *parts):
            self.ctx = ctx

        def run(self):
            self.ctx.close()
            return final_state

    return FakeLoop


def test_parser_requires_subcommand():
    with pytest.raises(SystemExit) as exc:
        main_mod.main([])
    assert exc.value.code == 2


def test_version_exits_zero(capsys):
    with pytest.raises(SystemExit) as exc:
        main_mod.main(["--version"])
    assert exc.value.code == 0
    assert capsys.readouterr().out.strip() == main_mod.get_version_string()


def test_run_exits_with_agent_code(monkeypatch):
    monkeypatch.setattr(main_mod, "run_agent", lambda: 3)

    with pytest.raises(SystemExit) as exc:
        main_mod.main(["run"])
    assert exc.value.code == 3


def test_run_agent_config_error(monkeypatch):
    def _raise():
        raise ConfigError("Missing required environment variable: MQTT_HOST")

    monkeypatch.setattr(config_mod, "load_config", _raise)

    assert main_mod.run_agent() == 1


def test_run_agent_refuses_when_grant_held(runtime, monkeypatch):
    monkeypatch.setattr(convergence_mod, "ConvergenceLoop", _fake_loop(LoopState.CONVERGED))
    other = ForegroundGrant(runtime.grant_lock_path)
    other.acquire()
    try:
        assert main_mod.run_agent() == 1
    finally:
        other.release()


@pytest.mark.parametrize(
    "state, code",
    [
        (LoopState.CONVERGED, 0),
        (LoopState.DISABLED, 0),
        (LoopState.CANCELLED, 0),
        (LoopState.HALTED, 1),
    ],
)
def test_run_agent_exit_code_follows_final_state(runtime, monkeypatch, state, code):
    monkeypatch.setattr(convergence_mod, "ConvergenceLoop", _fake_loop(state))

    assert main_mod.run_agent() == code

    # grant is free again for the next run
    grant = ForegroundGrant(runtime.grant_lock_path)
    grant.acquire()
    grant.release()


def test_run_agent_loop_crash_is_failure(runtime, monkeypatch):
    class Crashing:
        def __init__(self, ctx, *parts):
            pass

        def run(self):
            raise RuntimeError("boom")

    monkeypatch.setattr(convergence_mod, "ConvergenceLoop", Crashing)

    assert main_mod.run_agent() == 1


def test_fetch_config_prints_document(monkeypatch, make_config, capsys):
    monkeypatch.setattr(config_mod, "load_config", lambda: make_config())

    class FakeClient:
        def fetch(self):
            return RemoteConfig(True, "com.example.app", "Example", "https://example.test/app.apk")

    monkeypatch.setattr(main_mod, "_build_config_client", lambda cfg, cancel=None: FakeClient())

    assert main_mod.fetch_config() == 0
    assert json.loads(capsys.readouterr().out) == {
        "enabled": True,
        "package_name": "com.example.app",
        "name": "Example",
        "url": "https://example.test/app.apk",
    }


def test_build_config_client_uses_agent_settings(make_config):
    client = main_mod._build_config_client(make_config(config_root="fleet/app", agent_id="tv-7"))

    store = client._store
    assert store.topics.field("url") == "fleet/app/url"
    assert store.client_id == "loader.agent.tv-7"


@pytest.mark.parametrize(
    "raw, level",
    [("", logging.INFO), ("debug", logging.DEBUG), ("WARNING", logging.WARNING), ("15", 15), ("nope", logging.INFO)],
)
def test_log_level_parsing(raw, level):
    assert _parse_level(raw) == level
