import warnings
from pathlib import Path

import pytest

import loader_agent.core.convergence as convergence_mod
from loader_agent.core.context import AgentContext
from loader_agent.core.convergence import ConvergenceLoop, IllegalTransition, LoopState
from loader_agent.core.downloader import DownloadError
from loader_agent.core.host import ACTION_MAIN, CATEGORY_LAUNCHER, HostCommandError
from loader_agent.core.install_checker import InstallQueryError
from loader_agent.core.install_dispatcher import InstallDispatchError
from loader_agent.core.remote_config import RemoteConfig


ENABLED = RemoteConfig(
    enabled=True,
    package_id="com.example.app",
    display_name="Example",
    download_url="https://example.test/app.apk",
)


class FakeConfigClient:
    def __init__(self, cfg, on_fetch=None):
        self.cfg = cfg
        self.on_fetch = on_fetch
        self.calls = 0

    def fetch(self):
        self.calls += 1
        if self.on_fetch:
            self.on_fetch()
        return self.cfg


class FakeChecker:
    """Answers from a script; the last answer repeats."""

    def __init__(self, answers):
        self.answers = list(answers)
        self.queries = []

    def is_installed(self, package_id):
        self.queries.append(package_id)
        answer = self.answers.pop(0) if len(self.answers) > 1 else self.answers[0]
        if isinstance(answer, Exception):
            raise answer
        return answer


class FakeDownloader:
    def __init__(self, errors=(), on_call=None):
        self.errors = list(errors)
        self.on_call = on_call
        self.calls = []

    def ensure_local(self, url, destination, cancel):
        self.calls.append((url, destination))
        if self.on_call:
            self.on_call(len(self.calls))
        if self.errors:
            err = self.errors.pop(0)
            if err is not None:
                raise err
        return destination


class FakeDispatcher:
    def __init__(self, errors=()):
        self.errors = list(errors)
        self.installed = []

    def install(self, path):
        self.installed.append(path)
        if self.errors:
            err = self.errors.pop(0)
            if err is not None:
                raise err


class FakeLauncher:
    def __init__(self, component="com.example.app/.MainActivity", error=None):
        self.component = component
        self.error = error
        self.intents = []

    def resolve_launch_component(self, package_id):
        return self.component

    def start_activity(self, intent):
        if self.error:
            raise self.error
        self.intents.append(intent)


@pytest.fixture
def build(make_config, agent_paths):
    def _build(cfg=ENABLED, checker=None, downloader=None, dispatcher=None, launcher=None,
               on_fetch=None, **config_overrides):
        ctx = AgentContext.create(make_config(**config_overrides), agent_paths)
        parts = dict(
            config_client=FakeConfigClient(cfg, on_fetch=on_fetch),
            checker=checker or FakeChecker([True]),
            downloader=downloader or FakeDownloader(),
            dispatcher=dispatcher or FakeDispatcher(),
            launcher=launcher or FakeLauncher(),
        )
        loop = ConvergenceLoop(ctx, **parts)
        return loop, ctx, parts

    return _build


def test_installs_until_present_then_launches(build, agent_paths):
    checker = FakeChecker([False, False, True])
    loop, ctx, parts = build(checker=checker)

    assert loop.run() is LoopState.CONVERGED

    expected = agent_paths.artifact_path("Example", ".apk")
    assert loop.attempts == 2
    assert parts["downloader"].calls == [("https://example.test/app.apk", expected)] * 2
    assert parts["dispatcher"].installed == [expected, expected]
    assert checker.queries == ["com.example.app"] * 3

    intents = parts["launcher"].intents
    assert len(intents) == 1
    assert intents[0].action == ACTION_MAIN
    assert intents[0].categories == (CATEGORY_LAUNCHER,)
    assert intents[0].component == "com.example.app/.MainActivity"


def test_already_installed_launches_without_download(build):
    loop, _, parts = build(checker=FakeChecker([True]))

    assert loop.run() is LoopState.CONVERGED
    assert loop.attempts == 0
    assert parts["downloader"].calls == []
    assert parts["dispatcher"].installed == []
    assert len(parts["launcher"].intents) == 1


def test_disabled_does_nothing(build):
    loop, _, parts = build(cfg=RemoteConfig(enabled=False, package_id="com.example.app"))

    assert loop.run() is LoopState.DISABLED
    assert parts["config_client"].calls == 1
    assert parts["checker"].queries == []
    assert parts["downloader"].calls == []
    assert parts["dispatcher"].installed == []
    assert parts["launcher"].intents == []


def test_default_config_is_disabled(build):
    loop, _, parts = build(cfg=RemoteConfig())

    assert loop.run() is LoopState.DISABLED
    assert parts["checker"].queries == []


def test_incomplete_config_halts(build):
    cfg = RemoteConfig(enabled=True, package_id="", display_name="Example", download_url="https://x")
    loop, _, parts = build(cfg=cfg)

    assert loop.run() is LoopState.HALTED
    assert parts["checker"].queries == []
    assert parts["downloader"].calls == []


def test_incomplete_config_without_halt_keeps_polling_until_cancelled(build):
    cfg = RemoteConfig(enabled=True)
    holder = {}

    def _cancel_after_three(n):
        if n == 3:
            holder["ctx"].cancel.cancel()

    downloader = FakeDownloader(errors=[DownloadError("download url is empty")] * 5, on_call=_cancel_after_three)
    loop, ctx, parts = build(
        cfg=cfg, checker=FakeChecker([False]), downloader=downloader, halt_on_incomplete=False
    )
    holder["ctx"] = ctx

    assert loop.run() is LoopState.CANCELLED
    assert len(downloader.calls) == 3
    assert parts["dispatcher"].installed == []
    assert parts["launcher"].intents == []


def test_cancelled_during_fetch_never_polls(build):
    holder = {}
    loop, ctx, parts = build(on_fetch=lambda: holder["ctx"].cancel.cancel())
    holder["ctx"] = ctx

    assert loop.run() is LoopState.CANCELLED
    assert parts["checker"].queries == []
    assert parts["downloader"].calls == []


def test_failed_attempts_are_retried(build):
    checker = FakeChecker([InstallQueryError("pm busy"), False, False, False, True])
    downloader = FakeDownloader(errors=[DownloadError("timeout"), None, None])
    dispatcher = FakeDispatcher(errors=[InstallDispatchError("am start failed"), None])
    loop, _, parts = build(checker=checker, downloader=downloader, dispatcher=dispatcher)

    assert loop.run() is LoopState.CONVERGED
    assert len(checker.queries) == 5
    assert len(downloader.calls) == 3
    assert len(dispatcher.installed) == 2
    assert loop.attempts == 2
    assert len(parts["launcher"].intents) == 1


def test_cancel_between_attempts(build):
    holder = {}

    def _cancel(n):
        holder["ctx"].cancel.cancel()

    loop, ctx, parts = build(
        checker=FakeChecker([False]), downloader=FakeDownloader(on_call=_cancel), retry_interval_s=30.0
    )
    holder["ctx"] = ctx

    assert loop.run() is LoopState.CANCELLED
    assert len(parts["downloader"].calls) == 1
    assert parts["launcher"].intents == []


def test_launch_failure_still_converged(build):
    loop, _, _ = build(launcher=FakeLauncher(error=HostCommandError("am start failed rc=1")))

    assert loop.run() is LoopState.CONVERGED


def test_no_launcher_activity_skips_launch(build):
    launcher = FakeLauncher(component=None)
    loop, _, _ = build(launcher=launcher)

    assert loop.run() is LoopState.CONVERGED
    assert launcher.intents == []


@pytest.mark.parametrize(
    "cfg, checker, expected",
    [
        (ENABLED, [True], LoopState.CONVERGED),
        (RemoteConfig(), [True], LoopState.DISABLED),
        (RemoteConfig(enabled=True), [True], LoopState.HALTED),
    ],
)
def test_grant_released_on_every_exit(build, cfg, checker, expected):
    loop, ctx, _ = build(cfg=cfg, checker=FakeChecker(checker))
    assert ctx.grant.held

    assert loop.run() is expected
    assert not ctx.grant.held


def test_grant_released_when_loop_crashes(build):
    loop, ctx, _ = build(checker=FakeChecker([ValueError("boom")]))

    with pytest.raises(ValueError):
        loop.run()
    assert not ctx.grant.held


def test_illegal_transition_rejected(build):
    loop, _, _ = build()

    with pytest.raises(IllegalTransition):
        loop._transition(LoopState.CONVERGED)
    assert loop.state is LoopState.INIT


@pytest.mark.parametrize("halt", [True, False])
def test_name_escaping_downloads_halts(build, agent_paths, halt):
    cfg = RemoteConfig(
        enabled=True,
        package_id="com.example.app",
        display_name="../../escape",
        download_url="https://example.test/app.apk",
    )
    loop, ctx, parts = build(cfg=cfg, checker=FakeChecker([False]), halt_on_incomplete=halt)

    assert loop.run() is LoopState.HALTED
    assert parts["checker"].queries == []
    assert parts["downloader"].calls == []
    assert parts["dispatcher"].installed == []
    assert not ctx.grant.held
    assert not (agent_paths.base_dir / "escape.apk").exists()


def test_module_docstring_compiles_without_warnings():
    source = Path(convergence_mod.__file__).read_text(encoding="utf-8")
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        compile(source, convergence_mod.__file__, "exec")
