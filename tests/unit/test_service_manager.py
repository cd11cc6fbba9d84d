from __future__ import annotations

from pathlib import Path
from urllib import error as urllib_error

import pytest

from iterwork.core.process import CommandResult
from iterwork.core.service_manager import ServiceManager
from iterwork.errors import CommandError, ServiceHealthTimeoutError
from iterwork.models.context import (
    CustomHooks,
    DatabaseConfig,
    DatabaseKind,
    MigrationConfig,
    ProjectContext,
    SeedConfig,
    ServiceConfig,
)
from iterwork.models.iteration import IterationInstance, ServiceAllocation


class FakeRunner:
    def __init__(self, returncodes: list[int] | None = None) -> None:
        self.returncodes = list(returncodes or [])
        self.calls: list[tuple[str | list[str], Path]] = []
        self.timeouts: list[float | None] = []

    def __call__(self, command, *, cwd, timeout_seconds=None, env=None, input_text=None):  # type: ignore[no-untyped-def]
        self.calls.append((command, cwd))
        self.timeouts.append(timeout_seconds)
        returncode = self.returncodes.pop(0) if self.returncodes else 0
        text = command if isinstance(command, str) else " ".join(command)
        return CommandResult(command=text, returncode=returncode, output="boom" if returncode else "ok")


def _context(**database: object) -> ProjectContext:
    return ProjectContext(
        project_id="shop",
        name="shop",
        services={
            "frontend": ServiceConfig(base_port=5173, command="npm run dev", health_path="/health"),
            "worker": ServiceConfig(base_port=7000, command="npm run worker"),
        },
        database=DatabaseConfig(kind=DatabaseKind.POSTGRESQL, schema_template="app_{iteration}", **database),
    )


def _instance(tmp_path: Path) -> IterationInstance:
    workspace = tmp_path / "demo"
    workspace.mkdir(exist_ok=True)
    return IterationInstance(
        name="demo",
        project_id="shop",
        project_path=tmp_path,
        branch_name="iteration/demo",
        workspace_path=workspace,
        allocated_services={
            "frontend": ServiceAllocation(base_port=5173, actual_port=5313),
            "worker": ServiceAllocation(base_port=7000, actual_port=7140),
        },
    )


def test_compose_file_prefers_iteration_overlay(tmp_path: Path) -> None:
    instance = _instance(tmp_path)
    manager = ServiceManager(runner=FakeRunner())
    assert manager.compose_file(instance) == "docker-compose.yml"

    (instance.workspace_path / "docker-compose.demo.yml").write_text("services: {}\n", encoding="utf-8")
    assert manager.compose_file(instance) == "docker-compose.demo.yml"


def test_start_database_raises_on_failure(tmp_path: Path) -> None:
    runner = FakeRunner([1])
    manager = ServiceManager(runner=runner)

    with pytest.raises(CommandError) as excinfo:
        manager.start_database(_context(), _instance(tmp_path))

    assert runner.calls[0][0] == ["docker", "compose", "-f", "docker-compose.yml", "up", "-d", "postgres"]
    assert excinfo.value.remedy is not None


def test_readiness_commands_per_kind(tmp_path: Path) -> None:
    instance = _instance(tmp_path)
    manager = ServiceManager(runner=FakeRunner())

    assert manager.readiness_command(_context(), instance)[-3:] == ["pg_isready", "-U", "postgres"]
    mysql = _context(service_name="mysql", user="root")
    mysql.database.kind = DatabaseKind.MYSQL
    assert manager.readiness_command(mysql, instance)[-5:] == ["mysql", "mysqladmin", "ping", "-u", "root"]
    custom = _context(readiness_command=["./wait-for-db.sh"])
    assert manager.readiness_command(custom, instance) == ["./wait-for-db.sh"]


def test_wait_for_database_retries_until_ready(tmp_path: Path) -> None:
    sleeps: list[float] = []
    runner = FakeRunner([1, 1, 0])
    manager = ServiceManager(runner=runner, readiness_attempts=5, readiness_interval_seconds=0.5, sleep=sleeps.append)

    result = manager.wait_for_database(_context(), _instance(tmp_path))

    assert result.attempts == 3
    assert sleeps == [0.5, 0.5]


def test_wait_for_database_is_bounded(tmp_path: Path) -> None:
    sleeps: list[float] = []
    runner = FakeRunner([1, 1, 1, 1])
    manager = ServiceManager(
        runner=runner,
        readiness_attempts=3,
        readiness_interval_seconds=2.0,
        health_timeout_seconds=1.0,
        sleep=sleeps.append,
    )

    with pytest.raises(ServiceHealthTimeoutError) as excinfo:
        manager.wait_for_database(_context(), _instance(tmp_path))

    assert len(runner.calls) == 3
    assert sleeps == [2.0, 2.0]
    assert str(excinfo.value) == "service postgres did not become healthy within 6 seconds"


def test_wait_for_database_caps_hanging_probes_at_the_budget(tmp_path: Path) -> None:
    now = [0.0]

    class HangingRunner(FakeRunner):
        def __call__(self, command, *, cwd, timeout_seconds=None, env=None, input_text=None):  # type: ignore[no-untyped-def]
            result = super().__call__(command, cwd=cwd, timeout_seconds=timeout_seconds)
            now[0] += timeout_seconds
            return CommandResult(command=result.command, returncode=124, output="", timed_out=True)

    def sleep(seconds: float) -> None:
        now[0] += seconds

    runner = HangingRunner()
    manager = ServiceManager(
        runner=runner,
        readiness_attempts=30,
        readiness_interval_seconds=1.0,
        health_timeout_seconds=2.0,
        sleep=sleep,
        clock=lambda: now[0],
    )

    with pytest.raises(ServiceHealthTimeoutError) as excinfo:
        manager.wait_for_database(_context(), _instance(tmp_path))

    assert runner.timeouts == [10.0, 10.0, 8.0]
    assert now[0] == 30.0
    assert str(excinfo.value) == "service postgres did not become healthy within 30 seconds"


def test_run_migrations_default_and_failure_only_warns(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    runner = FakeRunner([1])
    manager = ServiceManager(runner=runner)

    result = manager.run_migrations(_context(migrations=MigrationConfig()), _instance(tmp_path))

    assert result is not None and not result.ok
    assert runner.calls[0][0][-4:] == ["setup", "run", "--rm", "flyway"]
    assert "did not apply cleanly" in caplog.text


def test_run_migrations_skipped_when_disabled(tmp_path: Path) -> None:
    runner = FakeRunner()
    manager = ServiceManager(runner=runner)

    assert manager.run_migrations(_context(), _instance(tmp_path)) is None
    assert manager.run_migrations(_context(migrations=MigrationConfig(enabled=False)), _instance(tmp_path)) is None
    assert runner.calls == []


def test_seed_uses_default_seed(tmp_path: Path) -> None:
    runner = FakeRunner()
    manager = ServiceManager(runner=runner)
    context = _context(seeding=SeedConfig(commands={"demo": "npm run seed:demo"}, default_seed="demo"))

    assert manager.seed(context, _instance(tmp_path)) is not None
    assert runner.calls[0][0] == "npm run seed:demo"
    assert manager.seed(context, _instance(tmp_path), "missing") is None


def test_stop_prefers_custom_hook_and_never_raises(tmp_path: Path) -> None:
    runner = FakeRunner([1])
    manager = ServiceManager(runner=runner)
    context = _context()
    context.hooks = CustomHooks(stop="just down")

    result = manager.stop(context, _instance(tmp_path))

    assert result is not None and result.returncode == 1
    assert runner.calls[0][0] == "just down"


def test_stop_without_database_or_workspace_is_noop(tmp_path: Path) -> None:
    runner = FakeRunner()
    manager = ServiceManager(runner=runner)
    no_db = _context()
    no_db.database = DatabaseConfig()
    instance = _instance(tmp_path)

    assert manager.stop(no_db, instance) is None
    instance.workspace_path = tmp_path / "gone"
    assert manager.stop(_context(), instance) is None
    assert runner.calls == []


def test_probe_services_only_probes_health_paths(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    urls: list[str] = []

    class _Response:
        def __enter__(self):  # type: ignore[no-untyped-def]
            return self

        def __exit__(self, *args):  # type: ignore[no-untyped-def]
            return False

        def getcode(self) -> int:
            return 204

    def fake_urlopen(url: str, timeout: float):  # type: ignore[no-untyped-def]
        urls.append(url)
        return _Response()

    monkeypatch.setattr("iterwork.core.service_manager.urllib_request.urlopen", fake_urlopen)

    probes = ServiceManager().probe_services(_instance(tmp_path), _context())

    assert urls == ["http://localhost:5313/health"]
    assert [(probe.service, probe.healthy, probe.reason) for probe in probes] == [("frontend", True, "http_ok")]


def test_probe_http_failures(monkeypatch: pytest.MonkeyPatch) -> None:
    def refused(url: str, timeout: float):  # type: ignore[no-untyped-def]
        raise urllib_error.URLError("connection refused")

    monkeypatch.setattr("iterwork.core.service_manager.urllib_request.urlopen", refused)
    probe = ServiceManager().probe_http("api", "http://localhost:3041/health")
    assert probe.healthy is False
    assert probe.reason == "http_error"

    def server_error(url: str, timeout: float):  # type: ignore[no-untyped-def]
        raise urllib_error.HTTPError(url, 503, "unavailable", None, None)  # type: ignore[arg-type]

    monkeypatch.setattr("iterwork.core.service_manager.urllib_request.urlopen", server_error)
    probe = ServiceManager().probe_http("api", "http://localhost:3041/health")
    assert probe.http_status == 503
    assert probe.reason == "http_status:503"
