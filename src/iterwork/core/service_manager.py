"""Docker compose services, database readiness and health probes for iterations."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeAlias
from datetime import UTC, datetime
from pathlib import Path
from urllib import error as urllib_error
from urllib import request as urllib_request

from iterwork.core.process import CommandResult, run_command
from iterwork.errors import CommandError, ServiceHealthTimeoutError
from iterwork.models.context import DatabaseKind, ProjectContext
from iterwork.models.iteration import IterationInstance

logger = logging.getLogger(__name__)

CommandRunner: TypeAlias = Callable[..., CommandResult]


@dataclass(slots=True)
class HealthProbe:
    """Health probe result for one iteration service."""

    service: str
    healthy: bool
    probe: str
    reason: str
    checked_at: datetime
    http_status: int | None = None
    command: str | None = None


@dataclass(slots=True)
class ReadinessResult:
    service: str
    attempts: int
    command: str


class ServiceManager:
    """Bring an iteration's database up and down and check its services."""

    def __init__(
        self,
        *,
        timeout_seconds: float = 600.0,
        readiness_attempts: int = 30,
        readiness_interval_seconds: float = 1.0,
        health_timeout_seconds: float = 2.0,
        runner: CommandRunner = run_command,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._timeout = timeout_seconds
        self._attempts = readiness_attempts
        self._interval = readiness_interval_seconds
        self._health_timeout = health_timeout_seconds
        self._runner = runner
        self._sleep = sleep
        self._clock = clock

    @property
    def readiness_budget_seconds(self) -> float:
        """Upper bound on the whole readiness wait, probes included."""
        return max(self._attempts * self._interval, self._health_timeout * 5)

    def compose_file(self, instance: IterationInstance) -> str:
        overlay = instance.workspace_path / f"docker-compose.{instance.name}.yml"
        if overlay.exists():
            return overlay.name
        return "docker-compose.yml"

    def start_database(self, context: ProjectContext, instance: IterationInstance) -> CommandResult:
        service = context.database.service_name
        command = ["docker", "compose", "-f", self.compose_file(instance), "up", "-d", service]
        logger.info("starting %s for iteration %s", service, instance.name)
        return self._require(self._run(command, instance.workspace_path), f"could not start {service}")

    def readiness_command(self, context: ProjectContext, instance: IterationInstance) -> list[str]:
        database = context.database
        if database.readiness_command:
            return list(database.readiness_command)
        prefix = ["docker", "compose", "-f", self.compose_file(instance), "exec", "-T", database.service_name]
        if database.kind is DatabaseKind.MYSQL:
            return [*prefix, "mysqladmin", "ping", "-u", database.user]
        if database.kind is DatabaseKind.MONGODB:
            return [*prefix, "mongosh", "--quiet", "--eval", "db.adminCommand('ping')"]
        return [*prefix, "pg_isready", "-U", database.user]

    def wait_for_database(
        self, context: ProjectContext, instance: IterationInstance
    ) -> ReadinessResult:
        """Poll readiness at most ``readiness_attempts`` times within ``readiness_budget_seconds``.

        Each probe's own timeout is cut to the time left, so a hanging probe
        cannot stretch the wait past the budget.
        """
        command = self.readiness_command(context, instance)
        service = context.database.service_name
        budget = self.readiness_budget_seconds
        deadline = self._clock() + budget
        for attempt in range(1, self._attempts + 1):
            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            result = self._runner(
                command,
                cwd=instance.workspace_path,
                timeout_seconds=min(self._health_timeout * 5, remaining),
            )
            if result.ok:
                logger.info("%s ready after %d attempt(s)", service, attempt)
                return ReadinessResult(service=service, attempts=attempt, command=result.command)
            if attempt == self._attempts or self._clock() + self._interval >= deadline:
                break
            self._sleep(self._interval)
        raise ServiceHealthTimeoutError(service, budget)

    def run_migrations(
        self, context: ProjectContext, instance: IterationInstance
    ) -> CommandResult | None:
        """Apply migrations. A failing run is logged, since most failures are re-applied migrations."""
        migrations = context.database.migrations
        if migrations is None or not migrations.enabled:
            return None
        command: str | list[str]
        if migrations.command:
            command = migrations.command
        else:
            command = [
                "docker",
                "compose",
                "-f",
                self.compose_file(instance),
                "--profile",
                "setup",
                "run",
                "--rm",
                migrations.tool,
            ]
        result = self._run(command, instance.workspace_path)
        if not result.ok:
            logger.warning("migrations for %s did not apply cleanly: %s", instance.name, result.output.strip())
        return result

    def seed(
        self, context: ProjectContext, instance: IterationInstance, seed_name: str | None = None
    ) -> CommandResult | None:
        seeding = context.database.seeding
        if seeding is None:
            return None
        name = seed_name or seeding.default_seed
        if name is None:
            return None
        command = seeding.commands.get(name)
        if command is None:
            logger.warning("no seed command named %s", name)
            return None
        result = self._run(command, instance.workspace_path)
        if not result.ok:
            logger.warning("seed %s failed for %s: %s", name, instance.name, result.output.strip())
        return result

    def stop(self, context: ProjectContext, instance: IterationInstance) -> CommandResult | None:
        """Best-effort shutdown; failures are logged, never raised."""
        if context.hooks.stop:
            command: str | list[str] = context.hooks.stop
        elif context.has_database:
            command = ["docker", "compose", "-f", self.compose_file(instance), "down"]
        else:
            return None
        if not instance.workspace_path.exists():
            logger.warning("skipping stop for %s: %s is missing", instance.name, instance.workspace_path)
            return None
        result = self._run(command, instance.workspace_path)
        if not result.ok:
            logger.warning("stop command failed for %s: %s", instance.name, result.output.strip())
        return result

    def probe_services(self, instance: IterationInstance, context: ProjectContext) -> list[HealthProbe]:
        probes: list[HealthProbe] = []
        for name, allocation in instance.allocated_services.items():
            config = context.services.get(name)
            health_path = config.health_path if config is not None else None
            if not health_path:
                continue
            url = f"http://localhost:{allocation.actual_port}/{health_path.lstrip('/')}"
            probes.append(self.probe_http(name, url))
        return probes

    def probe_http(self, service: str, url: str, *, timeout_seconds: float | None = None) -> HealthProbe:
        checked_at = datetime.now(UTC)
        timeout = timeout_seconds if timeout_seconds is not None else self._health_timeout
        try:
            with urllib_request.urlopen(url, timeout=timeout) as response:
                status_code = response.getcode()
        except urllib_error.HTTPError as exc:
            return HealthProbe(
                service=service,
                healthy=False,
                probe="http",
                reason=f"http_status:{exc.code}",
                checked_at=checked_at,
                http_status=exc.code,
            )
        except (urllib_error.URLError, OSError):
            return HealthProbe(
                service=service,
                healthy=False,
                probe="http",
                reason="http_error",
                checked_at=checked_at,
            )

        if status_code is None:
            return HealthProbe(
                service=service,
                healthy=False,
                probe="http",
                reason="http_status:unknown",
                checked_at=checked_at,
            )
        healthy = 200 <= status_code < 400
        return HealthProbe(
            service=service,
            healthy=healthy,
            probe="http",
            reason="http_ok" if healthy else f"http_status:{status_code}",
            checked_at=checked_at,
            http_status=status_code,
        )

    def _run(self, command: str | list[str], cwd: Path) -> CommandResult:
        return self._runner(command, cwd=cwd, timeout_seconds=self._timeout)

    @staticmethod
    def _require(result: CommandResult, message: str) -> CommandResult:
        if result.ok:
            return result
        detail = "timed out" if result.timed_out else result.output.strip()
        raise CommandError(
            f"{message}: {detail}",
            command=result.command,
            output=result.output,
            returncode=result.returncode,
            timed_out=result.timed_out,
            remedy="check that docker is running and the compose file is valid",
        )
