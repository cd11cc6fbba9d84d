"""Lifecycle hooks: materialized env files, compose overlay, plan document, project commands."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path

from iterwork.core.process import CommandResult, run_command
from iterwork.core.progress import STATUS_FILENAME, find_plan_document
from iterwork.core.service_manager import CommandRunner
from iterwork.core.templating import TemplateKind, TemplateRenderer
from iterwork.errors import CommandError
from iterwork.models.context import DatabaseKind, ProjectContext
from iterwork.models.iteration import IterationInstance

logger = logging.getLogger(__name__)

TEMPLATE_DIR = ".iterwork"
ENV_TEMPLATE = "env.template"
COMPOSE_TEMPLATE = "docker-compose.template.yml"
PLAN_TEMPLATE = "plan.template.md"

DEFAULT_ENV_TEMPLATE = """\
# Generated for iteration {iterationName} on {createdDate}
ITERATION_NAME={iterationName}
ITERATION_BRANCH={iterationBranch}
FRONTEND_PORT={frontendPort}
BACKEND_PORT={backendPort}
PORT={backendPort}
VITE_PORT={frontendPort}
VITE_API_URL=http://localhost:{backendPort}
{servicePorts}
TEST_MODE=true
"""

DEFAULT_DATABASE_ENV_TEMPLATE = """\
DB_PORT={dbPort}
DB_SCHEMA={dbSchema}
DB_NAME={dbName}
DB_USER={dbUser}
"""

DEFAULT_PLAN_TEMPLATE = """\
# Iteration Plan: {iterationName}

**Ticket**: {ticket}
**Created**: {createdDate}
**Description**: {description}

## Problem Statement
[To be gathered during planning phase]

## Solution Approach
[To be designed]

## Implementation Phases

## Phase 1: Planning (Day 1)
- [ ] Clarify requirements
- [ ] Outline the approach

## Phase 2: Implementation (Days 2-4)
- [ ] Build the change
- [ ] Add tests

## Testing Strategy
- Unit tests for all new functions
- Integration tests for workflows

## Success Criteria
[To be defined]

## Technical Notes
{technicalNotes}
"""

_DATABASE_IMAGES = {
    DatabaseKind.POSTGRESQL: ("postgres:16", 5432, "/var/lib/postgresql/data"),
    DatabaseKind.MYSQL: ("mysql:8", 3306, "/var/lib/mysql"),
    DatabaseKind.MONGODB: ("mongo:7", 27017, "/data/db"),
}

_DATABASE_ENVIRONMENT = {
    DatabaseKind.POSTGRESQL: (
        "      POSTGRES_USER: {dbUser}\n"
        "      POSTGRES_DB: {dbName}\n"
        "      POSTGRES_PASSWORD: ${DB_PASSWORD:-postgres}\n"
    ),
    DatabaseKind.MYSQL: (
        "      MYSQL_USER: {dbUser}\n"
        "      MYSQL_DATABASE: {dbName}\n"
        "      MYSQL_PASSWORD: ${DB_PASSWORD:-mysql}\n"
        "      MYSQL_ROOT_PASSWORD: ${DB_ROOT_PASSWORD:-mysql}\n"
    ),
    DatabaseKind.MONGODB: (
        "      MONGO_INITDB_DATABASE: {dbName}\n"
    ),
}


class HookRunner:
    """Run the create/start hooks for an iteration."""

    def __init__(
        self,
        *,
        timeout_seconds: float = 600.0,
        runner: CommandRunner = run_command,
        renderer: TemplateRenderer | None = None,
    ) -> None:
        self._timeout = timeout_seconds
        self._runner = runner
        self._renderer = renderer or TemplateRenderer()

    def post_create(self, context: ProjectContext, instance: IterationInstance) -> list[Path]:
        """Write iteration files, install dependencies, run the project's post-create command."""
        written = self.materialize_env(context, instance)
        plan = self.write_plan(context, instance)
        if plan is not None:
            written.append(plan)
        self.install(context, instance)
        if context.hooks.post_create:
            result = self._run(context.hooks.post_create, instance)
            if not result.ok:
                logger.warning("post-create command failed: %s", result.output.strip())
        return written

    def pre_start(self, context: ProjectContext, instance: IterationInstance) -> CommandResult | None:
        if not context.hooks.pre_start:
            return None
        result = self._run(context.hooks.pre_start, instance)
        if not result.ok:
            msg = f"pre-start command failed: {result.output.strip() or result.command}"
            raise CommandError(
                msg,
                command=result.command,
                output=result.output,
                returncode=result.returncode,
                timed_out=result.timed_out,
                remedy="fix the project's pre_start hook and start again",
            )
        return result

    def materialize_env(self, context: ProjectContext, instance: IterationInstance) -> list[Path]:
        workspace = instance.workspace_path
        values = iteration_values(context, instance)

        env_values = {**values, "servicePorts": _service_port_lines(instance)}
        env_template = self._project_template(workspace, ENV_TEMPLATE)
        if env_template is None:
            env_template = DEFAULT_ENV_TEMPLATE
            if context.has_database:
                env_template += DEFAULT_DATABASE_ENV_TEMPLATE
        env_text = self._renderer.render(TemplateKind.ENV, env_template, env_values)

        written = []
        for filename in (".env", ".env.iteration"):
            path = workspace / filename
            path.write_text(env_text, encoding="utf-8")
            written.append(path)

        if context.has_database:
            compose_template = self._project_template(workspace, COMPOSE_TEMPLATE)
            if compose_template is None:
                compose_template = default_compose_template(context)
            compose_path = workspace / f"docker-compose.{instance.name}.yml"
            compose_path.write_text(
                self._renderer.render(TemplateKind.COMPOSE, compose_template, values),
                encoding="utf-8",
            )
            written.append(compose_path)
        return written

    def write_plan(self, context: ProjectContext, instance: IterationInstance) -> Path | None:
        """Create ``ITERATION_PLAN.md`` unless the tree already has a plan document."""
        if find_plan_document(instance.workspace_path, instance.name) is not None:
            return None
        template = self._project_template(instance.workspace_path, PLAN_TEMPLATE) or DEFAULT_PLAN_TEMPLATE
        notes = [f"- {name} port: {service.actual_port}" for name, service in instance.allocated_services.items()]
        if instance.allocated_database is not None:
            notes.append(f"- Database port: {instance.allocated_database.actual_port}")
            notes.append(f"- Database schema: {instance.allocated_database.schema_name}")
        notes.append("- Auth bypass: TEST_MODE=true")
        text = self._renderer.render(
            TemplateKind.PLAN,
            template,
            {
                "iterationName": instance.name,
                "ticket": instance.ticket or "n/a",
                "description": instance.description or "To be defined",
                "createdDate": instance.created_at.isoformat(),
                "technicalNotes": "\n".join(notes),
            },
        )
        path = instance.workspace_path / "ITERATION_PLAN.md"
        path.write_text(text, encoding="utf-8")
        return path

    def install(self, context: ProjectContext, instance: IterationInstance) -> CommandResult | None:
        if not context.iteration.auto_install:
            return None
        command = context.iteration.install_command or detect_install_command(instance.workspace_path)
        if command is None:
            return None
        logger.info("installing dependencies with %s", command)
        result = self._run(command, instance)
        if not result.ok:
            logger.warning("dependency install failed: %s", result.output.strip())
        return result

    def _run(self, command: str, instance: IterationInstance) -> CommandResult:
        return self._runner(command, cwd=instance.workspace_path, timeout_seconds=self._timeout)

    @staticmethod
    def _project_template(workspace: Path, filename: str) -> str | None:
        path = workspace / TEMPLATE_DIR / filename
        if not path.is_file():
            return None
        return path.read_text(encoding="utf-8")


def generated_files(instance: IterationInstance) -> list[str]:
    """Tree-relative names of the files the hooks and progress tracker write."""
    return [
        ".env",
        ".env.iteration",
        f"docker-compose.{instance.name}.yml",
        "ITERATION_PLAN.md",
        STATUS_FILENAME,
    ]


def iteration_values(context: ProjectContext, instance: IterationInstance) -> dict[str, str]:
    """Values for the shared iteration template variables."""
    services = instance.allocated_services
    frontend = services.get("frontend") or next(iter(services.values()), None)
    backend = services.get("backend") or services.get("api") or frontend
    database = instance.allocated_database
    return {
        "iterationName": instance.name,
        "iterationBranch": instance.branch_name,
        "frontendPort": str(frontend.actual_port) if frontend else "",
        "backendPort": str(backend.actual_port) if backend else "",
        "dbPort": str(database.actual_port) if database else "",
        "dbSchema": database.schema_name if database else "",
        "dbName": context.database.database_name,
        "dbUser": context.database.user,
        "createdDate": datetime.now(UTC).isoformat(),
    }


def default_compose_template(context: ProjectContext) -> str:
    database = context.database
    image, internal_port, data_dir = _DATABASE_IMAGES.get(
        database.kind, _DATABASE_IMAGES[DatabaseKind.POSTGRESQL]
    )
    service = database.service_name
    environment = _DATABASE_ENVIRONMENT.get(database.kind, _DATABASE_ENVIRONMENT[DatabaseKind.POSTGRESQL])
    # Compose interpolation uses ${...}, which the renderer leaves alone.
    return (
        "# Generated for iteration {iterationName}; not part of any pull request.\n"
        "name: iteration-{iterationName}\n"
        "services:\n"
        f"  {service}:\n"
        f"    image: {image}\n"
        "    ports:\n"
        f'      - "{{dbPort}}:{internal_port}"\n'
        "    environment:\n"
        f"{environment}"
        "      ITERATION_SCHEMA: {dbSchema}\n"
        '      TEST_MODE: "true"\n'
        "    volumes:\n"
        f"      - {{iterationName}}-data:{data_dir}\n"
        "volumes:\n"
        "  {iterationName}-data:\n"
    )


def detect_install_command(workspace: Path) -> str | None:
    if (workspace / "bun.lock").exists() or (workspace / "bun.lockb").exists():
        return "bun install"
    if (workspace / "pnpm-lock.yaml").exists():
        return "pnpm install"
    if (workspace / "package.json").exists():
        return "npm install"
    if (workspace / "uv.lock").exists():
        return "uv sync"
    return None


def _service_port_lines(instance: IterationInstance) -> str:
    return "\n".join(
        f"{name.upper().replace('-', '_')}_PORT={service.actual_port}"
        for name, service in instance.allocated_services.items()
    )
