"""Command line interface for ``iterwork`` and ``python -m iterwork``."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Sequence
from pathlib import Path

from iterwork.core.iteration_manager import (
    CreateIterationInput,
    IterationManager,
    ShareIterationInput,
)
from iterwork.db.store import SQLiteStore
from iterwork.errors import IterationError
from iterwork.models.iteration import IterationInstance, WorkStatus
from iterwork.settings import Settings

logger = logging.getLogger(__name__)

EXIT_INPUT_ERROR = 1
EXIT_EXTERNAL_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="iterwork", description="Isolated per-feature iterations on git linked trees")
    parser.add_argument("--project", type=Path, default=Path.cwd(), help="Project checkout (default: cwd)")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("init", help="Detect and store the project context")

    create = commands.add_parser("create", help="Create a new iteration")
    create.add_argument("name")
    create.add_argument("--from", dest="from_branch", default=None, help="Branch to start from")
    create.add_argument("--description", default=None)
    create.add_argument("--ticket", default=None)
    create.add_argument("--auto-start", action="store_true")

    for name, help_text in (("start", "Start an iteration's services"), ("stop", "Stop an iteration's services")):
        command = commands.add_parser(name, help=help_text)
        command.add_argument("name")

    share = commands.add_parser("share", help="Open a pull request from an iteration")
    share.add_argument("name")
    share.add_argument("--title", default=None)
    share.add_argument("--description", default=None)
    share.add_argument("--force", action="store_true", help="Share even if quality gates fail")
    share.add_argument("--no-clean", dest="clean", action="store_false", help="Open the PR from the iteration branch")

    remove = commands.add_parser("remove", help="Remove an iteration's linked tree and registry entry")
    remove.add_argument("name")
    remove.add_argument("--force", action="store_true", help="Discard uncommitted changes")

    commands.add_parser("list", help="List iterations")

    status = commands.add_parser("status", help="Show one iteration")
    status.add_argument("name")

    progress = commands.add_parser("progress", help="Show or update plan progress")
    progress.add_argument("name")
    progress.add_argument("--phase", default=None)
    progress.add_argument("--task", default=None)
    progress.add_argument("--status", choices=[item.value for item in WorkStatus], default=None)
    progress.add_argument("--notes", default=None)

    commands.add_parser("doctor", help="Compare the registry with linked trees on disk")

    repair = commands.add_parser("repair", help="Resolve one divergence reported by doctor")
    repair.add_argument("name")

    history = commands.add_parser("history", help="Show lifecycle events")
    history.add_argument("name", nargs="?", default=None)

    serve = commands.add_parser("serve", help="Serve the HTTP API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        settings = Settings.from_env()
    except ValueError as exc:
        logger.error("invalid configuration: %s", exc)
        return EXIT_INPUT_ERROR

    project = args.project.resolve()
    if args.command == "serve":
        from iterwork.api.app import run

        run(project, host=args.host, port=args.port)
        return 0

    manager = IterationManager(project, settings=settings, store=SQLiteStore(settings.event_db_path))
    try:
        return asyncio.run(_dispatch(manager, args))
    except IterationError as exc:
        print(f"error: {exc}", file=sys.stderr)
        if exc.remedy:
            print(f"hint: {exc.remedy}", file=sys.stderr)
        return EXIT_INPUT_ERROR if isinstance(exc, ValueError) else EXIT_EXTERNAL_ERROR


async def _dispatch(manager: IterationManager, args: argparse.Namespace) -> int:
    command = args.command
    if command == "init":
        context = await manager.init()
        print(f"project context {context.project_id} ({context.name})")
        for name, service in context.services.items():
            print(f"  service {name}: base port {service.base_port}, `{service.command}`")
        print(f"  database: {context.database.kind.value}")
        return 0

    if command == "create":
        instance = await manager.create(
            CreateIterationInput(
                name=args.name,
                from_branch=args.from_branch,
                description=args.description,
                ticket=args.ticket,
                auto_start=args.auto_start,
            )
        )
        print(f"created iteration {instance.name} at {instance.workspace_path}")
        _print_ports(instance)
        return 0

    if command == "start":
        instance = await manager.start(args.name)
        print(f"iteration {instance.name} is running")
        _print_ports(instance)
        return 0

    if command == "stop":
        instance = await manager.stop(args.name)
        print(f"iteration {instance.name} stopped")
        return 0

    if command == "share":
        outcome = await manager.share(
            ShareIterationInput(
                name=args.name,
                title=args.title,
                description=args.description,
                force=args.force,
                clean=args.clean,
            )
        )
        if not outcome.gate.configured:
            print("warning: no quality gate configured", file=sys.stderr)
        if outcome.clean_branch is not None:
            print(
                f"{outcome.head_branch}: {len(outcome.clean_branch.applied)} commit(s) applied, "
                f"{len(outcome.clean_branch.skipped)} skipped"
            )
        print(outcome.pull_request_url or "pull request created")
        return 0

    if command == "remove":
        outcome = await manager.remove(args.name, force=args.force)
        print(f"removed iteration {outcome.name}")
        print(f"branch {outcome.branch} was kept; delete it with: {outcome.cleanup_command}")
        return 0

    if command == "list":
        instances = await manager.list()
        if not instances:
            print("no iterations")
        for instance in instances:
            ports = ", ".join(str(port) for port in instance.ports())
            print(f"{instance.name:<24} {instance.status.value:<8} {instance.branch_name:<32} {ports}")
        return 0

    if command == "status":
        instance = await manager.get(args.name)
        print(f"{instance.name}: {instance.status.value}")
        print(f"  branch: {instance.branch_name}")
        print(f"  path: {instance.workspace_path}")
        print(f"  created: {instance.created_at:%Y-%m-%d %H:%M}")
        _print_ports(instance)
        if instance.pull_request_url:
            print(f"  pull request: {instance.pull_request_url}")
        for probe in await manager.health(args.name):
            print(f"  health {probe.service}: {'ok' if probe.healthy else probe.reason}")
        return 0

    if command == "progress":
        if args.phase is not None:
            status = WorkStatus(args.status) if args.status else None
            await manager.update_progress(args.name, args.phase, args.task, status, args.notes)
        elif args.task or args.status or args.notes:
            print("error: --phase is required to update progress", file=sys.stderr)
            return EXIT_INPUT_ERROR
        print(await manager.progress_report(args.name))
        return 0

    if command == "doctor":
        reports = await manager.doctor()
        if not reports:
            print("registry and linked trees agree")
            return 0
        for report in reports:
            print(f"{report.kind.value:<22} {report.name}: {report.detail}")
            print(f"{'':<22} fix: {report.remedy}")
        return EXIT_INPUT_ERROR

    if command == "repair":
        outcome = await manager.repair(args.name)
        for action in outcome.actions:
            print(f"{outcome.name}: {action}")
        return 0

    if command == "history":
        for event in await manager.history(args.name):
            details = " ".join(f"{key}={value}" for key, value in event.payload.items() if value is not None)
            print(f"{event.timestamp:%Y-%m-%d %H:%M:%S} {event.iteration:<20} {event.event_type.value:<20} {details}")
        return 0

    msg = f"unknown command {command}"
    raise ValueError(msg)


def _print_ports(instance: IterationInstance) -> None:
    for name, service in instance.allocated_services.items():
        print(f"  {name}: http://localhost:{service.actual_port}")
    if instance.allocated_database is not None:
        database = instance.allocated_database
        print(f"  database: localhost:{database.actual_port} (schema {database.schema_name})")
