"""Iteration lifecycle orchestration."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import TypeAlias

from iterwork.core.allocator import allocate_unique
from iterwork.core.context_resolver import ContextResolver
from iterwork.core.git_manager import GitManager
from iterwork.core.hooks import HookRunner, generated_files
from iterwork.core.progress import ProgressTracker
from iterwork.core.provisioner import IsolationProvisioner
from iterwork.core.quality_gate import GateResult, QualityGate
from iterwork.core.registry import RECORD_FILENAME, IterationRegistry
from iterwork.core.service_manager import HealthProbe, ServiceManager
from iterwork.core.share_engine import CleanBranchResult, ShareEngine
from iterwork.db.store import SQLiteStore
from iterwork.errors import (
    CommandError,
    InvalidIterationNameError,
    InvalidTransitionError,
    IterationError,
    IterationExistsError,
    IterationNotFoundError,
    PullRequestError,
    QualityGateError,
    UncommittedChangesError,
)
from iterwork.models.context import ProjectContext
from iterwork.models.events import EventType, IterationEvent
from iterwork.models.iteration import (
    DatabaseAllocation,
    IterationInstance,
    IterationProgress,
    IterationStatus,
    ServiceAllocation,
    WorkStatus,
    can_transition,
    is_valid_iteration_name,
)
from iterwork.settings import Settings

logger = logging.getLogger(__name__)

EventPayload: TypeAlias = dict[str, str | int | float | bool | None]


@dataclass(slots=True)
class CreateIterationInput:
    """Input payload for iteration creation."""

    name: str
    from_branch: str | None = None
    description: str | None = None
    ticket: str | None = None
    auto_start: bool = False


@dataclass(slots=True)
class ShareIterationInput:
    name: str
    title: str | None = None
    description: str | None = None
    force: bool = False
    clean: bool = True


@dataclass(slots=True)
class ShareOutcome:
    instance: IterationInstance
    pull_request_url: str | None
    head_branch: str
    gate: GateResult
    clean_branch: CleanBranchResult | None = None


@dataclass(slots=True)
class RemoveOutcome:
    name: str
    branch: str
    cleanup_command: str


class DivergenceKind(str, Enum):
    MISSING_TREE = "missing_tree"
    MISSING_REGISTRY = "missing_registry"
    MISSING_MIRROR = "missing_mirror"
    ORPHAN_DIRECTORY = "orphan_directory"
    UNREGISTERED_WORKTREE = "unregistered_worktree"


@dataclass(slots=True)
class DivergenceReport:
    """One disagreement between the registry and the filesystem."""

    name: str
    kind: DivergenceKind
    detail: str
    remedy: str


@dataclass(slots=True)
class RepairOutcome:
    name: str
    actions: list[str] = field(default_factory=list)


class IterationManager:
    """Drive iterations of one project through their lifecycle."""

    def __init__(
        self,
        project_path: Path,
        *,
        settings: Settings,
        store: SQLiteStore,
        git: GitManager | None = None,
        resolver: ContextResolver | None = None,
        services: ServiceManager | None = None,
        hooks: HookRunner | None = None,
        quality_gate: QualityGate | None = None,
        share_engine: ShareEngine | None = None,
        progress: ProgressTracker | None = None,
    ) -> None:
        self._project_path = project_path.resolve()
        self._settings = settings
        self._store = store
        self._git = git or GitManager(timeout_seconds=settings.git_timeout_seconds)
        self._resolver = resolver or ContextResolver(settings.contexts_path, self._git)
        self._services = services or ServiceManager(
            timeout_seconds=settings.command_timeout_seconds,
            readiness_attempts=settings.readiness_attempts,
            readiness_interval_seconds=settings.readiness_interval_seconds,
        )
        self._hooks = hooks or HookRunner(timeout_seconds=settings.command_timeout_seconds)
        self._quality_gate = quality_gate or QualityGate(timeout_seconds=settings.command_timeout_seconds)
        self._share_engine = share_engine or ShareEngine(self._git)
        self._progress = progress or ProgressTracker()
        self._provisioner = IsolationProvisioner(self._git)
        self._context: ProjectContext | None = None
        self._registry: IterationRegistry | None = None

    @property
    def project_path(self) -> Path:
        return self._project_path

    @property
    def context(self) -> ProjectContext:
        if self._context is None:
            self._context = self._resolver.resolve(self._project_path)
        return self._context

    @property
    def registry(self) -> IterationRegistry:
        if self._registry is None:
            self._registry = IterationRegistry(
                self._project_path,
                self.context,
                registry_root=self._settings.registry_path,
                locks_root=self._settings.locks_path,
                lock_timeout_seconds=self._settings.lock_timeout_seconds,
            )
        return self._registry

    async def init(self) -> ProjectContext:
        return await asyncio.to_thread(lambda: self.context)

    async def create(self, payload: CreateIterationInput) -> IterationInstance:
        _validate_name(payload.name)
        try:
            instance = await asyncio.to_thread(self._create, payload)
        except IterationError as exc:
            await self._record_failure(payload.name, "create", exc)
            raise
        await self._emit(
            instance,
            EventType.ITERATION_CREATED,
            {
                "branch": instance.branch_name,
                "ports": ",".join(str(port) for port in instance.ports()),
                "schema": instance.allocated_database.schema_name if instance.allocated_database else None,
            },
        )
        if payload.auto_start:
            return await self.start(instance.name)
        return instance

    async def start(self, name: str) -> IterationInstance:
        _validate_name(name)
        try:
            instance = await asyncio.to_thread(self._start, name)
        except IterationError as exc:
            await self._record_failure(name, "start", exc)
            raise
        await self._emit(instance, EventType.ITERATION_STARTED, {})
        return instance

    async def stop(self, name: str) -> IterationInstance:
        _validate_name(name)
        instance = await asyncio.to_thread(self._stop, name)
        await self._emit(instance, EventType.ITERATION_STOPPED, {})
        return instance

    async def share(self, payload: ShareIterationInput) -> ShareOutcome:
        _validate_name(payload.name)
        try:
            outcome = await asyncio.to_thread(self._share, payload)
        except QualityGateError as exc:
            await self._append(payload.name, EventType.QUALITY_GATE_FAILED, {"message": str(exc)})
            raise
        except IterationError as exc:
            await self._record_failure(payload.name, "share", exc)
            raise
        await self._emit(
            outcome.instance,
            EventType.ITERATION_SHARED,
            {
                "pull_request_url": outcome.pull_request_url,
                "head": outcome.head_branch,
                "forced": payload.force and not outcome.gate.passed,
            },
        )
        return outcome

    async def remove(self, name: str, *, force: bool = False) -> RemoveOutcome:
        _validate_name(name)
        outcome = await asyncio.to_thread(self._remove, name, force)
        await self._append(name, EventType.ITERATION_REMOVED, {"branch": outcome.branch, "forced": force})
        return outcome

    async def list(self) -> list[IterationInstance]:
        return await asyncio.to_thread(self.registry.list)

    async def get(self, name: str) -> IterationInstance:
        _validate_name(name)
        return await asyncio.to_thread(self._require, name)

    async def health(self, name: str) -> list[HealthProbe]:
        instance = await self.get(name)
        context = await self.init()
        return await asyncio.to_thread(self._services.probe_services, instance, context)

    async def doctor(self) -> list[DivergenceReport]:
        return await asyncio.to_thread(self._doctor)

    async def repair(self, name: str) -> RepairOutcome:
        _validate_name(name)
        outcome = await asyncio.to_thread(self._repair, name)
        await self._append(name, EventType.ITERATION_REPAIRED, {"actions": "; ".join(outcome.actions)})
        return outcome

    async def update_progress(
        self,
        name: str,
        phase_id: str,
        task_id: str | None = None,
        status: WorkStatus | None = None,
        notes: str | None = None,
    ) -> IterationProgress:
        _validate_name(name)
        progress = await asyncio.to_thread(self._update_progress, name, phase_id, task_id, status, notes)
        await self._append(
            name,
            EventType.PROGRESS_UPDATED,
            {
                "phase": phase_id,
                "task": task_id,
                "status": status.value if status else None,
                "overall_progress": progress.overall_progress,
            },
        )
        return progress

    async def progress_report(self, name: str) -> str:
        instance = await self.get(name)
        return self._progress.report(instance)

    async def history(self, name: str | None = None) -> list[IterationEvent]:
        context = await self.init()
        return await self._store.list_events(project_id=context.project_id, iteration=name)

    def _create(self, payload: CreateIterationInput) -> IterationInstance:
        context = self.context
        registry = self.registry
        name = payload.name
        with registry.lock(name):
            with registry.allocation_lock():
                if registry.exists(name):
                    msg = f"iteration {name} already exists"
                    raise IterationExistsError(
                        msg, remedy=f"pick another name or run `iterwork remove {name}`"
                    )

                allocation = allocate_unique(
                    name,
                    context.services,
                    context.database if context.has_database else None,
                    registry.live_allocations(exclude=name),
                )
                branch = f"{context.iteration.branch_prefix}{name}"
                from_ref = payload.from_branch or self._settings.base_branch
                workspace = registry.workspace_for(name)

                branch_result = self._provisioner.ensure_branch(self._project_path, branch, from_ref)
                try:
                    self._provisioner.create_linked_tree(self._project_path, workspace, branch)
                except IterationError as exc:
                    if branch_result.created and exc.remedy is None:
                        exc.remedy = f"delete the unused branch with `git branch -D {branch}`"
                    raise

                instance = IterationInstance(
                    name=name,
                    project_id=context.project_id,
                    project_path=self._project_path,
                    branch_name=branch,
                    workspace_path=workspace,
                    base_branch=from_ref,
                    description=payload.description,
                    ticket=payload.ticket,
                    allocated_services={
                        service: ServiceAllocation(
                            kind=context.services[service].kind,
                            base_port=context.services[service].base_port,
                            actual_port=port,
                            command=context.services[service].command,
                        )
                        for service, port in allocation.services.items()
                    },
                    allocated_database=(
                        DatabaseAllocation(
                            kind=context.database.kind.value,
                            base_port=context.database.base_port,
                            actual_port=allocation.database.port,
                            schema_name=allocation.database.schema_name,
                        )
                        if allocation.database is not None
                        else None
                    ),
                )
                self._provisioner.ignore_generated(workspace, [RECORD_FILENAME, *generated_files(instance)])
                registry.save(instance)
            logger.info("iteration %s created at %s (offset %d)", name, workspace, allocation.offset)

            self._hooks.post_create(context, instance)
            self._progress.initialize(instance)
            registry.save(instance)
            return instance

    def _start(self, name: str) -> IterationInstance:
        context = self.context
        with self.registry.lock(name):
            instance = self._require(name)
            _check_transition(instance, IterationStatus.RUNNING)
            self._hooks.pre_start(context, instance)
            if context.has_database:
                self._services.start_database(context, instance)
                self._services.wait_for_database(context, instance)
                self._services.run_migrations(context, instance)
                if context.iteration.auto_seed:
                    self._services.seed(context, instance)
            instance.status = IterationStatus.RUNNING
            instance.last_started_at = datetime.now(UTC)
            self.registry.save(instance)
            logger.info("iteration %s running", name)
            return instance

    def _stop(self, name: str) -> IterationInstance:
        with self.registry.lock(name):
            instance = self._require(name)
            _check_transition(instance, IterationStatus.STOPPED)
            self._services.stop(self.context, instance)
            instance.status = IterationStatus.STOPPED
            self.registry.save(instance)
            logger.info("iteration %s stopped", name)
            return instance

    def _share(self, payload: ShareIterationInput) -> ShareOutcome:
        context = self.context
        with self.registry.lock(payload.name):
            instance = self._require(payload.name)
            _check_transition(instance, IterationStatus.SHARED)
            workspace = instance.workspace_path

            gate = self._quality_gate.run(workspace, context.hooks.pre_share)
            if not gate.passed:
                if not payload.force:
                    msg = f"quality gate failed for {instance.name}:\n{gate.summary()}"
                    raise QualityGateError(msg, remedy="fix the failures or share with --force")
                logger.warning("quality gate failed, sharing anyway because --force was given")

            commit = self._git.commit_all(
                workspace, self._share_engine.commit_message(instance, payload.description)
            )
            if commit is None:
                logger.info("no new changes to commit")
            try:
                self._git.push(workspace, "origin", instance.branch_name, set_upstream=True)
            except CommandError as exc:
                logger.warning("could not push %s: %s", instance.branch_name, exc)

            share = self._share_engine.build_share_context(
                instance, title=payload.title, description=payload.description
            )

            clean_branch: CleanBranchResult | None = None
            head = instance.branch_name
            if payload.clean:
                clean_branch = self._share_engine.create_clean_branch(instance)
                if not clean_branch.applied:
                    msg = f"iteration {instance.name} has no shareable commits"
                    raise PullRequestError(
                        msg, remedy="commit source changes outside the iteration files first"
                    )
                head = clean_branch.branch
                try:
                    self._git.push(self._project_path, "origin", head, set_upstream=True, force=True)
                except CommandError as exc:
                    logger.warning("could not push %s: %s", head, exc)

            instance.share_branch = head
            body = self._share_engine.render_body(share, instance, context)
            try:
                result = self._git.pr_create(
                    self._project_path,
                    title=share.title,
                    body=body,
                    base=instance.base_branch,
                    head=head,
                )
            except CommandError as exc:
                msg = f"could not open pull request: {exc}"
                raise PullRequestError(
                    msg, remedy="check `gh auth status` and that the branch was pushed"
                ) from exc

            instance.pull_request_url = _pull_request_url(result.output)
            instance.status = IterationStatus.SHARED
            self.registry.save(instance)
            logger.info("iteration %s shared: %s", instance.name, instance.pull_request_url)
            return ShareOutcome(
                instance=instance,
                pull_request_url=instance.pull_request_url,
                head_branch=head,
                gate=gate,
                clean_branch=clean_branch,
            )

    def _remove(self, name: str, force: bool) -> RemoveOutcome:
        registry = self.registry
        with registry.lock(name):
            instance = registry.load(name) or registry.load_mirror(name)
            if instance is None:
                raise _not_found(name)
            _check_transition(instance, IterationStatus.REMOVED)
            workspace = instance.workspace_path
            if (
                not force
                and workspace.exists()
                and self._provisioner.has_uncommitted_changes(workspace)
            ):
                msg = f"iteration {name} has uncommitted changes"
                raise UncommittedChangesError(
                    msg, remedy="commit or stash them first, or pass --force to discard them"
                )
            self._services.stop(self.context, instance)
            self._provisioner.remove_linked_tree(self._project_path, workspace)
            registry.delete(name)
            logger.info("iteration %s removed; branch %s kept", name, instance.branch_name)
            return RemoveOutcome(
                name=name,
                branch=instance.branch_name,
                cleanup_command=f"git branch -D {instance.branch_name}",
            )

    def _doctor(self) -> list[DivergenceReport]:
        registry = self.registry
        root = registry.workspace_root
        mirrored = set(registry.mirrored_names())
        local = {instance.name for instance in registry.list()}
        directories = (
            {entry.name for entry in root.iterdir() if entry.is_dir() and not entry.name.startswith(".")}
            if root.is_dir()
            else set()
        )
        try:
            trees = self._provisioner.list_linked_trees(self._project_path)
        except CommandError as exc:
            logger.warning("could not list linked trees: %s", exc)
            trees = []
        resolved_root = root.resolve()
        linked = {tree.path.name for tree in trees if tree.path.resolve().parent == resolved_root}

        reports: list[DivergenceReport] = []
        for name in sorted(mirrored - directories):
            reports.append(
                DivergenceReport(
                    name=name,
                    kind=DivergenceKind.MISSING_TREE,
                    detail=f"registry record exists but {root / name} is gone",
                    remedy=f"iterwork repair {name}",
                )
            )
        for name in sorted((mirrored & directories) - local):
            reports.append(
                DivergenceReport(
                    name=name,
                    kind=DivergenceKind.MISSING_REGISTRY,
                    detail=f"{root / name} has no {RECORD_FILENAME} record",
                    remedy=f"iterwork repair {name}",
                )
            )
        for name in sorted(local - mirrored):
            reports.append(
                DivergenceReport(
                    name=name,
                    kind=DivergenceKind.MISSING_MIRROR,
                    detail="registry mirror record is missing",
                    remedy=f"iterwork repair {name}",
                )
            )
        for name in sorted(directories - local - mirrored):
            kind = DivergenceKind.UNREGISTERED_WORKTREE if name in linked else DivergenceKind.ORPHAN_DIRECTORY
            reports.append(
                DivergenceReport(
                    name=name,
                    kind=kind,
                    detail=f"{root / name} is not tracked by the registry",
                    remedy=(
                        f"git worktree remove {root / name}"
                        if kind is DivergenceKind.UNREGISTERED_WORKTREE
                        else f"inspect and delete {root / name} by hand"
                    ),
                )
            )
        return reports

    def _repair(self, name: str) -> RepairOutcome:
        registry = self.registry
        outcome = RepairOutcome(name=name)
        with registry.lock(name):
            for report in self._doctor():
                if report.name != name:
                    continue
                if report.kind is DivergenceKind.MISSING_TREE:
                    registry.delete_mirror(name)
                    self._git.worktree_prune(self._project_path)
                    outcome.actions.append("dropped the registry record of the missing tree")
                elif report.kind is DivergenceKind.MISSING_REGISTRY:
                    mirror = registry.load_mirror(name)
                    if mirror is not None:
                        registry.restore_record(mirror)
                        outcome.actions.append("restored the tree-local record from the mirror")
                elif report.kind is DivergenceKind.MISSING_MIRROR:
                    instance = registry.load(name)
                    if instance is not None:
                        registry.save(instance)
                        outcome.actions.append("rewrote the registry mirror record")
                else:
                    outcome.actions.append(f"left {registry.workspace_for(name)} untouched: {report.remedy}")
        if not outcome.actions:
            outcome.actions.append("nothing to repair")
        return outcome

    def _update_progress(
        self,
        name: str,
        phase_id: str,
        task_id: str | None,
        status: WorkStatus | None,
        notes: str | None,
    ) -> IterationProgress:
        with self.registry.lock(name):
            instance = self._require(name)
            progress = self._progress.update(instance, phase_id, task_id, status, notes)
            self.registry.save(instance)
            return progress

    def _require(self, name: str) -> IterationInstance:
        instance = self.registry.load(name)
        if instance is None:
            raise _not_found(name, diverged=self.registry.mirror_path(name).exists())
        return instance

    async def _emit(self, instance: IterationInstance, event_type: EventType, payload: EventPayload) -> None:
        payload = {"status": instance.status.value, **payload}
        await self._append(instance.name, event_type, payload)

    async def _append(self, name: str, event_type: EventType, payload: EventPayload) -> None:
        context = await self.init()
        await self._store.append_event(
            IterationEvent(
                project_id=context.project_id,
                iteration=name,
                event_type=event_type,
                payload=payload,
            )
        )

    async def _record_failure(self, name: str, operation: str, exc: IterationError) -> None:
        if isinstance(exc, (InvalidIterationNameError, IterationNotFoundError)):
            return
        await self._append(
            name,
            EventType.ERROR,
            {"operation": operation, "error": exc.__class__.__name__, "message": str(exc)},
        )


def _validate_name(name: str) -> None:
    if not is_valid_iteration_name(name):
        msg = f"invalid iteration name {name!r}"
        raise InvalidIterationNameError(
            msg, remedy="use only lowercase letters, numbers, and hyphens"
        )


def _check_transition(instance: IterationInstance, target: IterationStatus) -> None:
    if not can_transition(instance.status, target):
        msg = f"cannot move iteration {instance.name} from {instance.status.value} to {target.value}"
        remedy = None
        if target is IterationStatus.SHARED and instance.status is IterationStatus.RUNNING:
            remedy = f"stop it first with `iterwork stop {instance.name}`"
        raise InvalidTransitionError(msg, remedy=remedy)


def _not_found(name: str, *, diverged: bool = False) -> IterationNotFoundError:
    if diverged:
        msg = f"iteration {name} is registered but its linked tree is missing"
        return IterationNotFoundError(msg, remedy=f"run `iterwork doctor`, then `iterwork repair {name}`")
    return IterationNotFoundError(f"iteration {name} not found", remedy="run `iterwork list`")


def _pull_request_url(output: str) -> str | None:
    for line in reversed(output.splitlines()):
        candidate = line.strip()
        if candidate.startswith(("https://", "http://")):
            return candidate
    return None
