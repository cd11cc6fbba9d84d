"""Phase and task progress parsed from an iteration's planning document."""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime
from pathlib import Path

from iterwork.errors import ProgressItemNotFoundError
from iterwork.models.iteration import (
    IterationInstance,
    IterationProgress,
    ProgressPhase,
    ProgressTask,
    WorkStatus,
)

logger = logging.getLogger(__name__)

STATUS_FILENAME = "ITERATION_STATUS.md"
PLAN_CANDIDATES = ("ITERATION_PLAN.md", "IMPLEMENTATION_PLAN.md", "README.md")

_PHASE_PATTERN = re.compile(r"^##\s+(.+?)$")
_OPEN_TASK_PATTERN = re.compile(r"^[-*]\s*\[\s*\]\s*(.+)$")
_DONE_TASK_PATTERN = re.compile(r"^[-*]\s*\[[xX]\]\s*(.+)$")
_HEADING_TASK_PATTERN = re.compile(r"^###\s+(.+)$")
_DAYS_PATTERN = re.compile(r"\(Days?\s+(\d+)(?:[-–](\d+))?\)", re.IGNORECASE)
_HOURS_PATTERN = re.compile(r"\((\d+\.?\d*)\s*h(?:ours?)?\)", re.IGNORECASE)

_MARKERS = {
    WorkStatus.COMPLETED: "[done]",
    WorkStatus.IN_PROGRESS: "[active]",
    WorkStatus.BLOCKED: "[blocked]",
    WorkStatus.PENDING: "[pending]",
}


def find_plan_document(workspace: Path, name: str) -> Path | None:
    """First existing plan file, iteration-specific name first."""
    for filename in (f"{name.upper()}_ITERATION_PLAN.md", *PLAN_CANDIDATES):
        path = workspace / filename
        if path.is_file():
            return path
    return None


def parse_plan(content: str) -> list[ProgressPhase]:
    phases: list[ProgressPhase] = []
    lines = content.splitlines()
    task_counter = 0
    for index, raw in enumerate(lines):
        line = raw.strip()
        phase_match = _PHASE_PATTERN.match(line)
        if phase_match:
            name = phase_match.group(1)
            days = _DAYS_PATTERN.search(name)
            phases.append(
                ProgressPhase(
                    id=f"phase-{len(phases) + 1}",
                    name=name,
                    description=_phase_description(lines, index),
                    estimated_days=int(days.group(1)) if days else None,
                )
            )
            continue
        if not phases:
            continue

        status = WorkStatus.PENDING
        task_match = _OPEN_TASK_PATTERN.match(line) or _HEADING_TASK_PATTERN.match(line)
        if task_match is None:
            task_match = _DONE_TASK_PATTERN.match(line)
            status = WorkStatus.COMPLETED
        if task_match is None:
            continue
        task_counter += 1
        name = task_match.group(1)
        hours = _HOURS_PATTERN.search(name)
        phases[-1].tasks.append(
            ProgressTask(
                id=f"task-{task_counter}",
                name=name,
                description=_task_description(lines, index),
                status=status,
                priority=_priority(name),
                estimated_hours=float(hours.group(1)) if hours else None,
            )
        )
    return phases


class ProgressTracker:
    """Track and report progress against the iteration's plan document."""

    def initialize(self, instance: IterationInstance) -> IterationProgress:
        progress = IterationProgress()
        plan = find_plan_document(instance.workspace_path, instance.name)
        if plan is not None:
            progress.source = plan.name
            progress.phases = parse_plan(plan.read_text(encoding="utf-8"))
            logger.info("tracking %d phase(s) from %s", len(progress.phases), plan.name)
        _recalculate(progress)
        instance.progress = progress
        return progress

    def update(
        self,
        instance: IterationInstance,
        phase_id: str,
        task_id: str | None = None,
        status: WorkStatus | None = None,
        notes: str | None = None,
    ) -> IterationProgress:
        progress = instance.progress or self.initialize(instance)
        phase = next((item for item in progress.phases if item.id == phase_id), None)
        if phase is None:
            msg = f"phase {phase_id} not found in iteration {instance.name}"
            raise ProgressItemNotFoundError(msg, remedy=f"run `iterwork progress {instance.name}` to list phases")

        now = datetime.now(UTC)
        if task_id is not None:
            task = next((item for item in phase.tasks if item.id == task_id), None)
            if task is None:
                msg = f"task {task_id} not found in {phase_id}"
                raise ProgressItemNotFoundError(msg)
            if status is not None:
                _apply_status(task, status, now)
            if notes:
                task.notes.append(notes)
        else:
            if status is not None:
                _apply_status(phase, status, now)
            if notes:
                phase.notes.append(notes)

        if status is WorkStatus.BLOCKED and notes:
            progress.blockers.append(notes)
        _recalculate(progress)
        progress.last_updated = now
        self.write_status(instance)
        return progress

    def report(self, instance: IterationInstance) -> str:
        progress = instance.progress
        if progress is None:
            return "No progress tracking initialized for this iteration."
        lines = [
            f"Progress Report: {instance.name}",
            f"Last Updated: {progress.last_updated:%Y-%m-%d %H:%M}",
            "",
            f"Overall Progress: {progress.overall_progress}%",
            progress_bar(progress.overall_progress),
            "",
        ]
        current = _phase_by_id(progress, progress.current_phase)
        if current is not None:
            lines.extend([f"Current Phase: {current.name}", ""])
        lines.append("Phases:")
        for phase in progress.phases:
            lines.append(f"  {_MARKERS[phase.status]} {phase.id} {phase.name} {task_summary(phase)}")
            for task in phase.tasks:
                lines.append(f"      {_MARKERS[task.status]} {task.id} {task.name}")
        if progress.blockers:
            lines.extend(["", "Blockers:", *(f"  - {blocker}" for blocker in progress.blockers)])
        return "\n".join(lines)

    def status_markdown(self, instance: IterationInstance) -> str:
        progress = instance.progress or IterationProgress()
        lines = [
            f"# {instance.name} - Progress Status",
            "",
            f"**Last Updated**: {progress.last_updated:%Y-%m-%d %H:%M}",
            f"**Overall Progress**: {progress.overall_progress}%",
        ]
        current = _phase_by_id(progress, progress.current_phase)
        if current is not None:
            lines.append(f"**Current Phase**: {current.name}")
        lines.extend(["", "## Progress Overview", ""])
        for phase in progress.phases:
            lines.append(f"### {_MARKERS[phase.status]} {phase.name}")
            if phase.description:
                lines.append(phase.description)
            lines.append(f"**Tasks**: {task_summary(phase)}")
            if phase.estimated_days:
                lines.append(f"**Estimated**: {phase.estimated_days} days")
            if phase.actual_days is not None:
                lines.append(f"**Actual**: {phase.actual_days} days")
            if phase.tasks:
                lines.extend(["", "**Task Details:**"])
                lines.extend(f"- {_MARKERS[task.status]} {task.name}" for task in phase.tasks)
            lines.append("")
        return "\n".join(lines)

    def write_status(self, instance: IterationInstance) -> Path | None:
        if not instance.workspace_path.is_dir():
            return None
        path = instance.workspace_path / STATUS_FILENAME
        path.write_text(self.status_markdown(instance), encoding="utf-8")
        return path


def progress_bar(percent: int, width: int = 30) -> str:
    filled = round(width * percent / 100)
    return f"[{'#' * filled}{'-' * (width - filled)}] {percent}%"


def task_summary(phase: ProgressPhase) -> str:
    total = len(phase.tasks)
    if total == 0:
        return "(No tasks defined)"
    completed = sum(1 for task in phase.tasks if task.status is WorkStatus.COMPLETED)
    in_progress = sum(1 for task in phase.tasks if task.status is WorkStatus.IN_PROGRESS)
    suffix = f", {in_progress} in progress" if in_progress else ""
    return f"({completed}/{total} completed{suffix})"


def _apply_status(item: ProgressPhase | ProgressTask, status: WorkStatus, now: datetime) -> None:
    previous = item.status
    item.status = status
    if status is WorkStatus.IN_PROGRESS and previous is WorkStatus.PENDING:
        item.started_at = now
    elif status is WorkStatus.COMPLETED and previous is not WorkStatus.COMPLETED:
        item.completed_at = now


def _recalculate(progress: IterationProgress) -> None:
    tasks = [task for phase in progress.phases for task in phase.tasks]
    completed = sum(1 for task in tasks if task.status is WorkStatus.COMPLETED)
    progress.overall_progress = round(completed / len(tasks) * 100) if tasks else 0
    active = next((phase for phase in progress.phases if phase.status is WorkStatus.IN_PROGRESS), None)
    if active is None:
        active = next((phase for phase in progress.phases if phase.status is WorkStatus.PENDING), None)
    progress.current_phase = active.id if active is not None else None


def _phase_by_id(progress: IterationProgress, phase_id: str | None) -> ProgressPhase | None:
    if phase_id is None:
        return None
    return next((phase for phase in progress.phases if phase.id == phase_id), None)


def _phase_description(lines: list[str], start: int) -> str:
    for line in lines[start + 1 : start + 5]:
        stripped = line.strip()
        if stripped and not stripped.startswith(("#", "-", "*")):
            return stripped
    return ""


def _task_description(lines: list[str], start: int) -> str:
    for line in lines[start + 1 : start + 3]:
        if line.startswith("  ") and line.strip():
            return line.strip()
    return ""


def _priority(name: str) -> str:
    text = name.lower()
    if "critical" in text or "urgent" in text:
        return "critical"
    if "high" in text or "important" in text:
        return "high"
    if "low" in text or "optional" in text:
        return "low"
    return "medium"
