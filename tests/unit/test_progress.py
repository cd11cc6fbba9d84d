from __future__ import annotations

from pathlib import Path

import pytest

from iterwork.core.hooks import DEFAULT_PLAN_TEMPLATE
from iterwork.core.progress import (
    STATUS_FILENAME,
    ProgressTracker,
    find_plan_document,
    parse_plan,
    progress_bar,
)
from iterwork.errors import ProgressItemNotFoundError
from iterwork.models.iteration import IterationInstance, WorkStatus

PLAN = """\
# Checkout flow

## Phase 1: Discovery (Day 1)
Understand the current checkout.
- [x] Read the old flow
- [ ] Map payment providers (critical) (3h)

## Phase 2: Build (Days 2-4)
### Wire the new API
  Replace the legacy endpoint.
- [ ] Polish the UI (low priority)
"""


def _instance(tmp_path: Path, plan: str | None = PLAN) -> IterationInstance:
    workspace = tmp_path / "checkout-flow"
    workspace.mkdir(exist_ok=True)
    if plan is not None:
        (workspace / "ITERATION_PLAN.md").write_text(plan, encoding="utf-8")
    return IterationInstance(
        name="checkout-flow",
        project_id="shop",
        project_path=tmp_path,
        branch_name="iteration/checkout-flow",
        workspace_path=workspace,
    )


def test_parse_plan_phases_and_tasks() -> None:
    phases = parse_plan(PLAN)

    assert [phase.id for phase in phases] == ["phase-1", "phase-2"]
    assert phases[0].estimated_days == 1
    assert phases[0].description == "Understand the current checkout."
    assert phases[1].estimated_days == 2

    discovery = phases[0].tasks
    assert [task.id for task in discovery] == ["task-1", "task-2"]
    assert discovery[0].status is WorkStatus.COMPLETED
    assert discovery[1].priority == "critical"
    assert discovery[1].estimated_hours == 3.0

    build = phases[1].tasks
    assert [task.name for task in build] == ["Wire the new API", "Polish the UI (low priority)"]
    assert build[0].description == "Replace the legacy endpoint."
    assert build[1].priority == "low"


def test_default_plan_template_yields_tasks() -> None:
    phases = parse_plan(DEFAULT_PLAN_TEMPLATE)
    planning = next(phase for phase in phases if phase.name.startswith("Phase 1"))
    assert planning.estimated_days == 1
    assert [task.name for task in planning.tasks] == ["Clarify requirements", "Outline the approach"]


def test_find_plan_document_prefers_iteration_specific_file(tmp_path: Path) -> None:
    (tmp_path / "README.md").write_text("# readme\n", encoding="utf-8")
    assert find_plan_document(tmp_path, "demo") == tmp_path / "README.md"
    (tmp_path / "DEMO_ITERATION_PLAN.md").write_text("# plan\n", encoding="utf-8")
    assert find_plan_document(tmp_path, "demo") == tmp_path / "DEMO_ITERATION_PLAN.md"


def test_initialize_computes_overall_progress(tmp_path: Path) -> None:
    instance = _instance(tmp_path)
    progress = ProgressTracker().initialize(instance)

    assert progress.source == "ITERATION_PLAN.md"
    assert progress.overall_progress == 25
    assert progress.current_phase == "phase-1"
    assert instance.progress is progress


def test_initialize_without_plan(tmp_path: Path) -> None:
    progress = ProgressTracker().initialize(_instance(tmp_path, plan=None))
    assert progress.phases == []
    assert progress.overall_progress == 0
    assert progress.current_phase is None


def test_update_task_and_phase(tmp_path: Path) -> None:
    instance = _instance(tmp_path)
    tracker = ProgressTracker()
    tracker.initialize(instance)

    tracker.update(instance, "phase-1", status=WorkStatus.IN_PROGRESS)
    progress = tracker.update(instance, "phase-1", "task-2", WorkStatus.COMPLETED, "providers mapped")

    assert progress.overall_progress == 50
    phase = progress.phases[0]
    assert phase.status is WorkStatus.IN_PROGRESS
    assert phase.started_at is not None
    assert phase.tasks[1].completed_at is not None
    assert phase.tasks[1].notes == ["providers mapped"]
    assert progress.current_phase == "phase-1"

    status_file = instance.workspace_path / STATUS_FILENAME
    assert status_file.is_file()
    assert "**Overall Progress**: 50%" in status_file.read_text(encoding="utf-8")


def test_blocked_update_records_blocker(tmp_path: Path) -> None:
    instance = _instance(tmp_path)
    tracker = ProgressTracker()
    tracker.initialize(instance)

    progress = tracker.update(instance, "phase-2", "task-3", WorkStatus.BLOCKED, "waiting on payments team")

    assert progress.blockers == ["waiting on payments team"]
    report = tracker.report(instance)
    assert "Blockers:" in report
    assert "[blocked] task-3 Wire the new API" in report


def test_update_unknown_items(tmp_path: Path) -> None:
    instance = _instance(tmp_path)
    tracker = ProgressTracker()
    tracker.initialize(instance)

    with pytest.raises(ProgressItemNotFoundError):
        tracker.update(instance, "phase-9")
    with pytest.raises(ProgressItemNotFoundError):
        tracker.update(instance, "phase-1", "task-99", WorkStatus.COMPLETED)


def test_report_without_tracking(tmp_path: Path) -> None:
    assert "No progress tracking" in ProgressTracker().report(_instance(tmp_path))


def test_progress_bar() -> None:
    assert progress_bar(50, width=10) == "[#####-----] 50%"
    assert progress_bar(0, width=4) == "[----] 0%"
