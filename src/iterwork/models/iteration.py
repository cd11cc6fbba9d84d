"""Iteration domain models."""

from __future__ import annotations

import re
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

ITERATION_NAME_PATTERN = re.compile(r"^[a-z0-9-]+$")


class IterationStatus(str, Enum):
    """Lifecycle status for an iteration."""

    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"
    SHARED = "shared"
    REMOVED = "removed"


ALLOWED_TRANSITIONS: dict[IterationStatus, frozenset[IterationStatus]] = {
    IterationStatus.CREATED: frozenset({IterationStatus.RUNNING, IterationStatus.REMOVED}),
    IterationStatus.RUNNING: frozenset(
        {
            IterationStatus.RUNNING,
            IterationStatus.STOPPED,
            IterationStatus.REMOVED,
        }
    ),
    IterationStatus.STOPPED: frozenset(
        {
            IterationStatus.RUNNING,
            IterationStatus.STOPPED,
            IterationStatus.SHARED,
            IterationStatus.REMOVED,
        }
    ),
    IterationStatus.SHARED: frozenset({IterationStatus.REMOVED}),
    IterationStatus.REMOVED: frozenset(),
}


def can_transition(current: IterationStatus, target: IterationStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def is_valid_iteration_name(name: str) -> bool:
    return bool(ITERATION_NAME_PATTERN.fullmatch(name))


class WorkStatus(str, Enum):
    """Status of a planned phase or task."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"


class ProgressTask(BaseModel):
    id: str
    name: str
    description: str = ""
    status: WorkStatus = WorkStatus.PENDING
    priority: str = "medium"
    estimated_hours: float | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    notes: list[str] = Field(default_factory=list)


class ProgressPhase(BaseModel):
    id: str
    name: str
    description: str = ""
    status: WorkStatus = WorkStatus.PENDING
    estimated_days: int | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    tasks: list[ProgressTask] = Field(default_factory=list)
    notes: list[str] = Field(default_factory=list)

    @property
    def actual_days(self) -> float | None:
        if self.started_at is None or self.completed_at is None:
            return None
        return round((self.completed_at - self.started_at).total_seconds() / 86400, 1)


class IterationProgress(BaseModel):
    """Phase/task breakdown parsed from a planning document."""

    source: str | None = None
    current_phase: str | None = None
    overall_progress: int = 0
    phases: list[ProgressPhase] = Field(default_factory=list)
    blockers: list[str] = Field(default_factory=list)
    last_updated: datetime = Field(default_factory=lambda: datetime.now(UTC))


class ServiceAllocation(BaseModel):
    kind: str = "generic"
    base_port: int
    actual_port: int
    command: str = ""


class DatabaseAllocation(BaseModel):
    kind: str
    base_port: int
    actual_port: int
    schema_name: str


class IterationInstance(BaseModel):
    """One isolated, branch-backed development environment."""

    name: str
    project_id: str
    project_path: Path
    branch_name: str
    workspace_path: Path
    base_branch: str = "main"
    description: str | None = None
    ticket: str | None = None
    allocated_services: dict[str, ServiceAllocation] = Field(default_factory=dict)
    allocated_database: DatabaseAllocation | None = None
    status: IterationStatus = IterationStatus.CREATED
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    last_started_at: datetime | None = None
    pull_request_url: str | None = None
    share_branch: str | None = None
    progress: IterationProgress | None = None

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        if not is_valid_iteration_name(value):
            msg = "name must contain only lowercase letters, numbers, and hyphens"
            raise ValueError(msg)
        return value

    def ports(self) -> list[int]:
        ports = [service.actual_port for service in self.allocated_services.values()]
        if self.allocated_database is not None:
            ports.append(self.allocated_database.actual_port)
        return ports
