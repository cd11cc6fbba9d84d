"""Event models for the iteration audit log."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Event categories emitted by lifecycle operations."""

    ITERATION_CREATED = "iteration.created"
    ITERATION_STARTED = "iteration.started"
    ITERATION_STOPPED = "iteration.stopped"
    ITERATION_SHARED = "iteration.shared"
    ITERATION_REMOVED = "iteration.removed"
    ITERATION_REPAIRED = "iteration.repaired"
    PROGRESS_UPDATED = "progress.updated"
    QUALITY_GATE_FAILED = "quality_gate.failed"
    ERROR = "error"


class IterationEvent(BaseModel):
    """Append-only event emitted by a lifecycle operation."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    project_id: str
    iteration: str
    event_type: EventType
    payload: dict[str, str | int | float | bool | None] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
