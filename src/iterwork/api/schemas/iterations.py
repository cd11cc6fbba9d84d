"""Iteration API schemas."""

from __future__ import annotations

from pydantic import BaseModel, Field

from iterwork.models.iteration import IterationInstance, IterationProgress, WorkStatus


class CreateIterationRequest(BaseModel):
    """Payload for creating an iteration."""

    name: str
    from_branch: str | None = None
    description: str | None = None
    ticket: str | None = None
    auto_start: bool = False


class ShareIterationRequest(BaseModel):
    """Payload for sharing an iteration as a pull request."""

    title: str | None = None
    description: str | None = None
    force: bool = False
    clean: bool = True


class UpdateProgressRequest(BaseModel):
    phase_id: str
    task_id: str | None = None
    status: WorkStatus | None = None
    notes: str | None = None


class IterationResponse(BaseModel):
    iteration: IterationInstance


class IterationsResponse(BaseModel):
    """Collection response for iterations."""

    items: list[IterationInstance]


class ShareResponse(BaseModel):
    iteration: IterationInstance
    pull_request_url: str | None
    head_branch: str
    quality_gate_passed: bool
    commits_applied: int = 0
    commits_skipped: int = 0


class RemoveResponse(BaseModel):
    name: str
    branch: str
    cleanup_command: str


class ProgressResponse(BaseModel):
    progress: IterationProgress | None
    report: str


class HealthProbeResponse(BaseModel):
    service: str
    healthy: bool
    probe: str
    reason: str
    http_status: int | None = None


class HealthResponse(BaseModel):
    items: list[HealthProbeResponse] = Field(default_factory=list)


class DivergenceResponse(BaseModel):
    name: str
    kind: str
    detail: str
    remedy: str


class DoctorResponse(BaseModel):
    items: list[DivergenceResponse]


class RepairResponse(BaseModel):
    name: str
    actions: list[str]
