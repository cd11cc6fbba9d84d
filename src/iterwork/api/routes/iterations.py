"""Iteration routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, status

from iterwork.api.deps import get_iteration_manager
from iterwork.api.routes.common import http_error
from iterwork.api.schemas.iterations import (
    CreateIterationRequest,
    HealthProbeResponse,
    HealthResponse,
    IterationResponse,
    IterationsResponse,
    ProgressResponse,
    RemoveResponse,
    RepairResponse,
    ShareIterationRequest,
    ShareResponse,
    UpdateProgressRequest,
)
from iterwork.core.iteration_manager import (
    CreateIterationInput,
    IterationManager,
    ShareIterationInput,
)
from iterwork.errors import IterationError

router = APIRouter(prefix="/api/v1/iterations", tags=["iterations"])


@router.get("", response_model=IterationsResponse)
async def list_iterations(
    manager: IterationManager = Depends(get_iteration_manager),
) -> IterationsResponse:
    return IterationsResponse(items=await manager.list())


@router.post("", status_code=status.HTTP_201_CREATED, response_model=IterationResponse)
async def create_iteration(
    request: CreateIterationRequest,
    manager: IterationManager = Depends(get_iteration_manager),
) -> IterationResponse:
    try:
        instance = await manager.create(
            CreateIterationInput(
                name=request.name,
                from_branch=request.from_branch,
                description=request.description,
                ticket=request.ticket,
                auto_start=request.auto_start,
            )
        )
    except IterationError as exc:
        raise http_error(exc) from exc
    return IterationResponse(iteration=instance)


@router.get("/{name}", response_model=IterationResponse)
async def get_iteration(
    name: str, manager: IterationManager = Depends(get_iteration_manager)
) -> IterationResponse:
    try:
        return IterationResponse(iteration=await manager.get(name))
    except IterationError as exc:
        raise http_error(exc) from exc


@router.delete("/{name}", response_model=RemoveResponse)
async def remove_iteration(
    name: str,
    force: bool = False,
    manager: IterationManager = Depends(get_iteration_manager),
) -> RemoveResponse:
    try:
        outcome = await manager.remove(name, force=force)
    except IterationError as exc:
        raise http_error(exc) from exc
    return RemoveResponse(name=outcome.name, branch=outcome.branch, cleanup_command=outcome.cleanup_command)


@router.post("/{name}/start", response_model=IterationResponse)
async def start_iteration(
    name: str, manager: IterationManager = Depends(get_iteration_manager)
) -> IterationResponse:
    try:
        return IterationResponse(iteration=await manager.start(name))
    except IterationError as exc:
        raise http_error(exc) from exc


@router.post("/{name}/stop", response_model=IterationResponse)
async def stop_iteration(
    name: str, manager: IterationManager = Depends(get_iteration_manager)
) -> IterationResponse:
    try:
        return IterationResponse(iteration=await manager.stop(name))
    except IterationError as exc:
        raise http_error(exc) from exc


@router.post("/{name}/share", response_model=ShareResponse)
async def share_iteration(
    name: str,
    request: ShareIterationRequest,
    manager: IterationManager = Depends(get_iteration_manager),
) -> ShareResponse:
    try:
        outcome = await manager.share(
            ShareIterationInput(
                name=name,
                title=request.title,
                description=request.description,
                force=request.force,
                clean=request.clean,
            )
        )
    except IterationError as exc:
        raise http_error(exc) from exc
    clean = outcome.clean_branch
    return ShareResponse(
        iteration=outcome.instance,
        pull_request_url=outcome.pull_request_url,
        head_branch=outcome.head_branch,
        quality_gate_passed=outcome.gate.passed,
        commits_applied=len(clean.applied) if clean else 0,
        commits_skipped=len(clean.skipped) if clean else 0,
    )


@router.get("/{name}/progress", response_model=ProgressResponse)
async def get_progress(
    name: str, manager: IterationManager = Depends(get_iteration_manager)
) -> ProgressResponse:
    try:
        instance = await manager.get(name)
        report = await manager.progress_report(name)
    except IterationError as exc:
        raise http_error(exc) from exc
    return ProgressResponse(progress=instance.progress, report=report)


@router.patch("/{name}/progress", response_model=ProgressResponse)
async def update_progress(
    name: str,
    request: UpdateProgressRequest,
    manager: IterationManager = Depends(get_iteration_manager),
) -> ProgressResponse:
    try:
        progress = await manager.update_progress(
            name,
            request.phase_id,
            task_id=request.task_id,
            status=request.status,
            notes=request.notes,
        )
        report = await manager.progress_report(name)
    except IterationError as exc:
        raise http_error(exc) from exc
    return ProgressResponse(progress=progress, report=report)


@router.get("/{name}/health", response_model=HealthResponse)
async def iteration_health(
    name: str, manager: IterationManager = Depends(get_iteration_manager)
) -> HealthResponse:
    try:
        probes = await manager.health(name)
    except IterationError as exc:
        raise http_error(exc) from exc
    return HealthResponse(
        items=[
            HealthProbeResponse(
                service=probe.service,
                healthy=probe.healthy,
                probe=probe.probe,
                reason=probe.reason,
                http_status=probe.http_status,
            )
            for probe in probes
        ]
    )


@router.post("/{name}/repair", response_model=RepairResponse)
async def repair_iteration(
    name: str, manager: IterationManager = Depends(get_iteration_manager)
) -> RepairResponse:
    try:
        outcome = await manager.repair(name)
    except IterationError as exc:
        raise http_error(exc) from exc
    return RepairResponse(name=outcome.name, actions=outcome.actions)
