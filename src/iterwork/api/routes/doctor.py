"""Registry consistency routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from iterwork.api.deps import get_iteration_manager
from iterwork.api.routes.common import http_error
from iterwork.api.schemas.iterations import DivergenceResponse, DoctorResponse
from iterwork.core.iteration_manager import IterationManager
from iterwork.errors import IterationError

router = APIRouter(prefix="/api/v1/doctor", tags=["doctor"])


@router.get("", response_model=DoctorResponse)
async def doctor(manager: IterationManager = Depends(get_iteration_manager)) -> DoctorResponse:
    try:
        reports = await manager.doctor()
    except IterationError as exc:
        raise http_error(exc) from exc
    return DoctorResponse(
        items=[
            DivergenceResponse(
                name=report.name,
                kind=report.kind.value,
                detail=report.detail,
                remedy=report.remedy,
            )
            for report in reports
        ]
    )
