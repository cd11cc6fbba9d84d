"""FastAPI app entrypoint."""

from __future__ import annotations

from pathlib import Path

import uvicorn
from fastapi import FastAPI

from iterwork.api.routes.doctor import router as doctor_router
from iterwork.api.routes.events import router as events_router
from iterwork.api.routes.iterations import router as iterations_router


def create_app(project_path: Path | None = None) -> FastAPI:
    app = FastAPI(title="iterwork API", version="0.1.0")
    app.state.project_path = project_path or Path.cwd()
    app.include_router(iterations_router)
    app.include_router(doctor_router)
    app.include_router(events_router)

    @app.get("/api/v1/health", tags=["system"])
    async def health() -> dict[str, str]:
        return {"status": "ok", "project": str(app.state.project_path)}

    return app


def run(project_path: Path | None = None, host: str = "127.0.0.1", port: int = 8000) -> None:
    uvicorn.run(create_app(project_path), host=host, port=port, reload=False)
