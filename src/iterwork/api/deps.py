"""Shared API dependency providers."""

from __future__ import annotations

from fastapi import Depends, Request

from iterwork.core.iteration_manager import IterationManager
from iterwork.db.store import SQLiteStore
from iterwork.settings import Settings


def get_settings() -> Settings:
    return Settings.from_env()


def get_store(settings: Settings = Depends(get_settings)) -> SQLiteStore:
    return SQLiteStore(db_path=settings.event_db_path)


def get_iteration_manager(
    request: Request,
    settings: Settings = Depends(get_settings),
    store: SQLiteStore = Depends(get_store),
) -> IterationManager:
    return IterationManager(request.app.state.project_path, settings=settings, store=store)
