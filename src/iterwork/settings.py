from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class Settings:
    """Runtime settings loaded from environment with fail-fast validation."""

    config_dir: str = ""
    base_branch: str = "main"
    command_timeout_seconds: float = 600.0
    git_timeout_seconds: float = 60.0
    lock_timeout_seconds: float = 10.0
    readiness_attempts: int = 30
    readiness_interval_seconds: float = 1.0
    event_db: str = ""

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            config_dir=os.getenv("ITERWORK_CONFIG_DIR", ""),
            base_branch=os.getenv("ITERWORK_BASE_BRANCH", "main"),
            command_timeout_seconds=_get_env_float("ITERWORK_COMMAND_TIMEOUT", default=600.0, minimum=1.0),
            git_timeout_seconds=_get_env_float("ITERWORK_GIT_TIMEOUT", default=60.0, minimum=1.0),
            lock_timeout_seconds=_get_env_float("ITERWORK_LOCK_TIMEOUT", default=10.0, minimum=0.0),
            readiness_attempts=_get_env_int("ITERWORK_READINESS_ATTEMPTS", default=30, minimum=1),
            readiness_interval_seconds=_get_env_float(
                "ITERWORK_READINESS_INTERVAL", default=1.0, minimum=0.0
            ),
            event_db=os.getenv("ITERWORK_EVENT_DB", ""),
        ).normalized()

    @property
    def config_path(self) -> Path:
        """Return the configuration directory, defaulting to ``~/.iterwork``."""
        return Path(self.config_dir).expanduser() if self.config_dir else Path.home() / ".iterwork"

    @property
    def contexts_path(self) -> Path:
        return self.config_path / "contexts"

    @property
    def registry_path(self) -> Path:
        return self.config_path / "registry"

    @property
    def locks_path(self) -> Path:
        return self.config_path / "locks"

    @property
    def event_db_path(self) -> Path:
        return Path(self.event_db).expanduser() if self.event_db else self.config_path / "events.db"

    def normalized(self) -> "Settings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        base_branch = self.base_branch.strip()
        if not base_branch:
            raise ValueError("ITERWORK_BASE_BRANCH must be non-empty")
        if self.readiness_attempts > 10_000:
            raise ValueError(
                f"ITERWORK_READINESS_ATTEMPTS must be <= 10000, got: {self.readiness_attempts}"
            )
        return Settings(
            config_dir=self.config_dir.strip(),
            base_branch=base_branch,
            command_timeout_seconds=self.command_timeout_seconds,
            git_timeout_seconds=self.git_timeout_seconds,
            lock_timeout_seconds=self.lock_timeout_seconds,
            readiness_attempts=self.readiness_attempts,
            readiness_interval_seconds=self.readiness_interval_seconds,
            event_db=self.event_db.strip(),
        )


def _get_env_int(name: str, *, default: int, minimum: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    return value


def _get_env_float(name: str, *, default: float, minimum: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    return value
