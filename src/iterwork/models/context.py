"""Project context domain models."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class DatabaseKind(str, Enum):
    """Relational engines an iteration can provision a schema on."""

    POSTGRESQL = "postgresql"
    MYSQL = "mysql"
    MONGODB = "mongodb"
    NONE = "none"


class ProjectFingerprint(BaseModel):
    """Signals used to match a checkout against stored contexts."""

    git_remote: str | None = None
    manifest: dict[str, Any] | None = None
    docker_compose: bool = False
    directories: list[str] = Field(default_factory=list)
    frameworks: list[str] = Field(default_factory=list)
    custom_markers: list[str] = Field(default_factory=list)
    file_patterns: dict[str, bool] = Field(default_factory=dict)


class ServiceConfig(BaseModel):
    """One long-running service of the project."""

    kind: str = "generic"
    base_port: int = Field(ge=1, le=65535)
    command: str
    directory: str | None = None
    build_command: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    dependencies: list[str] = Field(default_factory=list)
    health_path: str | None = None


class MigrationConfig(BaseModel):
    enabled: bool = True
    tool: str = "flyway"
    path: str = "db/migrations"
    command: str | None = None


class SeedConfig(BaseModel):
    commands: dict[str, str] = Field(default_factory=dict)
    default_seed: str | None = None


class DatabaseConfig(BaseModel):
    """Database topology and the per-iteration schema naming rule."""

    kind: DatabaseKind = DatabaseKind.NONE
    base_port: int = Field(default=5432, ge=1, le=65535)
    schema_template: str = ""
    service_name: str = "postgres"
    user: str = "postgres"
    database_name: str = "app"
    migrations: MigrationConfig | None = None
    seeding: SeedConfig | None = None
    readiness_command: list[str] | None = None


class IterationDefaults(BaseModel):
    """Where iterations live and how they are bootstrapped."""

    workspace_path: str = ".iterations"
    branch_prefix: str = "iteration/"
    auto_seed: bool = False
    auto_install: bool = True
    install_command: str | None = None
    pr_template: str | None = None


class CustomHooks(BaseModel):
    """Project-specific shell commands run around lifecycle steps."""

    post_create: str | None = None
    pre_start: str | None = None
    stop: str | None = None
    pre_share: list[str] = Field(default_factory=list)


class ContextMetadata(BaseModel):
    created: datetime = Field(default_factory=lambda: datetime.now(UTC))
    last_used: datetime = Field(default_factory=lambda: datetime.now(UTC))
    usage_count: int = 0
    description: str | None = None


class ProjectContext(BaseModel):
    """Identity and service topology of one project."""

    project_id: str
    name: str
    version: str = "1.0.0"
    fingerprint: ProjectFingerprint = Field(default_factory=ProjectFingerprint)
    services: dict[str, ServiceConfig] = Field(default_factory=dict)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    iteration: IterationDefaults = Field(default_factory=IterationDefaults)
    hooks: CustomHooks = Field(default_factory=CustomHooks)
    metadata: ContextMetadata = Field(default_factory=ContextMetadata)

    @property
    def has_database(self) -> bool:
        return self.database.kind is not DatabaseKind.NONE

    def touch(self) -> None:
        """Record one more use of this context."""
        self.metadata.last_used = datetime.now(UTC)
        self.metadata.usage_count += 1
