"""Project context detection and matching."""

from __future__ import annotations

import json
import logging
import re
import tomllib
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from iterwork.core.git_manager import GitManager
from iterwork.models.context import (
    DatabaseConfig,
    DatabaseKind,
    IterationDefaults,
    ProjectContext,
    ProjectFingerprint,
    ServiceConfig,
)

logger = logging.getLogger(__name__)

MARKER_FILES = (
    "CLAUDE.md",
    "README.md",
    "Justfile",
    ".pre-commit-config.yaml",
    "bunfig.toml",
    "bun.lock",
    "pyproject.toml",
)
MARKER_DIRS = (
    "db/migrations",
    "packages/frontend",
    "packages/backend",
    "packages/shared",
    "terraform",
)
PATTERN_FILES = (
    "package.json",
    "pyproject.toml",
    "tsconfig.json",
    "docker-compose.yml",
    "Dockerfile",
    ".eslintrc.js",
    ".prettierrc",
    "jest.config.js",
    "playwright.config.ts",
)
MARKER_THRESHOLD = 0.7
DIRECTORY_THRESHOLD = 0.8

_FRAMEWORK_DEPENDENCIES = {
    "react": "react",
    "vite": "vite",
    "express": "express",
    "fastify": "fastify",
    "next": "nextjs",
    "pg": "postgresql",
    "pg-promise": "postgresql",
    "mysql2": "mysql",
    "mongodb": "mongodb",
    "typescript": "typescript",
    "jest": "jest",
    "vitest": "vitest",
    "@playwright/test": "playwright",
    "fastapi": "fastapi",
    "django": "django",
    "flask": "flask",
    "psycopg": "postgresql",
    "psycopg2": "postgresql",
    "asyncpg": "postgresql",
    "pytest": "pytest",
}


class ContextResolver:
    """Resolve the stored or inferred ``ProjectContext`` for a checkout."""

    def __init__(self, contexts_path: Path, git: GitManager) -> None:
        self._contexts_path = contexts_path
        self._git = git

    def resolve(self, project_path: Path) -> ProjectContext:
        fingerprint = self.fingerprint(project_path)
        context = self.match(fingerprint)
        if context is not None:
            logger.info("matched stored project context %s", context.project_id)
        else:
            context = self.synthesize(project_path, fingerprint)
            logger.info("built new project context %s", context.project_id)
        context.touch()
        self.save(context)
        return context

    def fingerprint(self, project_path: Path) -> ProjectFingerprint:
        manifest = _read_manifest(project_path)
        directories = _directory_structure(project_path)
        docker_compose = (project_path / "docker-compose.yml").exists() or (
            project_path / "docker-compose.yaml"
        ).exists()
        markers = [name for name in MARKER_FILES if (project_path / name).exists()]
        markers.extend(f"dir:{name}" for name in MARKER_DIRS if (project_path / name).is_dir())
        fingerprint = ProjectFingerprint(
            git_remote=self._git.remote_url(project_path),
            manifest=manifest,
            docker_compose=docker_compose,
            directories=directories,
            custom_markers=sorted(markers),
            file_patterns={name: (project_path / name).exists() for name in PATTERN_FILES},
        )
        fingerprint.frameworks = _detect_frameworks(fingerprint)
        return fingerprint

    def stored_contexts(self) -> list[ProjectContext]:
        if not self._contexts_path.is_dir():
            return []
        contexts: list[ProjectContext] = []
        for path in sorted(self._contexts_path.glob("*.json")):
            try:
                contexts.append(ProjectContext.model_validate_json(path.read_text(encoding="utf-8")))
            except (OSError, ValueError, ValidationError) as exc:
                logger.warning("skipping malformed project context %s: %s", path, exc)
        return contexts

    def match(self, fingerprint: ProjectFingerprint) -> ProjectContext | None:
        contexts = self.stored_contexts()
        # Rules are tried in priority order across all contexts; the first hit wins.
        for rule in (_match_remote, _match_manifest, _match_markers, _match_directories):
            for context in contexts:
                if rule(fingerprint, context.fingerprint):
                    return context
        return None

    def synthesize(self, project_path: Path, fingerprint: ProjectFingerprint) -> ProjectContext:
        name = project_path.resolve().name
        return ProjectContext(
            project_id=f"custom-{_slug(name)}",
            name=name,
            fingerprint=fingerprint,
            services={
                "main": ServiceConfig(
                    kind="generic",
                    base_port=3000,
                    command=_detect_start_command(fingerprint.manifest, project_path),
                )
            },
            database=DatabaseConfig(kind=DatabaseKind.NONE),
            iteration=IterationDefaults(),
        )

    def save(self, context: ProjectContext) -> Path:
        self._contexts_path.mkdir(parents=True, exist_ok=True)
        path = self._contexts_path / f"{context.project_id}.json"
        path.write_text(context.model_dump_json(indent=2), encoding="utf-8")
        return path


def match_remote_pattern(actual: str, pattern: str) -> bool:
    """Case-insensitive match with ``*`` and ``?`` wildcards."""
    if actual.lower() == pattern.lower():
        return True
    regex = "".join(
        ".*" if char == "*" else "." if char == "?" else re.escape(char) for char in pattern
    )
    return re.fullmatch(regex, actual, flags=re.IGNORECASE) is not None


def _match_remote(actual: ProjectFingerprint, stored: ProjectFingerprint) -> bool:
    if not actual.git_remote or not stored.git_remote:
        return False
    return match_remote_pattern(actual.git_remote, stored.git_remote)


def _match_manifest(actual: ProjectFingerprint, stored: ProjectFingerprint) -> bool:
    if not actual.manifest or not stored.manifest:
        return False
    stored_workspaces = stored.manifest.get("workspaces")
    actual_workspaces = actual.manifest.get("workspaces")
    if stored_workspaces and actual_workspaces:
        return bool(stored_workspaces == actual_workspaces)
    stored_dependencies = stored.manifest.get("dependencies") or []
    if stored_dependencies and not stored_workspaces:
        actual_dependencies = set(actual.manifest.get("dependencies") or [])
        return all(dependency in actual_dependencies for dependency in stored_dependencies)
    return False


def _match_markers(actual: ProjectFingerprint, stored: ProjectFingerprint) -> bool:
    if not stored.custom_markers:
        return False
    overlap = sum(1 for marker in stored.custom_markers if marker in actual.custom_markers)
    return overlap / len(stored.custom_markers) >= MARKER_THRESHOLD


def _match_directories(actual: ProjectFingerprint, stored: ProjectFingerprint) -> bool:
    if not stored.directories:
        return False
    overlap = sum(1 for directory in stored.directories if directory in actual.directories)
    return overlap / len(stored.directories) >= DIRECTORY_THRESHOLD


def _read_manifest(project_path: Path) -> dict[str, Any] | None:
    """Reduce ``package.json`` or ``pyproject.toml`` to name, dependencies, workspaces, scripts."""
    package_json = project_path / "package.json"
    if package_json.is_file():
        try:
            data = json.loads(package_json.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("ignoring unreadable package.json: %s", exc)
            return None
        dependencies = sorted(
            {**(data.get("dependencies") or {}), **(data.get("devDependencies") or {})}
        )
        workspaces = data.get("workspaces")
        if isinstance(workspaces, dict):
            workspaces = workspaces.get("packages")
        return {
            "kind": "package.json",
            "name": data.get("name"),
            "dependencies": dependencies,
            "workspaces": workspaces,
            "scripts": sorted((data.get("scripts") or {}).keys()),
        }

    pyproject = project_path / "pyproject.toml"
    if pyproject.is_file():
        try:
            data = tomllib.loads(pyproject.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("ignoring unreadable pyproject.toml: %s", exc)
            return None
        project = data.get("project") or {}
        dependencies = sorted(
            {
                re.split(r"[\s<>=!~;\[]", requirement, maxsplit=1)[0].lower()
                for requirement in project.get("dependencies") or []
                if requirement.strip()
            }
        )
        workspace = ((data.get("tool") or {}).get("uv") or {}).get("workspace") or {}
        return {
            "kind": "pyproject.toml",
            "name": project.get("name"),
            "dependencies": dependencies,
            "workspaces": workspace.get("members"),
            "scripts": sorted((project.get("scripts") or {}).keys()),
        }
    return None


def _directory_structure(project_path: Path) -> list[str]:
    """Directories up to two levels deep, hidden ones skipped except ``.github``."""
    directories: list[str] = []
    try:
        entries = list(project_path.iterdir())
    except OSError:
        return directories
    for entry in entries:
        if entry.name.startswith(".") and entry.name != ".github":
            continue
        if not entry.is_dir():
            continue
        directories.append(entry.name)
        try:
            children = list(entry.iterdir())
        except OSError:
            continue
        directories.extend(
            f"{entry.name}/{child.name}"
            for child in children
            if child.is_dir() and not child.name.startswith(".")
        )
    return sorted(directories)


def _detect_frameworks(fingerprint: ProjectFingerprint) -> list[str]:
    frameworks: set[str] = set()
    if fingerprint.manifest:
        for dependency in fingerprint.manifest.get("dependencies") or []:
            framework = _FRAMEWORK_DEPENDENCIES.get(dependency)
            if framework:
                frameworks.add(framework)
    if fingerprint.docker_compose:
        frameworks.add("docker")
    if fingerprint.file_patterns.get("tsconfig.json"):
        frameworks.add("typescript")
    if "packages" in fingerprint.directories:
        frameworks.add("monorepo")
    if "db/migrations" in fingerprint.directories:
        frameworks.add("database-migrations")
    return sorted(frameworks)


def _detect_start_command(manifest: dict[str, Any] | None, project_path: Path) -> str:
    if manifest and manifest.get("kind") == "package.json":
        runner = "bun run" if (project_path / "bun.lock").exists() else "npm run"
        scripts = manifest.get("scripts") or []
        if "dev" in scripts:
            return f"{runner} dev"
        if "start" in scripts:
            return "npm start" if runner == "npm run" else f"{runner} start"
    if manifest and manifest.get("kind") == "pyproject.toml":
        scripts = manifest.get("scripts") or []
        if scripts:
            return scripts[0]
        if manifest.get("name"):
            return f"python -m {str(manifest['name']).replace('-', '_')}"
    return "npm start"


def _slug(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug or "project"
