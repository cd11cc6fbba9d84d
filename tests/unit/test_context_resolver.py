from __future__ import annotations

import json
from pathlib import Path

from iterwork.core.context_resolver import ContextResolver, match_remote_pattern
from iterwork.models.context import DatabaseKind, ProjectContext, ProjectFingerprint, ServiceConfig


class FakeGit:
    def __init__(self, remote: str | None = None) -> None:
        self.remote = remote

    def remote_url(self, path: Path, remote: str = "origin") -> str | None:
        return self.remote


def _store(contexts: Path, context: ProjectContext) -> None:
    contexts.mkdir(parents=True, exist_ok=True)
    (contexts / f"{context.project_id}.json").write_text(context.model_dump_json(), encoding="utf-8")


def _stored_context(project_id: str, **fingerprint: object) -> ProjectContext:
    return ProjectContext(
        project_id=project_id,
        name=project_id,
        fingerprint=ProjectFingerprint(**fingerprint),
        services={"frontend": ServiceConfig(base_port=5173, command="bun run dev")},
    )


def test_match_remote_pattern_wildcards() -> None:
    assert match_remote_pattern("git@github.com:Acme/shop.git", "git@github.com:acme/shop.git")
    assert match_remote_pattern("https://github.com/acme/shop.git", "*github.com/acme/*")
    assert match_remote_pattern("https://github.com/acme/shop1.git", "https://github.com/acme/shop?.git")
    assert not match_remote_pattern("https://gitlab.com/acme/shop.git", "*github.com*")


def test_fingerprint_collects_markers_and_manifest(tmp_path: Path) -> None:
    project = tmp_path / "shop"
    (project / "packages" / "frontend").mkdir(parents=True)
    (project / "db" / "migrations").mkdir(parents=True)
    (project / ".git").mkdir()
    (project / ".github" / "workflows").mkdir(parents=True)
    (project / "README.md").write_text("# shop\n", encoding="utf-8")
    (project / "docker-compose.yml").write_text("services: {}\n", encoding="utf-8")
    (project / "package.json").write_text(
        json.dumps(
            {
                "name": "shop",
                "workspaces": ["packages/*"],
                "dependencies": {"react": "^18", "pg": "^8"},
                "devDependencies": {"vite": "^5"},
                "scripts": {"dev": "vite"},
            }
        ),
        encoding="utf-8",
    )
    resolver = ContextResolver(tmp_path / "contexts", FakeGit("git@github.com:acme/shop.git"))

    fingerprint = resolver.fingerprint(project)

    assert fingerprint.git_remote == "git@github.com:acme/shop.git"
    assert fingerprint.manifest is not None
    assert fingerprint.manifest["workspaces"] == ["packages/*"]
    assert fingerprint.manifest["dependencies"] == ["pg", "react", "vite"]
    assert "README.md" in fingerprint.custom_markers
    assert "dir:db/migrations" in fingerprint.custom_markers
    assert "dir:packages/frontend" in fingerprint.custom_markers
    assert ".github" in fingerprint.directories
    assert ".github/workflows" in fingerprint.directories
    assert ".git" not in fingerprint.directories
    assert fingerprint.docker_compose is True
    assert fingerprint.file_patterns["package.json"] is True
    assert fingerprint.file_patterns["Dockerfile"] is False
    assert {"react", "vite", "postgresql", "docker", "monorepo", "database-migrations"} <= set(
        fingerprint.frameworks
    )


def test_remote_rule_beats_manifest_rule(tmp_path: Path) -> None:
    contexts = tmp_path / "contexts"
    _store(contexts, _stored_context("a-manifest", manifest={"workspaces": ["packages/*"]}))
    _store(contexts, _stored_context("z-remote", git_remote="*acme/shop*"))
    resolver = ContextResolver(contexts, FakeGit())

    actual = ProjectFingerprint(git_remote="https://github.com/acme/shop.git", manifest={"workspaces": ["packages/*"]})

    matched = resolver.match(actual)
    assert matched is not None
    assert matched.project_id == "z-remote"


def test_manifest_dependency_rule(tmp_path: Path) -> None:
    contexts = tmp_path / "contexts"
    _store(contexts, _stored_context("py-api", manifest={"dependencies": ["fastapi", "sqlalchemy"]}))
    resolver = ContextResolver(contexts, FakeGit())

    hit = resolver.match(ProjectFingerprint(manifest={"dependencies": ["fastapi", "sqlalchemy", "uvicorn"]}))
    miss = resolver.match(ProjectFingerprint(manifest={"dependencies": ["fastapi"]}))

    assert hit is not None and hit.project_id == "py-api"
    assert miss is None


def test_marker_and_directory_thresholds(tmp_path: Path) -> None:
    contexts = tmp_path / "contexts"
    _store(
        contexts,
        _stored_context("markers", custom_markers=["README.md", "Justfile", "bun.lock", "CLAUDE.md"]),
    )
    _store(contexts, _stored_context("dirs", directories=["src", "tests", "docs", "scripts", "db"]))
    resolver = ContextResolver(contexts, FakeGit())

    # 3 of 4 markers is 75%.
    markers = resolver.match(ProjectFingerprint(custom_markers=["README.md", "Justfile", "bun.lock"]))
    assert markers is not None and markers.project_id == "markers"

    # 2 of 4 markers misses; 4 of 5 directories is 80%.
    dirs = resolver.match(
        ProjectFingerprint(custom_markers=["README.md", "Justfile"], directories=["src", "tests", "docs", "db"])
    )
    assert dirs is not None and dirs.project_id == "dirs"

    assert resolver.match(ProjectFingerprint(directories=["src", "tests", "docs"])) is None


def test_malformed_stored_context_is_skipped(tmp_path: Path) -> None:
    contexts = tmp_path / "contexts"
    contexts.mkdir()
    (contexts / "broken.json").write_text("{", encoding="utf-8")
    (contexts / "invalid.json").write_text(json.dumps({"name": "missing id"}), encoding="utf-8")
    _store(contexts, _stored_context("good", git_remote="git@github.com:acme/shop.git"))

    resolver = ContextResolver(contexts, FakeGit())

    assert [context.project_id for context in resolver.stored_contexts()] == ["good"]


def test_resolve_synthesizes_and_persists_new_context(tmp_path: Path) -> None:
    project = tmp_path / "My Tool"
    project.mkdir()
    (project / "package.json").write_text(json.dumps({"name": "tool", "scripts": {"dev": "vite"}}), encoding="utf-8")
    (project / "bun.lock").write_text("", encoding="utf-8")
    contexts = tmp_path / "contexts"
    resolver = ContextResolver(contexts, FakeGit())

    context = resolver.resolve(project)

    assert context.project_id == "custom-my-tool"
    assert list(context.services) == ["main"]
    assert context.services["main"].base_port == 3000
    assert context.services["main"].command == "bun run dev"
    assert context.database.kind is DatabaseKind.NONE
    assert context.iteration.workspace_path == ".iterations"
    assert context.iteration.branch_prefix == "iteration/"
    assert context.metadata.usage_count == 1
    assert (contexts / "custom-my-tool.json").is_file()

    again = resolver.resolve(project)
    assert again.project_id == "custom-my-tool"
    assert again.metadata.usage_count == 2


def test_synthesized_python_project_uses_module_command(tmp_path: Path) -> None:
    project = tmp_path / "svc"
    project.mkdir()
    (project / "pyproject.toml").write_text('[project]\nname = "my-svc"\ndependencies = ["fastapi>=0.1"]\n', encoding="utf-8")
    resolver = ContextResolver(tmp_path / "contexts", FakeGit())

    context = resolver.resolve(project)

    assert context.services["main"].command == "python -m my_svc"
    assert context.fingerprint.manifest is not None
    assert context.fingerprint.manifest["dependencies"] == ["fastapi"]
    assert "fastapi" in context.fingerprint.frameworks
