from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

from iterwork.core.git_manager import GitManager
from iterwork.core.share_engine import ShareEngine
from iterwork.errors import PullRequestError
from iterwork.models.iteration import IterationInstance

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


def _git(cwd: Path, *args: str) -> str:
    completed = subprocess.run(["git", *args], cwd=cwd, capture_output=True, text=True, check=True)
    return completed.stdout


def _commit(project: Path, message: str, files: dict[str, str]) -> None:
    for name, text in files.items():
        (project / name).write_text(text, encoding="utf-8")
    _git(project, "add", "-A")
    _git(project, "commit", "-m", message)


def _project(tmp_path: Path) -> Path:
    project = tmp_path / "shop"
    project.mkdir()
    _git(project, "init", "-b", "main")
    _git(project, "config", "user.name", "Iteration Tests")
    _git(project, "config", "user.email", "tests@example.com")
    _commit(project, "initial commit", {"README.md": "# shop\n", "app.py": "VERSION = 1\n"})
    return project


def _instance(project: Path) -> IterationInstance:
    return IterationInstance(
        name="demo",
        project_id="shop",
        project_path=project,
        branch_name="iteration/demo",
        workspace_path=project,
        base_branch="main",
    )


def test_clean_branch_keeps_source_and_drops_iteration_files(tmp_path: Path) -> None:
    project = _project(tmp_path)
    _git(project, "checkout", "-b", "iteration/demo")
    _commit(
        project,
        "add cards",
        {
            "cards.py": "CARDS = []\n",
            ".iteration.json": '{"status": "created"}\n',
            ".env.production": "SECRET=1\n",
            "docker-compose.demo.yml": "services: {}\n",
        },
    )
    _commit(project, "add refunds", {"refunds.py": "REFUNDS = []\n", ".iteration.json": '{"status": "running"}\n'})
    _commit(project, "rotate secret", {".env.production": "SECRET=2\n"})
    _git(project, "checkout", "main")

    result = ShareEngine(GitManager()).create_clean_branch(_instance(project))

    assert len(result.applied) == 2
    assert len(result.skipped) == 1
    files = _git(project, "ls-tree", "-r", "--name-only", "share/demo").split()
    assert sorted(files) == ["README.md", "app.py", "cards.py", "refunds.py"]
    assert _git(project, "log", "--format=%s", "main..share/demo").split("\n")[:2] == ["add refunds", "add cards"]
    assert len(_git(project, "worktree", "list").splitlines()) == 1


def test_clean_branch_stops_on_conflicting_source(tmp_path: Path) -> None:
    project = _project(tmp_path)
    _git(project, "checkout", "-b", "iteration/demo")
    _commit(project, "bump version", {"app.py": "VERSION = 2\n"})
    _git(project, "checkout", "main")
    _commit(project, "hotfix version", {"app.py": "VERSION = 3\n"})

    with pytest.raises(PullRequestError, match="app.py"):
        ShareEngine(GitManager()).create_clean_branch(_instance(project))

    assert len(_git(project, "worktree", "list").splitlines()) == 1
