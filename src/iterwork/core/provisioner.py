"""Branch and linked working tree provisioning."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from iterwork.core.git_manager import GitManager, LinkedTree
from iterwork.errors import CommandError, WorktreeExistsError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BranchResult:
    name: str
    created: bool


class IsolationProvisioner:
    """Create and remove the branch-backed linked trees iterations live in."""

    def __init__(self, git: GitManager) -> None:
        self._git = git

    def ensure_branch(self, project_path: Path, name: str, from_ref: str) -> BranchResult:
        """Create ``name`` from ``from_ref`` unless it already exists."""
        if self._git.branch_exists(project_path, name):
            logger.warning("branch %s already exists, reusing it", name)
            return BranchResult(name=name, created=False)

        logger.info("creating branch %s from %s", name, from_ref)
        self._git.checkout(project_path, from_ref)
        try:
            self._git.pull(project_path, "origin", from_ref)
        except CommandError as exc:
            logger.warning("could not update %s from origin: %s", from_ref, exc)
        self._git.branch(project_path, name)
        return BranchResult(name=name, created=True)

    def create_linked_tree(self, project_path: Path, path: Path, branch: str) -> Path:
        if path.exists():
            msg = f"linked tree path already exists: {path}"
            raise WorktreeExistsError(msg, remedy=f"remove {path} or pick another name")
        path.parent.mkdir(parents=True, exist_ok=True)
        logger.info("creating linked tree at %s for %s", path, branch)
        self._git.worktree_add(project_path, path, branch)
        return path

    def remove_linked_tree(self, project_path: Path, path: Path) -> None:
        """Force-remove the linked tree. The branch is left in place."""
        if path.exists():
            self._git.worktree_remove(project_path, path, force=True)
        self._git.worktree_prune(project_path)

    def list_linked_trees(self, project_path: Path) -> list[LinkedTree]:
        return self._git.worktree_list(project_path)

    def has_uncommitted_changes(self, path: Path) -> bool:
        return bool(self._git.status(path).output)

    def ignore_generated(self, path: Path, filenames: list[str]) -> None:
        """Keep files iterwork writes into the tree out of ``git status`` and ``git add -A``."""
        self._git.exclude_untracked(path, [f"/{filename}" for filename in filenames])
