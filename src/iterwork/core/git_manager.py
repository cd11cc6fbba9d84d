"""Git and GitHub CLI operations for iterations."""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

from iterwork.errors import CommandError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class GitResult:
    """Result from running a git command."""

    command: str
    output: str


@dataclass(slots=True)
class LinkedTree:
    """One entry of ``git worktree list --porcelain``."""

    path: Path
    branch: str | None
    head: str | None = None


class GitManager:
    """Thin wrapper around git and gh CLIs. Every call takes an explicit working directory."""

    def __init__(self, *, timeout_seconds: float = 60.0) -> None:
        self._timeout = timeout_seconds

    def remote_url(self, path: Path, remote: str = "origin") -> str | None:
        try:
            return self._run_git(path, "remote", "get-url", remote).output or None
        except CommandError:
            return None

    def branch_exists(self, path: Path, name: str) -> bool:
        try:
            self._run_git(path, "show-ref", "--verify", "--quiet", f"refs/heads/{name}")
        except CommandError:
            return False
        return True

    def checkout(self, path: Path, ref: str) -> GitResult:
        return self._run_git(path, "checkout", ref)

    def pull(self, path: Path, remote: str = "origin", ref: str | None = None) -> GitResult:
        args = ["pull", "--ff-only", remote]
        if ref:
            args.append(ref)
        return self._run_git(path, *args)

    def branch(self, path: Path, name: str, start: str | None = None) -> GitResult:
        if start:
            return self._run_git(path, "branch", name, start)
        return self._run_git(path, "branch", name)

    def status(self, path: Path) -> GitResult:
        return self._run_git(path, "status", "--porcelain")

    def exclude_untracked(self, path: Path, patterns: list[str]) -> Path:
        """Add ``patterns`` to the repository's ``info/exclude`` unless already listed."""
        exclude = Path(self._run_git(path, "rev-parse", "--git-path", "info/exclude").output)
        if not exclude.is_absolute():
            exclude = path / exclude
        text = exclude.read_text(encoding="utf-8") if exclude.exists() else ""
        existing = set(text.splitlines())
        missing = [pattern for pattern in patterns if pattern not in existing]
        if missing:
            exclude.parent.mkdir(parents=True, exist_ok=True)
            with exclude.open("a", encoding="utf-8") as handle:
                if text and not text.endswith("\n"):
                    handle.write("\n")
                handle.writelines(f"{pattern}\n" for pattern in missing)
        return exclude

    def commit_all(self, path: Path, message: str) -> GitResult | None:
        """Stage everything and commit. Returns ``None`` when there is nothing to commit."""
        self._run_git(path, "add", "-A")
        if not self.status(path).output:
            return None
        return self._run_git(path, "commit", "-m", message)

    def commit(self, path: Path, message: str, *, allow_empty: bool = False) -> GitResult:
        args = ["commit", "-m", message]
        if allow_empty:
            args.append("--allow-empty")
        return self._run_git(path, *args)

    def push(
        self,
        path: Path,
        remote: str = "origin",
        branch: str = "HEAD",
        *,
        set_upstream: bool = False,
        force: bool = False,
    ) -> GitResult:
        args = ["push"]
        if set_upstream:
            args.append("-u")
        if force:
            args.append("--force-with-lease")
        args.extend([remote, branch])
        return self._run_git(path, *args)

    def worktree_add(self, path: Path, target: Path, branch: str) -> GitResult:
        return self._run_git(path, "worktree", "add", str(target), branch)

    def worktree_add_new_branch(
        self, path: Path, target: Path, branch: str, start: str, *, reset: bool = False
    ) -> GitResult:
        """Add a linked tree on a new branch; ``reset`` re-points an existing branch."""
        flag = "-B" if reset else "-b"
        return self._run_git(path, "worktree", "add", flag, branch, str(target), start)

    def worktree_remove(self, path: Path, target: Path, *, force: bool = True) -> GitResult:
        args = ["worktree", "remove", str(target)]
        if force:
            args.append("--force")
        return self._run_git(path, *args)

    def worktree_prune(self, path: Path) -> GitResult:
        return self._run_git(path, "worktree", "prune")

    def worktree_list(self, path: Path) -> list[LinkedTree]:
        output = self._run_git(path, "worktree", "list", "--porcelain").output
        trees: list[LinkedTree] = []
        current: LinkedTree | None = None
        for line in output.splitlines():
            if line.startswith("worktree "):
                current = LinkedTree(path=Path(line[len("worktree ") :].strip()), branch=None)
                trees.append(current)
            elif current is not None and line.startswith("HEAD "):
                current.head = line[len("HEAD ") :].strip()
            elif current is not None and line.startswith("branch "):
                current.branch = line[len("branch ") :].strip().removeprefix("refs/heads/")
        return trees

    def diff_name_status(self, path: Path, base: str) -> list[tuple[str, str]]:
        output = self._run_git(path, "diff", "--name-status", f"{base}...HEAD").output
        entries: list[tuple[str, str]] = []
        for line in output.splitlines():
            parts = line.split("\t")
            if len(parts) < 2:
                continue
            # Renames and copies list "old<TAB>new"; keep the new path.
            entries.append((parts[0], parts[-1]))
        return entries

    def diff_numstat(self, path: Path, base: str) -> dict[str, tuple[int, int]]:
        output = self._run_git(path, "diff", "--numstat", f"{base}...HEAD").output
        stats: dict[str, tuple[int, int]] = {}
        for line in output.splitlines():
            parts = line.split("\t")
            if len(parts) < 3:
                continue
            additions = int(parts[0]) if parts[0].isdigit() else 0
            deletions = int(parts[1]) if parts[1].isdigit() else 0
            file_path = parts[-1]
            if " => " in file_path:
                file_path = _rename_target(file_path)
            stats[file_path] = (additions, deletions)
        return stats

    def log_subjects(self, path: Path, revision_range: str) -> list[str]:
        output = self._run_git(path, "log", "--format=%s", revision_range).output
        return [line for line in output.splitlines() if line.strip()]

    def rev_list(self, path: Path, revision_range: str) -> list[str]:
        output = self._run_git(path, "rev-list", "--reverse", revision_range).output
        return [line.strip() for line in output.splitlines() if line.strip()]

    def commit_subject(self, path: Path, commit: str) -> str:
        return self._run_git(path, "log", "-1", "--format=%s", commit).output

    def commit_files(self, path: Path, commit: str) -> list[str]:
        output = self._run_git(path, "show", "--name-only", "--pretty=format:", commit).output
        return [line.strip() for line in output.splitlines() if line.strip()]

    def cherry_pick_no_commit(self, path: Path, commit: str) -> GitResult:
        return self._run_git(path, "cherry-pick", "--no-commit", commit)

    def cherry_pick_abort(self, path: Path) -> None:
        try:
            self._run_git(path, "cherry-pick", "--abort")
        except CommandError:
            self._run_git(path, "reset", "--hard", "HEAD")

    def conflicted_files(self, path: Path) -> list[str]:
        output = self._run_git(path, "diff", "--name-only", "--diff-filter=U").output
        return [line.strip() for line in output.splitlines() if line.strip()]

    def restore_from_head(self, path: Path, file_path: str) -> None:
        """Drop a staged change for ``file_path``, restoring it to HEAD or deleting it."""
        if self._exists_at_head(path, file_path):
            self._run_git(path, "checkout", "HEAD", "--", file_path)
            return
        self._run_git(path, "rm", "--cached", "--force", "--quiet", "--", file_path)
        (path / file_path).unlink(missing_ok=True)

    def has_staged_changes(self, path: Path) -> bool:
        try:
            self._run_git(path, "diff", "--cached", "--quiet")
        except CommandError as exc:
            if exc.returncode == 1:
                return True
            raise
        return False

    def pr_create(
        self,
        project_path: Path,
        *,
        title: str,
        body: str,
        base: str = "main",
        head: str | None = None,
    ) -> GitResult:
        """Create pull request using gh CLI."""
        args = [
            "gh",
            "pr",
            "create",
            "--title",
            title,
            "--body",
            body,
            "--base",
            base,
        ]
        if head:
            args.extend(["--head", head])
        return self._run_command(project_path, *args)

    def _exists_at_head(self, path: Path, file_path: str) -> bool:
        try:
            self._run_git(path, "cat-file", "-e", f"HEAD:{file_path}")
        except CommandError:
            return False
        return True

    def _run_git(self, project_path: Path, *args: str) -> GitResult:
        command = ["git", *args]
        return self._run_command(project_path, *command)

    def _run_command(self, project_path: Path, *command: str) -> GitResult:
        command_text = " ".join(command)
        logger.debug("running %s in %s", command_text, project_path)
        try:
            completed = subprocess.run(
                [*command],
                cwd=project_path,
                check=False,
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except subprocess.TimeoutExpired as exc:
            msg = f"{command_text} timed out after {self._timeout:g}s"
            raise CommandError(msg, command=command_text, timed_out=True) from exc
        except OSError as exc:
            msg = f"{command_text} failed: {exc}"
            raise CommandError(msg, command=command_text) from exc
        output = (completed.stdout or "") + (completed.stderr or "")
        if completed.returncode != 0:
            msg = f"{command_text} failed: {output.strip()}"
            raise CommandError(
                msg,
                command=command_text,
                output=output.strip(),
                returncode=completed.returncode,
            )
        return GitResult(command=command_text, output=output.strip())


def _rename_target(numstat_path: str) -> str:
    """Resolve ``src/{old => new}/f.py`` or ``old => new`` to the new path."""
    if "{" in numstat_path and "}" in numstat_path:
        prefix, rest = numstat_path.split("{", 1)
        inner, suffix = rest.split("}", 1)
        new = inner.split(" => ", 1)[1]
        return (prefix + new + suffix).replace("//", "/")
    return numstat_path.split(" => ", 1)[1]
