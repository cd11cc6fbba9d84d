"""Turn a finished iteration into a clean branch and a pull-request description."""

from __future__ import annotations

import logging
import os
import re
import shutil
import tempfile
from collections.abc import Iterable
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from pathlib import Path, PurePosixPath

from iterwork.core.git_manager import GitManager
from iterwork.core.progress import find_plan_document
from iterwork.core.templating import TemplateKind, TemplateRenderer
from iterwork.errors import CommandError, PullRequestError
from iterwork.models.context import ProjectContext
from iterwork.models.iteration import IterationInstance, WorkStatus

logger = logging.getLogger(__name__)

EXCLUDE_PATTERNS: tuple[str, ...] = (
    "docker-compose.*.yml",
    ".env",
    ".env.*",
    ".iteration.json",
    "scripts/start-iteration.sh",
    "scripts/health-check.sh",
    "scripts/setup-test-data.sql",
    "scripts/setup-test-data.sh",
    "STARTUP.md",
    "ITERATION_PLAN.md",
    "*_ITERATION_PLAN.md",
    "ITERATION_STATUS.md",
    "RESUME_STATUS.md",
    "*.log",
    ".claude-flow/",
    ".claude/",
    ".iterwork/",
    "playwright-report/",
    "test-results/",
    "coverage/",
)

DEFAULT_COMMIT_TEMPLATE = "feat: iteration {iterationName} ready for review\n\n{description}"

TESTING_DOCUMENTS = ("TESTING.md", "TEST_PLAN.md", "tests/README.md")

_TICKET_PATTERN = re.compile(r"\b([A-Z]{2,}-\d+)\b")
_DESIGN_LINK_PATTERN = re.compile(r"https?://(?:www\.)?figma\.com/[\w/?=&-]+", re.IGNORECASE)
_BULLET_PATTERN = re.compile(r"^[-*]\s+")
_STEP_PATTERN = re.compile(r"^(\d+\.|[-*])\s+")
_TESTING_HEADING = re.compile(r"^#{1,3}\s+(Testing|Test Plan|How to Test)", re.IGNORECASE)
_ANY_HEADING = re.compile(r"^#{1,3}\s+")

_LANGUAGES = {
    "ts": "TypeScript",
    "tsx": "TypeScript",
    "js": "JavaScript",
    "jsx": "JavaScript",
    "py": "Python",
    "go": "Go",
    "rs": "Rust",
    "java": "Java",
    "css": "CSS",
    "scss": "SCSS",
    "html": "HTML",
    "md": "Markdown",
    "json": "JSON",
    "yml": "YAML",
    "yaml": "YAML",
    "sql": "SQL",
    "toml": "TOML",
}

_CHANGE_TYPES = {"A": "added", "D": "deleted", "M": "modified", "R": "renamed", "C": "copied"}


@dataclass(slots=True)
class FileChange:
    path: str
    change_type: str
    additions: int = 0
    deletions: int = 0
    language: str = "Unknown"


@dataclass(slots=True)
class ProgressSummary:
    total_phases: int
    completed_phases: int
    current_phase: str | None
    overall_progress: int
    blockers: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ShareContext:
    """Everything the pull-request description is assembled from."""

    title: str
    description: str | None = None
    summary: str = ""
    implementation_details: list[str] = field(default_factory=list)
    testing_instructions: list[str] = field(default_factory=list)
    success_criteria: list[str] = field(default_factory=list)
    file_changes: list[FileChange] = field(default_factory=list)
    suggested_labels: list[str] = field(default_factory=list)
    ticket_refs: list[str] = field(default_factory=list)
    design_links: list[str] = field(default_factory=list)
    review_focus_areas: list[str] = field(default_factory=list)
    progress: ProgressSummary | None = None

    @property
    def additions(self) -> int:
        return sum(change.additions for change in self.file_changes)

    @property
    def deletions(self) -> int:
        return sum(change.deletions for change in self.file_changes)


@dataclass(slots=True)
class CleanBranchResult:
    branch: str
    base: str
    applied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    excluded_paths: list[str] = field(default_factory=list)


def is_excluded(path: str) -> bool:
    """True when ``path`` is iteration infrastructure that must never be shared."""
    normalized = path.replace("\\", "/").removeprefix("./")
    name = PurePosixPath(normalized).name
    for pattern in EXCLUDE_PATTERNS:
        if pattern.endswith("/"):
            if normalized == pattern.rstrip("/") or f"/{pattern}" in f"/{normalized}":
                return True
        elif fnmatchcase(normalized, pattern) or fnmatchcase(name, pattern):
            return True
    return False


def filter_shareable(paths: Iterable[str]) -> list[str]:
    return [path for path in paths if not is_excluded(path)]


def detect_language(path: str) -> str:
    suffix = PurePosixPath(path).suffix.lstrip(".").lower()
    return _LANGUAGES.get(suffix, suffix or "Unknown")


def extract_summary(content: str) -> str:
    for heading in ("Summary", "Overview", "Description"):
        body = _section(content, heading, stop_at_subheading=True)
        if body is not None and body.strip():
            return "\n".join(body.strip().splitlines()[:5])
    title_match = re.search(r"^#[^#].*\n\n([\s\S]*?)(?=\n##|\Z)", content, re.MULTILINE)
    if title_match and title_match.group(1).strip():
        return "\n".join(title_match.group(1).strip().splitlines()[:5])
    paragraphs = content.split("\n\n")
    return paragraphs[1].strip() if len(paragraphs) > 1 else ""


def extract_bullets(content: str, headings: Iterable[str]) -> list[str]:
    """Bullets of the first matching ``##`` section."""
    for heading in headings:
        body = _section(content, heading)
        if body is None:
            continue
        return [
            _BULLET_PATTERN.sub("", line).strip()
            for line in body.strip().splitlines()
            if _BULLET_PATTERN.match(line)
        ]
    return []


def extract_testing_instructions(content: str) -> list[str]:
    instructions: list[str] = []
    in_section = False
    for line in content.splitlines():
        if _TESTING_HEADING.match(line):
            in_section = True
            continue
        if in_section and _ANY_HEADING.match(line):
            break
        if in_section and _STEP_PATTERN.match(line):
            instructions.append(_STEP_PATTERN.sub("", line).strip())
    return instructions


def extract_tickets(text: str) -> list[str]:
    return _unique(_TICKET_PATTERN.findall(text))


def extract_design_links(text: str) -> list[str]:
    return _unique(_DESIGN_LINK_PATTERN.findall(text))


def review_focus_areas(changes: Iterable[FileChange]) -> list[str]:
    areas: list[str] = []
    for change in changes:
        path = change.path
        if "migration" in path or "db/" in path:
            areas.append("Database schema changes")
        if "api/" in path or "routes/" in path or "controllers/" in path:
            areas.append("API endpoint changes")
        if "components/" in path or "pages/" in path:
            areas.append("UI component changes")
        if "config" in path or path.endswith((".json", ".yml", ".yaml")):
            areas.append("Configuration changes")
        if "test" in path or "spec" in path:
            areas.append("Test coverage")
        if "types/" in path or "interfaces/" in path:
            areas.append("Type definitions")
    return _unique(areas)


def suggest_labels(name: str, changes: list[FileChange], tickets: list[str]) -> list[str]:
    labels: list[str] = []
    if any("test" in change.path for change in changes):
        labels.append("tests")
    if any("doc" in change.path for change in changes):
        labels.append("documentation")
    if any("migration" in change.path for change in changes):
        labels.append("database")
    if any(change.path.endswith((".css", ".scss")) for change in changes):
        labels.append("styling")
    if any("BUG" in ticket for ticket in tickets) or "fix" in name:
        labels.append("bug")
    if "feature" in name:
        labels.append("enhancement")
    if "refactor" in name:
        labels.append("refactor")
    total = sum(change.additions + change.deletions for change in changes)
    if total < 100:
        labels.append("size/small")
    elif total < 500:
        labels.append("size/medium")
    else:
        labels.append("size/large")
    return _unique(labels)


def summarize_progress(instance: IterationInstance) -> ProgressSummary | None:
    progress = instance.progress
    if progress is None:
        return None
    current = next((phase for phase in progress.phases if phase.status is WorkStatus.IN_PROGRESS), None)
    return ProgressSummary(
        total_phases=len(progress.phases),
        completed_phases=sum(1 for phase in progress.phases if phase.status is WorkStatus.COMPLETED),
        current_phase=current.name if current is not None else None,
        overall_progress=progress.overall_progress,
        blockers=list(progress.blockers),
    )


def share_branch_name(instance: IterationInstance) -> str:
    if instance.ticket:
        return f"share/{instance.ticket}-{instance.name}"
    return f"share/{instance.name}"


class ShareEngine:
    """Build share contexts, clean branches and pull-request bodies."""

    def __init__(self, git: GitManager, renderer: TemplateRenderer | None = None) -> None:
        self._git = git
        self._renderer = renderer or TemplateRenderer()

    def build_share_context(
        self,
        instance: IterationInstance,
        *,
        title: str | None = None,
        description: str | None = None,
        base_branch: str | None = None,
    ) -> ShareContext:
        workspace = instance.workspace_path
        base = base_branch or instance.base_branch
        context = ShareContext(
            title=title or f"Iteration: {instance.name}",
            description=description or instance.description,
        )

        plan = find_plan_document(workspace, instance.name)
        if plan is not None:
            plan_text = plan.read_text(encoding="utf-8")
            context.summary = extract_summary(plan_text)
            context.success_criteria = extract_bullets(plan_text, ("Success Criteria",))
            context.implementation_details = extract_bullets(
                plan_text, ("Implementation", "Changes", "What's Changed")
            )

        testing = _first_existing(workspace, TESTING_DOCUMENTS)
        if testing is not None:
            context.testing_instructions = extract_testing_instructions(testing.read_text(encoding="utf-8"))
        elif plan is not None:
            context.testing_instructions = extract_testing_instructions(plan.read_text(encoding="utf-8"))

        tickets: list[str] = [instance.ticket] if instance.ticket else []
        links: list[str] = []
        for markdown in _markdown_files(workspace):
            try:
                text = markdown.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                logger.debug("skipping %s: %s", markdown, exc)
                continue
            tickets.extend(extract_tickets(text))
            links.extend(extract_design_links(text))
        try:
            for subject in self._git.log_subjects(workspace, f"{base}..HEAD"):
                tickets.extend(extract_tickets(subject))
        except CommandError as exc:
            logger.warning("could not read commit subjects: %s", exc)
        context.ticket_refs = _unique(tickets)
        context.design_links = _unique(links)

        context.file_changes = self.file_changes(workspace, base)
        context.review_focus_areas = review_focus_areas(context.file_changes)
        context.suggested_labels = suggest_labels(instance.name, context.file_changes, context.ticket_refs)
        context.progress = summarize_progress(instance)
        return context

    def file_changes(self, workspace: Path, base: str) -> list[FileChange]:
        try:
            entries = self._git.diff_name_status(workspace, base)
            stats = self._git.diff_numstat(workspace, base)
        except CommandError as exc:
            logger.warning("could not diff against %s: %s", base, exc)
            return []
        changes: list[FileChange] = []
        for status, path in entries:
            if is_excluded(path):
                continue
            additions, deletions = stats.get(path, (0, 0))
            changes.append(
                FileChange(
                    path=path,
                    change_type=_CHANGE_TYPES.get(status[:1], "modified"),
                    additions=additions,
                    deletions=deletions,
                    language=detect_language(path),
                )
            )
        return changes

    def create_clean_branch(self, instance: IterationInstance, base_branch: str | None = None) -> CleanBranchResult:
        """Replay the iteration's commits onto a fresh branch, minus infrastructure files."""
        base = base_branch or instance.base_branch
        project = instance.project_path
        result = CleanBranchResult(branch=share_branch_name(instance), base=base)
        commits = self._git.rev_list(project, f"{base}..{instance.branch_name}")
        logger.info("replaying %d commit(s) onto %s", len(commits), result.branch)

        scratch = Path(tempfile.mkdtemp(prefix="iterwork-share-"))
        tree = scratch / "tree"
        self._git.worktree_add_new_branch(project, tree, result.branch, base, reset=True)
        try:
            for commit in commits:
                self._replay(tree, commit, result)
        finally:
            try:
                self._git.worktree_remove(project, tree, force=True)
            finally:
                self._git.worktree_prune(project)
                shutil.rmtree(scratch, ignore_errors=True)
        return result

    def render_body(
        self,
        share: ShareContext,
        instance: IterationInstance,
        project_context: ProjectContext,
    ) -> str:
        template_name = project_context.iteration.pr_template
        if template_name:
            template_path = instance.workspace_path / template_name
            if template_path.is_file():
                return self._renderer.render(
                    TemplateKind.PULL_REQUEST,
                    template_path.read_text(encoding="utf-8"),
                    pull_request_values(share, instance),
                )
            logger.warning("pull request template %s not found, using the default body", template_path)
        return default_body(share, instance)

    def commit_message(self, instance: IterationInstance, description: str | None = None) -> str:
        return self._renderer.render(
            TemplateKind.COMMIT,
            DEFAULT_COMMIT_TEMPLATE,
            {
                "iterationName": instance.name,
                "description": description
                or instance.description
                or "Iteration work completed and ready for review.",
            },
        )

    def _replay(self, tree: Path, commit: str, result: CleanBranchResult) -> None:
        files = self._git.commit_files(tree, commit)
        excluded = [path for path in files if is_excluded(path)]
        if files and len(excluded) == len(files):
            logger.info("skipping %s: only iteration files", commit[:7])
            result.skipped.append(commit)
            result.excluded_paths.extend(excluded)
            return
        try:
            self._git.cherry_pick_no_commit(tree, commit)
        except CommandError as exc:
            conflicts = self._git.conflicted_files(tree)
            shared = [path for path in conflicts if not is_excluded(path)]
            if shared or not conflicts:
                self._git.cherry_pick_abort(tree)
                detail = ", ".join(shared) if shared else str(exc)
                msg = f"commit {commit[:7]} does not apply to {result.base}: {detail}"
                raise PullRequestError(
                    msg,
                    remedy=f"rebase the iteration branch onto {result.base} and share again",
                ) from exc
            logger.info("%s: dropping conflicting iteration files %s", commit[:7], ", ".join(conflicts))
            excluded.extend(path for path in conflicts if path not in excluded)
        for path in excluded:
            self._git.restore_from_head(tree, path)
        result.excluded_paths.extend(excluded)
        if not self._git.has_staged_changes(tree):
            result.skipped.append(commit)
            return
        self._git.commit(tree, self._git.commit_subject(tree, commit))
        result.applied.append(commit)


def pull_request_values(share: ShareContext, instance: IterationInstance) -> dict[str, str]:
    return {
        "title": share.title,
        "description": share.description or "",
        "iterationName": instance.name,
        "branch": instance.share_branch or instance.branch_name,
        "summary": share.summary,
        "implementation": _bullets(share.implementation_details),
        "testing": _numbered(share.testing_instructions),
        "successCriteria": _checklist(share.success_criteria),
        "fileChanges": _file_table(share),
        "reviewFocus": _bullets(share.review_focus_areas),
        "labels": ", ".join(share.suggested_labels),
        "tickets": _bullets(share.ticket_refs),
        "designLinks": _bullets(share.design_links),
        "progress": _progress_text(share.progress),
        "preview": _preview(instance),
    }


def default_body(share: ShareContext, instance: IterationInstance) -> str:
    values = pull_request_values(share, instance)
    sections = [
        ("Summary", values["summary"] or f"Changes from iteration `{instance.name}`."),
        ("Description", values["description"]),
        ("Implementation", values["implementation"]),
        ("Testing", values["testing"]),
        ("Success Criteria", values["successCriteria"]),
        ("Changes", values["fileChanges"]),
        ("Review Focus", values["reviewFocus"]),
        ("Progress", values["progress"]),
        ("Tickets", values["tickets"]),
        ("Design", values["designLinks"]),
        ("Preview", values["preview"]),
    ]
    parts = [f"## {heading}\n\n{body}" for heading, body in sections if body]
    if share.suggested_labels:
        parts.append(f"Suggested labels: {values['labels']}")
    return "\n\n".join(parts) + "\n"


def _preview(instance: IterationInstance) -> str:
    lines = [f"Run locally with `iterwork start {instance.name}`."]
    lines.extend(
        f"- {name}: http://localhost:{service.actual_port}"
        for name, service in instance.allocated_services.items()
    )
    return "\n".join(lines)


def _file_table(share: ShareContext) -> str:
    if not share.file_changes:
        return ""
    rows = ["| File | Change | +/- | Language |", "| --- | --- | --- | --- |"]
    rows.extend(
        f"| `{change.path}` | {change.change_type} | +{change.additions}/-{change.deletions} | {change.language} |"
        for change in share.file_changes
    )
    rows.append("")
    rows.append(f"{len(share.file_changes)} file(s), +{share.additions}/-{share.deletions}")
    return "\n".join(rows)


def _progress_text(progress: ProgressSummary | None) -> str:
    if progress is None or progress.total_phases == 0:
        return ""
    lines = [
        f"{progress.overall_progress}% complete, "
        f"{progress.completed_phases}/{progress.total_phases} phases done"
    ]
    if progress.current_phase:
        lines.append(f"Current phase: {progress.current_phase}")
    lines.extend(f"- Blocker: {blocker}" for blocker in progress.blockers)
    return "\n".join(lines)


def _bullets(items: list[str]) -> str:
    return "\n".join(f"- {item}" for item in items)


def _numbered(items: list[str]) -> str:
    return "\n".join(f"{index}. {item}" for index, item in enumerate(items, start=1))


def _checklist(items: list[str]) -> str:
    return "\n".join(f"- [ ] {item}" for item in items)


def _section(content: str, heading: str, *, stop_at_subheading: bool = False) -> str | None:
    stop = r"(?=\n##|\Z)" if not stop_at_subheading else r"(?=\n##|\n###|\Z)"
    match = re.search(rf"^## {re.escape(heading)}[ \t]*\n([\s\S]*?){stop}", content, re.IGNORECASE | re.MULTILINE)
    return match.group(1) if match else None


def _first_existing(workspace: Path, names: Iterable[str]) -> Path | None:
    for name in names:
        path = workspace / name
        if path.is_file():
            return path
    return None


def _markdown_files(root: Path) -> list[Path]:
    found: list[Path] = []
    for directory, subdirs, files in os.walk(root):
        subdirs[:] = sorted(
            name for name in subdirs if not name.startswith(".") and name != "node_modules"
        )
        found.extend(Path(directory) / name for name in sorted(files) if name.endswith(".md"))
    return found


def _unique(items: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(items))
