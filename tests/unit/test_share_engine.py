from __future__ import annotations

from pathlib import Path

import pytest

from iterwork.core.git_manager import GitResult
from iterwork.core.share_engine import (
    FileChange,
    ShareContext,
    ShareEngine,
    default_body,
    detect_language,
    extract_bullets,
    extract_design_links,
    extract_summary,
    extract_testing_instructions,
    extract_tickets,
    filter_shareable,
    is_excluded,
    pull_request_values,
    review_focus_areas,
    share_branch_name,
    suggest_labels,
)
from iterwork.core.templating import TEMPLATE_VARIABLES, TemplateKind
from iterwork.errors import CommandError, PullRequestError
from iterwork.models.context import IterationDefaults, ProjectContext
from iterwork.models.iteration import IterationInstance, ServiceAllocation

PLAN = """\
# Checkout flow

Rebuild checkout around the new payments API.

## Summary
Customers can pay with saved cards.
Refunds are issued from the admin.

## Implementation
- New `/api/payments` routes
- Saved-card component

## Testing
1. Start the iteration
2. Pay with card 4242

## Success Criteria
- Checkout completes in under 3s
- No regressions in refunds

Design: https://www.figma.com/file/abc123/Checkout?node-id=1
Tracks SHOP-42 and PAY-7.
"""


@pytest.mark.parametrize(
    "path",
    [
        ".env",
        "packages/api/.env",
        ".env.iteration",
        ".env.production",
        ".env.development.local",
        "packages/api/.env.test",
        "docker-compose.checkout-flow.yml",
        ".iteration.json",
        "ITERATION_PLAN.md",
        "CHECKOUT-FLOW_ITERATION_PLAN.md",
        "ITERATION_STATUS.md",
        "scripts/start-iteration.sh",
        "logs/server.log",
        ".claude/settings.json",
        "packages/web/test-results/report.xml",
        "./coverage/lcov.info",
        ".iterwork/env.template",
    ],
)
def test_iteration_infrastructure_is_excluded(path: str) -> None:
    assert is_excluded(path)


@pytest.mark.parametrize(
    "path",
    ["docker-compose.yml", "src/env.ts", "src/config/.envrc.ts", "docs/ITERATIONS.md", "src/coverage_report.py", "README.md"],
)
def test_source_files_are_shareable(path: str) -> None:
    assert not is_excluded(path)


def test_filter_shareable_keeps_order() -> None:
    assert filter_shareable(["src/a.ts", ".env", "src/b.ts", "app.log"]) == ["src/a.ts", "src/b.ts"]


def test_section_extraction() -> None:
    assert extract_summary(PLAN) == "Customers can pay with saved cards.\nRefunds are issued from the admin."
    assert extract_bullets(PLAN, ("Implementation", "Changes")) == [
        "New `/api/payments` routes",
        "Saved-card component",
    ]
    assert extract_bullets(PLAN, ("Success Criteria",)) == [
        "Checkout completes in under 3s",
        "No regressions in refunds",
    ]
    assert extract_testing_instructions(PLAN) == ["Start the iteration", "Pay with card 4242"]


def test_summary_falls_back_to_first_paragraph() -> None:
    assert extract_summary("# Title\n\nJust a paragraph.\n\n## Notes\n- x\n") == "Just a paragraph."


def test_tickets_and_design_links() -> None:
    assert extract_tickets(PLAN + "\nSHOP-42 again") == ["SHOP-42", "PAY-7"]
    assert extract_design_links(PLAN) == ["https://www.figma.com/file/abc123/Checkout?node-id=1"]


def test_language_focus_and_labels() -> None:
    changes = [
        FileChange(path="db/migrations/004_cards.sql", change_type="added", additions=30),
        FileChange(path="src/api/payments.ts", change_type="modified", additions=120, deletions=20),
        FileChange(path="src/components/Card.tsx", change_type="added", additions=60),
        FileChange(path="tests/payments.test.ts", change_type="added", additions=80),
    ]

    assert detect_language("src/components/Card.tsx") == "TypeScript"
    assert detect_language("Makefile") == "Unknown"
    assert review_focus_areas(changes) == [
        "Database schema changes",
        "API endpoint changes",
        "UI component changes",
        "Test coverage",
    ]
    assert suggest_labels("fix-checkout", changes, ["SHOP-42"]) == ["tests", "database", "bug", "size/medium"]
    assert suggest_labels("feature-x", [], []) == ["enhancement", "size/small"]


def _instance(tmp_path: Path, ticket: str | None = None) -> IterationInstance:
    workspace = tmp_path / "checkout-flow"
    workspace.mkdir(exist_ok=True)
    return IterationInstance(
        name="checkout-flow",
        project_id="shop",
        project_path=tmp_path,
        branch_name="iteration/checkout-flow",
        workspace_path=workspace,
        ticket=ticket,
        allocated_services={"frontend": ServiceAllocation(base_port=5173, actual_port=5213)},
    )


def test_share_branch_name(tmp_path: Path) -> None:
    assert share_branch_name(_instance(tmp_path)) == "share/checkout-flow"
    assert share_branch_name(_instance(tmp_path, "SHOP-42")) == "share/SHOP-42-checkout-flow"


def test_default_body_omits_empty_sections(tmp_path: Path) -> None:
    share = ShareContext(
        title="Checkout",
        summary="Customers can pay.",
        file_changes=[FileChange(path="src/a.ts", change_type="added", additions=3, language="TypeScript")],
        suggested_labels=["size/small"],
    )

    body = default_body(share, _instance(tmp_path))

    assert body.startswith("## Summary\n\nCustomers can pay.")
    assert "## Changes" in body
    assert "| `src/a.ts` | added | +3/-0 | TypeScript |" in body
    assert "## Testing" not in body
    assert "## Preview" in body
    assert "http://localhost:5213" in body
    assert body.endswith("Suggested labels: size/small\n")


def test_pull_request_values_cover_every_template_variable(tmp_path: Path) -> None:
    values = pull_request_values(ShareContext(title="T"), _instance(tmp_path))
    assert set(values) == TEMPLATE_VARIABLES[TemplateKind.PULL_REQUEST]


class FakeGit:
    def __init__(self, commits: dict[str, list[str]], *, conflicts: dict[str, list[str]] | None = None) -> None:
        self.commits = commits
        self.conflicts = conflicts or {}
        self.calls: list[tuple[str, ...]] = []
        self.staged = False
        self.unmerged: list[str] = []

    def log_subjects(self, path: Path, revision_range: str) -> list[str]:
        return ["PAY-9 wire card form", "tidy"]

    def diff_name_status(self, path: Path, base: str) -> list[tuple[str, str]]:
        return [("A", "src/api/cards.ts"), ("M", ".env"), ("A", "ITERATION_PLAN.md")]

    def diff_numstat(self, path: Path, base: str) -> dict[str, tuple[int, int]]:
        return {"src/api/cards.ts": (40, 0), ".env": (2, 1)}

    def rev_list(self, path: Path, revision_range: str) -> list[str]:
        self.calls.append(("rev_list", revision_range))
        return list(self.commits)

    def worktree_add_new_branch(self, path: Path, target: Path, branch: str, start: str, *, reset: bool = False) -> GitResult:
        self.calls.append(("worktree_add", branch, start, str(reset)))
        target.mkdir(parents=True)
        return GitResult(command="git worktree add", output="")

    def worktree_remove(self, path: Path, target: Path, *, force: bool = True) -> GitResult:
        self.calls.append(("worktree_remove",))
        return GitResult(command="git worktree remove", output="")

    def worktree_prune(self, path: Path) -> GitResult:
        self.calls.append(("worktree_prune",))
        return GitResult(command="git worktree prune", output="")

    def commit_files(self, path: Path, commit: str) -> list[str]:
        return self.commits[commit]

    def cherry_pick_no_commit(self, path: Path, commit: str) -> GitResult:
        self.calls.append(("cherry_pick", commit))
        self.staged = any(not file.startswith(".env") for file in self.commits[commit])
        if commit in self.conflicts:
            self.unmerged = list(self.conflicts[commit])
            raise CommandError("conflict", command="git cherry-pick", returncode=1)
        return GitResult(command="git cherry-pick", output="")

    def cherry_pick_abort(self, path: Path) -> None:
        self.calls.append(("abort",))
        self.unmerged = []
        self.staged = False

    def conflicted_files(self, path: Path) -> list[str]:
        return list(self.unmerged)

    def restore_from_head(self, path: Path, file_path: str) -> None:
        self.calls.append(("restore", file_path))
        if file_path in self.unmerged:
            self.unmerged.remove(file_path)

    def has_staged_changes(self, path: Path) -> bool:
        return self.staged

    def commit_subject(self, path: Path, commit: str) -> str:
        return f"subject of {commit}"

    def commit(self, path: Path, message: str, *, allow_empty: bool = False) -> GitResult:
        self.calls.append(("commit", message))
        return GitResult(command="git commit", output="")


def test_build_share_context_reads_plan_and_diff(tmp_path: Path) -> None:
    instance = _instance(tmp_path, "SHOP-42")
    (instance.workspace_path / "ITERATION_PLAN.md").write_text(PLAN, encoding="utf-8")
    engine = ShareEngine(FakeGit({}))

    share = engine.build_share_context(instance, description="Card payments")

    assert share.title == "Iteration: checkout-flow"
    assert share.description == "Card payments"
    assert share.summary.startswith("Customers can pay")
    assert share.testing_instructions == ["Start the iteration", "Pay with card 4242"]
    assert share.ticket_refs == ["SHOP-42", "PAY-7", "PAY-9"]
    assert [change.path for change in share.file_changes] == ["src/api/cards.ts"]
    assert share.additions == 40
    assert "API endpoint changes" in share.review_focus_areas


def test_create_clean_branch_replays_and_filters(tmp_path: Path) -> None:
    git = FakeGit(
        {
            "c1": ["src/api/cards.ts", ".env"],
            "c2": [".env", "ITERATION_PLAN.md"],
            "c3": [".iteration.json", "src/api/refunds.ts"],
            "c4": [".env.local", "src/x.ts"],
        },
        conflicts={"c3": [".iteration.json"]},
    )
    engine = ShareEngine(git)

    result = engine.create_clean_branch(_instance(tmp_path, "SHOP-42"))

    assert result.branch == "share/SHOP-42-checkout-flow"
    assert result.base == "main"
    assert result.applied == ["c1", "c3", "c4"]
    assert result.skipped == ["c2"]
    assert ("rev_list", "main..iteration/checkout-flow") in git.calls
    assert ("worktree_add", "share/SHOP-42-checkout-flow", "main", "True") in git.calls
    assert ("restore", ".env") in git.calls
    assert ("restore", ".iteration.json") in git.calls
    assert ("abort",) not in git.calls
    assert ("commit", "subject of c1") in git.calls
    assert ("commit", "subject of c3") in git.calls
    assert git.calls[-2:] == [("worktree_remove",), ("worktree_prune",)]


def test_conflict_in_shared_source_stops_the_clean_branch(tmp_path: Path) -> None:
    git = FakeGit(
        {
            "c1": ["src/api/cards.ts"],
            "c2": ["src/api/cards.ts", ".iteration.json"],
            "c3": ["src/x.ts"],
        },
        conflicts={"c2": ["src/api/cards.ts", ".iteration.json"]},
    )
    engine = ShareEngine(git)

    with pytest.raises(PullRequestError) as excinfo:
        engine.create_clean_branch(_instance(tmp_path))

    assert "src/api/cards.ts" in str(excinfo.value)
    assert ".iteration.json" not in str(excinfo.value)
    assert excinfo.value.remedy == "rebase the iteration branch onto main and share again"
    assert ("abort",) in git.calls
    assert ("cherry_pick", "c3") not in git.calls
    assert git.calls[-2:] == [("worktree_remove",), ("worktree_prune",)]


def test_render_body_uses_project_template(tmp_path: Path) -> None:
    instance = _instance(tmp_path)
    (instance.workspace_path / "PR_TEMPLATE.md").write_text("## {title}\n{summary}\nBranch: {branch}\n", encoding="utf-8")
    context = ProjectContext(project_id="shop", name="shop", iteration=IterationDefaults(pr_template="PR_TEMPLATE.md"))
    engine = ShareEngine(FakeGit({}))

    body = engine.render_body(ShareContext(title="Cards", summary="Pay by card"), instance, context)

    assert body == "## Cards\nPay by card\nBranch: iteration/checkout-flow\n"


def test_commit_message(tmp_path: Path) -> None:
    engine = ShareEngine(FakeGit({}))
    message = engine.commit_message(_instance(tmp_path), "Card payments")
    assert message == "feat: iteration checkout-flow ready for review\n\nCard payments"
