"""Pre-share quality gate execution."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from iterwork.core.process import run_command
from iterwork.core.service_manager import CommandRunner

logger = logging.getLogger(__name__)

_SUMMARY_COUNT_PATTERN = re.compile(
    r"(?P<count>\d+)\s+(?P<label>passed|failed|skipped|errors?)\b", re.IGNORECASE
)


@dataclass(slots=True)
class GateCheck:
    """One quality command and its summarized outcome."""

    command: str
    returncode: int
    output: str
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    errors: int = 0
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out


@dataclass(slots=True)
class GateResult:
    checks: list[GateCheck] = field(default_factory=list)
    configured: bool = True

    @property
    def passed(self) -> bool:
        return all(check.ok for check in self.checks)

    @property
    def failures(self) -> list[GateCheck]:
        return [check for check in self.checks if not check.ok]

    def summary(self) -> str:
        if not self.configured:
            return "no quality gate configured"
        lines = []
        for check in self.checks:
            state = "ok" if check.ok else ("timed out" if check.timed_out else f"exit {check.returncode}")
            counts = ""
            if check.passed or check.failed:
                counts = f" ({check.passed} passed, {check.failed} failed)"
            lines.append(f"{check.command}: {state}{counts}")
        return "\n".join(lines)


class QualityGate:
    """Run the project's pre-share commands inside an iteration."""

    def __init__(self, *, timeout_seconds: float = 600.0, runner: CommandRunner = run_command) -> None:
        self._timeout = timeout_seconds
        self._runner = runner

    def run(self, workspace: Path, commands: list[str]) -> GateResult:
        if not commands:
            logger.warning("no pre-share quality gate configured; skipping checks")
            return GateResult(configured=False)

        result = GateResult()
        for command in commands:
            logger.info("quality gate: %s", command)
            outcome = self._runner(command, cwd=workspace, timeout_seconds=self._timeout)
            check = GateCheck(
                command=outcome.command,
                returncode=outcome.returncode,
                output=outcome.output,
                timed_out=outcome.timed_out,
            )
            _apply_summary(check)
            result.checks.append(check)
            if not check.ok:
                logger.warning("quality gate command failed: %s", command)
        return result


def _apply_summary(check: GateCheck) -> None:
    """Pick test counts out of the last summary line, if the tool printed one."""
    for line in reversed([line for line in check.output.splitlines() if line.strip()]):
        matches = list(_SUMMARY_COUNT_PATTERN.finditer(line))
        if not matches:
            continue
        for match in matches:
            count = int(match.group("count"))
            label = match.group("label").lower()
            if label == "passed":
                check.passed = count
            elif label == "failed":
                check.failed = count
            elif label == "skipped":
                check.skipped = count
            else:
                check.errors = count
        return
