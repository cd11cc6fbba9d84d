"""Subprocess execution with explicit working directory and timeout."""

from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

TIMEOUT_RETURNCODE = 124
NOT_FOUND_RETURNCODE = 127


@dataclass(slots=True)
class CommandResult:
    """Outcome of one external command."""

    command: str
    returncode: int
    output: str
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out


def run_command(
    command: str | Sequence[str],
    *,
    cwd: Path,
    timeout_seconds: float | None = None,
    env: Mapping[str, str] | None = None,
    input_text: str | None = None,
) -> CommandResult:
    """Run ``command`` and capture combined output. Never raises for exit status.

    String commands come from project configuration and run through the shell;
    sequences are executed directly.
    """
    shell = isinstance(command, str)
    command_text = command if isinstance(command, str) else " ".join(command)
    merged_env = {**os.environ, **env} if env else None
    logger.debug("running %s in %s", command_text, cwd)
    try:
        completed = subprocess.run(
            command if shell else list(command),
            cwd=cwd,
            shell=shell,
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
            env=merged_env,
            input=input_text,
        )
    except subprocess.TimeoutExpired as exc:
        output = _coerce_text(exc.stdout) + _coerce_text(exc.stderr)
        return CommandResult(
            command=command_text,
            returncode=TIMEOUT_RETURNCODE,
            output=output,
            timed_out=True,
        )
    except OSError as exc:
        return CommandResult(
            command=command_text,
            returncode=NOT_FOUND_RETURNCODE,
            output=f"{exc.__class__.__name__}: {exc}",
        )
    output = (completed.stdout or "") + (completed.stderr or "")
    return CommandResult(command=command_text, returncode=completed.returncode, output=output)


def _coerce_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value
