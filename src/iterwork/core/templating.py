"""Literal ``{variable}`` substitution with a closed variable set per template kind."""

from __future__ import annotations

import re
from collections.abc import Mapping
from enum import Enum

from iterwork.errors import TemplateVariableError

_TOKEN_PATTERN = re.compile(r"\{\{|\}\}|(?<!\$)\{([A-Za-z_][A-Za-z0-9_]*)\}")


class TemplateKind(str, Enum):
    SCHEMA = "schema"
    ENV = "env"
    COMPOSE = "compose"
    PLAN = "plan"
    COMMIT = "commit"
    PULL_REQUEST = "pull_request"


_ITERATION_VARIABLES = frozenset(
    {
        "iterationName",
        "iterationBranch",
        "frontendPort",
        "backendPort",
        "dbPort",
        "dbSchema",
        "dbName",
        "dbUser",
        "createdDate",
    }
)

TEMPLATE_VARIABLES: dict[TemplateKind, frozenset[str]] = {
    TemplateKind.SCHEMA: frozenset({"iteration"}),
    TemplateKind.ENV: _ITERATION_VARIABLES | {"servicePorts"},
    TemplateKind.COMPOSE: _ITERATION_VARIABLES,
    TemplateKind.PLAN: frozenset(
        {"iterationName", "ticket", "description", "createdDate", "technicalNotes"}
    ),
    TemplateKind.COMMIT: frozenset({"iterationName", "description"}),
    TemplateKind.PULL_REQUEST: frozenset(
        {
            "title",
            "description",
            "iterationName",
            "branch",
            "summary",
            "implementation",
            "testing",
            "successCriteria",
            "fileChanges",
            "reviewFocus",
            "labels",
            "tickets",
            "designLinks",
            "progress",
            "preview",
        }
    ),
}


class TemplateRenderer:
    """Render templates, failing loudly on undeclared or missing variables."""

    def __init__(self, variables: Mapping[TemplateKind, frozenset[str]] | None = None) -> None:
        self._variables = dict(variables or TEMPLATE_VARIABLES)

    def declared(self, kind: TemplateKind) -> frozenset[str]:
        return self._variables[kind]

    def referenced(self, template: str) -> set[str]:
        return {match.group(1) for match in _TOKEN_PATTERN.finditer(template) if match.group(1)}

    def render(self, kind: TemplateKind, template: str, values: Mapping[str, object]) -> str:
        declared = self._variables[kind]
        undeclared = set(values) - declared
        if undeclared:
            msg = f"{kind.value} template does not declare: {', '.join(sorted(undeclared))}"
            raise TemplateVariableError(msg)

        unknown = sorted(self.referenced(template) - declared)
        if unknown:
            msg = f"{kind.value} template references unknown variables: {', '.join(unknown)}"
            raise TemplateVariableError(msg)

        def substitute(match: re.Match[str]) -> str:
            token = match.group(0)
            if token == "{{":
                return "{"
            if token == "}}":
                return "}"
            name = match.group(1)
            if name not in values:
                msg = f"{kind.value} template variable has no value: {name}"
                raise TemplateVariableError(msg)
            return str(values[name])

        return _TOKEN_PATTERN.sub(substitute, template)
