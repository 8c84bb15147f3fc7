"""Map caller-supplied identifiers to queue addresses and context scopes.

Identifiers are compared literally: no trimming, case folding or other
normalisation happens here, so ``"a/b"`` and ``"A/B"`` are different projects.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Final, Union

GLOBAL_NAMESPACE: Final[str] = "global"
_PROJECT_PREFIX: Final[str] = "project:"


@dataclass(slots=True, frozen=True)
class GlobalScope:
    """Context entries not tied to any project."""

    @property
    def namespace(self) -> str:
        return GLOBAL_NAMESPACE

    @property
    def project_id(self) -> None:
        return None


@dataclass(slots=True, frozen=True)
class ProjectScope:
    """Context entries visible only inside one project."""

    project_id: str

    @property
    def namespace(self) -> str:
        # The prefix keeps every project namespace distinct from "global",
        # including a project literally named "global".
        return f"{_PROJECT_PREFIX}{self.project_id}"


ContextScope = Union[GlobalScope, ProjectScope]


@dataclass(slots=True, frozen=True)
class QueueAddress:
    """One agent's inbox inside one project."""

    project_id: str
    agent_id: str


def resolve_scope(project_id: str | None) -> ContextScope:
    """``None`` maps to the global scope, anything else to that project."""
    if project_id is None:
        return GlobalScope()
    return ProjectScope(project_id)


def resolve_queue(project_id: str, agent_id: str) -> QueueAddress:
    return QueueAddress(project_id=project_id, agent_id=agent_id)


def scope_from_namespace(namespace: str) -> ContextScope:
    """Inverse of ``scope.namespace``; used when rendering stored rows."""
    if namespace == GLOBAL_NAMESPACE:
        return GlobalScope()
    if namespace.startswith(_PROJECT_PREFIX):
        return ProjectScope(namespace[len(_PROJECT_PREFIX):])
    raise ValueError(f"Unknown context namespace: {namespace!r}")


def describe_scope(scope: ContextScope) -> str:
    if isinstance(scope, GlobalScope):
        return "global"
    return f"project {scope.project_id}"
