"""
Stage conditions.

A condition is a pure predicate over the run context and the approval
decisions recorded so far, the generalisation of a Jenkinsfile
``when { branch 'main' }`` block.
"""

from __future__ import annotations

import fnmatch
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from shipyard.shared.domain.exceptions import PipelineDefinitionError


class Condition(Protocol):
    def __call__(self, context: Any, approvals: Mapping[str, str]) -> bool: ...


def _as_tuple(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(part.strip() for part in value.split("|") if part.strip())
    return tuple(str(v) for v in value)


@dataclass(frozen=True)
class StageCondition:
    """
    Declarative stage condition.

    All configured clauses must hold:
    - branches: the run branch matches at least one glob pattern
    - environments: the run's target environment is one of these
    - variables: each named variable equals the given value
    - approved: each named stage's approval gate was resolved ``proceed``
    """

    branches: tuple[str, ...] = ()
    environments: tuple[str, ...] = ()
    variables: Mapping[str, str] = field(default_factory=dict)
    approved: tuple[str, ...] = ()

    def __call__(self, context: Any, approvals: Mapping[str, str]) -> bool:
        if self.branches and not any(fnmatch.fnmatchcase(context.branch, p) for p in self.branches):
            return False
        if self.environments and context.environment not in self.environments:
            return False
        for name, expected in self.variables.items():
            if str(context.variables.get(name)) != str(expected):
                return False
        return all(approvals.get(stage) == "proceed" for stage in self.approved)

    def describe(self) -> str:
        parts = []
        if self.branches:
            parts.append(f"branch in {list(self.branches)}")
        if self.environments:
            parts.append(f"environment in {list(self.environments)}")
        for name, expected in self.variables.items():
            parts.append(f"{name} == {expected!r}")
        if self.approved:
            parts.append(f"approved {list(self.approved)}")
        return " and ".join(parts) or "always"

    @classmethod
    def from_spec(cls, spec: Any) -> StageCondition:
        """
        Build a condition from a ``when`` block.

        A bare string is a branch pattern list separated by ``|``.
        """
        if isinstance(spec, str):
            return cls(branches=_as_tuple(spec))
        if not isinstance(spec, Mapping):
            raise PipelineDefinitionError(f"Invalid 'when' block: {spec!r}")

        unknown = set(spec) - {"branch", "branches", "environment", "environments", "variables", "approved"}
        if unknown:
            raise PipelineDefinitionError(f"Unknown 'when' keys: {sorted(unknown)}")

        variables = spec.get("variables") or {}
        if not isinstance(variables, Mapping):
            raise PipelineDefinitionError("'when.variables' must be a mapping")

        return cls(
            branches=_as_tuple(spec.get("branch", spec.get("branches"))),
            environments=_as_tuple(spec.get("environment", spec.get("environments"))),
            variables={str(k): str(v) for k, v in variables.items()},
            approved=_as_tuple(spec.get("approved")),
        )
