"""
Stage graph builder.

Turns an ordered list of stage definitions into an immutable DAG with a
precomputed topological order. All structural problems are reported here,
before any stage executes.
"""

from __future__ import annotations

import heapq
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from types import MappingProxyType

from shipyard.pipeline.domain.models import StageDefinition
from shipyard.shared.domain.exceptions import CycleDetected, DuplicateStage, UnknownDependency


@dataclass(frozen=True)
class StageGraph:
    """Validated, immutable stage graph."""

    name: str
    stages: Mapping[str, StageDefinition]
    order: tuple[str, ...]
    dependencies: Mapping[str, frozenset[str]]
    dependents: Mapping[str, frozenset[str]]
    groups: Mapping[str, tuple[str, ...]]

    def __len__(self) -> int:
        return len(self.order)

    def __iter__(self):
        return (self.stages[name] for name in self.order)

    def __contains__(self, name: object) -> bool:
        return name in self.stages

    def stage(self, name: str) -> StageDefinition:
        return self.stages[name]

    def group_members(self, group: str) -> tuple[str, ...]:
        return self.groups[group]

    def transitive_dependents(self, name: str) -> set[str]:
        """Every stage that (directly or indirectly) depends on ``name``."""
        seen: set[str] = set()
        stack = list(self.dependents.get(name, ()))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.dependents.get(current, ()))
        return seen


def build_graph(definitions: Iterable[StageDefinition], name: str = "pipeline") -> StageGraph:
    """
    Build and validate a stage graph.

    Raises:
        DuplicateStage: two stages share a name, or a group is named like a stage
        UnknownDependency: a dependency names neither a stage nor a group
        CycleDetected: the dependencies contain a cycle
    """
    definitions = list(definitions)

    stages: dict[str, StageDefinition] = {}
    index: dict[str, int] = {}
    for position, definition in enumerate(definitions):
        if definition.name in stages:
            raise DuplicateStage(definition.name)
        stages[definition.name] = definition
        index[definition.name] = position

    groups: dict[str, list[str]] = {}
    for definition in definitions:
        if definition.parallel_group:
            if definition.parallel_group in stages:
                raise DuplicateStage(definition.parallel_group)
            groups.setdefault(definition.parallel_group, []).append(definition.name)

    dependencies: dict[str, frozenset[str]] = {}
    for definition in definitions:
        resolved: set[str] = set()
        for dependency in definition.depends_on:
            if dependency in stages:
                resolved.add(dependency)
            elif dependency in groups:
                resolved.update(groups[dependency])
            else:
                raise UnknownDependency(definition.name, dependency)
        dependencies[definition.name] = frozenset(resolved)

    _check_cycles(definitions, dependencies, index)

    dependents: dict[str, set[str]] = {name_: set() for name_ in stages}
    for stage_name, deps in dependencies.items():
        for dependency in deps:
            dependents[dependency].add(stage_name)

    order = _topological_order(stages, dependencies, dependents, index)

    return StageGraph(
        name=name,
        stages=MappingProxyType(stages),
        order=tuple(order),
        dependencies=MappingProxyType(dependencies),
        dependents=MappingProxyType({k: frozenset(v) for k, v in dependents.items()}),
        groups=MappingProxyType({k: tuple(v) for k, v in groups.items()}),
    )


def _check_cycles(
    definitions: list[StageDefinition],
    dependencies: Mapping[str, frozenset[str]],
    index: Mapping[str, int],
) -> None:
    """Depth-first search; reports the first cycle found in declaration order."""
    white, grey, black = 0, 1, 2
    color = {d.name: white for d in definitions}

    for definition in definitions:
        if color[definition.name] != white:
            continue

        color[definition.name] = grey
        path = [definition.name]
        stack = [iter(sorted(dependencies[definition.name], key=index.__getitem__))]
        while stack:
            dependency = next(stack[-1], None)
            if dependency is None:
                stack.pop()
                color[path.pop()] = black
            elif color[dependency] == grey:
                start = path.index(dependency)
                raise CycleDetected(path[start:] + [dependency])
            elif color[dependency] == white:
                color[dependency] = grey
                path.append(dependency)
                stack.append(iter(sorted(dependencies[dependency], key=index.__getitem__)))


def _topological_order(
    stages: Mapping[str, StageDefinition],
    dependencies: Mapping[str, frozenset[str]],
    dependents: Mapping[str, set[str]],
    index: Mapping[str, int],
) -> list[str]:
    """Kahn's algorithm; ties are broken by declaration order."""
    remaining = {name: len(dependencies[name]) for name in stages}
    ready = [(index[name], name) for name, count in remaining.items() if count == 0]
    heapq.heapify(ready)

    order: list[str] = []
    while ready:
        _, name = heapq.heappop(ready)
        order.append(name)
        for dependent in dependents[name]:
            remaining[dependent] -= 1
            if remaining[dependent] == 0:
                heapq.heappush(ready, (index[dependent], dependent))

    return order
