"""
Tests for the stage graph builder.
"""

import pytest

from shipyard.pipeline.domain.graph import build_graph
from shipyard.pipeline.domain.models import StageDefinition
from shipyard.shared.domain.exceptions import (
    CycleDetected,
    DuplicateStage,
    GraphValidationError,
    UnknownDependency,
)


def stage(name, *deps, group=None):
    return StageDefinition(name=name, depends_on=tuple(deps), parallel_group=group)


class TestBuildGraph:
    """Validation and ordering."""

    def test_acyclic_graph_is_accepted(self):
        graph = build_graph([
            stage("build"),
            stage("test", "build"),
            stage("deploy", "test"),
        ])

        assert graph.order == ("build", "test", "deploy")
        assert graph.dependencies["deploy"] == frozenset({"test"})
        assert graph.dependents["build"] == frozenset({"test"})
        assert len(graph) == 3
        assert "test" in graph

    def test_cycle_is_rejected_with_path(self):
        with pytest.raises(CycleDetected) as exc_info:
            build_graph([
                stage("a", "c"),
                stage("b", "a"),
                stage("c", "b"),
            ])

        cycle = exc_info.value.cycle
        assert set(cycle) >= {"a", "b", "c"}
        assert cycle[0] == cycle[-1]
        assert isinstance(exc_info.value, GraphValidationError)

    def test_self_dependency_is_a_cycle(self):
        with pytest.raises(CycleDetected):
            build_graph([stage("a", "a")])

    def test_long_dependency_chain(self):
        # declared last-first so the search has to walk the whole chain
        definitions = [stage(f"s{i}", f"s{i - 1}") for i in range(2999, 0, -1)] + [stage("s0")]

        graph = build_graph(definitions)

        assert graph.order[0] == "s0"
        assert graph.order[-1] == "s2999"

    def test_long_cycle_is_rejected(self):
        definitions = [stage(f"s{i}", f"s{i - 1}") for i in range(2999, 0, -1)] + [stage("s0", "s2999")]

        with pytest.raises(CycleDetected) as exc_info:
            build_graph(definitions)

        assert len(exc_info.value.cycle) == 3001

    def test_unknown_dependency(self):
        with pytest.raises(UnknownDependency) as exc_info:
            build_graph([stage("deploy", "tests")])

        assert "tests" in str(exc_info.value)

    def test_duplicate_stage(self):
        with pytest.raises(DuplicateStage):
            build_graph([stage("build"), stage("build")])

    def test_group_named_like_stage_is_rejected(self):
        with pytest.raises(DuplicateStage):
            build_graph([stage("checks"), stage("lint", group="checks")])

    def test_ties_break_by_declaration_order(self):
        graph = build_graph([
            stage("zeta"),
            stage("alpha"),
            stage("mid", "zeta", "alpha"),
            stage("beta"),
        ])

        # mid becomes ready before beta is taken and was declared earlier
        assert graph.order == ("zeta", "alpha", "mid", "beta")

    def test_group_name_dependency_expands_to_members(self):
        graph = build_graph([
            stage("build"),
            stage("lint", "build", group="checks"),
            stage("unit", "build", group="checks"),
            stage("deploy", "checks"),
        ])

        assert graph.dependencies["deploy"] == frozenset({"lint", "unit"})
        assert graph.group_members("checks") == ("lint", "unit")
        assert graph.order.index("deploy") > graph.order.index("unit")

    def test_transitive_dependents(self):
        graph = build_graph([
            stage("a"),
            stage("b", "a"),
            stage("c", "b"),
            stage("d"),
        ])

        assert graph.transitive_dependents("a") == {"b", "c"}
        assert graph.transitive_dependents("d") == set()

    def test_order_respects_every_dependency(self):
        graph = build_graph([
            stage("deploy", "package", "scan"),
            stage("scan", "build"),
            stage("package", "build"),
            stage("build"),
        ])

        position = {name: i for i, name in enumerate(graph.order)}
        for name, deps in graph.dependencies.items():
            for dep in deps:
                assert position[dep] < position[name]
