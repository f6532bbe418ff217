"""Tests for the dependency graph builder."""

from __future__ import annotations

import pytest

from dagbuild.dag import build_plan, topo_levels
from dagbuild.dsl import action, copy, plan, pull, ref, run, source, write
from dagbuild.errors import CycleError, GraphError, UnresolvedReferenceError


class TestDeduplication:
    def test_identical_pulls_collapse_into_one_node(self) -> None:
        g = build_plan(
            plan(
                action("a", image=pull("base:1")),
                action("b", image=pull("base:1")),
            )
        )
        assert len(g.nodes) == 1
        assert g.outputs[("a", "image")] == g.outputs[("b", "image")]
        assert g.nodes[g.outputs[("a", "image")]].labels == ["a.image", "b.image"]

    def test_reference_resolves_to_the_referenced_node(self) -> None:
        g = build_plan(
            plan(
                action("build", image=pull("base"), export=run(ref("build.image"), "make", exports=["/out"])),
                action("test", image=ref("build.image")),
            )
        )
        assert g.outputs[("test", "image")] == g.outputs[("build", "image")]
        assert len(g.nodes) == 2
        assert len(g.edges) == 1

    def test_different_params_are_different_nodes(self) -> None:
        g = build_plan(
            plan(
                action("a", out=run(pull("base"), "make", exports=["/out"])),
                action("b", out=run(pull("base"), "make", exports=["/dist"])),
            )
        )
        assert len(g.nodes) == 3

    def test_node_ids_are_stable_across_builds(self) -> None:
        def make():
            return plan(action("build", export=run(copy(pull("base"), source(".")), "make", exports=["/out"])))

        assert set(build_plan(make()).nodes) == set(build_plan(make()).nodes)

    def test_same_producer_in_two_slots_gives_two_edges(self) -> None:
        base = pull("base")
        g = build_plan(plan(action("a", merged=copy(base, base))))
        merged = g.nodes[g.outputs[("a", "merged")]]
        assert len(g.edges) == 2
        assert {e.slot for e in g.edges} == {"input", "contents"}
        base_id = merged.inputs[0][1]
        assert merged.inputs[1][1] == base_id
        assert merged.producers() == [base_id]


class TestCycles:
    def test_two_action_cycle_reports_chain(self) -> None:
        p = plan(
            action("a", x=run(ref("b.y"), "true")),
            action("b", y=run(ref("a.x"), "true")),
        )
        with pytest.raises(CycleError) as exc:
            build_plan(p)
        assert exc.value.chain == ["a.x", "b.y", "a.x"]
        assert "a.x -> b.y -> a.x" in str(exc.value)

    def test_self_reference_is_a_cycle(self) -> None:
        p = plan(action("a", x=copy(ref("a.x"), source("."))))
        with pytest.raises(CycleError) as exc:
            build_plan(p)
        assert exc.value.chain == ["a.x", "a.x"]

    def test_cycle_is_a_graph_error(self) -> None:
        p = plan(action("a", x=ref("a.y"), y=ref("a.x")))
        with pytest.raises(GraphError):
            build_plan(p)


class TestUnresolvedReferences:
    def test_unknown_action(self) -> None:
        with pytest.raises(UnresolvedReferenceError) as exc:
            build_plan(plan(action("a", x=run(ref("nope.y"), "true"))))
        assert exc.value.reference == "nope.y"
        assert "unknown action" in exc.value.message

    def test_unknown_field(self) -> None:
        with pytest.raises(UnresolvedReferenceError, match="no field 'missing'"):
            build_plan(plan(action("a", img=pull("base")), action("b", x=ref("a.missing"))))

    def test_reference_to_literal_field(self) -> None:
        with pytest.raises(UnresolvedReferenceError, match="literal"):
            build_plan(plan(action("a", version="1.2"), action("b", x=ref("a.version"))))

    def test_unknown_target(self) -> None:
        with pytest.raises(UnresolvedReferenceError):
            build_plan(plan(action("a", img=pull("base")), targets=["b"]))

    def test_unknown_write_source(self) -> None:
        with pytest.raises(UnresolvedReferenceError):
            build_plan(plan(action("a", img=pull("base")), writes=[write("./out", "a.export")]))


def test_topo_levels_group_independent_steps() -> None:
    g = build_plan(
        plan(
            action(
                "build",
                export=run(copy(pull("base"), source(".")), "make", exports=["/out"]),
            )
        )
    )
    levels = topo_levels(g)
    kinds = [sorted(g.nodes[n].kind for n in level) for level in levels]
    assert kinds == [["pull", "source"], ["copy"], ["run"]]


def test_targets_limit_requested_nodes() -> None:
    g = build_plan(
        plan(
            action("a", out=run(pull("base"), "make a", exports=["/a"])),
            action("b", out=run(pull("other"), "make b", exports=["/b"])),
            targets=["a"],
        )
    )
    scope = g.reachable(g.requested_nodes())
    assert {g.nodes[n].kind for n in scope} == {"pull", "run"}
    assert len(scope) == 2
    assert len(g.nodes) == 4
