from __future__ import annotations

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from gateci.dag import downstream_of, build_dag, topo_levels, topo_order, upstream_of, validate_pipeline
from gateci.dsl import artifact, service, sh, stage, tcp_probe, wf
from gateci.errors import DefinitionError


def test_topo_order_breaks_ties_by_declaration_order():
    stages = [
        stage("lint", "true"),
        stage("test", "true", needs=["lint"]),
        stage("sast", "true"),
    ]
    assert topo_order(stages) == ["lint", "test", "sast"]


def test_topo_levels_groups_independent_stages():
    stages = [
        stage("a", "true"),
        stage("b", "true", needs=["a"]),
        stage("c", "true", needs=["a"]),
        stage("d", "true", needs=["b", "c"]),
    ]
    assert topo_levels(stages) == [["a"], ["b", "c"], ["d"]]


def test_cycle_is_a_definition_error():
    stages = [
        stage("a", "true", needs=["c"]),
        stage("b", "true", needs=["a"]),
        stage("c", "true", needs=["b"]),
    ]
    with pytest.raises(DefinitionError) as exc:
        topo_order(stages)
    assert any("cycle" in p for p in exc.value.problems)


def test_missing_and_self_dependencies_are_rejected():
    with pytest.raises(DefinitionError, match="missing stage 'nope'"):
        build_dag([stage("a", "true", needs=["nope"])])
    with pytest.raises(DefinitionError, match="depends on itself"):
        build_dag([stage("a", "true", needs=["a"])])


def test_duplicate_stage_ids_are_rejected():
    with pytest.raises(DefinitionError, match="Duplicate"):
        build_dag([stage("a", "true"), stage("a", "false")])


def test_upstream_and_downstream_are_transitive():
    stages = [
        stage("a", "true"),
        stage("b", "true", needs=["a"]),
        stage("c", "true", needs=["b"]),
        stage("x", "true"),
    ]
    adj, _ = build_dag(stages)
    assert upstream_of(stages, "c") == {"a", "b"}
    assert downstream_of(adj, "a") == {"b", "c"}
    assert downstream_of(adj, "x") == set()


def test_validate_returns_order_for_a_good_pipeline():
    p = wf(
        "ok",
        stage("build", sh("true", outputs=["app.tar"])),
        stage("scan", sh("true", inputs=["build:app.tar"], secrets=["TOKEN"]), needs=["build"]),
        secrets=["TOKEN"],
    )
    assert validate_pipeline(p, ["TOKEN"]) == ["build", "scan"]


def test_validate_collects_every_problem():
    p = wf(
        "bad",
        stage("build", sh("true", outputs=["log"])),
        stage("other", "true"),
        stage(
            "scan",
            sh("true", inputs=[artifact("other", "x.bin"), "ghost:x"], secrets=["UNDECLARED"]),
            services=[service("db")],
        ),
        secrets=["TOKEN"],
    )
    with pytest.raises(DefinitionError) as exc:
        validate_pipeline(p, [])
    problems = "\n".join(exc.value.problems)
    assert "secret 'TOKEN' is declared but has no binding" in problems
    assert "output name 'log' is reserved" in problems
    assert "secret 'UNDECLARED' is not declared" in problems
    assert "input 'other:x.bin' is not produced by a stage it depends on" in problems
    assert "unknown stage 'ghost'" in problems
    assert "service 'db' needs an image or a command" in problems


def test_validate_skips_binding_check_without_bindings():
    p = wf("p", stage("a", sh("true", secrets=["TOKEN"])), secrets=["TOKEN"])
    assert validate_pipeline(p) == ["a"]
    with pytest.raises(DefinitionError):
        validate_pipeline(p, [])


def test_inputs_must_be_declared_outputs_of_an_upstream_stage():
    p = wf(
        "p",
        stage("build", sh("true", outputs=["a.tar"])),
        stage("scan", sh("true", inputs=["build:b.tar"]), needs=["build"]),
    )
    with pytest.raises(DefinitionError) as exc:
        validate_pipeline(p)
    assert any("not a declared output" in p for p in exc.value.problems)


def test_report_input_requires_a_scanner_upstream():
    p = wf(
        "p",
        stage("build", sh("true")),
        stage("summary", sh("true", inputs=["build:report"]), needs=["build"]),
    )
    with pytest.raises(DefinitionError) as exc:
        validate_pipeline(p)
    assert any("does not produce a report" in p for p in exc.value.problems)


def test_probe_shape_is_checked():
    p = wf(
        "p",
        stage("a", "true", services=[service("db", command="sleep 5", probe=tcp_probe(5432, retries=0))]),
    )
    with pytest.raises(DefinitionError) as exc:
        validate_pipeline(p)
    assert any("retries >= 1" in p for p in exc.value.problems)


def test_empty_pipeline_is_invalid():
    with pytest.raises(DefinitionError) as exc:
        validate_pipeline(wf("empty"))
    assert "pipeline has no stages" in exc.value.problems


@st.composite
def dags(draw):
    n = draw(st.integers(min_value=1, max_value=12))
    needs = [
        sorted(draw(st.sets(st.integers(min_value=0, max_value=i - 1), max_size=3))) if i else []
        for i in range(n)
    ]
    stages = [stage(f"s{i}", "true", needs=[f"s{j}" for j in needs[i]]) for i in range(n)]
    return draw(st.permutations(stages))


@settings(max_examples=200, deadline=None)
@given(dags())
def test_topo_order_puts_every_need_first(stages):
    order = topo_order(list(stages))
    assert sorted(order) == sorted(s.id for s in stages)
    pos = {sid: i for i, sid in enumerate(order)}
    for s in stages:
        for need in s.needs:
            assert pos[need] < pos[s.id]


@settings(max_examples=100, deadline=None)
@given(dags())
def test_topo_order_is_deterministic(stages):
    assert topo_order(list(stages)) == topo_order(list(stages))
