from __future__ import annotations

import pytest

from relayci.dag import build_dag, find_cycle
from relayci.dsl import job, matrix, sh
from relayci.errors import CyclicDependency, InvalidSpec
from relayci.matrix import expand
from relayci.model import JobStatus


def _instances(*templates):
    out = []
    for t in templates:
        out.extend(expand(t))
    return out


def test_independent_jobs_are_all_ready():
    graph = build_dag(_instances(
        job("clippy", sh("c", "cargo clippy")),
        job("format", sh("f", "cargo fmt --check")),
        job("test", sh("t", "cargo test")),
        job("doc-tests", sh("d", "cargo test --doc")),
    ))
    assert graph.ready() == ["clippy", "format", "test", "doc-tests"]
    assert graph.topo_levels() == [["clippy", "format", "test", "doc-tests"]]


def test_dependencies_match_every_matrix_leg():
    graph = build_dag(_instances(
        job("build", sh("b", "make"), matrix=matrix(os=["linux", "mac"])),
        job("deploy", sh("d", "deploy"), needs=["build"]),
    ))
    assert graph.dependencies("deploy") == {"build (os=linux)", "build (os=mac)"}
    assert graph.dependents("build (os=mac)") == ["deploy"]
    assert graph.ready() == ["build (os=linux)", "build (os=mac)"]


def test_ready_requires_all_dependencies_succeeded():
    graph = build_dag(_instances(
        job("lint", sh("l", "ruff")),
        job("unit", sh("u", "pytest")),
        job("package", sh("p", "build"), needs=["lint", "unit"]),
    ))
    graph.instances["lint"].transition(JobStatus.SUCCEEDED)
    assert "package" not in graph.ready()

    graph.instances["unit"].transition(JobStatus.SUCCEEDED)
    assert graph.ready() == ["package"]


def test_failed_dependency_blocks_dependents():
    graph = build_dag(_instances(
        job("lint", sh("l", "ruff")),
        job("package", sh("p", "build"), needs=["lint"]),
    ))
    graph.instances["lint"].transition(JobStatus.FAILED)
    assert graph.ready() == []
    assert graph.blocked() == ["package"]


def test_topo_levels_follow_dependencies():
    graph = build_dag(_instances(
        job("a", sh("a", "a")),
        job("b", sh("b", "b"), needs=["a"]),
        job("c", sh("c", "c"), needs=["a"]),
        job("d", sh("d", "d"), needs=["b", "c"]),
    ))
    assert graph.topo_levels() == [["a"], ["b", "c"], ["d"]]


def test_missing_dependency_is_invalid():
    with pytest.raises(InvalidSpec, match="needs missing job 'nope'"):
        build_dag(_instances(job("a", sh("a", "a"), needs=["nope"])))


def test_duplicate_instances_are_invalid():
    a = job("a", sh("a", "a"))
    with pytest.raises(InvalidSpec, match="duplicate"):
        build_dag(_instances(a, a))


def test_cycle_is_named():
    with pytest.raises(CyclicDependency) as exc:
        build_dag(_instances(
            job("a", sh("a", "a"), needs=["c"]),
            job("b", sh("b", "b"), needs=["a"]),
            job("c", sh("c", "c"), needs=["b"]),
            job("d", sh("d", "d")),
        ))
    assert exc.value.cycle == ["a", "c", "b", "a"]
    assert str(exc.value) == "dependency cycle: a -> c -> b -> a"


def test_self_dependency_is_a_cycle():
    with pytest.raises(CyclicDependency, match="x -> x"):
        build_dag(_instances(job("x", sh("x", "x"), needs=["x"])))


def test_explicit_needs_override_template_needs():
    graph = build_dag(
        _instances(job("a", sh("a", "a")), job("b", sh("b", "b"))),
        needs={"b": ["a"]},
    )
    assert graph.dependencies("b") == {"a"}


def test_find_cycle_none_for_dag():
    assert find_cycle({"a": [], "b": ["a"], "c": ["a", "b"]}) is None
