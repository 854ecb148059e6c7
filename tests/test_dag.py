from __future__ import annotations

import pytest

from ciforge import job, sh
from ciforge.dag import DependencyGraph, expand_matrix
from ciforge.errors import CycleError, WorkflowError


def _j(name, needs=None, **kw):
    return job(name, sh("noop", "true"), needs=needs, **kw)


def diamond():
    return [
        _j("A"),
        _j("B", needs="A"),
        _j("C", needs="A"),
        _j("D", needs=["B", "C"]),
    ]


def test_cycle_is_rejected_and_named():
    jobs = [_j("a", needs="c"), _j("b", needs="a"), _j("c", needs="b")]
    with pytest.raises(CycleError) as exc:
        DependencyGraph.build(jobs)
    cycle = exc.value.cycle
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"a", "b", "c"}
    assert "Dependency cycle detected" in str(exc.value)


def test_self_dependency_is_a_cycle():
    with pytest.raises(CycleError) as exc:
        DependencyGraph.build([_j("a", needs="a")])
    assert exc.value.cycle == ["a", "a"]


def test_cycle_error_is_a_workflow_error():
    with pytest.raises(WorkflowError):
        DependencyGraph.build([_j("x", needs="y"), _j("y", needs="x")])


def test_missing_dependency():
    with pytest.raises(WorkflowError, match="missing job 'ghost'"):
        DependencyGraph.build([_j("a", needs="ghost")])


def test_duplicate_job_names():
    with pytest.raises(WorkflowError, match="Duplicate"):
        DependencyGraph.build([_j("a"), _j("a")])


def test_ready_jobs_follow_dependencies():
    g = DependencyGraph.build(diamond())
    assert g.ready_jobs(set()) == {"A"}
    assert g.ready_jobs({"A"}) == {"B", "C"}
    assert g.ready_jobs({"A", "B"}, started={"C"}) == set()
    assert g.ready_jobs({"A", "B", "C"}) == {"D"}
    assert g.ready_jobs({"A", "B", "C", "D"}) == set()


def test_levels_group_parallel_jobs():
    g = DependencyGraph.build(diamond())
    assert g.levels() == [["A"], ["B", "C"], ["D"]]


def test_dependents_and_dependencies():
    g = DependencyGraph.build(diamond())
    assert g.dependencies("D") == {"B", "C"}
    assert g.dependents("A") == {"B", "C"}
    assert len(g) == 4
    assert "C" in g and "Z" not in g


def test_matrix_expands_into_instances():
    g = DependencyGraph.build(
        [
            _j("test", matrix={"node": [18, 20], "os": ["linux", "mac"]}),
            _j("deploy", needs="test"),
        ]
    )
    ids = g.instances_of("test")
    assert ids == [
        "test[node=18,os=linux]",
        "test[node=18,os=mac]",
        "test[node=20,os=linux]",
        "test[node=20,os=mac]",
    ]
    # a dependent waits for every combination
    assert g.dependencies("deploy") == set(ids)
    assert g.siblings("test[node=18,os=linux]") == ids[1:]
    assert g.instance("test[node=20,os=mac]").matrix_values == {"node": 20, "os": "mac"}


def test_expand_matrix_include_and_exclude():
    combos = expand_matrix(
        {
            "node": [18, 20],
            "os": ["linux", "windows"],
            "exclude": [{"node": 18, "os": "windows"}],
            "include": [{"node": 22, "os": "linux"}],
        }
    )
    assert [dict(c) for c in combos] == [
        {"node": 18, "os": "linux"},
        {"node": 20, "os": "linux"},
        {"node": 20, "os": "windows"},
        {"node": 22, "os": "linux"},
    ]


def test_empty_matrix_axis_is_rejected():
    with pytest.raises(WorkflowError, match="no values"):
        DependencyGraph.build([_j("t", matrix={"node": []})])


def test_include_matching_an_existing_combination_in_other_key_order():
    combos = expand_matrix({"node": [18, 20], "os": ["linux"], "include": [{"os": "linux", "node": 20}]})
    assert len(combos) == 2

    g = DependencyGraph.build([_j("t", matrix={"node": [18], "include": [{"os": "mac", "node": 22}]})])
    assert [i.id for i in g.instances] == ["t[node=18]", "t[node=22,os=mac]"]


@pytest.mark.parametrize(
    "matrix, message",
    [
        ({"node": "20"}, "must be a list"),
        ({"node": 20}, "must be a list"),
        ({"node": [18], "include": {"node": 22}}, "include must be a list"),
        ({"node": [18], "exclude": ["node=18"]}, "exclude entries must be mappings"),
    ],
)
def test_malformed_matrix_is_a_workflow_error(matrix, message):
    with pytest.raises(WorkflowError, match=message):
        DependencyGraph.build([_j("t", matrix=matrix)])
