import pytest

from relayci.dsl import job, matrix, pipeline, sh
from relayci.errors import CycleError, DefinitionError
from relayci.graph import JobGraph, find_cycle
from relayci.matrix import expand
from relayci.model import JobStatus, RunContext

CTX = RunContext(event="push", ref="refs/heads/main")


def _graph(definition):
    return JobGraph.build(i for spec in definition.jobs for i in expand(spec, context=CTX))


def _step(name="run"):
    return sh(name, "true")


def test_cycle_is_rejected_with_its_members():
    with pytest.raises(CycleError) as exc:
        pipeline(
            "p",
            job("a", _step(), needs=["c"]),
            job("b", _step(), needs=["a"]),
            job("c", _step(), needs=["b"]),
        )
    cycle = exc.value.cycle
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"a", "b", "c"}
    assert "->" in exc.value.message
    assert exc.value.kind == "CycleError"


def test_find_cycle_returns_none_for_a_dag():
    assert find_cycle({"a": [], "b": ["a"], "c": ["a", "b"]}) is None
    assert find_cycle({"a": ["a"]}) == ["a", "a"]


def test_missing_need_is_a_definition_error():
    with pytest.raises(DefinitionError) as exc:
        pipeline("p", job("test", _step(), needs=["build"]))
    assert "missing job 'build'" in exc.value.message


def test_duplicate_job_ids_are_rejected():
    with pytest.raises(DefinitionError):
        pipeline("p", job("a", _step()), job("a", _step()))


def test_condition_reading_unneeded_job_is_rejected():
    with pytest.raises(DefinitionError):
        pipeline(
            "p",
            job("a", _step()),
            job("b", _step(), if_="needs.a.result == 'failed'"),
        )


def test_unknown_required_gate_is_rejected():
    with pytest.raises(DefinitionError):
        pipeline("p", job("a", _step()), required=["deploy"])


def test_concurrency_group_cannot_read_matrix():
    with pytest.raises(DefinitionError):
        pipeline("p", job("a", _step()), concurrency="ci-${{ matrix.os }}")


def test_needing_a_matrix_template_means_needing_every_instance():
    definition = pipeline(
        "p",
        job("lint", _step()),
        job("test", sh("t", "pytest ${{ matrix.py }}"), needs=["lint"], matrix=matrix(py=["3.11", "3.12"])),
        job("package", _step(), needs=["test"]),
    )
    g = _graph(definition)

    assert g.deps["package"] == {"test[py=3.11]", "test[py=3.12]"}
    assert g.levels() == [["lint"], ["test[py=3.11]", "test[py=3.12]"], ["package"]]
    assert g.descendants("lint") == {"test[py=3.11]", "test[py=3.12]", "package"}


def test_ready_requires_every_dependency_completed():
    definition = pipeline(
        "p",
        job("build", _step()),
        job("lint", _step()),
        job("test", _step(), needs=["build", "lint"]),
    )
    g = _graph(definition)

    assert g.ready([], context=CTX) == {"build", "lint"}
    assert g.ready(["build"], context=CTX, started=["lint"]) == set()
    assert g.ready(["build", "lint"], context=CTX) == {"test"}


def test_failed_dependency_skips_with_reason():
    definition = pipeline("p", job("build", _step()), job("test", _step(), needs=["build"]))
    g = _graph(definition)

    ev = g.evaluate({"build": JobStatus.FAILED}, CTX)
    assert ev.ready == []
    assert ev.skipped == [("test", "dependency failed")]


def test_cancelled_and_skipped_dependencies_have_their_own_reasons():
    definition = pipeline("p", job("build", _step()), job("test", _step(), needs=["build"]))
    g = _graph(definition)

    assert g.evaluate({"build": JobStatus.CANCELLED}, CTX).skipped == [("test", "dependency cancelled")]
    assert g.evaluate({"build": JobStatus.SKIPPED}, CTX).skipped == [("test", "dependency skipped")]


def test_always_and_failure_conditions_run_after_a_failure():
    definition = pipeline(
        "p",
        job("build", _step()),
        job("cleanup", _step(), needs=["build"], if_="always()"),
        job("report", _step(), needs=["build"], if_="failure()"),
        job("deploy", _step(), needs=["build"], if_="run.branch == 'main'"),
    )
    g = _graph(definition)

    ev = g.evaluate({"build": JobStatus.FAILED}, CTX)
    assert sorted(ev.ready) == ["cleanup", "report"]
    assert ev.skipped == [("deploy", "dependency failed")]

    ev = g.evaluate({"build": JobStatus.SUCCEEDED}, CTX)
    assert sorted(ev.ready) == ["cleanup", "deploy"]
    assert ev.skipped == [("report", "condition false")]


def test_allow_skipped_needs_runs_after_a_skipped_dependency():
    definition = pipeline(
        "p",
        job("docs", _step(), if_="run.branch == 'docs'"),
        job("publish", _step(), needs=["docs"], allow_skipped_needs=True),
    )
    g = _graph(definition)

    assert g.evaluate({"docs": JobStatus.SKIPPED}, CTX).ready == ["publish"]


def test_pending_dependencies_defer_the_decision():
    definition = pipeline("p", job("build", _step()), job("test", _step(), needs=["build"], if_="always()"))
    g = _graph(definition)

    ev = g.evaluate({"build": JobStatus.RUNNING}, CTX)
    assert ev.ready == [] and ev.skipped == []
