import pytest

from relayci.dsl import job, matrix, sh
from relayci.errors import DefinitionError, ExpansionError
from relayci.matrix import MAX_COMBINATIONS, build_matrix, combinations, expand, instance_id, placeholder
from relayci.model import RunContext


def _test_job(m, **kwargs):
    return job(
        "test",
        sh("pytest on ${{ matrix.os }}", "pytest --py ${{ matrix.py }}"),
        matrix=m,
        **kwargs,
    )


def test_two_by_two_matrix_expands_to_four_instances():
    spec = _test_job(matrix(os=["linux", "macos"], py=["3.11", "3.12"]))
    jobs = expand(spec)

    assert [j.id for j in jobs] == [
        "test[os=linux,py=3.11]",
        "test[os=linux,py=3.12]",
        "test[os=macos,py=3.11]",
        "test[os=macos,py=3.12]",
    ]
    assert all(j.template == "test" for j in jobs)
    assert jobs[0].steps[0].name == "pytest on linux"
    assert jobs[3].steps[0].run == "pytest --py 3.12"
    assert jobs[2].matrix_values == {"os": "macos", "py": "3.11"}


def test_exclude_removes_matching_combination():
    spec = _test_job(
        matrix(os=["linux", "macos"], py=["3.11", "3.12"], exclude=[{"os": "macos", "py": "3.11"}])
    )
    ids = [j.id for j in expand(spec)]
    assert len(ids) == 3
    assert "test[os=macos,py=3.11]" not in ids


def test_include_extends_matches_and_adds_new_combinations():
    m = build_matrix(
        {"os": ["linux", "macos"]},
        include=[{"os": "linux", "arch": "arm64"}, {"os": "windows"}],
    )
    assert combinations(m) == [
        {"os": "linux", "arch": "arm64"},
        {"os": "macos"},
        {"os": "windows"},
    ]


def test_expansion_is_deterministic():
    spec = _test_job(matrix(os=["linux", "macos"], py=["3.11", "3.12"]))
    assert expand(spec) == expand(spec)


def test_template_without_matrix_yields_one_instance():
    spec = job("lint", sh("ruff", "ruff check ."), env={"REF": "${{ run.branch }}"})
    (inst,) = expand(spec, context=RunContext(ref="refs/heads/main"))
    assert inst.id == "lint"
    assert inst.env == {"REF": "main"}
    assert inst.matrix_values == {}


def test_undefined_axis_reference_is_a_definition_error():
    with pytest.raises(DefinitionError) as exc:
        _test_job(matrix(os=["linux"]))
    assert "py" in exc.value.message
    assert exc.value.job == "test"


def test_exclude_of_undefined_axis_is_a_definition_error():
    with pytest.raises(DefinitionError):
        job("t", sh("x", "true"), matrix=matrix(os=["linux"], exclude=[{"arch": "arm64"}]))


def test_axis_values_are_validated():
    with pytest.raises(DefinitionError):
        build_matrix({"os": []})
    with pytest.raises(DefinitionError):
        build_matrix({"os": "linux"})
    with pytest.raises(DefinitionError):
        build_matrix({"os": [{"name": "linux"}]})


def test_everything_excluded_raises_expansion_error():
    spec = job("t", sh("x", "true"), matrix=matrix(os=["linux"], exclude=[{"os": "linux"}]))
    with pytest.raises(ExpansionError):
        expand(spec)


def test_too_many_combinations_raise_expansion_error():
    spec = job(
        "t",
        sh("x", "true"),
        matrix=matrix(a=list(range(MAX_COMBINATIONS)), b=[1, 2]),
    )
    with pytest.raises(ExpansionError) as exc:
        expand(spec)
    assert str(MAX_COMBINATIONS) in exc.value.message


def test_instance_id_hashes_awkward_values():
    assert instance_id("t", {}) == "t"
    assert instance_id("t", {"flag": True}) == "t[flag=true]"
    long_id = instance_id("t", {"image": "x" * 100})
    assert long_id.startswith("t[image=")
    assert len(long_id) < 30
    assert instance_id("t", {"v": "a=b"}) != "t[v=a=b]"


def test_matrix_fail_fast_reaches_instances():
    spec = _test_job(matrix(os=["linux"], py=["3.12"], fail_fast=False))
    assert expand(spec)[0].fail_fast is False
    assert expand(job("solo", sh("x", "true")))[0].fail_fast is False


def test_placeholder_keeps_template_identity():
    spec = job("build", sh("make", "make"), needs=[])
    ph = placeholder(spec)
    assert ph.id == ph.template == "build"
