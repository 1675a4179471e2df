import pytest

from relayci import build, job, matrix, pipeline, sh
from relayci.errors import CycleError, DefinitionError
from relayci.model import ArtifactSpec, RequiredCheck, RunContext
from relayci.triggers import on, push


def test_job_collects_steps_and_applies_default_cwd():
    spec = job(
        "build",
        sh("configure", "./configure", cwd="src"),
        sh("make", "make -j4"),
        cwd="work",
        env={"JOBS": 4},
        outputs=["bin", ("logs", "build/logs")],
    )
    assert [s.cwd for s in spec.steps] == ["src", "work"]
    assert spec.env == {"JOBS": "4"}
    assert spec.outputs == (ArtifactSpec("bin"), ArtifactSpec("logs", "build/logs"))


def test_job_needs_a_step_and_a_positive_timeout():
    with pytest.raises(DefinitionError):
        job("empty")
    with pytest.raises(DefinitionError):
        job("slow", sh("sleep", "sleep 1"), timeout=0)


def test_job_rejects_unknown_matrix_axis():
    with pytest.raises(DefinitionError):
        job("t", sh("test", "pytest --os ${{ matrix.os }}"), matrix=matrix(python=["3.12"]))


def test_matrix_merges_mapping_and_keywords():
    m = matrix({"os": ["linux", "macos"]}, backend=["exec"], exclude=[{"os": "macos"}], fail_fast=False)
    assert m.axis_names == ["os", "backend"]
    assert m.fail_fast is False


def test_builder_matches_functional_job():
    built = (
        build("deploy")
        .named("Deploy")
        .depends_on("test")
        .define_step("push", "make deploy")
        .when("success() && run.branch == 'main'")
        .with_env(STAGE="prod")
        .consumes("bin")
        .with_timeout(300)
        .allow_skipped()
        .build()
    )
    assert built.name == "Deploy"
    assert built.needs == ("test",)
    assert built.condition is not None
    assert built.env == {"STAGE": "prod"}
    assert built.inputs == (ArtifactSpec("bin"),)
    assert built.timeout == 300
    assert built.allow_skipped_needs


def test_pipeline_wires_triggers_concurrency_and_gates():
    definition = pipeline(
        "ci",
        job("lint", sh("ruff", "ruff check .")),
        job("test", sh("pytest", "pytest -q"), needs=["lint"]),
        on=on(push(branches=["main"])),
        concurrency="ci-${{ run.branch }}",
        cancel_in_progress=True,
        required=["test", RequiredCheck("lint", allow_skipped=True)],
        notify="failure",
    )
    assert definition.triggers.events == ("push",)
    assert definition.concurrency.key_for(RunContext(ref="refs/heads/main")) == "ci-main"
    assert definition.concurrency.cancel_in_progress
    assert [(r.job, r.allow_skipped) for r in definition.required] == [("test", False), ("lint", True)]
    assert definition.notify.when == "failure"


def test_pipeline_validates_the_graph():
    with pytest.raises(DefinitionError) as exc:
        pipeline("ci", job("test", sh("pytest", "pytest"), needs=["build"]))
    assert "missing job" in exc.value.message

    with pytest.raises(CycleError):
        pipeline(
            "ci",
            job("a", sh("a", "true"), needs=["b"]),
            job("b", sh("b", "true"), needs=["a"]),
        )

    with pytest.raises(DefinitionError):
        pipeline("ci", job("a", sh("a", "true")), notify="sometimes")
