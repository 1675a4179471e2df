from pathlib import Path

import pytest

from relayci.errors import CycleError, DefinitionError
from relayci.loader import definition_from_dict, load_definition, parse_definition
from relayci.matrix import expand
from relayci.model import RunContext

FIXTURES = Path(__file__).parent / "fixtures"


def test_load_full_yaml_pipeline():
    definition = load_definition(FIXTURES / "ci.pipeline.yaml")

    assert definition.name == "ci"
    assert [j.id for j in definition.jobs] == ["lint", "test", "e2e"]
    assert definition.env == {"CARGO_TERM_COLOR": "always"}
    assert definition.notify.when == "failure"
    assert definition.source.endswith("ci.pipeline.yaml")

    assert definition.triggers.events == ("push", "pull_request", "manual")
    push = definition.triggers.filters[0]
    assert push.branches == ("main",)
    assert push.paths_ignore == ("docs/**",)

    assert definition.concurrency.cancel_in_progress
    assert definition.concurrency.key_for(RunContext(ref="refs/heads/main")) == "ci-main"

    assert [(r.job, r.allow_skipped) for r in definition.required] == [("test", False), ("e2e", True)]


def test_yaml_jobs_steps_and_matrix():
    definition = load_definition(FIXTURES / "ci.pipeline.yaml")
    lint, test, e2e = definition.jobs

    assert [s.name for s in lint.steps] == ["cargo fmt --check", "clippy"]
    assert test.needs == ("lint",)
    assert test.timeout == 600.0
    assert test.matrix.axis_names == ["os", "backend"]
    assert test.matrix.fail_fast is False
    assert e2e.allow_skipped_needs
    assert e2e.steps[1].condition is not None

    instances = expand(test, context=RunContext(), env=definition.env)
    assert [i.id for i in instances] == [
        "test[os=linux,backend=exec]",
        "test[os=linux,backend=sp1]",
        "test[os=macos,backend=exec]",
    ]
    first = instances[0]
    assert first.name == "Test (linux)"
    assert first.env == {"BACKEND": "exec"}
    assert first.steps[0].run == "cargo test --features exec"
    assert first.outputs[0].name == "report-linux-exec"


def test_minimal_document_defaults():
    definition = parse_definition(
        """
jobs:
  build:
    steps:
      - make
"""
    )
    assert definition.name == "pipeline"
    assert definition.triggers is None
    assert definition.concurrency is None
    assert definition.notify.when == "always"
    assert definition.is_triggered_by(RunContext(event="manual"))


def test_trigger_shorthands():
    assert parse_definition("on: push\njobs: {a: {steps: [x]}}").triggers.events == ("push",)
    assert parse_definition("on: [push, pull_request]\njobs: {a: {steps: [x]}}").triggers.events == (
        "push",
        "pull_request",
    )


@pytest.mark.parametrize(
    "doc, fragment",
    [
        ("", "Empty pipeline"),
        ("- a\n- b", "must be a mapping"),
        ("name: x", "'jobs'"),
        ("jobs: {a: {steps: []}}", "at least one step"),
        ("jobs: {a: {steps: [{name: x}]}}", "missing 'run'"),
        ("jobs: {a: {steps: [x], runs-on: linux}}", "unknown key"),
        ("jobz: {}\njobs: {a: {steps: [x]}}", "unknown key"),
        ("jobs: {a: {steps: [x], timeout: -1}}", "timeout"),
        ("jobs: {a: {steps: [x], if: 'secrets.x'}}", "unknown name"),
        ("jobs: {a: {steps: [x], matrix: {os: linux}}}", "must be a list"),
        ("jobs: {a: {steps: ['echo ${{ matrix.os }}']}}", "undefined matrix axis"),
        ("notify: sometimes\njobs: {a: {steps: [x]}}", "notify.when"),
        ("on: {push: {tags: [v1]}}\njobs: {a: {steps: [x]}}", "unknown key"),
        ("on: {pul_request: {}}\njobs: {a: {steps: [x]}}", "unknown event"),
        ("on: [push, pull-request]\njobs: {a: {steps: [x]}}", "unknown event"),
        ("jobs: {a: {steps: [x], needs: [b]}}", "missing job"),
        ("jobs: {a: [oops", "Invalid YAML"),
    ],
)
def test_invalid_documents(doc, fragment):
    with pytest.raises(DefinitionError) as exc:
        parse_definition(doc)
    assert fragment in exc.value.message


def test_cycle_in_yaml_is_reported():
    with pytest.raises(CycleError) as exc:
        definition_from_dict(
            {
                "jobs": {
                    "a": {"steps": ["x"], "needs": ["b"]},
                    "b": {"steps": ["x"], "needs": ["a"]},
                }
            }
        )
    assert set(exc.value.cycle) == {"a", "b"}


def test_load_python_pipeline(tmp_path):
    module = tmp_path / "relayci_pipeline.py"
    module.write_text(
        "from relayci import job, pipeline, sh\n"
        "\n"
        "def definition():\n"
        "    return pipeline('py', job('a', sh('one', 'true')))\n",
        encoding="utf-8",
    )
    assert load_definition(module).name == "py"

    constant = tmp_path / "const.py"
    constant.write_text(
        "from relayci import job, pipeline, sh\nPIPELINE = pipeline('const', job('a', sh('one', 'true')))\n",
        encoding="utf-8",
    )
    assert load_definition(constant).name == "const"


def test_python_module_must_produce_a_definition(tmp_path):
    module = tmp_path / "empty.py"
    module.write_text("x = 1\n", encoding="utf-8")
    with pytest.raises(DefinitionError):
        load_definition(module)


def test_unsupported_suffix_and_missing_file(tmp_path):
    other = tmp_path / "pipeline.toml"
    other.write_text("", encoding="utf-8")
    with pytest.raises(DefinitionError):
        load_definition(other)
    with pytest.raises(FileNotFoundError):
        load_definition(tmp_path / "nope.yaml")
