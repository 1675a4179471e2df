import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from relayci.cli import cli

FIXTURES = Path(__file__).parent / "fixtures"

LOCAL_PIPELINE = """
name: local
on:
  push:
    branches: [main]
jobs:
  build:
    steps:
      - echo built > built.txt
  check:
    needs: build
    steps:
      - test -f built.txt
  release:
    needs: check
    if: run.branch == 'release'
    steps:
      - echo releasing
required: [check]
"""


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    return tmp_path


def _write(path, text):
    path.write_text(text, encoding="utf-8")
    return path


def test_run_local_pipeline(workspace):
    _write(workspace / "relayci.yaml", LOCAL_PIPELINE)
    result = CliRunner().invoke(cli, ["run", "--ref", "main"])

    assert result.exit_code == 0, result.output
    assert "RUN STARTED" in result.output
    assert "PIPELINE: SUCCEEDED" in result.output
    assert "release: SKIPPED" in result.output
    assert (workspace / "built.txt").exists()


def test_run_json_output(workspace):
    _write(workspace / "relayci.yaml", LOCAL_PIPELINE)
    result = CliRunner().invoke(cli, ["run", "--ref", "main", "--json", "--var", "who=ci"])

    assert result.exit_code == 0, result.output
    data = json.loads(result.stdout)
    assert data["pipeline"] == "local"
    assert data["jobs"] == {"build": "succeeded", "check": "succeeded", "release": "skipped"}


def test_failing_run_exits_non_zero(workspace):
    _write(
        workspace / "relayci.yaml",
        "jobs:\n  build:\n    steps:\n      - name: compile\n        run: exit 4\n",
    )
    result = CliRunner().invoke(cli, ["run", "--ref", "main"])

    assert result.exit_code == 1
    assert "JOB FAILED: build" in result.output
    assert "exit=4" in result.output
    assert "PIPELINE: FAILED" in result.output


def test_untriggered_run_exits_zero(workspace):
    _write(workspace / "relayci.yaml", LOCAL_PIPELINE)
    result = CliRunner().invoke(cli, ["run", "--ref", "feature/x"])

    assert result.exit_code == 0
    assert "NOT TRIGGERED: local" in result.output
    assert not (workspace / "built.txt").exists()


def test_plan_lists_stages(workspace):
    _write(workspace / "relayci.yaml", LOCAL_PIPELINE)
    result = CliRunner().invoke(cli, ["plan", "--ref", "main"])

    assert result.exit_code == 0, result.output
    assert "Stage 1:" in result.output
    assert "  build (runs)" in result.output
    assert "  check (runs)" in result.output
    assert "  release (skipped: condition false)" in result.output
    assert not (workspace / "built.txt").exists()


def test_plan_expands_matrices():
    result = CliRunner().invoke(
        cli, ["plan", "--pipeline", str(FIXTURES / "ci.pipeline.yaml"), "--ref", "main"]
    )
    assert result.exit_code == 0, result.output
    assert "test[os=macos,backend=exec] (Test (macos))" in result.output


def test_validate_reports_each_file(workspace):
    bad = _write(workspace / "bad.pipeline.yaml", "jobs: {a: {steps: [x], needs: [b]}}")
    result = CliRunner().invoke(cli, ["validate", str(FIXTURES / "ci.pipeline.yaml"), str(bad)])

    assert result.exit_code == 1
    assert "OK" in result.output
    assert "missing job" in result.output


def test_missing_pipeline_file(workspace):
    result = CliRunner().invoke(cli, ["run"])
    assert result.exit_code == 1
    assert "No pipeline file found" in result.output


def test_ambiguous_pipeline_files(workspace):
    _write(workspace / "relayci.yaml", LOCAL_PIPELINE)
    _write(workspace / "nightly.pipeline.yaml", LOCAL_PIPELINE)
    result = CliRunner().invoke(cli, ["validate"])
    assert result.exit_code == 1
    assert "Multiple pipeline files found" in result.output


def test_bad_var_is_a_usage_error(workspace):
    _write(workspace / "relayci.yaml", LOCAL_PIPELINE)
    result = CliRunner().invoke(cli, ["run", "--var", "novalue"])
    assert result.exit_code == 2


class _Response:
    def __init__(self, payload):
        self._payload = payload

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def read(self):
        return json.dumps(self._payload).encode("utf-8")


def test_submit_posts_definition(workspace, monkeypatch):
    _write(workspace / "relayci.yaml", LOCAL_PIPELINE)
    sent = {}

    def fake_urlopen(req):
        sent["url"] = req.full_url
        sent["body"] = json.loads(req.data.decode("utf-8"))
        return _Response({"run_id": "abc123", "state": "queued", "triggered": True, "jobs": ["build"]})

    monkeypatch.setattr("urllib.request.urlopen", fake_urlopen)
    result = CliRunner().invoke(cli, ["submit", "--api", "http://ci.local/", "--ref", "main"])

    assert result.exit_code == 0, result.output
    assert sent["url"] == "http://ci.local/runs"
    assert sent["body"]["definition"] == LOCAL_PIPELINE
    assert sent["body"]["context"]["ref"] == "refs/heads/main"
    assert "Submitted local to http://ci.local" in result.output
    assert "Run ID: abc123" in result.output


def test_submit_reports_untriggered_run(workspace, monkeypatch):
    _write(workspace / "relayci.yaml", LOCAL_PIPELINE)
    monkeypatch.setattr(
        "urllib.request.urlopen",
        lambda req: _Response({"run_id": "abc124", "state": "finished", "triggered": False, "jobs": []}),
    )
    result = CliRunner().invoke(cli, ["submit", "--api", "http://ci.local", "--ref", "feature/x"])

    assert result.exit_code == 0, result.output
    assert "Not triggered by this event." in result.output
