import json
import logging

from relayci.logs import HumanFormatter, JsonFormatter, configure_logging, current_context, log_context


def _record(message="hello"):
    return logging.LogRecord("relayci.scheduler", logging.INFO, __file__, 1, message, (), None)


def test_log_context_nests_and_restores():
    assert current_context().run_id is None
    with log_context(run_id="r1"):
        with log_context(job_id="build") as ctx:
            assert (ctx.run_id, ctx.job_id) == ("r1", "build")
        assert current_context().job_id is None
    assert current_context().run_id is None


def test_json_formatter_includes_context():
    with log_context(run_id="r1", job_id="test[os=linux]"):
        data = json.loads(JsonFormatter().format(_record()))
    assert data["level"] == "INFO"
    assert data["logger"] == "relayci.scheduler"
    assert data["message"] == "hello"
    assert data["context"] == {"run_id": "r1", "job_id": "test[os=linux]"}


def test_human_formatter_tags_run_and_job():
    with log_context(run_id="r1", job_id="lint"):
        line = HumanFormatter().format(_record("step done"))
    assert "relayci.scheduler [run=r1, job=lint]: step done" in line


def test_configure_logging_installs_a_single_handler():
    configure_logging("debug")
    configure_logging("info", json_output=True)
    log = logging.getLogger("relayci")
    assert len(log.handlers) == 1
    assert isinstance(log.handlers[0].formatter, JsonFormatter)
    assert log.level == logging.INFO
    assert log.propagate is False
