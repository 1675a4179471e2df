import pytest

from relayci.conditions import (
    EvalScope,
    Template,
    always,
    branch,
    cancelled,
    event,
    failure,
    needs_result,
    parse_condition,
    ref,
    success,
)
from relayci.errors import DefinitionError
from relayci.model import JobStatus, RunContext


def _scope(**kwargs):
    kwargs.setdefault("context", RunContext(event="push", ref="refs/heads/main", sha="abc"))
    return EvalScope(**kwargs)


def test_run_fields_and_boolean_operators():
    expr = parse_condition("run.branch == 'main' && run.event == 'push'")
    assert expr.holds(_scope())

    expr = parse_condition("run.branch == 'dev' || run.event == 'pull_request'")
    assert not expr.holds(_scope())


def test_wrapped_condition_is_unwrapped():
    assert parse_condition("${{ run.branch == 'main' }}").holds(_scope())


def test_string_comparison_ignores_case():
    assert parse_condition("run.branch == 'MAIN'").holds(_scope())


def test_quoted_strings_escape_single_quotes():
    expr = parse_condition("vars.greeting == 'it''s'")
    ctx = RunContext(variables={"greeting": "it's"})
    assert expr.holds(_scope(context=ctx))


def test_needs_result_reads_combined_status():
    expr = parse_condition("needs.build.result == 'failed'")
    assert expr.holds(_scope(needs={"build": JobStatus.FAILED}))
    assert not expr.holds(_scope(needs={"build": JobStatus.SUCCEEDED}))


def test_status_functions_follow_needs():
    needs_ok = {"a": JobStatus.SUCCEEDED, "b": JobStatus.SUCCEEDED}
    needs_bad = {"a": JobStatus.SUCCEEDED, "b": JobStatus.FAILED}
    needs_cancelled = {"a": JobStatus.CANCELLED}

    assert parse_condition("success()").holds(_scope(needs=needs_ok))
    assert not parse_condition("success()").holds(_scope(needs=needs_bad))
    assert parse_condition("failure()").holds(_scope(needs=needs_bad))
    assert parse_condition("cancelled()").holds(_scope(needs=needs_cancelled))
    assert parse_condition("always()").holds(_scope(needs=needs_bad))


def test_success_accepts_skipped_needs_only_when_allowed():
    needs = {"lint": JobStatus.SKIPPED}
    assert not success().holds(_scope(needs=needs))
    assert success().holds(_scope(needs=needs, allow_skipped_needs=True))


def test_step_scope_uses_job_status():
    assert success().holds(_scope(job_status=JobStatus.RUNNING))
    assert not success().holds(_scope(job_status=JobStatus.FAILED))
    assert failure().holds(_scope(job_status=JobStatus.FAILED))


def test_functions_and_negation():
    ctx = RunContext(ref="refs/heads/release/1.4")
    assert parse_condition("startsWith(run.branch, 'release/')").holds(_scope(context=ctx))
    assert parse_condition("contains(run.ref, 'release')").holds(_scope(context=ctx))
    assert parse_condition("!endsWith(run.branch, '.0')").holds(_scope(context=ctx))
    assert parse_condition("!cancelled()").uses_status_function()


def test_matrix_env_and_vars_refs():
    expr = parse_condition("matrix.os == 'linux' && env.CI == 'true' && vars.tier == 'gold'")
    ctx = RunContext(variables={"tier": "gold"})
    scope = _scope(context=ctx, matrix={"os": "linux"}, env={"CI": "true"})
    assert expr.holds(scope)


@pytest.mark.parametrize(
    "text, fragment",
    [
        ("secrets.token == 'x'", "unknown name"),
        ("frobnicate()", "unknown function"),
        ("success(1)", "takes 0 argument"),
        ("needs.build == 'x'", "needs.<job>.result"),
        ("run.branch ==", "unexpected end"),
        ("run.branch $ 'x'", "unexpected character"),
        ("", "empty expression"),
    ],
)
def test_malformed_conditions_are_rejected(text, fragment):
    with pytest.raises(DefinitionError) as exc:
        parse_condition(text)
    assert fragment in exc.value.message


def test_booleans_and_expressions_pass_through():
    assert parse_condition(True).holds(_scope())
    assert not parse_condition(False).holds(_scope())
    expr = always()
    assert parse_condition(expr) is expr


def test_builders_compose():
    expr = branch("main") & event("push")
    assert expr.holds(_scope())
    assert not (branch("main") & ~event("push")).holds(_scope())
    assert (branch("dev") | event("push")).holds(_scope())
    assert ref("run.sha").eq("abc").holds(_scope())
    assert needs_result("build").ne("failed").holds(_scope(needs={"build": JobStatus.SUCCEEDED}))
    assert cancelled().uses_status_function()
    assert not branch("main").uses_status_function()


def test_template_renders_placeholders():
    tpl = Template.parse("py${{ matrix.py }} on ${{ run.branch }}")
    assert tpl.refs() == [("matrix", "py"), ("run", "branch")]
    assert tpl.render(_scope(matrix={"py": "3.12"})) == "py3.12 on main"
    assert not tpl.is_static


def test_template_renders_missing_values_as_empty():
    assert Template.parse("x-${{ vars.missing }}-y").render(_scope()) == "x--y"
    assert Template.parse("plain text").is_static


def test_run_id_is_reachable():
    ctx = RunContext(run_id="r-42")
    assert Template.parse("${{ run.id }}/${{ run.run_id }}").render(_scope(context=ctx)) == "r-42/r-42"
