from relayci.model import RunContext
from relayci.triggers import EventFilter, manual, merge_group, on, pull_request, push


def test_push_branch_filters():
    f = push(branches=["main", "release/*"])
    assert f.matches(RunContext(event="push", ref="refs/heads/main"))
    assert f.matches(RunContext(event="push", ref="refs/heads/release/2.0"))
    assert not f.matches(RunContext(event="push", ref="refs/heads/feature/x"))
    assert not f.matches(RunContext(event="pull_request", ref="refs/heads/main"))


def test_branches_ignore():
    f = push(branches_ignore=["dependabot/**"])
    assert not f.matches(RunContext(event="push", ref="refs/heads/dependabot/pip/click"))
    assert f.matches(RunContext(event="push", ref="refs/heads/main"))


def test_pull_request_filters_on_the_target_branch():
    f = pull_request(branches=["main"])
    ctx = RunContext(event="pull_request", ref="refs/pull/7/merge", head_ref="feature/x", base_ref="main")
    assert f.matches(ctx)
    assert not f.matches(RunContext(event="pull_request", head_ref="main", base_ref="develop"))


def test_merge_group_uses_base_ref():
    f = merge_group(branches=["main"])
    assert f.matches(RunContext(event="merge_group", base_ref="refs/heads/main"))


def test_path_filters():
    f = push(paths=["src/**"], paths_ignore=["docs/**"])
    src = RunContext(event="push", ref="refs/heads/main", changed_files=("src/relayci/cli.py", "README.md"))
    docs = RunContext(event="push", ref="refs/heads/main", changed_files=("docs/index.md",))
    other = RunContext(event="push", ref="refs/heads/main", changed_files=("README.md",))

    assert f.matches(src)
    assert f.explain(docs) == "every changed file is in paths_ignore"
    assert "no changed file matches" in f.explain(other)


def test_unknown_changed_files_pass_path_filters():
    f = push(paths=["src/**"])
    assert f.matches(RunContext(event="push", ref="refs/heads/main"))


def test_triggers_match_any_filter_and_explain():
    triggers = on(push(branches=["main"]), manual())
    assert triggers.events == ("push", "manual")
    assert triggers.matches(RunContext(event="manual", ref="refs/heads/anything"))
    assert triggers.explain(RunContext(event="push", ref="refs/heads/main")) == "triggered by push"

    reason = triggers.explain(RunContext(event="pull_request"))
    assert "event pull_request is not push" in reason
    assert "event pull_request is not manual" in reason


def test_filter_without_constraints_matches_its_event():
    assert EventFilter("push").matches(RunContext(event="push", ref="refs/tags/v1.0"))
