# triggers.py
from __future__ import annotations

from dataclasses import dataclass
from fnmatch import fnmatch
from typing import Iterable, Sequence, Tuple

from .model import RunContext

EVENTS = ("push", "pull_request", "merge_group", "manual")


def _strip_ref(ref: str) -> str:
    for prefix in ("refs/heads/", "refs/tags/"):
        if ref.startswith(prefix):
            return ref[len(prefix):]
    return ref


def _any_match(value: str, patterns: Sequence[str]) -> bool:
    return any(fnmatch(value, p) for p in patterns)


@dataclass(frozen=True)
class EventFilter:
    """
    One `on.<event>` entry.

    Branch filters look at the target branch: the pushed branch for `push`,
    the base branch for `pull_request` and `merge_group`. Path filters pass
    when the changed files are unknown (empty).
    """
    event: str
    branches: Tuple[str, ...] = ()
    branches_ignore: Tuple[str, ...] = ()
    paths: Tuple[str, ...] = ()
    paths_ignore: Tuple[str, ...] = ()

    def target_branch(self, ctx: RunContext) -> str:
        if self.event in ("pull_request", "merge_group") and ctx.base_ref:
            return _strip_ref(ctx.base_ref)
        return ctx.branch

    def explain(self, ctx: RunContext) -> str | None:
        """None when the filter matches, otherwise why it does not."""
        if ctx.event != self.event:
            return f"event {ctx.event} is not {self.event}"

        branch = self.target_branch(ctx)
        if self.branches and not _any_match(branch, self.branches):
            return f"branch {branch!r} not in {list(self.branches)}"
        if self.branches_ignore and _any_match(branch, self.branches_ignore):
            return f"branch {branch!r} is ignored"

        files = list(ctx.changed_files)
        if not files:
            return None
        if self.paths_ignore:
            files = [f for f in files if not _any_match(f, self.paths_ignore)]
            if not files:
                return "every changed file is in paths_ignore"
        if self.paths and not any(_any_match(f, self.paths) for f in files):
            return f"no changed file matches {list(self.paths)}"
        return None

    def matches(self, ctx: RunContext) -> bool:
        return self.explain(ctx) is None


@dataclass(frozen=True)
class Triggers:
    filters: Tuple[EventFilter, ...] = ()

    def matches(self, ctx: RunContext) -> bool:
        return any(f.matches(ctx) for f in self.filters)

    def explain(self, ctx: RunContext) -> str:
        if not self.filters:
            return "no triggers declared"
        reasons = []
        for f in self.filters:
            why = f.explain(ctx)
            if why is None:
                return f"triggered by {f.event}"
            reasons.append(why)
        return "; ".join(reasons)

    @property
    def events(self) -> Tuple[str, ...]:
        return tuple(f.event for f in self.filters)


def _tuple(values: Iterable[str] | None) -> Tuple[str, ...]:
    return tuple(values or ())


def push(branches=None, *, branches_ignore=None, paths=None, paths_ignore=None) -> EventFilter:
    return EventFilter("push", _tuple(branches), _tuple(branches_ignore), _tuple(paths), _tuple(paths_ignore))


def pull_request(branches=None, *, branches_ignore=None, paths=None, paths_ignore=None) -> EventFilter:
    return EventFilter(
        "pull_request", _tuple(branches), _tuple(branches_ignore), _tuple(paths), _tuple(paths_ignore)
    )


def merge_group(branches=None) -> EventFilter:
    return EventFilter("merge_group", _tuple(branches))


def manual() -> EventFilter:
    return EventFilter("manual")


def on(*filters: EventFilter) -> Triggers:
    return Triggers(tuple(filters))


__all__ = ["EVENTS", "EventFilter", "Triggers", "on", "push", "pull_request", "merge_group", "manual"]
