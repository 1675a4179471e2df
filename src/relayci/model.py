# model.py
from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterable, List, Mapping, Optional, Tuple

if TYPE_CHECKING:
    from .conditions import Expr, Template
    from .triggers import Triggers


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    def __str__(self) -> str:
        return self.value


TERMINAL_STATUSES = frozenset(
    {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED, JobStatus.CANCELLED}
)


def combine_results(statuses: Iterable[JobStatus]) -> JobStatus:
    """
    Fold the results of every instance of one template into a single result.

    failed > cancelled > succeeded > skipped. Anything still in flight makes
    the combined result non-terminal.
    """
    seen = set(statuses)
    if not seen:
        return JobStatus.SKIPPED
    for live in (JobStatus.RUNNING, JobStatus.PENDING):
        if live in seen:
            return live
    for s in (JobStatus.FAILED, JobStatus.CANCELLED, JobStatus.SUCCEEDED):
        if s in seen:
            return s
    return JobStatus.SKIPPED


# ----------------------------------------------------------------------
# Run context
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class RunContext:
    """
    Event metadata for one triggered run.

    Passed explicitly into every condition, key and template evaluation.
    """
    event: str = "push"
    ref: str = ""
    sha: str = ""
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    workflow: str = ""
    head_ref: str = ""
    base_ref: str = ""
    actor: str = ""
    changed_files: Tuple[str, ...] = ()
    variables: Mapping[str, str] = field(default_factory=dict)

    @property
    def branch(self) -> str:
        ref = self.ref
        for prefix in ("refs/heads/", "refs/tags/"):
            if ref.startswith(prefix):
                return ref[len(prefix):]
        return ref

    def lookup(self, name: str) -> Any:
        # names reachable as `run.<name>` in expressions
        if name == "id":
            return self.run_id
        if name in RUN_FIELDS:
            return getattr(self, name)
        return None

    def with_workflow(self, workflow: str) -> "RunContext":
        if self.workflow:
            return self
        return replace(self, workflow=workflow)


RUN_FIELDS = frozenset(
    {"event", "ref", "branch", "sha", "run_id", "workflow", "head_ref", "base_ref", "actor"}
)


# ----------------------------------------------------------------------
# Definition (immutable once loaded)
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class Step:
    """A single opaque command inside a job."""
    name: str
    run: str
    cwd: str | None = None
    condition: Optional["Expr"] = None
    env: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ArtifactSpec:
    """A declared artifact. `path` is only meaningful to the shell executor."""
    name: str
    path: str | None = None


@dataclass(frozen=True)
class Matrix:
    axes: Tuple[Tuple[str, Tuple[Any, ...]], ...] = ()
    include: Tuple[Mapping[str, Any], ...] = ()
    exclude: Tuple[Mapping[str, Any], ...] = ()
    fail_fast: bool = True

    @property
    def axis_names(self) -> List[str]:
        return [name for name, _values in self.axes]

    def known_keys(self) -> set:
        keys = set(self.axis_names)
        for entry in self.include:
            keys.update(entry.keys())
        return keys


@dataclass(frozen=True)
class JobSpec:
    """
    A job template as written in the pipeline definition.

    `needs` names other templates. A template bound to a matrix expands into
    one JobInstance per combination.
    """
    id: str
    steps: Tuple[Step, ...]
    name: str | None = None
    needs: Tuple[str, ...] = ()
    condition: Optional["Expr"] = None
    env: Mapping[str, str] = field(default_factory=dict)
    inputs: Tuple[ArtifactSpec, ...] = ()
    outputs: Tuple[ArtifactSpec, ...] = ()
    matrix: Optional[Matrix] = None
    timeout: float | None = None
    allow_skipped_needs: bool = False

    @property
    def display_name(self) -> str:
        return self.name or self.id


@dataclass(frozen=True)
class JobInstance:
    """A concrete, schedulable job. Matrix values are already rendered in."""
    id: str
    template: str
    name: str
    steps: Tuple[Step, ...]
    needs: Tuple[str, ...] = ()
    condition: Optional["Expr"] = None
    env: Mapping[str, str] = field(default_factory=dict)
    inputs: Tuple[ArtifactSpec, ...] = ()
    outputs: Tuple[ArtifactSpec, ...] = ()
    timeout: float | None = None
    allow_skipped_needs: bool = False
    matrix_values: Mapping[str, Any] = field(default_factory=dict)
    fail_fast: bool = False


@dataclass(frozen=True)
class ConcurrencyGroup:
    group: "Template"
    cancel_in_progress: bool = False

    def key_for(self, context: RunContext, env: Mapping[str, str] | None = None) -> str:
        from .conditions import EvalScope

        return self.group.render(EvalScope(context=context, env=env or {}))


@dataclass(frozen=True)
class RequiredCheck:
    """A gating check: a job id (or display name) whose outcome gates the pipeline."""
    job: str
    allow_skipped: bool = False


NOTIFY_WHEN = ("always", "failure", "success")


@dataclass(frozen=True)
class NotifyPolicy:
    when: str = "always"


@dataclass(frozen=True)
class PipelineDefinition:
    name: str
    jobs: Tuple[JobSpec, ...]
    triggers: Optional["Triggers"] = None
    env: Mapping[str, str] = field(default_factory=dict)
    concurrency: Optional[ConcurrencyGroup] = None
    required: Tuple[RequiredCheck, ...] = ()
    notify: NotifyPolicy = field(default_factory=NotifyPolicy)
    source: str | None = None

    def job(self, job_id: str) -> JobSpec:
        for j in self.jobs:
            if j.id == job_id:
                return j
        raise KeyError(job_id)

    def resolve_gate(self, gate: str) -> JobSpec | None:
        """Find a template by id first, then by display name."""
        for j in self.jobs:
            if j.id == gate:
                return j
        for j in self.jobs:
            if j.name == gate:
                return j
        return None

    def is_triggered_by(self, context: RunContext) -> bool:
        if self.triggers is None:
            return True
        return self.triggers.matches(context)

