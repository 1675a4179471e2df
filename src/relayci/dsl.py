# src/relayci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .conditions import Expr, Template, parse_condition
from .errors import DefinitionError
from .graph import validate_definition
from .matrix import build_matrix, check_references
from .model import (
    NOTIFY_WHEN,
    ArtifactSpec,
    ConcurrencyGroup,
    JobSpec,
    Matrix,
    NotifyPolicy,
    PipelineDefinition,
    RequiredCheck,
    Step,
)
from .triggers import EventFilter, Triggers

Condition = Union[str, bool, Expr, None]
ArtifactLike = Union[str, ArtifactSpec, Tuple[str, str]]


# ---------------------------------------------------------------------
# Step helper
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    if_: Condition = None,
    env: Optional[Dict[str, str]] = None,
) -> Step:
    """Create a shell step."""
    return Step(
        name=name,
        run=cmd,
        cwd=cwd,
        condition=parse_condition(if_) if if_ is not None else None,
        env={k: str(v) for k, v in (env or {}).items()},
    )


def artifact(name: str, path: str | None = None) -> ArtifactSpec:
    return ArtifactSpec(name=name, path=path)


def _artifacts(items: Optional[Iterable[ArtifactLike]]) -> Tuple[ArtifactSpec, ...]:
    out: List[ArtifactSpec] = []
    for item in items or ():
        if isinstance(item, ArtifactSpec):
            out.append(item)
        elif isinstance(item, str):
            out.append(ArtifactSpec(item))
        else:
            name, path = item
            out.append(ArtifactSpec(name, path))
    return tuple(out)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

def matrix(
    axes: Optional[Mapping[str, Sequence[Any]]] = None,
    *,
    include: Sequence[Mapping[str, Any]] = (),
    exclude: Sequence[Mapping[str, Any]] = (),
    fail_fast: bool = True,
    **axis_kwargs: Sequence[Any],
) -> Matrix:
    """
    matrix({"os": ["linux", "macos"]}, exclude=[{"os": "macos"}])
    matrix(backend=["sp1", "exec"])
    """
    merged: Dict[str, Sequence[Any]] = dict(axes or {})
    merged.update(axis_kwargs)
    return build_matrix(merged, include=list(include), exclude=list(exclude), fail_fast=fail_fast)


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    id: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    name: str | None = None,
    needs: Optional[Sequence[str]] = None,
    if_: Condition = None,
    env: Optional[Dict[str, str]] = None,
    inputs: Optional[Iterable[ArtifactLike]] = None,
    outputs: Optional[Iterable[ArtifactLike]] = None,
    matrix: Optional[Matrix] = None,
    timeout: float | None = None,
    allow_skipped_needs: bool = False,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> JobSpec:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise DefinitionError(f"job({id!r}) must have at least one step", job=id)

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    if timeout is not None and timeout <= 0:
        raise DefinitionError(f"job({id!r}) timeout must be positive", job=id)

    spec = JobSpec(
        id=id,
        steps=tuple(steps_final),
        name=name,
        needs=tuple(needs or ()),
        condition=parse_condition(if_) if if_ is not None else None,
        env={k: str(v) for k, v in (env or {}).items()},
        inputs=_artifacts(inputs),
        outputs=_artifacts(outputs),
        matrix=matrix,
        timeout=timeout,
        allow_skipped_needs=allow_skipped_needs,
    )
    check_references(spec)
    return spec


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, id: str):
        self.id = id
        self._name: str | None = None
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._condition: Condition = None
        self._inputs: list[ArtifactLike] = []
        self._outputs: list[ArtifactLike] = []
        self._matrix: Optional[Matrix] = None
        self._timeout: float | None = None
        self._allow_skipped_needs = False

    def named(self, name: str):
        self._name = name
        return self

    def depends_on(self, *job_ids: str):
        self._needs.extend(job_ids)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, if_: Condition = None):
        self._steps.append(sh(name, run, cwd=cwd, if_=if_))
        return self

    def when(self, condition: Condition):
        self._condition = condition
        return self

    def with_env(self, **env):
        # values are strings in the process environment
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def consumes(self, *items: ArtifactLike):
        self._inputs.extend(items)
        return self

    def produces(self, *items: ArtifactLike):
        self._outputs.extend(items)
        return self

    def on_matrix(self, m: Matrix):
        self._matrix = m
        return self

    def with_timeout(self, seconds: float):
        self._timeout = seconds
        return self

    def allow_skipped(self, enabled: bool = True):
        self._allow_skipped_needs = enabled
        return self

    def build(self) -> JobSpec:
        return job(
            self.id,
            steps_list=self._steps,
            name=self._name,
            needs=self._needs,
            if_=self._condition,
            env=self._env,
            inputs=self._inputs,
            outputs=self._outputs,
            matrix=self._matrix,
            timeout=self._timeout,
            allow_skipped_needs=self._allow_skipped_needs,
        )


def build(id: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(id)


# ---------------------------------------------------------------------
# Pipeline helper (single-file story)
# ---------------------------------------------------------------------

def _required(items: Optional[Iterable[Union[str, RequiredCheck]]]) -> Tuple[RequiredCheck, ...]:
    out = []
    for item in items or ():
        out.append(item if isinstance(item, RequiredCheck) else RequiredCheck(str(item)))
    return tuple(out)


def pipeline(
    name: str,
    *jobs: JobSpec,
    on: Union[Triggers, Sequence[EventFilter], None] = None,
    env: Optional[Dict[str, str]] = None,
    concurrency: str | None = None,
    cancel_in_progress: bool = False,
    required: Optional[Iterable[Union[str, RequiredCheck]]] = None,
    notify: str = "always",
) -> PipelineDefinition:
    """
    Users can write:
        from relayci import pipeline, job, sh

        def definition():
            return pipeline(
                "ci",
                job("lint", sh("ruff", "ruff check .")),
                job("test", sh("pytest", "pytest -q"), needs=["lint"]),
                required=["test"],
            )
    """
    if notify not in NOTIFY_WHEN:
        raise DefinitionError(f"notify must be one of {list(NOTIFY_WHEN)}, got {notify!r}")

    if on is None or isinstance(on, Triggers):
        triggers = on
    else:
        triggers = Triggers(tuple(on))

    definition = PipelineDefinition(
        name=name,
        jobs=tuple(jobs),
        triggers=triggers,
        env={k: str(v) for k, v in (env or {}).items()},
        concurrency=(
            ConcurrencyGroup(Template.parse(concurrency), cancel_in_progress)
            if concurrency is not None
            else None
        ),
        required=_required(required),
        notify=NotifyPolicy(notify),
    )
    validate_definition(definition)
    return definition


__all__ = ["sh", "artifact", "matrix", "job", "JobBuilder", "build", "pipeline", "RequiredCheck"]
