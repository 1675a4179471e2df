# matrix.py
from __future__ import annotations

import hashlib
import itertools
import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .conditions import EvalScope, Template
from .errors import DefinitionError, ExpansionError
from .model import ArtifactSpec, JobInstance, JobSpec, Matrix, RunContext, Step

logger = logging.getLogger(__name__)

MAX_COMBINATIONS = 256
_MAX_ID_VALUE = 32


# ---------------------------------------------------------------------
# Combinations
# ---------------------------------------------------------------------

def _matches(entry: Mapping[str, Any], combo: Mapping[str, Any]) -> bool:
    return all(k in combo and combo[k] == v for k, v in entry.items())


def combinations(matrix: Matrix) -> List[Dict[str, Any]]:
    """
    Full product of the axes, minus `exclude`, plus `include`.

    An include entry whose axis values match existing combinations extends
    them with its extra keys. An entry that matches nothing becomes a new
    combination of its own.
    """
    names = matrix.axis_names
    if names:
        product = [dict(zip(names, values)) for values in itertools.product(*(v for _n, v in matrix.axes))]
    else:
        product = []

    base = [c for c in product if not any(_matches(ex, c) for ex in matrix.exclude)]
    extended = [dict(c) for c in base]
    added: List[Dict[str, Any]] = []

    for entry in matrix.include:
        axis_part = {k: v for k, v in entry.items() if k in names}
        extra = {k: v for k, v in entry.items() if k not in names}
        hits = [c for c in extended if _matches(axis_part, c)] if extended else []
        if hits and extra:
            for c in hits:
                c.update(extra)
        elif not hits:
            added.append(dict(entry))

    return extended + added


def _id_value(value: Any) -> str:
    if isinstance(value, bool):
        text = "true" if value else "false"
    else:
        text = str(value)
    if len(text) > _MAX_ID_VALUE or any(ch in text for ch in "[],="):
        return hashlib.sha256(text.encode("utf-8")).hexdigest()[:8]
    return text


def instance_id(template_id: str, combo: Mapping[str, Any]) -> str:
    """Stable id: `test[os=linux,py=3.12]`. Key order follows the combination."""
    if not combo:
        return template_id
    return f"{template_id}[{','.join(f'{k}={_id_value(v)}' for k, v in combo.items())}]"


# ---------------------------------------------------------------------
# Reference checks (load time)
# ---------------------------------------------------------------------

def _template_texts(spec: JobSpec) -> List[str]:
    texts = [spec.display_name]
    for s in spec.steps:
        texts.extend([s.name, s.run, s.cwd or ""])
        texts.extend(s.env.values())
    texts.extend(spec.env.values())
    texts.extend(a.name for a in spec.inputs + spec.outputs)
    texts.extend(a.path or "" for a in spec.inputs + spec.outputs)
    return texts


def check_references(spec: JobSpec) -> None:
    """Reject `matrix.<x>` references and excludes naming an undefined axis."""
    known = spec.matrix.known_keys() if spec.matrix else set()

    if spec.matrix:
        for entry in spec.matrix.exclude:
            for key in entry:
                if key not in spec.matrix.axis_names:
                    raise DefinitionError(
                        f"Job '{spec.id}' excludes undefined matrix axis '{key}'",
                        job=spec.id,
                    )

    paths: List[Tuple[str, ...]] = []
    for text in _template_texts(spec):
        try:
            paths.extend(Template.parse(text).refs())
        except DefinitionError as e:
            raise DefinitionError(e.message, job=spec.id) from e
    for expr in [spec.condition] + [s.condition for s in spec.steps]:
        if expr is not None:
            paths.extend(expr.refs())

    for path in paths:
        if path[0] == "matrix" and path[1] not in known:
            raise DefinitionError(
                f"Job '{spec.id}' references undefined matrix axis '{path[1]}'",
                job=spec.id,
            )


# ---------------------------------------------------------------------
# Expansion
# ---------------------------------------------------------------------

def _render_step(step: Step, scope: EvalScope) -> Step:
    return Step(
        name=Template.parse(step.name).render(scope),
        run=Template.parse(step.run).render(scope),
        cwd=Template.parse(step.cwd).render(scope) if step.cwd else None,
        condition=step.condition,
        env={k: Template.parse(v).render(scope) for k, v in step.env.items()},
    )


def _render_artifacts(specs: Tuple[ArtifactSpec, ...], scope: EvalScope) -> Tuple[ArtifactSpec, ...]:
    return tuple(
        ArtifactSpec(
            name=Template.parse(a.name).render(scope),
            path=Template.parse(a.path).render(scope) if a.path else None,
        )
        for a in specs
    )


def _instance(
    spec: JobSpec,
    combo: Mapping[str, Any],
    context: RunContext,
    env: Mapping[str, str],
    fail_fast: bool,
) -> JobInstance:
    scope = EvalScope(context=context, matrix=combo, env=env)
    job_env = {k: Template.parse(v).render(scope) for k, v in spec.env.items()}
    scope = EvalScope(context=context, matrix=combo, env={**env, **job_env})
    return JobInstance(
        id=instance_id(spec.id, combo),
        template=spec.id,
        name=Template.parse(spec.display_name).render(scope),
        steps=tuple(_render_step(s, scope) for s in spec.steps),
        needs=spec.needs,
        condition=spec.condition,
        env=job_env,
        inputs=_render_artifacts(spec.inputs, scope),
        outputs=_render_artifacts(spec.outputs, scope),
        timeout=spec.timeout,
        allow_skipped_needs=spec.allow_skipped_needs,
        matrix_values=dict(combo),
        fail_fast=fail_fast,
    )


def expand(
    template: JobSpec,
    matrix: Optional[Matrix] = None,
    *,
    context: Optional[RunContext] = None,
    env: Optional[Mapping[str, str]] = None,
) -> List[JobInstance]:
    """
    Expand a job template into concrete instances, one per combination.

    A template without a matrix yields exactly one instance with the
    template's id. Deterministic for identical inputs.
    """
    matrix = matrix if matrix is not None else template.matrix
    context = context or RunContext()
    env = dict(env or {})

    if matrix is None:
        return [_instance(template, {}, context, env, fail_fast=False)]

    combos = combinations(matrix)
    if not combos:
        raise ExpansionError("matrix expands to no combinations", job=template.id)
    if len(combos) > MAX_COMBINATIONS:
        raise ExpansionError(
            f"matrix expands to {len(combos)} combinations (limit {MAX_COMBINATIONS})",
            job=template.id,
        )

    jobs = [_instance(template, c, context, env, fail_fast=matrix.fail_fast) for c in combos]
    ids = [j.id for j in jobs]
    if len(set(ids)) != len(ids):
        dupes = sorted({i for i in ids if ids.count(i) > 1})
        raise ExpansionError(f"matrix produces duplicate job ids: {dupes}", job=template.id)

    logger.debug("expanded %s into %d job(s)", template.id, len(jobs))
    return jobs


def placeholder(template: JobSpec) -> JobInstance:
    """Stand-in instance for a template whose expansion failed."""
    return JobInstance(
        id=template.id,
        template=template.id,
        name=template.display_name,
        steps=template.steps,
        needs=template.needs,
        condition=template.condition,
    )


def build_matrix(
    axes: Mapping[str, Any],
    *,
    include: Any = (),
    exclude: Any = (),
    fail_fast: bool = True,
) -> Matrix:
    """Validate raw axis values (from YAML or the DSL) into a Matrix."""
    out: List[Tuple[str, Tuple[Any, ...]]] = []
    for name, values in axes.items():
        if not isinstance(values, (list, tuple)):
            raise DefinitionError(f"matrix axis '{name}' must be a list")
        if not values:
            raise DefinitionError(f"matrix axis '{name}' must not be empty")
        for v in values:
            if isinstance(v, (dict, list, tuple)):
                raise DefinitionError(f"matrix axis '{name}' values must be scalars")
        out.append((str(name), tuple(values)))

    def _entries(raw: Any, label: str) -> Tuple[Dict[str, Any], ...]:
        if not isinstance(raw, (list, tuple)):
            raise DefinitionError(f"matrix '{label}' must be a list of mappings")
        for entry in raw:
            if not isinstance(entry, dict) or not entry:
                raise DefinitionError(f"matrix '{label}' entries must be non-empty mappings")
        return tuple(dict(e) for e in raw)

    return Matrix(
        axes=tuple(out),
        include=_entries(include, "include"),
        exclude=_entries(exclude, "exclude"),
        fail_fast=bool(fail_fast),
    )


__all__ = [
    "MAX_COMBINATIONS",
    "combinations",
    "instance_id",
    "check_references",
    "expand",
    "placeholder",
    "build_matrix",
]
