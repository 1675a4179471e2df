"""
Pipeline definition loader.

A pipeline lives either in a YAML document or in a Python module using the
DSL. Both end up as the same immutable PipelineDefinition, validated before
anything is scheduled.
"""

from __future__ import annotations

import runpy
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from .conditions import Template, parse_condition
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
from .triggers import EVENTS, EventFilter, Triggers

EVENT_ALIASES = {"workflow_dispatch": "manual"}

PIPELINE_KEYS = {"name", "on", "concurrency", "env", "required", "notify", "jobs"}
JOB_KEYS = {
    "name", "needs", "if", "timeout", "matrix", "env", "inputs", "outputs",
    "allow_skipped_needs", "steps",
}
STEP_KEYS = {"name", "run", "if", "cwd", "env"}
FILTER_KEYS = {"branches", "branches_ignore", "paths", "paths_ignore"}


# ---------------------------------------------------------------------
# Small validators
# ---------------------------------------------------------------------

def _key(k: Any) -> str:
    # `paths-ignore` and `paths_ignore` are the same key
    return str(k).replace("-", "_")


def _mapping(value: Any, where: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise DefinitionError(f"{where} must be a mapping")
    return {_key(k): v for k, v in value.items()}


def _check_keys(data: Mapping[str, Any], allowed: set, where: str) -> None:
    unknown = sorted(set(data) - allowed)
    if unknown:
        raise DefinitionError(f"{where} has unknown key(s): {unknown}")


def _str_list(value: Any, where: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise DefinitionError(f"{where} must be a list of strings")
    return tuple(value)


def _scalar_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _env(value: Any, where: str) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise DefinitionError(f"{where} must be a mapping")
    env = {}
    for k, v in value.items():
        if isinstance(v, (dict, list)):
            raise DefinitionError(f"{where}.{k} must be a scalar")
        env[str(k)] = _scalar_text(v) if v is not None else ""
    return env


def _condition(value: Any, where: str):
    if value is None:
        return None
    if not isinstance(value, (str, bool)):
        raise DefinitionError(f"{where} must be a string or boolean")
    try:
        return parse_condition(value)
    except DefinitionError as e:
        raise DefinitionError(f"{where}: {e.message}") from e


# ---------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------

def _triggers(raw: Any) -> Optional[Triggers]:
    if raw is None:
        return None
    if isinstance(raw, str):
        raw = {raw: None}
    elif isinstance(raw, list):
        raw = {str(e): None for e in raw}
    elif not isinstance(raw, dict):
        raise DefinitionError("'on' must be an event name, a list or a mapping")

    filters: List[EventFilter] = []
    for event, body in raw.items():
        event = EVENT_ALIASES.get(str(event), str(event))
        if event not in EVENTS:
            raise DefinitionError(f"on: unknown event '{event}' (expected one of {list(EVENTS)})")
        data = _mapping(body, f"on.{event}")
        _check_keys(data, FILTER_KEYS, f"on.{event}")
        filters.append(
            EventFilter(
                event=event,
                branches=_str_list(data.get("branches"), f"on.{event}.branches"),
                branches_ignore=_str_list(data.get("branches_ignore"), f"on.{event}.branches_ignore"),
                paths=_str_list(data.get("paths"), f"on.{event}.paths"),
                paths_ignore=_str_list(data.get("paths_ignore"), f"on.{event}.paths_ignore"),
            )
        )
    return Triggers(tuple(filters))


def _concurrency(raw: Any) -> Optional[ConcurrencyGroup]:
    if raw is None:
        return None
    if isinstance(raw, str):
        raw = {"group": raw}
    data = _mapping(raw, "concurrency")
    _check_keys(data, {"group", "cancel_in_progress"}, "concurrency")
    group = data.get("group")
    if not isinstance(group, str) or not group:
        raise DefinitionError("concurrency.group must be a non-empty string")
    try:
        template = Template.parse(group)
    except DefinitionError as e:
        raise DefinitionError(f"concurrency.group: {e.message}") from e
    return ConcurrencyGroup(template, bool(data.get("cancel_in_progress", False)))


def _required(raw: Any) -> Tuple[RequiredCheck, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise DefinitionError("'required' must be a list")
    out = []
    for i, item in enumerate(raw):
        if isinstance(item, str):
            out.append(RequiredCheck(item))
            continue
        data = _mapping(item, f"required[{i}]")
        _check_keys(data, {"job", "allow_skipped"}, f"required[{i}]")
        if not isinstance(data.get("job"), str):
            raise DefinitionError(f"required[{i}] missing 'job'")
        out.append(RequiredCheck(data["job"], bool(data.get("allow_skipped", False))))
    return tuple(out)


def _notify(raw: Any) -> NotifyPolicy:
    if raw is None:
        return NotifyPolicy()
    if isinstance(raw, str):
        raw = {"when": raw}
    data = _mapping(raw, "notify")
    _check_keys(data, {"when"}, "notify")
    when = data.get("when", "always")
    if when not in NOTIFY_WHEN:
        raise DefinitionError(f"notify.when must be one of {list(NOTIFY_WHEN)}, got {when!r}")
    return NotifyPolicy(when)


def _step(raw: Any, job_id: str, index: int) -> Step:
    where = f"jobs.{job_id}.steps[{index}]"
    if isinstance(raw, str):
        raw = {"run": raw}
    data = _mapping(raw, where)
    _check_keys(data, STEP_KEYS, where)
    run = data.get("run")
    if not isinstance(run, str) or not run.strip():
        raise DefinitionError(f"{where} missing 'run'", job=job_id)
    name = data.get("name") or run.strip().splitlines()[0][:60]
    if not isinstance(name, str):
        raise DefinitionError(f"{where} 'name' must be a string", job=job_id)
    cwd = data.get("cwd")
    if cwd is not None and not isinstance(cwd, str):
        raise DefinitionError(f"{where} 'cwd' must be a string", job=job_id)
    return Step(
        name=name,
        run=run,
        cwd=cwd,
        condition=_condition(data.get("if"), f"{where}.if"),
        env=_env(data.get("env"), f"{where}.env"),
    )


def _artifacts(raw: Any, where: str) -> Tuple[ArtifactSpec, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise DefinitionError(f"{where} must be a list")
    out = []
    for i, item in enumerate(raw):
        if isinstance(item, str):
            out.append(ArtifactSpec(item))
            continue
        data = _mapping(item, f"{where}[{i}]")
        _check_keys(data, {"name", "path"}, f"{where}[{i}]")
        if not isinstance(data.get("name"), str):
            raise DefinitionError(f"{where}[{i}] missing 'name'")
        path = data.get("path")
        if path is not None and not isinstance(path, str):
            raise DefinitionError(f"{where}[{i}].path must be a string")
        out.append(ArtifactSpec(data["name"], path))
    return tuple(out)


def _matrix(raw: Any, job_id: str) -> Optional[Matrix]:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise DefinitionError(f"jobs.{job_id}.matrix must be a mapping", job=job_id)
    # axis names are kept verbatim; only the option keys accept `-` spellings
    data = dict(raw)
    options = {_key(k): data.pop(k) for k in list(data) if _key(k) in ("include", "exclude", "fail_fast")}
    include = options.get("include") or []
    exclude = options.get("exclude") or []
    fail_fast = options.get("fail_fast", True)
    try:
        return build_matrix(data, include=include, exclude=exclude, fail_fast=fail_fast)
    except DefinitionError as e:
        raise DefinitionError(f"jobs.{job_id}.{e.message}", job=job_id) from e


def _job(job_id: str, raw: Any) -> JobSpec:
    where = f"jobs.{job_id}"
    data = _mapping(raw, where)
    _check_keys(data, JOB_KEYS, where)

    steps_raw = data.get("steps")
    if not isinstance(steps_raw, list) or not steps_raw:
        raise DefinitionError(f"{where} must have at least one step", job=job_id)

    name = data.get("name")
    if name is not None and not isinstance(name, str):
        raise DefinitionError(f"{where}.name must be a string", job=job_id)

    timeout = data.get("timeout")
    if timeout is not None:
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            raise DefinitionError(f"{where}.timeout must be a positive number of seconds", job=job_id)
        timeout = float(timeout)

    spec = JobSpec(
        id=job_id,
        steps=tuple(_step(s, job_id, i) for i, s in enumerate(steps_raw)),
        name=name,
        needs=_str_list(data.get("needs"), f"{where}.needs"),
        condition=_condition(data.get("if"), f"{where}.if"),
        env=_env(data.get("env"), f"{where}.env"),
        inputs=_artifacts(data.get("inputs"), f"{where}.inputs"),
        outputs=_artifacts(data.get("outputs"), f"{where}.outputs"),
        matrix=_matrix(data.get("matrix"), job_id),
        timeout=timeout,
        allow_skipped_needs=bool(data.get("allow_skipped_needs", False)),
    )
    check_references(spec)
    return spec


# ---------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------

def definition_from_dict(config: Any, *, source: str | None = None) -> PipelineDefinition:
    """Validate a parsed document into a PipelineDefinition."""
    if not config:
        raise DefinitionError("Empty pipeline definition")
    if not isinstance(config, dict):
        raise DefinitionError("Pipeline definition must be a mapping")

    # YAML 1.1 reads a bare `on:` key as boolean True
    if True in config:
        config = dict(config)
        config["on"] = config.pop(True)
    data = {_key(k): v for k, v in config.items()}
    _check_keys(data, PIPELINE_KEYS, "pipeline")

    name = data.get("name", "pipeline")
    if not isinstance(name, str):
        raise DefinitionError("Pipeline 'name' must be a string")

    jobs_raw = data.get("jobs")
    if not isinstance(jobs_raw, dict) or not jobs_raw:
        raise DefinitionError("Pipeline must have 'jobs' defined as a mapping")

    definition = PipelineDefinition(
        name=name,
        jobs=tuple(_job(str(job_id), body) for job_id, body in jobs_raw.items()),
        triggers=_triggers(data.get("on")),
        env=_env(data.get("env"), "env"),
        concurrency=_concurrency(data.get("concurrency")),
        required=_required(data.get("required")),
        notify=_notify(data.get("notify")),
        source=source,
    )
    validate_definition(definition)
    return definition


def parse_definition(text: str, *, source: str | None = None) -> PipelineDefinition:
    """Parse a YAML pipeline document."""
    try:
        config = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise DefinitionError(f"Invalid YAML: {e}") from e
    return definition_from_dict(config, source=source)


def load_definition(path: str | Path) -> PipelineDefinition:
    """
    Load a pipeline from a .yaml/.yml file or a .py module.

    A Python module must define either:
      - definition() -> PipelineDefinition
      - PIPELINE = pipeline(...)
    """
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise FileNotFoundError(f"Pipeline file not found: {p}")

    if p.suffix in (".yaml", ".yml"):
        return parse_definition(p.read_text(encoding="utf-8"), source=str(p))
    if p.suffix != ".py":
        raise DefinitionError(f"Pipeline must be a .yaml, .yml or .py file, got: {p.name}")

    globals_dict = runpy.run_path(str(p), run_name=f"relayci_pipeline_{p.stem}")
    if callable(globals_dict.get("definition")):
        result = globals_dict["definition"]()
    elif "PIPELINE" in globals_dict:
        result = globals_dict["PIPELINE"]
    else:
        raise DefinitionError(
            f"{p.name} must define definition() -> PipelineDefinition or PIPELINE = pipeline(...)"
        )
    if not isinstance(result, PipelineDefinition):
        raise DefinitionError(f"{p.name} did not produce a PipelineDefinition (got {type(result).__name__})")
    validate_definition(result)
    return result


__all__ = ["definition_from_dict", "parse_definition", "load_definition"]
