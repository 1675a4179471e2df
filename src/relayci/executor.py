# executor.py
from __future__ import annotations

import logging
import os
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

from .artifacts import BoundArtifacts, pack_path, unpack_payload
from .conditions import EvalScope, Expr, success
from .errors import StepFailure
from .model import JobInstance, JobStatus, RunContext, Step

logger = logging.getLogger(__name__)

DEFAULT_STEP_CONDITION = success()

TOOL_HINTS = {
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "node": "Install Node.js or fix PATH.",
    "pytest": "Install pytest (e.g., pip install pytest).",
    "ruff": "Install ruff (e.g., pip install ruff).",
    "docker": "Install Docker and ensure the daemon is running.",
    "cargo": "Install the Rust toolchain (rustup) or fix PATH.",
    "python3": "Install Python 3 or fix PATH (python3).",
}

_OUTPUT_TAIL = 4000


# ----------------------------------------------------------------------
# Cancellation
# ----------------------------------------------------------------------

class CancelToken:
    """Cooperative cancellation flag handed to every dispatched job."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)


# ----------------------------------------------------------------------
# Interface
# ----------------------------------------------------------------------

@dataclass
class JobContext:
    run_id: str
    context: RunContext
    inputs: Dict[str, bytes] = field(default_factory=dict)
    artifacts: Optional[BoundArtifacts] = None
    cancel: CancelToken = field(default_factory=CancelToken)
    env: Mapping[str, str] = field(default_factory=dict)

    def put(self, name: str, payload: bytes) -> None:
        if self.artifacts is None:
            raise RuntimeError("job context has no artifact store bound")
        self.artifacts.put(name, payload)

    def get(self, name: str) -> bytes:
        if name in self.inputs:
            return self.inputs[name]
        if self.artifacts is None:
            raise RuntimeError("job context has no artifact store bound")
        return self.artifacts.get(name)


class Executor(Protocol):
    def execute(self, job: JobInstance, ctx: JobContext) -> JobStatus: ...


def _coerce_status(value: Any) -> JobStatus:
    if value is None or value is True:
        return JobStatus.SUCCEEDED
    if value is False:
        return JobStatus.FAILED
    if isinstance(value, JobStatus):
        if value not in (JobStatus.SUCCEEDED, JobStatus.FAILED):
            raise ValueError(f"executor returned non-final status {value}")
        return value
    if isinstance(value, str):
        return _coerce_status(JobStatus(value))
    raise TypeError(f"executor returned {type(value).__name__}, expected JobStatus")


class FunctionExecutor:
    """
    Run jobs as Python callables: fn(job, ctx) -> JobStatus | bool | None.

    None and True mean succeeded, False means failed. Exceptions propagate
    and fail the job.
    """

    def __init__(self, fn: Callable[[JobInstance, JobContext], Any]):
        self.fn = fn

    def execute(self, job: JobInstance, ctx: JobContext) -> JobStatus:
        return _coerce_status(self.fn(job, ctx))


# ----------------------------------------------------------------------
# Shell
# ----------------------------------------------------------------------

def _hint_for(cmd: str) -> str | None:
    words = cmd.strip().split()
    if not words:
        return None
    return TOOL_HINTS.get(os.path.basename(words[0]))


class ShellExecutor:
    """
    Run each step as a shell command inside `workdir`.

    Steps run in order. A step's condition (default `success()`) is checked
    against the job status so far, so `always()` cleanup steps still run
    after a failure. The first failing step is raised as StepFailure.
    """

    def __init__(self, workdir: str | Path = ".", *, poll_interval: float = 0.1):
        self.workdir = Path(workdir).resolve()
        self.poll_interval = poll_interval

    # ---- artifacts ----

    def _path(self, raw: str) -> Path:
        p = Path(raw).expanduser()
        return p if p.is_absolute() else (self.workdir / p)

    def _write_inputs(self, job: JobInstance, ctx: JobContext) -> None:
        for spec in job.inputs:
            payload = ctx.get(spec.name)
            if spec.path:
                dest = self._path(spec.path)
                unpack_payload(payload, dest, name=spec.name)
                logger.debug("[%s] input %s -> %s", job.id, spec.name, dest)

    def _collect_outputs(self, job: JobInstance, ctx: JobContext) -> None:
        for spec in job.outputs:
            if not spec.path:
                continue
            src = self._path(spec.path)
            payload = pack_path(src)
            ctx.put(spec.name, payload)
            logger.debug("[%s] output %s <- %s (%d bytes)", job.id, spec.name, src, len(payload))

    # ---- steps ----

    def _env(self, job: JobInstance, step: Step, ctx: JobContext) -> Dict[str, str]:
        env = os.environ.copy()
        env.update(ctx.env)
        env.update(job.env)
        env.update(step.env)
        env["RELAYCI_RUN_ID"] = ctx.run_id
        env["RELAYCI_JOB_ID"] = job.id
        return env

    def _run_step(self, job: JobInstance, step: Step, ctx: JobContext) -> None:
        cwd = (self.workdir / (step.cwd or ".")).resolve()
        if not cwd.exists():
            raise FileNotFoundError(f"[{job.id}] step '{step.name}' cwd not found: {cwd}")

        with tempfile.TemporaryFile(mode="w+", encoding="utf-8", errors="replace") as out:
            proc = subprocess.Popen(
                step.run,
                shell=True,
                cwd=str(cwd),
                env=self._env(job, step, ctx),
                stdout=out,
                stderr=subprocess.STDOUT,
                text=True,
            )
            while True:
                try:
                    proc.wait(timeout=self.poll_interval)
                    break
                except subprocess.TimeoutExpired:
                    if ctx.cancel.cancelled:
                        logger.info("[%s] stopping step '%s' (%s)", job.id, step.name, ctx.cancel.reason)
                        _stop(proc)
                        return
            out.seek(0)
            output = out.read()

        if proc.returncode != 0:
            failure = StepFailure(
                job=job.id,
                step=step.name,
                cmd=step.run,
                exit_code=proc.returncode,
                output=output[-_OUTPUT_TAIL:],
            )
            hint = _hint_for(step.run) if proc.returncode == 127 else None
            if hint:
                failure.details["hint"] = hint
            raise failure

    def _step_holds(self, step: Step, status: JobStatus, job: JobInstance, ctx: JobContext) -> bool:
        cond: Expr = step.condition or DEFAULT_STEP_CONDITION
        if not cond.uses_status_function():
            cond = DEFAULT_STEP_CONDITION & cond
        scope = EvalScope(
            context=ctx.context,
            matrix=job.matrix_values,
            env={**ctx.env, **job.env},
            job_status=status,
        )
        return cond.holds(scope)

    def execute(self, job: JobInstance, ctx: JobContext) -> JobStatus:
        self._write_inputs(job, ctx)

        status = JobStatus.RUNNING
        first_failure: StepFailure | None = None

        for step in job.steps:
            if ctx.cancel.cancelled:
                status = JobStatus.CANCELLED
            if not self._step_holds(step, status, job, ctx):
                logger.debug("[%s] skip step '%s'", job.id, step.name)
                continue

            started = time.time()
            logger.info("[%s] step '%s': %s", job.id, step.name, step.run)
            try:
                self._run_step(job, step, ctx)
            except StepFailure as e:
                logger.info("[%s] step '%s' failed (exit=%d)", job.id, step.name, e.exit_code)
                if first_failure is None:
                    first_failure = e
                status = JobStatus.FAILED
                continue
            logger.debug("[%s] step '%s' done in %.2fs", job.id, step.name, time.time() - started)

        if first_failure is not None:
            raise first_failure
        if ctx.cancel.cancelled:
            return JobStatus.FAILED

        self._collect_outputs(job, ctx)
        return JobStatus.SUCCEEDED


def _stop(proc: subprocess.Popen, grace: float = 5.0) -> None:
    proc.terminate()
    try:
        proc.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()


__all__ = [
    "CancelToken",
    "JobContext",
    "Executor",
    "FunctionExecutor",
    "ShellExecutor",
    "TOOL_HINTS",
]
