# aggregate.py
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List

from .errors import RelayError
from .model import JobStatus, PipelineDefinition, RequiredCheck, combine_results

if TYPE_CHECKING:
    from .scheduler import PipelineRun


class PipelineStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    NOT_TRIGGERED = "not_triggered"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class CheckResult:
    """Pass/fail signal for one job template, as a gate consumer sees it."""
    name: str
    job: str
    status: JobStatus
    passed: bool
    required: bool = False


@dataclass(frozen=True)
class Failure:
    gate: str
    job: str
    status: JobStatus
    reason: str | None = None
    error_type: str | None = None


@dataclass
class PipelineResult:
    run_id: str
    pipeline: str
    status: PipelineStatus
    jobs: Dict[str, JobStatus] = field(default_factory=dict)
    checks: List[CheckResult] = field(default_factory=list)
    failures: List[Failure] = field(default_factory=list)
    error: str | None = None
    error_type: str | None = None
    finished_at: float = field(default_factory=time.time)

    @property
    def succeeded(self) -> bool:
        return self.status in (PipelineStatus.SUCCEEDED, PipelineStatus.NOT_TRIGGERED)

    def check(self, gate: str) -> CheckResult:
        for c in self.checks:
            if c.job == gate:
                return c
        for c in self.checks:
            if c.name == gate:
                return c
        raise KeyError(gate)

    def status_of(self, gate: str) -> bool:
        return self.check(gate).passed

    def summary(self) -> str:
        lines = [f"{self.pipeline} [{self.run_id}]: {self.status}"]
        if self.error:
            lines.append(f"  {self.error_type or 'error'}: {self.error}")
        for c in self.checks:
            if c.required:
                mark = "pass" if c.passed else "FAIL"
                lines.append(f"  {mark:4}  {c.name} ({c.status})")
        for f in self.failures:
            why = f.reason or f.status.value
            if f.error_type:
                why = f"{f.error_type}: {why}"
            lines.append(f"  - {f.job}: {why}")
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "pipeline": self.pipeline,
            "status": self.status.value,
            "jobs": {k: v.value for k, v in self.jobs.items()},
            "checks": [
                {
                    "name": c.name,
                    "job": c.job,
                    "status": c.status.value,
                    "passed": c.passed,
                    "required": c.required,
                }
                for c in self.checks
            ],
            "failures": [
                {
                    "gate": f.gate,
                    "job": f.job,
                    "status": f.status.value,
                    "reason": f.reason,
                    "error_type": f.error_type,
                }
                for f in self.failures
            ],
            "error": self.error,
            "error_type": self.error_type,
        }


def _passes(status: JobStatus, allow_skipped: bool) -> bool:
    if status == JobStatus.SUCCEEDED:
        return True
    return allow_skipped and status == JobStatus.SKIPPED


class RunAggregator:
    """
    Fold the job results of a finished run into one verdict.

    Required gates decide the verdict. When none are declared every job
    counts as a gate.
    """

    def _required(self, definition: PipelineDefinition) -> Dict[str, RequiredCheck]:
        out: Dict[str, RequiredCheck] = {}
        for check in definition.required:
            spec = definition.resolve_gate(check.job)
            if spec is not None:
                out[spec.id] = check
        return out

    def _template_status(self, run: "PipelineRun", template: str) -> JobStatus:
        members = [r.status for r in run.records.values() if r.job.template == template]
        return combine_results(members)

    def checks(self, run: "PipelineRun") -> List[CheckResult]:
        definition = run.definition
        required = self._required(definition)
        out: List[CheckResult] = []
        for spec in definition.jobs:
            status = self._template_status(run, spec.id)
            check = required.get(spec.id)
            out.append(
                CheckResult(
                    name=spec.display_name,
                    job=spec.id,
                    status=status,
                    passed=_passes(status, check.allow_skipped if check else False),
                    required=check is not None,
                )
            )
        return out

    def status_of(self, run: "PipelineRun", gate: str) -> bool:
        spec = run.definition.resolve_gate(gate)
        if spec is None:
            raise KeyError(gate)
        check = self._required(run.definition).get(spec.id)
        return _passes(self._template_status(run, spec.id), check.allow_skipped if check else False)

    def _failures(self, run: "PipelineRun", gates: List[CheckResult], every_job: bool) -> List[Failure]:
        failures: List[Failure] = []
        for gate in gates:
            for record in run.records.values():
                if record.job.template != gate.job:
                    continue
                bad = record.status in (JobStatus.FAILED, JobStatus.CANCELLED)
                if not every_job:
                    bad = bad or (not gate.passed and record.status != JobStatus.SUCCEEDED)
                if bad:
                    failures.append(
                        Failure(
                            gate=gate.name,
                            job=record.job.id,
                            status=record.status,
                            reason=record.reason,
                            error_type=record.error_type,
                        )
                    )
        return failures

    def aggregate(self, run: "PipelineRun") -> PipelineResult:
        checks = self.checks(run)
        jobs = {job_id: r.status for job_id, r in run.records.items()}

        if run.definition.required:
            gates = [c for c in checks if c.required]
            failures = self._failures(run, gates, every_job=False)
            ok = all(c.passed for c in gates)
        else:
            failures = self._failures(run, checks, every_job=True)
            ok = not failures

        if run.cancelled:
            status = PipelineStatus.CANCELLED
        elif ok:
            status = PipelineStatus.SUCCEEDED
        else:
            status = PipelineStatus.FAILED

        return PipelineResult(
            run_id=run.id,
            pipeline=run.definition.name,
            status=status,
            jobs=jobs,
            checks=checks,
            failures=failures,
        )

    @staticmethod
    def from_error(
        exc: BaseException,
        *,
        run_id: str = "",
        pipeline: str = "",
    ) -> PipelineResult:
        """A failed result carrying a pre-run fatal error verbatim."""
        error_type = exc.kind if isinstance(exc, RelayError) else type(exc).__name__
        message = exc.message if isinstance(exc, RelayError) else str(exc)
        return PipelineResult(
            run_id=run_id,
            pipeline=pipeline,
            status=PipelineStatus.FAILED,
            error=message,
            error_type=error_type,
        )

    @staticmethod
    def not_triggered(run_id: str, pipeline: str) -> PipelineResult:
        return PipelineResult(run_id=run_id, pipeline=pipeline, status=PipelineStatus.NOT_TRIGGERED)


__all__ = [
    "PipelineStatus",
    "CheckResult",
    "Failure",
    "PipelineResult",
    "RunAggregator",
]
