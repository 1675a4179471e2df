# errors.py
from __future__ import annotations

from typing import Any, Dict, List, Optional


class RelayError(Exception):
    """
    Structured relayci error with enough context for:
      - clean CLI output
      - API responses
      - job failure reasons without full tracebacks
    """

    kind = "RelayError"

    def __init__(
        self,
        message: str,
        *,
        job: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.job = job
        self.details: Dict[str, Any] = dict(details or {})

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


# ----------------------------------------------------------------------
# Pre-run (fatal for the whole pipeline)
# ----------------------------------------------------------------------

class DefinitionError(RelayError):
    """Malformed pipeline document, dangling `needs`, undefined matrix axis, ..."""

    kind = "DefinitionError"


class CycleError(DefinitionError):
    kind = "CycleError"

    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__(
            f"dependency cycle: {' -> '.join(self.cycle)}",
            details={"jobs": sorted(set(self.cycle))},
        )


# ----------------------------------------------------------------------
# Matrix
# ----------------------------------------------------------------------

class ExpansionError(RelayError):
    """Matrix expansion failed. Fatal for the affected matrix only."""

    kind = "ExpansionError"


# ----------------------------------------------------------------------
# Per-job
# ----------------------------------------------------------------------

class JobTimeoutError(RelayError):
    kind = "TimeoutError"

    def __init__(self, job: str, timeout: float):
        self.timeout = timeout
        super().__init__(f"job exceeded its timeout of {timeout:g}s", job=job)


class StepFailure(RelayError):
    kind = "StepFailure"

    def __init__(self, job: str, step: str, cmd: str, exit_code: int, output: str = ""):
        self.step = step
        self.cmd = cmd
        self.exit_code = exit_code
        self.output = output
        super().__init__(
            f"step '{step}' failed (exit={exit_code})",
            job=job,
            details={"cmd": cmd},
        )


class ArtifactError(RelayError):
    kind = "ArtifactError"


class DuplicateArtifactError(ArtifactError):
    kind = "DuplicateArtifactError"


class ArtifactNotReadyError(ArtifactError):
    kind = "ArtifactNotReadyError"


class ArtifactNotFoundError(ArtifactError):
    kind = "ArtifactNotFoundError"


__all__ = [
    "RelayError",
    "DefinitionError",
    "CycleError",
    "ExpansionError",
    "JobTimeoutError",
    "StepFailure",
    "ArtifactError",
    "DuplicateArtifactError",
    "ArtifactNotReadyError",
    "ArtifactNotFoundError",
]
