from .aggregate import PipelineResult, PipelineStatus, RunAggregator
from .conditions import always, branch, cancelled, event, failure, needs_result, parse_condition, ref, success
from .dsl import JobBuilder, artifact, build, job, matrix, pipeline, sh
from .errors import (
    ArtifactNotFoundError,
    ArtifactNotReadyError,
    CycleError,
    DefinitionError,
    DuplicateArtifactError,
    ExpansionError,
    JobTimeoutError,
    RelayError,
    StepFailure,
)
from .executor import FunctionExecutor, JobContext, ShellExecutor
from .loader import load_definition, parse_definition
from .model import JobStatus, PipelineDefinition, RunContext
from .scheduler import PipelineRun, Scheduler
from .triggers import manual, merge_group, on, pull_request, push

__all__ = [
    "sh", "job", "matrix", "artifact", "pipeline", "JobBuilder", "build",
    "on", "push", "pull_request", "merge_group", "manual",
    "always", "success", "failure", "cancelled", "branch", "event", "needs_result", "ref", "parse_condition",
    "Scheduler", "PipelineRun", "FunctionExecutor", "ShellExecutor", "JobContext",
    "RunContext", "JobStatus", "PipelineDefinition", "PipelineResult", "PipelineStatus", "RunAggregator",
    "load_definition", "parse_definition",
    "RelayError", "DefinitionError", "CycleError", "ExpansionError", "JobTimeoutError", "StepFailure",
    "DuplicateArtifactError", "ArtifactNotReadyError", "ArtifactNotFoundError",
]
