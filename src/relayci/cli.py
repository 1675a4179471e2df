# cli.py
from __future__ import annotations

import json
import subprocess
import sys
import urllib.error
import urllib.request
from dataclasses import replace
from pathlib import Path
from typing import Dict, Tuple
from urllib.parse import urljoin

import click

from relayci import settings
from relayci.aggregate import RunAggregator
from relayci.artifacts import transport_for
from relayci.errors import DefinitionError, ExpansionError, RelayError
from relayci.executor import ShellExecutor
from relayci.git_facts.git import context_from_git, get_remote_url
from relayci.graph import JobGraph
from relayci.loader import load_definition
from relayci.logs import configure_logging
from relayci.matrix import expand, placeholder
from relayci.model import JobStatus, PipelineDefinition, RunContext
from relayci.notify import LoggingNotifier
from relayci.scheduler import Scheduler
from relayci.ui.console import Console, get_console, set_console

DEFAULT_PIPELINE_FILES = ("relayci.yaml", "relayci.yml", "relayci_pipeline.py")


def find_pipeline_files() -> list[Path]:
    """Find pipeline files in the current directory."""
    current_dir = Path(".")
    found = [current_dir / name for name in DEFAULT_PIPELINE_FILES if (current_dir / name).exists()]
    for path in current_dir.glob("*.pipeline.yaml"):
        if path not in found:
            found.append(path)
    return sorted(found)


def discover_pipeline(pipeline_arg: str | None) -> Path:
    """
    Pipeline file from the argument, or the single one found in the
    current directory. Exits with status 1 otherwise.
    """
    console = get_console()

    if pipeline_arg:
        path = Path(pipeline_arg)
        if not path.exists():
            console.print_error(
                "Pipeline file not found",
                f"Could not find pipeline file: {pipeline_arg}",
                suggestion="Create a pipeline file or specify a different path:\n  relayci run --pipeline ci.pipeline.yaml",
            )
            sys.exit(1)
        return path

    files = find_pipeline_files()
    if not files:
        console.print_error(
            "No pipeline file found",
            "Could not find any pipeline files.",
            details=["Looked for:", *[f"  {n}" for n in DEFAULT_PIPELINE_FILES], "  *.pipeline.yaml"],
            suggestion="Create relayci.yaml, or specify a pipeline explicitly:\n  relayci run --pipeline my.pipeline.yaml",
        )
        sys.exit(1)
    if len(files) > 1:
        console.print_error(
            "Multiple pipeline files found",
            "Found multiple pipeline files. Please specify which one to use:",
            details=[f"  {f}" for f in files],
            suggestion="Specify a pipeline explicitly:\n  relayci run --pipeline relayci.yaml",
        )
        sys.exit(1)
    return files[0]


def _load_or_exit(path: Path) -> PipelineDefinition:
    console = get_console()
    try:
        return load_definition(path)
    except DefinitionError as e:
        console.print_error("Invalid pipeline", f"{path}: {e.message}", details=[f"kind={e.kind}"])
        sys.exit(1)
    except FileNotFoundError as e:
        console.print_error("Pipeline file not found", str(e))
        sys.exit(1)


def _parse_vars(pairs: Tuple[str, ...]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for pair in pairs:
        if "=" not in pair:
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint="--var")
        k, v = pair.split("=", 1)
        out[k] = v
    return out


def _full_ref(ref: str) -> str:
    return ref if ref.startswith("refs/") else f"refs/heads/{ref}"


def build_context(
    *,
    event: str,
    ref: str | None,
    head_ref: str,
    base_ref: str,
    variables: Dict[str, str],
    git_diff: bool,
    compare_ref: str,
) -> RunContext:
    """RunContext from the local checkout, overridden by explicit options."""
    console = get_console()
    try:
        ctx = context_from_git(
            event=event,
            head_ref=head_ref,
            base_ref=base_ref,
            compare_ref=compare_ref if git_diff else None,
            variables=variables,
        )
    except (subprocess.CalledProcessError, FileNotFoundError) as e:
        console.print_debug(f"git facts unavailable ({e}); using a bare context")
        ctx = RunContext(event=event, head_ref=head_ref, base_ref=base_ref, variables=variables)
    if ref:
        ctx = replace(ctx, ref=_full_ref(ref))
    return ctx


def _repo_name() -> str:
    try:
        url = get_remote_url("origin")
    except (subprocess.CalledProcessError, FileNotFoundError):
        url = None
    if url:
        return url.rstrip("/").split("/")[-1].replace(".git", "")
    return Path(".").resolve().name


def context_options(f):
    """Options shared by `run` and `plan` to describe the triggering event."""
    options = [
        click.option("--pipeline", "pipeline_path", default=None, help="Pipeline file (defaults to relayci.yaml if present)"),
        click.option("--event", default="push", show_default=True, help="Event kind: push, pull_request, merge_group, manual"),
        click.option("--ref", default=None, help="Git ref or branch (defaults to the current checkout)"),
        click.option("--head-ref", default="", help="Source branch of a pull request"),
        click.option("--base-ref", default="", help="Target branch of a pull request"),
        click.option("--var", "var_pairs", multiple=True, help="Variable KEY=VALUE, readable as vars.KEY"),
        click.option("--git-diff/--no-git-diff", default=False, help="Compute changed files for path filters"),
        click.option("--compare-ref", default="origin/main", show_default=True, help="Git ref to diff against"),
    ]
    for option in reversed(options):
        f = option(f)
    return f


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """relayci: CI pipeline orchestration engine."""
    console = Console(debug=debug)
    set_console(console)
    configure_logging(
        "DEBUG" if debug else settings.LOG_LEVEL,
        json_output=settings.LOG_FORMAT.lower() == "json",
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@context_options
@click.option("--workers", default=settings.WORKERS, type=int, help="Number of parallel workers")
@click.option("--artifact-dir", default=settings.ARTIFACT_DIR, help="Artifact directory (empty keeps artifacts in memory)")
@click.option("--workdir", default=settings.WORKDIR, show_default=True, help="Directory steps run in")
@click.option("--timeout", "default_timeout", default=settings.DEFAULT_TIMEOUT, type=float, help="Default job timeout in seconds")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the result as JSON")
@click.pass_context
def run(ctx, pipeline_path, event, ref, head_ref, base_ref, var_pairs, git_diff, compare_ref,
        workers, artifact_dir, workdir, default_timeout, as_json):
    """Run a pipeline locally."""
    console = get_console()
    path = discover_pipeline(pipeline_path)
    definition = _load_or_exit(path)

    run_ctx = build_context(
        event=event,
        ref=ref,
        head_ref=head_ref,
        base_ref=base_ref,
        variables=_parse_vars(var_pairs),
        git_diff=git_diff,
        compare_ref=compare_ref,
    ).with_workflow(definition.name)

    if not definition.is_triggered_by(run_ctx):
        console.print_not_triggered(definition.name, definition.triggers.explain(run_ctx))
        sys.exit(0)

    scheduler = Scheduler(
        ShellExecutor(workdir),
        max_workers=workers,
        transport=transport_for(artifact_dir),
        notifier=LoggingNotifier(),
        default_timeout=default_timeout,
    )
    try:
        pipeline_run = scheduler.submit(definition, run_ctx)
        if not as_json:
            console.print_run_started(
                repository=_repo_name(),
                pipeline=definition.name,
                job_count=len(pipeline_run.records),
                run_id=pipeline_run.id,
            )
        result = pipeline_run.wait()
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        scheduler.shutdown(wait=False)
        sys.exit(130)
    except RelayError as e:
        result = RunAggregator.from_error(e, run_id=run_ctx.run_id, pipeline=definition.name)
    except Exception as e:
        console.print_exception(e)
        scheduler.shutdown(wait=False)
        sys.exit(1)
    scheduler.shutdown()

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
    elif result.error:
        console.print_error(result.error_type or "Error", result.error)
    else:
        console.print_results(result)

    if not result.succeeded:
        sys.exit(1)


@cli.command()
@context_options
@click.pass_context
def plan(ctx, pipeline_path, event, ref, head_ref, base_ref, var_pairs, git_diff, compare_ref):
    """Show the stages a run would execute, assuming every job succeeds."""
    console = get_console()
    path = discover_pipeline(pipeline_path)
    definition = _load_or_exit(path)
    run_ctx = build_context(
        event=event,
        ref=ref,
        head_ref=head_ref,
        base_ref=base_ref,
        variables=_parse_vars(var_pairs),
        git_diff=git_diff,
        compare_ref=compare_ref,
    ).with_workflow(definition.name)

    if not definition.is_triggered_by(run_ctx):
        console.print_not_triggered(definition.name, definition.triggers.explain(run_ctx))
        return

    instances = []
    broken = set()
    for spec in definition.jobs:
        try:
            instances.extend(expand(spec, context=run_ctx, env=definition.env))
        except ExpansionError as e:
            console.print_debug(f"{spec.id}: {e.message}")
            instances.append(placeholder(spec))
            broken.add(spec.id)
    graph = JobGraph.build(instances)

    # optimistic pass: every job that runs is assumed to succeed
    results: Dict[str, JobStatus] = {job_id: JobStatus.FAILED for job_id in broken}
    while True:
        ev = graph.evaluate(results, run_ctx, definition.env)
        if not ev.ready and not ev.skipped:
            break
        for job_id in ev.ready:
            results[job_id] = JobStatus.SUCCEEDED
        for job_id, _reason in ev.skipped:
            results[job_id] = JobStatus.SKIPPED

    console.print_header(f"PLAN: {definition.name}")
    for i, level in enumerate(graph.levels(), start=1):
        console.print_plan_stage(i)
        for job_id in level:
            job = graph.jobs[job_id]
            label = job.name if job.name == job_id else f"{job_id} ({job.name})"
            if job_id in broken:
                console.print_plan_job_skipped(label, "matrix expansion failed")
            elif results.get(job_id) == JobStatus.SKIPPED:
                console.print_plan_job_skipped(label, "condition false")
            else:
                console.print_plan_job(label, "runs")


@cli.command()
@click.argument("paths", nargs=-1, type=click.Path())
def validate(paths):
    """Validate pipeline files without running them."""
    console = get_console()
    targets = [Path(p) for p in paths] or [discover_pipeline(None)]
    failed = False
    for path in targets:
        try:
            definition = load_definition(path)
        except (DefinitionError, FileNotFoundError) as e:
            failed = True
            message = e.message if isinstance(e, DefinitionError) else str(e)
            console.print_error("Invalid pipeline", f"{path}: {message}")
            continue
        console.print_info(f"OK  {path}: {definition.name} ({len(definition.jobs)} jobs)")
    if failed:
        sys.exit(1)


@cli.command()
@click.option("--host", default=settings.API_HOST, show_default=True)
@click.option("--port", default=settings.API_PORT, show_default=True, type=int)
@click.option("--workers", default=settings.WORKERS, type=int, help="Number of parallel job workers")
@click.option("--workdir", default=settings.WORKDIR, show_default=True, help="Directory steps run in")
def serve(host, port, workers, workdir):
    """Serve the status API."""
    import uvicorn

    from relayci.api.app import create_app

    scheduler = Scheduler(
        ShellExecutor(workdir),
        max_workers=workers,
        transport=transport_for(settings.ARTIFACT_DIR),
        notifier=LoggingNotifier(),
        default_timeout=settings.DEFAULT_TIMEOUT,
    )
    uvicorn.run(create_app(scheduler), host=host, port=port, log_level=settings.LOG_LEVEL.lower())


@cli.command()
@click.option("--api", required=True, help="API base URL (e.g., http://localhost:8080)")
@click.option("--pipeline", "pipeline_path", default=None, help="YAML pipeline file (defaults to relayci.yaml if present)")
@click.option("--event", default="push", show_default=True)
@click.option("--ref", default=None, help="Git ref or branch (defaults to the current checkout)")
@click.pass_context
def submit(ctx, api, pipeline_path, event, ref):
    """Submit a pipeline run to a relayci API server."""
    console = get_console()
    path = discover_pipeline(pipeline_path)
    if path.suffix not in (".yaml", ".yml"):
        console.print_error("Unsupported pipeline", "Only YAML pipelines can be submitted to the API.")
        sys.exit(1)
    definition = _load_or_exit(path)  # fail locally before sending

    run_ctx = build_context(
        event=event, ref=ref, head_ref="", base_ref="", variables={}, git_diff=False, compare_ref="origin/main"
    )
    body = {
        "definition": path.read_text(encoding="utf-8"),
        "context": {
            "event": run_ctx.event,
            "ref": run_ctx.ref,
            "sha": run_ctx.sha,
            "actor": run_ctx.actor,
            "run_id": run_ctx.run_id,
        },
    }

    base_url = api.rstrip("/")
    url = urljoin(base_url + "/", "runs")
    req = urllib.request.Request(
        url,
        data=json.dumps(body).encode("utf-8"),
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(req) as response:
            result = json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as e:
        error_body = e.read().decode("utf-8") if e.fp else ""
        console.print_error(
            "API request failed",
            f"HTTP {e.code} {e.reason}",
            details=[error_body] if error_body else None,
            suggestion=f"Check the API at {base_url} and verify your request.",
        )
        sys.exit(1)
    except urllib.error.URLError as e:
        console.print_error(
            "Network error",
            f"Could not connect to {base_url}",
            details=[str(e.reason)],
            suggestion="Verify the API URL is correct and the API is running.",
        )
        sys.exit(1)

    console.print_info(f"\nSubmitted {definition.name} to {base_url}")
    console.print_info(f"  Run ID: {result.get('run_id')}")
    console.print_info(f"  State: {result.get('state')}")
    if not result.get("triggered", True):
        console.print_info("  Not triggered by this event.")


if __name__ == "__main__":
    cli()
