# scheduler.py
from __future__ import annotations

import logging
import os
import queue
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Deque, Dict, List, Optional, Tuple

from .aggregate import PipelineResult, RunAggregator
from .artifacts import ArtifactStore, ArtifactTransport
from .errors import ArtifactError, ExpansionError, JobTimeoutError, RelayError
from .executor import CancelToken, Executor, JobContext
from .graph import JobGraph, validate_definition
from .logs import log_context
from .matrix import expand, placeholder
from .model import JobInstance, JobStatus, PipelineDefinition, RunContext
from .notify import Notifier, deliver

logger = logging.getLogger(__name__)


# ----------------------------------------------------------------------
# Run state
# ----------------------------------------------------------------------

@dataclass
class JobRecord:
    job: JobInstance
    status: JobStatus = JobStatus.PENDING
    reason: str | None = None
    error_type: str | None = None
    started_at: float | None = None
    finished_at: float | None = None


class RunState(str, Enum):
    QUEUED = "queued"
    WAITING = "waiting"     # blocked on its concurrency group
    RUNNING = "running"
    FINISHED = "finished"

    def __str__(self) -> str:
        return self.value


class PipelineRun:
    """
    One triggered run of a pipeline.

    Only the scheduler's coordinator thread mutates it. Readers go through
    `statuses()` / `snapshot()` or wait for `result`.
    """

    def __init__(
        self,
        definition: PipelineDefinition,
        context: RunContext,
        graph: JobGraph,
        records: Dict[str, JobRecord],
        store: ArtifactStore,
        group_key: str | None = None,
    ):
        self.id = context.run_id
        self.definition = definition
        self.context = context
        self.graph = graph
        self.records = records
        self.store = store
        self.group_key = group_key
        self.state = RunState.QUEUED
        self.cancelled = False
        self.result: PipelineResult | None = None
        self.created_at = time.time()

        self.tokens: Dict[str, CancelToken] = {}
        self.deadlines: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._done = threading.Event()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: float | None = None) -> PipelineResult:
        if not self._done.wait(timeout):
            raise TimeoutError(f"run {self.id} still in progress after {timeout}s")
        assert self.result is not None
        return self.result

    def statuses(self) -> Dict[str, JobStatus]:
        with self._lock:
            return {job_id: r.status for job_id, r in self.records.items()}

    def snapshot(self) -> Dict[str, object]:
        with self._lock:
            return {
                "run_id": self.id,
                "pipeline": self.definition.name,
                "state": self.state.value,
                "group": self.group_key,
                "jobs": {
                    job_id: {
                        "name": r.job.name,
                        "status": r.status.value,
                        "reason": r.reason,
                        "error_type": r.error_type,
                    }
                    for job_id, r in self.records.items()
                },
            }

    def _set(
        self,
        job_id: str,
        status: JobStatus,
        *,
        reason: str | None = None,
        error_type: str | None = None,
    ) -> None:
        now = time.time()
        with self._lock:
            record = self.records[job_id]
            record.status = status
            if reason is not None:
                record.reason = reason
            if error_type is not None:
                record.error_type = error_type
            if status == JobStatus.RUNNING:
                record.started_at = now
            elif status.terminal:
                record.finished_at = now


# ----------------------------------------------------------------------
# Coordinator events
# ----------------------------------------------------------------------

@dataclass
class _Admit:
    run: PipelineRun


@dataclass
class _Finished:
    run_id: str
    job_id: str
    status: JobStatus
    error: BaseException | None = None


@dataclass
class _Cancel:
    run_id: str
    reason: str


class _Stop:
    pass


def _describe(exc: BaseException) -> Tuple[str, str]:
    if isinstance(exc, RelayError):
        return exc.message, exc.kind
    return str(exc) or type(exc).__name__, type(exc).__name__


# ----------------------------------------------------------------------
# Scheduler
# ----------------------------------------------------------------------

class Scheduler:
    """
    Runs pipelines on a bounded worker pool.

    A single coordinator thread owns every state transition. Workers only
    execute jobs and report back through the event queue, so "cancel" and
    "finished" for the same job are ordered and the first one wins.
    """

    def __init__(
        self,
        executor: Executor,
        *,
        max_workers: int | None = None,
        transport: ArtifactTransport | None = None,
        notifier: Notifier | None = None,
        default_timeout: float | None = None,
        aggregator: RunAggregator | None = None,
    ):
        self.executor = executor
        self.max_workers = max_workers or max(1, (os.cpu_count() or 2) - 1)
        self.transport = transport
        self.notifier = notifier
        self.default_timeout = default_timeout
        self.aggregator = aggregator or RunAggregator()

        self._pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="relayci-job")
        self._events: "queue.Queue[object]" = queue.Queue()
        self._lock = threading.Lock()
        self._closed = False
        self._runs: Dict[str, PipelineRun] = {}

        # coordinator-owned
        self._active: Dict[str, PipelineRun] = {}
        self._groups: Dict[str, str] = {}                    # group key -> holder run id
        self._waiting: Dict[str, Deque[PipelineRun]] = {}    # group key -> queued runs
        self._ready: Deque[Tuple[PipelineRun, str]] = deque()
        self._queued: set = set()
        self._busy = 0
        self._stopping = False

        self._coordinator = threading.Thread(target=self._loop, name="relayci-coordinator", daemon=True)
        self._coordinator.start()

    # ---- public API ----

    def prepare(self, definition: PipelineDefinition, context: RunContext | None = None) -> PipelineRun:
        """Expand templates and build the instance graph. Raises pre-run errors."""
        context = (context or RunContext()).with_workflow(definition.name)
        validate_definition(definition)

        instances: List[JobInstance] = []
        expansion_errors: Dict[str, ExpansionError] = {}
        for spec in definition.jobs:
            try:
                instances.extend(expand(spec, context=context, env=definition.env))
            except ExpansionError as e:
                logger.warning("matrix expansion failed for %s: %s", spec.id, e.message)
                instances.append(placeholder(spec))
                expansion_errors[spec.id] = e

        graph = JobGraph.build(instances)
        records = {job.id: JobRecord(job=job) for job in instances}
        for job_id, err in expansion_errors.items():
            rec = records[job_id]
            rec.status = JobStatus.FAILED
            rec.reason, rec.error_type = _describe(err)
            rec.finished_at = time.time()

        store = ArtifactStore(
            context.run_id,
            transport=self.transport,
            declared={j.id: [o.name for o in j.outputs] for j in instances},
        )
        group_key = None
        if definition.concurrency is not None:
            group_key = definition.concurrency.key_for(context, definition.env)

        return PipelineRun(definition, context, graph, records, store, group_key)

    def submit(self, definition: PipelineDefinition, context: RunContext | None = None) -> PipelineRun:
        """Queue a run and return immediately. Pre-run errors are raised here."""
        with self._lock:
            if self._closed:
                raise RuntimeError("scheduler is shut down")

        run = self.prepare(definition, context)
        with self._lock:
            if run.id in self._runs:
                raise ValueError(f"run id {run.id} already submitted")
            self._runs[run.id] = run

        if not definition.is_triggered_by(run.context):
            logger.info("pipeline %s not triggered by %s on %s", definition.name, run.context.event, run.context.ref)
            run.state = RunState.FINISHED
            run.result = RunAggregator.not_triggered(run.id, definition.name)
            run._done.set()
            return run

        self._events.put(_Admit(run))
        return run

    def run(
        self,
        definition: PipelineDefinition,
        context: RunContext | None = None,
        *,
        timeout: float | None = None,
    ) -> PipelineResult:
        """Submit and wait. Pre-run errors come back as a failed result."""
        try:
            pr = self.submit(definition, context)
        except RelayError as e:
            run_id = context.run_id if context is not None else ""
            return RunAggregator.from_error(e, run_id=run_id, pipeline=definition.name)
        return pr.wait(timeout)

    def cancel(self, run_id: str, reason: str = "cancelled by request") -> bool:
        run = self.get(run_id)
        if run is None or run.done:
            return False
        self._events.put(_Cancel(run_id, reason))
        return True

    def get(self, run_id: str) -> Optional[PipelineRun]:
        with self._lock:
            return self._runs.get(run_id)

    def runs(self) -> List[PipelineRun]:
        with self._lock:
            return list(self._runs.values())

    def shutdown(self, wait: bool = True) -> None:
        """Cancel everything still in flight and stop the coordinator."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._events.put(_Stop())
        self._coordinator.join()
        self._pool.shutdown(wait=wait)

    def __enter__(self) -> "Scheduler":
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()

    # ---- coordinator loop ----

    def _loop(self) -> None:
        while True:
            try:
                event = self._events.get(timeout=self._next_deadline_in())
            except queue.Empty:
                event = None

            if isinstance(event, _Stop):
                self._stop_all()
                return

            try:
                if isinstance(event, _Admit):
                    self._admit(event.run)
                elif isinstance(event, _Finished):
                    self._on_finished(event)
                elif isinstance(event, _Cancel):
                    run = self._active.get(event.run_id) or self._find_waiting(event.run_id)
                    if run is not None:
                        self._cancel_run(run, event.reason)
                self._expire_deadlines()
                self._pump()
            except Exception:
                # the coordinator must outlive a bad event
                logger.exception("coordinator failed handling %r", event)

    def _next_deadline_in(self) -> float | None:
        deadlines = [d for run in self._active.values() for d in run.deadlines.values()]
        if not deadlines:
            return None
        return max(0.0, min(deadlines) - time.time())

    # ---- admission / concurrency groups ----

    def _find_waiting(self, run_id: str) -> Optional[PipelineRun]:
        for waiting in self._waiting.values():
            for run in waiting:
                if run.id == run_id:
                    return run
        return None

    def _admit(self, run: PipelineRun) -> None:
        key = run.group_key
        if key is not None:
            holder_id = self._groups.get(key)
            holder = self._active.get(holder_id) if holder_id else None
            if holder is not None:
                concurrency = run.definition.concurrency
                if concurrency is not None and concurrency.cancel_in_progress:
                    # claim the key first so releasing the holder does not hand it to a waiter
                    self._groups[key] = run.id
                    logger.info("run %s preempts run %s in group %s", run.id, holder.id, key)
                    self._cancel_run(holder, f"superseded by run {run.id}")
                else:
                    logger.info("run %s waits for run %s in group %s", run.id, holder.id, key)
                    run.state = RunState.WAITING
                    self._waiting.setdefault(key, deque()).append(run)
                    return
            self._groups[key] = run.id
        self._start(run)

    def _start(self, run: PipelineRun) -> None:
        run.state = RunState.RUNNING
        self._active[run.id] = run
        logger.info("run %s started: %s (%d jobs)", run.id, run.definition.name, len(run.graph))
        self._settle(run)
        self._maybe_finish(run)

    def _release(self, run: PipelineRun) -> None:
        key = run.group_key
        if key is None or self._groups.get(key) != run.id:
            return
        del self._groups[key]
        waiting = self._waiting.get(key)
        if waiting and not self._stopping:
            nxt = waiting.popleft()
            if not waiting:
                del self._waiting[key]
            self._groups[key] = nxt.id
            self._start(nxt)

    # ---- job transitions ----

    def _settle(self, run: PipelineRun) -> None:
        """Skip jobs whose condition is false and queue the ready ones, until stable."""
        while True:
            ev = run.graph.evaluate(run.statuses(), run.context, run.definition.env)
            for job_id, reason in ev.skipped:
                run._set(job_id, JobStatus.SKIPPED, reason=reason)
                logger.info("[%s] skipped: %s", job_id, reason)
            for job_id in ev.ready:
                if (run.id, job_id) not in self._queued:
                    self._queued.add((run.id, job_id))
                    self._ready.append((run, job_id))
            if not ev.skipped:
                return

    def _pump(self) -> None:
        while self._ready and self._busy < self.max_workers:
            run, job_id = self._ready.popleft()
            self._queued.discard((run.id, job_id))
            if run.state != RunState.RUNNING or run.records[job_id].status != JobStatus.PENDING:
                continue
            self._dispatch(run, job_id)

    def _dispatch(self, run: PipelineRun, job_id: str) -> None:
        job = run.records[job_id].job
        run._set(job_id, JobStatus.RUNNING)

        try:
            inputs = {spec.name: run.store.get(spec.name) for spec in job.inputs}
        except ArtifactError as e:
            self._fail(run, job_id, e)
            self._settle(run)
            self._maybe_finish(run)
            return

        token = CancelToken()
        run.tokens[job_id] = token
        timeout = job.timeout or self.default_timeout
        if timeout:
            run.deadlines[job_id] = time.time() + timeout

        ctx = JobContext(
            run_id=run.id,
            context=run.context,
            inputs=inputs,
            artifacts=run.store.bind(job_id),
            cancel=token,
            env=dict(run.definition.env),
        )
        self._busy += 1
        logger.info("[%s] running", job_id)
        self._pool.submit(self._work, run, job, ctx)

    def _work(self, run: PipelineRun, job: JobInstance, ctx: JobContext) -> None:
        # worker thread: never touches run state directly
        with log_context(run_id=run.id, job_id=job.id):
            error: BaseException | None = None
            try:
                status = self.executor.execute(job, ctx)
            except Exception as e:
                logger.debug("[%s] raised %s", job.id, type(e).__name__, exc_info=True)
                status, error = JobStatus.FAILED, e
            self._events.put(_Finished(run.id, job.id, status, error))

    def _on_finished(self, ev: _Finished) -> None:
        self._busy -= 1
        run = self._active.get(ev.run_id)
        if run is None:
            return
        run.tokens.pop(ev.job_id, None)
        run.deadlines.pop(ev.job_id, None)

        record = run.records[ev.job_id]
        if record.status.terminal:
            logger.debug("[%s] ignoring late %s (already %s)", ev.job_id, ev.status, record.status)
            return

        if ev.status == JobStatus.SUCCEEDED:
            run.store.mark_succeeded(ev.job_id)
            run._set(ev.job_id, JobStatus.SUCCEEDED)
            logger.info("[%s] succeeded", ev.job_id)
        else:
            error = ev.error or RuntimeError(f"executor reported {ev.status}")
            self._fail(run, ev.job_id, error)

        self._settle(run)
        self._maybe_finish(run)

    def _fail(self, run: PipelineRun, job_id: str, error: BaseException) -> None:
        reason, error_type = _describe(error)
        run._set(job_id, JobStatus.FAILED, reason=reason, error_type=error_type)
        logger.info("[%s] failed: %s: %s", job_id, error_type, reason)

        job = run.records[job_id].job
        if job.fail_fast:
            for sibling in run.graph.by_template.get(job.template, []):
                if sibling != job_id and not run.records[sibling].status.terminal:
                    self._cancel_job(run, sibling, f"fail-fast: {job_id} failed")

    def _cancel_job(self, run: PipelineRun, job_id: str, reason: str) -> None:
        token = run.tokens.get(job_id)
        if token is not None:
            token.cancel(reason)
        run.deadlines.pop(job_id, None)
        run._set(job_id, JobStatus.CANCELLED, reason=reason)
        logger.info("[%s] cancelled: %s", job_id, reason)

    def _expire_deadlines(self) -> None:
        now = time.time()
        for run in list(self._active.values()):
            expired = [job_id for job_id, d in run.deadlines.items() if d <= now]
            for job_id in expired:
                run.deadlines.pop(job_id, None)
                timeout = run.records[job_id].job.timeout or self.default_timeout or 0.0
                token = run.tokens.get(job_id)
                if token is not None:
                    token.cancel("timeout")
                self._fail(run, job_id, JobTimeoutError(job_id, timeout))
            if expired:
                self._settle(run)
                self._maybe_finish(run)

    def _cancel_run(self, run: PipelineRun, reason: str) -> None:
        if run.state == RunState.FINISHED:
            return
        if run.state == RunState.WAITING and run.group_key is not None:
            waiting = self._waiting.get(run.group_key)
            if waiting and run in waiting:
                waiting.remove(run)
                if not waiting:
                    del self._waiting[run.group_key]

        pending = [job_id for job_id, r in run.records.items() if not r.status.terminal]
        if pending:
            run.cancelled = True
        for job_id in pending:
            self._cancel_job(run, job_id, reason)
        self._finish(run)

    def _maybe_finish(self, run: PipelineRun) -> None:
        if run.state == RunState.FINISHED:
            return
        if all(r.status.terminal for r in run.records.values()):
            self._finish(run)

    def _finish(self, run: PipelineRun) -> None:
        result = self.aggregator.aggregate(run)
        with run._lock:
            run.result = result
            run.state = RunState.FINISHED
        self._active.pop(run.id, None)
        run.store.discard()
        logger.info("run %s finished: %s", run.id, result.status)

        deliver(self.notifier, run.definition.notify, result)
        self._release(run)
        run._done.set()

    def _stop_all(self) -> None:
        self._stopping = True
        for run in list(self._active.values()):
            self._cancel_run(run, "scheduler shutdown")
        for key in list(self._waiting):
            for run in list(self._waiting.get(key, ())):
                self._cancel_run(run, "scheduler shutdown")


__all__ = ["JobRecord", "RunState", "PipelineRun", "Scheduler"]
