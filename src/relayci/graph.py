# graph.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from .conditions import EvalScope, Expr, success
from .errors import CycleError, DefinitionError
from .model import JobInstance, JobStatus, PipelineDefinition, RunContext, combine_results

DEFAULT_CONDITION = success()


# ----------------------------------------------------------------------
# Structural checks (shared by templates and instances)
# ----------------------------------------------------------------------

def _check_unique(ids: Sequence[str]) -> None:
    if len(set(ids)) != len(ids):
        dupes = sorted({n for n in ids if ids.count(n) > 1})
        raise DefinitionError(f"Duplicate job ids found: {dupes}")


def find_cycle(deps: Mapping[str, Iterable[str]]) -> Optional[List[str]]:
    """
    Return one dependency cycle as a closed path (first == last), or None.

    `deps` maps a node to the nodes it needs.
    """
    WHITE, GREY, BLACK = 0, 1, 2
    color = {n: WHITE for n in deps}

    for start in sorted(deps):
        if color[start] != WHITE:
            continue
        path: List[str] = []
        stack: List[Tuple[str, Iterable[str]]] = [(start, iter(sorted(deps[start])))]
        color[start] = GREY
        path.append(start)
        while stack:
            node, it = stack[-1]
            nxt = next(it, None)
            if nxt is None:
                color[node] = BLACK
                stack.pop()
                path.pop()
                continue
            if color.get(nxt, BLACK) == GREY:
                return path[path.index(nxt):] + [nxt]
            if color.get(nxt) == WHITE:
                color[nxt] = GREY
                path.append(nxt)
                stack.append((nxt, iter(sorted(deps[nxt]))))
    return None


def validate_definition(definition: PipelineDefinition) -> None:
    """
    Template-level checks: unique ids, no dangling `needs`, acyclic,
    required gates resolve. A cycle among templates is a cycle among instances.
    """
    ids = [j.id for j in definition.jobs]
    _check_unique(ids)
    known = set(ids)

    deps: Dict[str, Set[str]] = {}
    for j in definition.jobs:
        for need in j.needs:
            if need not in known:
                raise DefinitionError(
                    f"Job '{j.id}' needs missing job '{need}'. Known jobs: {sorted(known)}",
                    job=j.id,
                )
        deps[j.id] = set(j.needs)

    cycle = find_cycle(deps)
    if cycle:
        raise CycleError(cycle)

    for check in definition.required:
        if definition.resolve_gate(check.job) is None:
            raise DefinitionError(f"Required check '{check.job}' does not name a job")

    if definition.concurrency is not None:
        for path in definition.concurrency.group.refs():
            if path[0] in ("matrix", "needs"):
                raise DefinitionError(
                    f"concurrency group cannot reference {'.'.join(path)} (only run, env and vars)"
                )

    for j in definition.jobs:
        if j.condition is None:
            continue
        for path in j.condition.refs():
            if path[0] == "needs" and path[1] not in j.needs:
                raise DefinitionError(
                    f"Job '{j.id}' condition reads needs.{path[1]} but does not need it",
                    job=j.id,
                )


# ----------------------------------------------------------------------
# Instance graph
# ----------------------------------------------------------------------

@dataclass
class Evaluation:
    """Decisions for pending jobs whose dependencies are all terminal."""
    ready: List[str] = field(default_factory=list)
    skipped: List[Tuple[str, str]] = field(default_factory=list)  # (job id, reason)


class JobGraph:
    """
    Dependency graph over concrete job instances.

    A job's `needs` names templates. Needing a matrix template means needing
    every instance of it.
    """

    def __init__(self, jobs: Iterable[JobInstance]):
        jobs = list(jobs)
        _check_unique([j.id for j in jobs])

        self.jobs: Dict[str, JobInstance] = {j.id: j for j in jobs}
        self.order: List[str] = [j.id for j in jobs]
        self.by_template: Dict[str, List[str]] = {}
        for j in jobs:
            self.by_template.setdefault(j.template, []).append(j.id)

        self.deps: Dict[str, Set[str]] = {j.id: set() for j in jobs}       # job -> what it needs
        self.dependents: Dict[str, Set[str]] = {j.id: set() for j in jobs}  # job -> who needs it

        for j in jobs:
            for need in j.needs:
                members = self.by_template.get(need)
                if not members:
                    raise DefinitionError(
                        f"Job '{j.id}' needs missing job '{need}'. "
                        f"Known jobs: {sorted(self.by_template)}",
                        job=j.id,
                    )
                for dep in members:
                    self.deps[j.id].add(dep)
                    self.dependents[dep].add(j.id)

        cycle = find_cycle(self.deps)
        if cycle:
            raise CycleError(cycle)

    @classmethod
    def build(cls, jobs: Iterable[JobInstance]) -> "JobGraph":
        return cls(jobs)

    def __len__(self) -> int:
        return len(self.jobs)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self.jobs

    def descendants(self, job_id: str) -> Set[str]:
        seen: Set[str] = set()
        q = deque([job_id])
        while q:
            for child in self.dependents[q.popleft()]:
                if child not in seen:
                    seen.add(child)
                    q.append(child)
        return seen

    def levels(self) -> List[List[str]]:
        """
        Topological "levels" (stages). Each stage could run in parallel.
        """
        indeg = {n: len(d) for n, d in self.deps.items()}
        q = deque(sorted(n for n, d in indeg.items() if d == 0))
        levels: List[List[str]] = []

        while q:
            level: List[str] = []
            for _ in range(len(q)):
                node = q.popleft()
                level.append(node)
                for child in sorted(self.dependents[node]):
                    indeg[child] -= 1
                    if indeg[child] == 0:
                        q.append(child)
            levels.append(level)

        return levels

    # ---- condition evaluation ----

    def needs_results(self, job_id: str, results: Mapping[str, JobStatus]) -> Dict[str, JobStatus]:
        """Combined result per needed template."""
        out: Dict[str, JobStatus] = {}
        for need in self.jobs[job_id].needs:
            out[need] = combine_results(
                results.get(m, JobStatus.PENDING) for m in self.by_template[need]
            )
        return out

    def scope_for(
        self,
        job_id: str,
        results: Mapping[str, JobStatus],
        context: RunContext,
        env: Optional[Mapping[str, str]] = None,
    ) -> EvalScope:
        job = self.jobs[job_id]
        merged_env = dict(env or {})
        merged_env.update(job.env)
        return EvalScope(
            context=context,
            matrix=job.matrix_values,
            env=merged_env,
            needs=self.needs_results(job_id, results),
            allow_skipped_needs=job.allow_skipped_needs,
        )

    def condition_holds(
        self,
        job_id: str,
        results: Mapping[str, JobStatus],
        context: RunContext,
        env: Optional[Mapping[str, str]] = None,
    ) -> bool:
        job = self.jobs[job_id]
        cond: Expr = job.condition or DEFAULT_CONDITION
        if not cond.uses_status_function():
            # a bare predicate still requires its dependencies to have succeeded
            cond = DEFAULT_CONDITION & cond
        return cond.holds(self.scope_for(job_id, results, context, env))

    def _skip_reason(self, job_id: str, results: Mapping[str, JobStatus]) -> str:
        combined = self.needs_results(job_id, results).values()
        if JobStatus.FAILED in combined:
            return "dependency failed"
        if JobStatus.CANCELLED in combined:
            return "dependency cancelled"
        if JobStatus.SKIPPED in combined and not self.jobs[job_id].allow_skipped_needs:
            return "dependency skipped"
        return "condition false"

    def evaluate(
        self,
        results: Mapping[str, JobStatus],
        context: RunContext,
        env: Optional[Mapping[str, str]] = None,
    ) -> Evaluation:
        """
        Decide every pending job whose dependencies are all terminal:
        ready (condition true) or skipped (condition false).
        """
        ev = Evaluation()
        for job_id in self.order:
            if results.get(job_id, JobStatus.PENDING) != JobStatus.PENDING:
                continue
            if not all(results.get(d, JobStatus.PENDING).terminal for d in self.deps[job_id]):
                continue
            if self.condition_holds(job_id, results, context, env):
                ev.ready.append(job_id)
            else:
                ev.skipped.append((job_id, self._skip_reason(job_id, results)))
        return ev

    def ready(
        self,
        completed: Iterable[str],
        *,
        context: Optional[RunContext] = None,
        results: Optional[Mapping[str, JobStatus]] = None,
        started: Iterable[str] = (),
    ) -> Set[str]:
        """
        Jobs not yet started whose every dependency is in `completed` and
        whose condition holds. Completed jobs without an entry in `results`
        count as succeeded.
        """
        completed = set(completed)
        started = set(started)
        results = dict(results or {})
        view: Dict[str, JobStatus] = {}
        for job_id in self.jobs:
            if job_id in completed:
                view[job_id] = results.get(job_id, JobStatus.SUCCEEDED)
            elif job_id in started:
                view[job_id] = JobStatus.RUNNING
            else:
                view[job_id] = JobStatus.PENDING
        return set(self.evaluate(view, context or RunContext()).ready)
