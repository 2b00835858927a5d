# graph.py
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .errors import ConfigError, EvalError
from .expressions import EvalContext, check_syntax, check_template, interpolate, references_status
from .matrix import expand_matrix
from .model import JobInstance, JobSpec, JobState, PipelineDefinition, TriggerContext, format_value

logger = logging.getLogger(__name__)


@dataclass
class JobGraph:
    """
    The executable DAG: one node per JobInstance, edges prerequisite -> dependent.

    Read-only once built; only instance state changes during a run.
    """
    definition: PipelineDefinition
    trigger: TriggerContext
    instances: Dict[str, JobInstance]
    prerequisites: Dict[str, List[str]]
    dependents: Dict[str, Set[str]]
    order: List[str]
    by_job: Dict[str, List[str]]
    uploads: Dict[str, str] = field(default_factory=dict)

    @property
    def edges(self) -> List[Tuple[str, str]]:
        return [(p, child) for child in self.order for p in self.prerequisites[child]]

    def ancestors(self, instance_id: str) -> Set[str]:
        seen: Set[str] = set()
        stack = list(self.prerequisites[instance_id])
        while stack:
            node = stack.pop()
            if node in seen:
                continue
            seen.add(node)
            stack.extend(self.prerequisites[node])
        return seen

    def stages(self) -> List[List[str]]:
        """Topological "levels": every instance in a stage can run in parallel."""
        indeg = {n: len(self.prerequisites[n]) for n in self.order}
        position = {n: i for i, n in enumerate(self.order)}
        level = [n for n in self.order if indeg[n] == 0]
        levels: List[List[str]] = []
        while level:
            levels.append(level)
            nxt: List[str] = []
            for node in level:
                for child in self.dependents[node]:
                    indeg[child] -= 1
                    if indeg[child] == 0:
                        nxt.append(child)
            level = sorted(nxt, key=position.__getitem__)
        return levels

    def context_for(self, instance: JobInstance) -> EvalContext:
        env = dict(self.definition.env)
        env.update(instance.spec.env)
        return EvalContext(trigger=self.trigger, matrix=instance.matrix, env=env)


# ---------------------------------------------------------------------
# Build
# ---------------------------------------------------------------------

def _check_job_cycles(jobs: Dict[str, JobSpec]) -> None:
    """Kahn over job names; any leftover node sits on (or behind) a cycle."""
    indeg = {name: 0 for name in jobs}
    adj: Dict[str, List[str]] = {name: [] for name in jobs}
    for spec in jobs.values():
        for dep in dict.fromkeys(spec.need_names):
            adj[dep].append(spec.name)
            indeg[spec.name] += 1

    q = deque(name for name, d in indeg.items() if d == 0)
    processed = 0
    while q:
        node = q.popleft()
        processed += 1
        for child in adj[node]:
            indeg[child] -= 1
            if indeg[child] == 0:
                q.append(child)

    if processed != len(jobs):
        stuck = [n for n, d in indeg.items() if d > 0]
        raise ConfigError(f"dependency cycle between jobs: {stuck}", "jobs")


def _check_expressions(spec: JobSpec) -> None:
    path = f"jobs.{spec.name}"
    if spec.condition:
        try:
            check_syntax(spec.condition)
        except EvalError as e:
            raise ConfigError(f"invalid condition: {e}", f"{path}.if") from e

    for i, step in enumerate(spec.steps):
        texts = [step.name, step.run or ""]
        texts += [v for v in list(step.with_.values()) + list(step.env.values()) if isinstance(v, str)]
        try:
            if step.condition:
                check_syntax(step.condition)
            for text in texts:
                check_template(text)
        except EvalError as e:
            raise ConfigError(f"invalid expression: {e}", f"{path}.steps[{i}]") from e


def _scope_matches(instance: JobInstance, scope: Dict[str, object]) -> bool:
    cell = instance.matrix
    return all(k in cell and format_value(cell[k]) == format_value(v) for k, v in scope.items())


def _resolve_static(value: str, ctx: EvalContext, path: str) -> str:
    try:
        return interpolate(value, ctx)
    except EvalError as e:
        raise ConfigError(f"cannot resolve {value!r} at build time: {e}", path) from e


def build_graph(definition: PipelineDefinition, trigger: TriggerContext) -> JobGraph:
    """
    Expand every job's matrix, wire `needs` into instance edges, and
    reject anything that can't run: unknown or cyclic needs, unmatched
    needs scopes, duplicate or unreachable artifacts.
    """
    jobs = definition.jobs
    if not jobs:
        raise ConfigError("pipeline defines no jobs", "jobs")

    for spec in jobs.values():
        for need in spec.need_names:
            if need == spec.name:
                raise ConfigError(f"job {spec.name!r} needs itself", f"jobs.{spec.name}.needs")
            if need not in jobs:
                raise ConfigError(
                    f"job {spec.name!r} needs missing job {need!r}. Known jobs: {sorted(jobs)}",
                    f"jobs.{spec.name}.needs",
                )
        if spec.max_parallel is not None and spec.max_parallel < 1:
            raise ConfigError("max-parallel must be a positive integer", f"jobs.{spec.name}.strategy.max-parallel")
        _check_expressions(spec)

    _check_job_cycles(jobs)

    instances: Dict[str, JobInstance] = {}
    by_job: Dict[str, List[str]] = {}
    for spec in jobs.values():
        by_job[spec.name] = []
        for cell in expand_matrix(spec):
            inst = JobInstance(spec, cell)
            if inst.id in instances:
                raise ConfigError(f"duplicate job instance id {inst.id!r}", f"jobs.{spec.name}")
            instances[inst.id] = inst
            by_job[spec.name].append(inst.id)

    prerequisites: Dict[str, List[str]] = {iid: [] for iid in instances}
    dependents: Dict[str, Set[str]] = {iid: set() for iid in instances}

    env_base = dict(definition.env)
    for iid, inst in instances.items():
        env = dict(env_base)
        env.update(inst.spec.env)
        ctx = EvalContext(trigger=trigger, matrix=inst.matrix, env=env)

        for n, need in enumerate(inst.spec.needs):
            candidates = [instances[c] for c in by_job[need.job]]
            if need.matrix:
                where = f"jobs.{inst.job}.needs[{n}].matrix"
                scope = {
                    k: _resolve_static(v, ctx, where) if isinstance(v, str) else v
                    for k, v in need.matrix.items()
                }
                candidates = [c for c in candidates if _scope_matches(c, scope)]
                if not candidates:
                    raise ConfigError(f"{iid} needs {need.job} with {scope} but no cell matches", where)
            for cand in candidates:
                if cand.id not in prerequisites[iid]:
                    prerequisites[iid].append(cand.id)
                    dependents[cand.id].add(iid)

    order = _topo_order(instances, prerequisites, dependents)

    graph = JobGraph(
        definition=definition,
        trigger=trigger,
        instances=instances,
        prerequisites=prerequisites,
        dependents=dependents,
        order=order,
        by_job=by_job,
    )
    graph.uploads = _check_artifacts(graph)

    logger.info(f"Built graph: {len(instances)} instance(s), {len(graph.edges)} edge(s)")
    return graph


def _topo_order(
    instances: Dict[str, JobInstance],
    prerequisites: Dict[str, List[str]],
    dependents: Dict[str, Set[str]],
) -> List[str]:
    position = {iid: i for i, iid in enumerate(instances)}
    indeg = {iid: len(p) for iid, p in prerequisites.items()}
    ready = [iid for iid in instances if indeg[iid] == 0]
    order: List[str] = []
    while ready:
        node = ready.pop(0)
        order.append(node)
        for child in sorted(dependents[node], key=position.__getitem__):
            indeg[child] -= 1
            if indeg[child] == 0:
                ready.append(child)
        ready.sort(key=position.__getitem__)

    if len(order) != len(instances):
        stuck = sorted(iid for iid, d in indeg.items() if d > 0)
        raise ConfigError(f"graph has a cycle. Stuck instances: {stuck}", "jobs")
    return order


def _check_artifacts(graph: JobGraph) -> Dict[str, str]:
    """
    Static analysis of declared outputs: every upload name is unique per run,
    every download is produced by a transitive prerequisite.
    """
    uploads: Dict[str, str] = {}
    downloads: List[Tuple[str, str, str]] = []

    for iid in graph.order:
        inst = graph.instances[iid]
        ctx = graph.context_for(inst)
        for i, step in enumerate(inst.spec.steps):
            if step.kind not in ("upload", "download"):
                continue
            where = f"jobs.{inst.job}.steps[{i}]"
            raw = step.with_.get("name")
            if not raw or not isinstance(raw, str):
                raise ConfigError(f"{step.kind} step needs a 'name' option", where)
            name = _resolve_static(raw, ctx, where)
            if step.kind == "upload":
                if name in uploads:
                    raise ConfigError(
                        f"artifact {name!r} is uploaded by both {uploads[name]} and {iid}",
                        where,
                    )
                uploads[name] = iid
            else:
                downloads.append((iid, name, where))

    for iid, name, where in downloads:
        producer = uploads.get(name)
        if producer is None:
            raise ConfigError(f"{iid} downloads {name!r} but no job uploads it", where)
        if producer not in graph.ancestors(iid):
            raise ConfigError(
                f"{iid} downloads {name!r} from {producer}, which is not one of its prerequisites",
                where,
            )
    return uploads


# ---------------------------------------------------------------------
# Readiness
# ---------------------------------------------------------------------

WAIT = "wait"
EVALUATE = "evaluate"
SKIP = "skip"


def prerequisite_status(states: Iterable[JobInstance]) -> str:
    """Summary the status predicates see: success, failure, skipped."""
    states = list(states)
    if any(p.state == JobState.FAILED for p in states):
        return "failure"
    if all(p.state == JobState.SUCCEEDED for p in states):
        return "success"
    return "skipped"


def needs_results(graph: JobGraph, instance: JobInstance) -> Dict[str, str]:
    """needs.<job>.result for each declared prerequisite job."""
    out: Dict[str, str] = {}
    prereqs = [graph.instances[p] for p in graph.prerequisites[instance.id]]
    for job in instance.spec.need_names:
        cells = [p for p in prereqs if p.job == job]
        if any(not p.state.terminal for p in cells):
            continue
        if any(p.state == JobState.FAILED for p in cells):
            out[job] = "failure"
        elif all(p.state == JobState.SUCCEEDED for p in cells):
            out[job] = "success"
        elif any(p.error is not None and p.error.kind == "CancellationError" for p in cells):
            out[job] = "cancelled"
        else:
            out[job] = "skipped"
    return out


def readiness(graph: JobGraph, instance: JobInstance) -> Tuple[str, Optional[str]]:
    """
    WAIT while any prerequisite is still running or pending.
    Once all are terminal: EVALUATE the instance's own condition if every
    prerequisite succeeded, or if the condition calls a status predicate
    (always()/failure()/...). Otherwise SKIP, naming the prerequisite.
    """
    prereqs = [graph.instances[p] for p in graph.prerequisites[instance.id]]
    if any(not p.state.terminal for p in prereqs):
        return WAIT, None
    if references_status(instance.spec.condition):
        return EVALUATE, None
    for p in prereqs:
        if p.state != JobState.SUCCEEDED:
            return SKIP, f"prerequisite {p.id} {p.state.value}"
    return EVALUATE, None
