# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, List, Set, Tuple

from .errors import ConfigurationError
from .model import STEP_KINDS, CachePolicy, JobDescriptor, Pipeline


def build_graph(pipeline: Pipeline) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build the dependency graph and validate it.

    Requires:
      - job.name: unique
      - job.needs: names of jobs that must terminate BEFORE this job
      - job.stage: one of pipeline.stages, not earlier than any dependency's stage

    Returns (adj, indeg) where adj maps dep -> dependents.
    Raises ConfigurationError; nothing has run at that point.
    """
    jobs = pipeline.jobs
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ConfigurationError(f"Duplicate job names found: {dupes}", {"duplicates": dupes})

    by_name = {j.name: j for j in jobs}
    adj: Dict[str, Set[str]] = {n: set() for n in by_name}
    indeg: Dict[str, int] = {n: 0 for n in by_name}

    for job in jobs:
        if job.stage not in pipeline.stages:
            raise ConfigurationError(
                f"Job '{job.name}' uses unknown stage '{job.stage}'",
                {"stages": list(pipeline.stages)},
            )

    for job in jobs:
        for dep in job.deps:
            if dep not in by_name:
                raise ConfigurationError(
                    f"Job '{job.name}' depends on missing job '{dep}'",
                    {"known_jobs": sorted(by_name)},
                )
            dep_stage = pipeline.stage_index(by_name[dep].stage)
            if pipeline.stage_index(job.stage) < dep_stage:
                raise ConfigurationError(
                    f"Job '{job.name}' (stage '{job.stage}') depends on '{dep}' in later stage '{by_name[dep].stage}'",
                    {"stages": list(pipeline.stages)},
                )
            if job.name not in adj[dep]:
                adj[dep].add(job.name)
                indeg[job.name] += 1

        for step in job.steps:
            if step.kind not in STEP_KINDS:
                raise ConfigurationError(
                    f"Job '{job.name}' step '{step.name}' has unknown kind '{step.kind}'",
                    {"kinds": list(STEP_KINDS)},
                )
            if step.kind == "convert" and step.source_job not in set(job.deps):
                raise ConfigurationError(
                    f"Job '{job.name}' converts the raw report of '{step.source_job}' without depending on it",
                    {"step": step.name, "needs": job.deps},
                )

    topo_levels(adj, indeg)
    _check_writers_precede_readers(pipeline)
    return adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert the DAG into topological levels. Each level only depends on
    earlier ones. Raises ConfigurationError on a cycle.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted([n for n, d in indeg.items() if d == 0]))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        remaining = sorted([n for n, d in indeg.items() if d > 0])
        raise ConfigurationError(f"Dependency cycle between jobs: {remaining}", {"stuck": remaining})

    return levels


def dispatch_key(pipeline: Pipeline, job: JobDescriptor) -> Tuple[int, int, int, str]:
    """Cache writers first, then override jobs, then by stage, then by name."""
    return (
        0 if job.cache_policy == CachePolicy.SHARED_READ_WRITE else 1,
        0 if job.independent else 1,
        pipeline.stage_index(job.stage),
        job.name,
    )


def cache_writers(pipeline: Pipeline, job: JobDescriptor) -> List[str]:
    """Writers of the shared cache a read-only job reads from."""
    if job.cache_policy != CachePolicy.READ_ONLY:
        return []
    return [
        w.name
        for w in pipeline.jobs
        if w.cache_policy == CachePolicy.SHARED_READ_WRITE and w.cache_key == job.cache_key
    ]


def _check_writers_precede_readers(pipeline: Pipeline) -> None:
    """
    A read-only job is held back until the writers of its cache have been
    dispatched, so a writer that itself waits (through needs or a stage
    barrier) on one of its readers can never start.
    """
    preds = {j.name: set(j.deps) | set(barrier_jobs(pipeline, j)) for j in pipeline.jobs}
    for reader in pipeline.jobs:
        for writer in cache_writers(pipeline, reader):
            seen: Set[str] = set()
            stack = list(preds[writer])
            while stack:
                n = stack.pop()
                if n in seen:
                    continue
                seen.add(n)
                stack.extend(preds[n])
            if reader.name in seen:
                raise ConfigurationError(
                    f"Cache writer '{writer}' cannot start before its reader '{reader.name}'",
                    {"cache_key": reader.cache_key, "hint": "move the writer to an earlier stage or give it needs=[]"},
                )


def barrier_jobs(pipeline: Pipeline, job: JobDescriptor) -> List[str]:
    """
    Jobs that must terminate before `job` because of stage ordering alone.
    Jobs with an explicit empty dependency set neither wait on nor hold
    a stage barrier.
    """
    if job.independent:
        return []
    idx = pipeline.stage_index(job.stage)
    return [
        other.name
        for other in pipeline.jobs
        if not other.independent and pipeline.stage_index(other.stage) < idx
    ]


def plan_schedule(pipeline: Pipeline) -> List[List[str]]:
    """
    A valid execution schedule as waves of jobs that may run together.

    Simulates the scheduler with every job taking one tick: a job enters the
    first wave in which its dependencies and its stage barrier have
    terminated and, for read-only jobs, the cache writers have been
    dispatched. The flattened waves form a total order.
    """
    build_graph(pipeline)
    by_name = pipeline.by_name()
    blockers = {
        j.name: set(j.deps) | set(barrier_jobs(pipeline, j))
        for j in pipeline.jobs
    }

    done: Set[str] = set()
    waves: List[List[str]] = []
    pending = sorted(pipeline.jobs, key=lambda j: dispatch_key(pipeline, j))
    while pending:
        wave = [j.name for j in pending if blockers[j.name] <= done and not cache_writers(pipeline, j)]
        started = done | set(wave)
        wave += [
            j.name
            for j in pending
            if cache_writers(pipeline, j) and blockers[j.name] <= done and set(cache_writers(pipeline, j)) <= started
        ]
        if not wave:
            raise ConfigurationError(
                "Jobs can never become ready",
                {"stuck": sorted(j.name for j in pending)},
            )
        waves.append(wave)
        done.update(wave)
        pending = [j for j in pending if j.name not in done]

    return [sorted(w, key=lambda n: dispatch_key(pipeline, by_name[n])) for w in waves]


def select_jobs(pipeline: Pipeline, only: str, *, durable_keys: Set[str] | None = None) -> Pipeline:
    """
    Sub-pipeline for running a single job: the job, everything it transitively
    needs, and the cache writers its read-only jobs would otherwise wait for
    (unless an earlier run already left that cache populated).
    """
    by_name = pipeline.by_name()
    if only not in by_name:
        raise ConfigurationError(f"Unknown job requested: {only}", {"known_jobs": sorted(by_name)})
    durable_keys = durable_keys or set()

    keep: Set[str] = set()
    stack = [only]
    while stack:
        name = stack.pop()
        if name in keep:
            continue
        keep.add(name)
        job = by_name[name]
        stack.extend(job.deps)
        if job.cache_policy == CachePolicy.READ_ONLY and job.cache_key not in durable_keys:
            stack.extend(
                w.name
                for w in pipeline.jobs
                if w.cache_policy == CachePolicy.SHARED_READ_WRITE and w.cache_key == job.cache_key
            )

    return Pipeline(jobs=[j for j in pipeline.jobs if j.name in keep], stages=list(pipeline.stages))
