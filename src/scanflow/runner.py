# runner.py
from __future__ import annotations

import os
import runpy
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import timedelta
from pathlib import Path
from typing import Dict, List, Optional, Set

from .artifacts import ArtifactCollector, ArtifactReaper
from .cache import CacheManager
from .dag import barrier_jobs, build_graph, cache_writers, dispatch_key, select_jobs
from .errors import ConfigurationError
from .executor import ExecutionContext, execute
from .exit_codes import EXIT_PIPELINE_FAILED, EXIT_SUCCESS
from .git_facts.git import current_ref, project_name
from .model import CachePolicy, FailurePolicy, JobDescriptor, JobResult, Outcome, Pipeline, RunReport
from .settings import Settings, parse_duration
from .ui.console import get_console


# ----------------------------------------------------------------------
# Workflow loading (local file/module)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> Pipeline:
    """
    Load a pipeline definition from a python file.

    The file must define one of:
      - workflow() -> Pipeline | List[JobDescriptor]
      - PIPELINE = Pipeline(...)
      - JOBS = [JobDescriptor, ...]
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise ConfigurationError(f"Pipeline file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise ConfigurationError(f"Pipeline definition must be a .py file, got: {wf_path.name}")

    module_name = f"scanflow_pipeline_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    found = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        found = globals_dict["workflow"]()
    elif "PIPELINE" in globals_dict:
        found = globals_dict["PIPELINE"]
    elif "JOBS" in globals_dict:
        found = globals_dict["JOBS"]

    if isinstance(found, list) and all(isinstance(j, JobDescriptor) for j in found):
        found = Pipeline(jobs=found)
    if not isinstance(found, Pipeline):
        raise ConfigurationError(
            "Pipeline file must define workflow() -> Pipeline, PIPELINE = pipeline(...) "
            "or JOBS = [JobDescriptor, ...]",
            {"file": str(wf_path)},
        )
    return found


# ----------------------------------------------------------------------
# Scheduling helpers
# ----------------------------------------------------------------------

def _blocks_dependents(job: JobDescriptor, result: JobResult) -> bool:
    return (
        result.outcome == Outcome.INFRASTRUCTURE_ERROR
        and job.failure_policy == FailurePolicy.FAIL_PIPELINE
    )


def _dependents_closure(adj: Dict[str, Set[str]], root: str) -> List[str]:
    seen: Set[str] = set()
    stack = list(adj.get(root, ()))
    while stack:
        n = stack.pop()
        if n in seen:
            continue
        seen.add(n)
        stack.extend(adj.get(n, ()))
    return sorted(seen)


def exit_code_for(pipeline: Pipeline, report: RunReport) -> int:
    """0 iff every fail-pipeline job reached a terminal state other than infrastructure-error."""
    for job in pipeline.jobs:
        if job.failure_policy != FailurePolicy.FAIL_PIPELINE:
            continue
        if job.name in report.skipped:
            return EXIT_PIPELINE_FAILED
        result = report.results.get(job.name)
        if result is None or result.outcome == Outcome.INFRASTRUCTURE_ERROR:
            return EXIT_PIPELINE_FAILED
    return EXIT_SUCCESS


def _retentions(pipeline: Pipeline, settings: Settings) -> Dict[str, timedelta]:
    try:
        default = parse_duration(settings.retention)
    except ValueError as e:
        raise ConfigurationError(str(e), {"setting": "SCANFLOW_RETENTION"}) from e

    out: Dict[str, timedelta] = {}
    for j in pipeline.jobs:
        if not j.retention:
            out[j.name] = default
            continue
        try:
            out[j.name] = parse_duration(j.retention)
        except ValueError as e:
            raise ConfigurationError(str(e), {"job": j.name}) from e
    return out


def _identity(settings: Settings, work_dir: Path) -> tuple[str, str]:
    project = settings.project
    ref = settings.ref
    if not project:
        project = project_name(work_dir)
    if not ref:
        ref = current_ref(work_dir) or "local"
    return project, ref


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def run_pipeline(
    pipeline: Pipeline,
    settings: Optional[Settings] = None,
    *,
    only: Optional[str] = None,
    max_workers: Optional[int] = None,
) -> RunReport:
    """
    Single coordinating loop over a worker pool.

    A job is dispatched once every job it needs has terminated (any outcome)
    and, unless its dependency set is explicitly empty, once every
    stage-ordered job of an earlier stage has terminated. When a
    fail-pipeline job ends in infrastructure-error its not-yet-started
    dependents are skipped; jobs already running are left alone.
    """
    console = get_console()
    settings = settings or Settings.from_env()
    work_dir = Path(settings.work_dir).resolve()

    cache = CacheManager(settings.cache_dir if Path(settings.cache_dir).is_absolute() else work_dir / settings.cache_dir)

    if only:
        durable = {j.cache_key for j in pipeline.jobs if cache.is_durable(j.cache_key)}
        pipeline = select_jobs(pipeline, only, durable_keys=durable)

    adj, _indeg = build_graph(pipeline)
    retentions = _retentions(pipeline, settings)

    project, ref = _identity(settings, work_dir)
    artifacts_root = settings.artifacts_dir if Path(settings.artifacts_dir).is_absolute() else work_dir / settings.artifacts_dir
    collector = ArtifactCollector(artifacts_root, project=project, ref=ref, work_dir=work_dir)
    ctx = ExecutionContext(settings=settings, cache=cache, work_dir=work_dir)

    by_name = pipeline.by_name()
    barriers = {j.name: set(barrier_jobs(pipeline, j)) for j in pipeline.jobs}
    writers = {j.name: cache_writers(pipeline, j) for j in pipeline.jobs}
    order = sorted(pipeline.jobs, key=lambda j: dispatch_key(pipeline, j))

    for j in pipeline.jobs:
        if j.cache_policy == CachePolicy.SHARED_READ_WRITE:
            cache.register_writer(j.cache_key)

    report = RunReport()
    terminated: Set[str] = set()
    pending: List[str] = [j.name for j in order]
    in_flight: Dict[Future, str] = {}

    if max_workers is None:
        c = os.cpu_count() or 2
        max_workers = max(2, c - 1)

    def skip(name: str, reason: str) -> None:
        if name not in pending:
            return
        pending.remove(name)
        terminated.add(name)
        report.skipped[name] = reason
        if by_name[name].cache_policy == CachePolicy.SHARED_READ_WRITE:
            cache.unregister_writer(by_name[name].cache_key)
        console.print_job_skipped(name, reason)

    reaper = ArtifactReaper(artifacts_root)
    reaper.start()
    try:
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            while pending or in_flight:
                # schedule everything that is ready, in dispatch order; readers wait
                # until every writer of their cache has been submitted
                for name in list(pending):
                    job = by_name[name]
                    if not set(job.deps) <= terminated or not barriers[name] <= terminated:
                        continue
                    if any(w in pending for w in writers[name]):
                        continue
                    pending.remove(name)
                    deps = {d: report.results[d] for d in job.deps if d in report.results}
                    in_flight[pool.submit(execute, job, deps, ctx)] = name
                    report.dispatch_order.append(name)

                if not in_flight:
                    break

                # wait for one termination, then loop to schedule newly-ready jobs
                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for fut in done:
                    name = in_flight.pop(fut)
                    result: JobResult = fut.result()
                    report.results[name] = result
                    report.degraded.extend(f"{name}: {d}" for d in result.degraded)
                    terminated.add(name)

                    try:
                        collected = collector.collect(result, retentions[name])
                        report.bundles[name] = collected
                        write_errors = collected.errors
                    except OSError as e:
                        write_errors = [str(e)]
                    if write_errors and result.outcome != Outcome.INFRASTRUCTURE_ERROR:
                        result.outcome = Outcome.INFRASTRUCTURE_ERROR
                        result.error = "ArtifactWriteFailed: " + "; ".join(write_errors)

                    console.print_job_result(result)

                    if _blocks_dependents(by_name[name], result):
                        for dependent in _dependents_closure(adj, name):
                            skip(dependent, f"dependency '{name}' failed ({result.outcome.value})")
    finally:
        reaper.stop()
        cache.prune()

    for name in list(pending):
        skip(name, "never became ready")

    report.exit_code = exit_code_for(pipeline, report)
    return report
