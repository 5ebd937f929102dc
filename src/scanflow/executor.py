# executor.py
from __future__ import annotations

import os
import subprocess
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from . import scanner
from .cache import CacheHandle, CacheManager
from .errors import InfrastructureError
from .model import CachePolicy, Expectation, JobDescriptor, JobResult, Outcome, Step
from .router import route
from .settings import Settings
from .ui.console import get_console


@dataclass
class ExecutionContext:
    """Everything a job needs from the run, besides its own descriptor."""
    settings: Settings
    cache: CacheManager
    work_dir: Path = field(default_factory=lambda: Path(".").resolve())


@dataclass
class _JobState:
    job: JobDescriptor
    deadline: float | None
    cache_dir: Path | None = None
    shared_cache: bool = False
    handle: CacheHandle | None = None
    findings: bool = False
    populated: bool | None = None
    route: str | None = None
    exit_codes: Dict[str, int] = field(default_factory=dict)
    degraded: List[str] = field(default_factory=list)

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _degraded(state: _JobState, message: str) -> None:
    state.degraded.append(message)
    get_console().print_degraded(state.job.name, message)


# ----------------------------------------------------------------------
# Process execution
# ----------------------------------------------------------------------

def _spawn(state: _JobState, step: Step, argv: List[str] | str, ctx: ExecutionContext) -> int:
    """Run one command; raise InfrastructureError when it cannot start or overruns the budget."""
    job = state.job
    cwd = (ctx.work_dir / (step.cwd or ".")).resolve()
    if not cwd.exists():
        raise InfrastructureError(
            kind="BadWorkingDirectory",
            job=job.name,
            step=step.name,
            message="Step cwd does not exist",
            details={"cwd": str(cwd)},
        )

    env = os.environ.copy()
    env.update(job.env_dict)

    timeout = state.remaining()
    if timeout is not None and timeout <= 0:
        raise InfrastructureError(
            kind="Timeout",
            job=job.name,
            step=step.name,
            message=f"Job exceeded its {job.timeout}s budget before this step started",
        )

    get_console().print_debug(f"[{job.name}] $ {argv if isinstance(argv, str) else ' '.join(argv)}")
    try:
        proc = subprocess.run(
            argv,
            shell=isinstance(argv, str),
            cwd=str(cwd),
            env=env,
            text=True,
            capture_output=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        raise InfrastructureError(
            kind="Timeout",
            job=job.name,
            step=step.name,
            message=f"Job exceeded its {job.timeout}s budget",
        )
    except OSError as e:
        raise InfrastructureError(
            kind="SpawnFailed",
            job=job.name,
            step=step.name,
            message=str(e),
            details={"command": argv if isinstance(argv, str) else " ".join(argv)},
        )

    state.exit_codes[step.name] = proc.returncode
    if proc.returncode != 0:
        combined = (proc.stdout or "") + "\n" + (proc.stderr or "")
        get_console().print_debug("\n".join(combined.strip().splitlines()[-30:]))
    return proc.returncode


def _classify(state: _JobState, step: Step, code: int) -> None:
    """
    Map one exit code onto the job outcome:
      - 0: nothing to record
      - the step's findings code: findings-detected, keep going
      - anything else: infrastructure error for must-succeed steps,
        a recorded warning for advisory ones
    """
    job = state.job
    if code == 0:
        return
    if step.is_gate and code == step.exit_code:
        state.findings = True
        get_console().print_findings(job.name, step.name, code)
        return
    if step.expect == Expectation.ADVISORY:
        get_console().print_warning(f"[{job.name}] advisory step '{step.name}' exited {code}")
        return
    raise InfrastructureError(
        kind="StepFailed",
        job=job.name,
        step=step.name,
        message=f"Command exited with code {code}",
        details={"exit_code": code},
    )


# ----------------------------------------------------------------------
# Cache wiring
# ----------------------------------------------------------------------

def _prepare_cache(state: _JobState, ctx: ExecutionContext) -> None:
    job = state.job
    if job.cache_policy == CachePolicy.SHARED_READ_WRITE:
        state.handle = ctx.cache.acquire(job.cache_key, job.name, writer=True)
        state.cache_dir = state.handle.path
        state.shared_cache = False  # becomes True once the population step succeeds
        return

    if job.cache_policy == CachePolicy.READ_ONLY:
        state.handle = ctx.cache.acquire(job.cache_key, job.name)
        get_console().print_cache_wait(job.name, job.cache_key)
        if ctx.cache.wait_ready(state.handle, timeout=ctx.settings.cache_wait):
            state.cache_dir = state.handle.path
            state.shared_cache = True
            get_console().print_cache_hit(job.name, job.cache_key)
        else:
            state.cache_dir = ctx.cache.local_dir(job.name)
            state.shared_cache = False
            _degraded(state, f"shared cache '{job.cache_key}' unavailable; fetching database locally")
        return

    state.cache_dir = ctx.cache.local_dir(job.name)


def _populate(state: _JobState, step: Step, ctx: ExecutionContext) -> None:
    job = state.job
    if state.handle is None or not state.handle.writer:
        # outside a shared-read-write job population only warms the job-local cache
        if state.shared_cache:
            get_console().print_cache_hit(job.name, job.cache_key, reason="shared cache already populated")
            return
        code = _spawn(state, step, scanner.download_db_argv(ctx.settings, state.cache_dir), ctx)
        _classify(state, step, code)
        return

    def source(cache_dir: Path) -> None:
        code = _spawn(state, step, scanner.download_db_argv(ctx.settings, cache_dir), ctx)
        if code != 0:
            raise InfrastructureError(
                kind="PopulationFailed",
                job=job.name,
                step=step.name,
                message=f"Database download exited with code {code}",
                details={"cache_key": job.cache_key, "exit_code": code},
            )

    try:
        ran = ctx.cache.populate(state.handle, source)
    except InfrastructureError as e:
        state.populated = False
        _degraded(state, f"population of '{job.cache_key}' failed; readers fetch their own database")
        if e.kind == "PopulationFailed":
            raise
        raise InfrastructureError(
            kind="PopulationFailed",
            job=e.job,
            step=e.step,
            message=e.message,
            details={**e.details, "cause": e.kind},
        ) from e

    state.populated = True
    state.shared_cache = True
    if ran:
        get_console().print_cache_saved(job.name, job.cache_key, ctx.cache.entry(job.cache_key).version)
    else:
        get_console().print_cache_hit(job.name, job.cache_key, reason="already populated in this run")


# ----------------------------------------------------------------------
# Steps
# ----------------------------------------------------------------------

def _target(job: JobDescriptor, step: Step, ctx: ExecutionContext) -> str:
    target = step.target or ctx.settings.target_image
    if not target:
        raise InfrastructureError(
            kind="MissingTarget",
            job=job.name,
            step=step.name,
            message="No scan target: set the step target or SCANFLOW_TARGET_IMAGE",
        )
    return target


def _run_scan(state: _JobState, step: Step, ctx: ExecutionContext) -> None:
    target = _target(state.job, step, ctx)
    argv = scanner.scan_argv(
        ctx.settings,
        step,
        cache_dir=state.cache_dir,
        shared_cache=state.shared_cache,
        target=target,
    )
    _classify(state, step, _spawn(state, step, argv, ctx))


def _run_convert(state: _JobState, step: Step, results: Mapping[str, JobResult], ctx: ExecutionContext) -> None:
    decision = route(state.job, step, results)
    state.route = decision.kind
    if not decision.degraded:
        get_console().print_route(state.job.name, decision.kind, decision.reason)
        argv = scanner.convert_argv(ctx.settings, step, decision.raw_report)
        _classify(state, step, _spawn(state, step, argv, ctx))
        return

    _degraded(state, f"rescanning target: {decision.reason}")
    if state.handle is None:
        # convert jobs do not declare a cache policy; borrow the shared one if it is ready
        handle = ctx.cache.acquire(state.job.cache_key, state.job.name)
        if ctx.cache.wait_ready(handle, timeout=0):
            state.cache_dir, state.shared_cache = handle.path, True
    _run_scan(state, step, ctx)


def _run_step(state: _JobState, step: Step, results: Mapping[str, JobResult], ctx: ExecutionContext) -> None:
    get_console().print_step(state.job.name, step.name)
    if step.kind == "download-db":
        _populate(state, step, ctx)
    elif step.kind == "scan":
        _run_scan(state, step, ctx)
    elif step.kind == "convert":
        _run_convert(state, step, results, ctx)
    else:
        _classify(state, step, _spawn(state, step, step.run, ctx))


def _produced(job: JobDescriptor, ctx: ExecutionContext) -> List[Path]:
    out: List[Path] = []
    for rel in job.output_paths():
        p = (ctx.work_dir / rel).resolve()
        if p.exists():
            out.append(p)
    return out


def _raw_report(job: JobDescriptor, ctx: ExecutionContext) -> Optional[Path]:
    for step in job.steps:
        if step.raw and step.output:
            p = (ctx.work_dir / step.output).resolve()
            if p.is_file():
                return p
    return None


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def execute(
    job: JobDescriptor,
    dependency_results: Mapping[str, JobResult],
    ctx: ExecutionContext,
) -> JobResult:
    """
    Run the job's commands in order and classify the result.

    Never raises for job-level failures: an InfrastructureError (or any
    unexpected exception) becomes an infrastructure-error JobResult. Produced
    artifacts are gathered in the finally block, so files written before a
    failing command are still reported.
    """
    started = _now()
    deadline = time.monotonic() + job.timeout if job.timeout else None
    state = _JobState(job=job, deadline=deadline)
    error: Optional[str] = None
    artifacts: List[Path] = []
    raw: Optional[Path] = None

    get_console().print_job_start(job.name)
    try:
        _prepare_cache(state, ctx)
        for step in job.steps:
            _run_step(state, step, dependency_results, ctx)
    except InfrastructureError as e:
        error = str(e)
    except Exception as e:  # the executor reports, the scheduler decides
        error = f"{type(e).__name__}: {e}"
    finally:
        if state.handle is not None:
            ctx.cache.release(state.handle)
        artifacts = _produced(job, ctx)
        raw = _raw_report(job, ctx)

    if error is not None:
        outcome = Outcome.INFRASTRUCTURE_ERROR
    elif state.findings:
        outcome = Outcome.FINDINGS_DETECTED
    else:
        outcome = Outcome.CLEAN

    return JobResult(
        name=job.name,
        outcome=outcome,
        started_at=started,
        finished_at=_now(),
        artifacts=artifacts,
        raw_report=raw,
        cache_populated=state.populated,
        route=state.route,
        exit_codes=dict(state.exit_codes),
        degraded=list(state.degraded),
        error=error,
    )
