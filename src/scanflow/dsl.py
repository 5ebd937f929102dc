# src/scanflow/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from .model import (
    DEFAULT_CACHE_KEY,
    CachePolicy,
    Expectation,
    FailurePolicy,
    JobDescriptor,
    Pipeline,
    Step,
)


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(name: str, cmd: str, *, cwd: str | None = None, advisory: bool = False) -> Step:
    """Create a shell step."""
    expect = Expectation.ADVISORY if advisory else Expectation.MUST_SUCCEED
    return Step(name=name, kind="shell", run=cmd, cwd=cwd, expect=expect)


def download_db(name: str = "download-db") -> Step:
    """Fetch the vulnerability database into the job's cache directory."""
    return Step(name=name, kind="download-db")


def scan(
    name: str,
    *,
    target: str | None = None,
    output: str | None = None,
    format: str = "json",
    exit_code: int = 0,
    severity: Sequence[str] = (),
    ignore_unfixed: bool = False,
    template: str | None = None,
    raw: bool = False,
    advisory: bool = False,
) -> Step:
    """
    Image scan step. exit_code != 0 turns the step into a severity gate:
    the scanner exits with that code when it finds something at or above
    `severity`, which is reported as findings rather than a failure.
    """
    return Step(
        name=name,
        kind="scan",
        target=target,
        output=output,
        format=format,
        exit_code=exit_code,
        severity=tuple(s.upper() for s in severity),
        ignore_unfixed=ignore_unfixed,
        template=template,
        raw=raw,
        expect=Expectation.ADVISORY if advisory else Expectation.MUST_SUCCEED,
    )


def convert(
    name: str,
    *,
    source_job: str,
    output: str,
    format: str = "template",
    template: str | None = None,
    exit_code: int = 0,
    severity: Sequence[str] = (),
    target: str | None = None,
) -> Step:
    """
    Render the raw report of `source_job` into another format. `target` is
    only used when the raw report is unusable and the step rescans instead.
    """
    return Step(
        name=name,
        kind="convert",
        source_job=source_job,
        output=output,
        format=format,
        template=template,
        exit_code=exit_code,
        severity=tuple(s.upper() for s in severity),
        target=target,
    )


# ---------------------------------------------------------------------
# Job helpers
# ---------------------------------------------------------------------

def _policy(value: CachePolicy | str) -> CachePolicy:
    return value if isinstance(value, CachePolicy) else CachePolicy(value)


def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    stage: str = "test",
    needs: Optional[Iterable[str]] = None,
    cache: CachePolicy | str = CachePolicy.NONE,
    cache_key: str = DEFAULT_CACHE_KEY,
    artifacts: Optional[Iterable[str]] = None,
    allow_failure: bool = False,
    timeout: float | None = None,
    retention: str | None = None,
    env: Optional[Dict[str, str]] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> JobDescriptor:
    """
    needs=None keeps the job in stage order; needs=[] starts it at pipeline
    start regardless of stages; a non-empty list adds dependency edges.
    """
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return JobDescriptor(
        name=name,
        steps=tuple(steps_final),
        stage=stage,
        needs=frozenset(needs) if needs is not None else None,
        cache_policy=_policy(cache),
        cache_key=cache_key,
        artifacts=tuple(artifacts or ()),
        failure_policy=FailurePolicy.ALLOW_FAILURE if allow_failure else FailurePolicy.FAIL_PIPELINE,
        timeout=timeout,
        retention=retention,
        # force values to str for env compatibility
        env=tuple(sorted((k, str(v)) for k, v in (env or {}).items())),
    )


def download_db_job(
    name: str = "download-db",
    *extra: Step,
    stage: str = "test",
    needs: Optional[Iterable[str]] = (),
    cache_key: str = DEFAULT_CACHE_KEY,
    allow_failure: bool = True,
    timeout: float | None = None,
    env: Optional[Dict[str, str]] = None,
) -> JobDescriptor:
    """
    The cache-population job: starts at pipeline start, writes the shared
    cache, and by default a failed download does not fail the pipeline
    (readers fall back to fetching their own database).
    """
    return job(
        name,
        download_db(),
        *extra,
        stage=stage,
        needs=needs,
        cache=CachePolicy.SHARED_READ_WRITE,
        cache_key=cache_key,
        allow_failure=allow_failure,
        timeout=timeout,
        env=env,
    )


def scan_job(
    name: str,
    *,
    target: str | None = None,
    output: str | None = None,
    format: str = "json",
    exit_code: int = 0,
    severity: Sequence[str] = (),
    ignore_unfixed: bool = False,
    template: str | None = None,
    raw: bool = False,
    stage: str = "test",
    needs: Optional[Iterable[str]] = None,
    cache: CachePolicy | str = CachePolicy.READ_ONLY,
    cache_key: str = DEFAULT_CACHE_KEY,
    artifacts: Optional[Iterable[str]] = None,
    allow_failure: bool = False,
    timeout: float | None = None,
    retention: str | None = None,
    env: Optional[Dict[str, str]] = None,
) -> JobDescriptor:
    """Single-step scan job reading the shared cache."""
    step = scan(
        "scan",
        target=target,
        output=output,
        format=format,
        exit_code=exit_code,
        severity=severity,
        ignore_unfixed=ignore_unfixed,
        template=template,
        raw=raw,
    )
    return job(
        name,
        step,
        stage=stage,
        needs=needs,
        cache=cache,
        cache_key=cache_key,
        artifacts=artifacts,
        allow_failure=allow_failure,
        timeout=timeout,
        retention=retention,
        env=env,
    )


def convert_job(
    name: str,
    *,
    source: str,
    output: str,
    format: str = "template",
    template: str | None = None,
    exit_code: int = 0,
    severity: Sequence[str] = (),
    target: str | None = None,
    stage: str = "test",
    needs: Optional[Iterable[str]] = None,
    cache_key: str = DEFAULT_CACHE_KEY,
    artifacts: Optional[Iterable[str]] = None,
    allow_failure: bool = False,
    timeout: float | None = None,
    retention: str | None = None,
    env: Optional[Dict[str, str]] = None,
) -> JobDescriptor:
    """Convert job; its source is always added to needs."""
    step = convert(
        "convert",
        source_job=source,
        output=output,
        format=format,
        template=template,
        exit_code=exit_code,
        severity=severity,
        target=target,
    )
    return job(
        name,
        step,
        stage=stage,
        needs=set(needs or ()) | {source},
        cache_key=cache_key,
        artifacts=artifacts,
        allow_failure=allow_failure,
        timeout=timeout,
        retention=retention,
        env=env,
    )


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Example:
        matrix("image", ["app:1", "app:2"]).jobs(
            lambda v: scan_job(f"scan-{v}", target=v)
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def jobs(self, builder: Callable[[Any], JobDescriptor]) -> List[JobDescriptor]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Pipeline helper (single-file story)
# ---------------------------------------------------------------------

def wf(*jobs: JobDescriptor | List[JobDescriptor], stages: Optional[Sequence[str]] = None) -> Pipeline:
    """
    Pipeline definition helper. Lists (e.g. from matrix) are flattened.

    Users can write:
        from scanflow import wf, download_db_job, scan_job

        def workflow():
            return wf(
                download_db_job(),
                scan_job("scan-a", target="app:1"),
                stages=["test"],
            )

    Or use PIPELINE directly:
        PIPELINE = wf(...)
    """
    flat: List[JobDescriptor] = []
    for j in jobs:
        if isinstance(j, list):
            flat.extend(j)
        else:
            flat.append(j)
    return Pipeline(jobs=flat, stages=list(stages or ()))


pipeline = wf
