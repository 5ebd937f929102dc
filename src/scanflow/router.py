# router.py
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from .model import JobDescriptor, JobResult, Outcome, Step

CONVERT = "convert"
RESCAN = "rescan"


@dataclass(frozen=True)
class Route:
    kind: str                     # "convert" | "rescan"
    raw_report: Path | None
    reason: str

    @property
    def degraded(self) -> bool:
        return self.kind == RESCAN


def route(job: JobDescriptor, step: Step, results: Mapping[str, JobResult]) -> Route:
    """
    Decide whether a convert step can transform an upstream raw report or has
    to scan the live target again.

    Converting is a pure function of the raw report: it needs neither network
    nor the vulnerability database. Rescanning is the degraded path, taken
    when the upstream job produced no usable raw report.
    """
    source = step.source_job
    if not source:
        return Route(RESCAN, None, f"[{job.name}] step '{step.name}' names no source job")

    upstream = results.get(source)
    if upstream is None:
        return Route(RESCAN, None, f"no result from '{source}' in this run")

    if upstream.outcome not in (Outcome.CLEAN, Outcome.FINDINGS_DETECTED):
        return Route(RESCAN, None, f"'{source}' ended with {upstream.outcome.value}")

    raw = upstream.raw_report
    if raw is None:
        return Route(RESCAN, None, f"'{source}' declared no raw report")
    if not Path(raw).is_file():
        return Route(RESCAN, None, f"raw report from '{source}' is gone: {raw}")

    return Route(CONVERT, Path(raw), f"reusing raw report from '{source}'")
