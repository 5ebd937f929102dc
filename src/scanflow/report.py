# report.py
# Machine-readable run report written by `scanflow run --report FILE`.
from __future__ import annotations

from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, Field

from .model import RunReport


class JobEntry(BaseModel):
    outcome: str
    started_at: datetime
    finished_at: datetime
    duration_s: float
    bundle: Optional[str] = None
    artifacts: list[str] = Field(default_factory=list)
    route: Optional[str] = None
    cache_populated: Optional[bool] = None
    exit_codes: Dict[str, int] = Field(default_factory=dict)
    degraded: list[str] = Field(default_factory=list)
    error: Optional[str] = None


class RunDocument(BaseModel):
    status: str
    exit_code: int
    clean: list[str] = Field(default_factory=list)
    findings_detected: list[str] = Field(default_factory=list)
    could_not_complete: list[str] = Field(default_factory=list)
    skipped: Dict[str, str] = Field(default_factory=dict)
    degraded: list[str] = Field(default_factory=list)
    dispatch_order: list[str] = Field(default_factory=list)
    jobs: Dict[str, JobEntry] = Field(default_factory=dict)


def to_document(report: RunReport) -> RunDocument:
    jobs: Dict[str, JobEntry] = {}
    for name, r in sorted(report.results.items()):
        bundle = report.bundles.get(name)
        jobs[name] = JobEntry(
            outcome=r.outcome.value,
            started_at=r.started_at,
            finished_at=r.finished_at,
            duration_s=round(r.duration, 3),
            bundle=bundle.bundle if bundle else None,
            artifacts=bundle.names() if bundle else [],
            route=r.route,
            cache_populated=r.cache_populated,
            exit_codes=r.exit_codes,
            degraded=r.degraded,
            error=r.error,
        )
    return RunDocument(
        status="success" if report.succeeded else "failed",
        exit_code=report.exit_code,
        clean=report.clean,
        findings_detected=report.findings_detected,
        could_not_complete=report.could_not_complete,
        skipped=dict(report.skipped),
        degraded=list(report.degraded),
        dispatch_order=list(report.dispatch_order),
        jobs=jobs,
    )
