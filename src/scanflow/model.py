# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple


class CachePolicy(str, Enum):
    NONE = "none"
    SHARED_READ_WRITE = "shared-read-write"
    READ_ONLY = "read-only"


class FailurePolicy(str, Enum):
    FAIL_PIPELINE = "fail-pipeline"
    ALLOW_FAILURE = "allow-failure"


class Expectation(str, Enum):
    MUST_SUCCEED = "must-succeed"
    ADVISORY = "advisory"


class Outcome(str, Enum):
    CLEAN = "clean"
    FINDINGS_DETECTED = "findings-detected"
    INFRASTRUCTURE_ERROR = "infrastructure-error"


class CacheState(str, Enum):
    EMPTY = "empty"
    POPULATING = "populating"
    POPULATED = "populated"
    POPULATION_FAILED = "population-failed"


STEP_KINDS = ("download-db", "scan", "convert", "shell")
DEFAULT_CACHE_KEY = "vulndb"


@dataclass(frozen=True)
class Step:
    """A single command inside a job: a scanner invocation or a shell line."""
    name: str
    kind: str = "shell"
    run: str = ""
    format: str = "json"
    target: str | None = None
    output: str | None = None
    exit_code: int = 0                      # code the scanner uses for "found something"; 0 = report only
    severity: Tuple[str, ...] = ()
    ignore_unfixed: bool = False
    template: str | None = None
    expect: Expectation = Expectation.MUST_SUCCEED
    raw: bool = False                       # output is a canonical raw report for convert jobs
    source_job: str | None = None           # convert: job whose raw report is transformed
    cwd: str | None = None

    @property
    def is_gate(self) -> bool:
        return self.exit_code != 0

    @property
    def produces_report(self) -> bool:
        return self.kind in ("scan", "convert") and self.output is not None


@dataclass(frozen=True)
class JobDescriptor:
    """
    A scheduled unit of work.

    `needs` carries three meanings:
      - None: ordered by stage only
      - empty: explicit "no dependency" override, runs at pipeline start
      - non-empty: the listed jobs must terminate first (stage barrier still applies)
    """
    name: str
    steps: Tuple[Step, ...]
    stage: str = "test"
    needs: Optional[frozenset] = None
    cache_policy: CachePolicy = CachePolicy.NONE
    cache_key: str = DEFAULT_CACHE_KEY
    artifacts: Tuple[str, ...] = ()
    failure_policy: FailurePolicy = FailurePolicy.FAIL_PIPELINE
    timeout: float | None = None
    retention: str | None = None
    env: Tuple[Tuple[str, str], ...] = ()

    @property
    def independent(self) -> bool:
        """True when the job opted out of stage ordering with an empty dependency set."""
        return self.needs is not None and len(self.needs) == 0

    @property
    def deps(self) -> List[str]:
        return sorted(self.needs or ())

    @property
    def env_dict(self) -> Dict[str, str]:
        return dict(self.env)

    def output_paths(self) -> List[str]:
        out = [s.output for s in self.steps if s.output]
        for p in self.artifacts:
            if p not in out:
                out.append(p)
        return out


@dataclass
class Pipeline:
    """Ordered stage labels plus the jobs that belong to them."""
    jobs: List[JobDescriptor]
    stages: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.stages:
            for j in self.jobs:
                if j.stage not in self.stages:
                    self.stages.append(j.stage)

    def stage_index(self, stage: str) -> int:
        return self.stages.index(stage)

    def by_name(self) -> Dict[str, JobDescriptor]:
        return {j.name: j for j in self.jobs}


@dataclass
class JobResult:
    name: str
    outcome: Outcome
    started_at: datetime
    finished_at: datetime
    artifacts: List[Path] = field(default_factory=list)
    raw_report: Path | None = None
    cache_populated: bool | None = None
    route: str | None = None
    exit_codes: Dict[str, int] = field(default_factory=dict)
    degraded: List[str] = field(default_factory=list)
    error: str | None = None

    @property
    def duration(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()


@dataclass(frozen=True)
class Artifact:
    path: Path
    job: str
    retention: timedelta
    expires_at: datetime


@dataclass
class CollectedArtifactSet:
    bundle: str
    directory: Path
    job: str
    artifacts: List[Artifact] = field(default_factory=list)
    expires_at: datetime | None = None
    errors: List[str] = field(default_factory=list)

    def names(self) -> List[str]:
        return sorted(a.path.name for a in self.artifacts)


@dataclass
class RunReport:
    """Final state of a pipeline run."""
    results: Dict[str, JobResult] = field(default_factory=dict)
    skipped: Dict[str, str] = field(default_factory=dict)
    bundles: Dict[str, CollectedArtifactSet] = field(default_factory=dict)
    degraded: List[str] = field(default_factory=list)
    dispatch_order: List[str] = field(default_factory=list)
    exit_code: int = 0

    def _with(self, outcome: Outcome) -> List[str]:
        return sorted(n for n, r in self.results.items() if r.outcome == outcome)

    @property
    def clean(self) -> List[str]:
        return self._with(Outcome.CLEAN)

    @property
    def findings_detected(self) -> List[str]:
        return self._with(Outcome.FINDINGS_DETECTED)

    @property
    def could_not_complete(self) -> List[str]:
        return self._with(Outcome.INFRASTRUCTURE_ERROR)

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0
