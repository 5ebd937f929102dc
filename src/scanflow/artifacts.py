"""Artifact collection and retention.

Every terminated job gets its produced files copied into a bundle named
``<project>-<ref>-<job>``, whatever the job's outcome. Bundles carry a
manifest with an expiry; expired bundles are purged by the reaper, never by
job logic.
"""

from __future__ import annotations

import re
import shutil
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, ValidationError

from .model import Artifact, CollectedArtifactSet, JobResult

MANIFEST_NAME = "manifest.json"
_SLUG = re.compile(r"[^A-Za-z0-9._-]+")
# collector and reaper never touch the same bundle directory at once
_BUNDLE_LOCK = threading.Lock()


def slug(value: str) -> str:
    return _SLUG.sub("-", value).strip("-") or "unnamed"


def bundle_name(project: str, ref: str, job: str) -> str:
    return f"{slug(project)}-{slug(ref)}-{slug(job)}"


# -------------------- Schemas --------------------

class BundleFile(BaseModel):
    path: str
    size: int


class BundleManifest(BaseModel):
    bundle: str
    project: str
    ref: str
    job: str
    outcome: str
    files: list[BundleFile] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    created_at: datetime
    expires_at: datetime


# -------------------- Collector --------------------

class ArtifactCollector:
    """Takes ownership of each job's produced files for the lifetime of the run's bundle."""

    def __init__(self, root: str | Path, *, project: str, ref: str, work_dir: str | Path = "."):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.project = project
        self.ref = ref
        self.work_dir = Path(work_dir).resolve()

    def _relative(self, path: Path) -> Path:
        p = path if path.is_absolute() else (self.work_dir / path)
        p = p.resolve()
        try:
            return p.relative_to(self.work_dir)
        except ValueError:
            return Path(p.name)

    def collect(self, result: JobResult, retention: timedelta) -> CollectedArtifactSet:
        with _BUNDLE_LOCK:
            return self._collect(result, retention)

    def _collect(self, result: JobResult, retention: timedelta) -> CollectedArtifactSet:
        name = bundle_name(self.project, self.ref, result.name)
        bundle_dir = self.root / name
        if bundle_dir.exists():
            shutil.rmtree(bundle_dir, ignore_errors=True)
        bundle_dir.mkdir(parents=True, exist_ok=True)

        created = datetime.now(timezone.utc)
        expires = created + retention
        collected = CollectedArtifactSet(bundle=name, directory=bundle_dir, job=result.name, expires_at=expires)
        files: List[BundleFile] = []

        for src in result.artifacts:
            src_abs = src if src.is_absolute() else self.work_dir / src
            rel = self._relative(src)
            dest = bundle_dir / rel
            try:
                dest.parent.mkdir(parents=True, exist_ok=True)
                if src_abs.is_dir():
                    shutil.copytree(src_abs, dest, dirs_exist_ok=True)
                else:
                    shutil.copy2(src_abs, dest)
            except OSError as e:
                collected.errors.append(f"{rel}: {e}")
                continue

            collected.artifacts.append(Artifact(path=dest, job=result.name, retention=retention, expires_at=expires))
            size = dest.stat().st_size if dest.is_file() else sum(f.stat().st_size for f in dest.rglob("*") if f.is_file())
            files.append(BundleFile(path=str(rel).replace("\\", "/"), size=size))

        manifest = BundleManifest(
            bundle=name,
            project=self.project,
            ref=self.ref,
            job=result.name,
            outcome=result.outcome.value,
            files=files,
            errors=collected.errors,
            created_at=created,
            expires_at=expires,
        )
        (bundle_dir / MANIFEST_NAME).write_text(manifest.model_dump_json(indent=2), encoding="utf-8")
        return collected


# -------------------- Retention --------------------

def read_manifest(bundle_dir: Path) -> Optional[BundleManifest]:
    man = bundle_dir / MANIFEST_NAME
    if not man.is_file():
        return None
    try:
        return BundleManifest.model_validate_json(man.read_text(encoding="utf-8"))
    except (OSError, ValidationError):
        return None


def reap(root: str | Path, now: datetime | None = None) -> List[str]:
    """Delete bundles whose retention window has passed. Returns the removed bundle names."""
    root_p = Path(root)
    if not root_p.exists():
        return []
    now = now or datetime.now(timezone.utc)
    removed: List[str] = []
    for d in sorted(root_p.iterdir()):
        if not d.is_dir():
            continue
        with _BUNDLE_LOCK:
            manifest = read_manifest(d)
            if manifest is None or manifest.expires_at > now:
                continue
            shutil.rmtree(d, ignore_errors=True)
        removed.append(d.name)
    return removed


class ArtifactReaper(threading.Thread):
    """Background purge of expired bundles while a run is in progress."""

    def __init__(self, root: str | Path, interval: float = 300.0):
        super().__init__(name="scanflow-reaper", daemon=True)
        self.root = Path(root)
        self.interval = interval
        self.removed: List[str] = []
        self._stop_event = threading.Event()

    def run(self) -> None:
        while True:
            self.removed.extend(reap(self.root))
            if self._stop_event.wait(self.interval):
                return

    def stop(self) -> None:
        self._stop_event.set()
