# cache.py
from __future__ import annotations

import hashlib
import json
import shutil
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .model import CacheState

# ---------------------------------------------------------------------
# Shared vulnerability database cache
# ---------------------------------------------------------------------
# One CacheEntry per key (normally a single "vulndb" key):
#
#   root/
#     <key>/
#       data/          scanner --cache-dir, populated once per run
#       entry.json     version tag, populated flag, last write
#     _local/
#       <job>/         degraded-mode caches, one per job
#
# Within a run an entry moves empty -> populating -> populated | population-failed.
# Only one writer populates at a time; readers wait until the pending writers
# are done, then either share the populated directory or fall back to a
# job-local fetch.
# ---------------------------------------------------------------------


DEFAULT_CACHE_DIR = ".scanflow/cache"
LOCAL_DIR = "_local"
ENTRY_FILE = "entry.json"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _sha256_str(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def content_tag(directory: Path) -> str | None:
    """
    Version tag of a populated cache. Trivy keeps db/metadata.json with the
    database version and update time; hash that when present, otherwise a
    listing of (relpath, size).
    """
    if not directory.exists():
        return None
    meta = directory / "db" / "metadata.json"
    if meta.is_file():
        return _sha256_str(meta.read_text(encoding="utf-8"))[:16]
    listing = sorted(
        (str(p.relative_to(directory)).replace("\\", "/"), p.stat().st_size)
        for p in directory.rglob("*")
        if p.is_file()
    )
    if not listing:
        return None
    return _sha256_str(_json_dumps_stable(listing))[:16]


@dataclass
class CacheEntry:
    key: str
    directory: Path
    state: CacheState = CacheState.EMPTY
    version: str | None = None
    last_write: datetime | None = None
    durable: bool = False            # populated by an earlier run
    pending_writers: int = 0
    writer: str | None = None        # job currently populating

    @property
    def populated(self) -> bool:
        return self.state == CacheState.POPULATED


@dataclass(frozen=True)
class CacheHandle:
    key: str
    path: Path
    job: str
    writer: bool = False


class CacheManager:
    """
    acquire / populate / release over named cache entries.

    Thread-safe: every state change happens under one condition variable,
    so concurrent writers serialize and readers block without polling.
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self._entries: Dict[str, CacheEntry] = {}
        self._cond = threading.Condition()
        self.populated_by: Dict[str, str] = {}
        self.skipped_writers: Dict[str, List[str]] = {}

    # -----------------------------------------------------------------
    # entries
    # -----------------------------------------------------------------

    def _entry_dir(self, key: str) -> Path:
        return self.root / key

    def _load(self, key: str) -> CacheEntry:
        entry = CacheEntry(key=key, directory=self._entry_dir(key) / "data")
        man = self._entry_dir(key) / ENTRY_FILE
        if man.exists():
            try:
                stored = json.loads(man.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                stored = {}
            if stored.get("populated") and entry.directory.exists():
                entry.durable = True
                entry.version = stored.get("version")
                last = stored.get("last_write")
                entry.last_write = datetime.fromisoformat(last) if last else None
        return entry

    def _get(self, key: str) -> CacheEntry:
        # caller holds self._cond
        entry = self._entries.get(key)
        if entry is None:
            entry = self._load(key)
            self._entries[key] = entry
        return entry

    def entry(self, key: str) -> CacheEntry:
        with self._cond:
            return self._get(key)

    def is_durable(self, key: str) -> bool:
        return self.entry(key).durable

    def _write_manifest(self, entry: CacheEntry) -> None:
        man = self._entry_dir(entry.key) / ENTRY_FILE
        tmp = man.with_suffix(".json.tmp")
        payload = {
            "key": entry.key,
            "version": entry.version,
            "populated": entry.populated,
            "last_write": entry.last_write.isoformat() if entry.last_write else None,
            "writer": entry.writer,
        }
        tmp.write_text(json.dumps(payload, sort_keys=True, indent=2), encoding="utf-8")
        tmp.replace(man)

    # -----------------------------------------------------------------
    # writer bookkeeping (driven by the scheduler)
    # -----------------------------------------------------------------

    def register_writer(self, key: str) -> None:
        with self._cond:
            self._get(key).pending_writers += 1

    def unregister_writer(self, key: str) -> None:
        with self._cond:
            entry = self._get(key)
            entry.pending_writers = max(0, entry.pending_writers - 1)
            self._cond.notify_all()

    # -----------------------------------------------------------------
    # acquire / populate / release
    # -----------------------------------------------------------------

    def acquire(self, key: str, job: str, *, writer: bool = False) -> CacheHandle:
        with self._cond:
            entry = self._get(key)
            entry.directory.mkdir(parents=True, exist_ok=True)
            return CacheHandle(key=key, path=entry.directory, job=job, writer=writer)

    def populate(self, handle: CacheHandle, source: Callable[[Path], None]) -> bool:
        """
        Run source(cache_dir) unless the entry was already populated in this run.

        Returns True when the population call ran, False when it was skipped
        because an earlier writer already populated the entry. Exceptions from
        source propagate after the entry is marked population-failed.
        """
        if not handle.writer:
            raise ValueError(f"[{handle.job}] cannot populate cache '{handle.key}' through a read-only handle")

        with self._cond:
            entry = self._get(handle.key)
            while entry.state == CacheState.POPULATING:
                self._cond.wait()
            if entry.state == CacheState.POPULATED:
                self.skipped_writers.setdefault(handle.key, []).append(handle.job)
                return False
            entry.state = CacheState.POPULATING
            entry.writer = handle.job

        ok = False
        try:
            source(entry.directory)
            ok = True
        finally:
            with self._cond:
                if ok:
                    entry.state = CacheState.POPULATED
                    entry.last_write = _now()
                    entry.version = content_tag(entry.directory)
                    entry.durable = True
                    self.populated_by[handle.key] = handle.job
                    self._write_manifest(entry)
                else:
                    entry.state = CacheState.POPULATION_FAILED
                    # a manifest left by an earlier run no longer describes data/
                    entry.durable = False
                    self._write_manifest(entry)
                entry.writer = None
                self._cond.notify_all()
        return True

    def wait_ready(self, handle: CacheHandle, timeout: Optional[float] = None) -> bool:
        """
        Block a reader until the shared entry is usable.

        True: populated in this run, or no writer is pending and an earlier run
        left a populated entry. False: population failed, nobody will populate,
        or the wait timed out; the caller switches to a job-local cache.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            entry = self._get(handle.key)
            while entry.state != CacheState.POPULATED and (
                entry.pending_writers > 0 or entry.state == CacheState.POPULATING
            ):
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._cond.wait(remaining)

            if entry.state == CacheState.POPULATED:
                return True
            return entry.state == CacheState.EMPTY and entry.durable

    def release(self, handle: CacheHandle) -> None:
        if handle.writer:
            self.unregister_writer(handle.key)

    # -----------------------------------------------------------------
    # degraded mode
    # -----------------------------------------------------------------

    def local_dir(self, job: str) -> Path:
        d = self.root / LOCAL_DIR / job
        d.mkdir(parents=True, exist_ok=True)
        return d

    def prune(self) -> None:
        """Drop job-local degraded-mode caches; the shared entries are kept."""
        local = self.root / LOCAL_DIR
        if local.exists():
            shutil.rmtree(local)
