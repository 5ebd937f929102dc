"""Environment configuration shared by every component.

All values are pass-through: nothing here carries orchestration logic.
"""

from __future__ import annotations

import os
import re
import shlex
from dataclasses import dataclass, replace
from datetime import timedelta
from pathlib import Path
from typing import List, Mapping, Optional

from .errors import ConfigurationError

TRUTHY = {"1", "true", "yes", "on"}

_DURATION = re.compile(r"^\s*(\d+)\s*(second|minute|hour|day|week)s?\s*$", re.IGNORECASE)
_UNIT_SECONDS = {
    "second": 1,
    "minute": 60,
    "hour": 3600,
    "day": 86400,
    "week": 7 * 86400,
}


def parse_duration(text: str) -> timedelta:
    """Parse retention strings such as "1 day" or "30 minutes"."""
    m = _DURATION.match(text or "")
    if not m:
        raise ValueError(f"Invalid duration: {text!r} (expected e.g. '1 day', '6 hours')")
    count, unit = int(m.group(1)), m.group(2).lower()
    return timedelta(seconds=count * _UNIT_SECONDS[unit])


def _flag(env: Mapping[str, str], *names: str) -> bool:
    for n in names:
        if n in env:
            return env[n].strip().lower() in TRUTHY
    return False


def _first(env: Mapping[str, str], *names: str) -> Optional[str]:
    for n in names:
        v = env.get(n)
        if v:
            return v
    return None


def _seconds(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number of seconds, got {raw!r}", {"setting": name}) from None


@dataclass(frozen=True)
class Settings:
    target_image: str | None = None
    scanner: str = "trivy"
    cache_dir: Path = Path(".scanflow/cache")
    artifacts_dir: Path = Path(".scanflow/artifacts")
    work_dir: Path = Path(".")
    db_repository: str | None = None
    no_progress: bool = False
    quiet: bool = False
    retention: str = "1 day"
    cache_wait: float = 1800.0
    project: str | None = None
    ref: str | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ

        target = env.get("SCANFLOW_TARGET_IMAGE")
        if not target and env.get("CI_REGISTRY_IMAGE") and env.get("CI_COMMIT_SHA"):
            target = f"{env['CI_REGISTRY_IMAGE']}:{env['CI_COMMIT_SHA']}"

        return cls(
            target_image=target or None,
            scanner=env.get("SCANFLOW_SCANNER", "trivy"),
            cache_dir=Path(env.get("SCANFLOW_CACHE_DIR", ".scanflow/cache")),
            artifacts_dir=Path(env.get("SCANFLOW_ARTIFACTS_DIR", ".scanflow/artifacts")),
            db_repository=_first(env, "SCANFLOW_DB_REPOSITORY", "TRIVY_DB_REPOSITORY"),
            no_progress=_flag(env, "SCANFLOW_NO_PROGRESS", "TRIVY_NO_PROGRESS"),
            quiet=_flag(env, "SCANFLOW_QUIET"),
            retention=env.get("SCANFLOW_RETENTION", "1 day"),
            cache_wait=_seconds(env, "SCANFLOW_CACHE_WAIT", 1800.0),
            project=_first(env, "SCANFLOW_PROJECT", "CI_PROJECT_NAME"),
            ref=_first(env, "SCANFLOW_REF", "CI_COMMIT_REF_SLUG"),
        )

    def with_overrides(self, **overrides) -> "Settings":
        """Apply CLI overrides, ignoring options the user did not pass."""
        clean = {k: v for k, v in overrides.items() if v is not None}
        for key in ("cache_dir", "artifacts_dir", "work_dir"):
            if key in clean:
                clean[key] = Path(clean[key])
        return replace(self, **clean)

    def scanner_argv(self) -> List[str]:
        return shlex.split(self.scanner)
