# scanner.py
# Builds command lines for the external scanner. Flags follow trivy's CLI;
# any binary honoring the same flags can be plugged in via SCANFLOW_SCANNER.
from __future__ import annotations

from pathlib import Path
from typing import List

from .model import Step
from .settings import Settings


def _common_flags(settings: Settings) -> List[str]:
    flags: List[str] = []
    if settings.no_progress:
        flags.append("--no-progress")
    if settings.quiet:
        flags.append("--quiet")
    return flags


def _report_flags(step: Step, output: str | None) -> List[str]:
    flags = ["--format", step.format]
    if step.template:
        flags += ["--template", step.template]
    if output:
        flags += ["--output", output]
    flags += ["--exit-code", str(step.exit_code)]
    if step.severity:
        flags += ["--severity", ",".join(step.severity)]
    if step.ignore_unfixed:
        flags.append("--ignore-unfixed")
    return flags


def download_db_argv(settings: Settings, cache_dir: Path) -> List[str]:
    """Fetch the vulnerability database into cache_dir without scanning anything."""
    argv = settings.scanner_argv() + ["image", "--download-db-only", "--cache-dir", str(cache_dir)]
    if settings.db_repository:
        argv += ["--db-repository", settings.db_repository]
    return argv + _common_flags(settings)


def scan_argv(
    settings: Settings,
    step: Step,
    *,
    cache_dir: Path,
    shared_cache: bool,
    target: str,
) -> List[str]:
    """
    Image scan. With a shared, already-populated cache the database update is
    skipped; in degraded mode the scanner fetches into its job-local cache.
    """
    argv = settings.scanner_argv() + ["image", "--cache-dir", str(cache_dir)]
    if shared_cache:
        argv.append("--skip-db-update")
    elif settings.db_repository:
        argv += ["--db-repository", settings.db_repository]
    argv += _report_flags(step, step.output)
    argv += _common_flags(settings)
    argv.append(target)
    return argv


def convert_argv(settings: Settings, step: Step, raw_report: Path) -> List[str]:
    """Render an existing raw report into another format. Needs neither network nor database."""
    argv = settings.scanner_argv() + ["convert"]
    argv += _report_flags(step, step.output)
    argv += _common_flags(settings)
    argv.append(str(raw_report))
    return argv
