"""Tests for job execution and outcome classification."""

from __future__ import annotations

import shlex
import sys
from dataclasses import replace
from pathlib import Path

from scanflow.cache import CacheManager
from scanflow.dsl import download_db_job, job, scan, scan_job, sh
from scanflow.executor import ExecutionContext, execute
from scanflow.model import Outcome
from scanflow.settings import Settings
from tests.conftest import read_log

PY = shlex.quote(sys.executable)


def context(settings: Settings) -> ExecutionContext:
    return ExecutionContext(settings=settings, cache=CacheManager(settings.cache_dir), work_dir=settings.work_dir)


class TestClassification:
    """Tests for the three-way outcome."""

    def test_clean_scan(self, settings: Settings, scanner_log: Path) -> None:
        j = scan_job("scan-a", output="reports/raw.json", raw=True, cache="none")
        res = execute(j, {}, context(settings))

        assert res.outcome == Outcome.CLEAN
        assert res.exit_codes == {"scan": 0}
        assert res.raw_report == settings.work_dir / "reports" / "raw.json"
        assert res.artifacts == [settings.work_dir / "reports" / "raw.json"]
        assert res.error is None

    def test_gate_reports_findings(self, settings: Settings, scanner_log: Path) -> None:
        """Test the scanner's found-something exit code is a detection, not a failure."""
        j = scan_job(
            "scan-b",
            target="registry.example.com/app:vuln",
            output="reports/gate.txt",
            format="table",
            exit_code=1,
            severity=["HIGH", "CRITICAL"],
            cache="none",
        )
        res = execute(j, {}, context(settings))

        assert res.outcome == Outcome.FINDINGS_DETECTED
        assert res.exit_codes == {"scan": 1}
        # artifacts survive the gate
        assert res.artifacts == [settings.work_dir / "reports" / "gate.txt"]

    def test_scanner_crash_is_infrastructure(self, settings: Settings, scanner_log: Path) -> None:
        j = scan_job("scan-a", target="registry.example.com/app:crash", output="raw.json", cache="none")
        res = execute(j, {}, context(settings))

        assert res.outcome == Outcome.INFRASTRUCTURE_ERROR
        assert res.error.startswith("StepFailed")
        assert res.exit_codes == {"scan": 3}

    def test_spawn_failure(self, settings: Settings) -> None:
        s = replace(settings, scanner="/nonexistent/bin/trivy")
        res = execute(scan_job("scan-a", cache="none"), {}, context(s))

        assert res.outcome == Outcome.INFRASTRUCTURE_ERROR
        assert res.error.startswith("SpawnFailed")

    def test_missing_target(self, settings: Settings) -> None:
        s = replace(settings, target_image=None)
        res = execute(scan_job("scan-a", cache="none"), {}, context(s))

        assert res.outcome == Outcome.INFRASTRUCTURE_ERROR
        assert res.error.startswith("MissingTarget")

    def test_advisory_step_does_not_fail(self, settings: Settings, capsys) -> None:
        """Test an advisory command's failure is only a warning."""
        j = job("notes", sh("optional", "exit 4", advisory=True), sh("after", "echo ok > done.txt"), artifacts=["done.txt"])
        res = execute(j, {}, context(settings))

        assert res.outcome == Outcome.CLEAN
        assert res.exit_codes == {"optional": 4, "after": 0}
        assert "advisory step 'optional' exited 4" in capsys.readouterr().err

    def test_failure_stops_job_and_keeps_artifacts(self, settings: Settings) -> None:
        """Test files written before a failing command are still reported."""
        j = job(
            "report",
            sh("write", "echo partial > partial.txt"),
            sh("boom", "exit 3"),
            sh("never", "echo nope > never.txt"),
            artifacts=["partial.txt", "never.txt"],
        )
        res = execute(j, {}, context(settings))

        assert res.outcome == Outcome.INFRASTRUCTURE_ERROR
        assert "never" not in res.exit_codes
        assert res.artifacts == [settings.work_dir / "partial.txt"]

    def test_timeout(self, settings: Settings) -> None:
        j = job("slow", sh("sleep", f"exec {PY} -c 'import time; time.sleep(10)'"), timeout=0.5)
        res = execute(j, {}, context(settings))

        assert res.outcome == Outcome.INFRASTRUCTURE_ERROR
        assert res.error.startswith("Timeout")
        assert res.duration < 8

    def test_bad_working_directory(self, settings: Settings) -> None:
        res = execute(job("j", sh("x", "true", cwd="does/not/exist")), {}, context(settings))
        assert res.error.startswith("BadWorkingDirectory")

    def test_job_env_reaches_commands(self, settings: Settings) -> None:
        j = job("env", sh("print", "echo $GREETING > env.txt"), env={"GREETING": "hello"}, artifacts=["env.txt"])
        res = execute(j, {}, context(settings))
        assert res.outcome == Outcome.CLEAN
        assert (settings.work_dir / "env.txt").read_text().strip() == "hello"


class TestCachePopulation:
    """Tests for the population step and read-only jobs."""

    def test_population_then_shared_read(self, settings: Settings, scanner_log: Path) -> None:
        """Test a read-only job scans with the populated shared cache and skips the db update."""
        ctx = context(settings)
        db = execute(download_db_job(), {}, ctx)
        assert db.outcome == Outcome.CLEAN
        assert db.cache_populated is True

        res = execute(scan_job("scan-a", output="raw.json"), {}, ctx)
        assert res.outcome == Outcome.CLEAN
        assert res.degraded == []

        scans = [e for e in read_log(scanner_log) if e["cmd"] == "scan"]
        assert scans[0]["skip_db_update"] is True
        assert scans[0]["cache_dir"] == str(ctx.cache.entry("vulndb").directory)

    def test_population_is_decoupled_from_later_failure(self, settings: Settings, scanner_log: Path) -> None:
        """Test the cache stays populated when a later command in the same job fails."""
        ctx = context(settings)
        j = download_db_job("download-db", sh("gate", "exit 3"))
        res = execute(j, {}, ctx)

        assert res.outcome == Outcome.INFRASTRUCTURE_ERROR
        assert res.cache_populated is True
        assert ctx.cache.entry("vulndb").populated

    def test_population_failure_degrades_readers(self, settings: Settings, scanner_log: Path) -> None:
        """Test a failed download is recorded and readers fetch their own database."""
        ctx = context(settings)
        ctx.cache.register_writer("vulndb")
        res = execute(download_db_job(env={"FAKE_DB_FAIL": "1"}), {}, ctx)

        assert res.outcome == Outcome.INFRASTRUCTURE_ERROR
        assert res.cache_populated is False
        assert res.error.startswith("PopulationFailed")
        assert res.degraded

        scan_res = execute(scan_job("scan-a", output="raw.json"), {}, ctx)
        assert scan_res.outcome == Outcome.CLEAN
        assert scan_res.degraded
        scans = [e for e in read_log(scanner_log) if e["cmd"] == "scan"]
        assert scans[0]["skip_db_update"] is False
        assert scans[0]["cache_dir"] == str(ctx.cache.local_dir("scan-a"))

    def test_no_cache_policy_uses_local_dir(self, settings: Settings, scanner_log: Path) -> None:
        ctx = context(settings)
        j = job("standalone", scan("scan", output="raw.json"))
        res = execute(j, {}, ctx)

        assert res.outcome == Outcome.CLEAN
        assert res.cache_populated is None
        assert read_log(scanner_log)[0]["cache_dir"] == str(ctx.cache.local_dir("standalone"))
