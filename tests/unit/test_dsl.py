"""Tests for the pipeline definition helpers."""

from __future__ import annotations

import pytest

from scanflow.dsl import convert_job, download_db_job, job, matrix, scan_job, sh, wf
from scanflow.model import CachePolicy, Expectation, FailurePolicy


class TestJob:
    """Tests for job()."""

    def test_needs_semantics(self) -> None:
        """Test None, empty and non-empty dependency sets stay distinct."""
        staged = job("a", sh("x", "true"))
        override = job("b", sh("x", "true"), needs=[])
        edged = job("c", sh("x", "true"), needs=["a"])

        assert staged.needs is None and not staged.independent
        assert override.needs == frozenset() and override.independent
        assert edged.deps == ["a"] and not edged.independent

    def test_requires_steps(self) -> None:
        with pytest.raises(ValueError, match="at least one step"):
            job("empty")

    def test_default_cwd_and_env(self) -> None:
        j = job("a", sh("x", "true"), sh("y", "true", cwd="sub"), cwd="app", env={"N": 1})
        assert [s.cwd for s in j.steps] == ["app", "sub"]
        assert j.env_dict == {"N": "1"}

    def test_advisory_shell_step(self) -> None:
        assert sh("x", "true", advisory=True).expect == Expectation.ADVISORY


class TestScanHelpers:
    """Tests for the scan-specific job helpers."""

    def test_download_db_job_defaults(self) -> None:
        j = download_db_job()
        assert j.independent
        assert j.cache_policy == CachePolicy.SHARED_READ_WRITE
        assert j.failure_policy == FailurePolicy.ALLOW_FAILURE
        assert j.steps[0].kind == "download-db"

    def test_population_step_comes_first(self) -> None:
        j = download_db_job("db", sh("gate", "exit 1"))
        assert [s.kind for s in j.steps] == ["download-db", "shell"]

    def test_scan_job_reads_cache(self) -> None:
        j = scan_job("scan-a", output="raw.json", raw=True, exit_code=1, severity=["high"])
        assert j.cache_policy == CachePolicy.READ_ONLY
        assert j.steps[0].is_gate
        assert j.steps[0].severity == ("HIGH",)
        assert j.output_paths() == ["raw.json"]

    def test_convert_job_needs_its_source(self) -> None:
        j = convert_job("convert-a", source="scan-a", output="gl.json", needs=["lint"])
        assert j.deps == ["lint", "scan-a"]
        assert j.steps[0].source_job == "scan-a"
        assert j.steps[0].format == "template"

    def test_declared_artifacts_are_merged(self) -> None:
        j = scan_job("scan-a", output="raw.json", artifacts=["raw.json", "sbom.json"])
        assert j.output_paths() == ["raw.json", "sbom.json"]


class TestPipeline:
    """Tests for wf() and matrix()."""

    def test_matrix_is_flattened(self) -> None:
        images = matrix("image", ["app:1", "app:2"])
        p = wf(download_db_job(), images.jobs(lambda v: scan_job(f"scan-{v}", target=v)))
        assert [j.name for j in p.jobs] == ["download-db", "scan-app:1", "scan-app:2"]

    def test_stage_order(self) -> None:
        p = wf(job("r", sh("x", "true"), stage="report"), job("t", sh("x", "true"), stage="test"))
        assert p.stages == ["report", "test"]

        explicit = wf(job("r", sh("x", "true"), stage="report"), stages=["test", "report"])
        assert explicit.stage_index("report") == 1
