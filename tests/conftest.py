"""Shared fixtures for scanflow tests."""

from __future__ import annotations

import json
import shlex
import sys
import textwrap
from pathlib import Path
from typing import Dict, List

import pytest

from scanflow.settings import Settings
from scanflow.ui.console import Console, set_console

# Stands in for trivy. Understands the flags scanflow passes and logs every
# invocation as one JSON line to $FAKE_SCANNER_LOG.
#   - targets containing "vuln" have findings (exit with --exit-code)
#   - targets containing "crash" make the scanner exit 3
#   - FAKE_DB_FAIL=1 makes database downloads fail
FAKE_SCANNER = textwrap.dedent(
    '''
    import json
    import os
    import sys
    import time
    from pathlib import Path

    def log(entry):
        path = os.environ.get("FAKE_SCANNER_LOG")
        if path:
            entry["t"] = time.time()
            with open(path, "a", encoding="utf-8") as fh:
                fh.write(json.dumps(entry) + "\\n")

    def fetch_db(cache_dir):
        db = Path(cache_dir) / "db"
        db.mkdir(parents=True, exist_ok=True)
        (db / "metadata.json").write_text('{"Version": 2, "UpdatedAt": "2024-01-01"}')
        (db / "trivy.db").write_text("vulnerability data")

    def raw_report(target):
        vulns = []
        if "vuln" in target:
            vulns = [{"VulnerabilityID": "CVE-2024-0001", "Severity": "HIGH"}]
        return {"ArtifactName": target, "Vulnerabilities": vulns}

    def render(report, fmt, template):
        if fmt == "json":
            return json.dumps(report, sort_keys=True)
        return json.dumps({"format": fmt, "template": template, "data": report}, sort_keys=True)

    args = sys.argv[1:]
    command = args.pop(0)
    opts = {}
    flags = set()
    positional = []
    while args:
        a = args.pop(0)
        if a in ("--download-db-only", "--skip-db-update", "--ignore-unfixed", "--no-progress", "--quiet"):
            flags.add(a)
        elif a.startswith("--"):
            opts[a] = args.pop(0)
        else:
            positional.append(a)

    delay = float(os.environ.get("FAKE_SCANNER_DELAY", "0"))

    if command == "image" and "--download-db-only" in flags:
        log({"cmd": "download-db", "cache_dir": opts.get("--cache-dir"), "start": time.time()})
        time.sleep(delay)
        if os.environ.get("FAKE_DB_FAIL") == "1":
            sys.exit(1)
        fetch_db(opts["--cache-dir"])
        sys.exit(0)

    if command == "image":
        target = positional[-1]
        cache_dir = Path(opts["--cache-dir"])
        skip = "--skip-db-update" in flags
        log({"cmd": "scan", "target": target, "cache_dir": str(cache_dir), "skip_db_update": skip, "flags": sorted(flags)})
        time.sleep(delay)
        if skip and not (cache_dir / "db" / "metadata.json").exists():
            sys.exit(1)
        if not skip:
            fetch_db(cache_dir)
        if "crash" in target:
            sys.exit(3)
        report = raw_report(target)
        if "--output" in opts:
            out = Path(opts["--output"])
            out.parent.mkdir(parents=True, exist_ok=True)
            out.write_text(render(report, opts.get("--format", "table"), opts.get("--template")))
        if report["Vulnerabilities"]:
            sys.exit(int(opts.get("--exit-code", "0")))
        sys.exit(0)

    if command == "convert":
        raw = Path(positional[-1])
        log({"cmd": "convert", "raw": str(raw)})
        report = json.loads(raw.read_text())
        out = Path(opts["--output"])
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(render(report, opts.get("--format", "table"), opts.get("--template")))
        sys.exit(0)

    sys.exit(2)
    '''
)


@pytest.fixture(autouse=True)
def quiet_console() -> None:
    """Fresh console per test so debug state never leaks between tests."""
    set_console(Console(debug=False))


@pytest.fixture
def fake_scanner(tmp_path: Path) -> Path:
    script = tmp_path / "fake_trivy.py"
    script.write_text(FAKE_SCANNER, encoding="utf-8")
    return script


@pytest.fixture
def scanner_log(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    log = tmp_path / "scanner.log"
    monkeypatch.setenv("FAKE_SCANNER_LOG", str(log))
    return log


@pytest.fixture
def work_dir(tmp_path: Path) -> Path:
    d = tmp_path / "work"
    d.mkdir()
    return d


@pytest.fixture
def settings(tmp_path: Path, fake_scanner: Path, work_dir: Path) -> Settings:
    return Settings(
        target_image="registry.example.com/app:clean",
        scanner=f"{shlex.quote(sys.executable)} {shlex.quote(str(fake_scanner))}",
        cache_dir=tmp_path / "cache",
        artifacts_dir=tmp_path / "artifacts",
        work_dir=work_dir,
        retention="1 day",
        cache_wait=30.0,
        project="shop",
        ref="main",
    )


def read_log(path: Path) -> List[Dict]:
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]
