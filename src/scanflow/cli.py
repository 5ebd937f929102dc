# cli.py
from __future__ import annotations

import sys
from pathlib import Path

import click

from scanflow.artifacts import reap as reap_bundles
from scanflow.dag import plan_schedule, select_jobs
from scanflow.errors import ConfigurationError
from scanflow.exit_codes import EXIT_CONFIGURATION_ERROR, EXIT_INTERRUPTED, EXIT_PIPELINE_FAILED
from scanflow.report import to_document
from scanflow.runner import load_workflow, run_pipeline
from scanflow.settings import Settings
from scanflow.ui.console import Console, get_console, set_console

DEFAULT_PIPELINE = "scanflow_pipeline.py"


def find_pipeline_files() -> list[Path]:
    """
    Find all pipeline definition files in the current directory.

    Returns:
        List of Path objects for pipeline files
    """
    current_dir = Path(".")
    found = []
    default = current_dir / DEFAULT_PIPELINE
    if default.exists():
        found.append(default)
    for path in current_dir.glob("*_pipeline.py"):
        if path != default:
            found.append(path)
    return sorted(found)


def discover_pipeline(pipeline_arg: str | None) -> Path:
    """
    Resolve the pipeline definition from the argument, or find the single
    *_pipeline.py file in the current directory.

    Raises:
        ConfigurationError: If the file cannot be found or the choice is ambiguous
    """
    if pipeline_arg:
        path = Path(pipeline_arg)
        if not path.exists() and path.suffix != ".py":
            path = Path(str(path) + ".py")
        if not path.exists():
            raise ConfigurationError(f"Pipeline file not found: {pipeline_arg}")
        return path

    found = find_pipeline_files()
    if not found:
        raise ConfigurationError(
            "No pipeline file found",
            {"looked_for": [DEFAULT_PIPELINE, "*_pipeline.py"]},
        )
    if len(found) > 1:
        raise ConfigurationError(
            "Multiple pipeline files found; pass one explicitly",
            {"candidates": [str(p) for p in found]},
        )
    return found[0]


def _config_error(e: ConfigurationError) -> None:
    get_console().print_error(
        "Invalid pipeline configuration",
        e.message,
        details=[f"{k}: {v}" for k, v in sorted(e.details.items())] or None,
        suggestion="Fix the pipeline definition; no job has been started.",
    )
    sys.exit(EXIT_CONFIGURATION_ERROR)


def _load(pipeline_arg: str | None):
    path = discover_pipeline(pipeline_arg)
    try:
        return path, load_workflow(path)
    except ConfigurationError:
        raise
    except Exception as e:
        # errors raised by the definition file itself (bad helper args, syntax)
        raise ConfigurationError(
            f"Could not load pipeline from {path}",
            {"error": f"{type(e).__name__}: {e}"},
        ) from e


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and scanner output)",
)
@click.pass_context
def cli(ctx, debug):
    """scanflow: dependency-aware vulnerability scan pipelines."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.argument("pipeline_def", required=False)
@click.option("--job", "only", default=None, help="Run a single job plus what it needs")
@click.option("--workers", default=None, type=int, help="Number of parallel workers")
@click.option("--cache-dir", default=None, help="Shared cache root (env: SCANFLOW_CACHE_DIR)")
@click.option("--artifacts-dir", default=None, help="Artifact bundle root (env: SCANFLOW_ARTIFACTS_DIR)")
@click.option("--target-image", default=None, help="Image to scan (env: SCANFLOW_TARGET_IMAGE)")
@click.option("--report", "report_file", default=None, type=click.Path(dir_okay=False), help="Write a JSON run report")
@click.pass_context
def run(ctx, pipeline_def, only, workers, cache_dir, artifacts_dir, target_image, report_file):
    """Run a scan pipeline."""
    console = get_console()

    try:
        path, pipeline = _load(pipeline_def)
        settings = Settings.from_env().with_overrides(
            cache_dir=cache_dir,
            artifacts_dir=artifacts_dir,
            target_image=target_image,
        )

        console.print_run_started(
            pipeline=path.name,
            target=settings.target_image,
            job_count=len(pipeline.jobs),
        )

        report = run_pipeline(pipeline, settings, only=only, max_workers=workers)
        console.print_report(report)

        if report_file:
            Path(report_file).write_text(to_document(report).model_dump_json(indent=2), encoding="utf-8")
            console.print_info(f"Report written to {report_file}")

        if not report.succeeded:
            sys.exit(report.exit_code)

    except ConfigurationError as e:
        _config_error(e)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_PIPELINE_FAILED)


@cli.command()
@click.argument("pipeline_def", required=False)
@click.option("--job", "only", default=None, help="Plan a single job plus what it needs")
@click.option("--cache-dir", default=None, help="Shared cache root, used to see durable caches with --job")
def plan(pipeline_def, only, cache_dir):
    """Print the schedule without running anything."""
    console = get_console()
    try:
        path, pipeline = _load(pipeline_def)
        if only:
            from scanflow.cache import CacheManager

            settings = Settings.from_env().with_overrides(cache_dir=cache_dir)
            cache = CacheManager(settings.cache_dir)
            durable = {j.cache_key for j in pipeline.jobs if cache.is_durable(j.cache_key)}
            pipeline = select_jobs(pipeline, only, durable_keys=durable)
        console.print_info(f"Pipeline: {path.name}")
        console.print_plan(plan_schedule(pipeline))
    except ConfigurationError as e:
        _config_error(e)


@cli.command()
@click.option("--artifacts-dir", default=None, help="Artifact bundle root (env: SCANFLOW_ARTIFACTS_DIR)")
def reap(artifacts_dir):
    """Delete artifact bundles whose retention has expired."""
    console = get_console()
    try:
        settings = Settings.from_env().with_overrides(artifacts_dir=artifacts_dir)
    except ConfigurationError as e:
        _config_error(e)
    removed = reap_bundles(settings.artifacts_dir)
    for name in removed:
        console.print_info(f"removed {name}")
    console.print_info(f"{len(removed)} expired bundle(s) removed")


if __name__ == "__main__":
    cli()
