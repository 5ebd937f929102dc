from .dsl import (
    convert,
    convert_job,
    download_db,
    download_db_job,
    job,
    matrix,
    pipeline,
    scan,
    scan_job,
    sh,
    wf,
)
from .runner import load_workflow, run_pipeline
from .model import CachePolicy, JobDescriptor, Outcome, Pipeline, Step

__all__ = [
    "convert",
    "convert_job",
    "download_db",
    "download_db_job",
    "job",
    "matrix",
    "pipeline",
    "scan",
    "scan_job",
    "sh",
    "wf",
    "load_workflow",
    "run_pipeline",
    "CachePolicy",
    "JobDescriptor",
    "Outcome",
    "Pipeline",
    "Step",
]
