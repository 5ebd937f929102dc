# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class ConfigurationError(Exception):
    """
    Invalid pipeline definition. Always raised before any job executes:
    cycles, unknown dependencies, stage ordering violations.
    """
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"ConfigurationError: {self.message}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass
class InfrastructureError(Exception):
    """
    A job could not complete: the scanner failed to start, a report-producing
    command failed, the job timed out, or population/artifact writes failed.

    The executor records these on the JobResult; they only fail the pipeline
    when the job's failure policy is fail-pipeline.
    """
    kind: str
    job: str
    step: str | None
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}", f"job={self.job}"]
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)
