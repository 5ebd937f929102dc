"""Exit codes for the scanflow CLI.

- 0: every fail-pipeline job terminated without an infrastructure error
  (findings are reported, not failed)
- 1: a fail-pipeline job could not complete or was cancelled
- 2: configuration error, nothing ran
- 130: interrupted
"""

from __future__ import annotations

EXIT_SUCCESS = 0
EXIT_PIPELINE_FAILED = 1
EXIT_CONFIGURATION_ERROR = 2
EXIT_INTERRUPTED = 130
