# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Error classes for converge.

Errors are exceptions, not values. The engine raises them at the phase
that failed and the CLI maps them to exit codes:

- ValidationError: malformed template, never retried, raised before any remote call
- StagingFailed: content cache could not stage a script, fatal for the run
- ExecutionFailed: a remote job terminated abnormally
- MissingOutput / TypeMismatch: output capture contract violations,
  handled exactly like ExecutionFailed by callers

Cancellation is not an error; it is reported as an outcome.
"""

from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from converge.engine import ReconcileResult


class ConvergeError(Exception):
    """Base exception for converge.

    ``result`` is set by the engine when the failure happened mid-run, so
    callers can still report how far reconciliation got.
    """

    result: Optional["ReconcileResult"] = None


class ConfigError(ConvergeError):
    """Configuration file could not be loaded."""
    pass


class ValidationError(ConvergeError):
    """Template is missing mandatory fields or is malformed."""
    pass


class AssetNotFound(ConvergeError):
    """An asset reference could not be resolved to content."""
    pass


class StagingFailed(ConvergeError):
    """Content could not be staged on the execution target."""
    pass


class ExecutionFailed(ConvergeError):
    """A remote job terminated abnormally.

    Carries the log lines captured while the job ran so the failure can be
    diagnosed without re-running it.
    """

    def __init__(
        self,
        message: str,
        log_lines: Optional[List[str]] = None,
        exit_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.log_lines = list(log_lines or [])
        self.exit_code = exit_code

    def log_tail(self, lines: int = 10) -> str:
        """Return the last few captured log lines."""
        return "\n".join(self.log_lines[-lines:])


class MissingOutput(ExecutionFailed):
    """A required output variable was not produced by the job."""
    pass


class TypeMismatch(ExecutionFailed):
    """An output variable could not be coerced to the expected shape."""
    pass
