# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Job schemas shared by every channel.

A Job is built, submitted and discarded within one engine phase:
- Job (payload + flags) → channel.submit → JobResult
- LogEvent / ProgressEvent are streamed while the job runs
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

# Loosely typed value produced by a remote script. Output capture is the
# only place that coerces these into concrete types.
OutValue = Union[None, bool, int, float, str, List[Any], Dict[str, Any]]


class _CaptureAll:
    """Sentinel requesting every top-level variable as a mapping."""

    def __repr__(self) -> str:
        return "CAPTURE_ALL"


CAPTURE_ALL = _CaptureAll()


class JobStatus(Enum):
    """Terminal status of a submitted job."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class LogLevel(Enum):
    """Severity of a message logged by a remote job."""

    DEBUG = "debug"
    INFORMATION = "information"
    WARNING = "warning"
    ERROR = "error"

    @property
    def logging_level(self) -> int:
        return {
            LogLevel.DEBUG: logging.DEBUG,
            LogLevel.INFORMATION: logging.INFO,
            LogLevel.WARNING: logging.WARNING,
            LogLevel.ERROR: logging.ERROR,
        }[self]

    @classmethod
    def parse(cls, value: str) -> "LogLevel":
        """Parse a level name, accepting the short forms scripts tend to use."""
        normalized = value.strip().lower()
        aliases = {
            "debug": cls.DEBUG,
            "verbose": cls.DEBUG,
            "info": cls.INFORMATION,
            "information": cls.INFORMATION,
            "warn": cls.WARNING,
            "warning": cls.WARNING,
            "error": cls.ERROR,
        }
        return aliases.get(normalized, cls.INFORMATION)


@dataclass(frozen=True)
class LogEvent:
    """A message emitted by a job while it runs."""
    level: LogLevel
    message: str


@dataclass(frozen=True)
class ProgressEvent:
    """Latest progress report of a job. Only the most recent one matters."""
    percent_complete: Optional[float] = None
    activity: Optional[str] = None


@dataclass
class Job:
    """A single-use unit of remote work.

    ``out_variables`` is either a tuple of variable names to capture or
    CAPTURE_ALL. Names are only captured when ``collect_output`` is set.
    """
    script_text: str
    variables: Dict[str, Any] = field(default_factory=dict)
    collect_output: bool = False
    log_output: bool = True
    debug_logging: bool = False
    verbose_logging: bool = False
    out_variables: Union[Tuple[str, ...], _CaptureAll] = ()
    label: str = "job"  # used in log messages only

    @property
    def captures_all(self) -> bool:
        return self.out_variables is CAPTURE_ALL

    def requested_outputs(self) -> Tuple[str, ...]:
        """Names explicitly requested, empty in capture-all mode."""
        if not self.collect_output or self.captures_all:
            return ()
        return tuple(self.out_variables)


@dataclass
class JobResult:
    """Outcome of one job."""
    status: JobStatus
    exit_code: Optional[int] = None
    out_variables: Dict[str, OutValue] = field(default_factory=dict)
    log_lines: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == JobStatus.SUCCEEDED

    @property
    def cancelled(self) -> bool:
        return self.status == JobStatus.CANCELLED
