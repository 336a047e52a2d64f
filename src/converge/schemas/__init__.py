# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Converge schemas."""

from converge.schemas.configuration import (
    ComparisonResult,
    Configuration,
    Difference,
    encrypted,
    observed,
    persistent,
)
from converge.schemas.job import (
    CAPTURE_ALL,
    Job,
    JobResult,
    JobStatus,
    LogEvent,
    LogLevel,
    OutValue,
    ProgressEvent,
)

__all__ = [
    "CAPTURE_ALL",
    "ComparisonResult",
    "Configuration",
    "Difference",
    "Job",
    "JobResult",
    "JobStatus",
    "LogEvent",
    "LogLevel",
    "OutValue",
    "ProgressEvent",
    "encrypted",
    "observed",
    "persistent",
]
