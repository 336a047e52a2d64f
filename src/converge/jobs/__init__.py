# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Job channels: the single seam through which remote work runs."""

from converge.jobs.channel import (
    CancellationToken,
    JobChannel,
    JobEmitter,
    JobObserver,
    ProgressSlot,
)
from converge.jobs.powershell import PowerShellJobChannel

__all__ = [
    "CancellationToken",
    "JobChannel",
    "JobEmitter",
    "JobObserver",
    "PowerShellJobChannel",
    "ProgressSlot",
]
