# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
One-shot script execution.

Runs a PowerShell script once through a job channel, with no collect or
compare step. The script sees ``$IsSimulation`` so it can guard its own
side effects when it is allowed to run during a simulation.
"""

import logging
from typing import Any, Dict, Optional

from converge.jobs.channel import CancellationToken, JobChannel, JobObserver
from converge.schemas.job import Job, JobResult, LogEvent

logger = logging.getLogger(__name__)


class LoggingObserver(JobObserver):
    """Writes remote log events to the local log."""

    def on_log(self, event: LogEvent) -> None:
        logger.log(event.level.logging_level, event.message)


async def execute_script(
    channel: JobChannel,
    script_text: str,
    variables: Optional[Dict[str, Any]] = None,
    simulation: bool = False,
    run_on_simulation: bool = False,
    debug_logging: bool = False,
    verbose_logging: bool = False,
    cancellation: Optional[CancellationToken] = None,
) -> Optional[JobResult]:
    """Execute a script on the channel's target.

    Args:
        channel: Where to run the script.
        script_text: PowerShell script text.
        variables: Variables bound before the script runs.
        simulation: True when the caller is only simulating.
        run_on_simulation: Run the script even in simulation.
        debug_logging: Capture the Write-Debug stream.
        verbose_logging: Capture the Write-Verbose stream.
        cancellation: Token bounding the run.

    Returns:
        The job result, or None when the script was skipped.

    Raises:
        ExecutionFailed: If the script terminated abnormally.
    """
    if simulation and not run_on_simulation:
        logger.info("Executing PowerShell script... (skipped in simulation)")
        return None

    job_variables = dict(variables or {})
    job_variables["IsSimulation"] = simulation

    job = Job(
        script_text=script_text,
        variables=job_variables,
        collect_output=False,
        log_output=True,
        debug_logging=debug_logging,
        verbose_logging=verbose_logging,
        label="exec",
    )

    logger.info("Executing PowerShell script...")
    result = await channel.submit(job, cancellation, LoggingObserver())
    if result.cancelled:
        logger.warning("Script execution was cancelled")
    elif result.exit_code is not None:
        logger.debug(f"Script exit code: {result.exit_code}")
    return result
