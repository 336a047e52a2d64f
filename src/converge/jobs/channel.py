# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Abstract job channel with cancellation, log and progress streaming.

Every remote operation goes through JobChannel.submit, which is the only
place the engine suspends. Subclasses implement _execute for a concrete
transport; the base class owns the contract:

- a cancelled token short-circuits before anything runs
- log events are queued and delivered in order without blocking the job
- progress events overwrite a single slot (last write wins)
- a failed job raises ExecutionFailed and its partial outputs are dropped
"""

import abc
import asyncio
import contextlib
import logging
import time
from typing import List, Optional

from converge.errors import ExecutionFailed
from converge.schemas.job import (
    Job,
    JobResult,
    JobStatus,
    LogEvent,
    LogLevel,
    ProgressEvent,
)

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation signal with an optional deadline.

    The deadline is supplied by the caller; nothing in converge hardcodes
    a timeout.
    """

    def __init__(self, timeout: Optional[float] = None):
        self.deadline = time.monotonic() + timeout if timeout is not None else None
        self._requested = False
        self._event: Optional[asyncio.Event] = None

    def cancel(self) -> None:
        """Request cancellation of everything bound to this token."""
        self._requested = True
        if self._event is not None:
            self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._requested:
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, None if there is none."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    async def wait(self) -> None:
        """Return once cancellation is requested or the deadline passes."""
        if self.cancelled:
            return
        if self._event is None:
            self._event = asyncio.Event()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=self.remaining())
        except asyncio.TimeoutError:
            pass


class ProgressSlot:
    """Holds only the most recent progress event.

    Replacing the reference is the whole update, so readers never need a
    lock and never see an accumulated history.
    """

    def __init__(self) -> None:
        self._latest: Optional[ProgressEvent] = None

    def update(self, event: ProgressEvent) -> None:
        self._latest = event

    @property
    def latest(self) -> Optional[ProgressEvent]:
        return self._latest


class JobObserver:
    """Receives events for a single job. Override what you need."""

    def __init__(self) -> None:
        self.progress = ProgressSlot()

    def on_log(self, event: LogEvent) -> None:
        pass

    def on_progress(self, event: ProgressEvent) -> None:
        self.progress.update(event)


class JobEmitter:
    """Handed to channel implementations to report events for one job."""

    def __init__(self, job: Job, queue: "asyncio.Queue[Optional[LogEvent]]", observer: JobObserver):
        self.job = job
        self.lines: List[str] = []
        self._queue = queue
        self._observer = observer

    def log(self, level: LogLevel, message: str) -> None:
        """Queue a log event. Never blocks the caller."""
        self.lines.append(f"[{level.value}] {message}")
        self._queue.put_nowait(LogEvent(level=level, message=message))

    def progress(self, percent_complete: Optional[float] = None, activity: Optional[str] = None) -> None:
        event = ProgressEvent(percent_complete=percent_complete, activity=activity)
        try:
            self._observer.on_progress(event)
        except Exception:
            logger.exception(f"Progress observer failed for job '{self.job.label}'")


class JobChannel(abc.ABC):
    """Submits jobs to a single execution target."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Friendly name of the execution target."""

    @abc.abstractmethod
    async def _execute(self, job: Job, emitter: JobEmitter) -> JobResult:
        """Run the job and return its raw result.

        Implementations report a non-zero or abnormal termination either by
        returning a FAILED result or by raising ExecutionFailed.
        """

    async def _request_cancel(self, job: Job) -> None:
        """Ask the remote side to stop. Best effort; default is a no-op."""
        return None

    async def submit(
        self,
        job: Job,
        cancellation: Optional[CancellationToken] = None,
        observer: Optional[JobObserver] = None,
    ) -> JobResult:
        """Execute a job and stream its events to ``observer``.

        Args:
            job: The job to run.
            cancellation: Token bounding how long the job may run.
            observer: Receives log and progress events for this job only.

        Returns:
            A SUCCEEDED result holding only the requested outputs, or a
            CANCELLED result.

        Raises:
            ExecutionFailed: If the job terminated abnormally.
        """
        cancellation = cancellation or CancellationToken()
        observer = observer or JobObserver()

        if cancellation.cancelled:
            logger.info(f"Job '{job.label}' not submitted to {self.name}: cancellation requested")
            return JobResult(status=JobStatus.CANCELLED)

        logger.debug(f"Submitting job '{job.label}' to {self.name}")
        if job.debug_logging:
            logger.debug(f"Job '{job.label}' script:\n{job.script_text}")

        queue: "asyncio.Queue[Optional[LogEvent]]" = asyncio.Queue()
        emitter = JobEmitter(job, queue, observer)
        pump = asyncio.create_task(self._pump_logs(job, queue, observer))
        execution = asyncio.create_task(self._execute(job, emitter))
        cancel_wait = asyncio.create_task(cancellation.wait())

        try:
            done, _ = await asyncio.wait(
                {execution, cancel_wait}, return_when=asyncio.FIRST_COMPLETED
            )
            if execution not in done:
                logger.info(f"Cancelling job '{job.label}' on {self.name}")
                execution.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await execution
                await self._request_cancel(job)
                return JobResult(status=JobStatus.CANCELLED, log_lines=list(emitter.lines))

            try:
                result = execution.result()
            except ExecutionFailed as e:
                if not e.log_lines:
                    e.log_lines = list(emitter.lines)
                raise
        finally:
            cancel_wait.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await cancel_wait
            queue.put_nowait(None)
            await pump

        if result.status == JobStatus.CANCELLED:
            return JobResult(status=JobStatus.CANCELLED, log_lines=list(emitter.lines))

        if result.status == JobStatus.FAILED:
            # Partial outputs are dropped rather than returned half-populated
            raise ExecutionFailed(
                f"Job '{job.label}' failed on {self.name} (exit code {result.exit_code})",
                log_lines=emitter.lines,
                exit_code=result.exit_code,
            )

        if result.exit_code is not None:
            logger.debug(f"Job '{job.label}' exit code: {result.exit_code}")

        return JobResult(
            status=JobStatus.SUCCEEDED,
            exit_code=result.exit_code,
            out_variables=_requested_only(job, result),
            log_lines=list(emitter.lines),
        )

    async def _pump_logs(
        self,
        job: Job,
        queue: "asyncio.Queue[Optional[LogEvent]]",
        observer: JobObserver,
    ) -> None:
        while True:
            event = await queue.get()
            if event is None:
                return
            try:
                observer.on_log(event)
            except Exception:
                # A broken sink must not take the job down with it
                logger.exception(f"Log observer failed for job '{job.label}'")


def _requested_only(job: Job, result: JobResult) -> dict:
    if not job.collect_output:
        return {}
    if job.captures_all:
        return dict(result.out_variables)
    requested = job.requested_outputs()
    return {k: v for k, v in result.out_variables.items() if k in requested}
