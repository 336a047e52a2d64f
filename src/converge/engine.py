# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Reconciliation engine.

One engine reconciles one template:

    IDLE -> VALIDATING -> COLLECTING -> COMPARING
        -> IN_DESIRED_STATE
        -> CONFIGURING -> VERIFYING -> CONFIGURED | CONFIGURED_WITH_DRIFT

Any step may end in FAILED, and CANCELLED when the run's token fires. The
engine owns sequencing and simulation gating; everything resource-specific
lives behind ResourceOperation.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Iterable, List, Optional, Sequence, Tuple

from converge.assets import ContentProvider, FileAssetProvider
from converge.cache import ContentCache
from converge.errors import ConvergeError, ExecutionFailed, ValidationError
from converge.jobs.channel import CancellationToken, JobChannel, JobObserver
from converge.resources import JobCancelled, OperationContext, ResourceOperation, operation_for
from converge.schemas.configuration import ComparisonResult, Configuration, Difference
from converge.schemas.job import LogEvent, ProgressEvent

logger = logging.getLogger(__name__)


class EngineState(Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    COLLECTING = "collecting"
    COMPARING = "comparing"
    IN_DESIRED_STATE = "in_desired_state"
    CONFIGURING = "configuring"
    VERIFYING = "verifying"
    CONFIGURED = "configured"
    CONFIGURED_WITH_DRIFT = "configured_with_drift"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Outcome(Enum):
    """What a run reports to its caller."""

    IN_DESIRED_STATE = "in_desired_state"
    CONFIGURED = "configured"
    WOULD_CONFIGURE = "would_configure"
    CONFIGURED_WITH_DRIFT = "configured_with_drift"
    VALIDATION_FAILED = "validation_failed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES[self]

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


_EXIT_CODES = {
    Outcome.IN_DESIRED_STATE: 0,
    Outcome.CONFIGURED: 0,
    Outcome.WOULD_CONFIGURE: 0,
    Outcome.FAILED: 1,
    Outcome.VALIDATION_FAILED: 2,
    Outcome.CONFIGURED_WITH_DRIFT: 3,
    Outcome.CANCELLED: 130,
}

# Least to most severe
_SEVERITY = [
    Outcome.IN_DESIRED_STATE,
    Outcome.WOULD_CONFIGURE,
    Outcome.CONFIGURED,
    Outcome.CONFIGURED_WITH_DRIFT,
    Outcome.VALIDATION_FAILED,
    Outcome.FAILED,
    Outcome.CANCELLED,
]


def worst_outcome(outcomes: Iterable[Outcome]) -> Outcome:
    """Most severe outcome of a batch; IN_DESIRED_STATE for an empty one."""
    return max(outcomes, key=_SEVERITY.index, default=Outcome.IN_DESIRED_STATE)


@dataclass
class ReconcileResult:
    """How far one run got and what it observed.

    ``configuration`` is the most recent snapshot: the collected one, the
    verified one after configuring, or the collected one marked not
    configured when a sub-target failed.
    """
    template: Configuration
    simulation: bool = False
    outcome: Optional[Outcome] = None
    configuration: Optional[Configuration] = None
    comparison: Optional[ComparisonResult] = None
    drift: Optional[ComparisonResult] = None
    history: List[EngineState] = field(default_factory=lambda: [EngineState.IDLE])
    configured_sub_targets: List[str] = field(default_factory=list)
    failed_sub_target: Optional[str] = None
    planned_actions: List[str] = field(default_factory=list)
    jobs_submitted: int = 0
    error: Optional[str] = None

    @property
    def key(self) -> str:
        return self.template.configuration_key

    @property
    def state(self) -> EngineState:
        return self.history[-1]

    @property
    def differences(self) -> Tuple[Difference, ...]:
        return self.comparison.differences if self.comparison else ()


class EngineObserver(JobObserver):
    """Forwards remote job events into the local log, tagged with the key."""

    def __init__(self, key: str):
        super().__init__()
        self.key = key

    def on_log(self, event: LogEvent) -> None:
        logger.log(event.level.logging_level, f"[{self.key}] {event.message}")

    def on_progress(self, event: ProgressEvent) -> None:
        super().on_progress(event)
        if event.percent_complete is not None:
            logger.debug(f"[{self.key}] {event.activity or 'progress'}: {event.percent_complete:.0f}%")


class ReconciliationEngine:
    """Runs collect / compare / configure / verify for one template.

    Engines are single use and share no mutable state, so independent
    templates can be reconciled concurrently with one engine each.
    """

    def __init__(
        self,
        template: Configuration,
        channel: JobChannel,
        cache: Optional[ContentCache] = None,
        provider: Optional[ContentProvider] = None,
        operation: Optional[ResourceOperation] = None,
    ):
        self.template = template
        self.channel = channel
        self.cache = cache or ContentCache()
        self.provider = provider or FileAssetProvider()
        self.operation = operation or operation_for(template)
        self.result = ReconcileResult(template=template)
        self._started = False

    @property
    def key(self) -> str:
        return self.template.configuration_key or type(self.template).__name__

    def _transition(self, state: EngineState, level: int = logging.DEBUG) -> None:
        logger.log(level, f"[{self.key}] {self.result.state.value} -> {state.value}")
        self.result.history.append(state)

    def _finish(self, state: EngineState, outcome: Outcome) -> ReconcileResult:
        level = logging.ERROR if state == EngineState.FAILED else logging.INFO
        self._transition(state, level)
        self.result.outcome = outcome
        return self.result

    async def run(
        self,
        simulation: bool = False,
        cancellation: Optional[CancellationToken] = None,
    ) -> ReconcileResult:
        """Reconcile the template against the execution target.

        Args:
            simulation: Report what would change without configuring.
            cancellation: Token bounding every job of this run.

        Returns:
            The run's result. Validation failures and cancellation are
            reported through ``result.outcome``.

        Raises:
            ConvergeError: If staging or a remote job failed. The partial
                result is attached as ``error.result``.
        """
        if self._started:
            raise RuntimeError("ReconciliationEngine instances are single use")
        self._started = True

        self.result.simulation = simulation
        context = OperationContext(
            channel=self.channel,
            cancellation=cancellation or CancellationToken(),
            observer_factory=lambda: EngineObserver(self.key),
        )
        try:
            return await self._run(context, simulation)
        except JobCancelled as e:
            logger.warning(f"[{self.key}] Reconciliation cancelled: {e}")
            return self._finish(EngineState.CANCELLED, Outcome.CANCELLED)
        except ConvergeError as e:
            logger.error(f"[{self.key}] Reconciliation failed: {e}")
            self.result.error = str(e)
            self._finish(EngineState.FAILED, Outcome.FAILED)
            e.result = self.result
            raise
        finally:
            self.result.jobs_submitted = context.jobs_submitted

    async def _run(self, context: OperationContext, simulation: bool) -> ReconcileResult:
        self._transition(EngineState.VALIDATING)
        try:
            self.operation.validate()
        except ValidationError as e:
            logger.error(f"[{self.key}] Invalid template: {e}")
            self.result.error = str(e)
            return self._finish(EngineState.FAILED, Outcome.VALIDATION_FAILED)

        self._transition(EngineState.COLLECTING)
        # Staging is synchronous; cancellation is noticed at the next submit
        context.staged = self.operation.stage(self.cache, self.provider)
        actual = await self.operation.collect(context)
        self.result.configuration = actual

        self._transition(EngineState.COMPARING)
        comparison = self.operation.compare(actual)
        self.result.comparison = comparison

        if comparison.in_desired_state:
            if not self.template.exists and not actual.exists:
                logger.warning(f"[{self.key}] Resource does not exist")
            logger.info(f"[{self.key}] In desired state")
            return self._finish(EngineState.IN_DESIRED_STATE, Outcome.IN_DESIRED_STATE)

        for difference in comparison.differences:
            logger.info(f"[{self.key}] {difference}")
        for name in comparison.unsatisfied:
            logger.info(f"[{self.key}] '{name}' is not in the desired state")

        self._transition(EngineState.CONFIGURING)
        targets = self.operation.sub_targets_to_configure(actual)

        if simulation:
            for target in targets:
                action = self.operation.describe_action(target)
                self.result.planned_actions.append(action)
                logger.info(f"[{self.key}] Would {action}")
            return self._finish(EngineState.IN_DESIRED_STATE, Outcome.WOULD_CONFIGURE)

        await self._configure(context, actual, targets)

        self._transition(EngineState.VERIFYING)
        verified = await self.operation.collect(context)
        self.result.configuration = verified
        verification = self.operation.compare(verified)

        if verification.in_desired_state:
            return self._finish(EngineState.CONFIGURED, Outcome.CONFIGURED)

        self.result.drift = verification
        for difference in verification.differences:
            logger.warning(f"[{self.key}] Drift after configuring: {difference}")
        for name in verification.unsatisfied:
            logger.warning(f"[{self.key}] Drift after configuring: '{name}' is still not in the desired state")
        return self._finish(EngineState.CONFIGURED_WITH_DRIFT, Outcome.CONFIGURED_WITH_DRIFT)

    async def _configure(
        self,
        context: OperationContext,
        actual: Configuration,
        targets: Sequence[str],
    ) -> None:
        # Strictly one after another: sub-targets may touch the same files
        for target in targets:
            action = self.operation.describe_action(target)
            logger.debug(f"[{self.key}] Starting to {action}")
            try:
                await self.operation.configure(context, target)
            except ExecutionFailed as e:
                logger.error(f"[{self.key}] Failed to {action}: {e}")
                if e.log_lines:
                    logger.debug(f"[{self.key}] Last job output:\n{e.log_tail()}")
                self.result.failed_sub_target = target
                self.result.configuration = replace(
                    actual,
                    sub_target_status={**actual.sub_target_status, target: False},
                )
                raise
            self.result.configured_sub_targets.append(target)
            logger.info(f"[{self.key}] '{target}' configured")


async def reconcile(
    template: Configuration,
    channel: JobChannel,
    simulation: bool = False,
    cancellation: Optional[CancellationToken] = None,
    cache: Optional[ContentCache] = None,
    provider: Optional[ContentProvider] = None,
) -> ReconcileResult:
    """Reconcile a single template. See ReconciliationEngine.run."""
    engine = ReconciliationEngine(template, channel, cache=cache, provider=provider)
    return await engine.run(simulation=simulation, cancellation=cancellation)


async def reconcile_all(
    templates: Sequence[Configuration],
    channel: JobChannel,
    simulation: bool = False,
    cancellation: Optional[CancellationToken] = None,
    cache: Optional[ContentCache] = None,
    provider: Optional[ContentProvider] = None,
) -> List[ReconcileResult]:
    """Reconcile independent templates concurrently.

    A failing template is reported as a FAILED result instead of aborting
    the others. Results are returned in template order.
    """
    cache = cache or ContentCache()
    provider = provider or FileAssetProvider()
    engines = [
        ReconciliationEngine(template, channel, cache=cache, provider=provider)
        for template in templates
    ]
    outcomes = await asyncio.gather(
        *(engine.run(simulation=simulation, cancellation=cancellation) for engine in engines),
        return_exceptions=True,
    )

    results = []
    for engine, outcome in zip(engines, outcomes):
        if isinstance(outcome, ConvergeError):
            results.append(engine.result)
        elif isinstance(outcome, BaseException):
            raise outcome
        else:
            results.append(outcome)
    return results
