# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Capability interface implemented once per resource kind.

The engine owns the state machine, sequencing and simulation gating. A
resource kind only knows how to stage its content, inspect the target,
compare, and configure a single sub-target.
"""

import abc
import logging
from dataclasses import dataclass, field
from typing import Callable, ClassVar, Dict, Tuple, Type

from converge.assets import ContentProvider
from converge.cache import ContentCache
from converge.jobs.channel import CancellationToken, JobChannel, JobObserver
from converge.schemas.configuration import ComparisonResult, Configuration, Difference
from converge.schemas.job import Job, JobResult

logger = logging.getLogger(__name__)


class JobCancelled(Exception):
    """Raised inside an engine run when a job came back cancelled."""

    def __init__(self, label: str):
        super().__init__(f"job '{label}' was cancelled")
        self.label = label


@dataclass
class OperationContext:
    """Everything a resource kind needs to talk to the target for one run."""
    channel: JobChannel
    cancellation: CancellationToken
    # Called once per submitted job
    observer_factory: Callable[[], JobObserver] = JobObserver
    staged: Dict[str, str] = field(default_factory=dict)
    jobs_submitted: int = 0

    async def run(self, job: Job) -> JobResult:
        """Submit a job bound to the run's cancellation token.

        Raises:
            JobCancelled: If the job was cancelled.
            ExecutionFailed: If the job failed.
        """
        self.jobs_submitted += 1
        result = await self.channel.submit(job, self.cancellation, self.observer_factory())
        if result.cancelled:
            raise JobCancelled(job.label)
        return result


class ResourceOperation(abc.ABC):
    """Collect / compare / configure for one resource kind."""

    kind: ClassVar[str]
    configuration_class: ClassVar[Type[Configuration]]

    def __init__(self, template: Configuration):
        self.template = template

    def validate(self) -> None:
        """Reject templates missing mandatory identity fields.

        Raises:
            ValidationError: If the template is malformed.
        """
        self.template.validate()

    def stage(self, cache: ContentCache, provider: ContentProvider) -> Dict[str, str]:
        """Materialize indirect content. Returns role → staged path."""
        return {}

    @abc.abstractmethod
    async def collect(self, context: OperationContext) -> Configuration:
        """Inspect the target with a single batched job."""

    def compare(self, actual: Configuration) -> ComparisonResult:
        """Structural comparison of the template against a snapshot."""
        if not self.template.exists:
            if actual.exists:
                return ComparisonResult(differences=(Difference("exists", False, True),))
            return ComparisonResult()

        if not actual.exists:
            return ComparisonResult(differences=(Difference("exists", True, False),))

        return ComparisonResult(
            differences=self.template.differences(actual),
            unsatisfied=actual.unsatisfied_sub_targets(),
        )

    def sub_targets_to_configure(self, actual: Configuration) -> Tuple[str, ...]:
        """Sub-targets in discovery order."""
        return tuple(actual.sub_targets or ())

    @abc.abstractmethod
    async def configure(self, context: OperationContext, sub_target: str) -> None:
        """Bring one sub-target to the desired state with one job."""

    def describe_action(self, sub_target: str) -> str:
        verb = "configure" if self.template.exists else "remove"
        return f"{verb} '{sub_target}'"
