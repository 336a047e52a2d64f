# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Shared fixtures: an in-memory job channel and a fake remote target."""

import asyncio
from typing import Any, Callable, Dict, List, Optional

import pytest

from converge.assets import FileAssetProvider
from converge.cache import ContentCache
from converge.jobs.channel import JobChannel, JobEmitter
from converge.schemas.job import Job, JobResult, JobStatus, LogLevel

Handler = Callable[[Job, JobEmitter], Any]


class ScriptedChannel(JobChannel):
    """Answers jobs with handlers chosen by job label.

    A handler key matches a label exactly or as a prefix; the longest match
    wins. A handler may return a JobResult, a dict of output variables, or
    None, and may be a coroutine function.
    """

    def __init__(self, handlers: Optional[Dict[str, Handler]] = None):
        self.handlers: Dict[str, Handler] = dict(handlers or {})
        self.submitted: List[Job] = []
        self.cancel_requests: List[Job] = []

    @property
    def name(self) -> str:
        return "scripted"

    @property
    def labels(self) -> List[str]:
        return [job.label for job in self.submitted]

    def on(self, label: str, handler: Handler) -> None:
        self.handlers[label] = handler

    def _handler_for(self, label: str) -> Handler:
        matches = [key for key in self.handlers if label == key or label.startswith(key)]
        if not matches:
            raise AssertionError(f"unexpected job '{label}'")
        return self.handlers[max(matches, key=len)]

    async def _execute(self, job: Job, emitter: JobEmitter) -> JobResult:
        self.submitted.append(job)
        outcome = self._handler_for(job.label)(job, emitter)
        if asyncio.iscoroutine(outcome):
            outcome = await outcome
        if isinstance(outcome, JobResult):
            return outcome
        return JobResult(status=JobStatus.SUCCEEDED, exit_code=0, out_variables=dict(outcome or {}))

    async def _request_cancel(self, job: Job) -> None:
        self.cancel_requests.append(job)


class FakeTarget:
    """Remote machine whose sub-targets are satisfied once configured."""

    def __init__(self, sub_targets: Dict[str, bool], exists: bool = True):
        self.sub_targets = dict(sub_targets)
        self.exists = exists
        self.fail_on: Optional[str] = None
        self.apply = True

    def collect(self, job: Job, emitter: JobEmitter) -> Dict[str, Any]:
        return {
            "exists": self.exists,
            "subTargets": {k: "True" if v else "False" for k, v in self.sub_targets.items()},
        }

    def configure(self, job: Job, emitter: JobEmitter):
        name = job.variables["subTarget"]
        if name == self.fail_on:
            emitter.log(LogLevel.ERROR, f"could not configure {name}")
            return JobResult(status=JobStatus.FAILED, exit_code=1)
        if self.apply:
            self.sub_targets[name] = True
            self.exists = True
        return None

    def remove(self, job: Job, emitter: JobEmitter):
        self.sub_targets.pop(job.variables["subTarget"], None)
        self.exists = bool(self.sub_targets)
        return None

    def attach(self, channel: ScriptedChannel) -> ScriptedChannel:
        channel.on("script:collect", self.collect)
        channel.on("script:configure:", self.configure)
        channel.on("script:remove:", self.remove)
        return channel


@pytest.fixture
def channel() -> ScriptedChannel:
    return ScriptedChannel()


@pytest.fixture
def make_target():
    """Factory for FakeTarget instances."""
    return FakeTarget


@pytest.fixture
def staging_root(tmp_path):
    return tmp_path / "staging"


@pytest.fixture
def cache(staging_root) -> ContentCache:
    return ContentCache(staging_root)


@pytest.fixture
def assets_dir(tmp_path):
    path = tmp_path / "assets"
    path.mkdir()
    return path


@pytest.fixture
def provider(assets_dir) -> FileAssetProvider:
    return FileAssetProvider([assets_dir])
