# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Tests for the reconciliation engine."""

import asyncio
import logging

import pytest

from converge.engine import (
    EngineState,
    Outcome,
    ReconciliationEngine,
    reconcile,
    reconcile_all,
    worst_outcome,
)
from converge.errors import ExecutionFailed, MissingOutput
from converge.jobs.channel import CancellationToken
from converge.resources.script import ScriptConfiguration
from converge.schemas.job import LogLevel


def site_template(**overrides) -> ScriptConfiguration:
    data = dict(
        configuration_key="site-A",
        sub_targets=("cfgA",),
        collect_script="Get-SiteState",
        configure_script="Set-SiteState -Name $subTarget",
        remove_script="Remove-SiteState -Name $subTarget",
    )
    data.update(overrides)
    return ScriptConfiguration(**data)


def configure_labels(channel):
    return [label for label in channel.labels if not label.endswith("collect")]


class TestScenarios:
    """End-to-end runs against a fake target."""

    def test_unsatisfied_sub_target_is_configured(self, channel, make_target, cache, provider):
        """cfgA unsatisfied -> one configure job -> verified -> CONFIGURED."""
        target = make_target({"cfgA": False})
        target.attach(channel)

        result = asyncio.run(reconcile(site_template(), channel, cache=cache, provider=provider))

        assert result.outcome == Outcome.CONFIGURED
        assert channel.labels == ["script:collect", "script:configure:cfgA", "script:collect"]
        assert result.configured_sub_targets == ["cfgA"]
        assert result.configuration.configured
        assert result.history == [
            EngineState.IDLE,
            EngineState.VALIDATING,
            EngineState.COLLECTING,
            EngineState.COMPARING,
            EngineState.CONFIGURING,
            EngineState.VERIFYING,
            EngineState.CONFIGURED,
        ]

    def test_absent_resource_desired_absent(self, channel, make_target, cache, provider, caplog):
        """Exists=false and nothing on the target -> IN_DESIRED_STATE, inspection only."""
        target = make_target({}, exists=False)
        target.attach(channel)
        caplog.set_level(logging.INFO)

        result = asyncio.run(
            reconcile(site_template(exists=False), channel, cache=cache, provider=provider)
        )

        assert result.outcome == Outcome.IN_DESIRED_STATE
        assert channel.labels == ["script:collect"]
        assert result.jobs_submitted == 1
        assert any(
            r.levelno == logging.WARNING and "does not exist" in r.getMessage()
            for r in caplog.records
        )

    def test_present_resource_desired_absent_is_removed(self, channel, make_target, cache, provider):
        target = make_target({"cfgA": True})
        target.attach(channel)

        result = asyncio.run(
            reconcile(site_template(exists=False), channel, cache=cache, provider=provider)
        )

        assert result.outcome == Outcome.CONFIGURED
        assert channel.labels == ["script:collect", "script:remove:cfgA", "script:collect"]
        assert target.exists is False


class TestIdempotence:
    """Second run with unchanged state does nothing."""

    def test_second_run_submits_no_configuration_jobs(self, channel, make_target, cache, provider):
        target = make_target({"cfgA": False})
        target.attach(channel)

        first = asyncio.run(reconcile(site_template(), channel, cache=cache, provider=provider))
        submitted_before = len(channel.submitted)
        second = asyncio.run(reconcile(site_template(), channel, cache=cache, provider=provider))

        assert first.outcome == Outcome.CONFIGURED
        assert second.outcome == Outcome.IN_DESIRED_STATE
        assert channel.labels[submitted_before:] == ["script:collect"]
        assert second.jobs_submitted == 1

    def test_sub_targets_reported_in_another_order(self, channel, cache, provider):
        """Hashtable order from the target does not count as drift."""
        channel.on(
            "script:collect",
            lambda job, emitter: {"exists": True, "subTargets": {"C": "True", "A": "True", "B": "True"}},
        )

        result = asyncio.run(
            reconcile(site_template(sub_targets=("A", "B", "C")), channel, cache=cache, provider=provider)
        )

        assert result.outcome == Outcome.IN_DESIRED_STATE
        assert result.jobs_submitted == 1
        assert result.configuration.sub_targets == ("A", "B", "C")

    def test_engine_is_single_use(self, channel, make_target, cache, provider):
        make_target({"cfgA": True}).attach(channel)
        engine = ReconciliationEngine(site_template(), channel, cache=cache, provider=provider)

        asyncio.run(engine.run())

        with pytest.raises(RuntimeError):
            asyncio.run(engine.run())


class TestSimulation:
    """Simulation reports without configuring."""

    def test_simulation_issues_only_inspection(self, channel, make_target, cache, provider):
        target = make_target({"A": False, "B": True})
        target.attach(channel)
        template = site_template(sub_targets=("A", "B"))

        result = asyncio.run(
            reconcile(template, channel, simulation=True, cache=cache, provider=provider)
        )

        assert result.outcome == Outcome.WOULD_CONFIGURE
        assert result.state == EngineState.IN_DESIRED_STATE
        assert channel.labels == ["script:collect"]
        assert result.planned_actions == ["configure 'A'", "configure 'B'"]
        assert target.sub_targets == {"A": False, "B": True}

    def test_simulation_logs_would_be_actions(self, channel, make_target, cache, provider, caplog):
        make_target({"cfgA": False}).attach(channel)
        caplog.set_level(logging.INFO)

        asyncio.run(reconcile(site_template(), channel, simulation=True, cache=cache, provider=provider))

        assert "[site-A] Would configure 'cfgA'" in caplog.text

    def test_simulation_in_desired_state(self, channel, make_target, cache, provider):
        make_target({"cfgA": True}).attach(channel)

        result = asyncio.run(
            reconcile(site_template(), channel, simulation=True, cache=cache, provider=provider)
        )

        assert result.outcome == Outcome.IN_DESIRED_STATE
        assert result.planned_actions == []


class TestSequentialFailure:
    """A failing sub-target stops the sequence."""

    def test_failure_on_b_skips_c(self, channel, make_target, cache, provider):
        target = make_target({"A": False, "B": False, "C": False})
        target.fail_on = "B"
        target.attach(channel)
        template = site_template(sub_targets=("A", "B", "C"))

        with pytest.raises(ExecutionFailed) as exc_info:
            asyncio.run(reconcile(template, channel, cache=cache, provider=provider))

        assert configure_labels(channel) == ["script:configure:A", "script:configure:B"]
        result = exc_info.value.result
        assert result.outcome == Outcome.FAILED
        assert result.state == EngineState.FAILED
        assert result.failed_sub_target == "B"
        assert result.configured_sub_targets == ["A"]
        assert result.configuration.configured is False
        assert result.configuration.sub_target_status["B"] is False

    def test_failure_carries_job_log(self, channel, make_target, cache, provider):
        target = make_target({"A": False})
        target.fail_on = "A"
        target.attach(channel)

        with pytest.raises(ExecutionFailed) as exc_info:
            asyncio.run(reconcile(site_template(sub_targets=("A",)), channel, cache=cache, provider=provider))

        assert exc_info.value.exit_code == 1
        assert "[error] could not configure A" in exc_info.value.log_lines

    def test_sub_targets_run_in_discovery_order(self, channel, make_target, cache, provider):
        make_target({"C": False, "A": False, "B": False}).attach(channel)
        template = site_template(sub_targets=None)

        asyncio.run(reconcile(template, channel, cache=cache, provider=provider))

        assert configure_labels(channel) == [
            "script:configure:C",
            "script:configure:A",
            "script:configure:B",
        ]

    def test_collect_contract_violation_fails_run(self, channel, cache, provider):
        channel.on("script:collect", lambda job, emitter: {"subTargets": {}})

        with pytest.raises(MissingOutput) as exc_info:
            asyncio.run(reconcile(site_template(), channel, cache=cache, provider=provider))

        assert exc_info.value.result.outcome == Outcome.FAILED
        assert exc_info.value.result.comparison is None


class TestVerification:
    """Post-configure verification."""

    def test_drift_after_configure(self, channel, make_target, cache, provider, caplog):
        target = make_target({"cfgA": False})
        target.apply = False
        target.attach(channel)

        result = asyncio.run(reconcile(site_template(), channel, cache=cache, provider=provider))

        assert result.outcome == Outcome.CONFIGURED_WITH_DRIFT
        assert result.drift.unsatisfied == ("cfgA",)
        assert "Drift after configuring" in caplog.text


class TestSecrets:
    """Encrypted values never reach the log."""

    def secret_template(self) -> ScriptConfiguration:
        return ScriptConfiguration(
            configuration_key="db",
            collect_script="Get-Db",
            configure_script="Set-Db",
            secret_properties={"password": "hunter2"},
        )

    def attach(self, channel):
        channel.on(
            "script:collect",
            lambda job, emitter: {"exists": True, "properties": {"password": "old-secret"}},
        )
        channel.on("script:configure:", lambda job, emitter: None)

    def test_simulation_log_masks_secrets(self, channel, cache, provider, caplog):
        self.attach(channel)
        caplog.set_level(logging.DEBUG)

        result = asyncio.run(
            reconcile(self.secret_template(), channel, simulation=True, cache=cache, provider=provider)
        )

        assert result.outcome == Outcome.WOULD_CONFIGURE
        assert "[db] secret_properties: differs (hidden)" in caplog.text
        assert "hunter2" not in caplog.text
        assert "old-secret" not in caplog.text

    def test_drift_log_masks_secrets(self, channel, cache, provider, caplog):
        self.attach(channel)
        caplog.set_level(logging.DEBUG)

        result = asyncio.run(reconcile(self.secret_template(), channel, cache=cache, provider=provider))

        assert result.outcome == Outcome.CONFIGURED_WITH_DRIFT
        assert "Drift after configuring: secret_properties: differs (hidden)" in caplog.text
        assert "hunter2" not in caplog.text
        assert "old-secret" not in caplog.text


class TestValidation:
    """Malformed templates never reach the target."""

    def test_missing_collect_script(self, channel, cache, provider):
        result = asyncio.run(
            reconcile(site_template(collect_script=None), channel, cache=cache, provider=provider)
        )

        assert result.outcome == Outcome.VALIDATION_FAILED
        assert result.state == EngineState.FAILED
        assert channel.submitted == []
        assert "collect script missing" in result.error

    def test_missing_key(self, channel, cache, provider):
        result = asyncio.run(
            reconcile(site_template(configuration_key=""), channel, cache=cache, provider=provider)
        )

        assert result.outcome == Outcome.VALIDATION_FAILED
        assert channel.submitted == []

    def test_validation_not_suppressed_by_simulation(self, channel, cache, provider):
        result = asyncio.run(
            reconcile(
                site_template(configure_script=None),
                channel,
                simulation=True,
                cache=cache,
                provider=provider,
            )
        )

        assert result.outcome == Outcome.VALIDATION_FAILED


class TestCancellation:
    """Cancellation is an outcome, not an error."""

    def test_cancel_mid_sequence_stops_remaining(self, channel, make_target, cache, provider):
        target = make_target({"A": False, "B": False, "C": False})
        target.attach(channel)
        token = CancellationToken()

        def configure_then_cancel(job, emitter):
            token.cancel()
            return target.configure(job, emitter)

        channel.on("script:configure:A", configure_then_cancel)
        template = site_template(sub_targets=("A", "B", "C"))

        result = asyncio.run(
            reconcile(template, channel, cancellation=token, cache=cache, provider=provider)
        )

        assert result.outcome == Outcome.CANCELLED
        assert configure_labels(channel) == ["script:configure:A"]
        assert result.configured_sub_targets == ["A"]
        assert target.sub_targets["A"] is True

    def test_cancelled_before_start(self, channel, make_target, cache, provider):
        make_target({"cfgA": False}).attach(channel)
        token = CancellationToken()
        token.cancel()

        result = asyncio.run(
            reconcile(site_template(), channel, cancellation=token, cache=cache, provider=provider)
        )

        assert result.outcome == Outcome.CANCELLED
        assert channel.submitted == []


class TestRemoteEvents:
    """Remote log events reach the local log tagged with the key."""

    def test_remote_warning_is_logged(self, channel, make_target, cache, provider, caplog):
        target = make_target({"cfgA": True})

        def collect(job, emitter):
            emitter.log(LogLevel.WARNING, "disk almost full")
            return target.collect(job, emitter)

        channel.on("script:collect", collect)
        caplog.set_level(logging.INFO)

        asyncio.run(reconcile(site_template(), channel, cache=cache, provider=provider))

        assert any(
            r.levelno == logging.WARNING and r.getMessage() == "[site-A] disk almost full"
            for r in caplog.records
        )


class TestReconcileAll:
    """Independent templates reconcile concurrently."""

    def test_one_failure_does_not_abort_others(self, channel, make_target, cache, provider):
        good = make_target({"cfgA": False})
        bad = make_target({"cfgA": False})
        bad.fail_on = "cfgA"
        targets = {"Get-Good": good, "Get-Bad": bad}
        owners = {}

        def collect(job, emitter):
            target = targets[job.script_text]
            site = job.variables["properties"]["site"]
            owners[site] = target
            out = target.collect(job, emitter)
            out["properties"] = {"site": site}
            return out

        def configure(job, emitter):
            return owners[job.variables["properties"]["site"]].configure(job, emitter)

        channel.on("script:collect", collect)
        channel.on("script:configure:", configure)

        templates = [
            site_template(configuration_key="bad", collect_script="Get-Bad", properties={"site": "bad"}),
            site_template(configuration_key="good", collect_script="Get-Good", properties={"site": "good"}),
        ]

        results = asyncio.run(reconcile_all(templates, channel, cache=cache, provider=provider))

        assert [r.key for r in results] == ["bad", "good"]
        assert results[0].outcome == Outcome.FAILED
        assert results[1].outcome == Outcome.CONFIGURED


class TestOutcomes:
    """Exit codes and severity."""

    def test_exit_codes(self):
        assert Outcome.IN_DESIRED_STATE.exit_code == 0
        assert Outcome.CONFIGURED.exit_code == 0
        assert Outcome.WOULD_CONFIGURE.exit_code == 0
        assert Outcome.FAILED.exit_code == 1
        assert Outcome.VALIDATION_FAILED.exit_code == 2
        assert Outcome.CONFIGURED_WITH_DRIFT.exit_code == 3
        assert Outcome.CANCELLED.exit_code == 130

    def test_worst_outcome(self):
        assert worst_outcome([]) == Outcome.IN_DESIRED_STATE
        assert worst_outcome([Outcome.CONFIGURED, Outcome.FAILED, Outcome.IN_DESIRED_STATE]) == Outcome.FAILED
        assert worst_outcome([Outcome.CONFIGURED_WITH_DRIFT, Outcome.CONFIGURED]) == Outcome.CONFIGURED_WITH_DRIFT
