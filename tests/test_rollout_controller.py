"""Tests for the progressive rollout controller."""

import threading

import pytest

from src.rollout.config import TERMINAL_PHASES, Environment, RolloutConfig, RolloutPhase
from src.rollout.controller import TRANSITIONS, RolloutController
from src.rollout.exceptions import (
    RegistrationError,
    RolloutInProgressError,
    ValidationError,
)
from src.rollout.health import HealthAggregator
from src.rollout.history import ReleaseHistory
from src.rollout.locks import TargetLockRegistry
from tests.fakes import (
    InstantCancellationToken,
    RecordingNotifier,
    RecordingRegistrar,
    RecordingTransport,
    ScriptedProbe,
    healthy_probes,
)


def fail_at_production(percent):
    def _fail(call, target):
        return (
            target.environment == Environment.PRODUCTION
            and target.traffic_percent == percent
        )
    return _fail


class RolloutHarness:
    """Builds controllers around in-memory collaborators."""

    def setup_method(self):
        self.transport = RecordingTransport()
        self.probes = healthy_probes()
        self.token = InstantCancellationToken()
        self.notifier = RecordingNotifier()
        self.registrar = RecordingRegistrar()
        self.locks = TargetLockRegistry()

    def make_controller(self, config=None, **kwargs):
        params = dict(
            config=config or RolloutConfig(),
            transport=self.transport,
            aggregator=HealthAggregator(self.probes, probe_timeout=5.0),
            registrar=self.registrar,
            notifier=self.notifier,
            locks=self.locks,
            cancellation=self.token,
        )
        params.update(kwargs)
        return RolloutController(**params)

    def set_probe(self, name, **kwargs):
        index = [p.name for p in self.probes].index(name)
        self.probes[index] = ScriptedProbe(name, **kwargs)
        return self.probes[index]


# ── Happy path ───────────────────────────────────────────────────────


class TestSuccessfulRollout(RolloutHarness):
    def test_all_healthy_rollout_succeeds(self):
        outcome = self.make_controller().run("1.2.3")
        assert outcome.success is True
        assert outcome.version == "1.2.3"
        assert outcome.error is None
        assert outcome.failed_phase is None
        assert outcome.completed_steps == (25, 50, 75, 100)

    def test_deploy_calls_follow_canary_then_steps(self):
        self.make_controller().run("1.2.3")
        assert self.transport.calls == [
            ("canary", "1.2.3", 10),
            ("production", "1.2.3", 25),
            ("production", "1.2.3", 50),
            ("production", "1.2.3", 75),
            ("production", "1.2.3", 100),
        ]

    def test_canary_observations_and_gates(self):
        self.make_controller().run("1.2.3")
        app = self.probes[0]
        # 8 canary observations plus one gate per step
        assert app.calls == 12
        canary_targets = [t for t in app.targets if t.environment == Environment.CANARY]
        assert len(canary_targets) == 8
        assert all(t.traffic_percent == 10 for t in canary_targets)

    def test_waits_cover_canary_interval_and_step_delays(self):
        self.make_controller().run("1.2.3")
        # No delay after the final 100% gate
        assert self.token.waits == [15] * 8 + [300] * 3

    def test_version_registered_once(self):
        self.make_controller().run("1.2.3")
        assert self.registrar.versions == ["1.2.3"]

    def test_exactly_one_notification(self):
        outcome = self.make_controller().run("1.2.3")
        assert self.notifier.outcomes == [outcome]

    def test_custom_steps(self):
        config = RolloutConfig(
            canary_percent=5,
            canary_duration_sec=30,
            canary_interval_sec=10,
            rollout_steps=(10, 100),
            inter_step_delay_sec=60,
        )
        outcome = self.make_controller(config).run("3.0.0")
        assert outcome.success is True
        assert self.transport.calls[0] == ("canary", "3.0.0", 5)
        assert self.transport.production_percents == [10, 100]
        assert self.token.waits == [10, 10, 10, 60]

    def test_state_cleared_after_run(self):
        controller = self.make_controller()
        controller.run("1.2.3")
        assert controller.state is None

    def test_phase_observed_during_deploys(self):
        phases = []
        controller = None

        class PhaseTransport(RecordingTransport):
            def deploy(inner, environment, version, traffic_percent):
                phases.append(controller.state.phase)
                super().deploy(environment, version, traffic_percent)

        controller = self.make_controller(transport=PhaseTransport())
        controller.run("1.2.3")
        assert phases == [RolloutPhase.CANARY_DEPLOYING] + [RolloutPhase.STAGED_ROLLOUT] * 4

    def test_run_twice_gives_independent_outcomes(self):
        controller = self.make_controller()
        first = controller.run("1.2.3")
        second = controller.run("1.2.3")
        assert first.success and second.success
        assert first.run_id != second.run_id
        assert first.completed_steps == second.completed_steps
        assert len(self.transport.calls) == 10
        assert self.registrar.versions == ["1.2.3", "1.2.3"]
        assert controller.state is None

    def test_accepts_version_with_suffix(self):
        outcome = self.make_controller().run("1.2.3-beta.1")
        assert outcome.success is True
        assert outcome.version == "1.2.3-beta.1"


# ── Forward failures ────────────────────────────────────────────────


class TestRolloutFailures(RolloutHarness):
    def test_health_gate_failure_at_50_percent(self):
        self.set_probe("database", fail_when=fail_at_production(50))
        outcome = self.make_controller().run("2.0.0")
        assert outcome.success is False
        assert outcome.version == "2.0.0"
        assert outcome.error == "health check failed at 50%"
        assert outcome.detail == "database check failed: simulated failure"
        assert outcome.failed_phase == RolloutPhase.HEALTH_GATE
        assert outcome.completed_steps == (25,)
        assert outcome.failed_probe == "database"
        assert outcome.to_dict()["failedProbe"] == "database"

    def test_no_deploys_after_failed_gate(self):
        self.set_probe("database", fail_when=fail_at_production(50))
        self.make_controller().run("2.0.0")
        assert self.transport.production_percents == [25, 50]
        assert self.registrar.versions == []

    def test_failed_gate_stops_at_failing_probe(self):
        self.set_probe("database", fail_when=fail_at_production(50))
        self.make_controller().run("2.0.0")
        perf = self.probes[3]
        assert all(t.traffic_percent != 50 for t in perf.targets
                   if t.environment == Environment.PRODUCTION)

    def test_canary_failure_at_third_observation(self):
        app = self.set_probe(
            "application",
            fail_when=lambda call, target: target.environment == Environment.CANARY and call == 3,
        )
        outcome = self.make_controller().run("2.0.0")
        assert outcome.success is False
        assert outcome.error == "canary health failure"
        assert outcome.detail.startswith("observation 3/8 failed")
        assert outcome.failed_phase == RolloutPhase.CANARY_MONITORING
        assert app.calls == 3
        assert outcome.failed_probe == "application"
        assert self.token.waits == [15, 15, 15]
        assert self.transport.production_percents == []

    def test_canary_deploy_error(self):
        self.transport.fail_on.add(("canary", 10))
        outcome = self.make_controller().run("2.0.0")
        assert outcome.error == "canary deploy error"
        assert "simulated failure" in outcome.detail
        assert outcome.failed_phase == RolloutPhase.CANARY_DEPLOYING
        assert self.probes[0].calls == 0

    def test_production_deploy_error(self):
        self.transport.fail_on.add(("production", 75))
        outcome = self.make_controller().run("2.0.0")
        assert outcome.error == "production deploy error at 75%"
        assert outcome.failed_phase == RolloutPhase.STAGED_ROLLOUT
        assert outcome.completed_steps == (25, 50)
        assert self.transport.production_percents == [25, 50, 75]

    def test_unexpected_transport_exception_is_wrapped(self):
        class ExplodingTransport(RecordingTransport):
            def deploy(inner, environment, version, traffic_percent):
                if environment == Environment.PRODUCTION:
                    raise RuntimeError("connection reset")

        outcome = self.make_controller(transport=ExplodingTransport()).run("2.0.0")
        assert outcome.error == "production deploy error at 25%"
        assert "connection reset" in outcome.detail

    def test_invalid_version_fails_validation(self):
        outcome = self.make_controller().run("not-a-version")
        assert outcome.success is False
        assert outcome.version is None
        assert outcome.failed_phase == RolloutPhase.VALIDATING
        assert "Invalid version format" in outcome.error
        assert self.transport.calls == []
        assert self.probes[0].calls == 0

    def test_registration_failure_keeps_success(self):
        self.registrar.error = RegistrationError("Update server rejected 1.2.3: HTTP 500")
        outcome = self.make_controller().run("1.2.3")
        assert outcome.success is True
        assert outcome.registration_error == "Update server rejected 1.2.3: HTTP 500"

    def test_unexpected_registration_error_keeps_success(self):
        self.registrar.error = RuntimeError("boom")
        outcome = self.make_controller().run("1.2.3")
        assert outcome.success is True
        assert outcome.registration_error == "RuntimeError: boom"

    def test_failure_notified_once(self):
        self.set_probe("security", fail_when=fail_at_production(25))
        outcome = self.make_controller().run("2.0.0")
        assert self.notifier.outcomes == [outcome]

    def test_broken_notifier_does_not_change_outcome(self):
        class BrokenNotifier:
            def notify(self, outcome):
                raise RuntimeError("smtp down")

        outcome = self.make_controller(notifier=BrokenNotifier()).run("1.2.3")
        assert outcome.success is True

    def test_invalid_config_rejected_at_construction(self):
        with pytest.raises(ValidationError, match="must end at 100"):
            self.make_controller(RolloutConfig(rollout_steps=(25, 50)))


# ── Rollback ─────────────────────────────────────────────────────────


class TestAutomaticRollback(RolloutHarness):
    def setup_method(self):
        super().setup_method()
        self.config = RolloutConfig(auto_rollback_enabled=True)

    def test_rollback_to_explicit_prior_version(self):
        self.set_probe("database", fail_when=fail_at_production(50))
        outcome = self.make_controller(self.config).run("2.0.0", rollback_version="1.9.0")
        assert outcome.success is False
        assert outcome.error == "health check failed at 50%"
        assert outcome.rollback_performed is True
        assert outcome.rollback_failed is None
        assert outcome.rollback_version == "1.9.0"
        assert self.transport.calls[-1] == ("production", "1.9.0", 100)
        assert self.transport.production_percents == [25, 50, 100]

    def test_rollback_to_last_known_good(self, tmp_path):
        history = ReleaseHistory(tmp_path)
        history.record_success("production", "1.9.0")
        self.set_probe("database", fail_when=fail_at_production(50))

        outcome = self.make_controller(self.config, history=history).run("2.0.0")
        assert outcome.rollback_performed is True
        assert outcome.rollback_version == "1.9.0"
        assert history.last_known_good("production") == "1.9.0"
        statuses = [r["status"] for r in history.releases("production")]
        assert statuses == ["restored", "failed", "succeeded"]

    def test_no_rollback_when_disabled(self):
        self.set_probe("database", fail_when=fail_at_production(50))
        outcome = self.make_controller().run("2.0.0", rollback_version="1.9.0")
        assert outcome.rollback_performed is None
        assert all(v != "1.9.0" for _, v, _ in self.transport.calls)

    def test_no_rollback_without_known_version(self):
        self.set_probe("database", fail_when=fail_at_production(50))
        outcome = self.make_controller(self.config).run("2.0.0")
        assert outcome.rollback_performed is None
        assert outcome.rollback_failed is None
        assert self.transport.production_percents == [25, 50]

    def test_no_rollback_when_version_never_selected(self):
        outcome = self.make_controller(self.config).run("bogus", rollback_version="1.9.0")
        assert outcome.failed_phase == RolloutPhase.VALIDATING
        assert outcome.rollback_performed is None
        assert self.transport.calls == []

    def test_canary_failure_rolls_back(self):
        self.set_probe(
            "application",
            fail_when=lambda call, target: target.environment == Environment.CANARY,
        )
        outcome = self.make_controller(self.config).run("2.0.0", rollback_version="1.9.0")
        assert outcome.error == "canary health failure"
        assert outcome.rollback_performed is True
        assert self.transport.production_percents == [100]

    def test_rollback_verification_failure(self):
        self.set_probe(
            "performance",
            fail_when=lambda call, target: (
                target.environment == Environment.PRODUCTION and target.traffic_percent >= 50
            ),
        )
        outcome = self.make_controller(self.config).run("2.0.0", rollback_version="1.9.0")
        assert outcome.success is False
        assert outcome.error == "health check failed at 50%"
        assert outcome.rollback_failed is True
        assert outcome.rollback_performed is None
        assert "Rollback verification failed" in outcome.rollback_error

    def test_rollback_deploy_failure(self):
        self.set_probe("database", fail_when=fail_at_production(50))
        self.transport.fail_on.add(("production", 100, "1.9.0"))
        outcome = self.make_controller(self.config).run("2.0.0", rollback_version="1.9.0")
        assert outcome.rollback_failed is True
        assert "simulated failure" in outcome.rollback_error

    def test_failed_rollback_keeps_last_known_good(self, tmp_path):
        history = ReleaseHistory(tmp_path)
        history.record_success("production", "1.9.0")
        self.set_probe("database", fail_when=fail_at_production(50))
        self.transport.fail_on.add(("production", 100, "1.9.0"))

        self.make_controller(self.config, history=history).run("2.0.0")
        assert history.last_known_good("production") == "1.9.0"
        assert history.releases("production")[0]["status"] == "failed"

    def test_rollback_recorded_by_manager(self):
        self.set_probe("database", fail_when=fail_at_production(50))
        controller = self.make_controller(self.config)
        controller.run("2.0.0", rollback_version="1.9.0")
        actions = controller.rollback_manager.list_rollbacks()
        assert len(actions) == 1
        assert actions[0].from_version == "2.0.0"
        assert actions[0].reason == "health check failed at 50%"


# ── Cancellation ─────────────────────────────────────────────────────


class TestCancellation(RolloutHarness):
    def test_cancel_during_inter_step_delay(self):
        # 8 canary waits, then the wait after 25% and the one after 50%
        self.token = InstantCancellationToken(cancel_after_waits=10)
        outcome = self.make_controller().run("2.0.0")
        assert outcome.success is False
        assert outcome.cancelled is True
        assert outcome.error == "rollout cancelled"
        assert outcome.failed_phase == RolloutPhase.ABORTED
        assert outcome.detail == "cancelled during health_gate"
        assert outcome.completed_steps == (25, 50)
        assert self.transport.production_percents == [25, 50]
        assert self.registrar.versions == []

    def test_cancel_during_canary_monitoring(self):
        self.token = InstantCancellationToken(cancel_after_waits=2)
        outcome = self.make_controller().run("2.0.0")
        assert outcome.cancelled is True
        assert outcome.detail == "cancelled during canary_monitoring"
        assert self.probes[0].calls == 1

    def test_cancel_before_start(self):
        self.token.cancel("operator stop")
        outcome = self.make_controller().run("2.0.0")
        assert outcome.cancelled is True
        assert self.transport.calls == []

    def test_cancelled_run_never_rolls_back(self):
        self.token = InstantCancellationToken(cancel_after_waits=10)
        config = RolloutConfig(auto_rollback_enabled=True)
        outcome = self.make_controller(config).run("2.0.0", rollback_version="1.9.0")
        assert outcome.rollback_performed is None
        assert all(v != "1.9.0" for _, v, _ in self.transport.calls)

    def test_cancelled_run_is_notified(self):
        self.token = InstantCancellationToken(cancel_after_waits=1)
        outcome = self.make_controller().run("2.0.0")
        assert self.notifier.outcomes == [outcome]

    def test_next_run_after_cancel_proceeds(self):
        self.token = InstantCancellationToken(cancel_after_waits=1)
        controller = self.make_controller()
        assert controller.run("2.0.0").cancelled is True
        assert self.token.cancelled is False

        self.token.cancel_after_waits = None
        outcome = controller.run("2.0.0")
        assert outcome.success is True
        assert outcome.completed_steps == (25, 50, 75, 100)

    def test_cancel_before_start_aborts_only_that_run(self):
        self.token.cancel("operator stop")
        controller = self.make_controller()
        assert controller.run("2.0.0").cancelled is True
        assert controller.run("2.0.0").success is True


# ── Single-flight ───────────────────────────────────────────────────


class TestSingleFlight(RolloutHarness):
    def test_rejects_run_while_target_held(self):
        controller = self.make_controller()
        assert self.locks.try_acquire("production")
        with pytest.raises(RolloutInProgressError):
            controller.run("1.2.3")
        assert self.transport.calls == []
        assert self.notifier.outcomes == []

    def test_other_target_unaffected(self):
        self.locks.try_acquire("production")
        outcome = self.make_controller(target_key="staging-eu").run("1.2.3")
        assert outcome.success is True

    def test_concurrent_run_rejected(self):
        entered = threading.Event()
        release = threading.Event()

        class BlockingTransport(RecordingTransport):
            def deploy(inner, environment, version, traffic_percent):
                super().deploy(environment, version, traffic_percent)
                if environment == Environment.CANARY:
                    entered.set()
                    release.wait(timeout=5)

        transport = BlockingTransport()
        first = self.make_controller(transport=transport)
        second = self.make_controller(transport=transport)
        results = []
        worker = threading.Thread(target=lambda: results.append(first.run("1.2.3")))
        worker.start()
        try:
            assert entered.wait(timeout=5)
            with pytest.raises(RolloutInProgressError):
                second.run("1.2.4")
        finally:
            release.set()
            worker.join(timeout=5)

        assert results[0].success is True
        assert all(v == "1.2.3" for _, v, _ in transport.calls)
        assert not self.locks.is_active("production")

    def test_slot_released_after_failure(self):
        self.transport.fail_on.add(("canary", 10))
        controller = self.make_controller()
        controller.run("1.2.3")
        assert not self.locks.is_active("production")


# ── State machine & reporting ───────────────────────────────────────


class TestTransitions:
    def test_terminal_phases_have_no_exits(self):
        for phase in TERMINAL_PHASES - {RolloutPhase.FAILED}:
            assert TRANSITIONS[phase] == frozenset()

    def test_failed_only_leads_to_rollback(self):
        assert TRANSITIONS[RolloutPhase.FAILED] == frozenset({RolloutPhase.ROLLING_BACK})

    def test_every_working_phase_can_fail(self):
        working = [
            RolloutPhase.VALIDATING,
            RolloutPhase.CANARY_DEPLOYING,
            RolloutPhase.CANARY_MONITORING,
            RolloutPhase.STAGED_ROLLOUT,
            RolloutPhase.HEALTH_GATE,
            RolloutPhase.REGISTERING_UPDATE,
        ]
        for phase in working:
            assert RolloutPhase.FAILED in TRANSITIONS[phase]

    def test_rollout_cannot_skip_canary(self):
        assert RolloutPhase.STAGED_ROLLOUT not in TRANSITIONS[RolloutPhase.VALIDATING]
        assert TRANSITIONS[RolloutPhase.IDLE] == frozenset({RolloutPhase.VALIDATING})

    def test_every_phase_listed(self):
        assert set(TRANSITIONS) == set(RolloutPhase)


class TestReporting(RolloutHarness):
    def test_summary(self):
        controller = self.make_controller()
        controller.run("1.2.3")
        self.transport.fail_on.add(("canary", 10))
        controller.run("1.2.4")
        summary = controller.get_summary()
        assert summary["total"] == 2
        assert summary["succeeded"] == 1
        assert summary["failed"] == 1
        assert summary["aborted"] == 0
        assert summary["success_rate"] == 0.5

    def test_history_newest_first(self):
        controller = self.make_controller()
        controller.run("1.2.3")
        controller.run("1.2.4")
        history = controller.get_history()
        assert [o.version for o in history] == ["1.2.4", "1.2.3"]

    def test_reset(self):
        controller = self.make_controller()
        controller.run("1.2.3")
        controller.reset()
        assert controller.get_summary()["total"] == 0

    def test_keeps_only_recent_outcomes(self):
        controller = self.make_controller(max_outcomes=2)
        for version in ("1.2.3", "1.2.4", "1.2.5"):
            controller.run(version)
        assert [o.version for o in controller.get_history()] == ["1.2.5", "1.2.4"]
        assert controller.get_summary()["total"] == 2

    def test_success_recorded_in_release_history(self, tmp_path):
        history = ReleaseHistory(tmp_path)
        self.make_controller(history=history).run("1.2.3")
        assert history.last_known_good("production") == "1.2.3"
