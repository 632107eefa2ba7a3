"""Progressive Rollout: Controller.

Drives one version through canary, staged production traffic and update
registration as an explicit state machine, and hands a failed run to the
rollback manager when automatic rollback is authorized.
"""

import logging
import threading
import time
from typing import Dict, FrozenSet, List, Optional, Union

from src.logging_config.context import RunContext
from src.logging_config.performance import PerformanceTimer

from .cancellation import CancellationToken
from .canary import CanaryMonitor
from .config import Environment, RolloutConfig, RolloutPhase
from .exceptions import (
    ErrorCode,
    HealthCheckFailure,
    InvalidTransition,
    MonitoringFailure,
    RegistrationError,
    RolloutCancelled,
    RolloutError,
    TransportError,
    ValidationError,
)
from .health import HealthAggregator
from .history import ReleaseHistory
from .locks import DEFAULT_LOCK_REGISTRY, TargetLockRegistry
from .models import DeploymentTarget, RolloutOutcome, RolloutState, Version, utcnow
from .notifier import Notifier
from .registrar import UpdateRegistrar
from .rollback import RollbackAction, RollbackManager
from .transport import DeploymentTransport, SerializedTransport

logger = logging.getLogger(__name__)

P = RolloutPhase

TRANSITIONS: Dict[RolloutPhase, FrozenSet[RolloutPhase]] = {
    P.IDLE: frozenset({P.VALIDATING}),
    P.VALIDATING: frozenset({P.CANARY_DEPLOYING, P.FAILED, P.ABORTED}),
    P.CANARY_DEPLOYING: frozenset({P.CANARY_MONITORING, P.FAILED, P.ABORTED}),
    P.CANARY_MONITORING: frozenset({P.STAGED_ROLLOUT, P.FAILED, P.ABORTED}),
    P.STAGED_ROLLOUT: frozenset({P.HEALTH_GATE, P.FAILED, P.ABORTED}),
    P.HEALTH_GATE: frozenset(
        {P.STAGED_ROLLOUT, P.REGISTERING_UPDATE, P.FAILED, P.ABORTED}
    ),
    P.REGISTERING_UPDATE: frozenset({P.SUCCEEDED, P.FAILED}),
    P.FAILED: frozenset({P.ROLLING_BACK}),
    P.ROLLING_BACK: frozenset({P.ROLLED_BACK, P.ROLLBACK_FAILED}),
    P.SUCCEEDED: frozenset(),
    P.ROLLED_BACK: frozenset(),
    P.ROLLBACK_FAILED: frozenset(),
    P.ABORTED: frozenset(),
}


class _StepFailed(Exception):
    """A step ended the run; ``reason`` is the operator-facing summary."""

    def __init__(
        self,
        reason: str,
        detail: Optional[str] = None,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        failed_probe: Optional[str] = None,
    ):
        super().__init__(reason)
        self.reason = reason
        self.detail = detail
        self.error_code = error_code
        self.failed_probe = failed_probe

    @classmethod
    def from_health(
        cls, exc: Union[HealthCheckFailure, MonitoringFailure]
    ) -> "_StepFailed":
        if isinstance(exc, MonitoringFailure):
            reason = "canary health failure"
        else:
            reason = f"health check failed at {exc.traffic_percent}%"
        return cls(reason, exc.message, exc.error_code, failed_probe=exc.probe_name)


class RolloutController:
    """Runs progressive rollouts against one deployment target.

    Only one run per target key may be in flight at a time (across all
    controllers sharing a lock registry); a concurrent ``run()`` is rejected
    with RolloutInProgressError before any side effect.
    """

    def __init__(
        self,
        config: RolloutConfig,
        transport: DeploymentTransport,
        aggregator: HealthAggregator,
        monitor: Optional[CanaryMonitor] = None,
        registrar: Optional[UpdateRegistrar] = None,
        notifier: Optional[Notifier] = None,
        rollback_manager: Optional[RollbackManager] = None,
        history: Optional[ReleaseHistory] = None,
        target_key: str = "production",
        locks: Optional[TargetLockRegistry] = None,
        cancellation: Optional[CancellationToken] = None,
        max_outcomes: int = 100,
    ):
        self._config = config.validate()
        self.target_key = target_key
        self._locks = locks or DEFAULT_LOCK_REGISTRY
        self._transport = SerializedTransport(
            transport, self._locks.transport_lock(target_key)
        )
        self._aggregator = aggregator
        self._monitor = monitor or CanaryMonitor(aggregator)
        self._registrar = registrar
        self._notifier = notifier
        self._rollback_manager = rollback_manager or RollbackManager(
            self._transport, aggregator
        )
        self._history = history
        self._cancellation = cancellation or CancellationToken()
        self._state: Optional[RolloutState] = None
        self._outcomes: List[RolloutOutcome] = []
        self._max_outcomes = max_outcomes
        self._lock = threading.Lock()

    @property
    def config(self) -> RolloutConfig:
        return self._config

    @property
    def cancellation(self) -> CancellationToken:
        return self._cancellation

    @property
    def state(self) -> Optional[RolloutState]:
        """State of the in-flight run, or None when idle."""
        return self._state

    @property
    def rollback_manager(self) -> RollbackManager:
        return self._rollback_manager

    def run(
        self,
        version: Union[str, Version],
        rollback_version: Optional[str] = None,
    ) -> RolloutOutcome:
        """Roll ``version`` out and return the terminal outcome.

        Args:
            version: Version to deploy.
            rollback_version: Version to restore if the run fails. Defaults
                to the last-known-good version from the release history.

        Raises:
            RolloutInProgressError: another run holds this target.
        """
        with self._locks.single_flight(self.target_key):
            state = RolloutState()
            self._state = state
            try:
                with RunContext(
                    run_id=state.run_id, target=self.target_key, version=str(version)
                ):
                    outcome = self._execute(state, version, rollback_version)
            finally:
                self._state = None

        with self._lock:
            self._outcomes.append(outcome)
            del self._outcomes[:-self._max_outcomes]
        if outcome.cancelled:
            # A stop applies to the run it interrupted, not to later runs.
            self._cancellation.reset()
        self._notify(outcome)
        return outcome

    # ── Pipeline ─────────────────────────────────────────────────────

    def _execute(
        self,
        state: RolloutState,
        version: Union[str, Version],
        rollback_version: Optional[str],
    ) -> RolloutOutcome:
        started = time.monotonic()
        logger.info("Starting production rollout of %s to %s", version, self.target_key)
        try:
            self._validate(state, version)
            self._canary(state)
            self._staged_rollout(state)
            registration_error = self._register(state)
            self._transition(state, P.SUCCEEDED)
        except RolloutCancelled:
            interrupted = state.phase
            self._transition(state, P.ABORTED)
            logger.warning("Rollout aborted during %s", interrupted.value)
            return self._outcome(
                state,
                started,
                success=False,
                error="rollout cancelled",
                detail=f"cancelled during {interrupted.value}",
                failed_phase=P.ABORTED,
            )
        except _StepFailed as exc:
            return self._fail(state, started, exc, rollback_version)
        except (HealthCheckFailure, MonitoringFailure) as exc:
            return self._fail(
                state, started, _StepFailed.from_health(exc), rollback_version
            )
        except RolloutError as exc:
            logger.critical("Rollout stopped by internal error: %s", exc.message)
            return self._fail(
                state,
                started,
                _StepFailed(f"internal error: {exc.message}", error_code=exc.error_code),
                rollback_version,
            )
        except Exception as exc:
            logger.exception("Unhandled error during rollout")
            return self._fail(
                state,
                started,
                _StepFailed(f"internal error: {type(exc).__name__}: {exc}"),
                rollback_version,
            )

        duration = time.monotonic() - started
        logger.info(
            "Production rollout of %s completed successfully in %.2f seconds",
            state.version, duration,
        )
        if self._history is not None:
            self._history.record_success(self.target_key, str(state.version))
        return self._outcome(
            state, started, success=True, registration_error=registration_error
        )

    def _validate(self, state: RolloutState, version: Union[str, Version]) -> None:
        self._transition(state, P.VALIDATING)
        try:
            state.version = version if isinstance(version, Version) else Version.parse(version)
        except ValidationError as exc:
            raise _StepFailed(exc.message, error_code=exc.error_code) from exc
        logger.info("Production deployment version: %s", state.version)

    def _canary(self, state: RolloutState) -> None:
        cfg = self._config
        self._cancellation.check()
        self._transition(state, P.CANARY_DEPLOYING)
        state.target = DeploymentTarget(Environment.CANARY, cfg.canary_percent)
        logger.info("Starting canary deployment (%d%% traffic)", cfg.canary_percent)
        try:
            self._transport.deploy(Environment.CANARY, state.version, cfg.canary_percent)
        except TransportError as exc:
            raise _StepFailed("canary deploy error", exc.message, exc.error_code) from exc

        self._transition(state, P.CANARY_MONITORING)
        result = self._monitor.observe(
            state.target,
            cfg.canary_duration_sec,
            cfg.canary_interval_sec,
            cancellation=self._cancellation,
        )
        if not result.success:
            raise MonitoringFailure(
                result.error,
                probe_name=result.failed_probe_name,
                observation=result.failed_observation,
            )
        logger.info("Canary deployment successful")

    def _staged_rollout(self, state: RolloutState) -> None:
        cfg = self._config
        for percent in cfg.rollout_steps:
            self._cancellation.check()
            self._transition(state, P.STAGED_ROLLOUT)
            state.target = DeploymentTarget(Environment.PRODUCTION, percent)
            logger.info("Rolling out to %d%% of production traffic", percent)
            try:
                self._transport.deploy(Environment.PRODUCTION, state.version, percent)
            except TransportError as exc:
                raise _StepFailed(
                    f"production deploy error at {percent}%", exc.message, exc.error_code
                ) from exc

            self._transition(state, P.HEALTH_GATE)
            with PerformanceTimer(f"health gate at {percent}%"):
                health = self._aggregator.check(
                    state.target, cancellation=self._cancellation
                )
            state.last_health = health
            if not health.success:
                raise HealthCheckFailure(
                    health.failed_probe_name,
                    health.failure_reason,
                    traffic_percent=percent,
                )
            state.completed_steps.append(percent)

            if percent < 100:
                logger.info(
                    "Waiting %d seconds before next rollout step",
                    cfg.inter_step_delay_sec,
                )
                self._cancellation.wait(cfg.inter_step_delay_sec)

    def _register(self, state: RolloutState) -> Optional[str]:
        self._transition(state, P.REGISTERING_UPDATE)
        if self._registrar is None:
            return None
        try:
            self._registrar.register_version(state.version)
        except RegistrationError as exc:
            logger.error("Auto-updater update failed: %s", exc.message)
            return exc.message
        except Exception as exc:
            logger.error("Auto-updater update failed: %s", exc, exc_info=True)
            return f"{type(exc).__name__}: {exc}"
        logger.info("Auto-updater updated successfully")
        return None

    # ── Failure & rollback ───────────────────────────────────────────

    def _fail(
        self,
        state: RolloutState,
        started: float,
        failure: _StepFailed,
        rollback_version: Optional[str],
    ) -> RolloutOutcome:
        failed_phase = state.phase
        self._transition(state, P.FAILED)
        logger.error(
            "Production deployment failed: %s%s",
            failure.reason,
            f" ({failure.detail})" if failure.detail else "",
        )
        selected = state.version
        if selected is not None and self._history is not None:
            self._history.record_failure(self.target_key, str(selected), failure.reason)

        prior = self._rollback_target(selected, rollback_version)
        if prior is None:
            return self._outcome(
                state,
                started,
                success=False,
                error=failure.reason,
                detail=failure.detail,
                failed_phase=failed_phase,
                failed_probe=failure.failed_probe,
            )

        self._transition(state, P.ROLLING_BACK)
        logger.warning("Initiating automatic rollback to %s", prior)
        action = self._rollback_manager.rollback(
            prior, from_version=str(selected), reason=failure.reason
        )
        return self._rolled_back(state, started, failure, failed_phase, action)

    def _rollback_target(
        self, selected: Optional[Version], rollback_version: Optional[str]
    ) -> Optional[str]:
        if selected is None or not self._config.auto_rollback_enabled:
            return None
        prior = rollback_version
        if prior is None and self._history is not None:
            prior = self._history.last_known_good(self.target_key)
        if prior is None:
            logger.warning(
                "Automatic rollback skipped: no known-good version for %s",
                self.target_key,
            )
        return prior

    def _rolled_back(
        self,
        state: RolloutState,
        started: float,
        failure: _StepFailed,
        failed_phase: RolloutPhase,
        action: RollbackAction,
    ) -> RolloutOutcome:
        if action.success:
            self._transition(state, P.ROLLED_BACK)
            if self._history is not None:
                self._history.record_rollback(self.target_key, action.to_version)
        else:
            self._transition(state, P.ROLLBACK_FAILED)
        return self._outcome(
            state,
            started,
            success=False,
            error=failure.reason,
            detail=failure.detail,
            failed_phase=failed_phase,
            failed_probe=failure.failed_probe,
            rollback_performed=True if action.success else None,
            rollback_failed=True if not action.success else None,
            rollback_version=action.to_version,
            rollback_error=action.error,
        )

    # ── Internal helpers ─────────────────────────────────────────────

    def _transition(self, state: RolloutState, phase: RolloutPhase) -> None:
        if phase not in TRANSITIONS[state.phase]:
            raise InvalidTransition(state.phase.value, phase.value)
        now = utcnow()
        logger.debug(
            "Phase %s -> %s", state.phase.value, phase.value,
            extra={"phase": phase.value},
        )
        state.phase = phase
        state.transitions.append((phase, now))
        state.elapsed_seconds = (now - state.started_at).total_seconds()

    def _outcome(
        self,
        state: RolloutState,
        started: float,
        success: bool,
        **fields,
    ) -> RolloutOutcome:
        return RolloutOutcome(
            success=success,
            version=str(state.version) if state.version is not None else None,
            timestamp=utcnow(),
            duration_seconds=round(time.monotonic() - started, 3),
            completed_steps=tuple(state.completed_steps),
            run_id=state.run_id,
            **fields,
        )

    def _notify(self, outcome: RolloutOutcome) -> None:
        if self._notifier is None:
            return
        try:
            self._notifier.notify(outcome)
        except Exception as exc:
            logger.error("Failed to send rollout notification: %s", exc, exc_info=True)

    # ── Reporting ────────────────────────────────────────────────────

    def get_history(self, limit: int = 10) -> List[RolloutOutcome]:
        """Most recent outcomes, newest first."""
        with self._lock:
            outcomes = list(reversed(self._outcomes))
        return outcomes[:limit]

    def get_summary(self) -> dict:
        """Return aggregate rollout statistics."""
        with self._lock:
            outcomes = list(self._outcomes)
        total = len(outcomes)
        succeeded = sum(1 for o in outcomes if o.success)
        aborted = sum(1 for o in outcomes if o.cancelled)
        rolled_back = sum(1 for o in outcomes if o.rollback_performed)
        rollback_failed = sum(1 for o in outcomes if o.rollback_failed)
        return {
            "total": total,
            "succeeded": succeeded,
            "failed": total - succeeded - aborted,
            "aborted": aborted,
            "rolled_back": rolled_back,
            "rollback_failed": rollback_failed,
            "success_rate": round(succeeded / total, 4) if total else 0.0,
        }

    def reset(self) -> None:
        """Clear recorded outcomes (for testing)."""
        with self._lock:
            self._outcomes.clear()
