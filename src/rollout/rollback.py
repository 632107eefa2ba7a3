"""Progressive Rollout: Emergency Rollback."""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Union

from .config import Environment
from .exceptions import RollbackFailure, TransportError
from .health import HealthAggregator
from .models import DeploymentTarget, Version, utcnow
from .transport import DeploymentTransport

logger = logging.getLogger(__name__)


@dataclass
class RollbackAction:
    """Record of a rollback operation."""

    rollback_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    from_version: str = ""
    to_version: str = ""
    reason: str = ""
    triggered_by: str = "auto"
    triggered_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    success: bool = False
    error: Optional[str] = None
    steps_completed: List[str] = field(default_factory=list)


class RollbackManager:
    """Restores a prior version at full production traffic and verifies it.

    A rollback is a single unstaged deploy at 100% followed by one health
    gate. It is never retried: a failure leaves the target unverified and is
    reported as the most severe outcome.
    """

    def __init__(
        self,
        transport: DeploymentTransport,
        aggregator: HealthAggregator,
        max_actions: int = 100,
    ):
        self._transport = transport
        self._aggregator = aggregator
        self._actions: Dict[str, RollbackAction] = {}
        self._max_actions = max_actions
        self._lock = threading.Lock()

    def rollback(
        self,
        prior_version: Union[str, Version],
        from_version: str = "",
        reason: str = "",
        triggered_by: str = "auto",
    ) -> RollbackAction:
        """Redeploy ``prior_version`` to production at 100% and re-verify health."""
        action = RollbackAction(
            from_version=from_version,
            to_version=str(prior_version),
            reason=reason,
            triggered_by=triggered_by,
        )
        with self._lock:
            self._actions[action.rollback_id] = action
            while len(self._actions) > self._max_actions:
                del self._actions[next(iter(self._actions))]

        logger.warning(
            "EMERGENCY ROLLBACK to version %s (from %s, reason: %s)",
            action.to_version, from_version or "unknown", reason or "unspecified",
        )
        try:
            version = (
                prior_version
                if isinstance(prior_version, Version)
                else Version.parse(prior_version)
            )
            self._transport.deploy(Environment.PRODUCTION, version, 100)
            action.steps_completed.append("deploy_prior_version")

            health = self._aggregator.check(
                DeploymentTarget(Environment.PRODUCTION, 100)
            )
            if not health.success:
                raise RollbackFailure(
                    f"Rollback verification failed: {health.error}"
                )
            action.steps_completed.append("verify_health")
            action.success = True
            logger.info(
                "Emergency rollback to %s completed successfully", action.to_version
            )
        except (RollbackFailure, TransportError) as exc:
            action.error = exc.message
        except Exception as exc:
            action.error = f"{type(exc).__name__}: {exc}"
        finally:
            action.completed_at = utcnow()

        if not action.success:
            logger.critical(
                "ROLLBACK FAILED: %s -> %s: %s. Target state is unverified, "
                "manual intervention required",
                from_version or "unknown", action.to_version, action.error,
            )
        return action

    def get_rollback(self, rollback_id: str) -> Optional[RollbackAction]:
        """Retrieve a rollback action by ID."""
        return self._actions.get(rollback_id)

    def list_rollbacks(self) -> List[RollbackAction]:
        """List rollback actions, newest first."""
        with self._lock:
            return list(reversed(self._actions.values()))

    def get_rollback_stats(self) -> dict:
        """Return rollback statistics."""
        actions = list(self._actions.values())
        total = len(actions)
        successful = sum(1 for a in actions if a.success)
        completed = [a for a in actions if a.completed_at is not None]
        if completed:
            durations = [
                (a.completed_at - a.triggered_at).total_seconds()
                for a in completed
            ]
            avg_duration = sum(durations) / len(durations)
        else:
            avg_duration = 0.0

        return {
            "total": total,
            "successful": successful,
            "failed": total - successful,
            "avg_duration_seconds": round(avg_duration, 2),
        }

    def reset(self) -> None:
        """Clear all rollback actions (for testing)."""
        with self._lock:
            self._actions.clear()
