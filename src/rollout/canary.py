"""Progressive Rollout: Canary Monitoring."""

import logging
from typing import Optional, Sequence

from .cancellation import CancellationToken
from .health import HealthAggregator, HealthProbe
from .models import DeploymentTarget, MonitorResult

logger = logging.getLogger(__name__)


class CanaryMonitor:
    """Polls a canary deployment on a fixed cadence for a bounded window.

    Performs ``duration // interval`` observations, waiting ``interval``
    seconds before each one. The first failing observation ends the window.
    """

    def __init__(
        self,
        aggregator: HealthAggregator,
        probes: Optional[Sequence[HealthProbe]] = None,
    ):
        self._aggregator = aggregator
        self._probes = list(probes) if probes is not None else None

    def observe(
        self,
        target: DeploymentTarget,
        duration: float,
        interval: float,
        cancellation: Optional[CancellationToken] = None,
    ) -> MonitorResult:
        """Watch ``target`` for ``duration`` seconds.

        Raises:
            ValueError: unless ``duration >= interval > 0``.
            RolloutCancelled: if the token is cancelled during a wait.
        """
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        if duration < interval:
            raise ValueError(
                f"duration ({duration}) must be >= interval ({interval})"
            )
        cancellation = cancellation or CancellationToken()
        total = int(duration // interval)

        logger.info(
            "Monitoring canary %s for %ss (%d checks every %ss)",
            target.describe(), duration, total, interval,
        )
        for tick in range(1, total + 1):
            cancellation.wait(interval)
            logger.info("Canary check %d/%d", tick, total)
            health = self._aggregator.check(
                target, probes=self._probes, cancellation=cancellation
            )
            if not health.success:
                error = f"observation {tick}/{total} failed: {health.error}"
                logger.error("Canary monitoring failed: %s", error)
                return MonitorResult(
                    success=False,
                    error=error,
                    observations=tick,
                    failed_observation=tick,
                    failed_probe_name=health.failed_probe_name,
                )

        logger.info("Canary monitoring completed successfully")
        return MonitorResult(success=True, observations=total)
