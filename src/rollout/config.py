"""Progressive Rollout: Configuration."""

import enum
import logging
from dataclasses import dataclass, field
from typing import List, Tuple

from .exceptions import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_ROLLOUT_STEPS: Tuple[int, ...] = (25, 50, 75, 100)


class Environment(enum.Enum):
    """Deployment environments a version can be shipped to."""

    CANARY = "canary"
    PRODUCTION = "production"


class RolloutPhase(enum.Enum):
    """Phases of a single rollout run."""

    IDLE = "idle"
    VALIDATING = "validating"
    CANARY_DEPLOYING = "canary_deploying"
    CANARY_MONITORING = "canary_monitoring"
    STAGED_ROLLOUT = "staged_rollout"
    HEALTH_GATE = "health_gate"
    REGISTERING_UPDATE = "registering_update"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"
    ABORTED = "aborted"


TERMINAL_PHASES = frozenset(
    {
        RolloutPhase.SUCCEEDED,
        RolloutPhase.FAILED,
        RolloutPhase.ROLLED_BACK,
        RolloutPhase.ROLLBACK_FAILED,
        RolloutPhase.ABORTED,
    }
)


@dataclass
class RolloutConfig:
    """Rollout tuning with the production defaults."""

    canary_percent: int = 10
    canary_duration_sec: int = 120
    canary_interval_sec: int = 15
    rollout_steps: Tuple[int, ...] = DEFAULT_ROLLOUT_STEPS
    inter_step_delay_sec: int = 300
    auto_rollback_enabled: bool = False
    probe_timeout_sec: float = 30.0
    concurrent_probes: bool = False

    def __post_init__(self):
        self.rollout_steps = tuple(self.rollout_steps)

    @property
    def canary_observations(self) -> int:
        return self.canary_duration_sec // self.canary_interval_sec

    def validate(self) -> "RolloutConfig":
        """Check the configuration; ValidationError lists every problem found."""
        problems: List[str] = []

        if not 0 < self.canary_percent <= 100:
            problems.append(
                f"canary_percent must be in 1..100, got {self.canary_percent}"
            )
        if self.canary_interval_sec <= 0:
            problems.append(
                f"canary_interval_sec must be positive, got {self.canary_interval_sec}"
            )
        elif self.canary_duration_sec < self.canary_interval_sec:
            problems.append(
                "canary_duration_sec must be >= canary_interval_sec "
                f"({self.canary_duration_sec} < {self.canary_interval_sec})"
            )
        if self.inter_step_delay_sec < 0:
            problems.append(
                f"inter_step_delay_sec must be >= 0, got {self.inter_step_delay_sec}"
            )
        if self.probe_timeout_sec <= 0:
            problems.append(
                f"probe_timeout_sec must be positive, got {self.probe_timeout_sec}"
            )
        problems.extend(_check_steps(self.rollout_steps, self.canary_percent))

        if problems:
            raise ValidationError(
                "Invalid rollout configuration: " + "; ".join(problems),
                details=[{"issue": p} for p in problems],
            )
        return self


def _check_steps(steps: Tuple[int, ...], canary_percent: int) -> List[str]:
    if not steps:
        return ["rollout_steps must not be empty"]
    problems = []
    for step in steps:
        if not 0 < step <= 100:
            problems.append(f"rollout step {step} outside 1..100")
    for prev, cur in zip(steps, steps[1:]):
        if cur <= prev:
            problems.append(
                f"rollout_steps must be strictly increasing ({prev} -> {cur})"
            )
            break
    if steps[-1] != 100:
        problems.append(f"rollout_steps must end at 100, got {steps[-1]}")
    if steps[0] < canary_percent:
        problems.append(
            f"first rollout step {steps[0]}% is below the canary percentage "
            f"{canary_percent}%"
        )
    return problems


DEFAULT_ROLLOUT_CONFIG = RolloutConfig()
