"""Progressive Rollout: Data Model."""

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from .config import Environment, RolloutPhase
from .exceptions import ErrorCode, ValidationError

logger = logging.getLogger(__name__)

_VERSION_RE = re.compile(r"^(\d+)\.(\d+)\.(\d+)(.*)$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Version:
    """A semantic version selected for deployment."""

    raw: str
    major: int
    minor: int
    patch: int
    suffix: str = ""

    @classmethod
    def parse(cls, text: str) -> "Version":
        """Parse ``MAJOR.MINOR.PATCH`` with an optional trailing suffix."""
        if not isinstance(text, str):
            raise ValidationError(
                f"Invalid version format: {text!r}",
                error_code=ErrorCode.INVALID_VERSION,
                field="version",
            )
        candidate = text.strip()
        match = _VERSION_RE.match(candidate)
        if not match:
            raise ValidationError(
                f"Invalid version format: {text!r}",
                error_code=ErrorCode.INVALID_VERSION,
                field="version",
            )
        major, minor, patch, suffix = match.groups()
        return cls(
            raw=candidate,
            major=int(major),
            minor=int(minor),
            patch=int(patch),
            suffix=suffix,
        )

    def __str__(self) -> str:
        return self.raw


@dataclass(frozen=True)
class DeploymentTarget:
    """An environment and the share of its traffic sent to the new version."""

    environment: Environment
    traffic_percent: int

    def __post_init__(self):
        if not 0 <= self.traffic_percent <= 100:
            raise ValueError(
                f"traffic_percent must be within 0..100, got {self.traffic_percent}"
            )

    def describe(self) -> str:
        return f"{self.environment.value}@{self.traffic_percent}%"


@dataclass(frozen=True)
class HealthCheckResult:
    """Outcome of one probe invocation."""

    name: str
    success: bool
    error_reason: Optional[str] = None
    duration_ms: float = 0.0
    checked_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class AggregateHealthResult:
    """Composite result of a health gate."""

    success: bool
    failed_probe_name: Optional[str] = None
    failure_reason: Optional[str] = None
    error: Optional[str] = None
    results: Tuple[HealthCheckResult, ...] = ()


@dataclass(frozen=True)
class MonitorResult:
    """Result of a bounded canary observation window."""

    success: bool
    error: Optional[str] = None
    observations: int = 0
    failed_observation: Optional[int] = None
    failed_probe_name: Optional[str] = None


@dataclass(frozen=True)
class RolloutOutcome:
    """Terminal record of one rollout attempt."""

    success: bool
    version: Optional[str]
    timestamp: datetime
    duration_seconds: float
    error: Optional[str] = None
    rollback_performed: Optional[bool] = None
    rollback_failed: Optional[bool] = None
    rollback_version: Optional[str] = None
    rollback_error: Optional[str] = None
    registration_error: Optional[str] = None
    failed_phase: Optional[RolloutPhase] = None
    detail: Optional[str] = None
    failed_probe: Optional[str] = None
    completed_steps: Tuple[int, ...] = ()
    run_id: str = ""

    @property
    def cancelled(self) -> bool:
        return self.failed_phase == RolloutPhase.ABORTED

    def to_dict(self) -> Dict[str, Any]:
        """Render the notification payload."""
        payload: Dict[str, Any] = {
            "success": self.success,
            "version": self.version,
            "timestamp": self.timestamp.isoformat(),
            "duration": round(self.duration_seconds, 2),
        }
        if not self.success:
            payload["error"] = self.error
            if self.failed_phase is not None:
                payload["failedPhase"] = self.failed_phase.value
            if self.detail:
                payload["detail"] = self.detail
            if self.failed_probe:
                payload["failedProbe"] = self.failed_probe
        if self.rollback_performed is not None:
            payload["rollbackPerformed"] = self.rollback_performed
        if self.rollback_failed is not None:
            payload["rollbackFailed"] = self.rollback_failed
        if self.rollback_version:
            payload["rollbackVersion"] = self.rollback_version
        if self.rollback_error:
            payload["rollbackError"] = self.rollback_error
        if self.registration_error:
            payload["registrationError"] = self.registration_error
        if self.completed_steps:
            payload["completedSteps"] = list(self.completed_steps)
        return payload


@dataclass
class RolloutState:
    """Transient state of one in-flight run, owned by the controller."""

    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    version: Optional[Version] = None
    phase: RolloutPhase = RolloutPhase.IDLE
    target: Optional[DeploymentTarget] = None
    started_at: datetime = field(default_factory=utcnow)
    elapsed_seconds: float = 0.0
    last_health: Optional[AggregateHealthResult] = None
    completed_steps: List[int] = field(default_factory=list)
    transitions: List[Tuple[RolloutPhase, datetime]] = field(default_factory=list)
