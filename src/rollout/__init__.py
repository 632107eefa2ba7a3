"""Progressive Rollout: canary, staged traffic, health gates & rollback."""

from .cancellation import CancellationToken
from .canary import CanaryMonitor
from .config import (
    DEFAULT_ROLLOUT_STEPS,
    Environment,
    RolloutConfig,
    RolloutPhase,
)
from .controller import TRANSITIONS, RolloutController
from .exceptions import (
    ErrorCode,
    HealthCheckFailure,
    InvalidTransition,
    MonitoringFailure,
    RegistrationError,
    RollbackFailure,
    RolloutCancelled,
    RolloutError,
    RolloutInProgressError,
    TransportError,
    ValidationError,
)
from .health import (
    CallableProbe,
    HealthAggregator,
    HealthProbe,
    HttpHealthProbe,
    LatencyThresholdProbe,
    default_probe_set,
    run_probe,
)
from .history import ReleaseHistory
from .locks import TargetLockRegistry
from .models import (
    AggregateHealthResult,
    DeploymentTarget,
    HealthCheckResult,
    MonitorResult,
    RolloutOutcome,
    RolloutState,
    Version,
)
from .notifier import CompositeNotifier, ConsoleNotifier, Notifier, WebhookNotifier
from .registrar import HttpUpdateRegistrar, UpdateRegistrar
from .rollback import RollbackAction, RollbackManager
from .transport import DeploymentTransport, HttpDeploymentTransport, SerializedTransport
from .validation import ArtifactValidator, BuildArtifactValidator

__all__ = [
    # Config
    "DEFAULT_ROLLOUT_STEPS",
    "Environment",
    "RolloutConfig",
    "RolloutPhase",
    # Models
    "AggregateHealthResult",
    "DeploymentTarget",
    "HealthCheckResult",
    "MonitorResult",
    "RolloutOutcome",
    "RolloutState",
    "Version",
    # Errors
    "ErrorCode",
    "HealthCheckFailure",
    "InvalidTransition",
    "MonitoringFailure",
    "RegistrationError",
    "RollbackFailure",
    "RolloutCancelled",
    "RolloutError",
    "RolloutInProgressError",
    "TransportError",
    "ValidationError",
    # Health
    "CallableProbe",
    "HealthAggregator",
    "HealthProbe",
    "HttpHealthProbe",
    "LatencyThresholdProbe",
    "default_probe_set",
    "run_probe",
    # Canary
    "CanaryMonitor",
    # Transport
    "DeploymentTransport",
    "HttpDeploymentTransport",
    "SerializedTransport",
    # Controller
    "TRANSITIONS",
    "RolloutController",
    "CancellationToken",
    "TargetLockRegistry",
    # Rollback
    "RollbackAction",
    "RollbackManager",
    # Collaborators
    "ArtifactValidator",
    "BuildArtifactValidator",
    "CompositeNotifier",
    "ConsoleNotifier",
    "HttpUpdateRegistrar",
    "Notifier",
    "ReleaseHistory",
    "UpdateRegistrar",
    "WebhookNotifier",
]
