"""Rollout Error Hierarchy.

Typed exceptions for every way a rollout run can stop, each carrying an
error code that maps to a process exit status and a log level.
"""

import logging
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCode(Enum):
    """Standardized error codes for rollout failures."""

    # Pre-flight (nothing deployed yet)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    MISSING_REQUIRED_SETTING = "MISSING_REQUIRED_SETTING"
    INVALID_VERSION = "INVALID_VERSION"

    # Forward rollout
    TRANSPORT_ERROR = "TRANSPORT_ERROR"
    HEALTH_CHECK_FAILED = "HEALTH_CHECK_FAILED"
    MONITORING_FAILED = "MONITORING_FAILED"
    REGISTRATION_FAILED = "REGISTRATION_FAILED"

    # Recovery
    ROLLBACK_FAILED = "ROLLBACK_FAILED"

    # Control
    CANCELLED = "CANCELLED"
    ROLLOUT_IN_PROGRESS = "ROLLOUT_IN_PROGRESS"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    INTERNAL_ERROR = "INTERNAL_ERROR"


EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_ROLLBACK_FAILED = 2

# Map error codes to process exit codes
ERROR_EXIT_CODES: Dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_ERROR: EXIT_FAILURE,
    ErrorCode.MISSING_REQUIRED_SETTING: EXIT_FAILURE,
    ErrorCode.INVALID_VERSION: EXIT_FAILURE,
    ErrorCode.TRANSPORT_ERROR: EXIT_FAILURE,
    ErrorCode.HEALTH_CHECK_FAILED: EXIT_FAILURE,
    ErrorCode.MONITORING_FAILED: EXIT_FAILURE,
    ErrorCode.REGISTRATION_FAILED: EXIT_FAILURE,
    ErrorCode.ROLLBACK_FAILED: EXIT_ROLLBACK_FAILED,
    ErrorCode.CANCELLED: EXIT_FAILURE,
    ErrorCode.ROLLOUT_IN_PROGRESS: EXIT_FAILURE,
    ErrorCode.INVALID_TRANSITION: EXIT_FAILURE,
    ErrorCode.INTERNAL_ERROR: EXIT_FAILURE,
}

# Map error codes to the level they are logged at
ERROR_LOG_LEVELS: Dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_ERROR: logging.ERROR,
    ErrorCode.MISSING_REQUIRED_SETTING: logging.ERROR,
    ErrorCode.INVALID_VERSION: logging.ERROR,
    ErrorCode.TRANSPORT_ERROR: logging.ERROR,
    ErrorCode.HEALTH_CHECK_FAILED: logging.ERROR,
    ErrorCode.MONITORING_FAILED: logging.ERROR,
    ErrorCode.REGISTRATION_FAILED: logging.WARNING,
    ErrorCode.ROLLBACK_FAILED: logging.CRITICAL,
    ErrorCode.CANCELLED: logging.WARNING,
    ErrorCode.ROLLOUT_IN_PROGRESS: logging.WARNING,
    ErrorCode.INVALID_TRANSITION: logging.CRITICAL,
    ErrorCode.INTERNAL_ERROR: logging.CRITICAL,
}


class RolloutError(Exception):
    """Base exception for all rollout errors.

    Every failure the orchestrator reports inherits from this, so a single
    handler at the process boundary can map the whole hierarchy to an
    exit status.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        details: Optional[List[Dict[str, Any]]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.exit_code = ERROR_EXIT_CODES.get(error_code, EXIT_FAILURE)
        self.log_level = ERROR_LOG_LEVELS.get(error_code, logging.ERROR)
        self.details = details or []


class ValidationError(RolloutError):
    """Pre-flight artifact or configuration problem. Never retried."""

    def __init__(
        self,
        message: str = "Validation failed",
        error_code: ErrorCode = ErrorCode.VALIDATION_ERROR,
        details: Optional[List[Dict[str, Any]]] = None,
        field: Optional[str] = None,
    ):
        if field and not details:
            details = [{"field": field, "issue": message}]
        super().__init__(message, error_code, details)


class TransportError(RolloutError):
    """A deployment call to a target failed."""

    def __init__(
        self,
        message: str = "Deployment failed",
        environment: Optional[str] = None,
        traffic_percent: Optional[int] = None,
    ):
        super().__init__(message, ErrorCode.TRANSPORT_ERROR)
        self.environment = environment
        self.traffic_percent = traffic_percent


class HealthCheckFailure(RolloutError):
    """A named health probe failed at a production traffic step."""

    def __init__(
        self,
        probe_name: str,
        reason: str,
        traffic_percent: Optional[int] = None,
    ):
        super().__init__(
            f"{probe_name} check failed: {reason}",
            ErrorCode.HEALTH_CHECK_FAILED,
            details=[{"probe": probe_name, "reason": reason}],
        )
        self.probe_name = probe_name
        self.reason = reason
        self.traffic_percent = traffic_percent


class MonitoringFailure(RolloutError):
    """A canary observation failed inside the monitoring window."""

    def __init__(
        self,
        message: str = "Canary monitoring failed",
        probe_name: Optional[str] = None,
        observation: Optional[int] = None,
    ):
        super().__init__(message, ErrorCode.MONITORING_FAILED)
        self.probe_name = probe_name
        self.observation = observation


class RegistrationError(RolloutError):
    """The update-distribution channel rejected the new version."""

    def __init__(self, message: str = "Update registration failed"):
        super().__init__(message, ErrorCode.REGISTRATION_FAILED)


class RollbackFailure(RolloutError):
    """Recovery itself failed; the target is left unverified."""

    def __init__(self, message: str = "Rollback failed"):
        super().__init__(message, ErrorCode.ROLLBACK_FAILED)


class RolloutCancelled(RolloutError):
    """An operator stop was observed at a suspension point."""

    def __init__(self, message: str = "rollout cancelled"):
        super().__init__(message, ErrorCode.CANCELLED)


class RolloutInProgressError(RolloutError):
    """Another run already holds the deployment target."""

    def __init__(self, target_key: str):
        super().__init__(
            f"A rollout is already in progress for target '{target_key}'",
            ErrorCode.ROLLOUT_IN_PROGRESS,
        )
        self.target_key = target_key


class InvalidTransition(RolloutError):
    """The controller attempted a transition its table does not allow."""

    def __init__(self, from_phase: str, to_phase: str):
        super().__init__(
            f"Illegal rollout transition {from_phase} -> {to_phase}",
            ErrorCode.INVALID_TRANSITION,
        )
        self.from_phase = from_phase
        self.to_phase = to_phase
