"""Production rollout CLI.

Usage:
    python -m src.rollout --build-dir dist
    python -m src.rollout --release-version 1.2.3 --auto-rollback --rollback-version 1.1.0
    python -m src.rollout --config rollout.json --log-format json
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from pathlib import Path

import httpx

from src.logging_config import configure_logging
from src.settings import Settings

from .cancellation import CancellationToken
from .config import RolloutPhase
from .controller import RolloutController
from .exceptions import EXIT_FAILURE, EXIT_ROLLBACK_FAILED, EXIT_SUCCESS, RolloutError, ValidationError
from .health import HealthAggregator, default_probe_set
from .history import ReleaseHistory
from .models import RolloutOutcome, Version, utcnow
from .notifier import CompositeNotifier, ConsoleNotifier, Notifier, WebhookNotifier
from .registrar import HttpUpdateRegistrar
from .signals import SignalHandler
from .transport import HttpDeploymentTransport
from .validation import BuildArtifactValidator

logger = logging.getLogger("rollout.cli")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="python -m src.rollout",
        description="Progressive production rollout: canary, staged traffic, rollback",
    )
    parser.add_argument(
        "--build-dir", type=str, default=None,
        help="Build directory to validate and read the version from",
    )
    parser.add_argument(
        "--release-version", type=str, default=None,
        help="Deploy this version without validating a build directory",
    )
    parser.add_argument(
        "--rollback-version", type=str, default=None,
        help="Version to restore on failure (default: last-known-good)",
    )
    rollback = parser.add_mutually_exclusive_group()
    rollback.add_argument(
        "--auto-rollback", dest="auto_rollback", action="store_true", default=None,
        help="Roll back automatically when the rollout fails",
    )
    rollback.add_argument(
        "--no-auto-rollback", dest="auto_rollback", action="store_false",
        help="Never roll back automatically",
    )
    parser.add_argument(
        "--config", type=str, default=None,
        help="Path to JSON file overriding rollout settings",
    )
    parser.add_argument(
        "--state-dir", type=str, default=None,
        help="Directory for the release history file",
    )
    parser.add_argument(
        "--webhook-url", type=str, default=None,
        help="Also POST the final outcome to this webhook",
    )
    parser.add_argument(
        "--log-level", type=str, default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--log-format", type=str, default=None, choices=["console", "json"],
        help="Log output format (default: console)",
    )
    return parser.parse_args(argv)


def load_settings(args: argparse.Namespace) -> Settings:
    """Build Settings from the environment, an optional JSON file and CLI args."""
    overrides: dict = {}

    if args.config:
        config_path = Path(args.config)
        if not config_path.exists():
            raise ValidationError(f"Config file not found: {config_path}", field="config")
        with open(config_path) as f:
            data = json.load(f)
        for key, value in data.items():
            if key in Settings.model_fields:
                overrides[key] = value
            else:
                logger.warning("Ignoring unknown config key %r", key)

    cli_values = {
        "build_dir": args.build_dir,
        "rollback_version": args.rollback_version,
        "auto_rollback_enabled": args.auto_rollback,
        "state_dir": args.state_dir,
        "webhook_url": args.webhook_url,
        "log_level": args.log_level,
        "log_format": args.log_format,
    }
    overrides.update({k: v for k, v in cli_values.items() if v is not None})
    return Settings(**overrides)


def build_notifier(settings: Settings) -> Notifier:
    notifiers: list = [ConsoleNotifier(service_url=settings.production_url)]
    if settings.webhook_url:
        notifiers.append(WebhookNotifier(settings.webhook_url))
    return CompositeNotifier(notifiers)


def build_controller(
    settings: Settings,
    cancellation: CancellationToken,
    notifier: Notifier,
) -> RolloutController:
    """Create a fully-wired RolloutController from settings."""
    client = httpx.Client(timeout=settings.probe_timeout_sec)
    aggregator = HealthAggregator(
        default_probe_set(
            settings.base_urls(), client, latency_threshold_ms=settings.latency_threshold_ms
        ),
        probe_timeout=settings.probe_timeout_sec,
        concurrent=settings.concurrent_probes,
    )
    return RolloutController(
        config=settings.to_rollout_config(),
        transport=HttpDeploymentTransport(
            settings.deploy_api_url or settings.production_url,
            settings.production_api_key,
            timeout=settings.deployment_timeout_sec,
        ),
        aggregator=aggregator,
        registrar=HttpUpdateRegistrar(
            settings.update_server_url,
            settings.update_server_key,
            channel=settings.release_channel,
        ),
        notifier=notifier,
        history=ReleaseHistory(settings.state_dir),
        target_key=settings.target_key,
        cancellation=cancellation,
    )


def exit_code_for(outcome: RolloutOutcome) -> int:
    if outcome.success:
        return EXIT_SUCCESS
    if outcome.rollback_failed:
        return EXIT_ROLLBACK_FAILED
    return EXIT_FAILURE


def failed_outcome(
    version: Version | None,
    started: float,
    error: str,
    phase: RolloutPhase,
    detail: str | None = None,
) -> RolloutOutcome:
    """Outcome for a run that ended outside the controller."""
    return RolloutOutcome(
        success=False,
        version=str(version) if version is not None else None,
        timestamp=utcnow(),
        duration_seconds=round(time.monotonic() - started, 3),
        error=error,
        detail=detail,
        failed_phase=phase,
    )


def resolve_version(args: argparse.Namespace, settings: Settings) -> Version:
    """Version to deploy: ``--release-version`` or the validated build's version.

    Required settings are checked either way.
    """
    validator = BuildArtifactValidator(required_settings=settings.required_settings())
    if args.release_version:
        validator.check_settings()
        return Version.parse(args.release_version)
    return validator.validate(settings.build_dir)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    started = time.monotonic()

    try:
        settings = load_settings(args)
    except (RolloutError, ValueError) as exc:
        logging.basicConfig(level=logging.INFO)
        logger.error("Invalid configuration: %s", exc)
        return EXIT_FAILURE

    configure_logging(settings.to_logging_config())
    notifier = build_notifier(settings)

    cancellation = CancellationToken()
    signals = SignalHandler(cancellation)
    signals.register_signals()

    logger.info("Starting production deployment process")
    version = None
    try:
        try:
            version = resolve_version(args, settings)
            controller = build_controller(settings, cancellation, notifier)
        except ValidationError as exc:
            logger.error("Pre-production check failed: %s", exc.message)
            outcome = failed_outcome(None, started, exc.message, RolloutPhase.VALIDATING)
            notifier.notify(outcome)
            return exit_code_for(outcome)

        outcome = controller.run(version, rollback_version=settings.rollback_version)
    except RolloutError as exc:
        logger.log(exc.log_level, "Production deployment not started: %s", exc.message)
        return exc.exit_code
    except KeyboardInterrupt:
        # Forced exit unwinds the controller before it can report.
        logger.critical(
            "Production deployment force-stopped; target state is unverified"
        )
        notifier.notify(failed_outcome(
            version,
            started,
            "rollout interrupted",
            RolloutPhase.ABORTED,
            detail="forced exit after repeated signals",
        ))
        return EXIT_FAILURE
    finally:
        signals.restore_signals()

    return exit_code_for(outcome)


if __name__ == "__main__":
    sys.exit(main())
