"""Progressive Rollout: Deployment Transport."""

import logging
import threading
from typing import Optional, Protocol, runtime_checkable

import httpx

from src.logging_config.performance import log_performance

from .config import Environment
from .exceptions import TransportError
from .models import Version

logger = logging.getLogger(__name__)


@runtime_checkable
class DeploymentTransport(Protocol):
    """Ships a version to an environment at a traffic percentage.

    Implementations raise TransportError on failure. A repeated call with
    the same arguments must be safe.
    """

    def deploy(
        self, environment: Environment, version: Version, traffic_percent: int
    ) -> None:
        ...


class SerializedTransport:
    """Wraps a transport so calls for one target never overlap.

    Unexpected exceptions from the wrapped transport are translated into
    TransportError so the controller sees a single failure type.
    """

    def __init__(self, inner: DeploymentTransport, lock: Optional[threading.Lock] = None):
        self._inner = inner
        self._lock = lock or threading.Lock()

    @property
    def inner(self) -> DeploymentTransport:
        return self._inner

    def deploy(
        self, environment: Environment, version: Version, traffic_percent: int
    ) -> None:
        with self._lock:
            logger.info(
                "Deploying %s to %s (%d%% traffic)",
                version, environment.value, traffic_percent,
                extra={"traffic_percent": traffic_percent},
            )
            try:
                self._inner.deploy(environment, version, traffic_percent)
            except TransportError:
                raise
            except Exception as exc:
                raise TransportError(
                    f"Deployment of {version} to {environment.value} failed: {exc}",
                    environment=environment.value,
                    traffic_percent=traffic_percent,
                ) from exc
            logger.info("Deployment to %s completed", environment.value)


class HttpDeploymentTransport:
    """Posts deployment requests to the release API over HTTP."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        timeout: float = 600.0,
        http_transport: Optional[httpx.BaseTransport] = None,
    ):
        self._client = httpx.Client(
            base_url=api_url,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=timeout,
            transport=http_transport,
        )

    @log_performance(threshold_ms=60_000)
    def deploy(
        self, environment: Environment, version: Version, traffic_percent: int
    ) -> None:
        payload = {
            "environment": environment.value,
            "version": str(version),
            "trafficPercent": traffic_percent,
        }
        try:
            response = self._client.post("/deployments", json=payload)
        except httpx.HTTPError as exc:
            raise TransportError(
                f"Deployment request to {environment.value} failed: {exc}",
                environment=environment.value,
                traffic_percent=traffic_percent,
            ) from exc
        if not response.is_success:
            raise TransportError(
                f"Deployment API rejected {version} for {environment.value} "
                f"at {traffic_percent}%: HTTP {response.status_code}",
                environment=environment.value,
                traffic_percent=traffic_percent,
            )

    def close(self) -> None:
        self._client.close()
