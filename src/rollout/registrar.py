"""Update-distribution channel registration."""

import logging
from datetime import datetime, timezone
from typing import Optional, Protocol, runtime_checkable

import httpx

from src.logging_config.performance import log_performance

from .exceptions import RegistrationError
from .models import Version

logger = logging.getLogger(__name__)


@runtime_checkable
class UpdateRegistrar(Protocol):
    """Tells the auto-update channel that a version is live."""

    def register_version(self, version: Version) -> None:
        ...


class HttpUpdateRegistrar:
    """Publishes the latest-version pointer to the update server."""

    def __init__(
        self,
        update_server_url: str,
        update_server_key: str,
        channel: str = "stable",
        timeout: float = 30.0,
        http_transport: Optional[httpx.BaseTransport] = None,
    ):
        self.update_server_url = update_server_url.rstrip("/")
        self.channel = channel
        self._client = httpx.Client(
            base_url=self.update_server_url,
            headers={"Authorization": f"Bearer {update_server_key}"},
            timeout=timeout,
            transport=http_transport,
        )

    def latest_pointer(self, version: Version) -> dict:
        return {
            "version": str(version),
            "channel": self.channel,
            "updateUrl": f"{self.update_server_url}/manifest.json",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @log_performance(threshold_ms=10_000)
    def register_version(self, version: Version) -> None:
        logger.info("Updating latest version pointer to %s", version)
        try:
            response = self._client.put("/latest", json=self.latest_pointer(version))
        except httpx.HTTPError as exc:
            raise RegistrationError(f"Update server unreachable: {exc}") from exc
        if not response.is_success:
            raise RegistrationError(
                f"Update server rejected {version}: HTTP {response.status_code}"
            )
        logger.info("Latest version pointer updated")

    def close(self) -> None:
        self._client.close()
