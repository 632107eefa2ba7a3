"""Cancellable waits for rollout suspension points."""

import logging
import threading
from typing import Optional

from .exceptions import RolloutCancelled

logger = logging.getLogger(__name__)


class CancellationToken:
    """Operator stop flag shared between a signal handler and a run.

    ``wait()`` is the only way the orchestrator sleeps: it returns after the
    requested number of seconds or raises RolloutCancelled as soon as the
    token is cancelled.
    """

    def __init__(self):
        self._event = threading.Event()
        self._reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "operator requested stop") -> None:
        if not self._event.is_set():
            self._reason = reason
            logger.warning("Rollout cancellation requested: %s", reason)
        self._event.set()

    def check(self) -> None:
        """Raise RolloutCancelled if a stop has been requested."""
        if self._event.is_set():
            raise RolloutCancelled()

    def wait(self, seconds: float) -> None:
        """Sleep until ``seconds`` elapse or cancellation, whichever is first."""
        self.check()
        if seconds > 0 and self._sleep(seconds):
            raise RolloutCancelled()

    def _sleep(self, seconds: float) -> bool:
        return self._event.wait(timeout=seconds)

    def reset(self) -> None:
        self._event.clear()
        self._reason = None
