"""OS signal handling for an in-flight rollout."""

import logging
import signal
from typing import Dict, List, Optional

from .cancellation import CancellationToken

logger = logging.getLogger(__name__)


class SignalHandler:
    """Turns SIGINT/SIGTERM into a cancellation of the running rollout.

    The first signal cancels the token so the run aborts at its next
    suspension point and still reports its outcome. Once ``max_signals``
    have arrived the handler gives up and raises KeyboardInterrupt.
    """

    def __init__(self, cancellation: CancellationToken, max_signals: int = 3):
        self._cancellation = cancellation
        self._original_handlers: Dict[int, object] = {}
        self._signal_count: int = 0
        self._max_signals = max_signals

    @property
    def signal_count(self) -> int:
        return self._signal_count

    @property
    def shutdown_requested(self) -> bool:
        return self._cancellation.cancelled

    def _handle_signal(self, signum: int, frame) -> None:
        self._signal_count += 1
        sig_name = signal.Signals(signum).name
        logger.warning(
            "Production deployment interrupted by %s (%d/%d)",
            sig_name, self._signal_count, self._max_signals,
        )
        if self._signal_count >= self._max_signals:
            logger.critical(
                "Max signal count reached, forcing exit without waiting for the run"
            )
            raise KeyboardInterrupt(sig_name)
        self._cancellation.cancel(f"received {sig_name}")

    def register_signals(self, signals: Optional[List[int]] = None) -> None:
        """Install handlers. Defaults to [SIGTERM, SIGINT]."""
        if signals is None:
            signals = [signal.SIGTERM, signal.SIGINT]

        for sig in signals:
            try:
                self._original_handlers[sig] = signal.getsignal(sig)
                signal.signal(sig, self._handle_signal)
                logger.debug("Registered handler for signal %s", signal.Signals(sig).name)
            except (OSError, ValueError) as exc:
                logger.warning("Cannot register handler for signal %d: %s", sig, exc)

    def restore_signals(self) -> None:
        """Restore original signal handlers."""
        for sig, handler in self._original_handlers.items():
            try:
                signal.signal(sig, handler if handler is not None else signal.SIG_DFL)
            except (OSError, ValueError) as exc:
                logger.warning("Cannot restore handler for signal %d: %s", sig, exc)
        self._original_handlers.clear()
