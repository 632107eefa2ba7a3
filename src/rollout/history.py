"""Last-known-good release tracking.

File-backed record of which version is confirmed healthy on each
deployment target. It survives process restarts, so a later failed
rollout knows what to roll back to.

Uses atomic writes (tmp + rename) to prevent corruption.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

STATE_FILE_NAME = "release_state.json"


class ReleaseHistory:
    """File-backed release ledger per deployment target.

    Thread-safe: all reads and writes are protected by an RLock.

    Args:
        state_dir: Directory for the state file.
        max_releases: Entries kept per target, newest last.

    Example:
        history = ReleaseHistory("/var/lib/rollout")
        history.record_success("production", "1.9.0")
        # ... restart process ...
        ReleaseHistory("/var/lib/rollout").last_known_good("production")  # "1.9.0"
    """

    def __init__(self, state_dir: str | Path = ".rollout_state", max_releases: int = 50) -> None:
        self._lock = threading.RLock()
        self._state_dir = Path(state_dir)
        self._state_dir.mkdir(parents=True, exist_ok=True)
        self._state_file = self._state_dir / STATE_FILE_NAME
        self._max_releases = max_releases
        self._state = self._load()

    @property
    def state_file(self) -> Path:
        return self._state_file

    def last_known_good(self, target: str) -> Optional[str]:
        """Most recent version confirmed healthy on ``target``."""
        with self._lock:
            return self._target(target).get("last_known_good")

    def record_success(self, target: str, version: str) -> None:
        """A rollout of ``version`` finished and passed every health gate."""
        with self._lock:
            entry = self._target(target)
            entry["last_known_good"] = version
            self._append(entry, version, "succeeded")
            self._save()
        logger.info("Recorded %s as last-known-good for %s", version, target)

    def record_rollback(self, target: str, version: str) -> None:
        """``version`` was restored and verified by a rollback."""
        with self._lock:
            entry = self._target(target)
            entry["last_known_good"] = version
            self._append(entry, version, "restored")
            self._save()
        logger.info("Recorded rollback to %s on %s", version, target)

    def record_failure(self, target: str, version: str, reason: str) -> None:
        """A rollout of ``version`` failed; last-known-good is unchanged."""
        with self._lock:
            entry = self._target(target)
            self._append(entry, version, "failed", reason=reason)
            self._save()

    def releases(self, target: str, limit: int = 10) -> list[dict[str, Any]]:
        """Most recent release entries for ``target``, newest first."""
        with self._lock:
            entries = list(self._target(target).get("releases", []))
        return list(reversed(entries))[:limit]

    def reset(self) -> None:
        """Drop all recorded releases (for testing)."""
        with self._lock:
            self._state = self._default_state()
            self._save()

    # ── Internal helpers ─────────────────────────────────────────────

    def _target(self, target: str) -> dict[str, Any]:
        targets = self._state.setdefault("targets", {})
        return targets.setdefault(target, {"last_known_good": None, "releases": []})

    def _append(self, entry: dict[str, Any], version: str, status: str, **extra: Any) -> None:
        releases = entry.setdefault("releases", [])
        releases.append(
            {
                "version": version,
                "status": status,
                "recorded_at": datetime.now(timezone.utc).isoformat(),
                **extra,
            }
        )
        del releases[: max(0, len(releases) - self._max_releases)]

    def _load(self) -> dict:
        """Load state from disk, or return defaults."""
        if self._state_file.exists():
            try:
                with open(self._state_file) as f:
                    return json.load(f)
            except (json.JSONDecodeError, OSError) as e:
                logger.error("Corrupt release state file, starting fresh: %s", e)
        return self._default_state()

    def _save(self) -> None:
        """Atomic write: write to .tmp then rename."""
        tmp_file = self._state_file.with_suffix(".json.tmp")
        try:
            with open(tmp_file, "w") as f:
                json.dump(self._state, f, indent=2, default=str)
            tmp_file.replace(self._state_file)
        except OSError as e:
            logger.error("Failed to persist release state: %s", e)

    @staticmethod
    def _default_state() -> dict:
        return {"targets": {}}
