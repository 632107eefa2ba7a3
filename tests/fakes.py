"""In-memory collaborators for rollout tests."""

import json
import threading

from src.rollout.cancellation import CancellationToken
from src.rollout.exceptions import TransportError
from src.rollout.models import HealthCheckResult
from src.rollout.validation import DEFAULT_REQUIRED_FILES

PROBE_NAMES = ("application", "database", "external_services", "performance", "security")


class RecordingTransport:
    """Records every deploy call; fails for listed (environment, percent[, version])."""

    def __init__(self, fail_on=None):
        self.fail_on = set(fail_on or ())
        self.calls = []
        self._lock = threading.Lock()

    def deploy(self, environment, version, traffic_percent):
        with self._lock:
            self.calls.append((environment.value, str(version), traffic_percent))
        keys = {
            (environment.value, traffic_percent),
            (environment.value, traffic_percent, str(version)),
        }
        if keys & self.fail_on:
            raise TransportError(
                f"simulated failure at {environment.value} {traffic_percent}%",
                environment=environment.value,
                traffic_percent=traffic_percent,
            )

    @property
    def production_percents(self):
        return [p for env, _, p in self.calls if env == "production"]


class ScriptedProbe:
    """Probe whose result is decided by ``fail_when(call_number, target)``."""

    def __init__(self, name, fail_when=None, reason="simulated failure"):
        self.name = name
        self.fail_when = fail_when or (lambda call, target: False)
        self.reason = reason
        self.calls = 0
        self.targets = []

    def run(self, target):
        self.calls += 1
        self.targets.append(target)
        if self.fail_when(self.calls, target):
            return HealthCheckResult(name=self.name, success=False, error_reason=self.reason)
        return HealthCheckResult(name=self.name, success=True)


def healthy_probes():
    return [ScriptedProbe(name) for name in PROBE_NAMES]


class InstantCancellationToken(CancellationToken):
    """Records requested waits instead of sleeping.

    With ``cancel_after_waits=n`` the token cancels itself during the n-th wait.
    """

    def __init__(self, cancel_after_waits=None):
        super().__init__()
        self.waits = []
        self.cancel_after_waits = cancel_after_waits

    def _sleep(self, seconds):
        self.waits.append(seconds)
        if self.cancel_after_waits is not None and len(self.waits) >= self.cancel_after_waits:
            self.cancel("test stop")
        return self.cancelled


class RecordingNotifier:
    def __init__(self):
        self.outcomes = []

    def notify(self, outcome):
        self.outcomes.append(outcome)


class RecordingRegistrar:
    def __init__(self, error=None):
        self.error = error
        self.versions = []

    def register_version(self, version):
        self.versions.append(str(version))
        if self.error is not None:
            raise self.error


def make_build(path, version="1.2.3", skip=(), empty=()):
    """Write a build directory with the default required files."""
    path.mkdir(parents=True, exist_ok=True)
    for name in DEFAULT_REQUIRED_FILES:
        if name in skip:
            continue
        if name == "package.json":
            content = json.dumps({"name": "app", "version": version})
        else:
            content = "" if name in empty else f"// {name}\n"
        (path / name).write_text(content)
    return path
