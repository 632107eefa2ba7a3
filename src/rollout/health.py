"""Progressive Rollout: Health Probes & Aggregation."""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Mapping, Optional, Protocol, Sequence, Tuple, Union, runtime_checkable

import httpx

from .cancellation import CancellationToken
from .config import Environment
from .models import AggregateHealthResult, DeploymentTarget, HealthCheckResult

logger = logging.getLogger(__name__)

PROBE_TIMEOUT_REASON = "timeout"


@runtime_checkable
class HealthProbe(Protocol):
    """Anything with a ``name`` and a ``run(target)`` method is a probe.

    Probes observe the target and never change it.
    """

    name: str

    def run(self, target: DeploymentTarget) -> HealthCheckResult:
        ...


def run_probe(
    probe: HealthProbe, target: DeploymentTarget, timeout: float
) -> HealthCheckResult:
    """Run a probe on a daemon worker thread, bounded by ``timeout`` seconds.

    A probe that overruns is reported as failed with reason ``"timeout"`` and
    its thread is left running; as a daemon it does not hold up process exit.
    A probe that raises is reported as failed with the exception text.
    """
    start = time.monotonic()
    box: dict = {}

    def _call() -> None:
        try:
            box["result"] = probe.run(target)
        except Exception as exc:
            box["error"] = exc

    worker = threading.Thread(target=_call, daemon=True, name=f"probe-{probe.name}")
    worker.start()
    worker.join(timeout)

    if worker.is_alive():
        logger.warning(
            "Probe '%s' timed out after %.1fs against %s",
            probe.name, timeout, target.describe(),
        )
        result = HealthCheckResult(
            name=probe.name,
            success=False,
            error_reason=PROBE_TIMEOUT_REASON,
        )
    elif "error" in box:
        exc = box["error"]
        logger.warning("Probe '%s' raised: %s", probe.name, exc)
        result = HealthCheckResult(
            name=probe.name,
            success=False,
            error_reason=str(exc) or type(exc).__name__,
        )
    else:
        result = box["result"]

    elapsed_ms = (time.monotonic() - start) * 1000
    return HealthCheckResult(
        name=probe.name,
        success=result.success,
        error_reason=result.error_reason or (None if result.success else "unknown failure"),
        duration_ms=round(elapsed_ms, 2),
    )


ProbeFunc = Callable[[DeploymentTarget], Union[bool, Tuple[bool, Optional[str]]]]


class CallableProbe:
    """Adapts a plain function into a probe.

    The function returns either a bool or a ``(success, reason)`` tuple.
    """

    def __init__(self, name: str, func: ProbeFunc):
        self.name = name
        self._func = func

    def run(self, target: DeploymentTarget) -> HealthCheckResult:
        outcome = self._func(target)
        if isinstance(outcome, tuple):
            success, reason = outcome
        else:
            success, reason = bool(outcome), None
        return HealthCheckResult(
            name=self.name,
            success=bool(success),
            error_reason=None if success else (reason or "check returned false"),
        )


class HttpHealthProbe:
    """GETs a health endpoint of the target environment; 2xx means healthy."""

    def __init__(
        self,
        name: str,
        path: str,
        base_urls: Mapping[Environment, str],
        client: Optional[httpx.Client] = None,
        timeout: float = 10.0,
    ):
        self.name = name
        self.path = path
        self._base_urls = dict(base_urls)
        self._client = client or httpx.Client(timeout=timeout)

    def url_for(self, target: DeploymentTarget) -> str:
        base = self._base_urls.get(target.environment)
        if not base:
            raise ValueError(
                f"No endpoint configured for environment {target.environment.value}"
            )
        return base.rstrip("/") + self.path

    def run(self, target: DeploymentTarget) -> HealthCheckResult:
        url = self.url_for(target)
        try:
            response = self._client.get(url)
        except httpx.HTTPError as exc:
            return HealthCheckResult(
                name=self.name, success=False, error_reason=f"{type(exc).__name__}: {exc}"
            )
        if response.is_success:
            return self._evaluate(response)
        return HealthCheckResult(
            name=self.name, success=False, error_reason=f"HTTP {response.status_code}"
        )

    def _evaluate(self, response: httpx.Response) -> HealthCheckResult:
        return HealthCheckResult(name=self.name, success=True)


class LatencyThresholdProbe(HttpHealthProbe):
    """Reads a latency metrics document and fails above a p95 threshold."""

    def __init__(
        self,
        name: str,
        path: str,
        base_urls: Mapping[Environment, str],
        client: Optional[httpx.Client] = None,
        threshold_ms: float = 500.0,
        timeout: float = 10.0,
    ):
        super().__init__(name, path, base_urls, client=client, timeout=timeout)
        self.threshold_ms = threshold_ms

    def _evaluate(self, response: httpx.Response) -> HealthCheckResult:
        try:
            p95 = float(response.json()["p95_ms"])
        except (ValueError, KeyError, TypeError) as exc:
            return HealthCheckResult(
                name=self.name,
                success=False,
                error_reason=f"unreadable latency metrics: {exc}",
            )
        if p95 > self.threshold_ms:
            return HealthCheckResult(
                name=self.name,
                success=False,
                error_reason=f"p95 latency {p95:.0f}ms exceeds {self.threshold_ms:.0f}ms",
            )
        return HealthCheckResult(name=self.name, success=True)


def default_probe_set(
    base_urls: Mapping[Environment, str],
    client: Optional[httpx.Client] = None,
    latency_threshold_ms: float = 500.0,
) -> List[HealthProbe]:
    """The five production probes, in gate order."""
    client = client or httpx.Client(timeout=10.0)
    return [
        HttpHealthProbe("application", "/health", base_urls, client),
        HttpHealthProbe("database", "/health/database", base_urls, client),
        HttpHealthProbe("external_services", "/health/dependencies", base_urls, client),
        LatencyThresholdProbe(
            "performance", "/metrics/latency", base_urls, client,
            threshold_ms=latency_threshold_ms,
        ),
        HttpHealthProbe("security", "/health/security", base_urls, client),
    ]


class HealthAggregator:
    """Runs an ordered probe set and reports a single actionable cause.

    Sequential mode stops at the first failing probe. Concurrent mode runs
    every probe at once and then picks the first failure in probe order, so
    the reported cause is the same either way.
    """

    def __init__(
        self,
        probes: Sequence[HealthProbe],
        probe_timeout: float = 30.0,
        concurrent: bool = False,
    ):
        if not probes:
            raise ValueError("HealthAggregator needs at least one probe")
        self._probes = list(probes)
        self.probe_timeout = probe_timeout
        self.concurrent = concurrent

    @property
    def probes(self) -> List[HealthProbe]:
        return list(self._probes)

    def check(
        self,
        target: DeploymentTarget,
        probes: Optional[Sequence[HealthProbe]] = None,
        cancellation: Optional[CancellationToken] = None,
    ) -> AggregateHealthResult:
        probes = list(probes) if probes is not None else self._probes
        if not probes:
            raise ValueError("No probes to run")
        logger.info(
            "Running %d health checks against %s", len(probes), target.describe()
        )
        if self.concurrent:
            return self._check_concurrent(target, probes, cancellation)
        return self._check_sequential(target, probes, cancellation)

    def _check_sequential(
        self,
        target: DeploymentTarget,
        probes: List[HealthProbe],
        cancellation: Optional[CancellationToken],
    ) -> AggregateHealthResult:
        results: List[HealthCheckResult] = []
        for probe in probes:
            if cancellation is not None:
                cancellation.check()
            logger.debug("Running %s check", probe.name)
            result = run_probe(probe, target, self.probe_timeout)
            results.append(result)
            if not result.success:
                return self._failed(result, results)
        logger.info("All health checks passed for %s", target.describe())
        return AggregateHealthResult(success=True, results=tuple(results))

    def _check_concurrent(
        self,
        target: DeploymentTarget,
        probes: List[HealthProbe],
        cancellation: Optional[CancellationToken],
    ) -> AggregateHealthResult:
        if cancellation is not None:
            cancellation.check()
        with ThreadPoolExecutor(
            max_workers=len(probes), thread_name_prefix="health-gate"
        ) as pool:
            futures = [
                pool.submit(run_probe, probe, target, self.probe_timeout)
                for probe in probes
            ]
            results = [future.result() for future in futures]

        for result in results:
            if not result.success:
                return self._failed(result, results)
        logger.info("All health checks passed for %s", target.describe())
        return AggregateHealthResult(success=True, results=tuple(results))

    @staticmethod
    def _failed(
        result: HealthCheckResult, results: List[HealthCheckResult]
    ) -> AggregateHealthResult:
        error = f"{result.name} check failed: {result.error_reason}"
        logger.error("Health check failed: %s", error, extra={"probe": result.name})
        return AggregateHealthResult(
            success=False,
            failed_probe_name=result.name,
            failure_reason=result.error_reason,
            error=error,
            results=tuple(results),
        )
