"""Component health checks and bounded waiting for readiness."""

import logging
import time
from typing import Callable, List, Optional, Sequence, Tuple

from .errors import InfraError, InfraTimeoutError
from .models import CheckResult, HealthCheckResult, HealthStatus
from .retry import CancelToken

logger = logging.getLogger("raibid.health")

SubCheck = Tuple[str, Callable[[], Tuple[bool, str]]]


class HealthChecker:
    """Base class: a component's health is an ordered list of named sub-checks.

    Each sub-check returns ``(passed, message)``. Sub-checks listed in
    ``gating`` decide the overall status on their own when they fail.
    """

    component = ''
    gating: Tuple[str, ...] = ()

    def checks(self) -> List[SubCheck]:
        raise NotImplementedError

    def check(self) -> HealthCheckResult:
        """Run every sub-check and aggregate them into a fresh result."""
        results: List[CheckResult] = []
        raised = set()
        for name, fn in self.checks():
            try:
                passed, message = fn()
            except (InfraError, ValueError, KeyError, AttributeError) as e:
                message = e.reason if isinstance(e, InfraError) else str(e)
                logger.debug("Health sub-check %s/%s raised: %s", self.component, name, message)
                raised.add(name)
                results.append(CheckResult(name, False, f"could not check: {message}"))
                continue
            results.append(CheckResult(name, passed, message))

        status = self._aggregate(results, raised)
        if status == HealthStatus.HEALTHY:
            message = f"all {len(results)} checks passed"
        else:
            message = "; ".join(f"{c.name}: {c.message}" for c in results if not c.passed)
        return HealthCheckResult(self.component, status, message, tuple(results))

    def _aggregate(self, results: Sequence[CheckResult], raised: set) -> HealthStatus:
        if all(c.passed for c in results):
            return HealthStatus.HEALTHY
        if any(not c.passed and c.name in self.gating for c in results):
            return HealthStatus.UNHEALTHY
        if not any(c.passed for c in results):
            return HealthStatus.UNKNOWN if raised else HealthStatus.UNHEALTHY
        return HealthStatus.DEGRADED


class ClusterHealthChecker(HealthChecker):
    """API server, nodes and ``kube-system`` pods."""

    gating = ('api-server-reachable',)

    def __init__(self, cluster, component: str = 'k3s', system_namespace: str = 'kube-system'):
        self.cluster = cluster
        self.component = component
        self.system_namespace = system_namespace

    def checks(self) -> List[SubCheck]:
        return [
            ('api-server-reachable', self._api_server),
            ('node-ready', self._nodes),
            ('system-pods-running', self._system_pods),
        ]

    def _api_server(self):
        try:
            version = self.cluster.server_version()
        except InfraError as e:
            return False, e.reason
        return True, f"API server {version}"

    def _nodes(self):
        nodes = self.cluster.list_nodes()
        ready = [n for n in nodes if n.ready]
        if not ready:
            return False, f"0/{len(nodes)} nodes Ready"
        return True, f"{len(ready)}/{len(nodes)} nodes Ready"

    def _system_pods(self):
        pods = self.cluster.list_pods(self.system_namespace)
        if not pods:
            return False, f"no pods in {self.system_namespace} yet"
        pending = [p.name for p in pods if p.phase not in ('Running', 'Succeeded')]
        if pending:
            return False, f"not running: {', '.join(pending)}"
        return True, f"{len(pods)} pods running"


class HelmReleaseHealthChecker(HealthChecker):
    """A Helm release and the pods it owns."""

    gating = ('release-deployed',)

    def __init__(self, component: str, cluster, helm, release: str, namespace: str,
                 selector: Optional[str] = None):
        self.component = component
        self.cluster = cluster
        self.helm = helm
        self.release = release
        self.namespace = namespace
        self.selector = selector or f"app.kubernetes.io/instance={release}"

    def checks(self) -> List[SubCheck]:
        return [
            ('release-deployed', self._release),
            ('pods-running', self._pods_running),
            ('readiness-probes', self._pods_ready),
        ]

    def _release(self):
        try:
            info = self.helm.release(self.release, self.namespace)
        except InfraError as e:
            return False, e.reason
        if info is None:
            return False, f"release {self.release} not found in {self.namespace}"
        if not info.deployed:
            return False, f"release {self.release} is {info.status}"
        return True, f"release {self.release} revision {info.revision} deployed"

    def _pods(self):
        return self.cluster.list_pods(self.namespace, self.selector)

    def _pods_running(self):
        pods = self._pods()
        if not pods:
            return False, f"no pods match {self.selector}"
        waiting = [f"{p.name} ({p.phase})" for p in pods if not p.running and p.phase != 'Succeeded']
        if waiting:
            return False, f"not running: {', '.join(waiting)}"
        return True, f"{len(pods)} pods running"

    def _pods_ready(self):
        pods = [p for p in self._pods() if p.phase != 'Succeeded']
        if not pods:
            return False, "no pods to probe"
        unready = [p.name for p in pods if not p.ready]
        if unready:
            return False, f"not ready: {', '.join(unready)}"
        return True, f"{len(pods)} pods ready"


def wait_until_healthy(
    checker: HealthChecker,
    timeout: float,
    interval: float = 3.0,
    cancel: Optional[CancelToken] = None,
    accept_degraded: bool = False,
) -> HealthCheckResult:
    """Poll ``checker`` until it reports healthy.

    Args:
        checker: Health checker to poll
        timeout: Seconds before giving up
        interval: Seconds between polls
        cancel: Optional cancellation token
        accept_degraded: Also return on a degraded result

    Returns:
        The first healthy (or accepted degraded) result

    Raises:
        FatalError: wrapping :class:`InfraTimeoutError` with the last result,
            raised as soon as the next poll would start after the deadline
    """
    token = cancel or CancelToken()
    deadline = time.monotonic() + timeout
    polls = 0

    while True:
        token.check(checker.component)
        result = checker.check()
        polls += 1
        logger.debug("Health poll %d for %s: %s (%s)", polls, checker.component, result.status.value, result.message)

        if result.healthy or (accept_degraded and result.status == HealthStatus.DEGRADED):
            logger.info("💚 %s is %s after %d poll(s)", checker.component, result.status.value, polls)
            return result

        if time.monotonic() + interval > deadline:
            logger.error("⏰ %s not healthy after %.0fs: %s", checker.component, timeout, result.message)
            raise InfraTimeoutError(
                checker.component, f"wait for {checker.component} to become healthy", timeout, last_result=result,
            ).fatal()

        logger.info("⏳ Waiting for %s: %s", checker.component, result.message)
        if token.sleep(interval):
            token.check(checker.component)
