"""Common installer lifecycle.

Every component goes through the same steps::

    PreFlight -> detect -> deploy -> WaitForReady -> Validate -> configure -> PostInstall -> commit

Any failure after pre-flight rolls back the resources tracked so far and
re-raises the original error, stamped with the phase it happened in.
"""

import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar

import requests

from ....utils import redact_sensitive_data
from ..config import RaibidConfig, deep_merge
from ..errors import HealthCheckError, InfraError, InstallationError, NetworkError
from ..health import HealthChecker, HelmReleaseHealthChecker, wait_until_healthy
from ..models import Component, HealthCheckResult, InstallPhase, InstallResult, ReleaseInfo
from ..preflight import PreFlightResult, PreFlightValidator, SystemRequirements, requirements_for
from ..retry import CancelToken, RetryConfig, retry
from ..rollback import RollbackContext, RollbackManager
from ..state import StateStore, remove_credentials

T = TypeVar('T')

MANAGED_LABELS = {'app.kubernetes.io/managed-by': 'raibid'}


class ComponentInstaller:
    """Installs, validates and removes one component."""

    component: Component

    def __init__(
        self,
        config: RaibidConfig,
        cluster=None,
        helm=None,
        state: Optional[StateStore] = None,
        cancel: Optional[CancelToken] = None,
        runner=None,
        http: Optional[requests.Session] = None,
        retry_config: Optional[RetryConfig] = None,
        poll_interval: float = 3.0,
    ):
        self.config = config
        self.settings = config.section(self.component)
        self.cluster = cluster.bind(self.name) if cluster is not None else None
        self.helm = helm.bind(self.name) if helm is not None else None
        self.state = state or StateStore(config.state_path / 'state.json')
        self.cancel = cancel or CancelToken()
        self.runner = runner
        self.http = http or requests.Session()
        self.retry_config = retry_config or RetryConfig.slow()
        self.poll_interval = poll_interval
        self.phase = InstallPhase.PRE_FLIGHT
        self.logger = logging.getLogger(f"raibid.installers.{self.name}")

    @property
    def name(self) -> str:
        return self.component.value

    @property
    def state_dir(self) -> Path:
        return self.config.state_path

    # -- steps every installer shares -------------------------------------

    def requirements(self) -> SystemRequirements:
        reqs = requirements_for(self.component, self.settings.requirements)
        if reqs.disk_path == '.':
            reqs = reqs.with_overrides({'disk_path': str(self.state_dir)})
        return reqs

    def preflight(self, dry_run: bool = False) -> PreFlightResult:
        validator = PreFlightValidator(self.requirements(), http=self.http, create_directories=not dry_run)
        return validator.validate(self.name)

    def step(self, phase: InstallPhase, operation: str, fn: Callable[[], T],
             config: Optional[RetryConfig] = None) -> T:
        """Run one retried sub-step attributed to ``phase``."""
        self.phase = phase
        return retry(config or self.retry_config, f"{self.name}: {operation}", fn,
                     cancel=self.cancel, component=self.name)

    def http_request(self, method: str, url: str, **kwargs) -> requests.Response:
        """HTTP call whose connection failures are classified transient."""
        kwargs.setdefault('timeout', 10)
        try:
            return self.http.request(method, url, **kwargs)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise NetworkError(self.name, url, e.__class__.__name__).transient() from None
        except requests.RequestException as e:
            raise NetworkError(self.name, url, str(e)).fatal() from None

    # -- hooks ------------------------------------------------------------

    def detect(self) -> Dict[str, Any]:
        """What is already present on the host/cluster."""
        return {}

    def is_unchanged(self, existing: Dict[str, Any]) -> bool:
        return False

    def deploy(self, ctx: RollbackContext, existing: Dict[str, Any]) -> None:
        raise NotImplementedError

    def health_checker(self) -> HealthChecker:
        raise NotImplementedError

    def validate(self, ctx: RollbackContext) -> None:
        """Component post-conditions, after the component reports healthy."""

    def configure(self, ctx: RollbackContext) -> None:
        """Objects that need a validated component, e.g. custom resources."""

    def post_install(self, ctx: RollbackContext) -> Optional[Path]:
        """Write credentials; returns the credentials file, if any."""
        return None

    def plan(self) -> List[str]:
        raise NotImplementedError

    def uninstall(self) -> None:
        raise NotImplementedError

    def uninstall_plan(self) -> List[str]:
        raise NotImplementedError

    # -- lifecycle --------------------------------------------------------

    def wait_until_ready(self) -> HealthCheckResult:
        self.phase = InstallPhase.BOOTSTRAP
        return wait_until_healthy(
            self.health_checker(), self.settings.timeout,
            interval=self.poll_interval, cancel=self.cancel,
        )

    def recorded_version(self) -> Optional[str]:
        return self.settings.version

    def install(self) -> InstallResult:
        """Run the full lifecycle.

        Raises:
            InfraError: classified, with ``phase`` set to where it failed
        """
        started = time.monotonic()
        self.phase = InstallPhase.PRE_FLIGHT
        self.logger.info("🚀 Installing %s", self.name)
        try:
            self.preflight()
            existing = self.detect()
        except InfraError as e:
            raise e.with_phase(InstallPhase.PRE_FLIGHT)

        if self.is_unchanged(existing):
            self.logger.info("✅ %s is already installed and healthy", self.name)
            self.state.record_installed(self.component, self.recorded_version(),
                                        self.settings.namespace, self.settings.release)
            return InstallResult(self.component, 'unchanged', time.monotonic() - started,
                                 health=existing.get('health'))

        with RollbackManager(self.name) as rollback:
            ctx = RollbackContext(rollback, cluster=self.cluster, helm=self.helm, runner=self.runner)
            try:
                self.phase = InstallPhase.INSTALLATION
                self.deploy(ctx, existing)
                health = self.wait_until_ready()
                self.phase = InstallPhase.VALIDATION
                self.validate(ctx)
                self.phase = InstallPhase.CONFIGURATION
                self.configure(ctx)
                self.phase = InstallPhase.POST_INSTALL
                credentials = self.post_install(ctx)
                self.state.record_installed(self.component, self.recorded_version(),
                                            self.settings.namespace, self.settings.release)
            except InfraError as e:
                raise e.with_phase(self.phase)
            except (OSError, ValueError, KeyError, TypeError) as e:
                raise InstallationError(
                    self.name, self.phase, f"unexpected {e.__class__.__name__}: {e}",
                    "Re-run with --debug and check the log for the full traceback",
                ).fatal() from e
            rollback.commit()

        action = 'upgraded' if self.was_present(existing) else 'installed'
        duration = time.monotonic() - started
        self.logger.info("✅ %s %s in %.1fs", self.name, action, duration)
        return InstallResult(self.component, action, duration, health=health, credentials_path=credentials)

    def was_present(self, existing: Dict[str, Any]) -> bool:
        return bool(existing.get('release') or existing.get('binary'))


class HelmComponentInstaller(ComponentInstaller):
    """Component delivered as a Helm chart into its own namespace."""

    #: Label selector for the component's main pods; defaults to the release
    selector: Optional[str] = None

    def chart_values(self) -> Dict[str, Any]:
        return {}

    def values(self) -> Dict[str, Any]:
        return deep_merge(self.chart_values(), self.settings.values)

    def health_checker(self) -> HealthChecker:
        return HelmReleaseHealthChecker(
            self.name, self.cluster, self.helm, self.settings.release, self.settings.namespace,
            selector=self.selector,
        )

    def detect(self) -> Dict[str, Any]:
        s = self.settings
        release: Optional[ReleaseInfo] = self.step(
            InstallPhase.PRE_FLIGHT, f"look up release {s.release}",
            lambda: self.helm.release(s.release, s.namespace),
        )
        namespace = self.step(
            InstallPhase.PRE_FLIGHT, f"look up namespace {s.namespace}",
            lambda: self.cluster.namespace_exists(s.namespace),
        )
        if release:
            self.logger.info("🔍 Found release %s revision %d (%s)", s.release, release.revision, release.status)
        return {'namespace': namespace, 'release': release}

    def deploy(self, ctx: RollbackContext, existing: Dict[str, Any]) -> None:
        s = self.settings
        self.step(InstallPhase.INSTALLATION, f"add Helm repository {s.repo_name}", lambda: self.helm.repo_add(s.repo_name, s.repo_url))
        self.step(InstallPhase.INSTALLATION, f"update Helm repository {s.repo_name}", lambda: self.helm.repo_update(s.repo_name))

        if not existing.get('namespace'):
            self.step(
                InstallPhase.INSTALLATION, f"create namespace {s.namespace}",
                lambda: self.cluster.create_namespace(s.namespace, labels=MANAGED_LABELS),
            )
            ctx.track_namespace(s.namespace)

        release: Optional[ReleaseInfo] = existing.get('release')
        # Registered first so that a half-applied release is cleaned up too
        ctx.track_helm_release(s.release, s.namespace, previous_revision=release.revision if release else None)
        values = self.values()
        self.logger.debug("Values for %s: %s", s.release, redact_sensitive_data(values))
        self.step(
            InstallPhase.INSTALLATION, f"install chart {s.chart}",
            lambda: self.helm.upgrade_install(
                s.release, s.chart, s.namespace, values,
                version=s.version, timeout=s.helm_timeout, wait=False,
            ),
        )

    def plan(self) -> List[str]:
        s = self.settings
        chart = f"{s.chart} {s.version}" if s.version else s.chart
        return [
            f"add Helm repository {s.repo_name} ({s.repo_url})",
            f"create namespace {s.namespace} if missing",
            f"helm upgrade --install {s.release} {chart} in {s.namespace}",
            f"wait up to {s.timeout}s for {s.release} to become healthy",
        ]

    def uninstall_plan(self) -> List[str]:
        s = self.settings
        return [
            f"helm uninstall {s.release} in {s.namespace}",
            f"delete namespace {s.namespace}",
            f"remove {self.state_dir / (self.name + '-credentials.json')} if present",
        ]

    def uninstall(self) -> None:
        s = self.settings
        self.logger.info("🗑️  Removing %s", self.name)
        self.step(InstallPhase.INSTALLATION, f"uninstall release {s.release}", lambda: self.helm.uninstall(s.release, s.namespace))
        self.step(InstallPhase.INSTALLATION, f"delete namespace {s.namespace}", lambda: self.cluster.delete_namespace(s.namespace))
        remove_credentials(self.state_dir, self.name)
        self.state.record_removed(self.component)

    def find_pod(self, selector: Optional[str] = None) -> str:
        """Name of a running pod matching ``selector``."""
        selector = selector or self.selector or f"app.kubernetes.io/instance={self.settings.release}"
        pods = [p for p in self.cluster.list_pods(self.settings.namespace, selector) if p.running]
        if not pods:
            raise HealthCheckError(
                self.name, f"no running pod matches {selector} in {self.settings.namespace}",
            ).transient()
        return pods[0].name
