"""Runs installers in dependency order and reports what happened."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

import requests

from .cluster import HelmClient, KubernetesClusterClient
from .config import RaibidConfig
from .dependencies import PRIORITY, missing_dependencies, order, teardown_order
from .errors import InfraError
from .installers import ComponentInstaller, build_installer
from .models import Component, HealthCheckResult, HealthStatus, InstallResult
from .retry import CancelToken, RetryConfig
from .shell import SystemRunner
from .state import StateStore

logger = logging.getLogger("raibid.orchestrator")


@dataclass
class SetupReport:
    succeeded: List[Component] = field(default_factory=list)
    failed: Optional[Component] = None
    error: Optional[InfraError] = None
    not_attempted: List[Component] = field(default_factory=list)
    results: Dict[Component, InstallResult] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class TeardownReport:
    removed: List[Component] = field(default_factory=list)
    failed: Optional[Component] = None
    error: Optional[InfraError] = None
    not_attempted: List[Component] = field(default_factory=list)
    plans: Dict[Component, List[str]] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class ComponentStatus:
    component: Component
    installed: bool
    health: HealthCheckResult
    missing_dependencies: List[Component] = field(default_factory=list)
    recorded: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'component': self.component.value,
            'installed': self.installed,
            'health': self.health.to_dict(),
            'missing_dependencies': [c.value for c in self.missing_dependencies],
            'recorded': self.recorded,
        }


class Orchestrator:
    """Entry point for setup, teardown and status of the whole stack.

    Installations are sequential; each component gets its own installer and
    therefore its own rollback scope.
    """

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
        self.cluster = cluster or KubernetesClusterClient(config.kubeconfig)
        self.helm = helm or HelmClient(kubeconfig=config.kubeconfig)
        self.state = state or StateStore(config.state_path / 'state.json').load()
        self.cancel = cancel or CancelToken()
        self.runner = runner or SystemRunner(use_sudo=config.k3s.mode == 'root')
        self.http = http or requests.Session()
        self.retry_config = retry_config
        self.poll_interval = poll_interval

    def installer(self, component: Component) -> ComponentInstaller:
        return build_installer(
            component, self.config,
            cluster=self.cluster, helm=self.helm, state=self.state, cancel=self.cancel,
            runner=self.runner, http=self.http, retry_config=self.retry_config,
            poll_interval=self.poll_interval,
        )

    def setup(self, names: Iterable[str], dry_run: bool = False) -> SetupReport:
        """Install ``names`` in dependency order, stopping at the first failure.

        With ``dry_run`` only pre-flight checks run and each result carries
        the planned steps.
        """
        requested = Component.expand(names)
        report = SetupReport()
        try:
            ordered = order(requested, installed=self.state.installed())
        except InfraError as e:
            report.error = e
            report.not_attempted = requested
            return report

        logger.info("📋 Setup order: %s", " -> ".join(c.value for c in ordered))
        for index, component in enumerate(ordered):
            installer = self.installer(component)
            try:
                if dry_run:
                    installer.preflight(dry_run=True)
                    report.results[component] = InstallResult(component, 'planned', steps=installer.plan())
                else:
                    report.results[component] = installer.install()
            except InfraError as e:
                logger.error("❌ %s failed during %s: %s", component.value,
                             e.phase.label if e.phase else "unknown phase", e.reason)
                if not dry_run:
                    self.state.record_failed(component, e.reason)
                report.failed = component
                report.error = e
                report.not_attempted = ordered[index + 1:]
                return report
            report.succeeded.append(component)
        return report

    def teardown(self, names: Iterable[str], dry_run: bool = False) -> TeardownReport:
        """Remove ``names`` in reverse dependency order."""
        requested = Component.expand(names)
        report = TeardownReport()
        try:
            ordered = teardown_order(requested, installed=self.state.installed())
        except InfraError as e:
            report.error = e
            report.not_attempted = requested
            return report

        for index, component in enumerate(ordered):
            installer = self.installer(component)
            if dry_run:
                report.plans[component] = installer.uninstall_plan()
                report.removed.append(component)
                continue
            try:
                installer.uninstall()
            except InfraError as e:
                logger.error("❌ Teardown of %s failed: %s", component.value, e.reason)
                report.failed = component
                report.error = e
                report.not_attempted = ordered[index + 1:]
                return report
            logger.info("🗑️  %s removed", component.value)
            report.removed.append(component)
        return report

    def status(self, names: Optional[Iterable[str]] = None) -> List[ComponentStatus]:
        components = Component.expand(names) if names else list(PRIORITY)
        installed = self.state.installed()
        statuses = []
        for component in components:
            try:
                health = self.installer(component).health_checker().check()
            except InfraError as e:
                health = HealthCheckResult(component.value, HealthStatus.UNKNOWN, e.reason)
            statuses.append(ComponentStatus(
                component=component,
                installed=component in installed,
                health=health,
                missing_dependencies=missing_dependencies(component, installed),
                recorded=self.state.get(component),
            ))
        return statuses
