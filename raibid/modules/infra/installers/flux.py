"""Flux, syncing the cluster from the GitOps repository in Gitea."""

import time
from typing import Any, Dict, List, Optional

from ..errors import PrerequisiteMissingError
from ..models import Component, InstallPhase
from ..retry import poll_until
from ..rollback import RollbackContext
from ..state import read_credentials
from .base import MANAGED_LABELS, HelmComponentInstaller

SOURCE_API = ('source.toolkit.fluxcd.io', 'v1')
KUSTOMIZE_API = ('kustomize.toolkit.fluxcd.io', 'v1')

GIT_SECRET = 'gitea-credentials'
GIT_REPOSITORY = 'raibid-infrastructure'
KUSTOMIZATION = 'raibid-ci-infrastructure'

FLUX_CRDS = (
    f"gitrepositories.{SOURCE_API[0]}",
    f"kustomizations.{KUSTOMIZE_API[0]}",
)


def is_ready(obj: Optional[Dict[str, Any]]) -> bool:
    """True when a Flux object reports condition Ready=True."""
    if not obj:
        return False
    for condition in obj.get('status', {}).get('conditions', []):
        if condition.get('type') == 'Ready':
            return condition.get('status') == 'True'
    return False


def ready_message(obj: Optional[Dict[str, Any]]) -> str:
    if not obj:
        return 'not found'
    for condition in obj.get('status', {}).get('conditions', []):
        if condition.get('type') == 'Ready':
            return condition.get('message', condition.get('reason', ''))
    return 'no Ready condition yet'


class FluxInstaller(HelmComponentInstaller):
    component = Component.FLUX

    @property
    def selector(self) -> str:
        return f"app.kubernetes.io/instance={self.settings.release}"

    def chart_values(self) -> Dict[str, Any]:
        # Image automation is not used
        return {
            'imageAutomationController': {'create': False},
            'imageReflectionController': {'create': False},
        }

    def git_password(self) -> str:
        s = self.settings
        if s.gitea_password:
            return s.gitea_password
        gitea = read_credentials(self.state_dir, Component.GITEA.value)
        if not gitea or not gitea.get('password'):
            raise PrerequisiteMissingError(
                self.name, [Component.GITEA.value],
                suggestion="Run 'raibid setup gitea' first or set flux.gitea_password in the configuration",
                phase=InstallPhase.CONFIGURATION,
            ).fatal()
        return gitea['password']

    def manifests(self) -> List[Dict[str, Any]]:
        s = self.settings

        def meta(name):
            return {'name': name, 'namespace': s.namespace, 'labels': dict(MANAGED_LABELS)}

        return [
            {
                'apiVersion': 'v1',
                'kind': 'Secret',
                'metadata': meta(GIT_SECRET),
                'type': 'Opaque',
                'stringData': {'username': s.gitea_username, 'password': self.git_password()},
            },
            {
                'apiVersion': '/'.join(SOURCE_API),
                'kind': 'GitRepository',
                'metadata': meta(GIT_REPOSITORY),
                'spec': {
                    'interval': s.interval,
                    'url': s.git_url,
                    'ref': {'branch': s.branch},
                    'secretRef': {'name': GIT_SECRET},
                },
            },
            {
                'apiVersion': '/'.join(KUSTOMIZE_API),
                'kind': 'Kustomization',
                'metadata': meta(KUSTOMIZATION),
                'spec': {
                    'interval': s.interval,
                    'path': s.path,
                    'prune': True,
                    'sourceRef': {'kind': 'GitRepository', 'name': GIT_REPOSITORY},
                },
            },
        ]

    def deploy(self, ctx: RollbackContext, existing: Dict[str, Any]) -> None:
        super().deploy(ctx, existing)
        self.wait_for_crds()
        for manifest in self.manifests():
            kind, name = manifest['kind'], manifest['metadata']['name']
            created = self.step(InstallPhase.CONFIGURATION, f"apply {kind} {name}",
                                lambda m=manifest: self.cluster.apply(m))
            if created:
                ctx.track_object(manifest['apiVersion'], kind, name, self.settings.namespace)

    def wait_for_crds(self) -> None:
        """Block until the chart's CRDs are registered; the release is installed without --wait."""
        self.phase = InstallPhase.INSTALLATION

        def registered():
            missing = [crd for crd in FLUX_CRDS if not self.cluster.crd_exists(crd)]
            if missing:
                self.logger.info("⏳ Waiting for CRDs: %s", ", ".join(missing))
                return False
            return True

        poll_until(self.name, "Flux CRDs registered", registered,
                   timeout=self.settings.timeout, interval=self.poll_interval, cancel=self.cancel)

    def _get(self, api, plural: str, name: str) -> Optional[Dict[str, Any]]:
        group, version = api
        return self.cluster.get_custom_object(group, version, self.settings.namespace, plural, name)

    def validate(self, ctx: RollbackContext) -> None:
        self.phase = InstallPhase.VALIDATION
        # One deadline for both objects
        deadline = time.monotonic() + self.settings.timeout
        for api, plural, name in (
            (SOURCE_API, 'gitrepositories', GIT_REPOSITORY),
            (KUSTOMIZE_API, 'kustomizations', KUSTOMIZATION),
        ):
            def ready(api=api, plural=plural, name=name):
                obj = self._get(api, plural, name)
                if not is_ready(obj):
                    self.logger.info("⏳ %s %s: %s", plural, name, ready_message(obj))
                    return False
                return True

            poll_until(self.name, f"{plural}/{name} Ready", ready,
                       timeout=max(deadline - time.monotonic(), 0), interval=self.poll_interval,
                       cancel=self.cancel)
            self.logger.info("✅ %s %s is Ready", plural, name)

    def uninstall(self) -> None:
        s = self.settings
        # Delete the sources first so the controllers can run their finalizers
        if self.cluster.crd_exists(FLUX_CRDS[1]):
            self.step(InstallPhase.INSTALLATION, f"delete Kustomization {KUSTOMIZATION}",
                      lambda: self.cluster.delete_object('/'.join(KUSTOMIZE_API), 'Kustomization', KUSTOMIZATION, s.namespace))
        if self.cluster.crd_exists(FLUX_CRDS[0]):
            self.step(InstallPhase.INSTALLATION, f"delete GitRepository {GIT_REPOSITORY}",
                      lambda: self.cluster.delete_object('/'.join(SOURCE_API), 'GitRepository', GIT_REPOSITORY, s.namespace))
        super().uninstall()

    def plan(self) -> List[str]:
        s = self.settings
        return super().plan() + [
            f"apply Secret {GIT_SECRET}, GitRepository {GIT_REPOSITORY} ({s.git_url}) "
            f"and Kustomization {KUSTOMIZATION} in {s.namespace}",
            f"wait for {GIT_REPOSITORY} and {KUSTOMIZATION} to report Ready",
        ]

    def uninstall_plan(self) -> List[str]:
        s = self.settings
        return [
            f"delete Kustomization {KUSTOMIZATION} in {s.namespace}",
            f"delete GitRepository {GIT_REPOSITORY} in {s.namespace}",
        ] + super().uninstall_plan()
