"""KEDA and the ScaledJob that spawns build agents from the Redis job stream."""

from typing import Any, Dict, List

from ..errors import HealthCheckError, PrerequisiteMissingError
from ..models import Component, InstallPhase
from ..rollback import RollbackContext
from ..state import read_credentials
from .base import MANAGED_LABELS, HelmComponentInstaller

KEDA_CRDS = (
    'scaledobjects.keda.sh',
    'scaledjobs.keda.sh',
    'triggerauthentications.keda.sh',
)

KEDA_API = 'keda.sh/v1alpha1'
AGENT_JOB = 'raibid-agent'
REDIS_AUTH = 'raibid-redis-auth'

AGENT_OBJECTS = (
    ('v1', 'Secret', REDIS_AUTH),
    (KEDA_API, 'TriggerAuthentication', REDIS_AUTH),
    (KEDA_API, 'ScaledJob', AGENT_JOB),
)


class KedaInstaller(HelmComponentInstaller):
    component = Component.KEDA

    def validate(self, ctx: RollbackContext) -> None:
        def check_crds():
            missing = [crd for crd in KEDA_CRDS if not self.cluster.crd_exists(crd)]
            if missing:
                raise HealthCheckError(
                    self.name, f"CRDs not registered: {', '.join(missing)}",
                    suggestion=(
                        f"Check the {self.settings.release} release with "
                        f"'helm status {self.settings.release} -n {self.settings.namespace}'; "
                        "the chart may have been installed with --skip-crds"
                    ),
                ).fatal()

        self.step(InstallPhase.VALIDATION, "check KEDA CRDs", check_crds)

    def agent_manifests(self, redis: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Secret, TriggerAuthentication and ScaledJob for the build agents."""
        s = self.settings
        namespace = s.agent_namespace
        address = f"{redis['host']}:{redis['port']}"
        return [
            {
                'apiVersion': 'v1',
                'kind': 'Secret',
                'metadata': {'name': REDIS_AUTH, 'namespace': namespace, 'labels': dict(MANAGED_LABELS)},
                'type': 'Opaque',
                'stringData': {'password': redis['password']},
            },
            {
                'apiVersion': KEDA_API,
                'kind': 'TriggerAuthentication',
                'metadata': {'name': REDIS_AUTH, 'namespace': namespace, 'labels': dict(MANAGED_LABELS)},
                'spec': {
                    'secretTargetRef': [{'parameter': 'password', 'name': REDIS_AUTH, 'key': 'password'}],
                },
            },
            {
                'apiVersion': KEDA_API,
                'kind': 'ScaledJob',
                'metadata': {'name': AGENT_JOB, 'namespace': namespace, 'labels': dict(MANAGED_LABELS)},
                'spec': {
                    'jobTargetRef': {
                        'parallelism': 1,
                        'completions': 1,
                        'backoffLimit': 0,
                        'template': {
                            'spec': {
                                'restartPolicy': 'Never',
                                'containers': [{
                                    'name': AGENT_JOB,
                                    'image': s.agent_image,
                                    'env': [
                                        {'name': 'REDIS_URL', 'value': redis['url']},
                                        {'name': 'RAIBID_STREAM', 'value': redis['stream']},
                                        {'name': 'RAIBID_GROUP', 'value': redis['group']},
                                        {
                                            'name': 'REDIS_PASSWORD',
                                            'valueFrom': {'secretKeyRef': {'name': REDIS_AUTH, 'key': 'password'}},
                                        },
                                    ],
                                }],
                            },
                        },
                    },
                    'pollingInterval': s.polling_interval,
                    'maxReplicaCount': s.max_replicas,
                    'successfulJobsHistoryLimit': 5,
                    'failedJobsHistoryLimit': 5,
                    'triggers': [{
                        'type': 'redis-streams',
                        'metadata': {
                            'address': address,
                            'stream': redis['stream'],
                            'consumerGroup': redis['group'],
                            'pendingEntriesCount': str(s.pending_entries),
                        },
                        'authenticationRef': {'name': REDIS_AUTH},
                    }],
                },
            },
        ]

    def configure(self, ctx: RollbackContext) -> None:
        s = self.settings
        if not s.scaled_job:
            self.logger.info("Agent ScaledJob disabled; skipping")
            return

        redis = read_credentials(self.state_dir, Component.REDIS.value)
        if not redis:
            raise PrerequisiteMissingError(
                self.name, [Component.REDIS.value],
                suggestion="Run 'raibid setup redis' so its credentials file exists, then re-run",
                phase=InstallPhase.CONFIGURATION,
            ).fatal()

        if not self.step(InstallPhase.CONFIGURATION, f"look up namespace {s.agent_namespace}",
                         lambda: self.cluster.namespace_exists(s.agent_namespace)):
            self.step(
                InstallPhase.CONFIGURATION, f"create namespace {s.agent_namespace}",
                lambda: self.cluster.create_namespace(s.agent_namespace, labels=MANAGED_LABELS),
            )
            ctx.track_namespace(s.agent_namespace)

        for manifest in self.agent_manifests(redis):
            kind, name = manifest['kind'], manifest['metadata']['name']
            created = self.step(InstallPhase.CONFIGURATION, f"apply {kind} {name}",
                                lambda m=manifest: self.cluster.apply(m))
            if created:
                ctx.track_object(manifest['apiVersion'], kind, name, s.agent_namespace)

    def uninstall(self) -> None:
        s = self.settings
        have_crds = self.cluster.crd_exists('scaledjobs.keda.sh')
        for api_version, kind, name in reversed(AGENT_OBJECTS):
            if api_version == KEDA_API and not have_crds:
                continue
            self.step(
                InstallPhase.INSTALLATION, f"delete {kind} {name}",
                lambda a=api_version, k=kind, n=name: self.cluster.delete_object(a, k, n, s.agent_namespace),
            )
        super().uninstall()

    def plan(self) -> List[str]:
        s = self.settings
        steps = super().plan() + [f"check CRDs {', '.join(KEDA_CRDS)}"]
        if s.scaled_job:
            steps.append(
                f"apply ScaledJob {AGENT_JOB} in {s.agent_namespace} "
                f"(redis-streams trigger, max {s.max_replicas} agents)"
            )
        return steps

    def uninstall_plan(self) -> List[str]:
        objects = [f"delete {kind} {name} in {self.settings.agent_namespace}"
                   for _, kind, name in reversed(AGENT_OBJECTS)]
        return objects + super().uninstall_plan()
