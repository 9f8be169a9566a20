"""Redis with the job stream and consumer group the build agents read from."""

from pathlib import Path
from typing import Any, Dict, List, Optional

from ....utils import generate_password
from ..errors import HealthCheckError
from ..models import Component, InstallPhase
from ..rollback import RollbackContext
from ..state import credentials_path, read_credentials, write_credentials
from .base import HelmComponentInstaller

REDIS_PORT = 6379


class RedisInstaller(HelmComponentInstaller):
    component = Component.REDIS

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._password: Optional[str] = None

    @property
    def selector(self) -> str:
        return f"app.kubernetes.io/instance={self.settings.release},app.kubernetes.io/component=master"

    @property
    def password(self) -> str:
        # Reuse the password from a previous run so upgrades keep working
        if self._password is None:
            existing = read_credentials(self.state_dir, self.name) or {}
            self._password = existing.get('password') or generate_password()
        return self._password

    @property
    def host(self) -> str:
        return f"{self.settings.release}-master.{self.settings.namespace}.svc.cluster.local"

    @property
    def url(self) -> str:
        return f"redis://{self.host}:{REDIS_PORT}"

    def chart_values(self) -> Dict[str, Any]:
        return {
            'architecture': 'standalone',
            'auth': {'enabled': True, 'password': self.password},
            'master': {
                'persistence': {'enabled': True, 'size': self.settings.persistence_size},
            },
            'replica': {'replicaCount': 0},
        }

    def redis_cli(self, pod: str, *args: str) -> str:
        command = ['redis-cli', '-a', self.password, '--no-auth-warning'] + list(args)
        return (self.cluster.exec_in_pod(self.settings.namespace, pod, command) or '').strip()

    def validate(self, ctx: RollbackContext) -> None:
        s = self.settings
        pod = self.step(InstallPhase.VALIDATION, "find Redis master pod", self.find_pod)

        def ping():
            reply = self.redis_cli(pod, 'PING')
            if 'PONG' not in reply:
                raise HealthCheckError(self.name, f"PING returned '{reply}' instead of PONG").transient()
            return reply

        self.step(InstallPhase.VALIDATION, "PING", ping)

        def create_group():
            reply = self.redis_cli(pod, 'XGROUP', 'CREATE', s.stream, s.group, '$', 'MKSTREAM')
            if 'BUSYGROUP' in reply:
                self.logger.info("Consumer group %s already exists on %s", s.group, s.stream)
            elif 'OK' not in reply:
                raise HealthCheckError(
                    self.name, f"XGROUP CREATE {s.stream} {s.group} failed: {reply}",
                    suggestion=f"Inspect the stream with 'kubectl exec -n {s.namespace} {pod} -- redis-cli XINFO STREAM {s.stream}'",
                ).fatal()
            else:
                self.logger.info("✅ Created consumer group %s on %s", s.group, s.stream)

        self.step(InstallPhase.VALIDATION, "create consumer group", create_group)

        def check_group():
            reply = self.redis_cli(pod, 'XINFO', 'GROUPS', s.stream)
            if s.group not in reply:
                raise HealthCheckError(self.name, f"consumer group {s.group} not listed for {s.stream}").fatal()

        self.step(InstallPhase.VALIDATION, "verify consumer group", check_group)

    def post_install(self, ctx: RollbackContext) -> Optional[Path]:
        s = self.settings
        if read_credentials(self.state_dir, self.name) is None:
            ctx.track_file(credentials_path(self.state_dir, self.name))
        return write_credentials(self.state_dir, self.name, {
            'url': self.url,
            'host': self.host,
            'port': REDIS_PORT,
            'password': self.password,
            'namespace': s.namespace,
            'stream': s.stream,
            'group': s.group,
        })

    def plan(self) -> List[str]:
        s = self.settings
        return super().plan() + [
            f"PING Redis and create consumer group {s.group} on stream {s.stream}",
            f"write credentials to {self.state_dir / 'redis-credentials.json'}",
        ]
