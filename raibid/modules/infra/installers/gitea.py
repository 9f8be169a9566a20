"""Gitea, the Git server hosting the GitOps repository."""

from pathlib import Path
from typing import Any, Dict, List, Optional

from ....utils import generate_password
from ..errors import HealthCheckError, NetworkError
from ..models import Component, InstallPhase
from ..rollback import RollbackContext
from ..state import credentials_path, read_credentials, write_credentials
from .base import HelmComponentInstaller


class GiteaInstaller(HelmComponentInstaller):
    component = Component.GITEA

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._password: Optional[str] = None

    @property
    def selector(self) -> str:
        return f"app.kubernetes.io/instance={self.settings.release},app.kubernetes.io/name=gitea"

    @property
    def password(self) -> str:
        if self._password is None:
            existing = read_credentials(self.state_dir, self.name) or {}
            self._password = existing.get('password') or generate_password()
        return self._password

    @property
    def base_url(self) -> str:
        return self.settings.external_url.rstrip('/')

    def chart_values(self) -> Dict[str, Any]:
        s = self.settings
        return {
            'gitea': {
                'admin': {'username': s.admin_user, 'password': self.password, 'email': s.admin_email},
                'config': {
                    'server': {'ROOT_URL': f"{self.base_url}/"},
                    'database': {'DB_TYPE': 'sqlite3'},
                    'session': {'PROVIDER': 'memory'},
                    'cache': {'ADAPTER': 'memory'},
                    'queue': {'TYPE': 'level'},
                },
            },
            'service': {
                'http': {'type': 'NodePort', 'nodePort': s.http_node_port},
                'ssh': {'type': 'NodePort', 'nodePort': s.ssh_node_port},
            },
            'persistence': {'enabled': True, 'size': s.persistence_size},
            # Single host: sqlite instead of the bundled HA databases
            'postgresql-ha': {'enabled': False},
            'postgresql': {'enabled': False},
            'redis-cluster': {'enabled': False},
            'redis': {'enabled': False},
        }

    def _check_healthz(self) -> None:
        url = f"{self.base_url}/api/healthz"
        response = self.http_request('GET', url)
        if response.status_code >= 500:
            raise NetworkError(self.name, url, f"HTTP {response.status_code}").transient()
        if response.status_code != 200:
            raise HealthCheckError(
                self.name, f"{url} returned HTTP {response.status_code}",
                suggestion=f"Check that NodePort {self.settings.http_node_port} is not used by another service",
            ).fatal()

    def _ensure_repository(self) -> bool:
        """Create the GitOps repository; returns True if it was created."""
        s = self.settings
        auth = (s.admin_user, self.password)
        repo_url = f"{self.base_url}/api/v1/repos/{s.admin_user}/{s.gitops_repo}"

        response = self.http_request('GET', repo_url, auth=auth)
        if response.status_code == 200:
            self.logger.info("📁 GitOps repository %s already exists", s.gitops_repo)
            return False
        if response.status_code != 404:
            self._raise_for_api(repo_url, response)

        create_url = f"{self.base_url}/api/v1/user/repos"
        response = self.http_request('POST', create_url, auth=auth, json={
            'name': s.gitops_repo,
            'description': 'raibid GitOps repository',
            'private': True,
            'auto_init': True,
            'default_branch': 'main',
        })
        if response.status_code == 409:
            return False
        if response.status_code != 201:
            self._raise_for_api(create_url, response)
        self.logger.info("✅ Created GitOps repository %s", s.gitops_repo)
        return True

    def _raise_for_api(self, url: str, response) -> None:
        if response.status_code >= 500:
            raise NetworkError(self.name, url, f"HTTP {response.status_code}").transient()
        raise HealthCheckError(
            self.name, f"Gitea API {url} returned HTTP {response.status_code}: {response.text[:200]}",
            suggestion=f"Verify the {self.settings.admin_user} credentials in {credentials_path(self.state_dir, self.name)}",
        ).fatal()

    def validate(self, ctx: RollbackContext) -> None:
        self.step(InstallPhase.VALIDATION, "check /api/healthz", self._check_healthz)
        self.step(InstallPhase.VALIDATION, f"ensure repository {self.settings.gitops_repo}", self._ensure_repository)

    def post_install(self, ctx: RollbackContext) -> Optional[Path]:
        s = self.settings
        if read_credentials(self.state_dir, self.name) is None:
            ctx.track_file(credentials_path(self.state_dir, self.name))
        return write_credentials(self.state_dir, self.name, {
            'url': self.base_url,
            'username': s.admin_user,
            'password': self.password,
            'email': s.admin_email,
            'repository': f"{self.base_url}/{s.admin_user}/{s.gitops_repo}.git",
            'namespace': s.namespace,
        })

    def plan(self) -> List[str]:
        s = self.settings
        return super().plan() + [
            f"check {self.base_url}/api/healthz",
            f"create repository {s.admin_user}/{s.gitops_repo} if missing",
            f"write credentials to {credentials_path(self.state_dir, self.name)}",
        ]
