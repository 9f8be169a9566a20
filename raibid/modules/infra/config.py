"""Installer configuration.

Configuration is loaded with the following precedence:
1. Environment variables (``RAIBID_HOME``, ``KUBECONFIG``, ``RAIBID_LOG_LEVEL``, ``RAIBID_LOG_FILE``)
2. The first configuration file found (``--config``, ``$RAIBID_CONFIG``,
   ``~/.config/raibid/config.yaml``, ``./raibid.yaml``)
3. Default values
"""
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import Component

logger = logging.getLogger("raibid.config")

# Default configuration paths, after --config and $RAIBID_CONFIG
DEFAULT_CONFIG_PATHS = [
    Path("~/.config/raibid/config.yaml"),
    Path("raibid.yaml"),
]


def deep_merge(base: Dict[str, Any], update: Mapping[str, Any]) -> Dict[str, Any]:
    """Recursively merge two dictionaries, with update taking precedence."""
    for key, value in update.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, Mapping):
            base[key] = deep_merge(base[key], value)
        else:
            base[key] = value
    return base


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR)")
    file: Optional[str] = Field(default=None, description="Path to log file (if None, logs to stderr only)")
    max_size_mb: int = Field(default=10, description="Maximum log file size in MB before rotation")
    backup_count: int = Field(default=5, description="Number of rotated log files to keep")

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"invalid log level '{v}'")
        return v


class ComponentConfig(BaseModel):
    """Settings shared by every component."""
    model_config = ConfigDict(extra="ignore")

    namespace: str
    release: str
    chart: str = ""
    repo_name: str = ""
    repo_url: str = ""
    version: Optional[str] = None
    timeout: int = Field(default=300, description="Seconds to wait for the component to become healthy")
    requirements: Dict[str, Any] = Field(
        default_factory=dict,
        description="Overrides for the pre-flight requirements, e.g. {'min_disk_gb': 5}",
    )
    values: Dict[str, Any] = Field(default_factory=dict, description="Extra Helm values merged over the defaults")

    @field_validator("timeout")
    @classmethod
    def positive_timeout(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("timeout must be positive")
        return v

    @property
    def helm_timeout(self) -> str:
        return f"{self.timeout}s"


class K3sConfig(ComponentConfig):
    namespace: str = "kube-system"
    release: str = "k3s"
    version: Optional[str] = "v1.28.5+k3s1"
    timeout: int = 300
    arch: str = "arm64"
    download_base_url: str = "https://github.com/k3s-io/k3s/releases/download"
    install_dir: str = "~/.local/bin"
    mode: str = Field(default="root", description="'root' for a system service, 'rootless' for a user service")
    server_flags: List[str] = Field(default_factory=lambda: ["--write-kubeconfig-mode=644", "--disable=traefik"])
    kubeconfig_source: str = "/etc/rancher/k3s/k3s.yaml"
    kubeconfig_target: str = "~/.kube/config"

    @field_validator("mode")
    @classmethod
    def valid_mode(cls, v: str) -> str:
        if v not in ("root", "rootless"):
            raise ValueError("mode must be 'root' or 'rootless'")
        return v


class RedisConfig(ComponentConfig):
    namespace: str = "raibid-redis"
    release: str = "raibid-redis"
    chart: str = "bitnami/redis"
    repo_name: str = "bitnami"
    repo_url: str = "https://charts.bitnami.com/bitnami"
    timeout: int = 300
    stream: str = "raibid:jobs"
    group: str = "raibid-workers"
    persistence_size: str = "8Gi"


class GiteaConfig(ComponentConfig):
    namespace: str = "raibid-gitea"
    release: str = "raibid-gitea"
    chart: str = "gitea-charts/gitea"
    repo_name: str = "gitea-charts"
    repo_url: str = "https://dl.gitea.com/charts/"
    timeout: int = 600
    admin_user: str = "raibid-admin"
    admin_email: str = "admin@raibid.local"
    http_node_port: int = 30080
    ssh_node_port: int = 30022
    external_url: str = "http://localhost:30080"
    gitops_repo: str = "raibid-gitops"
    persistence_size: str = "10Gi"


class KedaConfig(ComponentConfig):
    namespace: str = "keda"
    release: str = "raibid-keda"
    chart: str = "kedacore/keda"
    repo_name: str = "kedacore"
    repo_url: str = "https://kedacore.github.io/charts"
    version: Optional[str] = "2.12.0"
    timeout: int = 180
    scaled_job: bool = Field(default=True, description="Apply the build-agent ScaledJob")
    agent_namespace: str = "raibid-ci"
    agent_image: str = "raibid/agent:latest"
    max_replicas: int = 10
    polling_interval: int = 10
    pending_entries: int = 1


class FluxConfig(ComponentConfig):
    namespace: str = "flux-system"
    release: str = "flux2"
    chart: str = "fluxcd-community/flux2"
    repo_name: str = "fluxcd-community"
    repo_url: str = "https://fluxcd-community.github.io/helm-charts"
    timeout: int = 300
    git_url: str = "http://raibid-gitea-http.raibid-gitea.svc.cluster.local:3000/raibid-admin/raibid-gitops.git"
    branch: str = "main"
    path: str = "./"
    interval: str = "1m"
    gitea_username: str = "raibid-admin"
    gitea_password: Optional[str] = Field(default=None, description="Defaults to the Gitea credentials file")


class RaibidConfig(BaseModel):
    """Top level configuration."""
    model_config = ConfigDict(extra="ignore")

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    state_dir: str = "~/.raibid"
    kubeconfig: Optional[str] = None
    k3s: K3sConfig = Field(default_factory=K3sConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    gitea: GiteaConfig = Field(default_factory=GiteaConfig)
    keda: KedaConfig = Field(default_factory=KedaConfig)
    flux: FluxConfig = Field(default_factory=FluxConfig)

    def section(self, component: Component) -> ComponentConfig:
        return getattr(self, Component(component).value)

    @property
    def state_path(self) -> Path:
        return Path(self.state_dir).expanduser()

    @classmethod
    def candidate_paths(cls, config_path: Optional[Union[str, Path]] = None) -> List[Path]:
        paths = []
        if config_path:
            paths.append(Path(config_path))
        if os.environ.get("RAIBID_CONFIG"):
            paths.append(Path(os.environ["RAIBID_CONFIG"]))
        paths.extend(DEFAULT_CONFIG_PATHS)
        return [p.expanduser().absolute() for p in paths]

    @classmethod
    def load(cls, config_path: Optional[Union[str, Path]] = None,
             env: Optional[Mapping[str, str]] = None) -> "RaibidConfig":
        """Load configuration from the first existing file, then apply environment overrides."""
        if config_path and not Path(config_path).expanduser().exists():
            raise FileNotFoundError(f"❌ Config file not found: {config_path}")

        config_data: Dict[str, Any] = {}
        for path in cls.candidate_paths(config_path):
            if path.exists():
                logger.debug("Loading configuration from %s", path)
                config_data = cls._load_config_file(path)
                break

        env = os.environ if env is None else env
        overrides: Dict[str, Any] = {}
        if env.get("RAIBID_HOME"):
            overrides["state_dir"] = env["RAIBID_HOME"]
        if env.get("KUBECONFIG"):
            overrides["kubeconfig"] = env["KUBECONFIG"]
        if env.get("RAIBID_LOG_LEVEL"):
            overrides.setdefault("logging", {})["level"] = env["RAIBID_LOG_LEVEL"]
        if env.get("RAIBID_LOG_FILE"):
            overrides.setdefault("logging", {})["file"] = env["RAIBID_LOG_FILE"]
        return cls(**deep_merge(config_data, overrides))

    @classmethod
    def _load_config_file(cls, path: Path) -> Dict[str, Any]:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"❌ Config file {path} must contain a mapping")
        return data

    def save(self, path: Union[str, Path]) -> None:
        """Save configuration to a YAML file."""
        path = Path(path).expanduser().absolute()
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.safe_dump(self.model_dump(exclude_none=True), f, default_flow_style=False, sort_keys=False)


# Global configuration instance
_config: Optional[RaibidConfig] = None


def get_config(config_path: Optional[Union[str, Path]] = None) -> RaibidConfig:
    """Get or create the global configuration instance."""
    global _config
    if _config is None:
        _config = RaibidConfig.load(config_path)
    return _config


def set_config(config: Optional[RaibidConfig]) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
