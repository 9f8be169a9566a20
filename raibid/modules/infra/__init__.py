"""
Infrastructure installer and validator core.

This package provisions and validates the raibid CI stack on a single host:

- k3s as the cluster everything else runs on
- Redis Streams as the job queue
- Gitea as the Git server and GitOps source
- KEDA scaling build agents from the job stream
- Flux syncing the cluster from Gitea

Installers share one lifecycle (pre-flight, deploy, wait for ready, validate,
commit or roll back) and the retry, timeout and health-check primitives in
this package.
"""

from .config import DEFAULT_CONFIG_PATHS, RaibidConfig, get_config, set_config
from .dependencies import DEPENDENCIES, PRIORITY, missing_dependencies, order, teardown_order
from .errors import (
    ClusterAPIError,
    CommandError,
    DependencyConflictError,
    DownloadError,
    FatalError,
    HealthCheckError,
    InfraError,
    InfraTimeoutError,
    InstallationError,
    NetworkError,
    PreflightError,
    PrerequisiteMissingError,
    TransientError,
)
from .models import Component, HealthCheckResult, HealthStatus, InstallPhase, InstallResult
from .orchestrator import ComponentStatus, Orchestrator, SetupReport, TeardownReport
from .retry import CancelToken, RetryConfig, poll_until, retry, retry_async
from .rollback import RollbackManager
from .state import StateStore

__all__ = [
    # Orchestration
    'Orchestrator',
    'SetupReport',
    'TeardownReport',
    'ComponentStatus',
    'order',
    'teardown_order',
    'missing_dependencies',
    'DEPENDENCIES',
    'PRIORITY',

    # Models
    'Component',
    'InstallPhase',
    'InstallResult',
    'HealthStatus',
    'HealthCheckResult',

    # Primitives
    'RetryConfig',
    'CancelToken',
    'retry',
    'retry_async',
    'poll_until',
    'RollbackManager',
    'StateStore',

    # Configuration
    'RaibidConfig',
    'get_config',
    'set_config',
    'DEFAULT_CONFIG_PATHS',

    # Errors
    'InfraError',
    'TransientError',
    'FatalError',
    'DownloadError',
    'InstallationError',
    'NetworkError',
    'InfraTimeoutError',
    'HealthCheckError',
    'PrerequisiteMissingError',
    'PreflightError',
    'CommandError',
    'ClusterAPIError',
    'DependencyConflictError',
]
