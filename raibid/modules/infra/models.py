"""Data models for the infrastructure installer."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple


class Component(str, Enum):
    """Installable infrastructure units."""
    K3S = 'k3s'
    REDIS = 'redis'
    GITEA = 'gitea'
    KEDA = 'keda'
    FLUX = 'flux'

    @classmethod
    def parse(cls, name: str) -> 'Component':
        try:
            return cls(name.strip().lower())
        except ValueError:
            valid = ', '.join(c.value for c in cls)
            raise ValueError(f"Unknown component '{name}'. Valid components: {valid}, all") from None

    @classmethod
    def expand(cls, names: Iterable[str]) -> List['Component']:
        """Parse component names, expanding ``all`` to every component."""
        result: List[Component] = []
        for name in names:
            parsed = list(cls) if name.strip().lower() == 'all' else [cls.parse(name)]
            result.extend(c for c in parsed if c not in result)
        return result


class InstallPhase(str, Enum):
    """Phases of a component installation, in execution order."""
    PRE_FLIGHT = 'pre_flight'
    DOWNLOAD = 'download'
    VERIFICATION = 'verification'
    INSTALLATION = 'installation'
    CONFIGURATION = 'configuration'
    BOOTSTRAP = 'bootstrap'
    VALIDATION = 'validation'
    POST_INSTALL = 'post_install'

    @property
    def label(self) -> str:
        return {
            'pre_flight': 'PreFlight',
            'post_install': 'PostInstall',
        }.get(self.value, self.value.capitalize())

    @property
    def order(self) -> int:
        return list(InstallPhase).index(self)

    def __lt__(self, other):
        if isinstance(other, InstallPhase):
            return self.order < other.order
        return NotImplemented


class HealthStatus(str, Enum):
    HEALTHY = 'healthy'
    UNHEALTHY = 'unhealthy'
    UNKNOWN = 'unknown'
    DEGRADED = 'degraded'


@dataclass(frozen=True)
class CheckResult:
    """Outcome of a single named check."""
    name: str
    passed: bool
    message: str
    severity: str = 'error'
    suggestion: Optional[str] = None

    @property
    def is_warning(self) -> bool:
        return not self.passed and self.severity == 'warning'


@dataclass(frozen=True)
class HealthCheckResult:
    """A single poll of a component's health.

    Instances are never mutated; every poll produces a new one.
    """
    component: str
    status: HealthStatus
    message: str
    checks: Tuple[CheckResult, ...] = ()
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY

    @property
    def failed_checks(self) -> List[CheckResult]:
        return [c for c in self.checks if not c.passed]

    def to_dict(self) -> Dict[str, object]:
        return {
            'component': self.component,
            'status': self.status.value,
            'message': self.message,
            'checked_at': self.checked_at.isoformat(),
            'checks': [
                {'name': c.name, 'passed': c.passed, 'message': c.message}
                for c in self.checks
            ],
        }


@dataclass
class PodInfo:
    name: str
    namespace: str
    phase: str
    ready: bool = False
    restarts: int = 0
    labels: Dict[str, str] = field(default_factory=dict)

    @property
    def running(self) -> bool:
        return self.phase == 'Running'


@dataclass
class NodeInfo:
    name: str
    ready: bool
    version: str = ''


@dataclass
class ReleaseInfo:
    """State of a Helm release as reported by ``helm status``."""
    name: str
    namespace: str
    revision: int
    status: str
    chart: str = ''
    app_version: str = ''

    @property
    def deployed(self) -> bool:
        return self.status == 'deployed'


@dataclass
class InstallResult:
    component: Component
    action: str  # 'installed', 'upgraded', 'unchanged' or 'planned'
    duration: float = 0.0
    health: Optional[HealthCheckResult] = None
    credentials_path: Optional[Path] = None
    steps: List[str] = field(default_factory=list)
