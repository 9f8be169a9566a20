"""Pre-flight validation of system requirements.

All checks run before anything is installed. Results are collected so that a
single run reports every problem instead of failing on the first one.
"""

import logging
import os
import shutil
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import requests

from .errors import PreflightError
from .models import CheckResult, Component

logger = logging.getLogger("raibid.preflight")

GIB = 1024 ** 3

# Hints shown when a required executable is missing
INSTALL_HINTS = {
    'kubectl': "install kubectl (https://kubernetes.io/docs/tasks/tools/) or run 'raibid setup k3s'",
    'helm': "install Helm 3 (https://helm.sh/docs/intro/install/)",
    'curl': "install curl with your package manager, e.g. 'sudo apt install curl'",
    'tar': "install tar with your package manager, e.g. 'sudo apt install tar'",
    'flux': "install the Flux CLI (https://fluxcd.io/flux/installation/)",
    'systemctl': "k3s needs a systemd based host",
}


@dataclass(frozen=True)
class SystemRequirements:
    """System requirements for one component. Read-only after construction."""
    min_disk_gb: float = 10
    min_memory_gb: float = 2
    required_executables: Tuple[str, ...] = ('tar', 'curl')
    optional_executables: Tuple[str, ...] = ()
    required_directories: Tuple[str, ...] = ()
    required_endpoints: Tuple[str, ...] = ()
    disk_path: str = '.'

    def with_overrides(self, overrides: Optional[Mapping[str, Any]]) -> 'SystemRequirements':
        """Return a copy with caller supplied values applied."""
        if not overrides:
            return self
        values = {}
        for key, value in overrides.items():
            if value is None:
                continue
            if key not in self.__dataclass_fields__:
                raise ValueError(f"Unknown requirement '{key}'")
            values[key] = tuple(value) if isinstance(value, (list, tuple)) else value
        return replace(self, **values)


DEFAULT_REQUIREMENTS: Dict[Component, SystemRequirements] = {
    Component.K3S: SystemRequirements(
        min_disk_gb=10,
        min_memory_gb=2,
        required_executables=('tar', 'curl', 'systemctl'),
        optional_executables=('sudo',),
        required_endpoints=('https://github.com',),
    ),
    Component.GITEA: SystemRequirements(
        min_disk_gb=15,
        min_memory_gb=4,
        required_executables=('kubectl', 'helm'),
    ),
    Component.REDIS: SystemRequirements(
        min_disk_gb=10,
        min_memory_gb=2,
        required_executables=('kubectl', 'helm'),
    ),
    Component.KEDA: SystemRequirements(
        min_disk_gb=5,
        min_memory_gb=1,
        required_executables=('kubectl', 'helm'),
    ),
    Component.FLUX: SystemRequirements(
        min_disk_gb=5,
        min_memory_gb=1,
        required_executables=('kubectl', 'helm'),
        optional_executables=('flux',),
    ),
}


def requirements_for(component: Component, overrides: Optional[Mapping[str, Any]] = None) -> SystemRequirements:
    return DEFAULT_REQUIREMENTS[component].with_overrides(overrides)


@dataclass
class PreFlightResult:
    checks: List[CheckResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.errors

    @property
    def errors(self) -> List[CheckResult]:
        return [c for c in self.checks if not c.passed and c.severity == 'error']

    @property
    def warnings(self) -> List[CheckResult]:
        return [c for c in self.checks if c.is_warning]

    def ok(self, name: str, message: str) -> None:
        self.checks.append(CheckResult(name, True, message))

    def error(self, name: str, message: str, suggestion: Optional[str] = None) -> None:
        self.checks.append(CheckResult(name, False, message, 'error', suggestion))

    def warning(self, name: str, message: str, suggestion: Optional[str] = None) -> None:
        self.checks.append(CheckResult(name, False, message, 'warning', suggestion))


def total_memory_bytes() -> Optional[int]:
    """Total system memory, or None when it cannot be determined."""
    try:
        with open('/proc/meminfo', 'r', encoding='utf-8') as f:
            for line in f:
                if line.startswith('MemTotal:'):
                    return int(line.split()[1]) * 1024
    except (OSError, ValueError, IndexError):
        pass
    try:
        return os.sysconf('SC_PAGE_SIZE') * os.sysconf('SC_PHYS_PAGES')
    except (ValueError, OSError, AttributeError):
        return None


class PreFlightValidator:
    """Checks a host against a :class:`SystemRequirements`."""

    def __init__(self, requirements: SystemRequirements, http: Optional[requests.Session] = None,
                 endpoint_timeout: float = 5.0, create_directories: bool = True):
        self.requirements = requirements
        self.http = http or requests.Session()
        self.endpoint_timeout = endpoint_timeout
        # Off for dry runs: missing directories are only checked for creatability
        self.create_directories = create_directories

    def run(self) -> PreFlightResult:
        """Run every check and return the collected results."""
        result = PreFlightResult()
        self.check_disk_space(result)
        self.check_memory(result)
        self.check_required_executables(result)
        self.check_optional_executables(result)
        self.check_required_directories(result)
        self.check_endpoints(result)
        return result

    def validate(self, component: str) -> PreFlightResult:
        """Run all checks and raise if any of them is fatal.

        Raises:
            FatalError: wrapping a :class:`PreflightError` listing every failure
        """
        logger.info("🔍 Running pre-flight checks for %s", component)
        result = self.run()

        for warning in result.warnings:
            logger.warning("⚠️  Pre-flight warning (%s): %s", component, warning.message)

        if not result.passed:
            for failure in result.errors:
                logger.error("❌ %s: %s", failure.name, failure.message)
            raise PreflightError(component, result.errors).fatal()

        logger.info("✅ Pre-flight checks passed for %s", component)
        return result

    def check_disk_space(self, result: PreFlightResult) -> None:
        path = Path(self.requirements.disk_path).expanduser()
        # Probe the closest existing parent
        while not path.exists() and path != path.parent:
            path = path.parent
        try:
            free_gb = shutil.disk_usage(str(path)).free / GIB
        except OSError as e:
            result.warning('disk_space', f"Could not check disk space on {path}: {e}")
            return

        if free_gb < self.requirements.min_disk_gb:
            result.error(
                'disk_space',
                f"Insufficient disk space on {path}. Required: {self.requirements.min_disk_gb}GB, "
                f"available: {free_gb:.1f}GB",
                "Free up disk space or point disk_path at a larger volume",
            )
        else:
            result.ok('disk_space', f"{free_gb:.1f}GB available")

    def check_memory(self, result: PreFlightResult) -> None:
        total = total_memory_bytes()
        if total is None:
            result.warning('memory', "Could not determine total system memory")
            return

        total_gb = total / GIB
        if total_gb < self.requirements.min_memory_gb:
            result.error(
                'memory',
                f"Insufficient memory. Required: {self.requirements.min_memory_gb}GB, total: {total_gb:.1f}GB",
                "Run on a host with more memory or lower min_memory_gb in the configuration",
            )
        else:
            result.ok('memory', f"{total_gb:.1f}GB total")

    def check_required_executables(self, result: PreFlightResult) -> None:
        for name in self.requirements.required_executables:
            found = shutil.which(name)
            if found:
                result.ok('required_executable', f"{name} found at {found}")
            else:
                result.error(
                    'required_executable',
                    f"Required executable '{name}' not found in PATH",
                    INSTALL_HINTS.get(name, f"install '{name}' and make sure it is on PATH"),
                )

    def check_optional_executables(self, result: PreFlightResult) -> None:
        for name in self.requirements.optional_executables:
            if shutil.which(name):
                result.ok('optional_executable', f"{name} available")
            else:
                result.warning(
                    'optional_executable',
                    f"Optional executable '{name}' not found. Some features may not be available.",
                    INSTALL_HINTS.get(name),
                )

    def check_required_directories(self, result: PreFlightResult) -> None:
        for directory in self.requirements.required_directories:
            path = Path(directory).expanduser()
            if path.exists() and not path.is_dir():
                result.error(
                    'required_directory',
                    f"'{path}' exists but is not a directory",
                    f"Remove or rename '{path}'",
                )
                continue
            if not path.exists() and not self.create_directories:
                parent = next((p for p in path.parents if p.exists()), None)
                if parent is None or not os.access(str(parent), os.W_OK):
                    result.error(
                        'required_directory',
                        f"Required directory '{path}' cannot be created: {parent} is not writable",
                        f"Create '{path}' manually or choose a directory you own",
                    )
                else:
                    result.ok('required_directory', f"{path} will be created")
                continue
            try:
                path.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                result.error(
                    'required_directory',
                    f"Required directory '{path}' cannot be created: {e.strerror or e}",
                    f"Create '{path}' manually or choose a directory you own",
                )
                continue
            if not os.access(str(path), os.W_OK):
                result.error(
                    'required_directory',
                    f"Directory '{path}' is not writable",
                    f"Fix the permissions of '{path}' or choose a directory you own",
                )
            else:
                result.ok('required_directory', f"{path} is usable")

    def check_endpoints(self, result: PreFlightResult) -> None:
        for endpoint in self.requirements.required_endpoints:
            try:
                response = self.http.head(endpoint, timeout=self.endpoint_timeout, allow_redirects=True)
            except requests.RequestException as e:
                result.error(
                    'network_endpoint',
                    f"Could not reach '{endpoint}': {e.__class__.__name__}",
                    f"Check network connectivity, proxy settings and DNS for {endpoint}",
                )
                continue
            if response.status_code >= 500:
                result.error(
                    'network_endpoint',
                    f"'{endpoint}' returned HTTP {response.status_code}",
                    f"{endpoint} appears to be down; retry later",
                )
            else:
                result.ok('network_endpoint', f"{endpoint} reachable (HTTP {response.status_code})")
