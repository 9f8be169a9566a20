"""Error taxonomy for infrastructure installation.

Every error carries the component it belongs to, a human readable reason and an
actionable suggestion. Errors raised at a boundary (shelling out, HTTP calls,
Kubernetes API calls, health polls) are classified by wrapping them in either
:class:`TransientError` (retrying may help) or :class:`FatalError` (operator
intervention is needed) before they leave the retry engine.
"""

from typing import Any, List, Optional, Sequence

from .models import InstallPhase


class InfraError(Exception):
    """Base class for all installer errors."""

    kind = "infra"

    def __init__(
        self,
        component: str,
        reason: str,
        suggestion: str,
        phase: Optional[InstallPhase] = None,
        context: Optional[Sequence[str]] = None,
    ):
        if not suggestion:
            raise ValueError(f"{type(self).__name__} for {component} requires a suggestion")
        self.component = component
        self.reason = reason
        self.suggestion = suggestion
        self.phase = phase
        self.context: List[str] = list(context or [])
        super().__init__(reason)

    @property
    def root(self) -> "InfraError":
        return self

    @property
    def is_transient(self) -> bool:
        return False

    @property
    def is_fatal(self) -> bool:
        return False

    @property
    def is_classified(self) -> bool:
        return self.is_transient or self.is_fatal

    def transient(self, retry_after: Optional[float] = None) -> "TransientError":
        """Classify this error as retryable."""
        return TransientError(self, retry_after=retry_after)

    def fatal(self) -> "FatalError":
        """Classify this error as non-retryable."""
        return FatalError(self)

    def with_phase(self, phase: InstallPhase) -> "InfraError":
        """Attribute the error to ``phase`` unless it already has one."""
        if self.root.phase is None:
            self.root.phase = phase
        return self

    def add_context(self, line: str) -> "InfraError":
        self.root.context.append(line)
        return self

    def render(self) -> str:
        phase = self.phase.label if self.phase else "unknown phase"
        lines = [f"[{self.component}] {phase}: {self.reason}"]
        lines.extend(f"  - {line}" for line in self.context)
        lines.append(f"  Suggestion: {self.suggestion}")
        return "\n".join(lines)

    def __str__(self) -> str:
        return self.render()


class DownloadError(InfraError):
    kind = "download"

    def __init__(self, component: str, url: str, reason: str, suggestion: Optional[str] = None, **kwargs):
        self.url = url
        super().__init__(
            component,
            f"download of {url} failed: {reason}",
            suggestion or f"Check internet access and that {url} is reachable from this host",
            phase=kwargs.pop("phase", InstallPhase.DOWNLOAD),
            **kwargs,
        )


class InstallationError(InfraError):
    kind = "installation"

    def __init__(self, component: str, phase: InstallPhase, reason: str, suggestion: str, **kwargs):
        super().__init__(component, reason, suggestion, phase=phase, **kwargs)


class NetworkError(InfraError):
    kind = "network"

    def __init__(self, component: str, endpoint: str, reason: str, suggestion: Optional[str] = None, **kwargs):
        self.endpoint = endpoint
        super().__init__(
            component,
            f"{endpoint} unreachable: {reason}",
            suggestion or f"Verify network connectivity to {endpoint} (proxy, DNS, firewall)",
            **kwargs,
        )


class InfraTimeoutError(InfraError):
    kind = "timeout"

    def __init__(
        self,
        component: str,
        operation: str,
        timeout: float,
        last_result: Any = None,
        suggestion: Optional[str] = None,
        **kwargs,
    ):
        self.operation = operation
        self.timeout = timeout
        self.last_result = last_result
        reason = f"'{operation}' did not complete within {timeout:.0f}s"
        if last_result is not None:
            reason += f" (last status: {last_result.status.value}: {last_result.message})"
        super().__init__(
            component,
            reason,
            suggestion or (
                "Increase the timeout or inspect the component with "
                f"'kubectl get pods -A' to see why '{operation}' is not progressing"
            ),
            **kwargs,
        )


class HealthCheckError(InfraError):
    kind = "health_check"

    def __init__(self, component: str, reason: str, result: Any = None, suggestion: Optional[str] = None, **kwargs):
        self.result = result
        super().__init__(
            component,
            reason,
            suggestion or f"Run 'raibid status {component}' and check the failing sub-checks",
            **kwargs,
        )


class PrerequisiteMissingError(InfraError):
    kind = "prerequisite_missing"

    def __init__(self, component: str, missing: Sequence[str], suggestion: Optional[str] = None, **kwargs):
        self.missing = list(missing)
        names = ", ".join(self.missing)
        super().__init__(
            component,
            f"missing prerequisite(s): {names}",
            suggestion or f"Install {names} first, e.g. 'raibid setup {' '.join(self.missing)}'",
            phase=kwargs.pop("phase", InstallPhase.PRE_FLIGHT),
            **kwargs,
        )


class PreflightError(InfraError):
    """Aggregate of every failed pre-flight check."""

    kind = "preflight"

    def __init__(self, component: str, failures: Sequence[Any], **kwargs):
        self.failures = list(failures)
        reason = f"{len(self.failures)} pre-flight check(s) failed"
        suggestions = [f.suggestion for f in self.failures if getattr(f, "suggestion", None)]
        super().__init__(
            component,
            reason,
            "; ".join(suggestions) or "Resolve the failed checks listed above and re-run",
            phase=InstallPhase.PRE_FLIGHT,
            context=[f"{f.name}: {f.message}" for f in self.failures],
            **kwargs,
        )


class CommandError(InfraError):
    kind = "command"

    def __init__(
        self,
        component: str,
        command: Sequence[str],
        returncode: int,
        stdout: str = "",
        stderr: str = "",
        suggestion: Optional[str] = None,
        **kwargs,
    ):
        self.command = list(command)
        self.returncode = returncode
        self.stdout = stdout or ""
        self.stderr = stderr or ""
        detail = self.stderr.strip().splitlines()[-1] if self.stderr.strip() else "no output"
        super().__init__(
            component,
            f"'{' '.join(self.command[:3])}' exited with {returncode}: {detail}",
            suggestion or f"Re-run '{' '.join(self.command)}' manually to see the full output",
            **kwargs,
        )


class ClusterAPIError(InfraError):
    """Kubernetes API call rejected or failed."""

    kind = "cluster_api"

    def __init__(self, component: str, operation: str, status: Optional[int], reason: str,
                 suggestion: Optional[str] = None, **kwargs):
        self.operation = operation
        self.status = status
        super().__init__(
            component,
            f"{operation} failed: {status or 'no status'} {reason}".rstrip(),
            suggestion or "Check that the cluster is running ('kubectl get nodes') and your kubeconfig is valid",
            **kwargs,
        )

    @property
    def retryable(self) -> bool:
        return not self.status or self.status == 429 or self.status >= 500


class DependencyConflictError(InfraError):
    kind = "dependency_conflict"

    def __init__(self, component: str, dependents: Sequence[str], **kwargs):
        self.dependents = list(dependents)
        names = ", ".join(self.dependents)
        super().__init__(
            component,
            f"still required by installed component(s): {names}",
            f"Tear down {names} first or include them in the same teardown",
            **kwargs,
        )


class _ClassifiedError(InfraError):
    """Wrapper that proxies the wrapped error's attributes."""

    def __init__(self, cause: InfraError):
        self.cause = cause
        Exception.__init__(self, cause.reason)

    @property
    def root(self) -> InfraError:
        return self.cause.root

    component = property(lambda self: self.root.component)
    reason = property(lambda self: self.root.reason)
    suggestion = property(lambda self: self.root.suggestion)
    context = property(lambda self: self.root.context)

    @property
    def phase(self) -> Optional[InstallPhase]:
        return self.root.phase

    @property
    def kind(self) -> str:
        return self.root.kind


class TransientError(_ClassifiedError):
    def __init__(self, cause: InfraError, retry_after: Optional[float] = None):
        super().__init__(cause)
        self.retry_after = retry_after

    @property
    def is_transient(self) -> bool:
        return True

    def transient(self, retry_after: Optional[float] = None) -> "TransientError":
        return self

    def fatal(self) -> "FatalError":
        return FatalError(self.cause)


class FatalError(_ClassifiedError):
    def __init__(self, cause: InfraError, attempts: Optional[int] = None, elapsed: Optional[float] = None):
        super().__init__(cause)
        self.attempts = attempts
        self.elapsed = elapsed

    @property
    def is_fatal(self) -> bool:
        return True

    def transient(self, retry_after: Optional[float] = None) -> TransientError:
        return TransientError(self.cause, retry_after=retry_after)

    def fatal(self) -> "FatalError":
        return self

    def render(self) -> str:
        text = self.root.render()
        if self.attempts:
            head, _, rest = text.partition("\n")
            text = f"{head} (after {self.attempts} attempts in {self.elapsed or 0:.1f}s)\n{rest}"
        return text


def cancelled(component: str, phase: Optional[InstallPhase] = None) -> FatalError:
    """Error raised when the operator interrupts an installation."""
    return InfraError(
        component,
        "cancelled",
        "Re-run the command to resume; partial changes were rolled back",
        phase=phase,
    ).fatal()
