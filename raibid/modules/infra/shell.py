"""Running external commands (helm, kubectl, systemctl)."""

import logging
import re
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .errors import CommandError, InfraError, PrerequisiteMissingError

logger = logging.getLogger("raibid.shell")

# stderr fragments that indicate a retryable failure
TRANSIENT_PATTERNS = re.compile(
    r"connection refused|connection reset|i/o timeout|timed out|timeout|"
    r"tls handshake|eof|server is currently unable|etcdserver: leader changed|"
    r"too many requests|service unavailable|no route to host|temporary failure|"
    r"another operation \(install/upgrade/rollback\) is in progress|"
    r"the object has been modified",
    re.IGNORECASE,
)


def is_transient_output(output: str) -> bool:
    return bool(TRANSIENT_PATTERNS.search(output or ''))


def classify_command_error(err: CommandError) -> InfraError:
    """Wrap a command failure as transient or fatal based on its output."""
    if is_transient_output(err.stderr) or is_transient_output(err.stdout):
        return err.transient()
    return err.fatal()


def run_command(
    cmd: Sequence[str],
    *,
    component: str,
    check: bool = True,
    capture_output: bool = True,
    cwd: Optional[Path] = None,
    env: Optional[Dict[str, str]] = None,
    input: Optional[str] = None,
    timeout: Optional[float] = None,
) -> subprocess.CompletedProcess:
    """Run ``cmd`` and raise a classified :class:`CommandError` when it fails.

    Args:
        cmd: Command and arguments
        component: Component the command is run for, used in errors
        check: Raise on non-zero exit code
        capture_output: Capture stdout/stderr instead of inheriting them
        cwd: Working directory
        env: Full environment for the child process
        input: Text passed on stdin
        timeout: Seconds before the command is killed

    Returns:
        The completed process
    """
    cmd = [str(c) for c in cmd]
    cmd_str = ' '.join(cmd)
    logger.debug("💻 Running: %s", cmd_str)
    try:
        result = subprocess.run(
            cmd,
            check=False,
            text=True,
            cwd=cwd,
            env=env,
            input=input,
            timeout=timeout,
            stdout=subprocess.PIPE if capture_output else None,
            stderr=subprocess.PIPE if capture_output else None,
        )
    except FileNotFoundError:
        raise PrerequisiteMissingError(component, [cmd[0]]).fatal() from None
    except subprocess.TimeoutExpired as e:
        raise CommandError(
            component, cmd, -1, stderr=f"timed out after {e.timeout}s",
            suggestion=f"Check whether '{cmd[0]}' is hanging on an unreachable cluster",
        ).transient() from None

    if capture_output and result.stdout:
        logger.debug("🟢 Output:\n%s", result.stdout)

    if check and result.returncode != 0:
        err = CommandError(component, cmd, result.returncode, result.stdout, result.stderr)
        logger.debug("❌ Command failed: %s (exit code: %d)\n%s", cmd_str, result.returncode, result.stderr)
        raise classify_command_error(err)
    return result


class SystemRunner:
    """Host level commands; a seam for tests."""

    def __init__(self, component: str = 'k3s', use_sudo: bool = True):
        self.component = component
        self.use_sudo = use_sudo

    def run(self, cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
        return run_command(cmd, component=self.component, check=check, **kwargs)

    def systemctl(self, args: List[str], user: bool = False, check: bool = True) -> subprocess.CompletedProcess:
        if user:
            cmd = ['systemctl', '--user'] + list(args)
        else:
            cmd = (['sudo'] if self.use_sudo else []) + ['systemctl'] + list(args)
        return self.run(cmd, check=check)

    def unit_active(self, unit: str, user: bool = False) -> bool:
        result = self.systemctl(['is-active', unit], user=user, check=False)
        return result.returncode == 0 and (result.stdout or '').strip() == 'active'

    def write_root_file(self, path: Path, content: str) -> None:
        """Write a file that needs elevated permissions."""
        cmd = (['sudo'] if self.use_sudo else []) + ['tee', str(path)]
        self.run(cmd, input=content)

    def remove_root_file(self, path: Path) -> None:
        cmd = (['sudo'] if self.use_sudo else []) + ['rm', '-f', str(path)]
        self.run(cmd, check=False)

    def read_root_file(self, path: Path) -> Optional[str]:
        """Content of a root owned file, or None if it does not exist."""
        cmd = (['sudo'] if self.use_sudo else []) + ['cat', str(path)]
        result = self.run(cmd, check=False)
        return result.stdout if result.returncode == 0 else None
