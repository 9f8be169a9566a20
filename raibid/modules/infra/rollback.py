"""Rollback of partially completed installations.

:class:`RollbackManager` is a stack of compensating actions scoped to one
component's install attempt. Use it as a context manager so that exactly one
of ``commit()`` or ``rollback()`` runs on every exit path::

    with RollbackManager("redis") as rollback:
        ctx = RollbackContext(rollback, cluster=cluster, helm=helm)
        cluster.create_namespace("raibid-redis")
        ctx.track_namespace("raibid-redis")
        ...
        rollback.commit()

:class:`RollbackContext` is the resource ledger on top of it: it records what
was created and registers the matching undo action at the same time.
"""

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Tuple

logger = logging.getLogger("raibid.rollback")


@dataclass
class RollbackReport:
    executed: List[str] = field(default_factory=list)
    failed: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


class RollbackManager:
    """Ordered stack of undo actions, executed LIFO on rollback."""

    def __init__(self, component: str):
        self.component = component
        self._actions: List[Tuple[str, Callable[[], None]]] = []
        self._finished = False
        self.report: Optional[RollbackReport] = None

    def __len__(self) -> int:
        return len(self._actions)

    @property
    def descriptions(self) -> List[str]:
        return [description for description, _ in self._actions]

    @property
    def finished(self) -> bool:
        return self._finished

    def add_action(self, description: str, action: Callable[[], None]) -> None:
        if self._finished:
            raise RuntimeError(f"Rollback for {self.component} already finished; cannot add '{description}'")
        logger.debug("Registered rollback action for %s: %s", self.component, description)
        self._actions.append((description, action))

    def commit(self) -> None:
        """Discard all actions; the installation is kept."""
        if self._finished:
            return
        logger.debug("Committing %s (%d rollback actions discarded)", self.component, len(self._actions))
        self._actions.clear()
        self._finished = True

    def rollback(self) -> RollbackReport:
        """Run every registered action in reverse order.

        A failing action is logged and skipped so that the remaining ones
        still run.
        """
        report = RollbackReport()
        if self._finished:
            return report

        if self._actions:
            logger.warning("↩️  Rolling back %s (%d actions)", self.component, len(self._actions))
        while self._actions:
            description, action = self._actions.pop()
            logger.info("↩️  Rollback %s: %s", self.component, description)
            try:
                action()
            except Exception as e:
                logger.error("❌ Rollback action failed for %s: %s: %s", self.component, description, e)
                report.failed.append((description, str(e)))
            else:
                logger.info("✅ Rolled back: %s", description)
                report.executed.append(description)

        self._finished = True
        self.report = report
        return report

    def __enter__(self) -> 'RollbackManager':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if self._finished:
            return False
        if exc_type is None:
            logger.warning("%s install exited without commit; rolling back", self.component)
        report = self.rollback()
        if report.failed:
            logger.error(
                "Rollback of %s left %d action(s) incomplete: %s",
                self.component, len(report.failed), ", ".join(d for d, _ in report.failed),
            )
        # Never swallow the original exception
        return False


class RollbackContext:
    """Ledger of resources created during an install.

    Each ``track_*`` call records the resource and immediately registers the
    undo action with the underlying :class:`RollbackManager`.
    """

    def __init__(self, manager: RollbackManager, cluster=None, helm=None, runner=None):
        self.manager = manager
        self.cluster = cluster
        self.helm = helm
        self.runner = runner
        self._resources: List[Tuple[str, str]] = []

    def resources(self) -> List[Tuple[str, str]]:
        """(kind, identifier) pairs in creation order."""
        return list(self._resources)

    def _record(self, kind: str, identifier: str, description: str, action: Callable[[], None]) -> None:
        self._resources.append((kind, identifier))
        self.manager.add_action(description, action)

    def track_file(self, path: Path) -> None:
        path = Path(path)
        self._record('file', str(path), f"remove file {path}", lambda: path.unlink(missing_ok=True))

    def track_file_backup(self, path: Path, backup: Path) -> None:
        """Restore ``path`` from ``backup`` (the file was overwritten)."""
        path, backup = Path(path), Path(backup)

        def restore():
            shutil.move(str(backup), str(path))

        self._record('file_backup', str(path), f"restore {path} from {backup}", restore)

    def track_directory(self, path: Path) -> None:
        path = Path(path)
        self._record(
            'directory', str(path), f"remove directory {path}",
            lambda: shutil.rmtree(str(path), ignore_errors=False) if path.exists() else None,
        )

    def track_namespace(self, name: str) -> None:
        cluster = self._require(self.cluster, 'cluster')
        self._record('namespace', name, f"delete namespace {name}", lambda: cluster.delete_namespace(name))

    def track_helm_release(self, release: str, namespace: str, previous_revision: Optional[int] = None) -> None:
        """Undo a Helm install, or an upgrade when ``previous_revision`` is set."""
        helm = self._require(self.helm, 'helm')
        if previous_revision:
            self._record(
                'helm_upgrade', f"{namespace}/{release}",
                f"roll back helm release {release} to revision {previous_revision}",
                lambda: helm.rollback(release, namespace, previous_revision),
            )
        else:
            self._record(
                'helm_release', f"{namespace}/{release}", f"uninstall helm release {release}",
                lambda: helm.uninstall(release, namespace),
            )

    def track_object(self, api_version: str, kind: str, name: str, namespace: Optional[str] = None) -> None:
        cluster = self._require(self.cluster, 'cluster')
        identifier = f"{kind}/{namespace}/{name}" if namespace else f"{kind}/{name}"
        self._record(
            'object', identifier, f"delete {identifier}",
            lambda: cluster.delete_object(api_version, kind, name, namespace),
        )

    def track_systemd_unit(self, unit: str, user: bool = False) -> None:
        runner = self._require(self.runner, 'runner')

        def disable():
            runner.systemctl(['disable', '--now', unit], user=user, check=False)

        self._record('systemd_unit', unit, f"disable and stop {unit}", disable)

    def _require(self, backend, name: str):
        if backend is None:
            raise RuntimeError(f"RollbackContext for {self.manager.component} has no {name} backend")
        return backend
