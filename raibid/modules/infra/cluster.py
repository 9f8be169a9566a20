"""Cluster and Helm interfaces.

:class:`ClusterClient` is the narrow surface installers and health checkers
use to talk to Kubernetes. :class:`KubernetesClusterClient` implements it on
top of the official ``kubernetes`` client; tests substitute an in-memory fake.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import yaml
from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import ResourceNotFoundError
from kubernetes.stream import stream
from urllib3.exceptions import HTTPError

from ...utils.kube import resolve_kubeconfig
from .errors import ClusterAPIError, CommandError, InfraError, NetworkError
from .models import NodeInfo, PodInfo, ReleaseInfo
from .shell import classify_command_error, run_command

logger = logging.getLogger("raibid.cluster")


class ClusterClient:
    """Operations the installers need from a Kubernetes cluster.

    Every method raises a classified :class:`InfraError` on failure. Lookups of
    objects that do not exist return ``None``/``False`` instead of raising.
    """

    component = 'cluster'

    def bind(self, component: str) -> 'ClusterClient':
        """Return a client whose errors are attributed to ``component``."""
        return self

    def server_version(self) -> str:
        raise NotImplementedError

    def list_nodes(self) -> List[NodeInfo]:
        raise NotImplementedError

    def namespace_exists(self, name: str) -> bool:
        raise NotImplementedError

    def create_namespace(self, name: str, labels: Optional[Dict[str, str]] = None) -> bool:
        """Create ``name``; returns False if it already existed."""
        raise NotImplementedError

    def delete_namespace(self, name: str) -> None:
        raise NotImplementedError

    def list_pods(self, namespace: str, selector: Optional[str] = None) -> List[PodInfo]:
        raise NotImplementedError

    def crd_exists(self, name: str) -> bool:
        raise NotImplementedError

    def get_custom_object(self, group: str, version: str, namespace: str, plural: str,
                          name: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def apply(self, manifest: Dict[str, Any]) -> bool:
        """Create or patch ``manifest``; returns True if it was created."""
        raise NotImplementedError

    def delete_object(self, api_version: str, kind: str, name: str, namespace: Optional[str] = None) -> None:
        raise NotImplementedError

    def exec_in_pod(self, namespace: str, pod: str, command: Sequence[str],
                    container: Optional[str] = None) -> str:
        raise NotImplementedError


def _node_ready(node) -> bool:
    for condition in (node.status.conditions or []):
        if condition.type == 'Ready':
            return condition.status == 'True'
    return False


def _pod_info(pod) -> PodInfo:
    statuses = pod.status.container_statuses or []
    return PodInfo(
        name=pod.metadata.name,
        namespace=pod.metadata.namespace,
        phase=pod.status.phase or 'Unknown',
        ready=bool(statuses) and all(s.ready for s in statuses),
        restarts=sum(s.restart_count or 0 for s in statuses),
        labels=dict(pod.metadata.labels or {}),
    )


class KubernetesClusterClient(ClusterClient):
    """:class:`ClusterClient` backed by the ``kubernetes`` Python client."""

    def __init__(self, kubeconfig: Optional[str] = None, component: str = 'cluster',
                 api_client: Optional[client.ApiClient] = None):
        self.kubeconfig = kubeconfig
        self.component = component
        # Shared by every client returned from bind()
        self._shared: Dict[str, Any] = {"api_client": api_client, "dynamic": None}

    def bind(self, component: str) -> "KubernetesClusterClient":
        bound = KubernetesClusterClient(self.kubeconfig, component)
        bound._shared = self._shared
        return bound

    @property
    def api_client(self) -> client.ApiClient:
        # Created lazily: the kubeconfig may only appear once k3s is running
        if self._shared["api_client"] is None:
            path = resolve_kubeconfig(self.kubeconfig)
            if not path.exists():
                raise InfraError(
                    self.component,
                    f"kubeconfig not found at {path}",
                    "Install the cluster first with 'raibid setup k3s' or set KUBECONFIG",
                ).fatal()
            try:
                self._shared["api_client"] = config.new_client_from_config(config_file=str(path))
            except ConfigException as e:
                raise InfraError(
                    self.component,
                    f"invalid kubeconfig {path}: {e}",
                    "Fix or regenerate the kubeconfig (k3s writes it to /etc/rancher/k3s/k3s.yaml)",
                ).fatal() from None
            logger.debug("Loaded kubeconfig from %s", path)
        return self._shared["api_client"]

    @property
    def core(self) -> client.CoreV1Api:
        return client.CoreV1Api(self.api_client)

    @property
    def dynamic(self) -> DynamicClient:
        if self._shared["dynamic"] is None:
            self._shared["dynamic"] = self._call('discover API resources', lambda: DynamicClient(self.api_client))
        return self._shared["dynamic"]

    def _call(self, operation: str, fn: Callable[[], Any], ignore: Sequence[int] = ()) -> Any:
        """Run ``fn`` and translate client failures into classified errors.

        An ``ApiException`` whose status is in ``ignore`` is returned instead
        of raised, so callers can treat 404/409 as answers.
        """
        try:
            return fn()
        except ApiException as e:
            if e.status in ignore:
                return e
            err = ClusterAPIError(self.component, operation, e.status, e.reason or '')
            raise (err.transient() if err.retryable else err.fatal()) from None
        except (HTTPError, OSError) as e:
            raise NetworkError(self.component, 'Kubernetes API server', str(e)).transient() from None

    def _lookup(self, operation: str, fn: Callable[[], Any]) -> Any:
        """Like :meth:`_call`, but a 404 yields ``None``."""
        result = self._call(operation, fn, ignore=(404,))
        return None if isinstance(result, ApiException) else result

    def server_version(self) -> str:
        info = self._call('get server version', lambda: client.VersionApi(self.api_client).get_code())
        return info.git_version

    def list_nodes(self) -> List[NodeInfo]:
        nodes = self._call('list nodes', lambda: self.core.list_node())
        return [
            NodeInfo(
                name=n.metadata.name,
                ready=_node_ready(n),
                version=n.status.node_info.kubelet_version if n.status.node_info else '',
            )
            for n in nodes.items
        ]

    def namespace_exists(self, name: str) -> bool:
        return self._lookup(f"read namespace {name}", lambda: self.core.read_namespace(name)) is not None

    def create_namespace(self, name: str, labels: Optional[Dict[str, str]] = None) -> bool:
        body = client.V1Namespace(metadata=client.V1ObjectMeta(name=name, labels=labels))
        result = self._call(f"create namespace {name}", lambda: self.core.create_namespace(body), ignore=(409,))
        if isinstance(result, ApiException):
            logger.debug("Namespace %s already exists", name)
            return False
        logger.info("📁 Created namespace %s", name)
        return True

    def delete_namespace(self, name: str) -> None:
        if self._lookup(f"delete namespace {name}", lambda: self.core.delete_namespace(name)) is not None:
            logger.info("🗑️  Deleted namespace %s", name)

    def list_pods(self, namespace: str, selector: Optional[str] = None) -> List[PodInfo]:
        pods = self._call(
            f"list pods in {namespace}",
            lambda: self.core.list_namespaced_pod(namespace, label_selector=selector or ''),
        )
        return [_pod_info(p) for p in pods.items]

    def crd_exists(self, name: str) -> bool:
        api = client.ApiextensionsV1Api(self.api_client)
        return self._lookup(f"read CRD {name}", lambda: api.read_custom_resource_definition(name)) is not None

    def get_custom_object(self, group, version, namespace, plural, name):
        api = client.CustomObjectsApi(self.api_client)
        return self._lookup(
            f"read {plural}/{name}",
            lambda: api.get_namespaced_custom_object(group, version, namespace, plural, name),
        )

    def _resource(self, api_version: str, kind: str):
        try:
            return self._call(
                f"resolve {api_version}/{kind}",
                lambda: self.dynamic.resources.get(api_version=api_version, kind=kind),
            )
        except ResourceNotFoundError:
            raise ClusterAPIError(
                self.component, f"resolve {api_version}/{kind}", 404, 'resource type not registered',
                suggestion=f"Install the CRDs that provide {kind} before applying it",
            ).fatal() from None

    def apply(self, manifest: Dict[str, Any]) -> bool:
        kind = manifest['kind']
        metadata = manifest.get('metadata', {})
        name = metadata['name']
        resource = self._resource(manifest['apiVersion'], kind)
        namespace = metadata.get('namespace', 'default') if resource.namespaced else None

        logger.info("📄 Applying %s %s", kind, name)
        created = self._call(
            f"create {kind} {name}",
            lambda: resource.create(body=manifest, namespace=namespace),
            ignore=(409,),
        )
        if not isinstance(created, ApiException):
            return True

        logger.info("↪️ %s %s exists. Patching...", kind, name)
        self._call(
            f"patch {kind} {name}",
            lambda: resource.patch(
                body=manifest, name=name, namespace=namespace,
                content_type='application/merge-patch+json',
            ),
        )
        return False

    def delete_object(self, api_version, kind, name, namespace=None):
        resource = self._resource(api_version, kind)
        self._lookup(f"delete {kind} {name}", lambda: resource.delete(name=name, namespace=namespace))

    def exec_in_pod(self, namespace, pod, command, container=None):
        kwargs = {'container': container} if container else {}
        return self._call(
            f"exec in pod {namespace}/{pod}",
            lambda: stream(
                self.core.connect_get_namespaced_pod_exec, pod, namespace,
                command=list(command), stderr=True, stdin=False, stdout=True, tty=False,
                **kwargs,
            ),
        )


class HelmClient:
    """Thin wrapper around the ``helm`` CLI."""

    def __init__(self, component: str = 'helm', kubeconfig: Optional[str] = None, runner=run_command):
        self.component = component
        self.kubeconfig = kubeconfig
        self._run = runner

    def bind(self, component: str) -> 'HelmClient':
        return HelmClient(component, self.kubeconfig, self._run)

    def _helm(self, args: List[str], check: bool = True):
        cmd = ['helm'] + args
        if self.kubeconfig:
            cmd += ['--kubeconfig', str(Path(self.kubeconfig).expanduser())]
        return self._run(cmd, component=self.component, check=check, capture_output=True)

    def repo_add(self, name: str, url: str) -> None:
        logger.info("📦 Adding Helm repository %s (%s)", name, url)
        self._helm(['repo', 'add', name, url, '--force-update'])

    def repo_update(self, name: Optional[str] = None) -> None:
        self._helm(['repo', 'update'] + ([name] if name else []))

    def release(self, name: str, namespace: str) -> Optional[ReleaseInfo]:
        """Current state of ``name``, or None if it is not installed."""
        result = self._helm(['status', name, '--namespace', namespace, '-o', 'json'], check=False)
        if result.returncode != 0:
            if 'not found' in (result.stderr or '').lower():
                return None
            raise classify_command_error(
                CommandError(self.component, ['helm', 'status', name], result.returncode,
                             result.stdout, result.stderr)
            )
        try:
            data = json.loads(result.stdout or '{}')
        except ValueError:
            raise CommandError(
                self.component, ['helm', 'status', name], result.returncode, result.stdout,
                f"output is not JSON: {' '.join((result.stdout or '').split())[:120]}",
                suggestion=f"Run 'helm status {name} -n {namespace} -o json' and check the helm version",
            ).fatal() from None
        chart = (data.get('chart') or {}).get('metadata') or {}
        return ReleaseInfo(
            name=data.get('name', name),
            namespace=data.get('namespace', namespace),
            revision=int(data.get('version', 0)),
            status=(data.get('info') or {}).get('status', 'unknown'),
            chart=f"{chart.get('name', '')}-{chart.get('version', '')}".strip('-'),
            app_version=chart.get('appVersion', ''),
        )

    def upgrade_install(self, release: str, chart: str, namespace: str, values: Dict[str, Any],
                        version: Optional[str] = None, timeout: str = '10m', wait: bool = True) -> None:
        """``helm upgrade --install`` with ``values`` passed as a values file."""
        with tempfile.NamedTemporaryFile('w', suffix='.yaml', prefix=f'{release}-values-', delete=False) as f:
            yaml.safe_dump(values, f, default_flow_style=False)
            values_file = f.name
        try:
            args = ['upgrade', '--install', release, chart, '--namespace', namespace, '--values', values_file]
            if version:
                args += ['--version', version]
            if wait:
                args += ['--wait', '--timeout', timeout]
            logger.info("🚀 Installing Helm release '%s' (%s) in namespace '%s'", release, chart, namespace)
            self._helm(args)
        finally:
            os.unlink(values_file)
        logger.info("✅ Helm release '%s' installed", release)

    def uninstall(self, release: str, namespace: str) -> None:
        result = self._helm(['uninstall', release, '--namespace', namespace, '--wait'], check=False)
        if result.returncode != 0:
            if 'not found' in (result.stderr or '').lower():
                logger.debug("Helm release %s already absent", release)
                return
            raise classify_command_error(
                CommandError(self.component, ['helm', 'uninstall', release], result.returncode,
                             result.stdout, result.stderr)
            )
        logger.info("🗑️  Uninstalled Helm release %s", release)

    def rollback(self, release: str, namespace: str, revision: int) -> None:
        logger.info("↩️  Rolling back Helm release %s to revision %d", release, revision)
        self._helm(['rollback', release, str(revision), '--namespace', namespace, '--wait'])
