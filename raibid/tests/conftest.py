import subprocess
from typing import Dict, List, Optional

import pytest

from raibid.modules.infra.config import RaibidConfig
from raibid.modules.infra.errors import CommandError
from raibid.modules.infra.installers.keda import KEDA_CRDS
from raibid.modules.infra.models import Component, NodeInfo, PodInfo, ReleaseInfo
from raibid.modules.infra.orchestrator import Orchestrator
from raibid.modules.infra.retry import RetryConfig
from raibid.modules.infra.state import StateStore

# Requirements every test host satisfies
NO_REQUIREMENTS = {
    'min_disk_gb': 0,
    'min_memory_gb': 0,
    'required_executables': [],
    'optional_executables': [],
    'required_endpoints': [],
}

CHART_CRDS = {
    'kedacore/keda': KEDA_CRDS,
    'fluxcd-community/flux2': (
        'gitrepositories.source.toolkit.fluxcd.io',
        'kustomizations.kustomize.toolkit.fluxcd.io',
    ),
}


def _matches(labels: Dict[str, str], selector: Optional[str]) -> bool:
    if not selector:
        return True
    for term in selector.split(','):
        key, _, value = term.partition('=')
        if labels.get(key) != value:
            return False
    return True


class FakeRedis:
    """Answers the redis-cli commands the Redis installer sends."""

    def __init__(self):
        self.groups = set()

    def execute(self, command: List[str]) -> str:
        args = command[4:] if command[:1] == ['redis-cli'] else command
        if args == ['PING']:
            return 'PONG'
        if args[:2] == ['XGROUP', 'CREATE']:
            stream, group = args[2], args[3]
            if (stream, group) in self.groups:
                return '(error) BUSYGROUP Consumer Group name already exists'
            self.groups.add((stream, group))
            return 'OK'
        if args[:2] == ['XINFO', 'GROUPS']:
            return '\n'.join(f"name\n{g}" for s, g in sorted(self.groups) if s == args[2])
        return f"(error) ERR unknown command '{args[0]}'"


class FakeCluster:
    def __init__(self):
        self.version = 'v1.28.5+k3s1'
        self.namespaces = {'default', 'kube-system'}
        self.nodes = [NodeInfo('node-1', True, self.version)]
        self.pods: List[PodInfo] = [
            PodInfo('coredns-6799fbcd5-x2x4k', 'kube-system', 'Running', ready=True,
                    labels={'k8s-app': 'kube-dns'}),
        ]
        self.crds = set()
        self.objects: Dict[tuple, dict] = {}
        self.custom_objects: Dict[tuple, dict] = {}
        self.redis = FakeRedis()
        self.exec_calls: List[tuple] = []

    def bind(self, component):
        return self

    def server_version(self):
        return self.version

    def list_nodes(self):
        return list(self.nodes)

    def namespace_exists(self, name):
        return name in self.namespaces

    def create_namespace(self, name, labels=None):
        created = name not in self.namespaces
        self.namespaces.add(name)
        return created

    def delete_namespace(self, name):
        self.namespaces.discard(name)
        self.pods = [p for p in self.pods if p.namespace != name]

    def list_pods(self, namespace, selector=None):
        return [p for p in self.pods if p.namespace == namespace and _matches(p.labels, selector)]

    def crd_exists(self, name):
        return name in self.crds

    def get_custom_object(self, group, version, namespace, plural, name):
        return self.custom_objects.get((group, version, namespace, plural, name))

    def apply(self, manifest):
        meta = manifest['metadata']
        key = (manifest['apiVersion'], manifest['kind'], meta.get('namespace'), meta['name'])
        created = key not in self.objects
        self.objects[key] = manifest
        return created

    def delete_object(self, api_version, kind, name, namespace=None):
        self.objects.pop((api_version, kind, namespace, name), None)

    def exec_in_pod(self, namespace, pod, command, container=None):
        self.exec_calls.append((namespace, pod, list(command)))
        return self.redis.execute(list(command))


class FakeHelm:
    def __init__(self, cluster: FakeCluster):
        self.cluster = cluster
        self.repos: Dict[str, str] = {}
        self.releases: Dict[tuple, ReleaseInfo] = {}
        self.installs: List[tuple] = []
        self.uninstalled: List[str] = []
        self.rolled_back: List[tuple] = []
        self.chart_crds = dict(CHART_CRDS)
        self.fail_install = None

    def bind(self, component):
        return self

    def repo_add(self, name, url):
        self.repos[name] = url

    def repo_update(self, name=None):
        pass

    def release(self, name, namespace):
        return self.releases.get((namespace, name))

    def upgrade_install(self, release, chart, namespace, values, version=None, timeout='10m', wait=True):
        self.installs.append((release, chart, namespace, values))
        if self.fail_install:
            raise self.fail_install
        previous = self.releases.get((namespace, release))
        revision = previous.revision + 1 if previous else 1
        self.releases[(namespace, release)] = ReleaseInfo(release, namespace, revision, 'deployed', chart=chart)
        if not previous:
            self.cluster.pods.append(PodInfo(
                f"{release}-0", namespace, 'Running', ready=True,
                labels={
                    'app.kubernetes.io/instance': release,
                    'app.kubernetes.io/name': chart.split('/')[-1],
                    'app.kubernetes.io/component': 'master',
                },
            ))
        self.cluster.crds.update(self.chart_crds.get(chart, ()))

    def uninstall(self, release, namespace):
        self.uninstalled.append(release)
        self.releases.pop((namespace, release), None)
        self.cluster.pods = [
            p for p in self.cluster.pods if p.labels.get('app.kubernetes.io/instance') != release
        ]

    def rollback(self, release, namespace, revision):
        self.rolled_back.append((release, namespace, revision))


class FakeRunner:
    """Stands in for :class:`SystemRunner`; records commands, touches nothing."""

    def __init__(self, version_output: str = ''):
        self.version_output = version_output
        self.commands: List[List[str]] = []
        self.files: Dict[str, str] = {}
        self.active = set()
        self.fail_on: Optional[str] = None

    def run(self, cmd, check=True, **kwargs):
        cmd = [str(c) for c in cmd]
        self.commands.append(cmd)
        stdout = self.version_output if '--version' in cmd else ''
        return subprocess.CompletedProcess(cmd, 0, stdout, '')

    def systemctl(self, args, user=False, check=True):
        args = list(args)
        self.commands.append(['systemctl'] + args)
        if self.fail_on and args[0] == self.fail_on:
            raise CommandError('k3s', ['systemctl'] + args, 1, stderr='Failed to enable unit').fatal()
        if args[:2] == ['enable', '--now']:
            self.active.add(args[2])
        elif args[:2] == ['disable', '--now']:
            self.active.discard(args[2])
        elif args[0] == 'restart':
            self.active.add(args[1])
        return subprocess.CompletedProcess(args, 0, '', '')

    def unit_active(self, unit, user=False):
        return unit in self.active

    def write_root_file(self, path, content):
        self.files[str(path)] = content

    def remove_root_file(self, path):
        self.files.pop(str(path), None)

    def read_root_file(self, path):
        return self.files.get(str(path))


class FakeResponse:
    def __init__(self, status_code=200, text='', content=b'', json_data=None):
        self.status_code = status_code
        self.text = text
        self.content = content
        self.json_data = json_data

    def iter_content(self, chunk_size=1):
        yield self.content

    def json(self):
        return self.json_data


class FakeHttp:
    """Replays canned responses; the last one for a route repeats."""

    def __init__(self):
        self.routes: Dict[tuple, List[FakeResponse]] = {}
        self.calls: List[tuple] = []

    def add(self, method, url, *responses):
        self.routes[(method, url)] = list(responses)

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        responses = self.routes.get((method, url))
        if not responses:
            return FakeResponse(404, text='not found')
        return responses.pop(0) if len(responses) > 1 else responses[0]

    def get(self, url, **kwargs):
        return self.request('GET', url, **kwargs)

    def head(self, url, **kwargs):
        return self.request('HEAD', url, **kwargs)


@pytest.fixture
def config(tmp_path):
    sections = {c.value: {'requirements': dict(NO_REQUIREMENTS)} for c in Component}
    sections['k3s'].update(
        install_dir=str(tmp_path / 'bin'),
        kubeconfig_source=str(tmp_path / 'rancher' / 'k3s.yaml'),
        kubeconfig_target=str(tmp_path / 'kube' / 'config'),
    )
    return RaibidConfig(state_dir=str(tmp_path / 'state'), **sections)


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def helm(cluster):
    return FakeHelm(cluster)


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def http():
    return FakeHttp()


@pytest.fixture
def gitea_http(http, config):
    base = config.gitea.external_url
    repo = f"{base}/api/v1/repos/{config.gitea.admin_user}/{config.gitea.gitops_repo}"
    http.add('GET', f"{base}/api/healthz", FakeResponse(200, text='{"status": "pass"}'))
    http.add('GET', repo, FakeResponse(404), FakeResponse(200))
    http.add('POST', f"{base}/api/v1/user/repos", FakeResponse(201))
    return http


@pytest.fixture
def state(config):
    return StateStore(config.state_path / 'state.json')


@pytest.fixture
def installer_kwargs(cluster, helm, state, runner, http):
    return dict(
        cluster=cluster, helm=helm, state=state, runner=runner, http=http,
        retry_config=RetryConfig.none(), poll_interval=0.01,
    )


@pytest.fixture
def orchestrator(config, cluster, helm, state, runner, http):
    return Orchestrator(
        config, cluster=cluster, helm=helm, state=state, runner=runner, http=http,
        retry_config=RetryConfig.none(), poll_interval=0.01,
    )
