import hashlib
import os

import pytest

from raibid.modules.infra.errors import CommandError, FatalError, HealthCheckError, PrerequisiteMissingError
from raibid.modules.infra.installers import build_installer
from raibid.modules.infra.installers.flux import FLUX_CRDS, FluxInstaller, is_ready
from raibid.modules.infra.installers.k3s import K3sInstaller, parse_checksums
from raibid.modules.infra.installers.keda import AGENT_JOB, KEDA_API
from raibid.modules.infra.models import Component, InstallPhase
from raibid.modules.infra.retry import CancelToken
from raibid.modules.infra.state import read_credentials, write_credentials

from conftest import FakeResponse

K3S_BINARY = b'\x7fELF k3s arm64'
K3S_VERSION_OUTPUT = 'k3s version v1.28.5+k3s1 (5b2d1271)\ngo version go1.20.12\n'
K3S_UPGRADE = 'v1.29.0+k3s1'
K3S_UPGRADE_BINARY = b'\x7fELF k3s arm64 v1.29'


def redis_credentials(state_dir):
    write_credentials(state_dir, 'redis', {
        'url': 'redis://raibid-redis-master.raibid-redis.svc.cluster.local:6379',
        'host': 'raibid-redis-master.raibid-redis.svc.cluster.local',
        'port': 6379,
        'password': 'hunter2hunter2',
        'namespace': 'raibid-redis',
        'stream': 'raibid:jobs',
        'group': 'raibid-workers',
    })


# -- redis ------------------------------------------------------------------

def test_redis_install(config, cluster, helm, state, installer_kwargs):
    result = build_installer(Component.REDIS, config, **installer_kwargs).install()

    assert result.action == 'installed'
    assert result.health.healthy
    assert 'raibid-redis' in cluster.namespaces
    assert helm.releases[('raibid-redis', 'raibid-redis')].revision == 1
    assert ('raibid:jobs', 'raibid-workers') in cluster.redis.groups

    creds = read_credentials(config.state_path, 'redis')
    assert creds['url'] == 'redis://raibid-redis-master.raibid-redis.svc.cluster.local:6379'
    assert creds['stream'] == 'raibid:jobs'
    assert result.credentials_path.exists()
    assert state.get(Component.REDIS)['release'] == 'raibid-redis'


def test_redis_rerun_upgrades_single_release(config, helm, installer_kwargs):
    first = build_installer(Component.REDIS, config, **installer_kwargs).install()
    password = read_credentials(config.state_path, 'redis')['password']

    second = build_installer(Component.REDIS, config, **installer_kwargs).install()

    assert (first.action, second.action) == ('installed', 'upgraded')
    assert list(helm.releases) == [('raibid-redis', 'raibid-redis')]
    assert helm.releases[('raibid-redis', 'raibid-redis')].revision == 2
    # Existing password is reused across upgrades
    assert read_credentials(config.state_path, 'redis')['password'] == password
    assert helm.installs[-1][3]['auth']['password'] == password


def test_redis_extra_values_are_merged(config, helm, installer_kwargs):
    config.redis.values = {'master': {'resources': {'limits': {'memory': '512Mi'}}}}
    build_installer(Component.REDIS, config, **installer_kwargs).install()

    values = helm.installs[-1][3]
    assert values['master']['resources']['limits']['memory'] == '512Mi'
    assert values['master']['persistence']['size'] == '8Gi'


def test_redis_failed_validation_rolls_back(config, cluster, helm, state, installer_kwargs):
    cluster.redis.execute = lambda command: '(error) NOAUTH Authentication required.'

    with pytest.raises(FatalError) as exc:
        build_installer(Component.REDIS, config, **installer_kwargs).install()

    assert exc.value.phase == InstallPhase.VALIDATION
    assert 'raibid-redis' not in cluster.namespaces
    assert helm.releases == {}
    assert read_credentials(config.state_path, 'redis') is None
    assert not state.is_installed(Component.REDIS)


def test_cancel_mid_install_rolls_back(config, cluster, helm, state, installer_kwargs):
    cancel = CancelToken()
    upgrade_install = helm.upgrade_install

    def install_then_interrupt(*args, **kwargs):
        upgrade_install(*args, **kwargs)
        cancel.cancel()

    helm.upgrade_install = install_then_interrupt

    with pytest.raises(FatalError) as exc:
        build_installer(Component.REDIS, config, cancel=cancel, **installer_kwargs).install()

    assert exc.value.reason == 'cancelled'
    assert exc.value.phase == InstallPhase.BOOTSTRAP
    assert helm.uninstalled == ['raibid-redis']
    assert helm.releases == {}
    assert 'raibid-redis' not in cluster.namespaces
    assert not state.is_installed(Component.REDIS)


# -- gitea ------------------------------------------------------------------

def test_gitea_install_creates_repository(config, cluster, gitea_http, installer_kwargs):
    result = build_installer(Component.GITEA, config, **installer_kwargs).install()

    assert result.action == 'installed'
    posted = [c for c in gitea_http.calls if c[0] == 'POST']
    assert len(posted) == 1
    assert posted[0][2]['json']['name'] == 'raibid-gitops'

    creds = read_credentials(config.state_path, 'gitea')
    assert creds['username'] == 'raibid-admin'
    assert creds['repository'] == 'http://localhost:30080/raibid-admin/raibid-gitops.git'


def test_gitea_helm_failure_deletes_namespace(config, cluster, helm, installer_kwargs):
    helm.fail_install = CommandError(
        'gitea', ['helm', 'upgrade', '--install'], 1, stderr='Error: INSTALLATION FAILED: chart requires kubeVersion',
    ).fatal()

    with pytest.raises(FatalError) as exc:
        build_installer(Component.GITEA, config, **installer_kwargs).install()

    assert exc.value.phase == InstallPhase.INSTALLATION
    assert exc.value.component == 'gitea'
    assert 'raibid-gitea' not in cluster.namespaces


def test_gitea_keeps_existing_namespace_on_failure(config, cluster, helm, installer_kwargs):
    cluster.create_namespace('raibid-gitea')
    helm.fail_install = CommandError('gitea', ['helm', 'upgrade'], 1, stderr='Error: boom').fatal()

    with pytest.raises(FatalError):
        build_installer(Component.GITEA, config, **installer_kwargs).install()
    assert 'raibid-gitea' in cluster.namespaces


def test_gitea_unhealthy_api(config, http, installer_kwargs):
    http.add('GET', f"{config.gitea.external_url}/api/healthz", FakeResponse(403))

    with pytest.raises(FatalError) as exc:
        build_installer(Component.GITEA, config, **installer_kwargs).install()
    assert exc.value.phase == InstallPhase.VALIDATION
    assert 'HTTP 403' in exc.value.reason


# -- keda -------------------------------------------------------------------

def test_keda_applies_scaled_job(config, cluster, helm, installer_kwargs):
    redis_credentials(config.state_path)

    result = build_installer(Component.KEDA, config, **installer_kwargs).install()

    assert result.action == 'installed'
    assert 'raibid-ci' in cluster.namespaces
    job = cluster.objects[(KEDA_API, 'ScaledJob', 'raibid-ci', AGENT_JOB)]
    trigger = job['spec']['triggers'][0]
    assert trigger['type'] == 'redis-streams'
    assert trigger['metadata']['stream'] == 'raibid:jobs'
    assert trigger['metadata']['consumerGroup'] == 'raibid-workers'
    assert trigger['metadata']['address'] == 'raibid-redis-master.raibid-redis.svc.cluster.local:6379'
    assert job['spec']['maxReplicaCount'] == 10


def test_keda_missing_crd_fails(config, cluster, helm, installer_kwargs):
    redis_credentials(config.state_path)
    helm.chart_crds = {'kedacore/keda': ('scaledobjects.keda.sh',)}

    with pytest.raises(FatalError) as exc:
        build_installer(Component.KEDA, config, **installer_kwargs).install()

    err = exc.value
    assert isinstance(err.root, HealthCheckError)
    assert err.phase == InstallPhase.VALIDATION
    assert 'scaledjobs.keda.sh' in err.reason
    assert helm.releases == {}
    assert 'keda' not in cluster.namespaces


def test_keda_without_redis_credentials(config, cluster, installer_kwargs):
    with pytest.raises(FatalError) as exc:
        build_installer(Component.KEDA, config, **installer_kwargs).install()

    assert isinstance(exc.value.root, PrerequisiteMissingError)
    assert exc.value.phase == InstallPhase.CONFIGURATION
    assert 'raibid-ci' not in cluster.namespaces


def test_keda_without_scaled_job(config, cluster, installer_kwargs):
    config.keda.scaled_job = False
    build_installer(Component.KEDA, config, **installer_kwargs).install()
    assert cluster.objects == {}


def test_keda_uninstall_removes_agent_objects(config, cluster, helm, state, installer_kwargs):
    redis_credentials(config.state_path)
    installer = build_installer(Component.KEDA, config, **installer_kwargs)
    installer.install()

    installer.uninstall()

    assert cluster.objects == {}
    assert helm.releases == {}
    assert not state.is_installed(Component.KEDA)


# -- flux -------------------------------------------------------------------

def test_flux_manifests_use_gitea_credentials(config, installer_kwargs):
    write_credentials(config.state_path, 'gitea', {'username': 'raibid-admin', 'password': 'from-gitea'})
    installer = FluxInstaller(config, **installer_kwargs)

    secret, repository, kustomization = installer.manifests()
    assert secret['stringData'] == {'username': 'raibid-admin', 'password': 'from-gitea'}
    assert repository['spec']['url'] == config.flux.git_url
    assert kustomization['spec']['sourceRef'] == {'kind': 'GitRepository', 'name': 'raibid-infrastructure'}


def test_flux_without_gitea_credentials(config, installer_kwargs):
    with pytest.raises(FatalError) as exc:
        FluxInstaller(config, **installer_kwargs).manifests()
    assert isinstance(exc.value.root, PrerequisiteMissingError)


FLUX_SOURCES = (
    ('source.toolkit.fluxcd.io', 'gitrepositories', 'raibid-infrastructure'),
    ('kustomize.toolkit.fluxcd.io', 'kustomizations', 'raibid-ci-infrastructure'),
)
READY = {'status': {'conditions': [{'type': 'Ready', 'status': 'True', 'message': 'Applied revision: main@sha1:abc'}]}}


def flux_sources_ready(cluster):
    for group, plural, name in FLUX_SOURCES:
        cluster.custom_objects[(group, 'v1', 'flux-system', plural, name)] = READY


def test_flux_install_waits_for_ready_sources(config, cluster, installer_kwargs):
    config.flux.gitea_password = 'explicit'
    flux_sources_ready(cluster)

    assert build_installer(Component.FLUX, config, **installer_kwargs).install().action == 'installed'
    assert ('source.toolkit.fluxcd.io/v1', 'GitRepository', 'flux-system', 'raibid-infrastructure') in cluster.objects


def test_flux_applies_sources_once_crds_are_registered(config, cluster, helm, installer_kwargs):
    config.flux.gitea_password = 'explicit'
    flux_sources_ready(cluster)
    helm.chart_crds = {}
    lookups = []
    crd_exists = cluster.crd_exists

    def registered_late(name):
        lookups.append(name)
        if len(lookups) == 3:
            cluster.crds.update(FLUX_CRDS)
        return crd_exists(name)

    cluster.crd_exists = registered_late

    assert build_installer(Component.FLUX, config, **installer_kwargs).install().action == 'installed'
    assert len(lookups) > 2
    assert ('kustomize.toolkit.fluxcd.io/v1', 'Kustomization', 'flux-system', 'raibid-ci-infrastructure') in cluster.objects


def test_flux_crds_never_registered(config, cluster, helm, installer_kwargs):
    config.flux.gitea_password = 'explicit'
    config.flux.timeout = 1
    helm.chart_crds = {}

    with pytest.raises(FatalError) as exc:
        build_installer(Component.FLUX, config, **installer_kwargs).install()

    assert exc.value.phase == InstallPhase.INSTALLATION
    assert 'Flux CRDs registered' in exc.value.reason
    assert cluster.objects == {}
    assert helm.releases == {}


def test_flux_validate_shares_one_deadline(config, cluster, installer_kwargs, monkeypatch):
    from raibid.modules.infra.installers import flux

    flux_sources_ready(cluster)
    config.flux.timeout = 5
    source_key = ('source.toolkit.fluxcd.io', 'v1', 'flux-system', 'gitrepositories', 'raibid-infrastructure')
    cluster.custom_objects.pop(source_key)
    polls = []
    get_custom_object = cluster.get_custom_object

    def source_ready_on_third_poll(group, version, namespace, plural, name):
        if plural == 'gitrepositories':
            polls.append(name)
            if len(polls) == 3:
                cluster.custom_objects[source_key] = READY
        return get_custom_object(group, version, namespace, plural, name)

    cluster.get_custom_object = source_ready_on_third_poll
    timeouts = []
    poll_until = flux.poll_until

    def recording_poll_until(component, operation, condition, timeout, **kwargs):
        timeouts.append(timeout)
        return poll_until(component, operation, condition, timeout, **kwargs)

    monkeypatch.setattr(flux, 'poll_until', recording_poll_until)

    FluxInstaller(config, **installer_kwargs).validate(None)

    assert len(timeouts) == 2
    assert timeouts[0] <= 5
    # The first object took two poll intervals, which the second wait does not get back
    assert timeouts[1] <= 5 - 0.015


def test_is_ready():
    assert not is_ready(None)
    assert not is_ready({'status': {'conditions': [{'type': 'Ready', 'status': 'False'}]}})
    assert is_ready({'status': {'conditions': [{'type': 'Reconciling'}, {'type': 'Ready', 'status': 'True'}]}})


# -- k3s --------------------------------------------------------------------

def k3s_downloads(http, installer, digest=None, binary=K3S_BINARY):
    digest = digest or hashlib.sha256(binary).hexdigest()
    http.add('GET', f"{installer.release_url}/k3s-arm64", FakeResponse(200, content=binary))
    http.add('GET', f"{installer.release_url}/sha256sum-arm64.txt",
             FakeResponse(200, text=f"{'0' * 64}  k3s\n{digest}  k3s-arm64\n"))


@pytest.fixture
def k3s_source(config):
    source = config.k3s.kubeconfig_source
    os.makedirs(os.path.dirname(source))
    with open(source, 'w') as f:
        f.write('apiVersion: v1\nkind: Config\n')
    return source


def test_k3s_install(config, http, runner, state, installer_kwargs, k3s_source):
    installer = K3sInstaller(config, **installer_kwargs)
    k3s_downloads(http, installer)

    result = installer.install()

    assert result.action == 'installed'
    assert installer.binary_path.read_bytes() == K3S_BINARY
    assert os.access(installer.binary_path, os.X_OK)
    assert 'server' in runner.files['/etc/systemd/system/k3s.service']
    assert 'k3s.service' in runner.active
    assert installer.kubeconfig_target.read_text().startswith('apiVersion: v1')
    assert state.get(Component.K3S)['version'] == 'v1.28.5+k3s1'


def test_k3s_unchanged_when_running_same_version(config, http, runner, installer_kwargs, k3s_source):
    installer = K3sInstaller(config, **installer_kwargs)
    k3s_downloads(http, installer)
    installer.install()
    downloads = len(http.calls)

    runner.version_output = K3S_VERSION_OUTPUT
    result = K3sInstaller(config, **installer_kwargs).install()

    assert result.action == 'unchanged'
    assert len(http.calls) == downloads


def test_k3s_checksum_mismatch(config, http, runner, installer_kwargs):
    installer = K3sInstaller(config, **installer_kwargs)
    k3s_downloads(http, installer, digest='f' * 64)

    with pytest.raises(FatalError) as exc:
        installer.install()

    assert exc.value.phase == InstallPhase.VERIFICATION
    assert 'checksum mismatch' in exc.value.reason
    assert not installer.binary_path.exists()
    assert runner.files == {}


def test_k3s_failed_start_rolls_back(config, http, runner, installer_kwargs, k3s_source):
    runner.fail_on = 'enable'
    installer = K3sInstaller(config, **installer_kwargs)
    k3s_downloads(http, installer)

    with pytest.raises(FatalError) as exc:
        installer.install()

    assert exc.value.phase == InstallPhase.CONFIGURATION
    assert not installer.binary_path.parent.exists()
    assert runner.files == {}
    assert ['systemctl', 'disable', '--now', 'k3s.service'] in runner.commands


def start_k3s_upgrade(config, http, runner, installer_kwargs):
    """Install the default k3s, then stage a newer release for download."""
    k3s_downloads(http, K3sInstaller(config, **installer_kwargs))
    K3sInstaller(config, **installer_kwargs).install()
    runner.version_output = K3S_VERSION_OUTPUT
    config.k3s.version = K3S_UPGRADE
    installer = K3sInstaller(config, **installer_kwargs)
    k3s_downloads(http, installer, binary=K3S_UPGRADE_BINARY)
    runner.commands.clear()
    return installer


def test_k3s_upgrade_restarts_service(config, http, cluster, runner, state, installer_kwargs, k3s_source):
    installer = start_k3s_upgrade(config, http, runner, installer_kwargs)
    cluster.version = K3S_UPGRADE

    result = installer.install()

    assert result.action == 'upgraded'
    assert ['systemctl', 'restart', 'k3s.service'] in runner.commands
    assert ['systemctl', 'disable', '--now', 'k3s.service'] not in runner.commands
    assert installer.binary_path.read_bytes() == K3S_UPGRADE_BINARY
    assert not installer.binary_path.with_name('k3s.raibid-backup').exists()
    assert state.get(Component.K3S)['version'] == K3S_UPGRADE


def test_k3s_upgrade_rejects_stale_server(config, http, runner, installer_kwargs, k3s_source):
    installer = start_k3s_upgrade(config, http, runner, installer_kwargs)

    with pytest.raises(FatalError) as exc:
        installer.install()

    assert exc.value.phase == InstallPhase.VALIDATION
    assert 'expected v1.29.0+k3s1' in exc.value.reason
    assert installer.binary_path.read_bytes() == K3S_BINARY


def test_k3s_failed_upgrade_keeps_previous_install(config, http, cluster, runner, state, installer_kwargs, k3s_source):
    installer = start_k3s_upgrade(config, http, runner, installer_kwargs)
    unit = runner.files['/etc/systemd/system/k3s.service']
    config.k3s.timeout = 1
    cluster.nodes = []

    with pytest.raises(FatalError) as exc:
        installer.install()

    assert exc.value.phase == InstallPhase.BOOTSTRAP
    assert runner.files['/etc/systemd/system/k3s.service'] == unit
    assert 'k3s.service' in runner.active
    assert ['systemctl', 'disable', '--now', 'k3s.service'] not in runner.commands
    assert runner.commands[-1] == ['systemctl', 'restart', 'k3s.service']
    assert installer.binary_path.read_bytes() == K3S_BINARY
    assert state.get(Component.K3S)['version'] == 'v1.28.5+k3s1'


def test_k3s_download_not_found(config, http, installer_kwargs):
    installer = K3sInstaller(config, **installer_kwargs)

    with pytest.raises(FatalError) as exc:
        installer.install()
    assert exc.value.phase == InstallPhase.DOWNLOAD
    assert exc.value.kind == 'download'


def test_k3s_rootless_unit(config, installer_kwargs):
    config.k3s.mode = 'rootless'
    unit = K3sInstaller(config, **installer_kwargs).unit_content()
    assert '--rootless' in unit
    assert 'WantedBy=default.target' in unit


def test_parse_checksums():
    text = 'abc123  k3s\nDEF456 *k3s-arm64\n\nmalformed line here\n'
    assert parse_checksums(text) == {'k3s': 'abc123', 'k3s-arm64': 'def456'}
