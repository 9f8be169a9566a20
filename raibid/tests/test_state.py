import json
import os
import stat

import pytest

from raibid.modules.infra.errors import FatalError
from raibid.modules.infra.models import Component
from raibid.modules.infra.state import (
    StateStore,
    credentials_path,
    read_credentials,
    remove_credentials,
    write_credentials,
)


def test_record_and_reload(tmp_path):
    path = tmp_path / 'state.json'
    store = StateStore(path)
    store.record_installed(Component.REDIS, '18.6.1', 'raibid-redis', 'raibid-redis')

    reloaded = StateStore(path).load()
    assert reloaded.installed() == [Component.REDIS]
    assert reloaded.get(Component.REDIS)['namespace'] == 'raibid-redis'
    assert reloaded.is_installed(Component.REDIS)
    assert not reloaded.is_installed(Component.GITEA)


def test_missing_file_is_empty_state(tmp_path):
    assert StateStore(tmp_path / 'state.json').load().installed() == []


def test_failed_upgrade_keeps_component_installed(tmp_path):
    store = StateStore(tmp_path / 'state.json')
    store.record_installed(Component.KEDA)
    store.record_failed(Component.KEDA, 'CRDs not registered')
    store.record_failed(Component.FLUX, 'gitea credentials missing')

    assert store.get(Component.KEDA)['status'] == 'installed'
    assert store.get(Component.KEDA)['error'] == 'CRDs not registered'
    assert store.get(Component.FLUX)['status'] == 'failed'
    assert store.installed() == [Component.KEDA]


def test_record_removed(tmp_path):
    store = StateStore(tmp_path / 'state.json')
    store.record_installed(Component.GITEA)
    store.record_removed(Component.GITEA)
    assert StateStore(tmp_path / 'state.json').load().installed() == []


@pytest.mark.parametrize('content', [
    '{not json',
    json.dumps({'components': {'jenkins': {'status': 'installed', 'updated_at': 'now'}}}),
    json.dumps({'components': {'redis': {'status': 'maybe', 'updated_at': 'now'}}}),
])
def test_invalid_state_file(tmp_path, content):
    path = tmp_path / 'state.json'
    path.write_text(content)
    with pytest.raises(FatalError) as exc:
        StateStore(path).load()
    assert str(path) in exc.value.suggestion


def test_credentials_are_private(tmp_path):
    path = write_credentials(tmp_path, 'redis', {'password': 's3cret'})
    assert path == credentials_path(tmp_path, 'redis')
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
    assert read_credentials(tmp_path, 'redis') == {'password': 's3cret'}
    # No temp files left behind
    assert [p.name for p in tmp_path.iterdir()] == ['redis-credentials.json']

    remove_credentials(tmp_path, 'redis')
    assert read_credentials(tmp_path, 'redis') is None


def test_unreadable_credentials(tmp_path):
    credentials_path(tmp_path, 'gitea').write_text('{truncated')
    assert read_credentials(tmp_path, 'gitea') is None
