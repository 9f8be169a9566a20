import pytest

from raibid.modules.infra.dependencies import missing_dependencies, order, teardown_order
from raibid.modules.infra.errors import DependencyConflictError, FatalError, PrerequisiteMissingError
from raibid.modules.infra.models import Component

K3S, REDIS, GITEA, KEDA, FLUX = Component.K3S, Component.REDIS, Component.GITEA, Component.KEDA, Component.FLUX


def test_keda_alone_names_missing_prerequisite():
    with pytest.raises(FatalError) as exc:
        order([KEDA])
    err = exc.value.root
    assert isinstance(err, PrerequisiteMissingError)
    assert set(err.missing) & {'redis', 'k3s'}


def test_requested_set_is_ordered():
    assert order([KEDA, REDIS, K3S]) == [K3S, REDIS, KEDA]


def test_everything():
    assert order(list(Component)[::-1]) == [K3S, REDIS, GITEA, KEDA, FLUX]


def test_installed_prerequisites_satisfy():
    assert order([FLUX], installed=[K3S, GITEA]) == [FLUX]


def test_prerequisites_are_never_added():
    assert order([REDIS, GITEA], installed=[K3S]) == [REDIS, GITEA]


def test_duplicates_collapse():
    assert order([K3S, K3S]) == [K3S]


def test_teardown_is_reverse_order():
    installed = list(Component)
    assert teardown_order(list(Component), installed) == [FLUX, KEDA, GITEA, REDIS, K3S]


def test_teardown_refuses_to_orphan_dependents():
    with pytest.raises(FatalError) as exc:
        teardown_order([REDIS], installed=[K3S, REDIS, KEDA])
    err = exc.value.root
    assert isinstance(err, DependencyConflictError)
    assert err.dependents == ['keda']


def test_teardown_of_uninstalled_dependents_is_fine():
    assert teardown_order([REDIS], installed=[K3S, REDIS]) == [REDIS]


def test_missing_dependencies():
    assert missing_dependencies(KEDA, [K3S]) == [REDIS]
    assert missing_dependencies(K3S, []) == []
