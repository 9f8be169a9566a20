"""Component installers, one per :class:`Component`."""

from typing import Dict, Type

from ..models import Component
from .base import ComponentInstaller, HelmComponentInstaller
from .flux import FluxInstaller
from .gitea import GiteaInstaller
from .k3s import K3sInstaller
from .keda import KedaInstaller
from .redis import RedisInstaller

INSTALLERS: Dict[Component, Type[ComponentInstaller]] = {
    Component.K3S: K3sInstaller,
    Component.REDIS: RedisInstaller,
    Component.GITEA: GiteaInstaller,
    Component.KEDA: KedaInstaller,
    Component.FLUX: FluxInstaller,
}


def build_installer(component: Component, config, **kwargs) -> ComponentInstaller:
    """Instantiate the installer for ``component``."""
    return INSTALLERS[Component(component)](config, **kwargs)


__all__ = [
    'INSTALLERS',
    'ComponentInstaller',
    'HelmComponentInstaller',
    'K3sInstaller',
    'RedisInstaller',
    'GiteaInstaller',
    'KedaInstaller',
    'FluxInstaller',
    'build_installer',
]
