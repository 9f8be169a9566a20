"""k3s, the single node Kubernetes distribution everything else runs on.

The binary is downloaded from the GitHub release, checked against the
release's SHA-256 list and run as a systemd service, either system wide
(``mode: root``) or as a user service (``mode: rootless``).
"""

import hashlib
import os
import re
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from ..errors import DownloadError, HealthCheckError, InstallationError
from ..health import ClusterHealthChecker, HealthChecker
from ..models import Component, InstallPhase
from ..retry import poll_until
from ..rollback import RollbackContext
from .base import ComponentInstaller

UNIT_NAME = 'k3s.service'
SYSTEM_UNIT_DIR = Path('/etc/systemd/system')
USER_UNIT_DIR = Path('~/.config/systemd/user')
ROOTLESS_KUBECONFIG = Path('~/.kube/k3s.yaml')

VERSION_RE = re.compile(r'k3s version (\S+)')

UNIT_TEMPLATE = """\
[Unit]
Description=Lightweight Kubernetes (managed by raibid)
Documentation=https://k3s.io
Wants=network-online.target
After=network-online.target

[Service]
Type={service_type}
ExecStart={exec_start}
KillMode=process
Delegate=yes
LimitNOFILE=1048576
LimitNPROC=infinity
LimitCORE=infinity
TasksMax=infinity
TimeoutStartSec=0
Restart=always
RestartSec=5s

[Install]
WantedBy={wanted_by}
"""


def sha256_of(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b''):
            digest.update(chunk)
    return digest.hexdigest()


def parse_checksums(text: str) -> Dict[str, str]:
    """``sha256sum`` output as {filename: digest}."""
    checksums = {}
    for line in text.splitlines():
        parts = line.split()
        if len(parts) == 2:
            checksums[parts[1].lstrip('*')] = parts[0].lower()
    return checksums


class K3sInstaller(ComponentInstaller):
    component = Component.K3S

    @property
    def rootless(self) -> bool:
        return self.settings.mode == 'rootless'

    @property
    def asset_name(self) -> str:
        arch = self.settings.arch
        return 'k3s' if arch == 'amd64' else f'k3s-{arch}'

    @property
    def release_url(self) -> str:
        return f"{self.settings.download_base_url.rstrip('/')}/{quote(self.settings.version, safe='')}"

    @property
    def binary_path(self) -> Path:
        return Path(self.settings.install_dir).expanduser() / 'k3s'

    @property
    def unit_path(self) -> Path:
        if self.rootless:
            return USER_UNIT_DIR.expanduser() / UNIT_NAME
        return SYSTEM_UNIT_DIR / UNIT_NAME

    @property
    def kubeconfig_source(self) -> Path:
        if self.rootless:
            return ROOTLESS_KUBECONFIG.expanduser()
        return Path(self.settings.kubeconfig_source).expanduser()

    @property
    def kubeconfig_target(self) -> Path:
        return Path(self.config.kubeconfig or self.settings.kubeconfig_target).expanduser()

    def health_checker(self) -> HealthChecker:
        return ClusterHealthChecker(self.cluster, component=self.name)

    def unit_content(self) -> str:
        flags = list(self.settings.server_flags)
        if self.rootless and '--rootless' not in flags:
            flags.append('--rootless')
        return UNIT_TEMPLATE.format(
            service_type='simple' if self.rootless else 'notify',
            exec_start=' '.join([str(self.binary_path), 'server'] + flags),
            wanted_by='default.target' if self.rootless else 'multi-user.target',
        )

    # -- detection --------------------------------------------------------

    def installed_version(self) -> Optional[str]:
        if not self.binary_path.exists():
            return None
        result = self.runner.run([str(self.binary_path), '--version'], check=False)
        match = VERSION_RE.search(result.stdout or '')
        return match.group(1) if match else None

    def detect(self) -> Dict[str, Any]:
        version = self.installed_version()
        existing: Dict[str, Any] = {'binary': version is not None, 'version': version}
        if version:
            self.logger.info("🔍 Found k3s %s at %s", version, self.binary_path)
        return existing

    def is_unchanged(self, existing: Dict[str, Any]) -> bool:
        if existing.get('version') != self.settings.version:
            return False
        if not self.runner.unit_active(UNIT_NAME, user=self.rootless):
            return False
        health = self.health_checker().check()
        existing['health'] = health
        if not health.healthy:
            self.logger.info("k3s %s is installed but %s: %s", self.settings.version, health.status.value, health.message)
        return health.healthy

    # -- deploy -----------------------------------------------------------

    def _fetch(self, url: str, dest: Optional[Path] = None) -> str:
        """GET ``url`` into ``dest`` (streamed) or return the body."""
        try:
            response = self.http.get(url, stream=dest is not None, timeout=30, allow_redirects=True)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise DownloadError(self.name, url, e.__class__.__name__).transient() from None
        if response.status_code == 429 or response.status_code >= 500:
            raise DownloadError(self.name, url, f"HTTP {response.status_code}").transient()
        if response.status_code != 200:
            raise DownloadError(
                self.name, url, f"HTTP {response.status_code}",
                suggestion=f"Check that k3s {self.settings.version} exists for {self.settings.arch}",
            ).fatal()
        if dest is None:
            return response.text
        with open(dest, 'wb') as f:
            for chunk in response.iter_content(chunk_size=1024 * 1024):
                f.write(chunk)
        return str(dest)

    def download(self, workdir: Path) -> Path:
        binary = workdir / self.asset_name
        self.logger.info("📥 Downloading k3s %s (%s)", self.settings.version, self.asset_name)
        self.step(InstallPhase.DOWNLOAD, f"download {self.asset_name}",
                  lambda: self._fetch(f"{self.release_url}/{self.asset_name}", binary))
        return binary

    def verify(self, binary: Path) -> None:
        checksum_file = f"sha256sum-{self.settings.arch}.txt"
        text = self.step(InstallPhase.DOWNLOAD, f"download {checksum_file}",
                         lambda: self._fetch(f"{self.release_url}/{checksum_file}"))
        self.phase = InstallPhase.VERIFICATION
        expected = parse_checksums(text).get(self.asset_name)
        if not expected:
            raise InstallationError(
                self.name, InstallPhase.VERIFICATION,
                f"{checksum_file} has no entry for {self.asset_name}",
                f"Check the release assets at {self.release_url}",
            ).fatal()
        actual = sha256_of(binary)
        if actual != expected:
            raise InstallationError(
                self.name, InstallPhase.VERIFICATION,
                f"checksum mismatch for {self.asset_name}: expected {expected}, got {actual}",
                "The download was corrupted or tampered with; re-run to download it again",
            ).fatal()
        self.logger.info("🔒 Checksum verified for %s", self.asset_name)

    def install_binary(self, ctx: RollbackContext, binary: Path) -> None:
        self.phase = InstallPhase.INSTALLATION
        install_dir = self.binary_path.parent
        if not install_dir.exists():
            install_dir.mkdir(parents=True)
            ctx.track_directory(install_dir)

        if self.binary_path.exists():
            backup = self.binary_path.with_name('k3s.raibid-backup')
            shutil.copy2(str(self.binary_path), str(backup))
            ctx.track_file_backup(self.binary_path, backup)
        else:
            ctx.track_file(self.binary_path)
        # Rename over the old binary; writing into it fails while k3s is running
        staged = self.binary_path.with_name('.k3s.new')
        shutil.copyfile(str(binary), str(staged))
        os.chmod(staged, 0o755)
        os.replace(staged, self.binary_path)
        self.logger.info("📦 Installed %s", self.binary_path)

    def read_unit(self) -> Optional[str]:
        if self.rootless:
            return self.unit_path.read_text() if self.unit_path.exists() else None
        return self.runner.read_root_file(self.unit_path)

    def write_unit_file(self, content: str) -> None:
        if self.rootless:
            self.unit_path.parent.mkdir(parents=True, exist_ok=True)
            self.unit_path.write_text(content)
        else:
            self.runner.write_root_file(self.unit_path, content)

    def remove_unit_file(self) -> None:
        if self.rootless:
            self.unit_path.unlink(missing_ok=True)
        else:
            self.runner.remove_root_file(self.unit_path)

    def restart_previous(self) -> None:
        """Bring the restored binary and unit back up after a failed upgrade."""
        self.runner.systemctl(['daemon-reload'], user=self.rootless)
        self.runner.systemctl(['restart', UNIT_NAME], user=self.rootless)

    def write_unit(self, ctx: RollbackContext, was_active: bool = False) -> None:
        self.phase = InstallPhase.CONFIGURATION
        content = self.unit_content()
        previous = self.step(InstallPhase.CONFIGURATION, f"read {self.unit_path}", self.read_unit)
        if previous is None:
            ctx.manager.add_action(f"remove {self.unit_path}", self.remove_unit_file)
        else:
            ctx.manager.add_action(f"restore previous {self.unit_path}", lambda: self.write_unit_file(previous))
        self.step(InstallPhase.CONFIGURATION, f"write {self.unit_path}", lambda: self.write_unit_file(content))

        self.step(InstallPhase.CONFIGURATION, "systemctl daemon-reload",
                  lambda: self.runner.systemctl(['daemon-reload'], user=self.rootless))
        if was_active:
            # enable --now leaves a running unit on the old binary
            self.step(InstallPhase.CONFIGURATION, f"restart {UNIT_NAME}",
                      lambda: self.runner.systemctl(['restart', UNIT_NAME], user=self.rootless))
            self.logger.info("🔄 %s restarted on k3s %s", UNIT_NAME, self.settings.version)
            return
        ctx.track_systemd_unit(UNIT_NAME, user=self.rootless)
        self.step(InstallPhase.CONFIGURATION, f"enable and start {UNIT_NAME}",
                  lambda: self.runner.systemctl(['enable', '--now', UNIT_NAME], user=self.rootless))
        self.logger.info("⚙️  %s enabled", UNIT_NAME)

    def install_kubeconfig(self, ctx: RollbackContext) -> None:
        self.phase = InstallPhase.BOOTSTRAP
        source = self.kubeconfig_source
        poll_until(self.name, f"wait for {source}", source.exists,
                   timeout=self.settings.timeout, interval=self.poll_interval, cancel=self.cancel)

        self.phase = InstallPhase.CONFIGURATION
        target = self.kubeconfig_target
        if source.resolve() == target.resolve():
            return
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.exists():
            backup = target.with_name(f"{target.name}.raibid-backup")
            shutil.copy2(str(target), str(backup))
            ctx.track_file_backup(target, backup)
            self.logger.info("💾 Backed up existing kubeconfig to %s", backup)
        else:
            ctx.track_file(target)
        shutil.copyfile(str(source), str(target))
        os.chmod(target, 0o600)
        self.logger.info("🔑 Kubeconfig written to %s", target)

    def deploy(self, ctx: RollbackContext, existing: Dict[str, Any]) -> None:
        was_active = self.runner.unit_active(UNIT_NAME, user=self.rootless)
        if was_active:
            # Registered first so it runs last, once the old binary and unit are back
            ctx.manager.add_action(f"restart {UNIT_NAME} on the previous binary", self.restart_previous)
        workdir = Path(tempfile.mkdtemp(prefix='raibid-k3s-'))
        try:
            binary = self.download(workdir)
            self.verify(binary)
            self.install_binary(ctx, binary)
        finally:
            shutil.rmtree(str(workdir), ignore_errors=True)
        self.write_unit(ctx, was_active)
        self.install_kubeconfig(ctx)

    # -- validation -------------------------------------------------------

    def validate(self, ctx: RollbackContext) -> None:
        def check():
            version = self.cluster.server_version()
            if not version:
                raise HealthCheckError(self.name, "API server did not report a version").transient()
            if self.settings.version and version != self.settings.version:
                raise HealthCheckError(
                    self.name, f"API server reports {version}, expected {self.settings.version}",
                    suggestion=f"Check that {UNIT_NAME} runs {self.binary_path}: 'systemctl status {UNIT_NAME}'",
                ).transient()
            if not any(n.ready for n in self.cluster.list_nodes()):
                raise HealthCheckError(self.name, "no node is Ready").transient()
            coredns = [p for p in self.cluster.list_pods('kube-system', 'k8s-app=kube-dns') if p.running]
            if not coredns:
                raise HealthCheckError(
                    self.name, "CoreDNS is not running",
                    suggestion="Inspect it with 'kubectl -n kube-system describe pods -l k8s-app=kube-dns'",
                ).transient()
            self.logger.info("✅ k3s %s is serving, CoreDNS running", version)

        self.step(InstallPhase.VALIDATION, "validate cluster", check)

    def post_install(self, ctx: RollbackContext) -> Optional[Path]:
        self.binary_path.with_name('k3s.raibid-backup').unlink(missing_ok=True)
        return None

    # -- dry-run and teardown ---------------------------------------------

    def plan(self) -> List[str]:
        s = self.settings
        mode = 'rootless user service' if self.rootless else 'system service'
        return [
            f"download {self.release_url}/{self.asset_name}",
            f"verify SHA-256 against sha256sum-{s.arch}.txt",
            f"install binary to {self.binary_path}",
            f"write {self.unit_path} ({mode}) and enable {UNIT_NAME}, or restart it if it is running",
            f"copy {self.kubeconfig_source} to {self.kubeconfig_target}",
            f"wait up to {s.timeout}s for the API server, nodes and CoreDNS",
        ]

    def uninstall_plan(self) -> List[str]:
        backup = self.kubeconfig_target.with_name(f"{self.kubeconfig_target.name}.raibid-backup")
        return [
            f"disable and stop {UNIT_NAME}",
            f"remove {self.unit_path}",
            f"remove {self.binary_path}",
            f"restore {self.kubeconfig_target} from {backup} if present",
        ]

    def uninstall(self) -> None:
        self.logger.info("🗑️  Removing k3s")
        self.runner.systemctl(['disable', '--now', UNIT_NAME], user=self.rootless, check=False)
        self.remove_unit_file()
        self.runner.systemctl(['daemon-reload'], user=self.rootless, check=False)
        self.binary_path.unlink(missing_ok=True)

        backup = self.kubeconfig_target.with_name(f"{self.kubeconfig_target.name}.raibid-backup")
        if backup.exists():
            shutil.move(str(backup), str(self.kubeconfig_target))
            self.logger.info("💾 Restored previous kubeconfig from %s", backup)
        self.state.record_removed(self.component)
