import os
import tempfile
from pathlib import Path
from typing import Optional

DEFAULT_KUBECONFIG = Path("~/.kube/config")


def resolve_kubeconfig(path: Optional[str] = None) -> Path:
    """
    Work out which kubeconfig to use.

    Order: the KUBECONFIG_CONTENT env var (CI secrets), ``path``, the first
    entry of $KUBECONFIG, then ~/.kube/config. The returned path may not
    exist yet (k3s writes it on first start).
    """
    # CI/CD secret-based loading
    if os.environ.get("KUBECONFIG_CONTENT"):
        fd, temp_path = tempfile.mkstemp(prefix="raibid-kubeconfig-", suffix=".yaml")
        with os.fdopen(fd, "w") as f:
            f.write(os.environ["KUBECONFIG_CONTENT"])
        return Path(temp_path)

    if path:
        return Path(os.path.expanduser(path)).resolve()

    env_path = os.environ.get("KUBECONFIG", "").split(os.pathsep)[0]
    if env_path:
        return Path(os.path.expanduser(env_path)).resolve()

    return DEFAULT_KUBECONFIG.expanduser()
