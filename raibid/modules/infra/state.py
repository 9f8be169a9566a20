"""Persisted installation state and credential files under ``~/.raibid``."""

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from jsonschema import ValidationError, validate

from .errors import InfraError
from .models import Component

logger = logging.getLogger("raibid.state")

DEFAULT_STATE_DIR = Path("~/.raibid")

STATE_SCHEMA = {
    "type": "object",
    "properties": {
        "version": {"type": "integer"},
        "components": {
            "type": "object",
            "propertyNames": {"enum": [c.value for c in Component]},
            "additionalProperties": {
                "type": "object",
                "properties": {
                    "status": {"enum": ["installed", "failed"]},
                    "version": {"type": ["string", "null"]},
                    "namespace": {"type": ["string", "null"]},
                    "release": {"type": ["string", "null"]},
                    "updated_at": {"type": "string"},
                    "error": {"type": ["string", "null"]},
                },
                "required": ["status", "updated_at"],
            },
        },
    },
    "required": ["components"],
}


def write_json_atomic(path: Path, data: Any, mode: int = 0o600) -> None:
    """Write ``data`` as JSON via a temp file and rename."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, mode)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def credentials_path(state_dir: Path, component: str) -> Path:
    return Path(state_dir).expanduser() / f"{component}-credentials.json"


def write_credentials(state_dir: Path, component: str, payload: Dict[str, Any]) -> Path:
    """Store ``payload`` in ``<component>-credentials.json`` readable only by the owner."""
    path = credentials_path(state_dir, component)
    write_json_atomic(path, payload, mode=0o600)
    logger.info("🔑 Credentials for %s saved to %s", component, path)
    return path


def read_credentials(state_dir: Path, component: str) -> Optional[Dict[str, Any]]:
    path = credentials_path(state_dir, component)
    if not path.exists():
        return None
    try:
        with open(path, "r") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("⚠️  Ignoring unreadable credentials file %s: %s", path, e)
        return None


def remove_credentials(state_dir: Path, component: str) -> None:
    credentials_path(state_dir, component).unlink(missing_ok=True)


class StateStore:
    """Which components this host has installed, keyed by component name."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path or DEFAULT_STATE_DIR / "state.json").expanduser()
        self._data: Dict[str, Any] = {"version": 1, "components": {}}

    @property
    def state_dir(self) -> Path:
        return self.path.parent

    def load(self) -> "StateStore":
        if not self.path.exists():
            logger.debug("No state file at %s", self.path)
            return self
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
            validate(instance=data, schema=STATE_SCHEMA)
        except (json.JSONDecodeError, ValidationError) as e:
            message = e.message if isinstance(e, ValidationError) else str(e)
            raise InfraError(
                "state",
                f"state file {self.path} is invalid: {message}",
                f"Fix or remove {self.path}; it is rebuilt on the next setup",
            ).fatal() from None
        self._data = data
        return self

    def save(self) -> None:
        write_json_atomic(self.path, self._data, mode=0o644)

    @property
    def components(self) -> Dict[str, Dict[str, Any]]:
        return self._data["components"]

    def get(self, component: Component) -> Optional[Dict[str, Any]]:
        return self.components.get(component.value)

    def installed(self) -> List[Component]:
        return [Component(name) for name, entry in self.components.items() if entry["status"] == "installed"]

    def is_installed(self, component: Component) -> bool:
        entry = self.get(component)
        return bool(entry) and entry["status"] == "installed"

    def record_installed(self, component: Component, version: Optional[str] = None,
                         namespace: Optional[str] = None, release: Optional[str] = None) -> None:
        self.components[component.value] = {
            "status": "installed",
            "version": version,
            "namespace": namespace,
            "release": release,
            "updated_at": datetime.now(timezone.utc).isoformat(),
            "error": None,
        }
        self.save()

    def record_failed(self, component: Component, error: str) -> None:
        entry = dict(self.components.get(component.value) or {})
        # A failed upgrade keeps the component installed
        if entry.get("status") != "installed":
            entry["status"] = "failed"
        entry["error"] = error
        entry["updated_at"] = datetime.now(timezone.utc).isoformat()
        self.components[component.value] = entry
        self.save()

    def record_removed(self, component: Component) -> None:
        if self.components.pop(component.value, None) is not None:
            self.save()
