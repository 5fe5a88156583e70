"""
mcruntime.state
---------------

Instance state document and event log consumed by the UI collaborator.

- ``state.json``: {"status", "details", "updatedAt"}, rewritten atomically
- ``events.log``: append-only JSON lines {"ts", "event", ...}
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import *

from .exceptions import FileOperationError
from .fileops import read_json, write_json_atomic
from .models import LaunchState
from .paths import InstancePaths
from .utils import utc_now_iso

logger = logging.getLogger(__name__)


class InstanceStateStore:
    """
    Writes the state document and event log of one instance.

    Writers on different threads (the launch session and its exit monitor)
    are serialized by an internal lock.
    """

    def __init__(self, paths: InstancePaths):
        self.paths = paths
        self._lock = threading.Lock()

    def set(self, status: Union[LaunchState, str], **details: Any) -> Dict[str, Any]:
        """Replace the state document and log a matching ``state`` event."""
        status = LaunchState(status).value
        doc = {"status": status, "details": _jsonable(details), "updatedAt": utc_now_iso()}
        with self._lock:
            write_json_atomic(self.paths.state_path, doc)
            self._append({"ts": doc["updatedAt"], "event": "state", "status": status, **doc["details"]})
        logger.debug("%s -> %s", self.paths.instance_root.name, status)
        return doc

    def event(self, name: str, **fields: Any) -> None:
        with self._lock:
            self._append({"ts": utc_now_iso(), "event": name, **_jsonable(fields)})

    def read(self) -> Dict[str, Any]:
        doc = read_json(self.paths.state_path, default=None)
        if not isinstance(doc, dict):
            return {"status": LaunchState.IDLE.value, "details": {}, "updatedAt": None}
        return doc

    def events(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Parsed events, oldest first; malformed lines are skipped."""
        path = self.paths.events_path
        if not path.is_file():
            return []
        out: List[Dict[str, Any]] = []
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    out.append(json.loads(line))
                except json.JSONDecodeError:
                    continue
        return out[-limit:] if limit else out

    def _append(self, record: Dict[str, Any]) -> None:
        path = self.paths.events_path
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a", encoding="utf-8") as f:
                f.write(json.dumps(record, ensure_ascii=False) + "\n")
        except OSError as exc:
            raise FileOperationError(f"Cannot append event: {exc}",
                                     context={"op": "append", "path": str(path)}) from exc


def _jsonable(values: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in values.items():
        if isinstance(value, Path):
            value = str(value)
        elif isinstance(value, (list, tuple)):
            value = [str(v) if isinstance(v, Path) else v for v in value]
        elif hasattr(value, "value") and isinstance(getattr(value, "value"), str):
            value = value.value
        out[key] = value
    return out
