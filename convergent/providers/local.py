"""
File-backed local provider.

Stands in for a cloud API so manifests can be applied end-to-end from the
command line: every resource type is accepted and its properties are kept in a
JSON file under the backend directory. Actions run "in the background" by
becoming ready a fixed delay after they were started.
"""
import base64
import json
import logging
import os
import secrets
import string
import threading
import time
import uuid
from typing import Any, Callable, Dict, Optional, Tuple

from convergent.errors import ProviderTerminalError
from convergent.providers.base import ActionInterface, ActionResult, ActionStatus, Provider

logger = logging.getLogger(__name__)

DEFAULT_BACKEND_DIR = ".convergent"


class _JsonFile:
    """Small JSON document guarded by a lock; rewritten after each change."""

    def __init__(self, path: Optional[str]):
        self.path = path
        self.lock = threading.Lock()
        self.data: Dict[str, Any] = {}
        if path and os.path.exists(path):
            with open(path, encoding="utf-8") as fh:
                self.data = json.load(fh)

    def flush(self) -> None:
        if not self.path:
            return
        os.makedirs(os.path.dirname(os.path.abspath(self.path)), exist_ok=True)
        with open(self.path, "w", encoding="utf-8", newline="\n") as fh:
            json.dump(self.data, fh, indent=2, sort_keys=True)


class LocalProvider(Provider):
    def __init__(self, backend_dir: Optional[str] = DEFAULT_BACKEND_DIR):
        path = os.path.join(backend_dir, "resources.json") if backend_dir else None
        self._store = _JsonFile(path)

    def create(self, resource_type: str, properties: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        resource_id = f"{resource_type}-{uuid.uuid4().hex[:12]}"
        with self._store.lock:
            self._store.data[resource_id] = {"type": resource_type, "properties": dict(properties)}
            self._store.flush()
        logger.debug("local: created %s", resource_id)
        return resource_id, dict(properties)

    def read(self, resource_type: str, resource_id: str) -> Optional[Dict[str, Any]]:
        with self._store.lock:
            entry = self._store.data.get(resource_id)
        if entry is None or entry["type"] != resource_type:
            return None
        return dict(entry["properties"])

    def update(self, resource_type: str, resource_id: str, properties: Dict[str, Any]) -> Dict[str, Any]:
        with self._store.lock:
            if resource_id not in self._store.data:
                raise ProviderTerminalError(f"{resource_id} does not exist")
            self._store.data[resource_id]["properties"] = dict(properties)
            self._store.flush()
        return dict(properties)

    def delete(self, resource_type: str, resource_id: str) -> None:
        with self._store.lock:
            # deleting something already gone is fine
            if self._store.data.pop(resource_id, None) is not None:
                self._store.flush()

    def resources(self) -> Dict[str, Dict[str, Any]]:
        with self._store.lock:
            return {k: dict(v) for k, v in self._store.data.items()}


# ------------------------------------------------------------------ actions

def _key_pair(payload: Dict[str, Any]) -> Dict[str, Any]:
    private = secrets.token_bytes(32)
    public = secrets.token_bytes(32)
    comment = payload.get("comment", "convergent")
    return {
        "publicKey": f"ssh-ed25519 {base64.b64encode(public).decode()} {comment}",
        "privateKey": base64.b64encode(private).decode(),
        "fingerprint": "SHA256:" + base64.b64encode(public[:24]).decode().rstrip("="),
    }


def _password(payload: Dict[str, Any]) -> Dict[str, Any]:
    length = int(payload.get("length", 24))
    alphabet = string.ascii_letters + string.digits
    return {"result": "".join(secrets.choice(alphabet) for _ in range(length))}


ACTION_TYPES: Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
    "key_pair": _key_pair,
    "random_password": _password,
}


class LocalActions(ActionInterface):
    """
    Runs the built-in action types. A run is Pending until ``delay`` seconds
    after it was started; its result is generated once and kept, so the same
    handle reports the same outputs in later processes.
    """

    def __init__(self, backend_dir: Optional[str] = DEFAULT_BACKEND_DIR, delay: float = 1.0):
        path = os.path.join(backend_dir, "actions.json") if backend_dir else None
        self._store = _JsonFile(path)
        self.delay = delay

    def start(self, action_type: str, payload: Dict[str, Any]) -> str:
        handle = f"run-{uuid.uuid4().hex[:16]}"
        with self._store.lock:
            self._store.data[handle] = {
                "type": action_type,
                "payload": payload,
                "ready_at": time.time() + self.delay,
                "outputs": None,
            }
            self._store.flush()
        return handle

    def status(self, handle: str) -> ActionResult:
        with self._store.lock:
            run = self._store.data.get(handle)
            if run is None:
                raise ProviderTerminalError(f"unknown action handle {handle}")
            if time.time() < run["ready_at"]:
                return ActionResult(ActionStatus.PENDING)

            generate = ACTION_TYPES.get(run["type"])
            if generate is None:
                return ActionResult(ActionStatus.FAILED, reason=f"unsupported action type {run['type']!r}")
            if run["outputs"] is None:
                run["outputs"] = generate(run["payload"])
                self._store.flush()
            return ActionResult(ActionStatus.SUCCEEDED, outputs=dict(run["outputs"]))
