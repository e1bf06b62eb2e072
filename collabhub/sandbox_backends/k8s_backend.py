from __future__ import annotations

import base64
import hashlib
import json
import logging
import os
import re
import shlex
import time
from typing import Any

from collabhub.config import sandbox_request_timeout_s, sandbox_root_dir
from collabhub.sandbox_backends.base import ManifestEntry, SandboxInfo

logger = logging.getLogger(__name__)

CLAIM_API_GROUP = "extensions.agents.x-k8s.io"
CLAIM_API_VERSION = "v1alpha1"
CLAIM_PLURAL_NAME = "sandboxclaims"

SANDBOX_API_GROUP = "agents.x-k8s.io"
SANDBOX_API_VERSION = "v1alpha1"
SANDBOX_PLURAL_NAME = "sandboxes"

# kubernetes.stream.ws_client channel used for TTY geometry updates.
RESIZE_CHANNEL = 4

_DNS_LABEL_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _dns_safe_claim_name(project_id: str, *, prefix: str = "collabhub") -> str:
    # Deterministic name: prefix + '-' + 12 hex chars.
    digest = hashlib.sha256(project_id.encode("utf-8")).hexdigest()[:12]
    name = f"{prefix}-{digest}"
    # Enforce k8s DNS label rules.
    name = name.lower()
    name = re.sub(r"[^a-z0-9-]", "-", name)
    name = name.strip("-")
    if len(name) > 63:
        name = name[:63].rstrip("-")

    if not _DNS_LABEL_RE.match(name):
        # As a last resort, fall back to a safe fixed prefix.
        name = f"collabhub-{digest}"

    return name


def _ensure_kube_config_loaded() -> None:
    # In-cluster first; fall back to local kubeconfig (useful for dev).
    from kubernetes import config  # type: ignore

    try:
        config.load_incluster_config()
    except config.ConfigException:
        config.load_kube_config()


def _sandbox_ready(sandbox_obj: dict[str, Any]) -> bool:
    status = sandbox_obj.get("status", {})
    for cond in status.get("conditions", []) or []:
        if cond.get("type") == "Ready" and cond.get("status") in ("True", True):
            return True
    return False


def _rel(path: str) -> str:
    # The runtime API takes paths relative to its root.
    rel = (path or "").strip().lstrip("/")
    return rel or "."


def _manifest_entry(item: dict[str, Any]) -> ManifestEntry | None:
    path = item.get("path")
    kind = item.get("kind")
    if not isinstance(path, str) or not path or path == ".":
        return None
    if kind not in ("file", "dir"):
        return None
    size = item.get("size")
    sha = item.get("sha256")
    return ManifestEntry(
        path="/" + path.lstrip("/"),
        kind=kind,
        size=int(size) if isinstance(size, int) else None,
        mtime_ns=int(item.get("mtime_ns") or 0),
        sha256=sha if isinstance(sha, str) and sha else None,
    )


class K8sExecTerminal:
    """Interactive shell over the Kubernetes pod exec websocket (tty=True)."""

    def __init__(self, ws_client: Any) -> None:
        self._ws = ws_client

    def read(self, max_bytes: int = 4096) -> bytes:
        while self._ws.is_open():
            self._ws.update(timeout=1)
            chunks: list[str] = []
            if self._ws.peek_stdout():
                chunks.append(self._ws.read_stdout())
            if self._ws.peek_stderr():
                chunks.append(self._ws.read_stderr())
            data = "".join(chunks)
            if data:
                return data.encode("utf-8")
        return b""

    def write(self, data: bytes) -> None:
        self._ws.write_stdin(data.decode("utf-8", errors="replace"))

    def resize(self, cols: int, rows: int) -> None:
        self._ws.write_channel(
            RESIZE_CHANNEL, json.dumps({"Width": int(cols), "Height": int(rows)})
        )

    def is_alive(self) -> bool:
        return bool(self._ws.is_open())

    def exit_code(self) -> int | None:
        if self._ws.is_open():
            return None
        return getattr(self._ws, "returncode", None)

    def terminate(self) -> None:
        if self._ws.is_open():
            self._ws.close()


class K8sAgentSandboxBackend:
    """Sandboxes as agent-sandbox SandboxClaims.

    Files go through the in-sandbox runtime HTTP API
    (k8s/images/collabhub-sandbox/runtime.py); terminals use pod exec.
    """

    name = "k8s"

    def __init__(self) -> None:
        import requests  # type: ignore
        from kubernetes import client, watch  # type: ignore

        self.namespace = os.environ.get("K8S_SANDBOX_NAMESPACE", "default")
        self.template_name = os.environ.get(
            "K8S_SANDBOX_TEMPLATE_NAME", "collabhub-sandbox"
        )
        self.container = os.environ.get("K8S_SANDBOX_CONTAINER") or None
        self.runtime_port = _env_int("SANDBOX_RUNTIME_PORT", 8888)
        self.sandbox_ready_timeout_s = _env_int("K8S_SANDBOX_READY_TIMEOUT", 180)
        self.request_timeout_s = sandbox_request_timeout_s()
        self.root_dir = sandbox_root_dir()

        _ensure_kube_config_loaded()
        self._watch_cls = watch.Watch
        self._client = client
        self.custom_objects_api = client.CustomObjectsApi()
        self.core_api = client.CoreV1Api()

        self._requests = requests
        self._http = requests.Session()

    # ---- lifecycle

    def create_sandbox(self, *, project_id: str) -> SandboxInfo:
        claim_name = _dns_safe_claim_name(project_id)

        exists = self._claim_exists(claim_name)
        if not exists:
            manifest = {
                "apiVersion": f"{CLAIM_API_GROUP}/{CLAIM_API_VERSION}",
                "kind": "SandboxClaim",
                "metadata": {
                    "name": claim_name,
                    "labels": {"app.kubernetes.io/managed-by": "collabhub"},
                },
                "spec": {"sandboxTemplateRef": {"name": self.template_name}},
            }
            self.custom_objects_api.create_namespaced_custom_object(
                group=CLAIM_API_GROUP,
                version=CLAIM_API_VERSION,
                namespace=self.namespace,
                plural=CLAIM_PLURAL_NAME,
                body=manifest,
            )
            logger.info("created SandboxClaim %s for project %s", claim_name, project_id)

        self._wait_for_sandbox_ready(claim_name)
        return SandboxInfo(sandbox_id=claim_name, root_dir=self.root_dir, exists=exists)

    def delete_sandbox(self, *, sandbox_id: str) -> bool:
        """Delete the SandboxClaim (best-effort).

        Returns True if a claim existed and a delete was issued.
        """
        if not self._claim_exists(sandbox_id):
            return False
        try:
            self.custom_objects_api.delete_namespaced_custom_object(
                group=CLAIM_API_GROUP,
                version=CLAIM_API_VERSION,
                namespace=self.namespace,
                plural=CLAIM_PLURAL_NAME,
                name=sandbox_id,
                body=self._client.V1DeleteOptions(  # type: ignore[attr-defined]
                    propagation_policy="Foreground"
                ),
            )
            return True
        except self._client.ApiException as e:
            if e.status == 404:
                return False
            raise

    def is_alive(self, *, sandbox_id: str) -> bool:
        try:
            resp = self._http.get(
                f"{self._runtime_base_url(sandbox_id)}/healthz", timeout=5
            )
        except self._requests.RequestException:
            return False
        return resp.status_code == 200

    # ---- files

    def read_file(self, *, sandbox_id: str, path: str) -> bytes:
        resp = self._request(
            sandbox_id, "GET", f"download/{_rel(path)}", allow_status=(404, 409)
        )
        if resp.status_code == 404:
            raise FileNotFoundError(path)
        if resp.status_code == 409:
            raise IsADirectoryError(path)
        return resp.content

    def write_file(self, *, sandbox_id: str, path: str, payload: bytes) -> None:
        content_b64 = base64.b64encode(payload).decode("ascii")
        resp = self._request(
            sandbox_id,
            "POST",
            "write_b64",
            json={"path": _rel(path), "content_b64": content_b64},
            allow_status=(409,),
        )
        if resp.status_code == 409:
            raise IsADirectoryError(path)

    def make_dir(self, *, sandbox_id: str, path: str) -> None:
        resp = self._request(
            sandbox_id, "POST", "mkdir", json={"path": _rel(path)}, allow_status=(409,)
        )
        if resp.status_code == 409:
            raise FileExistsError(path)

    def remove(self, *, sandbox_id: str, path: str, recursive: bool) -> None:
        self._request(
            sandbox_id, "POST", "rm", json={"path": _rel(path), "recursive": recursive}
        )

    def move(self, *, sandbox_id: str, src: str, dst: str) -> None:
        resp = self._request(
            sandbox_id,
            "POST",
            "rename",
            json={"src": _rel(src), "dst": _rel(dst)},
            allow_status=(404,),
        )
        if resp.status_code == 404:
            raise FileNotFoundError(src)

    def list_dir(self, *, sandbox_id: str, path: str) -> list[ManifestEntry]:
        resp = self._request(
            sandbox_id, "GET", "list", params={"dir": _rel(path)}, allow_status=(404,)
        )
        if resp.status_code == 404:
            raise FileNotFoundError(path)
        return self._entries(resp.json())

    def manifest(self, *, sandbox_id: str) -> list[ManifestEntry]:
        resp = self._request(
            sandbox_id, "GET", "manifest", params={"dir": ".", "hash": 1}
        )
        return self._entries(resp.json())

    # ---- terminals

    def spawn_terminal(
        self, *, sandbox_id: str, cols: int, rows: int, shell: str
    ) -> K8sExecTerminal:
        from kubernetes.stream import stream as k8s_stream  # type: ignore

        # The shell starts at the runtime root; the stty call applies the initial geometry.
        command = [
            "/bin/sh",
            "-c",
            f"cd {shlex.quote(self.root_dir)} && stty cols {int(cols)} rows {int(rows)}; "
            f"exec {shlex.quote(shell)} || exec /bin/sh",
        ]
        kwargs: dict[str, Any] = {}
        if self.container:
            kwargs["container"] = self.container
        ws_client = k8s_stream(
            self.core_api.connect_get_namespaced_pod_exec,
            name=self._pod_name(sandbox_id),
            namespace=self.namespace,
            command=command,
            stdin=True,
            stdout=True,
            stderr=True,
            tty=True,
            _preload_content=False,
            **kwargs,
        )
        return K8sExecTerminal(ws_client)

    # ---- helpers

    def _claim_exists(self, claim_name: str) -> bool:
        try:
            self.custom_objects_api.get_namespaced_custom_object(
                group=CLAIM_API_GROUP,
                version=CLAIM_API_VERSION,
                namespace=self.namespace,
                plural=CLAIM_PLURAL_NAME,
                name=claim_name,
            )
            return True
        except self._client.ApiException as e:
            if e.status == 404:
                return False
            raise

    def _get_sandbox(self, claim_name: str) -> dict[str, Any] | None:
        try:
            obj = self.custom_objects_api.get_namespaced_custom_object(
                group=SANDBOX_API_GROUP,
                version=SANDBOX_API_VERSION,
                namespace=self.namespace,
                plural=SANDBOX_PLURAL_NAME,
                name=claim_name,
            )
        except self._client.ApiException as e:
            if e.status == 404:
                return None
            raise
        return obj if isinstance(obj, dict) else None

    def _wait_for_sandbox_ready(self, claim_name: str) -> None:
        # Reused claims are usually ready already; skip the watch.
        current = self._get_sandbox(claim_name)
        if current is not None and _sandbox_ready(current):
            return

        w = self._watch_cls()
        start = time.time()

        for event in w.stream(
            func=self.custom_objects_api.list_namespaced_custom_object,
            namespace=self.namespace,
            group=SANDBOX_API_GROUP,
            version=SANDBOX_API_VERSION,
            plural=SANDBOX_PLURAL_NAME,
            field_selector=f"metadata.name={claim_name}",
            timeout_seconds=self.sandbox_ready_timeout_s,
        ):
            obj = event.get("object")
            if not isinstance(obj, dict):
                continue
            if _sandbox_ready(obj):
                w.stop()
                return
            if time.time() - start > self.sandbox_ready_timeout_s:
                w.stop()
                break

        # The watch can end just before the Ready condition lands.
        sandbox = self._get_sandbox(claim_name)
        if sandbox is not None and _sandbox_ready(sandbox):
            return
        conditions = ((sandbox or {}).get("status") or {}).get("conditions") or []
        summary = ", ".join(
            f"{c.get('type')}={c.get('status')} ({c.get('reason')})"
            for c in conditions
            if isinstance(c, dict)
        )
        raise RuntimeError(
            f"Timed out waiting for sandbox '{claim_name}' to become Ready"
            + (f": {summary}" if summary else "")
        )

    def _pod_name(self, sandbox_id: str) -> str:
        # agent-sandbox names the backing pod after the Sandbox (== claim name).
        return sandbox_id

    def _runtime_base_url(self, claim_name: str) -> str:
        host = f"{claim_name}.{self.namespace}.svc.cluster.local"
        return f"http://{host}:{self.runtime_port}"

    def _request(
        self,
        claim_name: str,
        method: str,
        path: str,
        *,
        allow_status: tuple[int, ...] = (),
        **kwargs,
    ):
        url = f"{self._runtime_base_url(claim_name).rstrip('/')}/{path.lstrip('/')}"
        resp = self._http.request(method, url, timeout=self.request_timeout_s, **kwargs)
        if resp.status_code in allow_status:
            return resp
        if resp.status_code == 400:
            raise PermissionError(f"runtime rejected path: {path}")
        resp.raise_for_status()
        return resp

    def _entries(self, data: Any) -> list[ManifestEntry]:
        items = data.get("entries") if isinstance(data, dict) else None
        if not isinstance(items, list):
            return []
        out: list[ManifestEntry] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            entry = _manifest_entry(item)
            if entry is not None:
                out.append(entry)
        return out
