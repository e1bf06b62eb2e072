import json
import re
import unittest

from collabhub.sandbox_backends.k8s_backend import (
    RESIZE_CHANNEL,
    K8sAgentSandboxBackend,
    K8sExecTerminal,
    _dns_safe_claim_name,
    _manifest_entry,
    _rel,
)


class _Resp:
    def __init__(self, status_code: int, *, content: bytes = b"", payload=None):
        self.status_code = status_code
        self.content = content
        self._payload = payload

    def json(self):
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise RuntimeError(f"HTTP {self.status_code}")


class _FakeHttp:
    def __init__(self, resp: _Resp):
        self.resp = resp
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        return self.resp


def _backend_with_http(resp: _Resp) -> K8sAgentSandboxBackend:
    b = K8sAgentSandboxBackend.__new__(K8sAgentSandboxBackend)
    b.namespace = "ns"
    b.runtime_port = 8888
    b.request_timeout_s = 5
    b._http = _FakeHttp(resp)
    return b


class TestK8sBackendUtils(unittest.TestCase):
    def test_dns_safe_claim_name_is_dns_label(self):
        name = _dns_safe_claim_name("550e8400-e29b-41d4-a716-446655440000")
        self.assertLessEqual(len(name), 63)
        self.assertRegex(name, r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")

    def test_dns_safe_claim_name_is_deterministic(self):
        a = _dns_safe_claim_name("project-123")
        b = _dns_safe_claim_name("project-123")
        c = _dns_safe_claim_name("project-124")
        self.assertEqual(a, b)
        self.assertNotEqual(a, c)

    def test_dns_safe_claim_name_sanitizes_prefix(self):
        name = _dns_safe_claim_name("project-123", prefix="My Cool App!")
        self.assertTrue(re.match(r"^[a-z0-9-]+$", name))
        self.assertFalse(name.startswith("-"))
        self.assertFalse(name.endswith("-"))

    def test_rel(self):
        self.assertEqual(_rel("/"), ".")
        self.assertEqual(_rel(""), ".")
        self.assertEqual(_rel("/src/app.py"), "src/app.py")

    def test_manifest_entry_parsing(self):
        entry = _manifest_entry(
            {"path": "src/app.py", "kind": "file", "size": 3, "mtime_ns": 7, "sha256": "abc"}
        )
        self.assertEqual(entry.path, "/src/app.py")
        self.assertEqual((entry.kind, entry.size, entry.mtime_ns, entry.sha256), ("file", 3, 7, "abc"))

        folder = _manifest_entry({"path": "src", "kind": "dir", "mtime_ns": 1})
        self.assertIsNone(folder.sha256)
        self.assertIsNone(_manifest_entry({"path": ".", "kind": "dir"}))
        self.assertIsNone(_manifest_entry({"path": "x", "kind": "symlink"}))

    def test_create_sandbox_creates_claim_from_template(self):
        class _FakeCustomObjects:
            def __init__(self):
                self.created = None

            def create_namespaced_custom_object(self, **kwargs):
                self.created = kwargs.get("body")

        b = K8sAgentSandboxBackend.__new__(K8sAgentSandboxBackend)
        b.namespace = "ns"
        b.template_name = "collabhub-sandbox"
        b.root_dir = "/workspace"
        b.custom_objects_api = _FakeCustomObjects()
        b._client = None

        # Avoid touching kube APIs.
        b._claim_exists = lambda _name: False
        b._wait_for_sandbox_ready = lambda _name: None

        info = b.create_sandbox(project_id="project-1")
        created = b.custom_objects_api.created
        self.assertIsNotNone(created)
        self.assertEqual(created["spec"]["sandboxTemplateRef"]["name"], "collabhub-sandbox")
        self.assertEqual(created["metadata"]["name"], info.sandbox_id)
        self.assertEqual(info.root_dir, "/workspace")
        self.assertFalse(info.exists)

    def test_create_sandbox_reuses_existing_claim(self):
        class _NoCreate:
            def create_namespaced_custom_object(self, **_kwargs):
                raise AssertionError("claim must not be recreated")

        b = K8sAgentSandboxBackend.__new__(K8sAgentSandboxBackend)
        b.namespace = "ns"
        b.template_name = "collabhub-sandbox"
        b.root_dir = "/workspace"
        b.custom_objects_api = _NoCreate()
        b._claim_exists = lambda _name: True
        b._wait_for_sandbox_ready = lambda _name: None

        self.assertTrue(b.create_sandbox(project_id="project-1").exists)

    def test_delete_sandbox_deletes_claim(self):
        class _FakeCustomObjects:
            def __init__(self):
                self.deleted_name = None

            def delete_namespaced_custom_object(self, **kwargs):
                self.deleted_name = kwargs.get("name")

        class _FakeClient:
            class _ApiExceptionError(Exception):
                def __init__(self, status: int):
                    self.status = status

            ApiException = _ApiExceptionError

            class V1DeleteOptions:
                def __init__(self, **_kwargs):
                    pass

        b = K8sAgentSandboxBackend.__new__(K8sAgentSandboxBackend)
        b.namespace = "ns"
        b.custom_objects_api = _FakeCustomObjects()
        b._client = _FakeClient
        b._claim_exists = lambda name: name == "collabhub-abc"

        self.assertTrue(b.delete_sandbox(sandbox_id="collabhub-abc"))
        self.assertEqual(b.custom_objects_api.deleted_name, "collabhub-abc")
        self.assertFalse(b.delete_sandbox(sandbox_id="other"))

    def test_wait_for_sandbox_ready_passes_on_final_ready_check(self):
        class _FakeWatch:
            def stream(self, **_kwargs):
                return []

            def stop(self):
                return None

        class _FakeCustomObjects:
            def __init__(self):
                self.gets = 0

            def list_namespaced_custom_object(self, **_kwargs):
                return {}

            def get_namespaced_custom_object(self, **_kwargs):
                self.gets += 1
                ready = "True" if self.gets > 1 else "False"
                return {"status": {"conditions": [{"type": "Ready", "status": ready}]}}

        b = K8sAgentSandboxBackend.__new__(K8sAgentSandboxBackend)
        b.namespace = "ns"
        b.sandbox_ready_timeout_s = 1
        b.custom_objects_api = _FakeCustomObjects()
        b._watch_cls = _FakeWatch

        # Must not raise when final object is Ready.
        b._wait_for_sandbox_ready("claim-1")
        self.assertEqual(b.custom_objects_api.gets, 2)

    def test_wait_for_sandbox_ready_fast_path_skips_watch(self):
        class _WatchShouldNotBeUsed:
            def __init__(self):
                raise AssertionError("watch should not be created for ready sandbox")

        class _FakeCustomObjects:
            def get_namespaced_custom_object(self, **_kwargs):
                return {
                    "status": {
                        "conditions": [
                            {"type": "Ready", "status": "True", "reason": "WarmPoolReady"}
                        ]
                    }
                }

        b = K8sAgentSandboxBackend.__new__(K8sAgentSandboxBackend)
        b.namespace = "ns"
        b.sandbox_ready_timeout_s = 1
        b.custom_objects_api = _FakeCustomObjects()
        b._watch_cls = _WatchShouldNotBeUsed

        b._wait_for_sandbox_ready("claim-fast")

    def test_wait_for_sandbox_ready_raises_with_condition_summary(self):
        class _FakeWatch:
            def stream(self, **_kwargs):
                return []

            def stop(self):
                return None

        class _FakeCustomObjects:
            def get_namespaced_custom_object(self, **_kwargs):
                return {
                    "status": {
                        "conditions": [
                            {"type": "Ready", "status": "False", "reason": "ImagePullBackOff"}
                        ]
                    }
                }

            def list_namespaced_custom_object(self, **_kwargs):
                return {}

        b = K8sAgentSandboxBackend.__new__(K8sAgentSandboxBackend)
        b.namespace = "ns"
        b.sandbox_ready_timeout_s = 1
        b.custom_objects_api = _FakeCustomObjects()
        b._watch_cls = _FakeWatch

        with self.assertRaises(RuntimeError) as ctx:
            b._wait_for_sandbox_ready("claim-slow")
        self.assertIn("ImagePullBackOff", str(ctx.exception))

    def test_runtime_request_targets_claim_service(self):
        b = _backend_with_http(_Resp(200, content=b"hello"))
        self.assertEqual(b.read_file(sandbox_id="collabhub-1", path="/src/a.txt"), b"hello")
        method, url, kwargs = b._http.calls[0]
        self.assertEqual(method, "GET")
        self.assertEqual(
            url, "http://collabhub-1.ns.svc.cluster.local:8888/download/src/a.txt"
        )
        self.assertEqual(kwargs["timeout"], 5)

    def test_runtime_status_mapping(self):
        with self.assertRaises(FileNotFoundError):
            _backend_with_http(_Resp(404)).read_file(sandbox_id="s", path="/missing")
        with self.assertRaises(IsADirectoryError):
            _backend_with_http(_Resp(409)).read_file(sandbox_id="s", path="/dir")
        with self.assertRaises(FileExistsError):
            _backend_with_http(_Resp(409)).make_dir(sandbox_id="s", path="/file")
        with self.assertRaises(PermissionError):
            _backend_with_http(_Resp(400)).remove(sandbox_id="s", path="/", recursive=True)
        with self.assertRaises(RuntimeError):
            _backend_with_http(_Resp(502)).write_file(sandbox_id="s", path="/a", payload=b"")

    def test_manifest_parses_runtime_entries(self):
        payload = {
            "entries": [
                {"path": "src", "kind": "dir", "mtime_ns": 1},
                {"path": "src/a.py", "kind": "file", "size": 1, "mtime_ns": 2, "sha256": "h"},
                "garbage",
            ]
        }
        b = _backend_with_http(_Resp(200, payload=payload))
        entries = b.manifest(sandbox_id="s")
        self.assertEqual([e.path for e in entries], ["/src", "/src/a.py"])
        _method, _url, kwargs = b._http.calls[0]
        self.assertEqual(kwargs["params"], {"dir": ".", "hash": 1})

    def test_exec_terminal_resize_uses_resize_channel(self):
        class _FakeWs:
            def __init__(self):
                self.channels = []
                self.stdin = []

            def write_channel(self, channel, data):
                self.channels.append((channel, json.loads(data)))

            def write_stdin(self, data):
                self.stdin.append(data)

            def is_open(self):
                return True

        ws = _FakeWs()
        term = K8sExecTerminal(ws)
        term.resize(120, 40)
        term.write(b"ls\n")
        self.assertEqual(ws.channels, [(RESIZE_CHANNEL, {"Width": 120, "Height": 40})])
        self.assertEqual(ws.stdin, ["ls\n"])
        self.assertIsNone(term.exit_code())


if __name__ == "__main__":
    unittest.main()
