import itertools
import json
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import unquote, urlparse

import pytest

# resource -> update payload key for id-addressed collections
_ID_RESOURCES = {"acls": "entry", "nodeattrs": "grant", "ssh": "rule"}
_NAMED_RESOURCES = {"groups", "hosts", "tagowners", "postures"}
_SINGLETONS = {"settings", "autoapprovers", "derpmap"}


class FakePolicyService:
    """In-memory stand-in for the policy service, with the same wire contract."""

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.items: Dict[str, Dict[str, Dict[str, Any]]] = {r: {} for r in list(_ID_RESOURCES) + list(_NAMED_RESOURCES)}
        self.singletons: Dict[str, Optional[Dict[str, Any]]] = {r: None for r in _SINGLETONS}
        self.default_posture: Optional[List[str]] = None
        self.calls: List[Tuple[str, str, Any]] = []
        self.headers: List[Dict[str, str]] = []
        self.failures: Dict[Tuple[str, str], Tuple[int, str]] = {}
        self.delays: Dict[Tuple[str, str], float] = {}
        self._ids = itertools.count(1)

    # ---- test helpers ----
    def fail_once(self, method: str, path: str, status: int, body: str) -> None:
        self.failures[(method, path)] = (status, body)

    def delay(self, method: str, path: str, seconds: float) -> None:
        self.delays[(method, path)] = seconds

    def count(self, method: Optional[str] = None) -> int:
        return sum(1 for m, _, _ in self.calls if method is None or m == method)

    def seed(self, resource: str, key: str, obj: Dict[str, Any]) -> None:
        self.items[resource][key] = obj

    # ---- request handling ----
    def handle(self, method: str, path: str, body: Any) -> Tuple[int, Any]:
        with self.lock:
            self.calls.append((method, path, body))
            if (method, path) in self.failures:
                status, text = self.failures.pop((method, path))
                return status, text
            parts = [unquote(p) for p in path.strip("/").split("/") if p]
            if not parts:
                return 404, {"error": "not found"}
            resource, rest = parts[0], parts[1:]
            if resource in _SINGLETONS:
                return self._singleton(method, resource, body)
            if resource == "postures" and rest == ["default"]:
                return self._default_posture(method, body)
            if resource in _ID_RESOURCES:
                return self._id_collection(method, resource, rest, body)
            if resource in _NAMED_RESOURCES:
                return self._named(method, resource, rest, body)
            return 404, {"error": "not found"}

    def _singleton(self, method: str, resource: str, body: Any) -> Tuple[int, Any]:
        current = self.singletons[resource]
        if method == "GET":
            return (200, current) if current is not None else (404, {"error": "not found"})
        if method in ("POST", "PUT"):
            self.singletons[resource] = dict(body or {})
            return 200, self.singletons[resource]
        if method == "DELETE":
            self.singletons[resource] = None
            return 200, None
        return 405, {"error": "method not allowed"}

    def _default_posture(self, method: str, body: Any) -> Tuple[int, Any]:
        if method == "GET":
            if self.default_posture is None:
                return 404, {"error": "not found"}
            return 200, {"defaultSourcePosture": self.default_posture}
        if method == "PUT":
            self.default_posture = list(body.get("defaultSourcePosture") or [])
            return 200, {"defaultSourcePosture": self.default_posture}
        if method == "DELETE":
            self.default_posture = None
            return 200, None
        return 405, {"error": "method not allowed"}

    def _id_collection(self, method: str, resource: str, rest: List[str], body: Any) -> Tuple[int, Any]:
        store = self.items[resource]
        key = _ID_RESOURCES[resource]
        if method == "GET" and rest:
            return (200, store[rest[0]]) if rest[0] in store else (404, {"error": "not found"})
        if method == "POST" and not rest:
            new_id = f"{resource}-{next(self._ids)}"
            store[new_id] = dict(body or {}, id=new_id)
            return 200, store[new_id]
        if method == "PUT" and not rest:
            ident = (body or {}).get("id")
            if ident not in store:
                return 404, {"error": "not found"}
            store[ident] = dict(body.get(key) or {}, id=ident)
            return 200, store[ident]
        if method == "DELETE" and not rest:
            ident = (body or {}).get("id")
            if store.pop(ident, None) is None:
                return 404, {"error": "not found"}
            return 200, None
        return 405, {"error": "method not allowed"}

    def _named(self, method: str, resource: str, rest: List[str], body: Any) -> Tuple[int, Any]:
        store = self.items[resource]
        if method == "GET" and rest:
            return (200, store[rest[0]]) if rest[0] in store else (404, {"error": "not found"})
        name = (body or {}).get("name")
        if method == "POST" and not rest:
            if name in store:
                return 409, f"{resource} '{name}' already exists"
            store[name] = dict(body)
            return 200, store[name]
        if method == "PUT" and not rest:
            if name not in store:
                return 404, {"error": "not found"}
            store[name] = dict(body)
            return 200, store[name]
        if method == "DELETE" and not rest:
            if store.pop(name, None) is None:
                return 404, {"error": "not found"}
            return 200, None
        return 405, {"error": "method not allowed"}


def _handler_for(service: FakePolicyService):
    class _Handler(BaseHTTPRequestHandler):
        protocol_version = "HTTP/1.1"

        def _send(self, status: int, obj: Any) -> None:
            if obj is None:
                raw = b""
            elif isinstance(obj, str):
                raw = obj.encode("utf-8")
            else:
                raw = json.dumps(obj).encode("utf-8")
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(raw)))
            self.end_headers()
            self.wfile.write(raw)

        def _dispatch(self) -> None:
            length = int(self.headers.get("Content-Length", "0"))
            raw = self.rfile.read(length) if length else b""
            body = json.loads(raw.decode("utf-8")) if raw else None
            path = urlparse(self.path).path
            with service.lock:
                service.headers.append(dict(self.headers))
                pause = service.delays.get((self.command, path), 0)
            if pause:
                time.sleep(pause)
            status, obj = service.handle(self.command, path, body)
            self._send(status, obj)

        do_GET = do_POST = do_PUT = do_DELETE = _dispatch  # noqa: N815

        def log_message(self, fmt, *args):  # silence server logs during tests
            return

    return _Handler


@pytest.fixture()
def policy_service():
    """Yield (service, base_url) for a fake policy service on an ephemeral port."""
    service = FakePolicyService()
    server = ThreadingHTTPServer(("127.0.0.1", 0), _handler_for(service))
    host, port = server.server_address
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield service, f"http://{host}:{port}"
    server.shutdown()
    server.server_close()
    thread.join(timeout=1.0)
