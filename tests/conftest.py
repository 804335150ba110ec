from __future__ import annotations

import asyncio
import json
import threading
import time
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path
from typing import Any, Callable

import pytest

from service_watchdog.models import Service
from service_watchdog.store import SqliteStore


class ScriptedProber:
    """Returns queued results per URL; falls back to ``default`` once the queue is empty."""

    def __init__(self, default: bool = True):
        self.default = default
        self.scripts: dict[str, list[bool]] = {}
        self.calls: list[str] = []

    def script(self, url: str, *results: bool) -> None:
        self.scripts.setdefault(url, []).extend(results)

    async def probe(self, url: str) -> bool:
        self.calls.append(url)
        queue = self.scripts.get(url)
        if queue:
            return queue.pop(0)
        return self.default


class RecordingNotifier:
    def __init__(self):
        self.failures: list[str] = []
        self.recoveries: list[str] = []

    async def notify_failure(self, service: Service) -> None:
        self.failures.append(service.id)

    async def notify_recovery(self, service: Service) -> None:
        self.recoveries.append(service.id)


async def no_sleep(_seconds: float) -> None:
    return None


async def wait_until(cond: Callable[[], Any], *, timeout: float = 3.0, interval: float = 0.01) -> None:
    deadline = time.monotonic() + timeout
    while True:
        result = cond()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return
        if time.monotonic() >= deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


async def add_service(store: SqliteStore, name: str = "api", **kwargs: Any) -> Service:
    kwargs.setdefault("url", f"http://{name}.invalid/health")
    return await store.create_service(Service(id="", name=name, **kwargs))


@pytest.fixture()
def store(tmp_path: Path) -> SqliteStore:
    s = SqliteStore(str(tmp_path / "watchdog.db"))
    s.ensure_schema()
    return s


class _RecordingHandler(BaseHTTPRequestHandler):
    """GET routes by path; every POST is recorded and answered with ``post_status``."""

    requests: list[dict[str, Any]] = []
    post_status = 204

    def log_message(self, format: str, *args) -> None:  # noqa: A002
        return

    def _reply(self, status: int, body: bytes = b"", headers: dict[str, str] | None = None) -> None:
        self.send_response(status)
        for k, v in (headers or {}).items():
            self.send_header(k, v)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:  # noqa: N802
        if self.path == "/ok":
            self._reply(200, b"ok")
        elif self.path == "/created":
            self._reply(201, b"created")
        elif self.path == "/error":
            self._reply(500, b"boom")
        elif self.path == "/redirect":
            self._reply(302, headers={"Location": "/ok"})
        elif self.path == "/slow":
            time.sleep(1.0)
            self._reply(200, b"late")
        else:
            self._reply(404, b"not found")

    def do_POST(self) -> None:  # noqa: N802
        n = int(self.headers.get("Content-Length") or "0")
        raw = self.rfile.read(n) if n > 0 else b""
        type(self).requests.append(
            {
                "path": self.path,
                "headers": {k.lower(): v for k, v in self.headers.items()},
                "body": json.loads(raw.decode("utf-8")) if raw else None,
            }
        )
        self._reply(type(self).post_status)


@pytest.fixture()
def http_server():
    handler = type("Handler", (_RecordingHandler,), {"requests": [], "post_status": 204})
    httpd = HTTPServer(("127.0.0.1", 0), handler)
    host, port = httpd.server_address
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://{host}:{port}", handler
    finally:
        httpd.shutdown()
        thread.join(timeout=5)
        httpd.server_close()
