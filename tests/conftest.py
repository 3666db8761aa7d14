"""Shared fixtures: a stub Loki backend on a real loopback HTTP server."""

import gzip
import json
import socket
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qs, urlsplit

import pytest

from loki_shipper.config import LokiConfig
from loki_shipper.models import LogRecord


class StubLoki:
    """Records every request and answers with queued or default responses."""

    def __init__(self):
        self.requests: list[dict] = []
        self.status = 204
        self.body = ""
        self.delay = 0.0
        self._responses: list[tuple] = []
        self._lock = threading.Lock()
        self._server = ThreadingHTTPServer(("127.0.0.1", 0), self._make_handler())
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)

    @property
    def address(self) -> str:
        host, port = self._server.server_address[:2]
        return f"{host}:{port}"

    def respond(self, status: int, body: str = ""):
        """Set the default response."""
        self.status = status
        self.body = body

    def queue_responses(self, *responses):
        """Queue (status, body) pairs, used in order before the default."""
        with self._lock:
            self._responses.extend(responses)

    def pushes(self) -> list[dict]:
        with self._lock:
            return [r["json"] for r in self.requests if r["method"] == "POST"]

    def pushed_values(self) -> list[list]:
        """Every [ts, line] pair pushed, across all requests and streams."""
        values = []
        for push in self.pushes():
            for stream in push["streams"]:
                values.extend(stream["values"])
        return values

    def wait_for_pushes(self, count: int, timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if len(self.pushes()) >= count:
                return True
            time.sleep(0.02)
        return len(self.pushes()) >= count

    def _next_response(self):
        with self._lock:
            if self._responses:
                return self._responses.pop(0)
            return self.status, self.body

    def _record(self, handler, method: str):
        length = int(handler.headers.get("Content-Length", 0) or 0)
        raw = handler.rfile.read(length) if length else b""
        if handler.headers.get("Content-Encoding") == "gzip":
            raw = gzip.decompress(raw)
        parts = urlsplit(handler.path)
        try:
            parsed = json.loads(raw) if raw else None
        except ValueError:
            parsed = None
        with self._lock:
            self.requests.append({
                "method": method,
                "path": parts.path,
                "params": {k: v[0] for k, v in parse_qs(parts.query).items()},
                "headers": dict(handler.headers),
                "raw": raw,
                "json": parsed,
            })

    def _make_handler(self):
        stub = self

        class Handler(BaseHTTPRequestHandler):
            def _reply(self, method):
                stub._record(self, method)
                if stub.delay:
                    time.sleep(stub.delay)
                status, body = stub._next_response()
                data = body.encode("utf-8")
                self.send_response(status)
                self.send_header("Content-Length", str(len(data)))
                self.end_headers()
                if data:
                    self.wfile.write(data)

            def do_GET(self):
                self._reply("GET")

            def do_POST(self):
                self._reply("POST")

            def log_message(self, format, *args):
                pass

        return Handler

    def start(self):
        self._thread.start()

    def stop(self):
        self._server.shutdown()
        self._server.server_close()
        self._thread.join(timeout=5)


@pytest.fixture
def stub_loki():
    """Start a StubLoki on an ephemeral port and yield it."""
    stub = StubLoki()
    stub.start()
    yield stub
    stub.stop()


def make_config(address: str = "bogus:3100", **overrides) -> LokiConfig:
    """LokiConfig with fast test defaults."""
    defaults = {
        "address": address,
        "batch_size": 500,
        "batch_wait": 30.0,
        "timeout": 2.0,
        "max_retries": 0,
        "retry_backoff": 0.01,
        "retry_backoff_max": 0.05,
    }
    defaults.update(overrides)
    return LokiConfig(**defaults)


def make_record(filename: str = "testfilename", date: str = "2021-01-08",
                time_: str = "11:50:00", **fields) -> LogRecord:
    return LogRecord(date=date, time=time_, filename=filename, fields=fields)


def closed_port() -> int:
    """A loopback port with nothing listening on it."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port
