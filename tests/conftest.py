"""
Shared pytest fixtures: an in-memory stand-in for EnaSession, and a loopback
HTTP server for the few tests that drive the real one.
"""

import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest
import requests

import fetch_ena_fastq as ena

API_URL = "https://ena.test/portal/api/filereport"


class FakeResponse:
    def __init__(self, status_code=200, body=b"", headers=None, fail_after=None):
        self.status_code = status_code
        self.body = body
        self.headers = {"Content-Length": str(len(body))} if headers is None else headers
        # Raise a ConnectionError after this many bytes have been streamed
        self.fail_after = fail_after

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    @property
    def ok(self):
        return self.status_code < 400

    @property
    def text(self):
        return self.body.decode("utf-8")

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)

    def iter_content(self, chunk_size=1):
        limit = len(self.body) if self.fail_after is None else self.fail_after
        for start in range(0, limit, 4):
            yield self.body[start:min(start + 4, limit)]
        if self.fail_after is not None:
            raise requests.ConnectionError("connection reset by peer")


def serve_bytes(data: bytes):
    """Route handler that honors Range headers like a real file server."""
    def handler(url, headers=None, **kwargs):
        range_header = (headers or {}).get("Range")
        if not range_header:
            return FakeResponse(200, data)
        start = int(range_header.split("=")[1].rstrip("-"))
        if start >= len(data):
            return FakeResponse(416, b"")
        return FakeResponse(206, data[start:])
    return handler


def filereport(reports):
    """
    Route handler for the filereport API.

    reports maps accession -> fastq_ftp string, or -> an exception to raise.
    Unknown accessions get a header-only report.
    """
    def handler(url, params=None, **kwargs):
        accession = params["accession"]
        value = reports.get(accession)
        if isinstance(value, Exception):
            raise value
        body = "run_accession\tfastq_ftp\n"
        if value is not None:
            body += f"{accession}\t{value}\n"
        return FakeResponse(200, body.encode("utf-8"))
    return handler


class FakeSession:
    """
    Minimal EnaSession replacement.

    routes maps URL -> FakeResponse | Exception | callable | list of those
    (lists are consumed one item per call, the last item repeats).
    """

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []

    def get(self, url, **kwargs):
        self.calls.append((url, kwargs))
        route = self.routes.get(url)
        if isinstance(route, list):
            route = route.pop(0) if len(route) > 1 else route[0]
        if route is None:
            return FakeResponse(404, b"")
        if callable(route):
            route = route(url, **kwargs)
        if isinstance(route, Exception):
            raise route
        return route

    def for_transfers(self):
        return self

    def apply_options(self, verify=True, headers=None):
        self.verify = verify
        self.headers = headers

    def close(self):
        pass


@pytest.fixture
def make_config(tmp_path):
    def _make(**overrides):
        values = dict(
            output_dir=tmp_path / "fastq",
            log_dir=tmp_path / "logs",
            jobs=2,
            tries=3,
            retry_wait=0,
            api_url=API_URL,
            progress=False,
        )
        values.update(overrides)
        config = ena.FetchConfig(**values)
        config.output_dir.mkdir(parents=True, exist_ok=True)
        config.log_dir.mkdir(parents=True, exist_ok=True)
        return config
    return _make


@pytest.fixture
def sample_log(tmp_path):
    """A throwaway per-sample log writing to tmp_path/sample.log, wired like SampleJob's."""
    handler = logging.FileHandler(tmp_path / "sample.log", encoding="utf-8")
    handler.setFormatter(logging.Formatter(ena.SAMPLE_LOG_FORMAT))
    ena.sample_router.attach(tmp_path.name, handler)
    yield logging.LoggerAdapter(ena.sample_logger, {"sample": tmp_path.name})
    ena.sample_router.detach(tmp_path.name, handler)
    handler.close()


# --- loopback HTTP server for the real EnaSession ---


class FileServerHandler(BaseHTTPRequestHandler):
    """
    Serves server.payload honoring Range, or answers server.status with an
    empty body when it is not 200. Every request is recorded.
    """

    def do_GET(self):
        server = self.server
        with server.lock:
            server.requests.append((self.path, self.headers))

        if server.status != 200:
            self._reply(server.status)
            return

        data = server.payload
        range_header = self.headers.get("Range")
        if not range_header:
            self._reply(200, data)
            return
        start = int(range_header.split("=")[1].rstrip("-"))
        if start >= len(data):
            self._reply(416)
            return
        self._reply(206, data[start:], {"Content-Range": f"bytes {start}-{len(data) - 1}/{len(data)}"})

    def _reply(self, status, body=b"", headers=None):
        self.send_response(status)
        for name, value in (headers or {}).items():
            self.send_header(name, value)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        pass


@pytest.fixture
def file_server(monkeypatch):
    """ThreadingHTTPServer on 127.0.0.1; set .status / .payload, read .requests."""
    for var in ("HTTP_PROXY", "http_proxy", "HTTPS_PROXY", "https_proxy", "ALL_PROXY", "all_proxy"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("NO_PROXY", "127.0.0.1")

    server = ThreadingHTTPServer(("127.0.0.1", 0), FileServerHandler)
    server.daemon_threads = True
    server.lock = threading.Lock()
    server.requests = []
    server.status = 200
    server.payload = b""
    server.url = f"http://127.0.0.1:{server.server_address[1]}"

    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    server.server_close()
    thread.join()
