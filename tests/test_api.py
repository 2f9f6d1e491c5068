"""Tests for the HTTP endpoints."""

import asyncio
import re
import socket
import threading
import time

import httpx
import pytest
import uvicorn
from fastapi.testclient import TestClient

from ethspeed.api import create_app
from ethspeed.stats import StatsAggregator
from ethspeed.transfer import MAX_BYTES, MIN_BYTES

RFC3339 = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z$")


@pytest.fixture
def stats():
    return StatsAggregator()


@pytest.fixture
def client(stats):
    return TestClient(create_app(stats))


@pytest.fixture
def live_server(stats):
    """Serve the app with uvicorn on a free local port."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]

    config = uvicorn.Config(create_app(stats), lifespan="off", log_config=None,
                            log_level="warning")
    server = uvicorn.Server(config)
    thread = threading.Thread(target=server.run, kwargs={"sockets": [sock]}, daemon=True)
    thread.start()
    _wait_for(lambda: server.started)

    yield port

    server.should_exit = True
    thread.join(timeout=10)
    sock.close()


def _wait_for(condition, timeout=10.0):
    deadline = time.monotonic() + timeout
    while not condition():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        time.sleep(0.01)


def _counters(body):
    return {k: v for k, v in body.items() if k not in ('uptime_seconds', 'last_request')}


def _call_asgi(app, method, path, query=b"", receive=None):
    """Drive the app directly, returning the response status and body."""
    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": method,
        "scheme": "http",
        "path": path,
        "raw_path": path.encode(),
        "query_string": query,
        "root_path": "",
        "headers": [(b"host", b"testserver")],
        "client": ("127.0.0.1", 50000),
        "server": ("testserver", 80),
    }
    messages = []

    async def send(message):
        messages.append(message)

    asyncio.run(app(scope, receive, send))

    start = next(m for m in messages if m["type"] == "http.response.start")
    body = b"".join(m.get("body", b"") for m in messages if m["type"] == "http.response.body")
    return start["status"], body


class TestDownload:
    @pytest.mark.parametrize("size", [MIN_BYTES, MIN_BYTES + 123, 3 * MIN_BYTES - 1])
    def test_exact_length(self, client, stats, size):
        response = client.get("/__down", params={"bytes": size})

        assert response.status_code == 200
        assert response.headers["content-length"] == str(size)
        assert response.headers["content-type"] == "application/octet-stream"
        assert response.headers["cache-control"] == "no-cache, no-store, must-revalidate"
        assert len(response.content) == size

        snap = stats.snapshot()
        assert snap.total_downloads == 1
        assert snap.total_bytes_down == size
        assert snap.current_concurrent == 0
        assert snap.peak_concurrent == 1

    @pytest.mark.parametrize("query", [
        {},
        {"bytes": ""},
        {"bytes": "lots"},
        {"bytes": MIN_BYTES - 1},
        {"bytes": MAX_BYTES + 1},
    ])
    def test_rejected_sizes(self, client, stats, query):
        response = client.get("/__down", params=query)

        assert response.status_code == 400
        assert "bytes" in response.json()["detail"]
        snap = stats.snapshot()
        assert snap.total_downloads == 0
        assert snap.peak_concurrent == 0

    def test_wrong_method(self, client, stats):
        response = client.post("/__down", params={"bytes": MIN_BYTES})

        assert response.status_code == 405
        assert response.headers["allow"] == "GET"
        assert stats.snapshot().peak_concurrent == 0

    def test_client_disconnect_is_not_recorded(self, live_server, stats):
        with socket.create_connection(("127.0.0.1", live_server), timeout=10) as conn:
            conn.sendall(b"GET /__down?bytes=1073741824 HTTP/1.1\r\n"
                         b"Host: localhost\r\n\r\n")
            received = 0
            while received < 65536:
                data = conn.recv(65536)
                assert data
                received += len(data)

        assert stats.peak_concurrent == 1
        _wait_for(lambda: stats.current_concurrent == 0)

        snap = stats.snapshot()
        assert snap.total_downloads == 0
        assert snap.total_bytes_down == 0
        assert snap.last_request is None


class TestUpload:
    def test_matching_size(self, client, stats):
        response = client.post("/__up", params={"bytes": MIN_BYTES}, content=bytes(MIN_BYTES))

        assert response.status_code == 200
        assert response.json() == {"ok": True, "bytes": MIN_BYTES}
        snap = stats.snapshot()
        assert snap.total_uploads == 1
        assert snap.total_bytes_up == MIN_BYTES
        assert snap.total_connections == 1
        assert snap.current_concurrent == 0

    def test_actual_bytes_win_over_declared(self, client, stats):
        declared = 2 * MIN_BYTES
        sent = MIN_BYTES + 4321

        response = client.post("/__up", params={"bytes": declared}, content=b"z" * sent)

        assert response.status_code == 200
        assert response.json() == {"ok": True, "bytes": sent}
        assert stats.snapshot().total_bytes_up == sent

    @pytest.mark.parametrize("query", [{}, {"bytes": "1e9"}, {"bytes": 1024}])
    def test_rejected_sizes(self, client, stats, query):
        response = client.post("/__up", params=query, content=b"x" * 1024)

        assert response.status_code == 400
        assert stats.snapshot().total_uploads == 0

    def test_wrong_method(self, client):
        response = client.get("/__up", params={"bytes": MIN_BYTES})
        assert response.status_code == 405

    def test_read_error_is_500(self, stats):
        async def receive():
            return {"type": "http.disconnect"}

        status, body = _call_asgi(create_app(stats), "POST", "/__up",
                                  query=b"bytes=2000000", receive=receive)

        assert status == 500
        assert b"upload error" in body
        snap = stats.snapshot()
        assert snap.total_uploads == 0
        assert snap.total_bytes_up == 0
        assert snap.current_concurrent == 0
        assert snap.peak_concurrent == 1

    def test_peak_counts_simultaneous_uploads(self, stats):
        app = create_app(stats)
        uploads = 4

        async def main():
            release = asyncio.Event()

            async def body():
                yield bytes(MIN_BYTES // 2)
                await release.wait()
                yield bytes(MIN_BYTES // 2)

            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http:
                tasks = [
                    asyncio.create_task(http.post("/__up", params={"bytes": MIN_BYTES},
                                                  content=body()))
                    for _ in range(uploads)
                ]

                async def all_in_flight():
                    while stats.current_concurrent < uploads:
                        await asyncio.sleep(0.01)

                await asyncio.wait_for(all_in_flight(), timeout=10)
                release.set()
                return await asyncio.gather(*tasks)

        responses = asyncio.run(main())

        assert [r.json()["bytes"] for r in responses] == [MIN_BYTES] * uploads
        snap = stats.snapshot()
        assert snap.peak_concurrent == uploads
        assert snap.current_concurrent == 0
        assert snap.total_uploads == uploads


class TestStats:
    def test_fields(self, client):
        body = client.get("/__stats").json()

        assert set(body) == {
            'ok', 'total_downloads', 'total_uploads', 'total_bytes_down',
            'total_bytes_up', 'total_connections', 'total_data_gb',
            'uptime_seconds', 'peak_concurrent', 'last_request',
        }
        assert body['ok'] is True
        assert body['last_request'] is None

    def test_reflects_transfers(self, client):
        client.get("/__down", params={"bytes": MIN_BYTES})
        client.post("/__up", params={"bytes": MIN_BYTES}, content=bytes(MIN_BYTES))

        body = client.get("/__stats").json()
        assert body['total_downloads'] == 1
        assert body['total_uploads'] == 1
        assert body['total_bytes_down'] == MIN_BYTES
        assert body['total_bytes_up'] == MIN_BYTES
        assert body['total_connections'] == 1
        assert body['total_data_gb'] == round(2 * MIN_BYTES / 1e9, 2)
        assert body['peak_concurrent'] == 1
        assert RFC3339.match(body['last_request'])

    def test_idempotent_reads(self, client):
        client.get("/__down", params={"bytes": MIN_BYTES})

        first = client.get("/__stats").json()
        second = client.get("/__stats").json()

        assert _counters(first) == _counters(second)

    def test_wrong_method(self, client):
        assert client.post("/__stats").status_code == 405


class TestMisc:
    def test_health(self, client):
        body = client.get("/health").json()

        assert body['ok'] is True
        assert body['status'] == "healthy"
        assert RFC3339.match(body['timestamp'])

    def test_root_info(self, client):
        body = client.get("/").json()
        assert body['name'] == "ethspeed"
        assert "/__down" in body['endpoints']

    def test_static_ui(self, tmp_path, stats):
        (tmp_path / "index.html").write_text("<h1>speed</h1>")
        client = TestClient(create_app(stats, static_dir=tmp_path))

        response = client.get("/")
        assert response.status_code == 200
        assert "<h1>speed</h1>" in response.text
        # API routes still take precedence over the mount
        assert client.get("/health").json()['status'] == "healthy"
        assert client.get("/__down", params={"bytes": MIN_BYTES}).status_code == 200
        assert client.get("/__up", params={"bytes": MIN_BYTES}).status_code == 405
        assert client.post("/__down", params={"bytes": MIN_BYTES}).status_code == 405
        assert client.post("/__stats").status_code == 405
        assert client.get("/missing.html").status_code == 404
        assert stats.snapshot().total_uploads == 0

    def test_default_stats_instance(self):
        app = create_app()
        assert isinstance(app.state.stats, StatsAggregator)
