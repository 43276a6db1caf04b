"""
Integration tests for the daemon's own HTTP server.

These start uvicorn on a free loopback port and talk to it with httpx.
"""

import logging
import socket
import time
from collections.abc import Callable

import httpx
import pytest

from diu.daemon.core import Daemon
from diu.parsers.npm import NpmParser
from diu.parsers.registry import ParserRegistry
from diu.schema import Config, DaemonState, load_config_from_data
from diu.store.json_store import JSONStore


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def with_api(config: Config, port: int) -> Config:
    data = config.model_dump(mode="json")
    data["api"] = {"enabled": True, "host": "127.0.0.1", "port": port}
    return load_config_from_data(data)


def build_daemon(config: Config) -> Daemon:
    registry = ParserRegistry()
    registry.register(NpmParser())
    return Daemon(config, JSONStore(config.storage_file), registry)


def wait_for(condition: Callable[[], bool], timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.05)
    return condition()


def healthy(base_url: str) -> bool:
    try:
        return httpx.get(f"{base_url}/health", timeout=1.0).status_code == 200
    except httpx.TransportError:
        return False


class TestHttpServer:
    def test_serves_and_stops(self, config: Config) -> None:
        port = free_port()
        api_config = with_api(config, port)
        base_url = f"http://127.0.0.1:{port}/api/v1"
        daemon = build_daemon(api_config)
        daemon.start(install_signal_handlers=False)
        try:
            assert wait_for(lambda: healthy(base_url))
            health = httpx.get(f"{base_url}/health").json()
            assert health["status"] == "ok"
            assert health["monitors_active"] == 1

            for _ in range(2):
                response = httpx.post(
                    f"{base_url}/executions",
                    json={"tool": "npm", "command": "npm install express"},
                )
                assert response.status_code == 202
            assert daemon.flush(timeout=5)

            packages = httpx.get(f"{base_url}/packages", params={"tool": "npm"}).json()
            assert [(p["name"], p["usage_count"]) for p in packages] == [("express", 2)]
        finally:
            started = time.monotonic()
            daemon.stop()
            daemon.stop()
            elapsed = time.monotonic() - started

        assert elapsed < api_config.daemon.shutdown_timeout_seconds + 1.0
        assert daemon.state is DaemonState.STOPPED
        assert daemon._server_thread is None
        assert not healthy(base_url)

    def test_port_in_use(self, config: Config, caplog: pytest.LogCaptureFixture) -> None:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as holder:
            holder.bind(("127.0.0.1", 0))
            holder.listen()
            port = holder.getsockname()[1]

            daemon = build_daemon(with_api(config, port))
            with caplog.at_level(logging.ERROR, logger="diu"):
                daemon.start(install_signal_handlers=False)
                try:
                    assert wait_for(lambda: "HTTP API failed to start" in caplog.text)
                    assert daemon.state is DaemonState.RUNNING
                finally:
                    daemon.stop()

        assert daemon.state is DaemonState.STOPPED
