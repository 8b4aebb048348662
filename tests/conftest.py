"""Pytest configuration and fixtures for fluent-request tests.

This file provides:
- RecordingHandler: httpx.MockTransport handler that records requests
- PortReservation: Race-free port allocation for test servers
- EchoServer: Subprocess management for the echo server
- Fixtures: Shared test infrastructure (clients, echo server, global reset)
"""

from __future__ import annotations

import socket
import subprocess
import sys
import time
from pathlib import Path
from typing import Any, Generator

import httpx
import pytest

from fluent_request.client_resolver import default_resolver
from fluent_request.key_values import default_extractor

# Project root for subprocess cwd
PROJECT_ROOT = Path(__file__).parent.parent
ECHO_SERVER_MODULE = "tests.integration.echo_server"

TEST_BASE_URL = "http://api.test"


class RecordingHandler:
    """MockTransport handler that records every request and returns a canned response.

    Usage:
        handler = RecordingHandler(status_code=404, json={"error": "missing"})
        client = httpx.Client(transport=httpx.MockTransport(handler))
        ...
        assert handler.last.url.path == "/users/42"
    """

    def __init__(
        self,
        status_code: int = 200,
        json: Any = None,
        content: bytes | None = None,
        headers: dict[str, str] | None = None,
        error: Exception | None = None,
    ) -> None:
        self.status_code = status_code
        self.json = json
        self.content = content
        self.headers = headers or {}
        self.error = error
        self.requests: list[httpx.Request] = []

    @property
    def last(self) -> httpx.Request:
        assert self.requests, "no request was sent"
        return self.requests[-1]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        if self.json is not None:
            return httpx.Response(self.status_code, json=self.json, headers=self.headers)
        return httpx.Response(
            self.status_code, content=self.content or b"", headers=self.headers
        )


def make_client(handler: RecordingHandler, **kwargs: Any) -> httpx.Client:
    """Create an httpx.Client whose transport is handler."""
    return httpx.Client(transport=httpx.MockTransport(handler), **kwargs)


def make_async_client(handler: RecordingHandler, **kwargs: Any) -> httpx.AsyncClient:
    """Create an httpx.AsyncClient whose transport is handler."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), **kwargs)


class PortReservation:
    """Holds a reserved port with socket kept open to prevent races.

    The port is held exclusively until release(), which the server calls
    just before binding.

    Usage:
        reservation = PortReservation()
        server = EchoServer(reservation)
        server.start()  # calls release() internally, then binds
    """

    def __init__(self) -> None:
        self._socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._socket.bind(("127.0.0.1", 0))  # Port 0 = OS assigns ephemeral port
        self._port = self._socket.getsockname()[1]
        self._released = False

    @property
    def port(self) -> int:
        return self._port

    def release(self) -> int:
        """Release the socket and return the port for server use.

        Safe to call multiple times - subsequent calls are no-ops.
        """
        if not self._released:
            self._socket.close()
            self._released = True
        return self._port

    def __enter__(self) -> PortReservation:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.release()


def wait_for_server_ready(host: str, port: int, timeout: float = 10.0) -> bool:
    """Block until server accepts TCP connections, or timeout expires."""
    start = time.time()
    while time.time() - start < timeout:
        try:
            with socket.create_connection((host, port), timeout=1.0):
                return True
        except (ConnectionRefusedError, socket.timeout, OSError):
            time.sleep(0.1)
    return False


class EchoServer:
    """Manages the echo server subprocess for integration tests.

    Runs tests/integration/echo_server.py as a subprocess. Every endpoint
    echoes back what it received (URL, query, headers, cookies, form parts,
    JSON body) so tests can assert on the wire request.
    """

    def __init__(self, port: int | PortReservation) -> None:
        if isinstance(port, PortReservation):
            self._reservation = port
            self.port = port.port
        else:
            self._reservation = None
            self.port = port
        self.host = "127.0.0.1"
        self.base_url = f"http://{self.host}:{self.port}"
        self._process: subprocess.Popen | None = None

    def start(self) -> None:
        """Start the echo server subprocess.

        Raises:
            RuntimeError: If server fails to start within 10 seconds.
        """
        if self._reservation:
            self._reservation.release()

        self._process = subprocess.Popen(
            [
                sys.executable, "-m", ECHO_SERVER_MODULE,
                "--host", self.host,
                "--port", str(self.port),
            ],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=PROJECT_ROOT,
        )

        if not wait_for_server_ready(self.host, self.port):
            stderr = ""
            if self._process and self._process.stderr:
                stderr = self._process.stderr.read().decode(errors="replace")
            self.stop()
            raise RuntimeError(
                f"EchoServer failed to start on port {self.port}. "
                f"stderr: {stderr or '(empty)'}"
            )

    def stop(self) -> None:
        """Stop the server with SIGTERM, escalating to SIGKILL after 5s.

        Safe to call multiple times or if server was never started.
        """
        if self._process:
            self._process.terminate()
            try:
                self._process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self._process.kill()
                try:
                    self._process.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    pass  # Unkillable, nothing more we can do
            self._process = None

    def __enter__(self) -> EchoServer:
        self.start()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.stop()


# =============================================================================
# Pytest Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def reset_process_defaults() -> Generator[None, None, None]:
    """Clear the process-wide client factories and shape cache around every test."""
    default_resolver.reset()
    default_extractor.cache.clear()
    yield
    default_resolver.close()
    default_extractor.cache.clear()


@pytest.fixture
def handler() -> RecordingHandler:
    """Handler answering 200 with a small JSON body."""
    return RecordingHandler(json={"ok": True})


@pytest.fixture
def client(handler: RecordingHandler) -> Generator[httpx.Client, None, None]:
    with make_client(handler) as client:
        yield client


@pytest.fixture(scope="session")
def echo_server() -> Generator[EchoServer, None, None]:
    """Start the echo server once per test session.

    Example:
        def test_roundtrip(echo_server):
            Request(echo_server.base_url).with_segments("echo").get()
    """
    with EchoServer(PortReservation()) as server:
        yield server


# =============================================================================
# Pytest Hooks
# =============================================================================


def pytest_collection_modifyitems(
    config: pytest.Config, items: list[pytest.Item]
) -> None:
    """Automatically apply markers based on test location.

    Enables running subsets via:
        pytest -m integration  # only integration tests
        pytest -m unit         # only unit tests
    """
    for item in items:
        test_path = Path(item.fspath)
        if "integration" in test_path.parts:
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)
