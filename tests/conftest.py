"""Pytest configuration and fixtures for wsproxy tests.

This file provides:
- PortReservation: Race-free port allocation for test servers
- MockServer: Subprocess management for the echo server
- make_client / make_envelope: httpx.MockTransport helpers for unit tests
- Fixtures: attachment resources and the session-scoped echo server
"""

from __future__ import annotations

import socket
import subprocess
import sys
import time
from pathlib import Path
from typing import Any, Callable, Generator

import httpx
import pytest

from wsproxy.transport import ResponseEnvelope

# Project root for fixture paths
PROJECT_ROOT = Path(__file__).parent.parent
FIXTURES_DIR = PROJECT_ROOT / "tests" / "fixtures"
MOCK_SERVER_MODULE = "tests.integration.mock_server"

TEXT_RESOURCE_BYTES = 26
BINARY_RESOURCE_BYTES = 10392


def binary_resource_content() -> bytes:
    """Deterministic binary payload covering every byte value, CR and LF included."""
    return bytes((i * 7 + 3) % 256 for i in range(BINARY_RESOURCE_BYTES))


def make_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.Client:
    """Create an httpx client whose requests are answered by ``handler``."""
    return httpx.Client(transport=httpx.MockTransport(handler))


def make_envelope(
    status_code: int = 200,
    content: bytes = b"",
    headers: dict[str, str] | None = None,
) -> ResponseEnvelope:
    """Create a ResponseEnvelope for a canned response.

    Prefer this over hand-building httpx responses; it wires up the request
    the envelope needs for error messages.
    """
    request = httpx.Request("GET", "http://testserver/test")
    response = httpx.Response(
        status_code,
        headers=headers or {},
        stream=httpx.ByteStream(content),
        request=request,
    )
    return ResponseEnvelope(response)


class PortReservation:
    """Holds a reserved port with socket kept open to prevent races.

    Usage:
        reservation = PortReservation()
        # port is held exclusively until release()
        server = MockServer(reservation)
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


def find_free_port() -> int:
    """Find a port on localhost that nothing is listening on right now."""
    with PortReservation() as reservation:
        return reservation.port


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


class MockServer:
    """Manages the echo server subprocess for integration tests."""

    def __init__(self, port: int | PortReservation) -> None:
        if isinstance(port, PortReservation):
            self._reservation = port
            self.port = port.port
        else:
            self._reservation = None
            self.port = port
        self.host = "127.0.0.1"
        self.base_url = f"http://{self.host}:{self.port}/"
        self._process: subprocess.Popen | None = None

    def start(self) -> None:
        """Start the server subprocess.

        Raises:
            RuntimeError: If server fails to start within 10 seconds.
        """
        if self._reservation:
            self._reservation.release()

        self._process = subprocess.Popen(
            [
                sys.executable, "-m", MOCK_SERVER_MODULE,
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
                f"MockServer failed to start on port {self.port}. "
                f"stderr: {stderr or '(empty)'}"
            )

    def stop(self) -> None:
        """Stop the server subprocess, escalating to SIGKILL after 5s.

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
                    pass  # Unkillable process; nothing more to do
            self._process = None

    def __enter__(self) -> MockServer:
        self.start()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.stop()


# =============================================================================
# Pytest Fixtures
# =============================================================================


@pytest.fixture(scope="session")
def fixture_text_resource() -> Path:
    """Path to the 26-byte text resource (tests/fixtures/test.txt)."""
    return FIXTURES_DIR / "test.txt"


@pytest.fixture
def fixture_binary_resource(tmp_path: Path) -> Path:
    """Path to a freshly written 10,392-byte binary resource."""
    path = tmp_path / "test.bin"
    path.write_bytes(binary_resource_content())
    return path


@pytest.fixture(scope="session")
def fixture_echo_server() -> Generator[MockServer, None, None]:
    """Start the echo server once per session."""
    with MockServer(PortReservation()) as server:
        yield server


# =============================================================================
# Pytest Hooks
# =============================================================================


def pytest_collection_modifyitems(
    config: pytest.Config, items: list[pytest.Item]
) -> None:
    """Mark tests by location so subsets run via ``pytest -m unit``."""
    for item in items:
        test_path = Path(item.fspath)
        if "integration" in test_path.parts:
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)
