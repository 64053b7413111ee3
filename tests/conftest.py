"""Pytest fixtures for acmekit test suite."""

import logging
import logging.handlers
import os
from collections.abc import AsyncGenerator, Generator
from dataclasses import dataclass
from pathlib import Path

import httpx
import pytest
from fakes import DIRECTORY_URL, FakeAcmeServer

from acmekit import Client
from acmekit.crypto import PrivateKey, generate_ecdsa_key, generate_rsa_key

# Default URLs for local pebble setup
PEBBLE_DIRECTORY_URL = os.environ.get("PEBBLE_DIRECTORY_URL", "https://localhost:14000/dir")
CHALLTESTSRV_URL = os.environ.get("CHALLTESTSRV_URL", "http://localhost:8055")


def pytest_addoption(parser: pytest.Parser) -> None:
    group = parser.getgroup("acmekit", "ACME CA capabilities for integration tests")
    group.addoption(
        "--acme-directory-url",
        default=PEBBLE_DIRECTORY_URL,
        help="Directory URL of the ACME CA to run integration tests against",
    )
    group.addoption(
        "--no-cap-meta-tos-field",
        action="store_true",
        help="The CA does not publish meta.termsOfService",
    )
    group.addoption(
        "--no-cap-update-account-key",
        action="store_true",
        help="The CA does not support account key rollover",
    )


@dataclass(frozen=True)
class CaCapabilities:
    """What the CA under test supports; tests skip what it does not."""

    directory_url: str
    meta_tos_field: bool = True
    update_account_key: bool = True


@pytest.fixture(scope="session")
def ca_capabilities(pytestconfig: pytest.Config) -> CaCapabilities:
    """Capabilities of the CA under test, from the command line."""
    return CaCapabilities(
        directory_url=pytestconfig.getoption("--acme-directory-url"),
        meta_tos_field=not pytestconfig.getoption("--no-cap-meta-tos-field"),
        update_account_key=not pytestconfig.getoption("--no-cap-update-account-key"),
    )


@pytest.fixture(scope="session")
def pebble_ca_cert() -> str | bool:
    """Get SSL verification setting for Pebble.

    Returns False to disable SSL verification for pebble tests.
    Pebble uses a self-signed certificate that's not meant for production.

    If PEBBLE_CA_CERT env var is set, returns that path instead.
    """
    ca_cert_path = os.environ.get("PEBBLE_CA_CERT")
    if ca_cert_path and Path(ca_cert_path).exists():
        return ca_cert_path

    # Pebble's TLS cert is intentionally insecure for testing
    return False


@pytest.fixture(scope="session")
def challtestsrv_url() -> str:
    """Return the pebble-challtestsrv management API URL."""
    return CHALLTESTSRV_URL


@pytest.fixture(scope="session")
def rsa_key() -> PrivateKey:
    """An RSA key shared by the whole session (RSA generation is slow)."""
    return generate_rsa_key(2048)


@pytest.fixture
def account_key() -> PrivateKey:
    """A fresh P-256 account key."""
    return generate_ecdsa_key("P-256")


# =============================================================================
# Fake CA
# =============================================================================


@pytest.fixture
def fake_ca() -> FakeAcmeServer:
    """An in-process ACME CA with a terms of service and keyChange support."""
    return FakeAcmeServer()


@pytest.fixture
async def fake_http(fake_ca: FakeAcmeServer) -> AsyncGenerator[httpx.AsyncClient]:
    """An httpx.AsyncClient wired to the fake CA."""
    async with httpx.AsyncClient(transport=fake_ca.transport()) as http:
        yield http


@pytest.fixture
async def client(
    fake_http: httpx.AsyncClient, account_key: PrivateKey
) -> AsyncGenerator[Client]:
    """A Client for the fake CA with no account yet."""
    async with Client(DIRECTORY_URL, account_key, http_client=fake_http) as acme:
        acme.POLL_INTERVAL = 0.0
        yield acme


@pytest.fixture
async def registered_client(client: Client) -> Client:
    """A Client with an account on the fake CA."""
    await client.create_account(
        contact=["mailto:admin@example.com"], terms_of_service_agreed=True
    )
    return client


# =============================================================================
# Log capture
# =============================================================================


class LogCapture:
    """Helper class to capture and inspect log records."""

    def __init__(self, handler: logging.handlers.MemoryHandler) -> None:
        self._handler = handler

    @property
    def records(self) -> list[logging.LogRecord]:
        """Get all captured log records."""
        return self._handler.buffer

    def get_records(
        self, level: int | None = None, name: str | None = None
    ) -> list[logging.LogRecord]:
        """Get log records filtered by level and/or logger name.

        Args:
            level: Filter by log level (e.g., logging.INFO).
            name: Filter by logger name prefix (e.g., "acmekit.client").

        Returns:
            List of matching log records.
        """
        records = self.records
        if level is not None:
            records = [r for r in records if r.levelno == level]
        if name is not None:
            records = [r for r in records if r.name.startswith(name)]
        return records

    def get_messages(self, level: int | None = None, name: str | None = None) -> list[str]:
        """Get log messages filtered by level and/or logger name."""
        return [r.getMessage() for r in self.get_records(level, name)]

    def clear(self) -> None:
        """Clear all captured log records."""
        self._handler.buffer.clear()


@pytest.fixture
def log_capture() -> Generator[LogCapture]:
    """Capture logs from the acmekit library during a test.

    Usage:
        def test_something(log_capture):
            # do something that logs
            assert "Order created" in log_capture.get_messages(logging.INFO)
    """
    handler = logging.handlers.MemoryHandler(capacity=10000)
    handler.setLevel(logging.DEBUG)

    acmekit_logger = logging.getLogger("acmekit")
    original_level = acmekit_logger.level
    acmekit_logger.setLevel(logging.DEBUG)
    acmekit_logger.addHandler(handler)

    try:
        yield LogCapture(handler)
    finally:
        acmekit_logger.removeHandler(handler)
        acmekit_logger.setLevel(original_level)
        handler.close()
