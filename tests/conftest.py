"""
Pytest configuration and shared fixtures for Gatekeeper tests.

Provides deterministic clocks, key material, configurations and request
view factories shared by unit, security and integration tests.
"""

import secrets
from collections.abc import Callable

import pytest

from gatekeeper.security.config import SecurityConfig
from gatekeeper.security.crypto import CryptoManager
from gatekeeper.security.monitor import SecurityMonitor
from gatekeeper.security.request import RequestView


class FakeClock:
    """Manually advanced clock for time-dependent components."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def master_key() -> bytes:
    return secrets.token_bytes(32)


@pytest.fixture
def crypto(master_key: bytes) -> CryptoManager:
    """Crypto manager with a fresh random key."""
    return CryptoManager(master_key=master_key)


@pytest.fixture
def security_config() -> SecurityConfig:
    """Default security configuration without alerting or audit file."""
    return SecurityConfig()


@pytest.fixture
def monitor(security_config: SecurityConfig, clock: FakeClock) -> SecurityMonitor:
    return SecurityMonitor(security_config, clock=clock)


@pytest.fixture
def make_view() -> Callable[..., RequestView]:
    """Factory for request views with sensible defaults."""

    def _make(
        path: str = "/api/items",
        method: str = "GET",
        client_id: str = "203.0.113.7",
        query: str = "",
        body=None,
        headers: dict | None = None,
        content_length: int | None = None,
        path_params: dict | None = None,
    ) -> RequestView:
        return RequestView(
            client_id=client_id,
            method=method,
            path=path,
            query=query,
            headers=headers if headers is not None else {"User-Agent": "Mozilla/5.0"},
            body=body,
            content_length=content_length,
            path_params=path_params or {},
        )

    return _make
