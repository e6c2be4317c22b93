"""
Integration test fixtures.

Builds the protected FastAPI application and a small downstream app wrapped
in the security middleware, both served through Starlette's TestClient.
"""

import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from gatekeeper.config import GatekeeperConfig, MonitoringConfig
from gatekeeper.http.app import create_app
from gatekeeper.http.middleware import SecurityMonitorMiddleware
from gatekeeper.security.config import SecurityConfig
from gatekeeper.security.monitor import SecurityMonitor

ADMIN_KEY = "test-admin-key"


@pytest.fixture
def admin_headers() -> dict:
    return {"X-API-Key": ADMIN_KEY}


@pytest.fixture
def app_security_config() -> SecurityConfig:
    return SecurityConfig(admin_api_keys=[ADMIN_KEY], trust_proxy=True, max_content_length=4096)


@pytest.fixture
def app_config(app_security_config: SecurityConfig) -> GatekeeperConfig:
    return GatekeeperConfig(
        security=app_security_config,
        monitoring=MonitoringConfig(enable_maintenance=False),
    )


@pytest.fixture
def app_monitor(app_security_config: SecurityConfig) -> SecurityMonitor:
    return SecurityMonitor(app_security_config)


@pytest.fixture
def admin_client(app_config: GatekeeperConfig, app_monitor: SecurityMonitor) -> TestClient:
    """Client for the administrative application."""
    return TestClient(create_app(app_config, app_monitor))


def build_downstream_app(monitor: SecurityMonitor) -> FastAPI:
    app = FastAPI()

    @app.post("/api/echo")
    async def echo(request: Request) -> dict:
        return {"received": await request.json()}

    @app.get("/api/admin/ping")
    async def ping() -> dict:
        return {"pong": True}

    @app.get("/public")
    async def public() -> dict:
        return {"ok": True}

    app.add_middleware(SecurityMonitorMiddleware, monitor=monitor)
    return app


@pytest.fixture
def downstream_client(app_monitor: SecurityMonitor) -> TestClient:
    """Client for a business app protected by the middleware."""
    return TestClient(build_downstream_app(app_monitor))


@pytest.fixture
def guarded_client(app_security_config: SecurityConfig) -> TestClient:
    """Business app with the API key gate and CSRF checks switched on."""
    app_security_config.enable_api_key_auth = True
    app_security_config.enable_csrf_protection = True
    return TestClient(build_downstream_app(SecurityMonitor(app_security_config)))
