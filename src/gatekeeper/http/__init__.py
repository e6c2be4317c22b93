"""HTTP integration: ASGI middleware and the protected FastAPI application."""

from .app import SecurityServer, create_app
from .middleware import SecurityMonitorMiddleware

__all__ = ["SecurityMonitorMiddleware", "SecurityServer", "create_app"]
