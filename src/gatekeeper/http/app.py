"""
FastAPI application protected by the security monitor.

Exposes a health check and the administrative security endpoints. Admin
routes require an ``X-API-Key`` header matching one of the configured admin
keys. Rejections, admin ones included, share the flat
``{success, message, code}`` body.
"""

from contextlib import asynccontextmanager

import uvicorn
from fastapi import Depends, FastAPI, Header, Query, Request, Response
from fastapi.responses import JSONResponse

from .. import __version__
from ..config import GatekeeperConfig, get_config
from ..security.crypto import CryptoManager
from ..security.monitor import SecurityMonitor, api_key_matches
from ..util.errors import AdminKeyInvalid, AdminKeyRequired, RejectionError
from ..util.log import get_logger
from .middleware import SecurityHeadersMiddleware, SecurityMonitorMiddleware, build_security_headers

logger = get_logger(__name__)


class SecurityServer:
    """
    FastAPI server wrapping a ``SecurityMonitor``.

    Every request passes through ``SecurityMonitorMiddleware`` before
    routing; admin routes additionally check the API key.
    """

    def __init__(self, config: GatekeeperConfig | None = None, monitor: SecurityMonitor | None = None):
        """Initialize security server."""
        self.config = config or get_config()
        self.monitor = monitor or SecurityMonitor.from_config(self.config.security)

        self.app = FastAPI(
            title="Gatekeeper",
            description="Request-level threat detection, blocking and rate limiting",
            version=__version__,
            root_path=self.config.server.root_path,
            lifespan=self._lifespan,
        )
        self.app.add_middleware(SecurityMonitorMiddleware, monitor=self.monitor)
        if self.monitor.config.enable_security_headers:
            # Outermost, so rejections get the headers too.
            self.app.add_middleware(
                SecurityHeadersMiddleware,
                headers=build_security_headers(self.monitor.config),
            )
        self.app.add_exception_handler(RejectionError, self._rejection_response)

        self._setup_routes()

    @staticmethod
    async def _rejection_response(request: Request, exc: RejectionError) -> JSONResponse:
        headers = {"Retry-After": str(exc.retry_after)} if exc.retry_after is not None else None
        return JSONResponse(exc.to_response_body(), status_code=exc.status_code, headers=headers)

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        if self.config.monitoring.enable_maintenance:
            self.monitor.start()
        try:
            yield
        finally:
            await self.monitor.stop()

    def _require_admin_key(self, x_api_key: str | None = Header(default=None)) -> str:
        if not x_api_key:
            raise AdminKeyRequired()
        if not api_key_matches(x_api_key, self.monitor.config.admin_api_keys):
            logger.warning("Rejected admin request with invalid API key")
            raise AdminKeyInvalid()
        return x_api_key

    def _setup_routes(self):
        """Setup all API routes."""
        admin = Depends(self._require_admin_key)

        @self.app.get("/health")
        async def health() -> dict:
            """Liveness check."""
            return {
                "status": "healthy",
                "version": __version__,
                "blocked": self.monitor.blocklist.active_count(self.monitor.clock()),
            }

        @self.app.get("/api/security/csrf-token")
        async def csrf_token(request: Request, response: Response) -> dict:
            """Issue a CSRF token as both a cookie and a response field."""
            token = CryptoManager.generate_csrf_token()
            response.set_cookie(
                self.monitor.config.csrf_cookie_name,
                token,
                httponly=True,
                samesite="strict",
                secure=request.url.scheme == "https",
            )
            return {"success": True, "csrfToken": token}

        if not self.config.monitoring.enable_stats_endpoint:
            return

        @self.app.get("/api/security/stats", dependencies=[admin])
        async def security_stats(top: int | None = Query(default=None, ge=1, le=1000)) -> dict:
            """Aggregate attack statistics."""
            stats = self.monitor.get_stats(top_n=top or self.config.monitoring.stats_top_n)
            return {"success": True, "data": stats.model_dump(by_alias=True)}

        @self.app.get("/api/security/events", dependencies=[admin])
        async def security_events(limit: int = Query(default=50, ge=1, le=1000)) -> dict:
            """Most recent redacted security events."""
            events = self.monitor.event_sink.recent_events(limit)
            return {"success": True, "data": [event.to_dict() for event in events]}

        @self.app.delete("/api/security/blocks/{identifier}", dependencies=[admin])
        async def unblock(identifier: str):
            """Lift a block before it expires."""
            if not self.monitor.unblock(identifier):
                return JSONResponse(
                    {"success": False, "message": "Identifier is not blocked", "code": "NOT_FOUND"},
                    status_code=404,
                )
            logger.info("Identifier unblocked by admin", extra={"identifier": identifier})
            return {"success": True, "identifier": identifier}

    async def start(self):
        """Start the server."""
        config = uvicorn.Config(
            self.app,
            host=self.config.server.host,
            port=self.config.server.port,
            log_level=self.config.logging.log_level.lower(),
            proxy_headers=self.config.server.behind_proxy,
        )
        server = uvicorn.Server(config)
        await server.serve()


def create_app(config: GatekeeperConfig | None = None, monitor: SecurityMonitor | None = None) -> FastAPI:
    """Build the protected FastAPI application."""
    return SecurityServer(config, monitor).app
