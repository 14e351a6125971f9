"""
Base service class for license registry services.
"""

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from typing import Dict, Optional
from prometheus_client import CONTENT_TYPE_LATEST
import time

from shared.config import BaseConfig
from shared.logging import configure_logging, get_logger, set_request_id, request_id_var
from shared.metrics import get_metrics_collector
from shared.errors import LicensingException, RateLimitError


class BaseService:
    """Base service class with common functionality."""

    version = "1.0.0"

    def __init__(self, service_name: str, config: BaseConfig):
        self.service_name = service_name
        self.config = config

        configure_logging(service_name, self.config.log_level)
        self.logger = get_logger(service_name)
        self.metrics = get_metrics_collector(service_name)
        self._start_time = time.time()

        self.app = self._create_app()
        self._setup_middleware()
        self._setup_routes()

    def _create_app(self) -> FastAPI:
        """Create FastAPI application."""
        return FastAPI(
            title=f"{self.service_name.title()} Service",
            description=f"Signed license registry - {self.service_name.title()} Service",
            version=self.version,
            docs_url="/docs" if self.config.env == "local" else None,
            redoc_url="/redoc" if self.config.env == "local" else None,
        )

    def _setup_middleware(self):
        """Set up middleware."""

        # Public documents are readable cross-origin; nothing relies on cookies
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=False,
            allow_methods=["GET"],
            allow_headers=["*"],
        )

        @self.app.middleware("http")
        async def add_request_timing(request: Request, call_next):
            start_time = time.time()
            request_id = set_request_id(request.headers.get("X-Request-ID"))

            response = await call_next(request)

            duration = time.time() - start_time
            self.metrics.record_http_request(
                method=request.method,
                endpoint=request.url.path,
                status_code=response.status_code,
                duration=duration
            )
            self.logger.info(
                "HTTP request",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(duration * 1000, 2)
            )
            response.headers["X-Request-ID"] = request_id
            return response

    def _setup_routes(self):
        """Set up common routes."""

        @self.app.get("/metrics")
        async def metrics_endpoint():
            """Prometheus metrics endpoint."""
            return Response(
                content=self.metrics.render_latest(),
                media_type=CONTENT_TYPE_LATEST
            )

        @self.app.exception_handler(LicensingException)
        async def licensing_exception_handler(request: Request, exc: LicensingException):
            """Render LicensingException with its own status code."""
            log = self.logger.warning if exc.status_code < 500 else self.logger.error
            log(
                "Request failed",
                code=exc.code,
                message=exc.message,
                path=request.url.path
            )
            self.metrics.record_error(exc.code)
            headers: Optional[Dict[str, str]] = None
            if isinstance(exc, RateLimitError):
                headers = {"Retry-After": str(exc.retry_after)}
            return JSONResponse(
                status_code=exc.status_code,
                content=exc.to_response(request_id_var.get()).model_dump(),
                headers=headers
            )

        @self.app.exception_handler(Exception)
        async def general_exception_handler(request: Request, exc: Exception):
            """Handle general exceptions."""
            self.logger.error("Unhandled exception", error=str(exc), exc_info=True)
            self.metrics.record_error("INTERNAL_ERROR")
            return JSONResponse(
                status_code=500,
                content={
                    "code": "INTERNAL_ERROR",
                    "message": "Internal server error",
                    "details": {}
                }
            )

    def _get_uptime(self) -> float:
        """Get service uptime in seconds."""
        return time.time() - self._start_time

    def run(self):
        """Run the service."""
        import uvicorn
        uvicorn.run(
            self.app,
            host=getattr(self.config, "host", "0.0.0.0"),
            port=getattr(self.config, "port", 8000),
            log_level=self.config.log_level.lower()
        )
