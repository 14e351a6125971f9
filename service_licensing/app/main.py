"""
Licensing service: license issuance and signed registry distribution.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Body, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from shared.base_service import BaseService
from shared.config import LicensingServiceConfig, get_service_config, read_key_material
from shared.errors import (
    ConfigurationError,
    EventProcessingError,
    LicensingException,
    RegistryUnavailableError,
)
from shared.logging import mask_license_key

from .auth.bearer import require_bearer_token
from .auth.webhook_signature import SIGNATURE_HEADER, verify_webhook_signature
from .issuance.events import parse_event
from .issuance.handlers import IssuanceService
from .ratelimit.sliding_window import (
    InMemoryRateLimitBackend,
    RateLimitBackend,
    RateLimitRule,
    RedisRateLimitBackend,
    SlidingWindowRateLimiter,
)
from .registry.manager import LicenseRegistry, signing_key_provider
from .registry.models import LicenseStatus
from .registry.write_serializer import WriteSerializer

REGISTRY_CACHE_CONTROL = "public, max-age=300"
RECENT_LICENSE_LIMIT = 10


class ManualLicenseRequest(BaseModel):
    """Request model for administrator issuance."""
    license_key: str = Field(..., description="License key in QAA-XXXX-XXXX-XXXX-XXXX form")
    customer_id: str = Field(..., description="Customer identifier")
    tier: str = Field(..., description="FREE, PRO, TEAM or ENTERPRISE")
    is_founder: bool = Field(False, description="Founder pricing flag")
    email: Optional[str] = Field(None, description="Purchaser e-mail for activation binding")


class LicensingService(BaseService):
    """Licensing service implementation."""

    def __init__(self, config: Optional[LicensingServiceConfig] = None,
                 rate_limit_backend: Optional[RateLimitBackend] = None):
        super().__init__("licensing", config or get_service_config())

        self.registry = LicenseRegistry(
            private_path=self.config.resolved_database_path(),
            public_path=self.config.resolved_public_database_path(),
            key_provider=signing_key_provider(self._read_private_key, self.config.registry_key_id),
            serializer=WriteSerializer(default_timeout=self.config.write_timeout_seconds),
            metrics=self.metrics,
        )
        self.issuance = IssuanceService(self.registry, metrics=self.metrics)
        self.rate_limiter = SlidingWindowRateLimiter(
            rules=self._rate_limit_rules(),
            backend=rate_limit_backend or self._create_rate_limit_backend(),
            on_reject=lambda endpoint: self.metrics.increment_counter(
                "rate_limit_rejections_total", endpoint=endpoint
            ),
        )

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.rate_limiter.close()
            self.registry.close()

        self._setup_licensing_routes()

    def _read_private_key(self) -> Optional[str]:
        return read_key_material(self.config.registry_private_key, self.config.registry_private_key_path)

    def _rate_limit_rules(self) -> Dict[str, RateLimitRule]:
        return {
            "registry": RateLimitRule(
                self.config.registry_rate_limit_window_seconds,
                self.config.registry_rate_limit_max_requests,
            ),
            "health": RateLimitRule(
                self.config.health_rate_limit_window_seconds,
                self.config.health_rate_limit_max_requests,
            ),
            "status": RateLimitRule(
                self.config.status_rate_limit_window_seconds,
                self.config.status_rate_limit_max_requests,
            ),
        }

    def _create_rate_limit_backend(self) -> RateLimitBackend:
        if self.config.redis_url:
            self.logger.info("Using Redis rate limit backend")
            return RedisRateLimitBackend(self.config.redis_url)
        return InMemoryRateLimitBackend(prune_threshold=self.config.rate_limit_prune_threshold)

    def _setup_licensing_routes(self):
        """Set up licensing-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "licensing",
                "message": "Signed license registry - Licensing Service",
                "version": self.version,
                "capabilities": ["issuance", "signed_registry", "rate_limiting"],
            }

        @self.app.get("/health")
        async def health_check(request: Request):
            """Liveness check."""
            await self.rate_limiter.check_request(request, "health")
            database = "exists" if self.registry.database_exists() else "missing"
            self.metrics.record_health_check("ok")
            return {
                "status": "ok",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "database": database,
                "uptime_seconds": round(self._get_uptime(), 3),
            }

        @self.app.get("/legitimate-licenses.json")
        async def public_registry(request: Request):
            """Serve the signed public registry."""
            await self.rate_limiter.check_request(request, "registry")
            try:
                document = await self.registry.load_public_registry()
            except ConfigurationError as e:
                self.logger.error("Cannot serve unsigned registry", error=e.message)
                raise RegistryUnavailableError(
                    "License registry is temporarily unavailable",
                    details={"reason": "signing key not configured"},
                ) from e
            return JSONResponse(
                content=document,
                headers={
                    "Access-Control-Allow-Origin": "*",
                    "Cache-Control": REGISTRY_CACHE_CONTROL,
                },
            )

        @self.app.get("/status")
        async def status(request: Request, authorization: Optional[str] = Header(None)):
            """Aggregate registry status (bearer token required)."""
            await self.rate_limiter.check_request(request, "status")
            require_bearer_token(authorization, self.config.status_token)

            registry = self.registry.read_private()
            return {
                "status": "ok",
                "metadata": {
                    key: registry.metadata.get(key)
                    for key in ("version", "created", "lastSave", "totalLicenses")
                },
                "licenseCount": len(registry.records),
                "activeLicenseCount": sum(
                    1 for record in registry.records.values() if record.status == LicenseStatus.ACTIVE
                ),
                "recentLicenses": self._recent_licenses(registry.records.values()),
            }

        @self.app.post("/webhook")
        async def webhook(request: Request):
            """Ingest one payment lifecycle event."""
            body = await request.body()
            verify_webhook_signature(
                body,
                request.headers.get(SIGNATURE_HEADER),
                self.config.webhook_secret,
            )
            event = parse_event(body)
            try:
                result = await self.issuance.handle_event(event)
            except LicensingException:
                raise
            except Exception as e:
                self.logger.error("Webhook processing failed", event_type=event.type, error=str(e), exc_info=True)
                raise EventProcessingError(details={"event_id": event.id, "event_type": event.type}) from e
            return result.to_dict()

        @self.app.post("/admin/licenses", status_code=201)
        async def add_license(
            payload: ManualLicenseRequest = Body(...),
            authorization: Optional[str] = Header(None),
        ):
            """Issue a license by hand (bearer token required)."""
            require_bearer_token(authorization, self.config.status_token)
            record = await self.issuance.add_manual_license(
                license_key=payload.license_key,
                customer_id=payload.customer_id,
                tier=payload.tier,
                is_founder=payload.is_founder,
                email=payload.email,
            )
            return {
                "licenseKey": mask_license_key(record.license_key),
                "tier": record.tier.value,
                "isFounder": record.is_founder,
                "issued": record.issued,
            }

    @staticmethod
    def _recent_licenses(records) -> List[Dict[str, Any]]:
        recent = sorted(records, key=lambda record: record.added_date, reverse=True)[:RECENT_LICENSE_LIMIT]
        return [
            {
                "licenseKey": mask_license_key(record.license_key),
                "tier": record.tier.value,
                "isFounder": record.is_founder,
                "status": record.status.value,
                "addedDate": record.added_date,
            }
            for record in recent
        ]


def create_app(config: Optional[LicensingServiceConfig] = None):
    """Create licensing service application."""
    service = LicensingService(config)
    return service.app


if __name__ == "__main__":
    service = LicensingService()
    service.run()
