"""
Issuance handlers: payment lifecycle events -> registry mutations.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from shared.errors import LicensingException, ValidationError
from shared.logging import get_logger, mask_license_key, set_event_id
from shared.metrics import MetricsCollector
from shared.signing import is_valid_license_key, normalize_license_key

from ..registry.manager import LicenseRegistry
from ..registry.models import LicenseRecord, LicenseStatus, LicenseTier, PrivateRegistry, utc_now_iso
from .events import (
    CheckoutCompleted,
    PaymentEvent,
    PaymentSucceeded,
    SubscriptionCanceled,
)
from .license_keys import derive_license_key
from .plans import resolve_plan


@dataclass
class IssuanceResult:
    """Outcome reported back to the event source."""
    event_id: str
    event_type: str
    action: str
    license_keys: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "received": True,
            "eventId": self.event_id,
            "eventType": self.event_type,
            "action": self.action,
            "licenses": [mask_license_key(key) for key in self.license_keys],
        }


class IssuanceService:
    """Dispatches typed events to their handlers.

    Every handler re-raises on failure so the dispatching endpoint can
    answer with an error status and the payment provider retries.
    """

    def __init__(self, registry: LicenseRegistry, metrics: Optional[MetricsCollector] = None):
        self.registry = registry
        self.metrics = metrics
        self.logger = get_logger("licensing.issuance")

    async def handle_event(self, event: PaymentEvent) -> IssuanceResult:
        set_event_id(event.id)
        try:
            if isinstance(event.payload, CheckoutCompleted):
                result = await self.handle_checkout_completed(event.id, event.payload)
            elif isinstance(event.payload, PaymentSucceeded):
                result = await self.handle_payment_succeeded(event.id, event.payload)
            elif isinstance(event.payload, SubscriptionCanceled):
                result = await self.handle_subscription_canceled(event.id, event.payload)
            else:
                self.logger.info("Ignoring unhandled event type", event_type=event.type)
                result = IssuanceResult(event.id, event.type, "ignored")
        except LicensingException as e:
            self._count_event(event.type, "failure")
            self.logger.error(
                "Event processing failed",
                event_type=event.type,
                code=e.code,
                error=e.message,
            )
            raise
        finally:
            set_event_id(None)

        self._count_event(event.type, result.action)
        return result

    async def handle_checkout_completed(self, event_id: str, checkout: CheckoutCompleted) -> IssuanceResult:
        """Grant a license for a completed checkout.

        Plan resolution happens before anything is queued, so an unmapped
        plan issues nothing.
        """
        plan = resolve_plan(checkout.plan)
        license_key = derive_license_key(checkout.customer, plan.tier, plan.is_founder)

        record = LicenseRecord(
            license_key=license_key,
            customer_id=checkout.customer,
            tier=plan.tier,
            is_founder=plan.is_founder,
            email=checkout.customer_email,
            subscription_id=checkout.subscription,
            added_by="payment_webhook",
        )

        created = await self.registry.mutate(lambda registry: _insert_record(registry, record))

        if created:
            self.logger.info(
                "License issued",
                license_key=mask_license_key(license_key),
                tier=plan.tier.value,
                is_founder=plan.is_founder,
            )
            self._count_issued(plan.tier, "payment_webhook")
        else:
            self.logger.info(
                "License already issued for customer",
                license_key=mask_license_key(license_key),
                tier=plan.tier.value,
            )
        return IssuanceResult(event_id, "checkout.session.completed", "issued" if created else "unchanged", [license_key])

    async def handle_payment_succeeded(self, event_id: str, payment: PaymentSucceeded) -> IssuanceResult:
        """Recurring payment. Renewal needs no registry change today."""
        self.logger.info(
            "Recurring payment received",
            invoice_id=payment.id,
            subscription_id=payment.subscription,
        )
        return IssuanceResult(event_id, "invoice.payment_succeeded", "acknowledged")

    async def handle_subscription_canceled(self, event_id: str, cancellation: SubscriptionCanceled) -> IssuanceResult:
        """Mark every active record for the subscription as canceled.

        A subscription with no matching record is logged and acknowledged.
        """
        subscription_id = cancellation.id
        canceled = await self.registry.mutate(lambda registry: _cancel_subscription(registry, subscription_id))

        if not canceled:
            self.logger.warning(
                "No license found for canceled subscription",
                subscription_id=subscription_id,
                customer_id=cancellation.customer,
            )
            return IssuanceResult(event_id, "customer.subscription.deleted", "not_found")

        for license_key in canceled:
            self.logger.info("License canceled", license_key=mask_license_key(license_key))
            if self.metrics is not None:
                self.metrics.increment_counter("licenses_revoked_total")
        return IssuanceResult(event_id, "customer.subscription.deleted", "canceled", canceled)

    async def add_manual_license(
        self,
        license_key: str,
        customer_id: str,
        tier: str,
        is_founder: bool = False,
        email: Optional[str] = None,
    ) -> LicenseRecord:
        """Insert an administrator-assigned license.

        Raises ValidationError for a malformed key or tier and when the key
        already exists.
        """
        normalized_key = normalize_license_key(license_key)
        if not is_valid_license_key(normalized_key):
            raise ValidationError(
                "License key must match QAA-XXXX-XXXX-XXXX-XXXX",
                details={"license_key": license_key},
            )
        try:
            license_tier = LicenseTier(str(tier).upper())
        except ValueError:
            raise ValidationError("Unknown license tier", details={"tier": tier})
        if not customer_id:
            raise ValidationError("customer_id is required")

        record = LicenseRecord(
            license_key=normalized_key,
            customer_id=customer_id,
            tier=license_tier,
            is_founder=is_founder,
            email=email,
            added_by="admin",
        )

        def insert(registry: PrivateRegistry) -> bool:
            if normalized_key in registry.records:
                raise ValidationError(
                    "License key already exists",
                    details={"license_key": mask_license_key(normalized_key)},
                )
            return _insert_record(registry, record)

        await self.registry.mutate(insert)
        self.logger.info(
            "Manual license added",
            license_key=mask_license_key(normalized_key),
            tier=license_tier.value,
        )
        self._count_issued(license_tier, "admin")
        return record

    def _count_issued(self, tier: LicenseTier, source: str) -> None:
        if self.metrics is not None:
            self.metrics.increment_counter("licenses_issued_total", tier=tier.value, source=source)

    def _count_event(self, event_type: str, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.increment_counter("webhook_events_total", event_type=event_type, outcome=outcome)


def _insert_record(registry: PrivateRegistry, record: LicenseRecord) -> bool:
    """Insert unless the key exists; False means a retried event."""
    existing = registry.records.get(record.license_key)
    if existing is not None and existing.status == LicenseStatus.ACTIVE:
        return False
    registry.records[record.license_key] = record
    return True


def _cancel_subscription(registry: PrivateRegistry, subscription_id: str) -> List[str]:
    canceled = []
    canceled_at = utc_now_iso()
    for record in registry.find_by_subscription(subscription_id):
        if record.status == LicenseStatus.CANCELED:
            continue
        record.status = LicenseStatus.CANCELED
        record.canceled_date = canceled_at
        canceled.append(record.license_key)
    return sorted(canceled)
