"""
Typed payment lifecycle events.

Only the narrow field set each handler needs is bound from the provider's
envelope ``{id, type, data: {object: {...}}}``; everything else in the
payload is ignored.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from shared.errors import ValidationError

CHECKOUT_COMPLETED = "checkout.session.completed"
PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
SUBSCRIPTION_CANCELED = "customer.subscription.deleted"


class _EventObject(BaseModel):
    model_config = ConfigDict(extra="ignore")


class CheckoutCompleted(_EventObject):
    """A completed checkout: grants a license."""
    customer: str = Field(..., min_length=1)
    subscription: Optional[str] = None
    plan: Optional[str] = None
    customer_email: Optional[str] = None


class PaymentSucceeded(_EventObject):
    """A recurring invoice payment."""
    id: str
    subscription: Optional[str] = None


class SubscriptionCanceled(_EventObject):
    """A subscription was deleted: revokes matching licenses."""
    id: str = Field(..., min_length=1)
    customer: Optional[str] = None


class UnhandledEvent(_EventObject):
    """Any event type this service does not act on."""


EventObject = Union[CheckoutCompleted, PaymentSucceeded, SubscriptionCanceled, UnhandledEvent]

EVENT_TYPES = {
    CHECKOUT_COMPLETED: CheckoutCompleted,
    PAYMENT_SUCCEEDED: PaymentSucceeded,
    SUBSCRIPTION_CANCELED: SubscriptionCanceled,
}


class _EventData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    object: Dict[str, Any] = Field(default_factory=dict)


class _EventEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    data: _EventData = Field(default_factory=_EventData)


@dataclass(frozen=True)
class PaymentEvent:
    """Validated event: id, type and the typed object for that type."""
    id: str
    type: str
    payload: EventObject

    @property
    def handled(self) -> bool:
        return not isinstance(self.payload, UnhandledEvent)


def _summarize(error: PydanticValidationError):
    return [{"loc": list(item["loc"]), "msg": item["msg"]} for item in error.errors()]


def parse_event(raw: Union[bytes, str, Dict[str, Any]]) -> PaymentEvent:
    """Bind a raw envelope to its typed variant.

    Raises ValidationError when the body is not JSON, the envelope is
    malformed, or a known event type lacks a required field.
    """
    if isinstance(raw, (bytes, str)):
        try:
            raw = json.loads(raw)
        except (ValueError, UnicodeDecodeError) as e:
            raise ValidationError("Event body is not valid JSON", details={"error": str(e)}) from e

    try:
        envelope = _EventEnvelope.model_validate(raw)
    except PydanticValidationError as e:
        raise ValidationError(
            "Malformed event envelope",
            details={"errors": _summarize(e)},
        ) from e

    model = EVENT_TYPES.get(envelope.type, UnhandledEvent)
    try:
        payload = model.model_validate(envelope.data.object)
    except PydanticValidationError as e:
        raise ValidationError(
            f"Malformed {envelope.type} event",
            details={
                "event_id": envelope.id,
                "errors": _summarize(e),
            },
        ) from e

    return PaymentEvent(id=envelope.id, type=envelope.type, payload=payload)
