"""
License record and private registry data models.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from shared.signing import sha256_hex

REGISTRY_VERSION = "1.0"


class LicenseTier(str, Enum):
    """Entitlement tiers, lowest first."""
    FREE = "FREE"
    PRO = "PRO"
    TEAM = "TEAM"
    ENTERPRISE = "ENTERPRISE"


class LicenseStatus(str, Enum):
    """Record lifecycle status."""
    ACTIVE = "active"
    CANCELED = "canceled"


def utc_now_iso() -> str:
    """ISO-8601 UTC timestamp with millisecond precision and a Z suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class LicenseRecord:
    """Full entitlement record held by the issuer."""
    license_key: str
    customer_id: str
    tier: LicenseTier
    is_founder: bool = False
    email: Optional[str] = None
    subscription_id: Optional[str] = None
    status: LicenseStatus = LicenseStatus.ACTIVE
    added_date: str = field(default_factory=utc_now_iso)
    issued: str = ""
    added_by: str = "payment_webhook"
    canceled_date: Optional[str] = None

    def __post_init__(self):
        if not self.issued:
            self.issued = self.added_date

    def to_document(self) -> Dict[str, Any]:
        document: Dict[str, Any] = {
            "customerId": self.customer_id,
            "tier": self.tier.value,
            "isFounder": self.is_founder,
            "email": self.email,
            "subscriptionId": self.subscription_id,
            "status": self.status.value,
            "addedDate": self.added_date,
            "issued": self.issued,
            "addedBy": self.added_by,
        }
        if self.canceled_date:
            document["canceledDate"] = self.canceled_date
        return document

    @classmethod
    def from_document(cls, license_key: str, document: Dict[str, Any]) -> "LicenseRecord":
        """Rebuild a record from its on-disk form.

        Raises ValueError on an unknown tier or status.
        """
        added_date = document.get("addedDate") or utc_now_iso()
        return cls(
            license_key=license_key,
            customer_id=str(document.get("customerId") or ""),
            tier=LicenseTier(document.get("tier")),
            is_founder=bool(document.get("isFounder", False)),
            email=document.get("email"),
            subscription_id=document.get("subscriptionId"),
            status=LicenseStatus(document.get("status") or LicenseStatus.ACTIVE.value),
            added_date=added_date,
            issued=document.get("issued") or added_date,
            added_by=document.get("addedBy") or "unknown",
            canceled_date=document.get("canceledDate"),
        )


@dataclass
class PrivateRegistry:
    """In-memory form of the private registry document."""
    records: Dict[str, LicenseRecord] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def empty(cls) -> "PrivateRegistry":
        return cls(records={}, metadata={
            "version": REGISTRY_VERSION,
            "created": utc_now_iso(),
            "description": "Legitimate license database - populated by payment webhooks",
        })

    def record_documents(self) -> Dict[str, Dict[str, Any]]:
        return {key: record.to_document() for key, record in self.records.items()}

    def content_hash(self) -> str:
        """sha256 over all records, metadata excluded."""
        return sha256_hex(self.record_documents())

    def to_document(self) -> Dict[str, Any]:
        document: Dict[str, Any] = {"_metadata": dict(self.metadata)}
        document.update(self.record_documents())
        return document

    def find_by_subscription(self, subscription_id: str):
        return [record for record in self.records.values() if record.subscription_id == subscription_id]
