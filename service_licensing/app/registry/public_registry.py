"""
Public registry projection: redacted, per-entry signed, registry signed.
"""

from typing import Any, Dict, Optional

from shared.signing import (
    SIGNATURE_ALGORITHM,
    SigningKey,
    build_license_payload,
    hash_email,
    sha256_hex,
)

from .models import REGISTRY_VERSION, LicenseStatus, PrivateRegistry, utc_now_iso


def build_public_entry(license_key: str, record, signing_key: SigningKey) -> Dict[str, Any]:
    """Project one private record into its signed public entry."""
    email_hash = hash_email(record.email)
    payload = build_license_payload(
        license_key=license_key,
        tier=record.tier.value,
        is_founder=record.is_founder,
        issued=record.issued,
        key_id=signing_key.key_id,
        email_hash=email_hash,
    )
    return {
        "tier": record.tier.value,
        "isFounder": record.is_founder,
        "issued": record.issued,
        "emailHash": email_hash,
        "signature": signing_key.sign(payload),
        "keyId": signing_key.key_id,
    }


def build_public_registry(
    registry: PrivateRegistry,
    signing_key: SigningKey,
    now: Optional[str] = None,
) -> Dict[str, Any]:
    """Rebuild the public document from scratch.

    Canceled records are left out. ``registrySignature`` and ``hash`` both
    cover the canonical entry map without metadata.
    """
    issued_at = now or utc_now_iso()
    entries: Dict[str, Dict[str, Any]] = {}
    for license_key in sorted(registry.records):
        record = registry.records[license_key]
        if record.status != LicenseStatus.ACTIVE:
            continue
        entries[license_key] = build_public_entry(license_key, record, signing_key)

    document: Dict[str, Any] = {
        "_metadata": {
            "version": REGISTRY_VERSION,
            "created": registry.metadata.get("created") or issued_at,
            "lastSave": issued_at,
            "algorithm": SIGNATURE_ALGORITHM,
            "keyId": signing_key.key_id,
            "registrySignature": signing_key.sign(entries),
            "hash": sha256_hex(entries),
        }
    }
    document.update(entries)
    return document
