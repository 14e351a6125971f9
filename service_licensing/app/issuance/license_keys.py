"""
Deterministic license key derivation.
"""

import hashlib

from shared.signing import LICENSE_KEY_PREFIX

from ..registry.models import LicenseTier

KEY_DERIVATION_SALT = "cqa-license-v1"


def derive_license_key(customer_id: str, tier: LicenseTier, is_founder: bool) -> str:
    """Derive ``QAA-XXXX-XXXX-XXXX-XXXX`` from the purchase identity.

    The same (customer, tier, founder) triple always yields the same key, so
    a retried completion event converges on the record it already created.
    """
    if not customer_id:
        raise ValueError("customer_id is required to derive a license key")
    tier_value = tier.value if isinstance(tier, LicenseTier) else str(tier)
    material = f"{customer_id}:{tier_value}:{str(bool(is_founder)).lower()}:{KEY_DERIVATION_SALT}"
    digest = hashlib.sha256(material.encode("utf-8")).hexdigest()[:16].upper()
    groups = [digest[i:i + 4] for i in range(0, 16, 4)]
    return "-".join([LICENSE_KEY_PREFIX] + groups)
