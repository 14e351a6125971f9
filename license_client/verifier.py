"""
Client-side verification of the public registry and its entries.
"""

import hmac
from typing import Any, Dict, Mapping, Optional

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from shared.config import LicenseClientConfig, read_key_material
from shared.errors import VerificationError
from shared.logging import get_logger
from shared.signing import (
    SIGNATURE_ALGORITHM,
    build_license_payload,
    hash_email,
    load_public_key,
    split_registry,
    verify_payload,
    verify_registry_document,
)


class RegistryVerifier:
    """Checks registry and entry signatures against trusted public keys.

    ``public_keys`` maps key id -> Ed25519 public key so the issuer can
    rotate keys; anything signed under an id not in the map is rejected.
    """

    def __init__(self, public_keys: Mapping[str, Ed25519PublicKey]):
        if not public_keys:
            raise VerificationError("No trusted license public keys configured")
        self.public_keys = dict(public_keys)
        self.logger = get_logger("license_client.verifier")

    @classmethod
    def from_config(cls, config: LicenseClientConfig) -> "RegistryVerifier":
        """Build from QAA_LICENSE_PUBLIC_KEY(_PATH); raises ConfigurationError."""
        pem = read_key_material(config.license_public_key, config.license_public_key_path)
        return cls({config.license_key_id: load_public_key(pem)})

    def _key_for(self, key_id: Optional[str]) -> Ed25519PublicKey:
        public_key = self.public_keys.get(key_id or "")
        if public_key is None:
            raise VerificationError("Unknown signing key id", details={"key_id": key_id})
        return public_key

    def verify_registry(self, document: Any) -> Dict[str, Any]:
        """Verify registry signature then hash; return the entry map."""
        if not isinstance(document, Mapping):
            raise VerificationError("License registry is not a JSON object")
        metadata, _ = split_registry(document)
        algorithm = metadata.get("algorithm")
        if algorithm and algorithm != SIGNATURE_ALGORITHM:
            raise VerificationError("Unsupported registry algorithm", details={"algorithm": algorithm})
        return verify_registry_document(document, self._key_for(metadata.get("keyId")))

    def verify_entry(self, license_key: str, entry: Any) -> Dict[str, Any]:
        """Verify one entry's signature over its exact payload; return the payload."""
        if not isinstance(entry, Mapping):
            raise VerificationError("License entry is malformed")
        signature = entry.get("signature")
        if not signature:
            raise VerificationError("License entry missing signature")

        key_id = entry.get("keyId")
        public_key = self._key_for(key_id)
        try:
            payload = build_license_payload(
                license_key=license_key,
                tier=entry.get("tier"),
                is_founder=entry.get("isFounder", False),
                issued=entry.get("issued"),
                key_id=key_id,
                email_hash=entry.get("emailHash"),
            )
        except ValueError as e:
            raise VerificationError("License entry is malformed", details={"error": str(e)}) from e

        if not verify_payload(payload, signature, public_key):
            raise VerificationError("License entry signature verification failed")
        return payload

    def verify_signed_payload(self, payload: Any, signature: Any) -> bool:
        """Check a stored payload/signature pair (local activation record)."""
        if not isinstance(payload, Mapping) or not isinstance(signature, str):
            return False
        public_key = self.public_keys.get(payload.get("keyId") or "")
        if public_key is None:
            return False
        return verify_payload(dict(payload), signature, public_key)


def email_matches(entry: Mapping[str, Any], email: Optional[str]) -> bool:
    """Constant-time comparison of the entry's email hash with ``email``.

    Entries without an email hash are not bound to an address.
    """
    expected = entry.get("emailHash")
    if not expected:
        return True
    presented = hash_email(email)
    if not presented:
        return False
    return hmac.compare_digest(str(expected).encode("utf-8"), presented.encode("utf-8"))
