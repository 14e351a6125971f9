"""
Canonical license payloads and Ed25519 signing primitives.

Both the issuing service and the client import from here so that the
signed bytes are produced by exactly one function on both sides.
"""

import base64
import binascii
import hashlib
import hmac
import json
import re
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from shared.errors import ConfigurationError, VerificationError

SIGNATURE_ALGORITHM = "ed25519"
LICENSE_KEY_PREFIX = "QAA"
LICENSE_KEY_PATTERN = re.compile(r"^QAA-[A-Z0-9]{4}-[A-Z0-9]{4}-[A-Z0-9]{4}-[A-Z0-9]{4}$")


def canonical_json(value: Any) -> str:
    """Deterministic JSON: sorted keys, no whitespace, UTF-8 text.

    Raises ValueError on circular references.
    """
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def canonical_bytes(value: Any) -> bytes:
    return canonical_json(value).encode("utf-8")


def sha256_hex(value: Any) -> str:
    """sha256 hex digest of the canonical form of ``value``."""
    return hashlib.sha256(canonical_bytes(value)).hexdigest()


def normalize_email(email: Optional[str]) -> Optional[str]:
    if not email or not isinstance(email, str):
        return None
    normalized = email.strip().lower()
    return normalized or None


def hash_email(email: Optional[str]) -> Optional[str]:
    normalized = normalize_email(email)
    if not normalized:
        return None
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def normalize_license_key(key: Any) -> str:
    if not isinstance(key, str):
        return ""
    return key.strip().upper()


def is_valid_license_key(key: str) -> bool:
    return bool(LICENSE_KEY_PATTERN.match(key or ""))


def build_license_payload(
    license_key: str,
    tier: str,
    is_founder: bool,
    issued: str,
    key_id: str,
    email_hash: Optional[str] = None,
) -> Dict[str, Any]:
    """Build the exact field set signed for one public entry.

    The license key is part of the payload so an entry cannot be moved under
    a different key; ``emailHash`` is omitted when absent.
    """
    if not license_key or not isinstance(license_key, str):
        raise ValueError("licenseKey is required and must be a string")
    if not tier or not isinstance(tier, str):
        raise ValueError("tier is required and must be a string")
    if not issued or not isinstance(issued, str):
        raise ValueError("issued is required and must be a string")
    if not key_id or not isinstance(key_id, str):
        raise ValueError("keyId is required and must be a string")

    payload: Dict[str, Any] = {
        "licenseKey": license_key,
        "tier": tier,
        "isFounder": bool(is_founder),
        "issued": issued,
        "keyId": key_id,
    }
    if email_hash:
        payload["emailHash"] = email_hash
    return payload


def sign_payload(payload: Any, private_key: Ed25519PrivateKey) -> str:
    """Detached Ed25519 signature over the canonical payload, base64."""
    signature = private_key.sign(canonical_bytes(payload))
    return base64.b64encode(signature).decode("ascii")


def verify_payload(payload: Any, signature: str, public_key: Ed25519PublicKey) -> bool:
    """True only if ``signature`` is a valid signature of ``payload``."""
    if not isinstance(signature, str) or not signature:
        return False
    try:
        raw = base64.b64decode(signature.encode("ascii"), validate=True)
        public_key.verify(raw, canonical_bytes(payload))
    except (InvalidSignature, binascii.Error, ValueError, TypeError, UnicodeEncodeError):
        return False
    return True


@dataclass(frozen=True)
class SigningKey:
    """Issuer key material: private key plus the key id published with it."""

    key_id: str
    private_key: Ed25519PrivateKey

    def sign(self, payload: Any) -> str:
        return sign_payload(payload, self.private_key)

    def public_key(self) -> Ed25519PublicKey:
        return self.private_key.public_key()


def load_private_key(pem: Optional[str]) -> Ed25519PrivateKey:
    """Parse PEM private key text. Missing or non-Ed25519 material is fatal."""
    if not pem or not pem.strip():
        raise ConfigurationError(
            "License registry private key not configured",
            details={"env": ["LICENSE_REGISTRY_PRIVATE_KEY", "LICENSE_REGISTRY_PRIVATE_KEY_PATH"]},
        )
    try:
        key = serialization.load_pem_private_key(pem.encode("utf-8"), password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise ConfigurationError("License registry private key is malformed", details={"error": str(e)})
    if not isinstance(key, Ed25519PrivateKey):
        raise ConfigurationError("License registry private key must be an Ed25519 key")
    return key


def load_public_key(pem: Optional[str]) -> Ed25519PublicKey:
    """Parse PEM public key text."""
    if not pem or not pem.strip():
        raise ConfigurationError(
            "License public key not configured",
            details={"env": ["QAA_LICENSE_PUBLIC_KEY", "QAA_LICENSE_PUBLIC_KEY_PATH"]},
        )
    try:
        key = serialization.load_pem_public_key(pem.encode("utf-8"))
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise ConfigurationError("License public key is malformed", details={"error": str(e)})
    if not isinstance(key, Ed25519PublicKey):
        raise ConfigurationError("License public key must be an Ed25519 key")
    return key


def load_signing_key(pem: Optional[str], key_id: str) -> SigningKey:
    return SigningKey(key_id=key_id, private_key=load_private_key(pem))


def public_key_pem(public_key: Ed25519PublicKey) -> str:
    return public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")


def generate_key_pair() -> Tuple[str, str]:
    """Generate an Ed25519 key pair as (private PEM, public PEM)."""
    private_key = Ed25519PrivateKey.generate()
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")
    return private_pem, public_key_pem(private_key.public_key())


def split_registry(document: Mapping[str, Any]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Split a registry document into (metadata, entries)."""
    metadata = document.get("_metadata")
    entries = {key: value for key, value in document.items() if key != "_metadata"}
    return (dict(metadata) if isinstance(metadata, Mapping) else {}), entries


def verify_registry_document(document: Any, public_key: Ed25519PublicKey) -> Dict[str, Any]:
    """Check a public registry's signature and hash; return its entries.

    Order: registry signature over the entry map, then the metadata hash
    against a fresh hash of the same entries. Any failure raises
    VerificationError; there is no partially trusted result.
    """
    if not isinstance(document, Mapping):
        raise VerificationError("License registry is not a JSON object")
    metadata, entries = split_registry(document)
    if not metadata:
        raise VerificationError("License registry missing metadata")

    signature = metadata.get("registrySignature")
    if not signature:
        raise VerificationError("License registry missing registry signature")
    if not verify_payload(entries, signature, public_key):
        raise VerificationError("License registry signature verification failed")

    expected_hash = metadata.get("hash")
    if not isinstance(expected_hash, str) or not hmac.compare_digest(sha256_hex(entries), expected_hash):
        raise VerificationError("License registry hash mismatch")
    return entries
