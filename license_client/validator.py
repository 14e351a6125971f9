"""
License activation and tier resolution on the client.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

import httpx

from shared.atomic_io import atomic_write_json, read_json
from shared.config import LicenseClientConfig, get_client_config
from shared.errors import (
    ConfigurationError,
    PersistenceError,
    RegistryUnavailableError,
    VerificationError,
)
from shared.logging import get_logger, mask_license_key
from shared.signing import is_valid_license_key, normalize_license_key

from .fetcher import RegistryFetcher
from .tiers import Tier, features_for_tier, has_feature, resolve_tier
from .verifier import RegistryVerifier, email_matches

LICENSE_FILE_NAME = "license.json"
LICENSE_FILE_MODE = 0o600


class ActivationStatus(str, Enum):
    ACTIVATED = "activated"
    UNVERIFIED = "unverified"
    UNAVAILABLE = "unavailable"
    NOT_FOUND = "not_found"
    INVALID_FORMAT = "invalid_format"
    EMAIL_MISMATCH = "email_mismatch"


ACTIVATION_MESSAGES = {
    ActivationStatus.ACTIVATED: "License activated",
    ActivationStatus.UNVERIFIED: "License could not be verified. The registry or entry signature is invalid.",
    ActivationStatus.UNAVAILABLE: "Could not reach the license server and no verified offline copy exists. "
                                  "Connect to the internet and retry.",
    ActivationStatus.NOT_FOUND: "License key not found. Verify the key, or contact support if this was a purchase.",
    ActivationStatus.INVALID_FORMAT: "License key must look like QAA-XXXX-XXXX-XXXX-XXXX.",
    ActivationStatus.EMAIL_MISMATCH: "Email address does not match the license registration.",
}

NOT_SAVED_MESSAGE = ("License activated for this session, but the license directory is not writable. "
                     "Activate again once it is.")


@dataclass
class ActivationResult:
    status: ActivationStatus
    license_key: str = ""
    tier: Tier = Tier.FREE
    is_founder: bool = False
    email: Optional[str] = None
    source: Optional[str] = None
    message: str = ""

    def __post_init__(self):
        if not self.message:
            self.message = ACTIVATION_MESSAGES[self.status]

    @property
    def activated(self) -> bool:
        return self.status == ActivationStatus.ACTIVATED


@dataclass
class LicenseInfo:
    """Resolved entitlement for the local installation."""
    tier: Tier = Tier.FREE
    is_founder: bool = False
    license_key: Optional[str] = None
    email: Optional[str] = None
    error: Optional[str] = None
    features: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.features:
            self.features = features_for_tier(self.tier)


class LicenseValidator:
    """Activation workflow and local license state.

    The local ``license.json`` is re-verified against the trusted public
    keys on every read. Anything that does not verify resolves to FREE.
    """

    def __init__(
        self,
        config: Optional[LicenseClientConfig] = None,
        verifier: Optional[RegistryVerifier] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        fetcher: Optional[RegistryFetcher] = None,
    ):
        self.config = config or get_client_config()
        self.license_dir = self.config.resolved_license_dir()
        self.license_file = self.license_dir / LICENSE_FILE_NAME
        self.logger = get_logger("license_client.validator")
        self._verifier = verifier
        self._transport = transport
        self._fetcher = fetcher

    @property
    def verifier(self) -> RegistryVerifier:
        """Trusted keys from config; raises ConfigurationError when absent."""
        if self._verifier is None:
            self._verifier = RegistryVerifier.from_config(self.config)
        return self._verifier

    @property
    def fetcher(self) -> RegistryFetcher:
        if self._fetcher is None:
            self._fetcher = RegistryFetcher(self.config, self.verifier, transport=self._transport)
        return self._fetcher

    async def activate(self, license_key: str, email: Optional[str]) -> ActivationResult:
        """Verify ``license_key`` against the registry and store it locally."""
        normalized = normalize_license_key(license_key)
        if not is_valid_license_key(normalized):
            return ActivationResult(ActivationStatus.INVALID_FORMAT, license_key=normalized)

        local = self.get_local_license()
        if local and local.get("valid") and local.get("licenseKey") == normalized:
            payload = local["payload"]
            if not email_matches(payload, email):
                return ActivationResult(ActivationStatus.EMAIL_MISMATCH, license_key=normalized)
            return ActivationResult(
                ActivationStatus.ACTIVATED,
                license_key=normalized,
                tier=resolve_tier(payload.get("tier")),
                is_founder=bool(payload.get("isFounder")),
                email=local.get("email"),
                source="local_file",
            )

        try:
            snapshot = await self.fetcher.fetch()
        except RegistryUnavailableError as e:
            self.logger.warning("License activation unavailable", reason=e.details.get("reason"))
            return ActivationResult(ActivationStatus.UNAVAILABLE, license_key=normalized)
        except (VerificationError, ConfigurationError) as e:
            self.logger.error("License registry could not be verified", error=e.message)
            return ActivationResult(ActivationStatus.UNVERIFIED, license_key=normalized, message=_unverified(e))

        entry = snapshot.entries.get(normalized)
        if entry is None:
            self.logger.info("License key not in registry", license_key=mask_license_key(normalized))
            return ActivationResult(ActivationStatus.NOT_FOUND, license_key=normalized)

        if not isinstance(entry, dict) or not email_matches(entry, email):
            return ActivationResult(ActivationStatus.EMAIL_MISMATCH, license_key=normalized)

        try:
            payload = self.verifier.verify_entry(normalized, entry)
        except VerificationError as e:
            self.logger.error(
                "License entry failed verification",
                license_key=mask_license_key(normalized),
                error=e.message,
            )
            return ActivationResult(ActivationStatus.UNVERIFIED, license_key=normalized, message=_unverified(e))

        message = ""
        try:
            self.save_license(normalized, payload, entry["signature"], email, source=snapshot.source)
        except PersistenceError as e:
            self.logger.warning(
                "Verified license could not be saved",
                path=str(self.license_file),
                error=e.details.get("error", e.message),
            )
            message = NOT_SAVED_MESSAGE
        tier = resolve_tier(payload["tier"])
        self.logger.info(
            "License activated",
            license_key=mask_license_key(normalized),
            tier=tier.value,
            source=snapshot.source,
        )
        return ActivationResult(
            ActivationStatus.ACTIVATED,
            license_key=normalized,
            tier=tier,
            is_founder=bool(payload.get("isFounder")),
            email=email,
            source=snapshot.source,
            message=message,
        )

    def save_license(self, license_key: str, payload: Dict[str, Any], signature: str,
                     email: Optional[str], source: str = "legitimate_database") -> None:
        now = datetime.now(timezone.utc).isoformat()
        record = {
            "licenseKey": license_key,
            "tier": payload.get("tier"),
            "isFounder": bool(payload.get("isFounder")),
            "email": email,
            "activated": now,
            "payload": payload,
            "signature": signature,
            "keyId": payload.get("keyId"),
            "source": source,
            "verifiedAt": now,
        }
        atomic_write_json(self.license_file, record, file_mode=LICENSE_FILE_MODE)

    def get_local_license(self) -> Optional[Dict[str, Any]]:
        """Read ``license.json`` and mark it ``valid`` only if its signature verifies.

        A corrupted file is removed and treated as absent.
        """
        if not self.license_file.exists():
            return None
        try:
            record = read_json(self.license_file)
        except (OSError, ValueError) as e:
            self._discard_local_license(str(e))
            return None
        if not isinstance(record, dict):
            self._discard_local_license("license file is not a JSON object")
            return None

        license_key = normalize_license_key(record.get("licenseKey") or record.get("key"))
        payload = record.get("payload")
        signature = record.get("signature")
        valid = False
        if payload and signature:
            try:
                valid = self.verifier.verify_signed_payload(payload, signature)
            except ConfigurationError as e:
                self.logger.warning("Cannot verify local license", error=e.message)
            valid = valid and payload.get("licenseKey") == license_key
        return {**record, "licenseKey": license_key, "valid": valid}

    def get_license_info(self) -> LicenseInfo:
        """Resolve the current tier; fails closed to FREE."""
        if self.license_file.exists():
            local = self.get_local_license()
            if local is None:
                return LicenseInfo(error="Local license file was corrupted and has been removed. Please re-activate.")
        else:
            return LicenseInfo()

        if not local["valid"]:
            return LicenseInfo(
                email=local.get("email"),
                error="License signature verification failed. Please re-activate.",
            )

        payload = local["payload"]
        return LicenseInfo(
            tier=resolve_tier(payload.get("tier")),
            is_founder=bool(payload.get("isFounder")),
            license_key=local["licenseKey"],
            email=local.get("email"),
        )

    def has_feature(self, feature_name: str) -> bool:
        return has_feature(self.get_license_info().tier, feature_name)

    def remove_license(self) -> bool:
        """Delete the local activation record; False if none existed."""
        if not self.license_file.exists():
            return False
        try:
            self.license_file.unlink()
        except OSError as e:
            raise PersistenceError("Failed to remove license file", details={"error": str(e)}) from e
        self.logger.info("License removed")
        return True

    def _discard_local_license(self, reason: str) -> None:
        self.logger.warning("Discarding corrupted license file", path=str(self.license_file), reason=reason)
        try:
            self.license_file.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            self.logger.error("Could not remove corrupted license file", error=str(e))


def _unverified(error: Exception) -> str:
    detail = getattr(error, "message", str(error))
    return f"{ACTIVATION_MESSAGES[ActivationStatus.UNVERIFIED]} ({detail})"
