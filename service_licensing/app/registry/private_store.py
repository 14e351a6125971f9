"""
Private registry persistence (issuer-only, holds customer metadata).
"""

from pathlib import Path
from typing import Union

from shared.atomic_io import atomic_write_json, read_json
from shared.errors import RegistryIntegrityError
from shared.logging import get_logger
from shared.signing import split_registry

from .models import LicenseRecord, PrivateRegistry, utc_now_iso

PRIVATE_FILE_MODE = 0o600


class PrivateRegistryStore:
    """Loads and atomically saves the private registry file.

    Every save stamps ``_metadata.sha256`` with the hash of the records, and
    every load checks it, so edits made outside this store are detected.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.logger = get_logger("licensing.registry.private")

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> PrivateRegistry:
        """Load the registry; a missing file yields an empty registry."""
        if not self.path.exists():
            return PrivateRegistry.empty()

        try:
            document = read_json(self.path)
        except ValueError as e:
            raise RegistryIntegrityError(
                "Private registry is not valid JSON",
                details={"path": str(self.path), "error": str(e)},
            ) from e

        if not isinstance(document, dict):
            raise RegistryIntegrityError("Private registry must be a JSON object")

        metadata, entries = split_registry(document)
        try:
            records = {
                key: LicenseRecord.from_document(key, value)
                for key, value in entries.items()
            }
        except (ValueError, TypeError, AttributeError) as e:
            raise RegistryIntegrityError(
                "Private registry contains a malformed record",
                details={"error": str(e)},
            ) from e

        registry = PrivateRegistry(records=records, metadata=metadata)
        expected = metadata.get("sha256")
        if expected is None and records:
            # save() always stamps the hash, so records without one were written elsewhere
            self.logger.error("Private registry hash missing", path=str(self.path))
            raise RegistryIntegrityError(
                "Private registry has records but no content hash",
                details={"path": str(self.path)},
            )
        if expected is not None and expected != registry.content_hash():
            self.logger.error("Private registry hash mismatch", path=str(self.path))
            raise RegistryIntegrityError(
                "Private registry was modified outside the write path",
                details={"path": str(self.path)},
            )
        return registry

    def save(self, registry: PrivateRegistry) -> PrivateRegistry:
        """Stamp metadata and publish atomically. Raises PersistenceError."""
        registry.metadata.setdefault("created", utc_now_iso())
        registry.metadata["lastSave"] = utc_now_iso()
        registry.metadata["totalLicenses"] = len(registry.records)
        registry.metadata["sha256"] = registry.content_hash()
        atomic_write_json(self.path, registry.to_document(), file_mode=PRIVATE_FILE_MODE)
        return registry

    def verify_integrity(self) -> bool:
        """True when the on-disk records match the stored hash."""
        try:
            self.load()
        except RegistryIntegrityError:
            return False
        return True
