"""
Registry manager: the only entry point for mutating on-disk registry state.
"""

import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional, TypeVar, Union

from shared.atomic_io import atomic_write_json, read_json
from shared.errors import (
    LicensingException,
    PersistenceError,
    VerificationError,
)
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.signing import SigningKey, load_signing_key, verify_registry_document

from .models import PrivateRegistry
from .private_store import PrivateRegistryStore
from .public_registry import build_public_registry
from .write_serializer import WriteSerializer

T = TypeVar("T")

PUBLIC_FILE_MODE = 0o644


class LicenseRegistry:
    """Single-writer store over the private and public registry files.

    Callers hand a mutation function to :meth:`mutate`; it runs on the
    write serializer against a freshly loaded private registry. The signing
    key is resolved before anything is loaded, so a missing key writes
    nothing. When the mutation leaves the records unchanged and the
    published registry already matches them, no file is touched.
    """

    def __init__(
        self,
        private_path: Union[str, Path],
        public_path: Union[str, Path],
        key_provider: Callable[[], SigningKey],
        serializer: Optional[WriteSerializer] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.private_store = PrivateRegistryStore(private_path)
        self.public_path = Path(public_path)
        self.key_provider = key_provider
        self.serializer = serializer or WriteSerializer()
        self.metrics = metrics
        self.logger = get_logger("licensing.registry")

    async def mutate(self, mutation: Callable[[PrivateRegistry], T]) -> T:
        """Apply ``mutation`` under the single writer and publish both files.

        Any exception (configuration, integrity, persistence, or raised by
        the mutation itself) propagates to the caller.
        """
        start_time = time.time()
        try:
            result = await self.serializer.submit(lambda: self._apply(mutation))
        except LicensingException:
            self._record_write("failure", start_time)
            raise
        except Exception as e:
            self._record_write("failure", start_time)
            self.logger.error("Registry mutation failed", error=str(e), exc_info=True)
            raise PersistenceError("Registry mutation failed", details={"error": str(e)}) from e
        self._record_write("success", start_time)
        return result

    async def republish(self) -> Dict[str, Any]:
        """Rebuild the public registry from the private one."""
        return await self.serializer.submit(self._publish_current)

    def read_private(self) -> PrivateRegistry:
        """Read-only snapshot; publication is atomic so no lock is taken."""
        return self.private_store.load()

    def database_exists(self) -> bool:
        return self.private_store.exists()

    async def load_public_registry(self) -> Dict[str, Any]:
        """Return a verified public registry, rebuilding it when needed.

        The on-disk document is served only after it verifies against the
        issuer's own public key. Missing, unparseable or unverifiable files
        are regenerated through the write serializer. Raises
        ConfigurationError when no signing key is available.
        """
        signing_key = self.key_provider()
        document = self._read_public()
        if document is not None:
            try:
                verify_registry_document(document, signing_key.public_key())
                return document
            except VerificationError as e:
                self.logger.warning(
                    "Public registry failed verification, rebuilding",
                    path=str(self.public_path),
                    reason=e.message,
                )
        return await self.republish()

    def _read_public(self) -> Optional[Dict[str, Any]]:
        if not self.public_path.exists():
            self.logger.info("Public registry missing, rebuilding", path=str(self.public_path))
            return None
        try:
            document = read_json(self.public_path)
        except (OSError, ValueError) as e:
            self.logger.warning(
                "Public registry unreadable, rebuilding",
                path=str(self.public_path),
                error=str(e),
            )
            return None
        return document if isinstance(document, dict) else None

    def _apply(self, mutation: Callable[[PrivateRegistry], T]) -> T:
        # Runs on the writer thread.
        signing_key = self.key_provider()
        registry = self.private_store.load()
        before = registry.content_hash()

        result = mutation(registry)

        changed = registry.content_hash() != before or not self.private_store.exists()
        public_document = build_public_registry(registry, signing_key)
        if not changed and self._published_hash() == public_document["_metadata"]["hash"]:
            self.logger.debug("Registry mutation made no changes")
            return result

        # A retry after a failed public write lands here with the private file unchanged
        if changed:
            self.private_store.save(registry)
        atomic_write_json(self.public_path, public_document, file_mode=PUBLIC_FILE_MODE)
        self.logger.info(
            "Registry published",
            total_licenses=len(registry.records),
            public_entries=len(public_document) - 1,
            key_id=signing_key.key_id,
        )
        return result

    def _published_hash(self) -> Optional[str]:
        try:
            document = read_json(self.public_path)
        except (OSError, ValueError):
            return None
        if not isinstance(document, dict) or not isinstance(document.get("_metadata"), dict):
            return None
        return document["_metadata"].get("hash")

    def _publish_current(self) -> Dict[str, Any]:
        signing_key = self.key_provider()
        registry = self.private_store.load()
        public_document = build_public_registry(registry, signing_key)
        atomic_write_json(self.public_path, public_document, file_mode=PUBLIC_FILE_MODE)
        self.logger.info("Public registry rebuilt", public_entries=len(public_document) - 1)
        return public_document

    def _record_write(self, outcome: str, start_time: float) -> None:
        if self.metrics is None:
            return
        self.metrics.increment_counter("registry_writes_total", outcome=outcome)
        duration_metric = self.metrics.get_metric("registry_write_duration_seconds")
        if duration_metric is not None:
            duration_metric.observe(time.time() - start_time)

    def close(self) -> None:
        self.serializer.close()


def signing_key_provider(pem_loader: Callable[[], Optional[str]], key_id: str) -> Callable[[], SigningKey]:
    """Build a provider that loads key material on every call.

    The service starts (and answers liveness checks) without a key; every
    operation that has to sign fails with ConfigurationError instead.
    """

    def provider() -> SigningKey:
        return load_signing_key(pem_loader(), key_id)

    return provider
