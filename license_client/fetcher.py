"""
Public registry fetcher with a verified offline cache.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import httpx

from shared.atomic_io import atomic_write_json, read_json
from shared.config import LicenseClientConfig
from shared.errors import PersistenceError, RegistryUnavailableError, VerificationError
from shared.logging import get_logger
from shared.retry import RetryConfig, RetryError, is_transient_http_error, retry_on_exception

from .verifier import RegistryVerifier

CACHE_FILE_NAME = "legitimate-licenses.json"
USER_AGENT = "signed-license-client"


class InsecureRegistryURLError(Exception):
    """Registry URL is not HTTPS and insecure fetching is not allowed."""


@dataclass
class RegistrySnapshot:
    """Verified entries plus where they came from (``network`` or ``cache``)."""
    entries: Dict[str, Any]
    source: str
    metadata: Dict[str, Any]


class RegistryFetcher:
    """Fetches the public registry, verifies it, and maintains the cache.

    The cache is only ever replaced by a document that passed
    verification. When the network fails the last verified cache is used;
    with no usable cache, RegistryUnavailableError is raised.
    """

    def __init__(
        self,
        config: LicenseClientConfig,
        verifier: RegistryVerifier,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_config: Optional[RetryConfig] = None,
    ):
        self.config = config
        self.verifier = verifier
        self.transport = transport
        self.url = config.license_db_url
        self.cache_path = config.resolved_license_dir() / CACHE_FILE_NAME
        self.logger = get_logger("license_client.fetcher")

        retry_config = retry_config or RetryConfig(
            max_attempts=config.fetch_attempts,
            base_delay=0.5,
            max_delay=5.0,
        )
        self._download_with_retry = retry_on_exception(
            (httpx.HTTPError,),
            retry_config,
            should_retry=is_transient_http_error,
            context={"url": self.url},
        )(self._download)

    async def fetch(self) -> RegistrySnapshot:
        """Return verified registry entries from the network or the cache."""
        try:
            document = await self._fetch_remote()
        except (InsecureRegistryURLError, RetryError, ValueError) as e:
            self.logger.warning("License registry fetch failed", url=self.url, error=_describe(e))
            return self._load_cache_or_raise(reason=_describe(e))

        try:
            entries = self.verifier.verify_registry(document)
        except VerificationError as e:
            self.logger.error("Fetched license registry failed verification", url=self.url, reason=e.message)
            snapshot = self.load_cache()
            if snapshot is None:
                raise
            self.logger.info("Using cached license registry", entries=len(snapshot.entries))
            return snapshot

        try:
            atomic_write_json(self.cache_path, document)
        except PersistenceError as e:
            # Verified entries stay usable; only offline fallback is lost
            self.logger.warning(
                "Could not cache license registry",
                path=str(self.cache_path),
                error=e.details.get("error", e.message),
            )
        else:
            self.logger.info("License registry updated and cached", entries=len(entries))
        return RegistrySnapshot(entries=entries, source="network", metadata=dict(document.get("_metadata") or {}))

    async def _fetch_remote(self) -> Any:
        parsed = urlparse(self.url)
        if parsed.scheme != "https" and not self.config.allow_insecure_license_db:
            raise InsecureRegistryURLError(
                "License registry URL must use HTTPS (set QAA_ALLOW_INSECURE_LICENSE_DB=1 to override)"
            )
        response = await self._download_with_retry()
        return response.json()

    async def _download(self) -> httpx.Response:
        async with httpx.AsyncClient(
            transport=self.transport,
            timeout=self.config.fetch_timeout_seconds,
            headers={"User-Agent": USER_AGENT},
        ) as client:
            response = await client.get(self.url)
            response.raise_for_status()
            return response

    def load_cache(self) -> Optional[RegistrySnapshot]:
        """Verified cached registry, or None.

        A cache that cannot be parsed or verified is deleted.
        """
        if not self.cache_path.exists():
            return None
        try:
            document = read_json(self.cache_path)
            entries = self.verifier.verify_registry(document)
        except (OSError, ValueError, VerificationError) as e:
            self.logger.warning("Discarding invalid license registry cache", path=str(self.cache_path), error=_describe(e))
            self._discard_cache()
            return None
        return RegistrySnapshot(entries=entries, source="cache", metadata=dict(document.get("_metadata") or {}))

    def _load_cache_or_raise(self, reason: str) -> RegistrySnapshot:
        snapshot = self.load_cache()
        if snapshot is None:
            raise RegistryUnavailableError(
                "License verification unavailable: registry unreachable and no verified cache",
                details={"url": self.url, "reason": reason},
            )
        self.logger.info("Using cached license registry", entries=len(snapshot.entries))
        return snapshot

    def _discard_cache(self) -> None:
        try:
            self.cache_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            self.logger.error("Could not remove license registry cache", path=str(self.cache_path), error=str(e))


def _describe(error: Exception) -> str:
    if isinstance(error, RetryError):
        return str(error.last_exception)
    if isinstance(error, VerificationError):
        return error.message
    return str(error)
