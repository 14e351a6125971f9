"""
Unit tests for registry persistence and the public projection.
"""

import json

import pytest

from service_licensing.app.registry.manager import LicenseRegistry, signing_key_provider
from service_licensing.app.registry.models import LicenseRecord, LicenseStatus, LicenseTier, PrivateRegistry
from service_licensing.app.registry.private_store import PrivateRegistryStore
from service_licensing.app.registry.public_registry import build_public_registry
from shared import atomic_io
from shared.errors import ConfigurationError, PersistenceError, RegistryIntegrityError
from shared.signing import build_license_payload, sha256_hex, verify_payload, verify_registry_document
from shared.test_helpers import TestDataFactory


def make_record(key="QAA-1A2B-3C4D-5E6F-7A8B", tier=LicenseTier.PRO, email="buyer@example.com",
                subscription="sub_1", status=LicenseStatus.ACTIVE):
    return LicenseRecord(
        license_key=key,
        customer_id="cus_1",
        tier=tier,
        email=email,
        subscription_id=subscription,
        status=status,
    )


class TestPrivateRegistryStore:
    """Test cases for PrivateRegistryStore."""

    @pytest.fixture
    def store(self, tmp_path):
        return PrivateRegistryStore(tmp_path / "private.json")

    def test_missing_file_loads_empty(self, store):
        """Test a missing file yields an empty registry."""
        registry = store.load()
        assert registry.records == {}
        assert not store.exists()

    def test_save_and_load(self, store):
        """Test records survive a save/load cycle."""
        registry = PrivateRegistry.empty()
        record = make_record()
        registry.records[record.license_key] = record
        store.save(registry)

        loaded = store.load()
        assert loaded.records[record.license_key].tier == LicenseTier.PRO
        assert loaded.records[record.license_key].email == "buyer@example.com"
        assert loaded.metadata["totalLicenses"] == 1
        assert loaded.metadata["sha256"] == loaded.content_hash()

    def test_out_of_band_edit_detected(self, store):
        """Test editing the file outside the store fails integrity."""
        registry = PrivateRegistry.empty()
        record = make_record()
        registry.records[record.license_key] = record
        store.save(registry)

        document = json.loads(store.path.read_text())
        document[record.license_key]["tier"] = "ENTERPRISE"
        store.path.write_text(json.dumps(document))

        assert not store.verify_integrity()
        with pytest.raises(RegistryIntegrityError):
            store.load()

    def test_edit_with_hash_removed_detected(self, store):
        """Test stripping the stored hash does not make an edited file trusted."""
        registry = PrivateRegistry.empty()
        record = make_record()
        registry.records[record.license_key] = record
        store.save(registry)

        document = json.loads(store.path.read_text())
        document[record.license_key]["tier"] = "ENTERPRISE"
        del document["_metadata"]["sha256"]
        store.path.write_text(json.dumps(document))

        with pytest.raises(RegistryIntegrityError):
            store.load()

        del document["_metadata"]
        store.path.write_text(json.dumps(document))
        with pytest.raises(RegistryIntegrityError):
            store.load()

    def test_empty_file_without_hash_loads(self, store):
        store.path.write_text(json.dumps({"_metadata": {"version": "1.0"}}))
        assert store.load().records == {}

    def test_invalid_json_raises(self, store):
        """Test an unparseable file is an integrity error, not an empty registry."""
        store.path.write_text("{not json")
        with pytest.raises(RegistryIntegrityError):
            store.load()


class TestPublicProjection:
    """Test cases for build_public_registry."""

    @pytest.fixture
    def key_pair(self):
        return TestDataFactory.create_key_pair()

    @pytest.fixture
    def registry(self):
        registry = PrivateRegistry.empty()
        for record in (
            make_record("QAA-AAAA-AAAA-AAAA-AAAA"),
            make_record("QAA-BBBB-BBBB-BBBB-BBBB", tier=LicenseTier.TEAM, subscription="sub_2"),
            make_record("QAA-CCCC-CCCC-CCCC-CCCC", subscription="sub_3", status=LicenseStatus.CANCELED),
        ):
            registry.records[record.license_key] = record
        return registry

    def test_redacts_private_fields(self, registry, key_pair):
        """Test the public entry never carries customer data."""
        document = build_public_registry(registry, key_pair.signing_key())
        entry = document["QAA-AAAA-AAAA-AAAA-AAAA"]
        assert set(entry) == {"tier", "isFounder", "issued", "emailHash", "signature", "keyId"}
        assert "buyer@example.com" not in json.dumps(document)
        assert "cus_1" not in json.dumps(document)

    def test_excludes_canceled(self, registry, key_pair):
        """Test canceled records are not published."""
        document = build_public_registry(registry, key_pair.signing_key())
        assert "QAA-CCCC-CCCC-CCCC-CCCC" not in document
        assert "QAA-BBBB-BBBB-BBBB-BBBB" in document

    def test_registry_signature_and_hash(self, registry, key_pair):
        """Test the document verifies and its hash covers the entries."""
        document = build_public_registry(registry, key_pair.signing_key())
        entries = verify_registry_document(document, key_pair.public_key())
        assert document["_metadata"]["hash"] == sha256_hex(entries)
        assert document["_metadata"]["algorithm"] == "ed25519"
        assert document["_metadata"]["keyId"] == key_pair.key_id

    def test_entry_signature(self, registry, key_pair):
        """Test each entry signature covers its exact payload."""
        document = build_public_registry(registry, key_pair.signing_key())
        entry = document["QAA-BBBB-BBBB-BBBB-BBBB"]
        payload = build_license_payload(
            "QAA-BBBB-BBBB-BBBB-BBBB", entry["tier"], entry["isFounder"], entry["issued"],
            entry["keyId"], entry["emailHash"],
        )
        assert verify_payload(payload, entry["signature"], key_pair.public_key())

        moved = dict(payload, licenseKey="QAA-AAAA-AAAA-AAAA-AAAA")
        assert not verify_payload(moved, entry["signature"], key_pair.public_key())


class TestLicenseRegistry:
    """Test cases for LicenseRegistry."""

    @pytest.fixture
    def key_pair(self):
        return TestDataFactory.create_key_pair()

    @pytest.fixture
    def license_registry(self, tmp_path, key_pair):
        registry = LicenseRegistry(
            tmp_path / "private.json",
            tmp_path / "public.json",
            key_provider=signing_key_provider(lambda: key_pair.private_pem, key_pair.key_id),
        )
        yield registry
        registry.close()

    @pytest.mark.asyncio
    async def test_mutate_publishes_both_files(self, license_registry, key_pair):
        """Test a mutation writes the private and public registries."""
        record = make_record()
        await license_registry.mutate(lambda registry: registry.records.__setitem__(record.license_key, record))

        private = license_registry.read_private()
        assert record.license_key in private.records
        public = json.loads(license_registry.public_path.read_text())
        verify_registry_document(public, key_pair.public_key())
        assert record.license_key in public

    @pytest.mark.asyncio
    async def test_missing_key_writes_nothing(self, tmp_path):
        """Test a missing signing key fails before any file is written."""
        registry = LicenseRegistry(
            tmp_path / "private.json",
            tmp_path / "public.json",
            key_provider=signing_key_provider(lambda: None, "default"),
        )
        record = make_record()
        try:
            with pytest.raises(ConfigurationError):
                await registry.mutate(lambda r: r.records.__setitem__(record.license_key, record))
        finally:
            registry.close()
        assert not (tmp_path / "private.json").exists()
        assert not (tmp_path / "public.json").exists()

    @pytest.mark.asyncio
    async def test_mutation_error_propagates(self, license_registry):
        """Test an exception inside the mutation reaches the caller."""
        def failing(registry):
            raise RegistryIntegrityError("boom")

        with pytest.raises(RegistryIntegrityError):
            await license_registry.mutate(failing)
        assert not license_registry.database_exists()

    @pytest.mark.asyncio
    async def test_load_public_rebuilds_missing_file(self, license_registry, key_pair):
        """Test a missing public file is regenerated."""
        record = make_record()
        await license_registry.mutate(lambda registry: registry.records.__setitem__(record.license_key, record))
        license_registry.public_path.unlink()

        document = await license_registry.load_public_registry()
        assert record.license_key in document
        assert license_registry.public_path.exists()

    @pytest.mark.asyncio
    async def test_load_public_rebuilds_tampered_file(self, license_registry, key_pair):
        """Test a public file that fails verification is regenerated."""
        record = make_record()
        await license_registry.mutate(lambda registry: registry.records.__setitem__(record.license_key, record))

        tampered = json.loads(license_registry.public_path.read_text())
        tampered[record.license_key]["tier"] = "ENTERPRISE"
        license_registry.public_path.write_text(json.dumps(tampered))

        document = await license_registry.load_public_registry()
        assert document[record.license_key]["tier"] == "PRO"
        verify_registry_document(document, key_pair.public_key())

    @pytest.mark.asyncio
    async def test_load_public_without_key(self, tmp_path):
        """Test serving without key material is refused."""
        registry = LicenseRegistry(
            tmp_path / "private.json",
            tmp_path / "public.json",
            key_provider=signing_key_provider(lambda: None, "default"),
        )
        try:
            with pytest.raises(ConfigurationError):
                await registry.load_public_registry()
        finally:
            registry.close()

    @pytest.mark.asyncio
    async def test_write_failure_propagates(self, license_registry, monkeypatch):
        """Test a failed rename surfaces as PersistenceError and commits nothing."""
        def failing_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr(atomic_io.os, "replace", failing_replace)
        record = make_record()
        with pytest.raises(PersistenceError):
            await license_registry.mutate(lambda registry: registry.records.__setitem__(record.license_key, record))

        monkeypatch.undo()
        assert not license_registry.database_exists()
        assert not license_registry.public_path.exists()
        assert list(license_registry.public_path.parent.glob("*.tmp")) == []

    @pytest.mark.asyncio
    async def test_retry_after_failed_public_write_republishes(self, license_registry, key_pair, monkeypatch):
        """Test a retried mutation publishes when only the private file was saved."""
        real_replace = atomic_io.os.replace

        def replace_private_only(src, dst):
            if str(dst) == str(license_registry.public_path):
                raise OSError("read-only")
            real_replace(src, dst)

        record = make_record()

        def insert(registry):
            registry.records[record.license_key] = record

        monkeypatch.setattr(atomic_io.os, "replace", replace_private_only)
        with pytest.raises(PersistenceError):
            await license_registry.mutate(insert)
        monkeypatch.undo()

        assert record.license_key in license_registry.read_private().records
        assert not license_registry.public_path.exists()

        await license_registry.mutate(insert)
        public = json.loads(license_registry.public_path.read_text())
        verify_registry_document(public, key_pair.public_key())
        assert record.license_key in public
