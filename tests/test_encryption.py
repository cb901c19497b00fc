"""Tests for tenant envelope encryption and the local key provider."""

import base64
import os
import uuid
from datetime import timedelta
from typing import Any
from unittest.mock import AsyncMock

import pytest

from complianceos.adapters.kms import LocalMasterKeyProvider
from complianceos.common.auth import TenantContext
from complianceos.common.errors import ConflictError, NotFoundError, ValidationError
from complianceos.core.models import EncryptionKey, KeyStatus
from complianceos.core.services import ActivityService, utcnow
from complianceos.enterprise.encryption import EncryptionService, compliance_score
from tests.conftest import event_types, make_repo, persist


class InMemoryKeyRepo:
    """Just enough of EncryptionKeyRepository to drive key lifecycles."""

    def __init__(self) -> None:
        self.keys: list[EncryptionKey] = []

    async def add(self, key: EncryptionKey) -> EncryptionKey:
        persist(key)
        self.keys.append(key)
        return key

    async def save(self, key: EncryptionKey) -> EncryptionKey:
        return key

    async def get_active(self, tenant_id: uuid.UUID) -> EncryptionKey | None:
        return next((k for k in self.keys if k.tenant_id == tenant_id and k.status == KeyStatus.ACTIVE), None)

    async def get_version(self, tenant_id: uuid.UUID, version: int) -> EncryptionKey | None:
        return next((k for k in self.keys if k.tenant_id == tenant_id and k.version == version), None)

    async def max_version(self, tenant_id: uuid.UUID) -> int:
        return max((k.version for k in self.keys if k.tenant_id == tenant_id), default=0)

    async def count(self, tenant_id: uuid.UUID) -> int:
        return sum(1 for k in self.keys if k.tenant_id == tenant_id)

    async def list_where(self, tenant_id: uuid.UUID, **kwargs: Any) -> list[EncryptionKey]:
        return sorted((k for k in self.keys if k.tenant_id == tenant_id), key=lambda k: k.version, reverse=True)


def _master_key() -> str:
    return base64.b64encode(os.urandom(32)).decode("ascii")


@pytest.fixture()
def provider() -> LocalMasterKeyProvider:
    return LocalMasterKeyProvider(_master_key(), key_id="test-master")


class EncryptionHarness:
    def __init__(
        self,
        provider: LocalMasterKeyProvider,
        activity: ActivityService,
        publisher: AsyncMock,
    ) -> None:
        self.config_repo = make_repo()
        self.key_repo = InMemoryKeyRepo()
        self.publisher = publisher
        self.service = EncryptionService(self.config_repo, self.key_repo, provider, activity, publisher)

    async def initialize(self, tenant: TenantContext, **settings: Any) -> Any:
        settings.setdefault("rotation_interval_days", 90)
        config = await self.service.initialize(tenant, settings)
        self.config_repo.list_where.return_value = [config]
        return config


@pytest.fixture()
def harness(
    provider: LocalMasterKeyProvider, activity_service: ActivityService, mock_event_publisher: AsyncMock
) -> EncryptionHarness:
    return EncryptionHarness(provider, activity_service, mock_event_publisher)


class TestLocalMasterKeyProvider:
    def test_wrap_and_unwrap(self, provider: LocalMasterKeyProvider) -> None:
        plaintext, wrapped = provider.generate_data_key()
        assert len(plaintext) == 32
        assert wrapped != plaintext
        assert provider.unwrap(wrapped) == plaintext

    def test_other_master_key_cannot_unwrap(self, provider: LocalMasterKeyProvider) -> None:
        _, wrapped = provider.generate_data_key()
        other = LocalMasterKeyProvider(_master_key(), key_id="test-master")
        with pytest.raises(ValidationError):
            other.unwrap(wrapped)

    def test_key_id_is_bound(self) -> None:
        master = _master_key()
        _, wrapped = LocalMasterKeyProvider(master, key_id="a").generate_data_key()
        with pytest.raises(ValidationError):
            LocalMasterKeyProvider(master, key_id="b").unwrap(wrapped)

    @pytest.mark.parametrize("master", ["not base64!!", base64.b64encode(b"short").decode()])
    def test_rejects_bad_master_key(self, master: str) -> None:
        with pytest.raises(ValueError):
            LocalMasterKeyProvider(master)


class TestInitialize:
    @pytest.mark.asyncio()
    async def test_creates_config_and_first_key(
        self, harness: EncryptionHarness, mock_tenant: TenantContext
    ) -> None:
        config = await harness.initialize(mock_tenant, key_management_type="HSM", auto_rotation=True)

        assert config.key_management_type == "HSM"
        assert config.algorithm == "AES_256_GCM"
        assert config.created_by == mock_tenant.user_id
        [key] = harness.key_repo.keys
        assert key.version == 1
        assert key.status == KeyStatus.ACTIVE
        assert key.provider_key_id == "test-master"
        assert event_types(harness.publisher) == ["compliance.encryption.initialized"]

    @pytest.mark.asyncio()
    async def test_second_initialize_conflicts(self, harness: EncryptionHarness, mock_tenant: TenantContext) -> None:
        await harness.initialize(mock_tenant)
        with pytest.raises(ConflictError):
            await harness.initialize(mock_tenant)

    @pytest.mark.asyncio()
    @pytest.mark.parametrize(
        ("settings", "field"),
        [
            ({"key_management_type": "PAPER"}, "key_management_type"),
            ({"compliance_requirements": ["GDPR", "COPPA"]}, "compliance_requirements"),
            ({"rotation_interval_days": 0}, "rotation_interval_days"),
        ],
    )
    async def test_rejects_invalid_settings(
        self, harness: EncryptionHarness, mock_tenant: TenantContext, settings: dict[str, Any], field: str
    ) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await harness.service.initialize(mock_tenant, settings)
        assert exc_info.value.field == field

    @pytest.mark.asyncio()
    async def test_config_lookup_without_initialize(
        self, harness: EncryptionHarness, mock_tenant: TenantContext
    ) -> None:
        with pytest.raises(NotFoundError):
            await harness.service.get_config(mock_tenant)

    @pytest.mark.asyncio()
    async def test_update_config(self, harness: EncryptionHarness, mock_tenant: TenantContext) -> None:
        await harness.initialize(mock_tenant)
        config = await harness.service.update_config(
            mock_tenant, {"client_side_encryption": True, "notification_days": None, "algorithm": "ROT13"}
        )
        assert config.client_side_encryption is True
        assert config.algorithm == "AES_256_GCM"
        assert harness.publisher.publish_event.call_args.kwargs["payload"]["fields"] == ["client_side_encryption"]


class TestSealing:
    @pytest.mark.asyncio()
    async def test_round_trip(self, harness: EncryptionHarness, mock_tenant: TenantContext) -> None:
        await harness.initialize(mock_tenant)
        token = await harness.service.encrypt(mock_tenant, "card 4111-1111")

        assert token.startswith("v1:")
        assert await harness.service.decrypt(mock_tenant, token) == "card 4111-1111"

    @pytest.mark.asyncio()
    async def test_nonce_is_random(self, harness: EncryptionHarness, mock_tenant: TenantContext) -> None:
        await harness.initialize(mock_tenant)
        first = await harness.service.encrypt(mock_tenant, "same")
        second = await harness.service.encrypt(mock_tenant, "same")
        assert first != second

    @pytest.mark.asyncio()
    async def test_associated_data_must_match(self, harness: EncryptionHarness, mock_tenant: TenantContext) -> None:
        await harness.initialize(mock_tenant)
        token = await harness.service.encrypt(mock_tenant, "secret", associated_data=b"evidence:1")
        assert await harness.service.decrypt(mock_tenant, token, associated_data=b"evidence:1") == "secret"
        with pytest.raises(ValidationError):
            await harness.service.decrypt(mock_tenant, token, associated_data=b"evidence:2")

    @pytest.mark.asyncio()
    async def test_token_bound_to_tenant(self, harness: EncryptionHarness, mock_tenant: TenantContext) -> None:
        await harness.initialize(mock_tenant)
        token = await harness.service.encrypt(mock_tenant, "secret")

        # Same key material registered under a different tenant id.
        intruder = TenantContext(tenant_id=uuid.uuid4(), user_id=mock_tenant.user_id)
        for key in list(harness.key_repo.keys):
            clone = EncryptionKey(
                tenant_id=intruder.tenant_id,
                config_id=key.config_id,
                version=key.version,
                status=key.status,
                wrapped_key=key.wrapped_key,
                provider_key_id=key.provider_key_id,
                activated_at=key.activated_at,
            )
            await harness.key_repo.add(clone)

        with pytest.raises(ValidationError):
            await harness.service.decrypt(intruder, token)

    @pytest.mark.asyncio()
    async def test_tampered_ciphertext(self, harness: EncryptionHarness, mock_tenant: TenantContext) -> None:
        await harness.initialize(mock_tenant)
        version, nonce, ciphertext = (await harness.service.encrypt(mock_tenant, "secret")).split(":")
        raw = bytearray(base64.b64decode(ciphertext))
        raw[0] ^= 0x01
        tampered = f"{version}:{nonce}:{base64.b64encode(bytes(raw)).decode()}"

        with pytest.raises(ValidationError, match="authentication"):
            await harness.service.decrypt(mock_tenant, tampered)

    @pytest.mark.asyncio()
    @pytest.mark.parametrize("token", ["garbage", "1:abc:def", "v1:abc", "v1:a:b:c"])
    async def test_malformed_token(self, harness: EncryptionHarness, mock_tenant: TenantContext, token: str) -> None:
        await harness.initialize(mock_tenant)
        with pytest.raises(ValidationError) as exc_info:
            await harness.service.decrypt(mock_tenant, token)
        assert exc_info.value.field == "token"

    @pytest.mark.asyncio()
    async def test_unknown_version(self, harness: EncryptionHarness, mock_tenant: TenantContext) -> None:
        await harness.initialize(mock_tenant)
        token = await harness.service.encrypt(mock_tenant, "secret")
        with pytest.raises(ValidationError, match="Unknown key version 7"):
            await harness.service.decrypt(mock_tenant, "v7" + token[2:])

    @pytest.mark.asyncio()
    async def test_encrypt_without_key(self, harness: EncryptionHarness, mock_tenant: TenantContext) -> None:
        with pytest.raises(ValidationError):
            await harness.service.encrypt(mock_tenant, "secret")


class TestRotation:
    @pytest.mark.asyncio()
    async def test_rotate_retires_previous_key(self, harness: EncryptionHarness, mock_tenant: TenantContext) -> None:
        await harness.initialize(mock_tenant)
        old_token = await harness.service.encrypt(mock_tenant, "before")

        key = await harness.service.rotate(mock_tenant)

        assert key.version == 2
        first = await harness.key_repo.get_version(mock_tenant.tenant_id, 1)
        assert first.status == KeyStatus.DECRYPT_ONLY
        assert first.retired_at is not None
        new_token = await harness.service.encrypt(mock_tenant, "after")
        assert new_token.startswith("v2:")
        assert await harness.service.decrypt(mock_tenant, old_token) == "before"
        assert event_types(harness.publisher)[-1] == "compliance.security.key_rotated"

    @pytest.mark.asyncio()
    async def test_revoke_blocks_decryption(self, harness: EncryptionHarness, mock_tenant: TenantContext) -> None:
        await harness.initialize(mock_tenant)
        token = await harness.service.encrypt(mock_tenant, "before")
        await harness.service.rotate(mock_tenant)

        revoked = await harness.service.revoke(mock_tenant, 1)

        assert revoked.status == KeyStatus.REVOKED
        with pytest.raises(ValidationError, match="revoked"):
            await harness.service.decrypt(mock_tenant, token)

    @pytest.mark.asyncio()
    async def test_active_key_cannot_be_revoked(self, harness: EncryptionHarness, mock_tenant: TenantContext) -> None:
        await harness.initialize(mock_tenant)
        with pytest.raises(ValidationError):
            await harness.service.revoke(mock_tenant, 1)

    @pytest.mark.asyncio()
    async def test_revoke_unknown_version(self, harness: EncryptionHarness, mock_tenant: TenantContext) -> None:
        await harness.initialize(mock_tenant)
        with pytest.raises(NotFoundError):
            await harness.service.revoke(mock_tenant, 9)

    @pytest.mark.asyncio()
    async def test_list_keys_newest_first(self, harness: EncryptionHarness, mock_tenant: TenantContext) -> None:
        await harness.initialize(mock_tenant)
        await harness.service.rotate(mock_tenant)
        await harness.service.rotate(mock_tenant)
        assert [k.version for k in await harness.service.list_keys(mock_tenant)] == [3, 2, 1]


class TestStatusAndCompliance:
    @pytest.mark.asyncio()
    async def test_status_unconfigured(self, harness: EncryptionHarness, mock_tenant: TenantContext) -> None:
        status = await harness.service.status(mock_tenant)
        assert status["encryption_enabled"] is False
        assert status["next_rotation"] is None

    @pytest.mark.asyncio()
    async def test_status_next_rotation(self, harness: EncryptionHarness, mock_tenant: TenantContext) -> None:
        await harness.initialize(mock_tenant, rotation_interval_days=30)
        status = await harness.service.status(mock_tenant)
        [key] = harness.key_repo.keys

        assert status["has_active_key"] is True
        assert status["active_version"] == 1
        assert status["key_count"] == 1
        assert status["next_rotation"] == key.activated_at + timedelta(days=30)
        assert status["rotation_needed"] is False

    @pytest.mark.asyncio()
    async def test_rotation_needed_when_key_is_old(
        self, harness: EncryptionHarness, mock_tenant: TenantContext
    ) -> None:
        await harness.initialize(mock_tenant, rotation_interval_days=30)
        harness.key_repo.keys[0].activated_at = utcnow() - timedelta(days=31)
        assert await harness.service.rotation_needed(mock_tenant) is True

    @pytest.mark.asyncio()
    async def test_compliance_unconfigured(self, harness: EncryptionHarness, mock_tenant: TenantContext) -> None:
        result = await harness.service.validate_compliance(mock_tenant)
        assert result["is_compliant"] is False
        assert result["compliance_score"] == 0

    @pytest.mark.asyncio()
    async def test_compliance_requirements(self, harness: EncryptionHarness, mock_tenant: TenantContext) -> None:
        await harness.initialize(
            mock_tenant,
            key_management_type="SOFTWARE",
            auto_rotation=False,
            client_side_encryption=False,
            compliance_requirements=["FIPS_140_2", "GDPR", "SOX"],
        )
        result = await harness.service.validate_compliance(mock_tenant)

        assert result["is_compliant"] is False
        assert len(result["violations"]) == 3
        assert result["compliance_score"] == 40

    @pytest.mark.asyncio()
    async def test_compliant_hsm_config(self, harness: EncryptionHarness, mock_tenant: TenantContext) -> None:
        await harness.initialize(
            mock_tenant, key_management_type="HSM", auto_rotation=True, compliance_requirements=["FIPS_140_2", "SOX"]
        )
        result = await harness.service.validate_compliance(mock_tenant)
        assert result == {"is_compliant": True, "violations": [], "recommendations": [], "compliance_score": 100}

    def test_score_floor(self) -> None:
        assert compliance_score(0) == 100
        assert compliance_score(2) == 60
        assert compliance_score(9) == 0
