from __future__ import annotations

import base64
from datetime import datetime, timezone

import pytest
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from phi_envelope import crypto
from phi_envelope.blind_index import BlindIndex
from phi_envelope.crypto import ALGORITHM, AesGcmCipher
from phi_envelope.envelope import EncryptedField, EnvelopeService
from phi_envelope.errors import (
    ConfigurationError,
    DecryptionError,
    IntegrityError,
    KeyServiceError,
)
from phi_envelope.kms import InMemoryKeyGateway
from phi_envelope.settings import Settings

from .conftest import MASTER_KEY_ID


@pytest.mark.parametrize("plaintext", ["", "Finding-1", "Ærøskøbing – 肺炎 🫁"])
async def test_round_trip(envelope: EnvelopeService, plaintext: str) -> None:
    sealed = await envelope.seal(plaintext)
    assert await envelope.open(sealed) == plaintext
    assert await envelope.open(sealed.ciphertext, sealed.wrapped_data_key) == plaintext


async def test_sealed_metadata(envelope: EnvelopeService) -> None:
    before = datetime.now(timezone.utc)
    sealed = await envelope.seal("Finding-1")

    assert sealed.master_key_id == MASTER_KEY_ID
    assert sealed.algorithm == ALGORITHM == "AES-256-GCM"
    assert sealed.created_at >= before
    assert "Finding-1" not in repr(sealed)


async def test_no_determinism_in_envelope(envelope: EnvelopeService) -> None:
    first = await envelope.seal("Finding-1")
    second = await envelope.seal("Finding-1")
    assert first.ciphertext != second.ciphertext
    assert first.wrapped_data_key != second.wrapped_data_key


async def test_one_data_key_per_seal(envelope: EnvelopeService, gateway: InMemoryKeyGateway) -> None:
    for _ in range(3):
        await envelope.seal("x")
    assert gateway.generate_calls == 3


async def test_index_stable_across_seals(envelope: EnvelopeService, blind_index: BlindIndex) -> None:
    first = await envelope.seal("Finding-1")
    second = await envelope.seal("Finding-1")
    assert first.ciphertext != second.ciphertext
    assert blind_index.compute("Finding-1") == blind_index.compute("Finding-1")


async def test_tampered_ciphertext(envelope: EnvelopeService) -> None:
    sealed = await envelope.seal("Finding-1")
    blob = bytearray(base64.b64decode(sealed.ciphertext))
    for i in range(len(blob)):
        tampered = bytearray(blob)
        tampered[i] ^= 0x80
        with pytest.raises(DecryptionError):
            await envelope.open(base64.b64encode(bytes(tampered)).decode(), sealed.wrapped_data_key)


# =============================================================================
# Key wipe
# =============================================================================


async def test_keys_wiped_after_seal_and_open(
    envelope: EnvelopeService, gateway: InMemoryKeyGateway
) -> None:
    sealed = await envelope.seal("Finding-1")
    await envelope.open(sealed)

    assert len(gateway.issued_keys) == 2
    assert all(key.is_wiped() for key in gateway.issued_keys)


async def test_key_wiped_when_seal_fails(
    envelope: EnvelopeService, gateway: InMemoryKeyGateway, monkeypatch: pytest.MonkeyPatch
) -> None:
    def explode(plaintext, key):
        raise RuntimeError("cipher failure")

    monkeypatch.setattr(AesGcmCipher, "seal", staticmethod(explode))
    with pytest.raises(RuntimeError):
        await envelope.seal("Finding-1")
    assert gateway.issued_keys and gateway.issued_keys[0].is_wiped()


async def test_key_wiped_when_open_fails(
    envelope: EnvelopeService, gateway: InMemoryKeyGateway
) -> None:
    sealed = await envelope.seal("Finding-1")
    other = await envelope.seal("Finding-2")

    with pytest.raises(DecryptionError):
        await envelope.open(sealed.ciphertext, other.wrapped_data_key)
    assert all(key.is_wiped() for key in gateway.issued_keys)


# =============================================================================
# Configuration and error propagation
# =============================================================================


@pytest.mark.parametrize("master_key_id", [None, ""])
async def test_missing_master_key_fails_before_kms(master_key_id) -> None:
    gateway = InMemoryKeyGateway([MASTER_KEY_ID])
    service = EnvelopeService(gateway, master_key_id)

    with pytest.raises(ConfigurationError):
        await service.seal("Finding-1")
    with pytest.raises(ConfigurationError):
        await service.open("ciphertext", "wrapped")

    assert gateway.generate_calls == 0
    assert gateway.unwrap_calls == 0


async def test_key_service_error_propagates(envelope: EnvelopeService, gateway: InMemoryKeyGateway) -> None:
    sealed = await envelope.seal("Finding-1")
    gateway.set_unavailable()
    with pytest.raises(KeyServiceError):
        await envelope.seal("Finding-2")
    with pytest.raises(KeyServiceError):
        await envelope.open(sealed)


async def test_revoked_master_key_is_integrity_error(
    envelope: EnvelopeService, gateway: InMemoryKeyGateway
) -> None:
    sealed = await envelope.seal("Finding-1")
    gateway.revoke(MASTER_KEY_ID)
    with pytest.raises(IntegrityError):
        await envelope.open(sealed)


async def test_open_needs_both_halves(envelope: EnvelopeService) -> None:
    sealed = await envelope.seal("Finding-1")
    with pytest.raises(IntegrityError):
        await envelope.open(sealed.ciphertext)
    with pytest.raises(IntegrityError):
        await envelope.open("", sealed.wrapped_data_key)


def test_from_settings_uses_given_gateway() -> None:
    gateway = InMemoryKeyGateway(["alias/phi"])
    service = EnvelopeService.from_settings(Settings(master_key_id="alias/phi"), gateway=gateway)
    assert service.gateway is gateway
    assert service.master_key_id == "alias/phi"


def test_encrypted_field_dict_round_trip() -> None:
    field = EncryptedField(ciphertext="Y3Q=", wrapped_data_key="ZGVr", master_key_id="k")
    assert EncryptedField.from_dict(field.to_dict()) == field


# =============================================================================
# Scenario: fixed key and nonce
# =============================================================================


async def test_fixed_key_and_nonce_scenario(monkeypatch: pytest.MonkeyPatch) -> None:
    gateway = InMemoryKeyGateway([MASTER_KEY_ID], data_key_factory=lambda: b"\x01" * 32)
    service = EnvelopeService(gateway, MASTER_KEY_ID)
    monkeypatch.setattr(crypto, "generate_random_bytes", lambda n: b"\x02" * n)

    nonce = b"\x02" * 12
    sealed_by_aesgcm = AESGCM(b"\x01" * 32).encrypt(nonce, b"Finding-1", None)
    expected = base64.b64encode(nonce + sealed_by_aesgcm[-16:] + sealed_by_aesgcm[:-16]).decode()

    first = await service.seal("Finding-1")
    second = await service.seal("Finding-1")

    assert first.ciphertext == expected
    assert second.ciphertext == expected
    assert await service.open(first) == "Finding-1"
