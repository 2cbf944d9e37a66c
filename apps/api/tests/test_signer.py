"""Tests for HMAC manifest signing and the key ring."""

import base64

import pytest

from inspectseal_api.sealing.errors import SigningKeyError
from inspectseal_api.sealing.signer import KeyRing, SigningKey, hmac_sign, hmac_verify
from inspectseal_api.settings import Settings

KEY = bytes.fromhex("5e" * 32)
DATA = b'{"bundle_id":"b1","files":[]}'


def test_sign_verify_round_trip():
    signature = hmac_sign(DATA, KEY)
    assert hmac_verify(DATA, signature, KEY)


def test_signature_is_base64_of_32_bytes():
    assert len(base64.b64decode(hmac_sign(DATA, KEY))) == 32


def test_any_data_byte_flip_fails():
    signature = hmac_sign(DATA, KEY)
    for i in range(len(DATA)):
        tampered = bytearray(DATA)
        tampered[i] ^= 0x01
        assert not hmac_verify(bytes(tampered), signature, KEY)


def test_any_signature_byte_flip_fails():
    raw = base64.b64decode(hmac_sign(DATA, KEY))
    for i in range(len(raw)):
        tampered = bytearray(raw)
        tampered[i] ^= 0x80
        assert not hmac_verify(DATA, base64.b64encode(bytes(tampered)).decode(), KEY)


def test_wrong_key_fails():
    signature = hmac_sign(DATA, KEY)
    assert not hmac_verify(DATA, signature, bytes.fromhex("11" * 32))


def test_malformed_signature_fails():
    assert not hmac_verify(DATA, "not base64!!", KEY)
    assert not hmac_verify(DATA, None, KEY)


def test_signing_key_rejects_empty_material():
    with pytest.raises(SigningKeyError):
        SigningKey("k1", b"")
    with pytest.raises(SigningKeyError):
        SigningKey("", KEY)
    with pytest.raises(SigningKeyError):
        SigningKey.from_hex("k1", "zz")


def test_signing_key_repr_hides_secret():
    assert "5e5e" not in repr(SigningKey("k1", KEY))


def test_key_ring_resolves_active_and_legacy():
    active = SigningKey("k2", KEY)
    retired = SigningKey("k1", bytes.fromhex("11" * 32))
    ring = KeyRing(active, [retired])

    assert ring.active is active
    assert ring.resolve("k2") is active
    assert ring.resolve("k1") is retired
    assert ring.resolve("k0") is None
    assert ring.legacy_key_ids == ["k1"]


def test_key_ring_from_settings():
    settings = Settings(
        manifest_signing_key_id="k2",
        manifest_signing_key="22" * 32,
        manifest_signing_keys_legacy='{"k1": "' + "11" * 32 + '"}',
    )
    ring = KeyRing.from_settings(settings)
    assert ring.active.key_id == "k2"
    assert ring.resolve("k1").secret == bytes.fromhex("11" * 32)


def test_key_ring_requires_active_key():
    settings = Settings(manifest_signing_key_id=None, manifest_signing_key=None)
    with pytest.raises(SigningKeyError):
        KeyRing.from_settings(settings)


@pytest.mark.parametrize("legacy", ["not json", "[1, 2]"])
def test_key_ring_rejects_bad_legacy_table(legacy):
    settings = Settings(
        manifest_signing_key_id="k2",
        manifest_signing_key="22" * 32,
        manifest_signing_keys_legacy=legacy,
    )
    with pytest.raises(SigningKeyError):
        KeyRing.from_settings(settings)
