"""
Tests for the sealing engine.

Tests cover:
- Round-trip seal/unseal and semantic security
- Scope label binding (AAD)
- Distinguishing unknown keys from tampered data
- Legacy (fingerprint-less) envelopes
- Wire format parsing
"""
import dataclasses
import re

import pytest

from navigator_sealed.crypto import (
    Envelope,
    FORMAT_CURRENT,
    FORMAT_LEGACY,
    KeyRegistry,
    MemoryKeyStore,
    fingerprint,
    load_public_key_pem,
    reencrypt,
    seal,
    seal_legacy,
    unseal,
)
from navigator_sealed.exceptions import (
    NoMatchingKeyError,
    TamperedError,
    UnknownKeyError,
)

from .conftest import TEST_KEY_BITS


def _flip(data: bytes, index: int = 0) -> bytes:
    return data[:index] + bytes([data[index] ^ 0x01]) + data[index + 1:]


@pytest.fixture
def other_registry():
    return KeyRegistry(MemoryKeyStore(), key_bits=TEST_KEY_BITS).initialize()


class TestRoundTrip:
    """Seal then unseal returns the original plaintext."""

    @pytest.mark.parametrize("plaintext", [b"", b"s3cr3t", bytes(range(256)) * 40])
    def test_roundtrip(self, registry, plaintext):
        env = seal(plaintext, "ns1/secret1", registry.active().public_key)
        assert unseal(env, registry) == plaintext

    def test_roundtrip_with_keypair_sequence(self, registry):
        env = seal(b"value", "ns1", registry.active().public_key)
        assert unseal(env, [registry.active()]) == b"value"

    def test_envelope_metadata(self, registry):
        active = registry.active()
        env = seal(b"value", "ns1/secret1", active.public_key)
        assert env.format_version == FORMAT_CURRENT
        assert env.key_fingerprint == active.id
        assert env.scope_label == "ns1/secret1"
        assert len(env.nonce) == 12
        assert len(env.auth_tag) == 16

    def test_same_plaintext_seals_differently(self, registry):
        pub = registry.active().public_key
        first = seal(b"same", "ns/a", pub)
        second = seal(b"same", "ns/a", pub)
        assert first.ciphertext != second.ciphertext or first.nonce != second.nonce
        assert first.wrapped_session_key != second.wrapped_session_key
        assert first.to_bytes() != second.to_bytes()

    def test_repr_hides_ciphertext(self, registry):
        env = seal(b"top-secret", "ns/a", registry.active().public_key)
        assert "top-secret" not in repr(env)
        assert env.key_fingerprint in repr(env)


class TestScopeBinding:
    """The scope label is authenticated data."""

    def test_asserted_scope_mismatch_is_tampered(self, registry):
        env = seal(b"value", "ns1/secret1", registry.active().public_key)
        with pytest.raises(TamperedError):
            unseal(env, registry, scope_label="ns2/secret1")

    def test_asserted_scope_match(self, registry):
        env = seal(b"value", "ns1/secret1", registry.active().public_key)
        assert unseal(env, registry, scope_label="ns1/secret1") == b"value"

    def test_relabelled_envelope_is_tampered(self, registry):
        env = seal(b"value", "ns1/secret1", registry.active().public_key)
        moved = dataclasses.replace(env, scope_label="ns2/secret1")
        with pytest.raises(TamperedError):
            unseal(moved, registry)


class TestKeySelection:
    """Wrong keys and corrupted data fail with distinct errors."""

    def test_unknown_fingerprint(self, registry, other_registry):
        env = seal(b"value", "ns/a", registry.active().public_key)
        with pytest.raises(UnknownKeyError):
            unseal(env, other_registry)

    def test_legacy_with_no_matching_key(self, registry, other_registry):
        env = seal_legacy(b"value", "ns/a", registry.active().public_key)
        with pytest.raises(NoMatchingKeyError):
            unseal(env, other_registry)

    def test_legacy_scans_all_keys(self, registry):
        old_pub = registry.active().public_key
        env = seal_legacy(b"legacy", "ns/a", old_pub)
        registry.generate()
        registry.generate()
        assert env.format_version == FORMAT_LEGACY
        assert env.key_fingerprint is None
        assert unseal(env, registry) == b"legacy"

    def test_corrupted_ciphertext_is_tampered(self, registry):
        env = seal(b"value-value", "ns/a", registry.active().public_key)
        bad = dataclasses.replace(env, ciphertext=_flip(env.ciphertext))
        with pytest.raises(TamperedError):
            unseal(bad, registry)

    def test_corrupted_tag_is_tampered(self, registry):
        env = seal(b"value", "ns/a", registry.active().public_key)
        bad = dataclasses.replace(env, auth_tag=_flip(env.auth_tag, 5))
        with pytest.raises(TamperedError):
            unseal(bad, registry)

    def test_corrupted_wrapped_key_is_tampered(self, registry):
        env = seal(b"value", "ns/a", registry.active().public_key)
        bad = dataclasses.replace(
            env, wrapped_session_key=_flip(env.wrapped_session_key, 10),
        )
        with pytest.raises(TamperedError):
            unseal(bad, registry)

    def test_tampered_is_not_unknown_key(self, registry):
        env = seal(b"value", "ns/a", registry.active().public_key)
        bad = dataclasses.replace(env, ciphertext=_flip(env.ciphertext))
        with pytest.raises(TamperedError) as info:
            unseal(bad, registry)
        assert not isinstance(info.value, UnknownKeyError)
        assert info.value.category == "Tampered"


class TestReencrypt:

    def test_reencrypt_moves_to_new_key(self, registry):
        env = seal(b"rotate-me", "ns/a", registry.active().public_key)
        new = registry.generate()
        moved = reencrypt(env, registry, new.public_key)
        assert moved.key_fingerprint == new.id
        assert moved.scope_label == env.scope_label
        assert unseal(moved, registry) == b"rotate-me"

    def test_sealed_before_rotation_still_unseals(self, registry):
        env = seal(b"before", "ns/a", registry.active().public_key)
        registry.generate()
        assert unseal(env, registry) == b"before"


class TestWireFormat:

    def test_text_roundtrip(self, registry):
        env = seal(b"value", "ns/a", registry.active().public_key)
        assert Envelope.from_text(env.to_text()) == env

    def test_legacy_bytes_roundtrip(self, registry):
        env = seal_legacy(b"value", "", registry.active().public_key)
        parsed = Envelope.from_bytes(env.to_bytes())
        assert parsed.is_legacy
        assert parsed == env

    def test_truncated_envelope(self, registry):
        raw = seal(b"value", "ns/a", registry.active().public_key).to_bytes()
        with pytest.raises(TamperedError):
            Envelope.from_bytes(raw[:40])

    def test_unknown_format_version(self, registry):
        raw = seal(b"value", "ns/a", registry.active().public_key).to_bytes()
        with pytest.raises(TamperedError):
            Envelope.from_bytes(bytes([9]) + raw[1:])

    def test_invalid_base64(self):
        with pytest.raises(TamperedError):
            Envelope.from_text("not base64!!")


class TestFingerprint:

    def test_fingerprint_is_short_hex(self, registry):
        fp = fingerprint(registry.active().public_key)
        assert re.fullmatch(r"[0-9a-f]{32}", fp)
        assert fp == registry.active().id

    def test_load_public_key_pem(self, registry):
        pem = registry.public_key_pem()
        key = load_public_key_pem(pem.decode("ascii"))
        assert fingerprint(key) == registry.active().id

    def test_load_public_key_pem_rejects_garbage(self):
        with pytest.raises(ValueError):
            load_public_key_pem(b"-----BEGIN PUBLIC KEY-----\nAAAA\n-----END PUBLIC KEY-----\n")
