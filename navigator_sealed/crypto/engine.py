"""
Sealing Engine — hybrid RSA-OAEP / AES-GCM envelopes.

Sealing:
    session_key (32B random) → AES-256-GCM(plaintext, aad=scope_label)
    session_key → RSA-OAEP-SHA256(public_key) → wrapped_session_key

Wire format (all lengths big-endian):
    [version 1B][fp_len 1B][fp][label_len 2B][label][wrapped_len 2B][wrapped]
    [nonce 12B][ciphertext][tag 16B]

Format 1 (legacy) envelopes carry no fingerprint; unsealing them scans the
candidate keys most-recent-first.

Security Note:
    Never log plaintext, session keys or private keys. Plaintext only lives in
    local variables of ``unseal``/``reencrypt`` callers.
"""
import os
import struct
import base64
import binascii
import hashlib
import logging
from dataclasses import dataclass
from collections.abc import Iterable
from typing import Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..exceptions import NoMatchingKeyError, TamperedError, UnknownKeyError

logger = logging.getLogger("navigator.sealed")

FORMAT_LEGACY = 1
FORMAT_CURRENT = 2
NONCE_SIZE = 12  # 96-bit nonce
TAG_SIZE = 16  # GCM tag
SESSION_KEY_LENGTH = 32  # AES-256
FINGERPRINT_BYTES = 16

_HEADER = struct.Struct("!BB")
_LEN16 = struct.Struct("!H")


def _oaep() -> padding.OAEP:
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


# ---------------------------------------------------------------------------
# Public key helpers
# ---------------------------------------------------------------------------

def fingerprint(public_key: rsa.RSAPublicKey) -> str:
    """Stable short identifier of a public key.

    SHA-256 over the DER SubjectPublicKeyInfo, truncated to 16 bytes and
    hex-encoded (32 chars).
    """
    der = public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return hashlib.sha256(der).hexdigest()[:FINGERPRINT_BYTES * 2]


def public_key_pem(public_key: rsa.RSAPublicKey) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def load_public_key_pem(data: Union[bytes, str]) -> rsa.RSAPublicKey:
    """Load an RSA public key from PEM (SubjectPublicKeyInfo or certificate).

    Raises:
        ValueError: If data is not a PEM-encoded RSA public key.
    """
    if isinstance(data, str):
        data = data.encode("ascii")
    if b"BEGIN CERTIFICATE" in data:
        from cryptography import x509
        key = x509.load_pem_x509_certificate(data).public_key()
    else:
        key = serialization.load_pem_public_key(data)
    if not isinstance(key, rsa.RSAPublicKey):
        raise ValueError("Sealing requires an RSA public key")
    return key


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Envelope:
    """One sealed value."""
    format_version: int
    key_fingerprint: Optional[str]
    scope_label: str
    nonce: bytes
    wrapped_session_key: bytes
    ciphertext: bytes
    auth_tag: bytes

    def __repr__(self) -> str:
        return (
            f"<Envelope v{self.format_version} fp={self.key_fingerprint} "
            f"scope={self.scope_label!r} size={len(self.ciphertext)}>"
        )

    @property
    def is_legacy(self) -> bool:
        return self.key_fingerprint is None

    def to_bytes(self) -> bytes:
        fp = (self.key_fingerprint or "").encode("ascii")
        label = self.scope_label.encode("utf-8")
        return b"".join((
            _HEADER.pack(self.format_version, len(fp)),
            fp,
            _LEN16.pack(len(label)),
            label,
            _LEN16.pack(len(self.wrapped_session_key)),
            self.wrapped_session_key,
            self.nonce,
            self.ciphertext,
            self.auth_tag,
        ))

    @classmethod
    def from_bytes(cls, data: bytes) -> "Envelope":
        """Parse the binary wire format.

        Raises:
            TamperedError: If the data is truncated or malformed.
        """
        try:
            version, fp_len = _HEADER.unpack_from(data, 0)
            offset = _HEADER.size
            if version not in (FORMAT_LEGACY, FORMAT_CURRENT):
                raise TamperedError(f"Unsupported envelope format {version}")
            if version == FORMAT_LEGACY and fp_len:
                raise TamperedError("Legacy envelope cannot carry a fingerprint")
            if version == FORMAT_CURRENT and not fp_len:
                raise TamperedError("Envelope is missing its key fingerprint")
            fp = data[offset:offset + fp_len].decode("ascii") if fp_len else None
            offset += fp_len
            (label_len,) = _LEN16.unpack_from(data, offset)
            offset += _LEN16.size
            label = data[offset:offset + label_len].decode("utf-8")
            offset += label_len
            (wrapped_len,) = _LEN16.unpack_from(data, offset)
            offset += _LEN16.size
            wrapped = data[offset:offset + wrapped_len]
            offset += wrapped_len
            nonce = data[offset:offset + NONCE_SIZE]
            offset += NONCE_SIZE
        except (struct.error, UnicodeDecodeError) as err:
            raise TamperedError(f"Malformed envelope: {err}") from err
        body = data[offset:]
        if len(wrapped) != wrapped_len or len(nonce) != NONCE_SIZE or len(body) < TAG_SIZE:
            raise TamperedError(
                f"Envelope too short: {len(data)} bytes"
            )
        return cls(
            format_version=version,
            key_fingerprint=fp,
            scope_label=label,
            nonce=nonce,
            wrapped_session_key=wrapped,
            ciphertext=body[:-TAG_SIZE],
            auth_tag=body[-TAG_SIZE:],
        )

    def to_text(self) -> str:
        return base64.b64encode(self.to_bytes()).decode("ascii")

    @classmethod
    def from_text(cls, text: str) -> "Envelope":
        try:
            raw = base64.b64decode(text, validate=True)
        except (binascii.Error, ValueError) as err:
            raise TamperedError(f"Envelope is not valid base64: {err}") from err
        return cls.from_bytes(raw)


# ---------------------------------------------------------------------------
# Seal / unseal
# ---------------------------------------------------------------------------

def _seal(
    plaintext: bytes,
    scope_label: str,
    public_key: rsa.RSAPublicKey,
    format_version: int,
) -> Envelope:
    session_key = AESGCM.generate_key(bit_length=SESSION_KEY_LENGTH * 8)
    nonce = os.urandom(NONCE_SIZE)
    sealed = AESGCM(session_key).encrypt(
        nonce, plaintext, scope_label.encode("utf-8"),
    )
    wrapped = public_key.encrypt(session_key, _oaep())
    return Envelope(
        format_version=format_version,
        key_fingerprint=(
            fingerprint(public_key) if format_version == FORMAT_CURRENT else None
        ),
        scope_label=scope_label,
        nonce=nonce,
        wrapped_session_key=wrapped,
        ciphertext=sealed[:-TAG_SIZE],
        auth_tag=sealed[-TAG_SIZE:],
    )


def seal(plaintext: bytes, scope_label: str, public_key: rsa.RSAPublicKey) -> Envelope:
    """Seal plaintext under public_key, bound to scope_label.

    A fresh session key and nonce are drawn for every call, so sealing the
    same plaintext twice yields different envelopes.
    """
    return _seal(plaintext, scope_label, public_key, FORMAT_CURRENT)


def seal_legacy(plaintext: bytes, scope_label: str, public_key: rsa.RSAPublicKey) -> Envelope:
    """Seal in the legacy format (no key fingerprint)."""
    return _seal(plaintext, scope_label, public_key, FORMAT_LEGACY)


def _unwrap(private_key: rsa.RSAPrivateKey, wrapped: bytes) -> Optional[bytes]:
    try:
        session_key = private_key.decrypt(wrapped, _oaep())
    except ValueError:
        return None
    if len(session_key) != SESSION_KEY_LENGTH:
        return None
    return session_key


def _candidates(candidate_keys) -> Iterable:
    if hasattr(candidate_keys, "all"):
        return candidate_keys.all()
    return candidate_keys


def _find(candidate_keys, fp: str):
    if hasattr(candidate_keys, "lookup"):
        return candidate_keys.lookup(fp)
    for pair in candidate_keys:
        if pair.id == fp:
            return pair
    raise UnknownKeyError(f"Key {fp} not found in registry")


def unseal(envelope: Envelope, candidate_keys, scope_label: Optional[str] = None) -> bytes:
    """Recover the plaintext of an envelope.

    Args:
        envelope: Envelope to open.
        candidate_keys: KeyRegistry, or ordered KeyPairs (most recent first).
        scope_label: Label asserted by the caller for this object's identity;
            defaults to the label carried by the envelope.

    Raises:
        UnknownKeyError: Envelope fingerprint is not in the registry.
        NoMatchingKeyError: No candidate key unwraps a legacy envelope.
        TamperedError: Authentication tag or AAD mismatch.
    """
    if scope_label is None:
        scope_label = envelope.scope_label
    aad = scope_label.encode("utf-8")

    session_key = None
    if envelope.key_fingerprint is not None:
        pair = _find(candidate_keys, envelope.key_fingerprint)
        session_key = _unwrap(pair.private_key, envelope.wrapped_session_key)
        if session_key is None:
            raise TamperedError(
                f"Session key does not unwrap under key {pair.id}"
            )
    else:
        for pair in _candidates(candidate_keys):
            session_key = _unwrap(pair.private_key, envelope.wrapped_session_key)
            if session_key is not None:
                logger.debug("Legacy envelope matched key %s", pair.id)
                break
        if session_key is None:
            raise NoMatchingKeyError("No key in the registry unwraps this envelope")

    try:
        return AESGCM(session_key).decrypt(
            envelope.nonce, envelope.ciphertext + envelope.auth_tag, aad,
        )
    except InvalidTag as err:
        raise TamperedError(
            "Authentication failed: data corrupted or scope mismatch"
        ) from err


def reencrypt(
    envelope: Envelope,
    candidate_keys,
    new_public_key: rsa.RSAPublicKey,
    scope_label: Optional[str] = None,
) -> Envelope:
    """Re-seal an envelope under new_public_key, keeping its scope label."""
    plaintext = unseal(envelope, candidate_keys, scope_label)
    try:
        return seal(plaintext, envelope.scope_label, new_public_key)
    finally:
        del plaintext
