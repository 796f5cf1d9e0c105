"""Sealing engine and key registry.

Security Note (Threat Model):
    Private keys live in the process that owns the KeyRegistry and in its
    key directory. Unsealed plaintext exists in process memory while a value
    is re-sealed or returned to an authorized caller; Python cannot zero
    ``bytes`` objects, so plaintext is confined to local variables and
    released as soon as it is used. This is an accepted limitation.
"""

from .engine import (
    Envelope,
    FORMAT_CURRENT,
    FORMAT_LEGACY,
    fingerprint,
    load_public_key_pem,
    public_key_pem,
    reencrypt,
    seal,
    seal_legacy,
    unseal,
)
from .registry import (
    DirectoryKeyStore,
    KeyPair,
    KeyRegistry,
    KeyStore,
    MemoryKeyStore,
    PublicKeyInfo,
    StaticKeySource,
)
from .config import SealerConfig, generate_token, load_access_policy, load_tokens

__all__ = [
    "Envelope",
    "FORMAT_CURRENT",
    "FORMAT_LEGACY",
    "fingerprint",
    "load_public_key_pem",
    "public_key_pem",
    "reencrypt",
    "seal",
    "seal_legacy",
    "unseal",
    "DirectoryKeyStore",
    "KeyPair",
    "KeyRegistry",
    "KeyStore",
    "MemoryKeyStore",
    "PublicKeyInfo",
    "StaticKeySource",
    "SealerConfig",
    "generate_token",
    "load_access_policy",
    "load_tokens",
]
