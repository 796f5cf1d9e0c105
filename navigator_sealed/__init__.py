"""Navigator Sealed.

Seals secrets with a rotating RSA key history, unseals them only inside an
authenticated boundary, and re-encrypts sealed objects onto the newest key.
"""
from .version import (
    __title__,
    __description__,
    __version__,
    __author__,
    __author_email__,
    __license__
)
from .data import ObjectRef, ScopeClaim, SealedObject, SealingScope
from .crypto import Envelope, KeyRegistry, SealerConfig, seal, unseal, reencrypt
from .boundary import AccessPolicy, LocalUnsealer, RemoteUnsealer, UnsealService
from .rotation import Reencryptor, Report

__all__ = (
    "__version__",
    "ObjectRef",
    "ScopeClaim",
    "SealedObject",
    "SealingScope",
    "Envelope",
    "KeyRegistry",
    "SealerConfig",
    "seal",
    "unseal",
    "reencrypt",
    "AccessPolicy",
    "LocalUnsealer",
    "RemoteUnsealer",
    "UnsealService",
    "Reencryptor",
    "Report",
)
