"""
Unseal Service — the only path by which plaintext leaves the key owner.

The service checks the caller against the AccessPolicy before any
cryptographic work, then unseals with the asserted scope label as AAD.
Private keys never leave the KeyRegistry.

Security Note:
    Never log plaintext or key material. Only log identities, object
    identifiers, fingerprints and error categories.
"""
import asyncio
import logging
from typing import Protocol

from ..crypto.engine import Envelope, seal, unseal
from ..crypto.registry import KeyRegistry
from ..data import ScopeClaim
from ..exceptions import CryptoError
from .policy import AccessPolicy

logger = logging.getLogger("navigator.sealed")


class Unsealer(Protocol):
    """What the re-encryption orchestrator sees of the unseal boundary."""

    async def unseal(self, envelope: Envelope, claim: ScopeClaim) -> bytes:
        ...


class UnsealService:
    """Authorizes callers and unseals envelopes with the key registry."""

    def __init__(self, registry: KeyRegistry, policy: AccessPolicy) -> None:
        self._registry = registry
        self._policy = policy

    @property
    def policy(self) -> AccessPolicy:
        return self._policy

    def unseal(self, envelope: Envelope, claim: ScopeClaim, identity: str) -> bytes:
        """Return the plaintext of envelope for an authorized caller.

        Raises:
            ForbiddenError: Caller may not unseal this scope (no decryption
                is attempted).
            UnknownKeyError, NoMatchingKeyError, TamperedError: Cryptographic
                failure.
        """
        self._policy.check(identity, claim)
        try:
            plaintext = unseal(envelope, self._registry, claim.label())
        except CryptoError as err:
            logger.warning(
                "Unseal failed: identity=%s object=%s/%s key=%s category=%s",
                identity, claim.namespace, claim.name,
                envelope.key_fingerprint, err.category,
            )
            raise
        logger.debug(
            "Unsealed value: identity=%s object=%s/%s key=%s",
            identity, claim.namespace, claim.name, envelope.key_fingerprint,
        )
        return plaintext

    def verify(self, envelope: Envelope, claim: ScopeClaim, identity: str) -> bool:
        """True when the envelope unseals for claim; plaintext is discarded."""
        try:
            plaintext = self.unseal(envelope, claim, identity)
        except CryptoError:
            return False
        del plaintext
        return True

    def rotate(self, envelope: Envelope, claim: ScopeClaim, identity: str) -> Envelope:
        """Re-seal one envelope under the active key without releasing plaintext."""
        active = self._registry.active()
        if envelope.key_fingerprint == active.id:
            return envelope
        plaintext = self.unseal(envelope, claim, identity)
        try:
            return seal(plaintext, envelope.scope_label, active.public_key)
        finally:
            del plaintext


class LocalUnsealer:
    """In-process Unsealer acting as a fixed identity."""

    def __init__(self, service: UnsealService, identity: str) -> None:
        self._service = service
        self.identity = identity

    async def unseal(self, envelope: Envelope, claim: ScopeClaim) -> bytes:
        # RSA private-key operations are CPU bound
        return await asyncio.to_thread(
            self._service.unseal, envelope, claim, self.identity,
        )
