"""Navigator Sealed error taxonomy.

Every error carries a ``category`` used in reports and HTTP responses.
Cryptographic and authorization errors are permanent; ``ConflictError`` and
``TransientError`` are retried by the re-encryption orchestrator;
``FatalError`` aborts a run.
"""


class SealedError(Exception):
    """Base class for Navigator Sealed errors."""
    category: str = "Error"
    retryable: bool = False

    def __init__(self, message: str = "", *args) -> None:
        super().__init__(message, *args)
        self.message = message

    def __str__(self) -> str:
        return self.message or self.category


class CryptoError(SealedError):
    """A ciphertext could not be unsealed."""
    category = "Crypto"


class UnknownKeyError(CryptoError):
    """The envelope names a key fingerprint missing from the registry."""
    category = "UnknownKey"


class NoMatchingKeyError(CryptoError):
    """No key in the registry unwraps a legacy envelope."""
    category = "NoMatchingKey"


class TamperedError(CryptoError):
    """Authentication failed: corrupted data, forged data or a scope mismatch."""
    category = "Tampered"


class ForbiddenError(SealedError):
    """Caller is not allowed to unseal the claimed scope."""
    category = "Forbidden"


class ConflictError(SealedError):
    """Optimistic concurrency check failed on update."""
    category = "Conflict"
    retryable = True


class TransientError(SealedError):
    """Network, store or rate-limit failure worth retrying."""
    category = "Transient"
    retryable = True


class NotFoundError(SealedError):
    category = "NotFound"


class BackupError(SealedError):
    """Prior envelopes could not be saved; the update is not applied."""
    category = "Backup"


class FatalError(SealedError):
    """Unrecoverable failure: key generation, store unreachable."""
    category = "Fatal"


class CancelledRunError(SealedError):
    category = "Cancelled"


CRYPTO_CATEGORIES = frozenset({
    UnknownKeyError.category,
    NoMatchingKeyError.category,
    TamperedError.category,
    ForbiddenError.category,
})

_BY_CATEGORY = {
    cls.category: cls for cls in (
        UnknownKeyError,
        NoMatchingKeyError,
        TamperedError,
        ForbiddenError,
        ConflictError,
        TransientError,
        NotFoundError,
        BackupError,
        FatalError,
        CancelledRunError,
    )
}


def error_from_category(category: str, message: str = "") -> SealedError:
    """Rebuild a typed error from its category name (used by HTTP clients)."""
    cls = _BY_CATEGORY.get(category, SealedError)
    return cls(message)
