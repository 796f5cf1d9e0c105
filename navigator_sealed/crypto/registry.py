"""
Key Registry — ordered history of RSA sealing keys.

The most recently created key is the active one and is used for every new
seal; older keys are kept for unsealing until explicitly pruned.

Durability:
    ``generate()`` persists the new key through the attached KeyStore before
    it becomes active. The active key is implicit (the newest stored key),
    so a crash can never leave it pointing to a lost private key.

Security Note:
    Never log key material. Only log fingerprints and creation times.
"""
import os
import logging
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from collections.abc import Callable
from pathlib import Path
from typing import Optional, Union

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from ..exceptions import FatalError, UnknownKeyError
from .engine import fingerprint, public_key_pem

logger = logging.getLogger("navigator.sealed")

PUBLIC_EXPONENT = 65537
MIN_KEY_BITS = 2048


@dataclass(frozen=True)
class KeyPair:
    """One entry of the key history. Immutable."""
    id: str
    created_at: datetime
    public_key: rsa.RSAPublicKey = field(repr=False, compare=False)
    private_key: rsa.RSAPrivateKey = field(repr=False, compare=False)

    @classmethod
    def from_private_key(cls, private_key: rsa.RSAPrivateKey, created_at: datetime) -> "KeyPair":
        public_key = private_key.public_key()
        return cls(
            id=fingerprint(public_key),
            created_at=created_at,
            public_key=public_key,
            private_key=private_key,
        )

    @property
    def public_pem(self) -> bytes:
        return public_key_pem(self.public_key)


@dataclass(frozen=True)
class PublicKeyInfo:
    """Public half of the active key, safe to hand out of the registry."""
    id: str
    created_at: datetime
    public_key: rsa.RSAPublicKey = field(repr=False, compare=False)


class StaticKeySource:
    """Fixed public key, for sealing against a certificate fetched remotely."""

    def __init__(self, public_key: rsa.RSAPublicKey, created_at: Optional[datetime] = None) -> None:
        self._info = PublicKeyInfo(
            id=fingerprint(public_key),
            created_at=created_at or datetime.now(timezone.utc),
            public_key=public_key,
        )

    def active_public(self) -> PublicKeyInfo:
        return self._info


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MILLISECOND = timedelta(milliseconds=1)


def _to_millis(value: datetime) -> int:
    return (value - _EPOCH) // _MILLISECOND


def _from_millis(stamp: int) -> datetime:
    return _EPOCH + stamp * _MILLISECOND


# ---------------------------------------------------------------------------
# Key stores
# ---------------------------------------------------------------------------

class KeyStore:
    """Durable storage for key pairs."""

    def load(self) -> list[KeyPair]:
        raise NotImplementedError

    def save(self, pair: KeyPair) -> None:
        raise NotImplementedError

    def delete(self, pair: KeyPair) -> None:
        raise NotImplementedError


class MemoryKeyStore(KeyStore):
    """Process-local key store, used in tests and one-shot tools."""

    def __init__(self) -> None:
        self._pairs: dict[str, KeyPair] = {}

    def load(self) -> list[KeyPair]:
        return list(self._pairs.values())

    def save(self, pair: KeyPair) -> None:
        self._pairs[pair.id] = pair

    def delete(self, pair: KeyPair) -> None:
        self._pairs.pop(pair.id, None)


class DirectoryKeyStore(KeyStore):
    """One PKCS#8 PEM file per key: ``<created_at ms>-<fingerprint>.pem``.

    Files are written to a temp file, fsync'ed and atomically renamed into
    place with mode 0600.
    """

    suffix = ".pem"

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)

    def _filename(self, pair: KeyPair) -> Path:
        return self.path / f"{_to_millis(pair.created_at)}-{pair.id}{self.suffix}"

    def load(self) -> list[KeyPair]:
        if not self.path.is_dir():
            return []
        pairs = []
        for item in sorted(self.path.glob(f"*{self.suffix}")):
            stamp, _, fp = item.stem.partition("-")
            try:
                created_at = _from_millis(int(stamp))
                private_key = serialization.load_pem_private_key(
                    item.read_bytes(), password=None,
                )
            except (ValueError, TypeError) as err:
                raise FatalError(f"Unreadable key file {item.name}: {err}") from err
            if not isinstance(private_key, rsa.RSAPrivateKey):
                raise FatalError(f"Key file {item.name} is not an RSA key")
            pair = KeyPair.from_private_key(private_key, created_at)
            if pair.id != fp:
                raise FatalError(
                    f"Key file {item.name} does not match its fingerprint"
                )
            pairs.append(pair)
        return pairs

    def save(self, pair: KeyPair) -> None:
        self.path.mkdir(parents=True, exist_ok=True)
        data = pair.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        target = self._filename(pair)
        fd, tmp = tempfile.mkstemp(dir=self.path, prefix=".tmp-")
        try:
            os.fchmod(fd, 0o600)
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, target)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        self._sync_dir()

    def delete(self, pair: KeyPair) -> None:
        target = self._filename(pair)
        if target.exists():
            target.unlink()
            self._sync_dir()

    def _sync_dir(self) -> None:
        if not hasattr(os, "O_DIRECTORY"):
            return
        fd = os.open(self.path, os.O_RDONLY | os.O_DIRECTORY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class KeyRegistry:
    """Ordered key history with a unique active (most recent) entry.

    Pass the instance explicitly to every component that needs it; there is
    no module-level key state.
    """

    def __init__(self, store: Optional[KeyStore] = None, key_bits: int = 4096) -> None:
        if key_bits < MIN_KEY_BITS:
            raise ValueError(f"key_bits must be >= {MIN_KEY_BITS}, got {key_bits}")
        self._store = store if store is not None else MemoryKeyStore()
        self._key_bits = key_bits
        self._lock = threading.RLock()
        self._pairs: list[KeyPair] = []  # oldest first
        self._index: dict[str, KeyPair] = {}

    def __len__(self) -> int:
        return len(self._pairs)

    def __contains__(self, fp: object) -> bool:
        return fp in self._index

    def __repr__(self) -> str:
        active = self._pairs[-1].id if self._pairs else None
        return f"<KeyRegistry keys={len(self._pairs)} active={active}>"

    def initialize(self, now: Optional[datetime] = None) -> "KeyRegistry":
        """Load persisted keys; generate the first key when none exist."""
        with self._lock:
            pairs = sorted(self._store.load(), key=lambda p: p.created_at)
            self._pairs = pairs
            self._index = {p.id: p for p in pairs}
            logger.info(
                "Key registry loaded %d key(s)", len(pairs),
            )
            if not self._pairs:
                self.generate(now)
        return self

    def generate(self, now: Optional[datetime] = None) -> KeyPair:
        """Create a new key pair, persist it and make it active.

        Raises:
            FatalError: If key generation or persistence fails.
        """
        now = now or datetime.now(timezone.utc)
        with self._lock:
            # key files record milliseconds; order must survive a reload
            stamp = _to_millis(now)
            if self._pairs:
                stamp = max(stamp, _to_millis(self._pairs[-1].created_at) + 1)
            now = _from_millis(stamp)
            try:
                private_key = rsa.generate_private_key(
                    public_exponent=PUBLIC_EXPONENT, key_size=self._key_bits,
                )
                pair = KeyPair.from_private_key(private_key, now)
                self._store.save(pair)
            except FatalError:
                raise
            except Exception as err:
                raise FatalError(f"Key generation failed: {err}") from err
            self._pairs.append(pair)
            self._index[pair.id] = pair
        logger.info(
            "Generated sealing key %s (created %s)", pair.id, pair.created_at.isoformat(),
        )
        return pair

    def active(self) -> KeyPair:
        with self._lock:
            if not self._pairs:
                raise FatalError("Key registry is empty; call initialize() first")
            return self._pairs[-1]

    def active_public(self) -> PublicKeyInfo:
        pair = self.active()
        return PublicKeyInfo(
            id=pair.id, created_at=pair.created_at, public_key=pair.public_key,
        )

    def public_key_pem(self) -> bytes:
        return self.active().public_pem

    def lookup(self, fp: str) -> KeyPair:
        """Return the key pair with this fingerprint.

        Raises:
            UnknownKeyError: If no key has this fingerprint.
        """
        try:
            return self._index[fp]
        except KeyError:
            raise UnknownKeyError(f"Key {fp} not found in registry") from None

    def all(self) -> tuple[KeyPair, ...]:
        """All keys, most recent first."""
        with self._lock:
            return tuple(reversed(self._pairs))

    def prune(self, removable: Callable[[KeyPair], bool]) -> list[KeyPair]:
        """Remove every non-active key for which ``removable`` returns True.

        Callers are responsible for ensuring no unmigrated sealed object still
        references a pruned key.
        """
        removed = []
        with self._lock:
            if not self._pairs:
                return removed
            active = self._pairs[-1]
            for pair in list(self._pairs[:-1]):
                if pair is active or not removable(pair):
                    continue
                self._store.delete(pair)
                self._pairs.remove(pair)
                del self._index[pair.id]
                removed.append(pair)
        for pair in removed:
            logger.info("Pruned sealing key %s", pair.id)
        return removed

    def needs_rotation(self, now: Optional[datetime] = None, period: Optional[timedelta] = None) -> bool:
        """True when the active key is older than ``period``."""
        if not period:
            return False
        now = now or datetime.now(timezone.utc)
        with self._lock:
            if not self._pairs:
                return True
            return now - self._pairs[-1].created_at >= period
