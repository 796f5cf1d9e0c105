import pytest

from navigator_sealed.boundary import AccessPolicy, LocalUnsealer, UnsealService
from navigator_sealed.crypto import KeyRegistry, MemoryKeyStore, SealerConfig, seal
from navigator_sealed.data import ScopeClaim, SealedObject, SealingScope

TEST_KEY_BITS = 2048
REENCRYPTOR = "reencryptor"


@pytest.fixture
def registry():
    """Initialized in-memory registry with one key."""
    return KeyRegistry(MemoryKeyStore(), key_bits=TEST_KEY_BITS).initialize()


@pytest.fixture
def policy():
    return AccessPolicy({REENCRYPTOR: ["*"], "team-a-*": ["team-a"]})


@pytest.fixture
def service(registry, policy):
    return UnsealService(registry, policy)


@pytest.fixture
def unsealer(service):
    return LocalUnsealer(service, REENCRYPTOR)


@pytest.fixture
def fast_config():
    """Config with tiny backoff so retry tests run quickly."""
    return SealerConfig(
        key_bits=TEST_KEY_BITS,
        concurrency=3,
        rate_limit=10000,
        rate_burst=1000,
        max_conflict_retries=2,
        max_transient_retries=3,
        backoff_base=0.001,
        backoff_max=0.005,
        key_renew_period=0,
    )


@pytest.fixture
def make_sealed(registry):
    """Build a SealedObject whose fields are sealed under a public key
    (the registry's active key by default)."""
    def _make(namespace, name, values, scope=SealingScope.STRICT, public_key=None, sealer=seal):
        public_key = public_key or registry.active().public_key
        label = ScopeClaim(namespace, name, scope).label()
        obj = SealedObject(namespace, name, scope=scope)
        for key, value in values.items():
            obj[key] = sealer(value, label, public_key)
        return obj
    return _make
