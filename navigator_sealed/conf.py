"""
Navigator Sealed defaults.

Every value can be overridden through a ``SEALED_*`` environment variable;
``SealerConfig.from_env()`` reads the same variables.
"""
import os


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return float(raw)


# Annotation holding the sealing scope on a SealedObject
SCOPE_ANNOTATION = "sealedsecrets.navigator/scope"
SEALED_KIND = "SealedSecret"
SEALED_API_VERSION = "navigator.sealed/v1"

# Key registry
KEY_DIR = os.environ.get("SEALED_KEY_DIR", "keys")
KEY_BITS = _env_int("SEALED_KEY_BITS", 4096)
# 30 days, expressed in seconds; 0 disables automatic renewal
KEY_RENEW_PERIOD = _env_int("SEALED_KEY_RENEW_PERIOD", 30 * 24 * 3600)

# Re-encryption orchestrator
CONCURRENCY = _env_int("SEALED_CONCURRENCY", 4)
RATE_LIMIT = _env_float("SEALED_RATE_LIMIT", 20.0)
RATE_BURST = _env_int("SEALED_RATE_BURST", 10)
MAX_CONFLICT_RETRIES = _env_int("SEALED_MAX_CONFLICT_RETRIES", 3)
MAX_TRANSIENT_RETRIES = _env_int("SEALED_MAX_TRANSIENT_RETRIES", 5)
BACKOFF_BASE = _env_float("SEALED_BACKOFF_BASE", 0.2)
BACKOFF_MAX = _env_float("SEALED_BACKOFF_MAX", 10.0)

# Unseal service
SERVICE_HOST = os.environ.get("SEALED_HOST", "127.0.0.1")
SERVICE_PORT = _env_int("SEALED_PORT", 8080)
REQUEST_TIMEOUT = _env_float("SEALED_REQUEST_TIMEOUT", 30.0)
