"""
Sealer Configuration — validated settings and client tokens.

Reads bearer tokens for the unseal service from environment variables:
    SEALED_TOKEN_<IDENTITY> = <token>

and the access policy as JSON:
    SEALED_ACCESS_POLICY = {"reencryptor": ["*"], "team-a-*": ["team-a"]}

Security Note:
    Never log tokens or key material. Only log identities and counts.
"""
import os
import re
import secrets
import logging
from datetime import timedelta
from typing import Optional

import orjson
from pydantic import BaseModel, Field, field_validator, model_validator

from .. import conf
from .registry import DirectoryKeyStore, KeyRegistry, MIN_KEY_BITS

logger = logging.getLogger("navigator.sealed")

_TOKEN_ENV_PATTERN = re.compile(r"^SEALED_TOKEN_([A-Za-z0-9_]+)$")


def load_tokens() -> dict[str, str]:
    """Load bearer tokens from SEALED_TOKEN_<IDENTITY> environment variables.

    The identity is the variable suffix lowercased, with ``_`` mapped to ``-``.

    Returns:
        Mapping of token to caller identity.

    Raises:
        ValueError: If a token is shorter than 16 characters.
    """
    tokens: dict[str, str] = {}
    for name, value in os.environ.items():
        match = _TOKEN_ENV_PATTERN.match(name)
        if match:
            identity = match.group(1).lower().replace("_", "-")
            if len(value) < 16:
                raise ValueError(f"{name} must be at least 16 characters long")
            tokens[value] = identity
    logger.debug("Loaded %d client token(s): %s", len(tokens), sorted(tokens.values()))
    return tokens


def load_access_policy() -> dict[str, list[str]]:
    """Read SEALED_ACCESS_POLICY (JSON object of identity -> namespace globs)."""
    raw = os.environ.get("SEALED_ACCESS_POLICY")
    if not raw:
        return {}
    try:
        policy = orjson.loads(raw)
    except orjson.JSONDecodeError as err:
        raise ValueError(f"SEALED_ACCESS_POLICY is not valid JSON: {err}") from err
    if not isinstance(policy, dict):
        raise ValueError("SEALED_ACCESS_POLICY must be a JSON object")
    return {str(k): [str(ns) for ns in v] for k, v in policy.items()}


def generate_token() -> str:
    """Generate a random client token for the unseal service."""
    return secrets.token_urlsafe(32)


class SealerConfig(BaseModel):
    """Validated sealer configuration."""

    key_dir: str = Field(default=conf.KEY_DIR)
    key_bits: int = Field(default=conf.KEY_BITS, ge=MIN_KEY_BITS)
    key_renew_period: int = Field(default=conf.KEY_RENEW_PERIOD, ge=0)
    concurrency: int = Field(default=conf.CONCURRENCY, ge=1, le=256)
    rate_limit: float = Field(default=conf.RATE_LIMIT, gt=0)
    rate_burst: int = Field(default=conf.RATE_BURST, ge=1)
    max_conflict_retries: int = Field(default=conf.MAX_CONFLICT_RETRIES, ge=0)
    max_transient_retries: int = Field(default=conf.MAX_TRANSIENT_RETRIES, ge=0)
    backoff_base: float = Field(default=conf.BACKOFF_BASE, ge=0)
    backoff_max: float = Field(default=conf.BACKOFF_MAX, ge=0)
    host: str = Field(default=conf.SERVICE_HOST)
    port: int = Field(default=conf.SERVICE_PORT, ge=0, le=65535)
    request_timeout: float = Field(default=conf.REQUEST_TIMEOUT, gt=0)
    tls_cert: Optional[str] = None
    tls_key: Optional[str] = None
    tls_client_ca: Optional[str] = None
    tokens: dict[str, str] = Field(default_factory=dict)
    access_policy: dict[str, list[str]] = Field(default_factory=dict)

    @field_validator("key_bits")
    @classmethod
    def validate_key_bits(cls, v: int) -> int:
        """RSA modulus must be a multiple of 1024 bits."""
        if v % 1024:
            raise ValueError(f"Unsupported key size: {v}")
        return v

    @model_validator(mode="after")
    def validate_tls(self) -> "SealerConfig":
        """Certificate and key must be configured together."""
        if bool(self.tls_cert) != bool(self.tls_key):
            raise ValueError("tls_cert and tls_key must be set together")
        if self.tls_client_ca and not self.tls_cert:
            raise ValueError("tls_client_ca requires tls_cert and tls_key")
        if self.backoff_max < self.backoff_base:
            raise ValueError("backoff_max must be >= backoff_base")
        return self

    @property
    def renew_period(self) -> Optional[timedelta]:
        if not self.key_renew_period:
            return None
        return timedelta(seconds=self.key_renew_period)

    def registry(self) -> KeyRegistry:
        """Key registry backed by ``key_dir`` (not yet initialized)."""
        return KeyRegistry(DirectoryKeyStore(self.key_dir), key_bits=self.key_bits)

    @classmethod
    def from_env(cls, **overrides) -> "SealerConfig":
        """Create SealerConfig by loading values from environment.

        Returns:
            Populated SealerConfig instance.
        """
        values = {
            "tokens": load_tokens(),
            "access_policy": load_access_policy(),
            "tls_cert": os.environ.get("SEALED_TLS_CERT") or None,
            "tls_key": os.environ.get("SEALED_TLS_KEY") or None,
            "tls_client_ca": os.environ.get("SEALED_TLS_CLIENT_CA") or None,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
