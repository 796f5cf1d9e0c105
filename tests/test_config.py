"""Tests for SealerConfig and environment loading."""
from datetime import timedelta

import pytest
from pydantic import ValidationError

from navigator_sealed.crypto import SealerConfig, generate_token, load_access_policy, load_tokens
from navigator_sealed.exceptions import (
    ConflictError,
    ForbiddenError,
    SealedError,
    TamperedError,
    error_from_category,
)


class TestSealerConfig:

    def test_defaults(self):
        config = SealerConfig()
        assert config.key_bits == 4096
        assert config.concurrency >= 1
        assert config.renew_period == timedelta(days=30)

    def test_renewal_disabled(self):
        assert SealerConfig(key_renew_period=0).renew_period is None

    @pytest.mark.parametrize("values", [
        {"key_bits": 1024},
        {"key_bits": 3000},
        {"concurrency": 0},
        {"rate_limit": 0},
        {"backoff_base": 2.0, "backoff_max": 1.0},
        {"tls_cert": "server.pem"},
        {"tls_client_ca": "ca.pem"},
    ])
    def test_invalid(self, values):
        with pytest.raises(ValidationError):
            SealerConfig(**values)

    def test_tls_pair(self):
        config = SealerConfig(tls_cert="server.pem", tls_key="server.key", tls_client_ca="ca.pem")
        assert config.tls_client_ca == "ca.pem"

    def test_registry_uses_key_dir(self, tmp_path):
        config = SealerConfig(key_dir=str(tmp_path), key_bits=2048)
        registry = config.registry().initialize()
        assert len(list(tmp_path.glob("*.pem"))) == 1
        assert len(registry) == 1


class TestEnvironment:

    def test_load_tokens(self, monkeypatch):
        token = generate_token()
        monkeypatch.setenv("SEALED_TOKEN_TEAM_A_CI", token)
        assert load_tokens()[token] == "team-a-ci"

    def test_short_token_rejected(self, monkeypatch):
        monkeypatch.setenv("SEALED_TOKEN_WEAK", "short")
        with pytest.raises(ValueError):
            load_tokens()

    def test_access_policy(self, monkeypatch):
        monkeypatch.setenv("SEALED_ACCESS_POLICY", '{"ops": ["prod-*"]}')
        assert load_access_policy() == {"ops": ["prod-*"]}

    @pytest.mark.parametrize("raw", ["{not json", "[1, 2]"])
    def test_invalid_access_policy(self, monkeypatch, raw):
        monkeypatch.setenv("SEALED_ACCESS_POLICY", raw)
        with pytest.raises(ValueError):
            load_access_policy()

    def test_from_env_overrides(self, monkeypatch):
        token = generate_token()
        monkeypatch.setenv("SEALED_TOKEN_REENCRYPTOR", token)
        monkeypatch.setenv("SEALED_ACCESS_POLICY", '{"reencryptor": ["*"]}')
        config = SealerConfig.from_env(concurrency=7, port=None)
        assert config.concurrency == 7
        assert config.port == SealerConfig().port
        assert config.tokens[token] == "reencryptor"
        assert config.access_policy == {"reencryptor": ["*"]}


class TestErrorCategories:

    @pytest.mark.parametrize("category,cls", [
        ("Tampered", TamperedError),
        ("Forbidden", ForbiddenError),
        ("Conflict", ConflictError),
        ("Whatever", SealedError),
    ])
    def test_error_from_category(self, category, cls):
        err = error_from_category(category, "message")
        assert type(err) is cls
        assert str(err) == "message"

    def test_retryable(self):
        assert ConflictError().retryable
        assert not TamperedError().retryable
        assert str(TamperedError()) == "Tampered"
