"""
Unit tests for settings loading in monalias.app.config
"""

import pytest
from pydantic import ValidationError

from monalias.app.config import Settings
from monalias.identity.signer import encode_public_key


class TestSettings:
    """Test suite for environment driven configuration."""

    def test_defaults(self, monkeypatch, signing_key_file):
        monkeypatch.setenv("MONALIAS_DOMAIN", "example.com")
        monkeypatch.setenv("MONALIAS_PUBLIC_BASE_URL", "https://example.com")
        monkeypatch.setenv("MONALIAS_SIGNING_KEY_FILE", signing_key_file)

        settings = Settings()

        assert settings.rate_ip_rps == 1.0
        assert settings.rate_ip_burst == 10
        assert settings.rate_limit_retry_after == 30
        assert settings.signing_key_id == "main-2026-01"
        assert settings.identity_interval == 900.0
        assert settings.catchall_address is None
        assert settings.trust_forwarded_for is False
        assert settings.admin_http_port is None

    def test_environment_overrides(self, monkeypatch, signing_key_file):
        monkeypatch.setenv("MONALIAS_DOMAIN", "example.com")
        monkeypatch.setenv("MONALIAS_PUBLIC_BASE_URL", "https://example.com")
        monkeypatch.setenv("MONALIAS_SIGNING_KEY_FILE", signing_key_file)
        monkeypatch.setenv("MONALIAS_RATE_IP_BURST", "25")
        monkeypatch.setenv("MONALIAS_CATCHALL_ADDRESS", "4catchall")
        monkeypatch.setenv("MONALIAS_ADMIN_HTTP_PORT", "9091")

        settings = Settings()

        assert settings.rate_ip_burst == 25
        assert settings.catchall_address == "4catchall"
        assert settings.admin_http_port == 9091

    def test_domain_is_required(self, monkeypatch, signing_key_file):
        monkeypatch.delenv("MONALIAS_DOMAIN", raising=False)
        with pytest.raises(ValidationError):
            Settings(public_base_url="https://example.com", signing_key_file=signing_key_file)

    def test_signing_key_is_required(self, monkeypatch):
        monkeypatch.delenv("MONALIAS_SIGNING_KEY_FILE", raising=False)
        monkeypatch.setattr(
            "monalias.app.config.SIGNING_KEY_SECRET_PATH", "/nonexistent/monalias_signing_key"
        )
        with pytest.raises(ValidationError):
            Settings(domain="example.com", public_base_url="https://example.com")

    def test_load_signing_key(self, signing_key_file, signing_key):
        settings = Settings(
            domain="example.com",
            public_base_url="https://example.com",
            signing_key_file=signing_key_file,
            signing_key_id="k9",
        )

        key = settings.load_signing_key()

        assert key.get("kid") == "k9"
        assert encode_public_key(key) == encode_public_key(signing_key)
