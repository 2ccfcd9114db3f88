# Tests for environment-driven configuration.

import pytest

from credential_manager import CredentialManager


class TestServerSettings:
    def test_defaults(self, monkeypatch):
        for name in ("OAUTH_ACCESS_TOKEN_TTL", "OAUTH_ROTATE_REFRESH_TOKENS", "OAUTH_REFRESH_TOKEN_TTL",
                     "OAUTH_CORS_ORIGINS", "OAUTH_STORE", "OAUTH_CLIENTS_FILE"):
            monkeypatch.delenv(name, raising=False)
        settings = CredentialManager.get_server_settings()
        assert settings.access_token_ttl == 86400
        assert settings.authorization_code_ttl == 600
        assert settings.rotate_refresh_tokens is True
        assert settings.refresh_token_ttl == 30 * 86400
        assert settings.store_backend == "postgres"
        assert settings.cors_origins == []
        assert settings.clients_file is None

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("OAUTH_ACCESS_TOKEN_TTL", "3600")
        monkeypatch.setenv("OAUTH_ROTATE_REFRESH_TOKENS", "false")
        monkeypatch.setenv("OAUTH_REFRESH_TOKEN_TTL", "0")
        monkeypatch.setenv("OAUTH_CORS_ORIGINS", "http://localhost:3000, https://app.example.com")
        monkeypatch.setenv("OAUTH_STORE", "memory")
        settings = CredentialManager.get_server_settings()
        assert settings.access_token_ttl == 3600
        assert settings.rotate_refresh_tokens is False
        assert settings.refresh_token_ttl is None
        assert settings.cors_origins == ["http://localhost:3000", "https://app.example.com"]
        assert settings.store_backend == "memory"


class TestDbCredentials:
    def test_missing_variables(self, monkeypatch):
        monkeypatch.delenv("db_username", raising=False)
        monkeypatch.delenv("db_password", raising=False)
        with pytest.raises(EnvironmentError):
            CredentialManager.get_db_credentials()

    def test_credentials(self, monkeypatch):
        monkeypatch.setenv("db_username", "oauth")
        monkeypatch.setenv("db_password", "pw")
        monkeypatch.setenv("DB_PORT", "5432")
        credentials = CredentialManager.get_db_credentials()
        assert credentials["user"] == "oauth"
        assert credentials["port"] == 5432
