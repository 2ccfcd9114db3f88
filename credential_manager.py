# credential_manager.py
import os
from typing import List, Optional

from pydantic import BaseModel


class ServerSettings(BaseModel):
    access_token_ttl: int = 86400  # seconds
    refresh_token_ttl: Optional[int] = 30 * 86400  # None disables expiry
    authorization_code_ttl: int = 600
    rotate_refresh_tokens: bool = True
    default_scopes: str = "view-user"
    login_url: str = "/login"
    consent_url: str = "/consent"
    cors_origins: List[str] = []
    store_backend: str = "postgres"
    store_timeout: float = 0.1
    user_rate_limit: int = 100  # requests per minute
    user_details_rate_limit: int = 50
    clients_file: Optional[str] = None
    jwt_algorithm: str = "HS256"
    issuer: str = "mubarokah-id"


def _env_bool(name, default):
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class CredentialManager:
    @staticmethod
    def get_db_credentials():
        required_vars = ['db_username', 'db_password']
        missing_vars = [var for var in required_vars if os.getenv(var) is None]
        if missing_vars:
            raise EnvironmentError(f"Missing required environment variables: {', '.join(missing_vars)}")
        return {
            'user': os.environ.get('db_username'),
            'password': os.environ.get('db_password'),
            'database': os.getenv('OAUTHDB', 'OAUTHDB'),
            'host': os.getenv('DB_HOST', 'localhost'),
            'port': int(os.getenv('DB_PORT', 5999))
        }

    @staticmethod
    def get_secret_key():
        secret_key = os.getenv('SECRET_KEY', 'reallysecretkey')
        if not secret_key:
            raise EnvironmentError("Missing required environment variable: SECRET_KEY")
        return secret_key

    @staticmethod
    def get_server_settings() -> ServerSettings:
        defaults = ServerSettings()
        refresh_ttl = os.getenv('OAUTH_REFRESH_TOKEN_TTL')
        origins = os.getenv('OAUTH_CORS_ORIGINS', '')
        return ServerSettings(
            access_token_ttl=int(os.getenv('OAUTH_ACCESS_TOKEN_TTL', defaults.access_token_ttl)),
            refresh_token_ttl=(int(refresh_ttl) or None) if refresh_ttl is not None else defaults.refresh_token_ttl,
            authorization_code_ttl=int(os.getenv('OAUTH_CODE_TTL', defaults.authorization_code_ttl)),
            rotate_refresh_tokens=_env_bool('OAUTH_ROTATE_REFRESH_TOKENS', defaults.rotate_refresh_tokens),
            default_scopes=os.getenv('OAUTH_DEFAULT_SCOPES', defaults.default_scopes),
            login_url=os.getenv('OAUTH_LOGIN_URL', defaults.login_url),
            consent_url=os.getenv('OAUTH_CONSENT_URL', defaults.consent_url),
            cors_origins=[origin.strip() for origin in origins.split(',') if origin.strip()],
            store_backend=os.getenv('OAUTH_STORE', defaults.store_backend),
            store_timeout=float(os.getenv('OAUTH_STORE_TIMEOUT', defaults.store_timeout)),
            user_rate_limit=int(os.getenv('OAUTH_USER_RATE_LIMIT', defaults.user_rate_limit)),
            user_details_rate_limit=int(os.getenv('OAUTH_USER_DETAILS_RATE_LIMIT', defaults.user_details_rate_limit)),
            clients_file=os.getenv('OAUTH_CLIENTS_FILE') or None,
            issuer=os.getenv('OAUTH_ISSUER', defaults.issuer),
        )
