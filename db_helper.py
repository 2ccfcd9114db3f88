# db_helper.py
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import FrozenSet, Optional

import asyncpg

from credential_manager import CredentialManager
from models import AccessToken, AuthorizationGrant, Client, RefreshToken, User
from scopes import Scope
from store import StoreNotReady, StoreUnavailable

logger = logging.getLogger(__name__)

TABLES = {
    "users": """
        CREATE TABLE IF NOT EXISTS users (
            id VARCHAR PRIMARY KEY,
            name VARCHAR NOT NULL,
            email VARCHAR UNIQUE NOT NULL,
            username VARCHAR UNIQUE NOT NULL,
            profile_picture VARCHAR,
            gender VARCHAR,
            bio TEXT,
            phone_number VARCHAR,
            place_of_birth VARCHAR,
            date_of_birth DATE,
            address TEXT,
            created_at TIMESTAMPTZ DEFAULT NOW()
        );
    """,
    "oauth2_clients": """
        CREATE TABLE IF NOT EXISTS oauth2_clients (
            client_id VARCHAR PRIMARY KEY,
            client_secret_hash VARCHAR NOT NULL,
            redirect_uris TEXT[] NOT NULL DEFAULT '{}',
            allowed_grant_types TEXT[] NOT NULL DEFAULT '{}',
            allowed_scopes TEXT[] NOT NULL DEFAULT '{}',
            approved_scopes TEXT[] NOT NULL DEFAULT '{}',
            created_at TIMESTAMPTZ DEFAULT NOW()
        );
    """,
    "oauth2_authorization_codes": """
        CREATE TABLE IF NOT EXISTS oauth2_authorization_codes (
            code VARCHAR PRIMARY KEY,
            client_id VARCHAR REFERENCES oauth2_clients(client_id),
            redirect_uri VARCHAR NOT NULL,
            scopes TEXT[] NOT NULL,
            user_id VARCHAR REFERENCES users(id),
            code_challenge VARCHAR,
            code_challenge_method VARCHAR,
            expires_at TIMESTAMPTZ NOT NULL,
            consumed BOOLEAN NOT NULL DEFAULT FALSE,
            created_at TIMESTAMPTZ DEFAULT NOW()
        );
    """,
    "oauth2_access_tokens": """
        CREATE TABLE IF NOT EXISTS oauth2_access_tokens (
            token_value TEXT PRIMARY KEY,
            client_id VARCHAR REFERENCES oauth2_clients(client_id),
            user_id VARCHAR REFERENCES users(id),
            scopes TEXT[] NOT NULL,
            issued_at TIMESTAMPTZ NOT NULL,
            expires_at TIMESTAMPTZ NOT NULL,
            revoked BOOLEAN NOT NULL DEFAULT FALSE,
            grant_code VARCHAR
        );
    """,
    "oauth2_refresh_tokens": """
        CREATE TABLE IF NOT EXISTS oauth2_refresh_tokens (
            token_value VARCHAR PRIMARY KEY,
            client_id VARCHAR REFERENCES oauth2_clients(client_id),
            user_id VARCHAR REFERENCES users(id),
            scopes TEXT[] NOT NULL,
            issued_at TIMESTAMPTZ NOT NULL,
            expires_at TIMESTAMPTZ,
            revoked BOOLEAN NOT NULL DEFAULT FALSE,
            grant_code VARCHAR
        );
    """,
    "oauth2_consents": """
        CREATE TABLE IF NOT EXISTS oauth2_consents (
            user_id VARCHAR REFERENCES users(id),
            client_id VARCHAR REFERENCES oauth2_clients(client_id),
            scopes TEXT[] NOT NULL,
            PRIMARY KEY (user_id, client_id)
        );
    """,
}


def _scopes(values):
    return [scope.value for scope in values]


class DBHelper:
    """PostgreSQL implementation of the ``OAuthStore`` contract."""

    def __init__(self, timeout: float = 0.1, credentials: Optional[dict] = None):
        self.credentials = credentials
        self.timeout = timeout
        self.pool = None  # To be initialized in init_db

    async def connect_create_if_not_exists(self, user, database, password, port, host):
        """
        Connect to the specified database. If it doesn't exist, connect to 'postgres' and create it.
        """
        logger.info(f"Attempting to connect to database '{database}' as user '{user}' at {host}:{port}")
        try:
            self.pool = await asyncpg.create_pool(
                user=user,
                password=password,
                database=database,
                host=host,
                port=port,
                min_size=1,
                max_size=10
            )
            logger.info(f"Successfully connected to database '{database}' as user '{user}'")
        except asyncpg.exceptions.InvalidCatalogNameError:
            logger.warning(f"Database '{database}' does not exist. Attempting to create it.")
            try:
                sys_conn = await asyncpg.connect(
                    user=user,
                    password=password,
                    database='postgres',
                    host=host,
                    port=port
                )
                try:
                    await sys_conn.execute(f'CREATE DATABASE "{database}" OWNER "{user}"')
                    logger.info(f"Database '{database}' created successfully with owner '{user}'")
                finally:
                    await sys_conn.close()
                self.pool = await asyncpg.create_pool(
                    user=user,
                    password=password,
                    database=database,
                    host=host,
                    port=port,
                    min_size=1,
                    max_size=10
                )
                logger.info(f"Successfully connected to newly created database '{database}'")
            except Exception as e:
                logger.error(f"Failed to create database '{database}': {e}")
                raise
        except Exception as e:
            logger.error(f"Failed to connect to database '{database}' as user '{user}': {e}")
            raise

    async def init_db(self):
        """
        Initialize the database by ensuring it exists and creating necessary tables.
        """
        if self.credentials is None:
            self.credentials = CredentialManager.get_db_credentials()

        logger.info("Starting database initialization process.")
        await self.connect_create_if_not_exists(**self.credentials)

        async with self.pool.acquire() as conn:
            try:
                await conn.execute("BEGIN;")
                for table_name, create_stmt in TABLES.items():
                    logger.info(f"Creating table '{table_name}' if it does not exist.")
                    await conn.execute(create_stmt)
                await conn.execute("COMMIT;")
                logger.info("Database initialization completed successfully.")
            except Exception as e:
                logger.error(f"Error during database initialization: {e}")
                await conn.execute("ROLLBACK;")
                raise

    async def close_pool(self):
        if self.pool:
            await self.pool.close()
            logger.info("Database connection pool closed.")

    @asynccontextmanager
    async def _connection(self, operation: str):
        if self.pool is None:
            raise StoreNotReady("Database pool is not initialized")
        try:
            async with self.pool.acquire(timeout=self.timeout) as conn:
                yield conn
        except (asyncio.TimeoutError, asyncpg.PostgresError, OSError) as e:
            logger.error(f"Store operation '{operation}' failed: {e!r}")
            raise StoreUnavailable(f"{operation} failed") from e

    # Client methods
    async def get_client(self, client_id: str) -> Optional[Client]:
        async with self._connection("get_client") as conn:
            row = await conn.fetchrow("SELECT * FROM oauth2_clients WHERE client_id = $1",
                                      client_id, timeout=self.timeout)
        logger.info(f"Fetched OAuth2 client by ID '{client_id}': {'Found' if row else 'Not Found'}")
        return Client(**dict(row)) if row else None

    async def add_client(self, client: Client) -> None:
        async with self._connection("add_client") as conn:
            try:
                await conn.execute('''
                    INSERT INTO oauth2_clients (
                        client_id, client_secret_hash, redirect_uris,
                        allowed_grant_types, allowed_scopes, approved_scopes
                    ) VALUES ($1, $2, $3, $4, $5, $6)
                ''', client.client_id, client.client_secret_hash, list(client.redirect_uris),
                    [grant.value for grant in client.allowed_grant_types],
                    _scopes(client.allowed_scopes), _scopes(client.approved_scopes),
                    timeout=self.timeout)
                logger.info(f"Added OAuth2 client with ID: {client.client_id}")
            except asyncpg.exceptions.UniqueViolationError:
                logger.warning(f"OAuth2 client with ID '{client.client_id}' already exists.")

    # User methods
    async def get_user(self, user_id: str) -> Optional[User]:
        async with self._connection("get_user") as conn:
            row = await conn.fetchrow("SELECT * FROM users WHERE id = $1", user_id, timeout=self.timeout)
        if row is None:
            return None
        data = dict(row)
        data.pop("created_at", None)
        return User(**data)

    # Authorization code methods
    async def save_authorization_code(self, grant: AuthorizationGrant) -> None:
        async with self._connection("save_authorization_code") as conn:
            await conn.execute("""
            INSERT INTO oauth2_authorization_codes (
                code, client_id, redirect_uri, scopes, user_id,
                code_challenge, code_challenge_method, expires_at, consumed, created_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            """, grant.code, grant.client_id, grant.redirect_uri, _scopes(grant.scopes),
                grant.user_id, grant.code_challenge, grant.code_challenge_method,
                grant.expires_at, grant.consumed, grant.created_at, timeout=self.timeout)
        logger.info(f"Saved authorization code for client '{grant.client_id}' and user '{grant.user_id}'")

    async def get_authorization_code(self, code: str) -> Optional[AuthorizationGrant]:
        async with self._connection("get_authorization_code") as conn:
            row = await conn.fetchrow("SELECT * FROM oauth2_authorization_codes WHERE code = $1",
                                      code, timeout=self.timeout)
        return AuthorizationGrant(**dict(row)) if row else None

    async def consume_authorization_code(self, code: str) -> bool:
        async with self._connection("consume_authorization_code") as conn:
            consumed = await conn.fetchval("""
                UPDATE oauth2_authorization_codes SET consumed = TRUE
                WHERE code = $1 AND consumed = FALSE
                RETURNING code
            """, code, timeout=self.timeout)
        return consumed is not None

    # Token methods
    async def save_access_token(self, token: AccessToken) -> None:
        async with self._connection("save_access_token") as conn:
            await conn.execute("""
            INSERT INTO oauth2_access_tokens (
                token_value, client_id, user_id, scopes, issued_at, expires_at, revoked, grant_code
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            """, token.token_value, token.client_id, token.user_id, _scopes(token.scopes),
                token.issued_at, token.expires_at, token.revoked, token.grant_code,
                timeout=self.timeout)

    async def get_access_token(self, token_value: str) -> Optional[AccessToken]:
        async with self._connection("get_access_token") as conn:
            row = await conn.fetchrow("SELECT * FROM oauth2_access_tokens WHERE token_value = $1",
                                      token_value, timeout=self.timeout)
        return AccessToken(**dict(row)) if row else None

    async def revoke_access_token(self, token_value: str) -> bool:
        async with self._connection("revoke_access_token") as conn:
            revoked = await conn.fetchval("""
                UPDATE oauth2_access_tokens SET revoked = TRUE
                WHERE token_value = $1 AND revoked = FALSE
                RETURNING token_value
            """, token_value, timeout=self.timeout)
        return revoked is not None

    async def save_refresh_token(self, token: RefreshToken) -> None:
        async with self._connection("save_refresh_token") as conn:
            await self._insert_refresh_token(conn, token)

    async def _insert_refresh_token(self, conn, token: RefreshToken):
        await conn.execute("""
        INSERT INTO oauth2_refresh_tokens (
            token_value, client_id, user_id, scopes, issued_at, expires_at, revoked, grant_code
        ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
        """, token.token_value, token.client_id, token.user_id, _scopes(token.scopes),
            token.issued_at, token.expires_at, token.revoked, token.grant_code,
            timeout=self.timeout)

    async def get_refresh_token(self, token_value: str) -> Optional[RefreshToken]:
        async with self._connection("get_refresh_token") as conn:
            row = await conn.fetchrow("SELECT * FROM oauth2_refresh_tokens WHERE token_value = $1",
                                      token_value, timeout=self.timeout)
        return RefreshToken(**dict(row)) if row else None

    async def revoke_refresh_token(self, token_value: str) -> bool:
        async with self._connection("revoke_refresh_token") as conn:
            revoked = await conn.fetchval("""
                UPDATE oauth2_refresh_tokens SET revoked = TRUE
                WHERE token_value = $1 AND revoked = FALSE
                RETURNING token_value
            """, token_value, timeout=self.timeout)
        return revoked is not None

    async def rotate_refresh_token(self, token_value: str, replacement: RefreshToken) -> bool:
        async with self._connection("rotate_refresh_token") as conn:
            async with conn.transaction():
                revoked = await conn.fetchval("""
                    UPDATE oauth2_refresh_tokens SET revoked = TRUE
                    WHERE token_value = $1 AND revoked = FALSE
                    RETURNING token_value
                """, token_value, timeout=self.timeout)
                if revoked is None:
                    return False
                await self._insert_refresh_token(conn, replacement)
        return True

    async def revoke_tokens_for_grant(self, code: str) -> int:
        async with self._connection("revoke_tokens_for_grant") as conn:
            async with conn.transaction():
                access = await conn.fetch("""
                    UPDATE oauth2_access_tokens SET revoked = TRUE
                    WHERE grant_code = $1 AND revoked = FALSE RETURNING token_value
                """, code, timeout=self.timeout)
                refresh = await conn.fetch("""
                    UPDATE oauth2_refresh_tokens SET revoked = TRUE
                    WHERE grant_code = $1 AND revoked = FALSE RETURNING token_value
                """, code, timeout=self.timeout)
        return len(access) + len(refresh)

    # Consent methods
    async def get_consent(self, user_id: str, client_id: str) -> FrozenSet[Scope]:
        async with self._connection("get_consent") as conn:
            scopes = await conn.fetchval(
                "SELECT scopes FROM oauth2_consents WHERE user_id = $1 AND client_id = $2",
                user_id, client_id, timeout=self.timeout)
        return frozenset(Scope(value) for value in scopes or [])

    async def save_consent(self, user_id: str, client_id: str, scopes: FrozenSet[Scope]) -> None:
        async with self._connection("save_consent") as conn:
            await conn.execute("""
                INSERT INTO oauth2_consents (user_id, client_id, scopes) VALUES ($1, $2, $3)
                ON CONFLICT (user_id, client_id) DO UPDATE
                SET scopes = ARRAY(SELECT DISTINCT unnest(oauth2_consents.scopes || EXCLUDED.scopes))
            """, user_id, client_id, _scopes(scopes), timeout=self.timeout)
        logger.info(f"Recorded consent of user '{user_id}' for client '{client_id}'")
