# store.py
"""Storage contract shared by every component, plus an in-memory backend.

Components receive a store instance explicitly; nothing here is a
process-wide singleton. ``DBHelper`` in ``db_helper.py`` is the PostgreSQL
implementation of the same contract.
"""
import asyncio
import logging
from typing import Dict, FrozenSet, Optional, Protocol, Tuple

from models import AccessToken, AuthorizationGrant, Client, RefreshToken, User
from scopes import Scope

logger = logging.getLogger(__name__)


class StoreUnavailable(Exception):
    """The backend timed out or failed; callers report ``server_error``."""


class StoreNotReady(StoreUnavailable):
    """The backend has not been initialised yet; callers report ``temporarily_unavailable``."""


class OAuthStore(Protocol):
    async def get_client(self, client_id: str) -> Optional[Client]: ...

    async def add_client(self, client: Client) -> None: ...

    async def get_user(self, user_id: str) -> Optional[User]: ...

    async def save_authorization_code(self, grant: AuthorizationGrant) -> None: ...

    async def get_authorization_code(self, code: str) -> Optional[AuthorizationGrant]: ...

    async def consume_authorization_code(self, code: str) -> bool:
        """Flip ``consumed`` from False to True; True only for the caller that flipped it."""
        ...

    async def save_access_token(self, token: AccessToken) -> None: ...

    async def get_access_token(self, token_value: str) -> Optional[AccessToken]: ...

    async def revoke_access_token(self, token_value: str) -> bool: ...

    async def save_refresh_token(self, token: RefreshToken) -> None: ...

    async def get_refresh_token(self, token_value: str) -> Optional[RefreshToken]: ...

    async def revoke_refresh_token(self, token_value: str) -> bool:
        """Flip ``revoked`` from False to True; True only for the caller that flipped it."""
        ...

    async def rotate_refresh_token(self, token_value: str, replacement: RefreshToken) -> bool:
        """Revoke ``token_value`` and store ``replacement`` as one step.

        Returns False, storing nothing, when the old token was already revoked.
        """
        ...

    async def revoke_tokens_for_grant(self, code: str) -> int: ...

    async def get_consent(self, user_id: str, client_id: str) -> FrozenSet[Scope]: ...

    async def save_consent(self, user_id: str, client_id: str, scopes: FrozenSet[Scope]) -> None: ...


class InMemoryStore:
    """Dict-backed store for development and tests.

    Records are copied on the way in and out so callers never share
    mutable state with the store.
    """

    def __init__(self):
        self._clients: Dict[str, Client] = {}
        self._users: Dict[str, User] = {}
        self._codes: Dict[str, AuthorizationGrant] = {}
        self._access_tokens: Dict[str, AccessToken] = {}
        self._refresh_tokens: Dict[str, RefreshToken] = {}
        self._consents: Dict[Tuple[str, str], FrozenSet[Scope]] = {}
        self._lock = asyncio.Lock()

    async def add_client(self, client: Client) -> None:
        self._clients[client.client_id] = client.model_copy()
        logger.info(f"Registered OAuth2 client '{client.client_id}'")

    async def get_client(self, client_id: str) -> Optional[Client]:
        client = self._clients.get(client_id)
        return client.model_copy() if client else None

    async def add_user(self, user: User) -> None:
        self._users[user.id] = user.model_copy()

    async def get_user(self, user_id: str) -> Optional[User]:
        user = self._users.get(user_id)
        return user.model_copy() if user else None

    async def save_authorization_code(self, grant: AuthorizationGrant) -> None:
        self._codes[grant.code] = grant.model_copy()

    async def get_authorization_code(self, code: str) -> Optional[AuthorizationGrant]:
        grant = self._codes.get(code)
        return grant.model_copy() if grant else None

    async def consume_authorization_code(self, code: str) -> bool:
        async with self._lock:
            grant = self._codes.get(code)
            if grant is None or grant.consumed:
                return False
            grant.consumed = True
            return True

    async def save_access_token(self, token: AccessToken) -> None:
        self._access_tokens[token.token_value] = token.model_copy()

    async def get_access_token(self, token_value: str) -> Optional[AccessToken]:
        token = self._access_tokens.get(token_value)
        return token.model_copy() if token else None

    async def revoke_access_token(self, token_value: str) -> bool:
        async with self._lock:
            token = self._access_tokens.get(token_value)
            if token is None or token.revoked:
                return False
            token.revoked = True
            return True

    async def save_refresh_token(self, token: RefreshToken) -> None:
        self._refresh_tokens[token.token_value] = token.model_copy()

    async def get_refresh_token(self, token_value: str) -> Optional[RefreshToken]:
        token = self._refresh_tokens.get(token_value)
        return token.model_copy() if token else None

    async def revoke_refresh_token(self, token_value: str) -> bool:
        async with self._lock:
            token = self._refresh_tokens.get(token_value)
            if token is None or token.revoked:
                return False
            token.revoked = True
            return True

    async def rotate_refresh_token(self, token_value: str, replacement: RefreshToken) -> bool:
        async with self._lock:
            token = self._refresh_tokens.get(token_value)
            if token is None or token.revoked:
                return False
            self._refresh_tokens[replacement.token_value] = replacement.model_copy()
            token.revoked = True
            return True

    async def revoke_tokens_for_grant(self, code: str) -> int:
        revoked = 0
        async with self._lock:
            for token in list(self._access_tokens.values()) + list(self._refresh_tokens.values()):
                if token.grant_code == code and not token.revoked:
                    token.revoked = True
                    revoked += 1
        return revoked

    async def get_consent(self, user_id: str, client_id: str) -> FrozenSet[Scope]:
        return self._consents.get((user_id, client_id), frozenset())

    async def save_consent(self, user_id: str, client_id: str, scopes: FrozenSet[Scope]) -> None:
        key = (user_id, client_id)
        self._consents[key] = self._consents.get(key, frozenset()) | frozenset(scopes)
