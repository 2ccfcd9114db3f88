# resource_gateway.py
import logging
from typing import FrozenSet, Optional

import jwt
from fastapi import Request, Response
from pydantic import BaseModel

from errors import (
    InsufficientScopeError,
    PermissionDeniedError,
    RateLimitExceededError,
    TokenExpiredError,
    TokenInvalidError,
    UnapprovedScopeError,
    UnauthenticatedError,
)
from models import AccessToken, utcnow
from scopes import Scope, is_scope_approved_for_client

logger = logging.getLogger(__name__)

BEARER_CHALLENGE = 'Bearer realm="api"'


class TokenContext(BaseModel):
    """Caller identity resolved from a valid bearer token."""

    user_id: Optional[str] = None
    client_id: str
    scopes: FrozenSet[Scope]


def _challenge(error: Optional[str] = None):
    value = BEARER_CHALLENGE if error is None else f'{BEARER_CHALLENGE}, error="{error}"'
    return {"WWW-Authenticate": value}


def extract_bearer_token(authorization: Optional[str]) -> str:
    scheme, _, value = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        raise UnauthenticatedError(headers=_challenge())
    return value.strip()


class ResourceGateway:
    def __init__(self, store, settings, secret_key: str, clock=utcnow):
        self.store = store
        self.settings = settings
        self.secret_key = secret_key
        self.clock = clock

    async def authenticate(self, authorization: Optional[str]) -> AccessToken:
        value = extract_bearer_token(authorization)
        try:
            # Expiry is judged against the stored record below
            claims = jwt.decode(
                value,
                self.secret_key,
                algorithms=[self.settings.jwt_algorithm],
                issuer=self.settings.issuer,
                options={"verify_exp": False, "require": ["exp", "iat", "jti", "client_id"]},
            )
        except jwt.InvalidTokenError as e:
            logger.warning(f"Rejected malformed bearer token: {e}")
            raise TokenInvalidError(headers=_challenge("invalid_token")) from None

        token = await self.store.get_access_token(value)
        if token is None or token.revoked or token.client_id != claims["client_id"]:
            raise TokenInvalidError(headers=_challenge("invalid_token"))
        if token.is_expired(self.clock()):
            raise TokenExpiredError(headers=_challenge("invalid_token"))
        return token

    async def check(self, authorization: Optional[str], scope: Scope, require_user: bool = True) -> TokenContext:
        token = await self.authenticate(authorization)
        if scope not in token.scopes:
            raise InsufficientScopeError(f"This endpoint requires the '{scope.value}' scope")

        client = await self.store.get_client(token.client_id)
        if client is None:
            raise TokenInvalidError(headers=_challenge("invalid_token"))
        if not is_scope_approved_for_client(client, scope):
            logger.warning(f"Client '{client.client_id}' used unapproved scope '{scope.value}'")
            raise UnapprovedScopeError(
                f"Client is not approved for the '{scope.value}' scope",
                hint="Request administrative approval for this scope",
            )
        if require_user and token.user_id is None:
            raise PermissionDeniedError("This endpoint requires a token issued on behalf of a user")

        return TokenContext(user_id=token.user_id, client_id=token.client_id, scopes=token.scopes)


def require_scope(scope: Scope, limiter: Optional[str] = None, require_user: bool = True):
    """FastAPI dependency guarding an endpoint with a bearer token and scope.

    Usage::

        @app.get("/api/user")
        async def user(token: TokenContext = Depends(require_scope(Scope.VIEW_USER, "user"))): ...

    ``limiter`` names an entry of ``app.state.rate_limiters``; the limit is
    applied per (client, user) after the token is accepted.
    """

    async def _check(request: Request, response: Response) -> TokenContext:
        gateway = request.app.state.gateway
        context = await gateway.check(request.headers.get("Authorization"), scope, require_user)

        if limiter is not None:
            info = request.app.state.rate_limiters[limiter].check(f"{context.client_id}:{context.user_id}")
            if not info.allowed:
                raise RateLimitExceededError(retry_after=info.retry_after, headers=info.headers())
            response.headers.update(info.headers())

        request.state.token = context
        return context

    return _check
