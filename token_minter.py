# token_minter.py
import base64
import binascii
import hmac
import logging
import secrets
import urllib.parse
from datetime import timedelta
from typing import Mapping, Optional, Tuple

import jwt
from authlib.oauth2.rfc7636 import create_s256_code_challenge

from errors import (
    InvalidClientError,
    InvalidGrantError,
    InvalidRequestError,
    InvalidScopeError,
    UnauthorizedClientError,
    UnsupportedGrantTypeError,
)
from models import AccessToken, Client, GrantType, RefreshToken, TokenResponse, utcnow
from scopes import ensure_scopes_allowed, format_scopes, parse_scopes, resolve_requested_scopes

logger = logging.getLogger(__name__)

BASIC_CHALLENGE = {"WWW-Authenticate": 'Basic realm="oauth"'}


def parse_basic_auth(authorization: Optional[str]) -> Optional[Tuple[str, str]]:
    """Return (client_id, secret) from an HTTP Basic header, or None when absent."""
    if not authorization:
        return None
    scheme, _, param = authorization.partition(" ")
    if scheme.lower() != "basic":
        return None
    try:
        decoded = base64.b64decode(param.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        raise InvalidClientError("Malformed Basic credentials", headers=BASIC_CHALLENGE) from None
    client_id, sep, secret = decoded.partition(":")
    if not sep:
        raise InvalidClientError("Malformed Basic credentials", headers=BASIC_CHALLENGE)
    # RFC 6749 section 2.3.1: both parts are form-urlencoded before encoding
    return urllib.parse.unquote_plus(client_id), urllib.parse.unquote_plus(secret)


def verify_code_verifier(code_verifier: str, code_challenge: str) -> bool:
    try:
        computed = create_s256_code_challenge(code_verifier)
    except UnicodeEncodeError:
        return False
    return hmac.compare_digest(computed.encode("ascii"), code_challenge.encode("ascii"))


class TokenMinter:
    def __init__(self, store, credentials, settings, secret_key: str, clock=utcnow):
        self.store = store
        self.credentials = credentials
        self.settings = settings
        self.secret_key = secret_key
        self.clock = clock

    async def authenticate_client(self, form: Mapping[str, str], authorization: Optional[str]) -> Client:
        basic = parse_basic_auth(authorization)
        body_id = form.get("client_id")
        body_secret = form.get("client_secret")
        if basic is not None:
            if body_secret is not None:
                raise InvalidRequestError("Use only one client authentication method")
            client_id, secret = basic
            if body_id is not None and body_id != client_id:
                raise InvalidClientError(headers=BASIC_CHALLENGE)
            try:
                return await self.credentials.authenticate(client_id, secret)
            except InvalidClientError:
                raise InvalidClientError(headers=BASIC_CHALLENGE) from None
        return await self.credentials.authenticate(body_id, body_secret)

    async def exchange(self, form: Mapping[str, str], authorization: Optional[str] = None) -> dict:
        """Handle a token request and return the JSON token response."""
        raw_grant_type = form.get("grant_type")
        try:
            grant_type = GrantType(raw_grant_type)
        except ValueError:
            raise UnsupportedGrantTypeError(f"Unsupported grant_type: {raw_grant_type}") from None

        client = await self.authenticate_client(form, authorization)
        if not client.allows_grant(grant_type):
            raise UnauthorizedClientError(f"Client may not use the {grant_type.value} grant")

        if grant_type is GrantType.AUTHORIZATION_CODE:
            return await self._grant_authorization_code(client, form)
        if grant_type is GrantType.REFRESH_TOKEN:
            return await self._grant_refresh_token(client, form)
        return await self._grant_client_credentials(client, form)

    async def _grant_authorization_code(self, client: Client, form: Mapping[str, str]) -> dict:
        code = form.get("code")
        if not code:
            raise InvalidRequestError("Missing code parameter")

        grant = await self.store.get_authorization_code(code)
        if grant is None:
            raise InvalidGrantError("Invalid authorization code")
        if grant.consumed:
            await self._revoke_replayed_grant(code)
            raise InvalidGrantError("Authorization code has already been used")
        if grant.client_id != client.client_id:
            raise InvalidGrantError("Authorization code was issued to another client")
        if grant.is_expired(self.clock()):
            raise InvalidGrantError("Authorization code has expired")
        if form.get("redirect_uri") != grant.redirect_uri:
            raise InvalidGrantError("redirect_uri does not match the authorization request")

        code_verifier = form.get("code_verifier")
        if grant.code_challenge:
            if not code_verifier:
                raise InvalidGrantError("Missing code_verifier")
            if not verify_code_verifier(code_verifier, grant.code_challenge):
                raise InvalidGrantError("Invalid code_verifier")
        elif code_verifier:
            raise InvalidGrantError("code_verifier sent for a request without code_challenge")

        if not await self.store.consume_authorization_code(code):
            await self._revoke_replayed_grant(code)
            raise InvalidGrantError("Authorization code has already been used")

        issue_refresh = client.allows_grant(GrantType.REFRESH_TOKEN)
        access, refresh = await self._mint(client, grant.user_id, grant.scopes,
                                           grant_code=code, with_refresh=issue_refresh)
        logger.info(f"Exchanged authorization code for client '{client.client_id}' and user '{grant.user_id}'")
        return self._response(access, refresh)

    async def _revoke_replayed_grant(self, code: str):
        revoked = await self.store.revoke_tokens_for_grant(code)
        logger.warning(f"Authorization code replay detected; revoked {revoked} tokens")

    async def _grant_refresh_token(self, client: Client, form: Mapping[str, str]) -> dict:
        value = form.get("refresh_token")
        if not value:
            raise InvalidRequestError("Missing refresh_token parameter")

        token = await self.store.get_refresh_token(value)
        if token is None or token.revoked:
            raise InvalidGrantError("Invalid refresh token")
        if token.client_id != client.client_id:
            logger.warning(f"Refresh token presented by foreign client '{client.client_id}'")
            raise InvalidGrantError("Invalid refresh token")
        if token.is_expired(self.clock()):
            raise InvalidGrantError("Refresh token has expired")

        requested = parse_scopes(form.get("scope"))
        if requested and not requested <= token.scopes:
            raise InvalidScopeError("Requested scope exceeds the scope originally granted")
        scopes = requested or token.scopes
        ensure_scopes_allowed(client, scopes)

        # Rotation is the last store write; the old refresh token stays valid until it succeeds.
        access, _ = await self._mint(client, token.user_id, scopes, grant_code=token.grant_code,
                                     with_refresh=False)
        refresh = token
        if self.settings.rotate_refresh_tokens:
            refresh = self._new_refresh_token(client, token.user_id, token.scopes, token.grant_code)
            if not await self.store.rotate_refresh_token(value, refresh):
                await self.store.revoke_access_token(access.token_value)
                raise InvalidGrantError("Invalid refresh token")
        logger.info(f"Refreshed access token for client '{client.client_id}'")
        return self._response(access, refresh)

    async def _grant_client_credentials(self, client: Client, form: Mapping[str, str]) -> dict:
        scopes = resolve_requested_scopes(client, form.get("scope"), self.settings.default_scopes)
        access, _ = await self._mint(client, None, scopes, with_refresh=False)
        logger.info(f"Issued client credentials token to '{client.client_id}'")
        return self._response(access, None)

    def _encode_access_token(self, client: Client, user_id, scopes, issued_at, expires_at) -> str:
        payload = {
            "iss": self.settings.issuer,
            "sub": user_id or client.client_id,
            "client_id": client.client_id,
            "scope": format_scopes(scopes),
            "jti": secrets.token_urlsafe(16),
            "iat": issued_at,
            "exp": expires_at,
        }
        return jwt.encode(payload, self.secret_key, algorithm=self.settings.jwt_algorithm)

    def _new_refresh_token(self, client: Client, user_id, scopes, grant_code) -> RefreshToken:
        now = self.clock()
        ttl = self.settings.refresh_token_ttl
        return RefreshToken(
            token_value=secrets.token_urlsafe(32),
            client_id=client.client_id,
            user_id=user_id,
            scopes=scopes,
            issued_at=now,
            expires_at=now + timedelta(seconds=ttl) if ttl else None,
            grant_code=grant_code,
        )

    async def _mint(self, client: Client, user_id, scopes, grant_code=None, with_refresh=True):
        now = self.clock()
        expires_at = now + timedelta(seconds=self.settings.access_token_ttl)
        access = AccessToken(
            token_value=self._encode_access_token(client, user_id, scopes, now, expires_at),
            client_id=client.client_id,
            user_id=user_id,
            scopes=scopes,
            issued_at=now,
            expires_at=expires_at,
            grant_code=grant_code,
        )
        await self.store.save_access_token(access)
        refresh = None
        if with_refresh:
            refresh = self._new_refresh_token(client, user_id, scopes, grant_code)
            await self.store.save_refresh_token(refresh)
        return access, refresh

    def _response(self, access: AccessToken, refresh: Optional[RefreshToken]) -> dict:
        response = TokenResponse(
            expires_in=self.settings.access_token_ttl,
            access_token=access.token_value,
            refresh_token=refresh.token_value if refresh else None,
            scope=format_scopes(access.scopes),
        )
        return response.model_dump(exclude_none=True)

    async def revoke(self, form: Mapping[str, str], authorization: Optional[str] = None) -> None:
        """RFC 7009 revocation; tokens of other clients and unknown tokens are ignored."""
        client = await self.authenticate_client(form, authorization)
        value = form.get("token")
        if not value:
            raise InvalidRequestError("Missing token parameter")

        lookups = [self._revoke_access, self._revoke_refresh]
        if form.get("token_type_hint") == "refresh_token":
            lookups.reverse()
        for revoke in lookups:
            if await revoke(client, value):
                return

    async def _revoke_access(self, client: Client, value: str) -> bool:
        token = await self.store.get_access_token(value)
        if token is None or token.client_id != client.client_id:
            return False
        await self.store.revoke_access_token(value)
        logger.info(f"Client '{client.client_id}' revoked an access token")
        return True

    async def _revoke_refresh(self, client: Client, value: str) -> bool:
        token = await self.store.get_refresh_token(value)
        if token is None or token.client_id != client.client_id:
            return False
        await self.store.revoke_refresh_token(value)
        logger.info(f"Client '{client.client_id}' revoked a refresh token")
        return True
