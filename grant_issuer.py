# grant_issuer.py
"""Authorization endpoint logic: request validation, consent bookkeeping
and authorization code minting.

Errors found before the redirect URI is known to belong to the client are
raised as plain ``OAuthError`` and rendered directly; everything after
that is wrapped in ``OAuthRedirectError`` and sent back to the client.
"""
import logging
import re
import secrets
from datetime import timedelta
from typing import Mapping, Optional

from errors import (
    AccessDeniedError,
    InvalidClientError,
    InvalidRequestError,
    OAuthError,
    OAuthRedirectError,
    UnauthorizedClientError,
    UnsupportedResponseTypeError,
    add_query_params,
)
from models import AuthorizationGrant, AuthorizationRequest, Client, GrantType, Prompt, utcnow
from scopes import format_scopes, resolve_requested_scopes

logger = logging.getLogger(__name__)

# RFC 7636 section 4.2: 43-128 characters from the unreserved set
CODE_CHALLENGE_RE = re.compile(r"^[A-Za-z0-9\-._~]{43,128}$")
SUPPORTED_CHALLENGE_METHODS = ("S256",)


def parse_prompt(raw: Optional[str]):
    prompts = set()
    for value in (raw or "").split():
        try:
            prompts.add(Prompt(value))
        except ValueError:
            raise InvalidRequestError(f"Unsupported prompt value: {value}") from None
    return frozenset(prompts)


class GrantIssuer:
    def __init__(self, store, credentials, settings, clock=utcnow):
        self.store = store
        self.credentials = credentials
        self.settings = settings
        self.clock = clock

    async def validate_authorization_request(self, params: Mapping[str, str]) -> AuthorizationRequest:
        client_id = params.get("client_id")
        if not client_id:
            raise InvalidRequestError("Missing client_id parameter")
        client = await self.credentials.lookup_client(client_id)
        if client is None:
            logger.warning(f"Authorization request for unknown client_id: {client_id}")
            raise InvalidClientError("Unknown client_id", status_code=400)

        redirect_uri = params.get("redirect_uri")
        if not redirect_uri or redirect_uri not in client.redirect_uris:
            logger.warning(f"Unregistered redirect_uri for client '{client_id}'")
            raise InvalidRequestError("redirect_uri does not match any registered redirect URI")

        state = params.get("state") or None
        try:
            return self._validate_after_redirect(client, redirect_uri, state, params)
        except OAuthError as e:
            logger.warning(f"Rejected authorization request from '{client_id}': {e.error}")
            raise OAuthRedirectError(e, redirect_uri, state) from e

    def _validate_after_redirect(self, client: Client, redirect_uri: str, state: Optional[str],
                                 params: Mapping[str, str]) -> AuthorizationRequest:
        if params.get("response_type") != "code":
            raise UnsupportedResponseTypeError()
        if not state:
            raise InvalidRequestError("Missing state parameter")
        if not client.allows_grant(GrantType.AUTHORIZATION_CODE):
            raise UnauthorizedClientError("Client may not use the authorization code grant")

        code_challenge = params.get("code_challenge") or None
        code_challenge_method = params.get("code_challenge_method") or None
        if code_challenge_method is not None or code_challenge is not None:
            if code_challenge is None:
                raise InvalidRequestError("code_challenge_method given without code_challenge")
            if code_challenge_method not in SUPPORTED_CHALLENGE_METHODS:
                raise InvalidRequestError("code_challenge_method must be S256")
            if not CODE_CHALLENGE_RE.match(code_challenge):
                raise InvalidRequestError("Malformed code_challenge")

        prompt = parse_prompt(params.get("prompt"))
        scopes = resolve_requested_scopes(client, params.get("scope"), self.settings.default_scopes)

        return AuthorizationRequest(
            request_id=secrets.token_urlsafe(16),
            client_id=client.client_id,
            redirect_uri=redirect_uri,
            scopes=scopes,
            state=state,
            prompt=prompt,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
        )

    async def needs_consent(self, auth_request: AuthorizationRequest, user_id: str) -> bool:
        if Prompt.CONSENT in auth_request.prompt:
            return True
        granted = await self.store.get_consent(user_id, auth_request.client_id)
        return not auth_request.scopes <= granted

    async def issue_code(self, auth_request: AuthorizationRequest, user_id: str) -> AuthorizationGrant:
        now = self.clock()
        grant = AuthorizationGrant(
            code=secrets.token_urlsafe(32),
            client_id=auth_request.client_id,
            redirect_uri=auth_request.redirect_uri,
            scopes=auth_request.scopes,
            user_id=user_id,
            code_challenge=auth_request.code_challenge,
            code_challenge_method=auth_request.code_challenge_method,
            expires_at=now + timedelta(seconds=self.settings.authorization_code_ttl),
            created_at=now,
        )
        await self.store.save_authorization_code(grant)
        logger.info(f"Issued authorization code to client '{grant.client_id}' for user '{user_id}' "
                    f"with scope '{format_scopes(grant.scopes)}'")
        return grant

    async def approve(self, auth_request: AuthorizationRequest, user_id: str) -> str:
        """Record consent, mint a code and return the client redirect location."""
        await self.store.save_consent(user_id, auth_request.client_id, auth_request.scopes)
        grant = await self.issue_code(auth_request, user_id)
        return add_query_params(auth_request.redirect_uri, {"code": grant.code, "state": auth_request.state})

    def deny(self, auth_request: AuthorizationRequest) -> str:
        logger.info(f"User denied authorization for client '{auth_request.client_id}'")
        error = OAuthRedirectError(AccessDeniedError(), auth_request.redirect_uri, auth_request.state)
        return error.location
