# Tests for authorization request validation and code issuance.

import urllib.parse

import pytest

from errors import InvalidClientError, InvalidRequestError, OAuthRedirectError
from models import Prompt
from scopes import Scope

from conftest import REDIRECT_URI

CHALLENGE = "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


def params(**overrides):
    base = {
        "response_type": "code",
        "client_id": "C1",
        "redirect_uri": REDIRECT_URI,
        "scope": "view-user",
        "state": "xyz",
    }
    base.update(overrides)
    return {key: value for key, value in base.items() if value is not None}


def query_of(location):
    return dict(urllib.parse.parse_qsl(urllib.parse.urlsplit(location).query))


class TestDirectErrors:
    """Errors raised before the redirect URI is trusted are never redirected."""

    @pytest.mark.asyncio
    async def test_missing_client_id(self, issuer):
        with pytest.raises(InvalidRequestError):
            await issuer.validate_authorization_request(params(client_id=None))

    @pytest.mark.asyncio
    async def test_unknown_client(self, issuer):
        with pytest.raises(InvalidClientError) as exc_info:
            await issuer.validate_authorization_request(params(client_id="ghost"))
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_redirect_uri_trailing_slash_rejected(self, issuer):
        with pytest.raises(InvalidRequestError):
            await issuer.validate_authorization_request(params(redirect_uri=REDIRECT_URI + "/"))

    @pytest.mark.asyncio
    async def test_missing_redirect_uri(self, issuer):
        with pytest.raises(InvalidRequestError):
            await issuer.validate_authorization_request(params(redirect_uri=None))


class TestRedirectedErrors:
    @pytest.mark.asyncio
    async def test_unsupported_response_type(self, issuer):
        with pytest.raises(OAuthRedirectError) as exc_info:
            await issuer.validate_authorization_request(params(response_type="token"))
        query = query_of(exc_info.value.location)
        assert query["error"] == "unsupported_response_type"
        assert query["state"] == "xyz"
        assert exc_info.value.location.startswith(REDIRECT_URI + "?")

    @pytest.mark.asyncio
    async def test_missing_response_type(self, issuer):
        with pytest.raises(OAuthRedirectError) as exc_info:
            await issuer.validate_authorization_request(params(response_type=None))
        assert exc_info.value.error.error == "unsupported_response_type"

    @pytest.mark.asyncio
    async def test_missing_state(self, issuer):
        with pytest.raises(OAuthRedirectError) as exc_info:
            await issuer.validate_authorization_request(params(state=None))
        query = query_of(exc_info.value.location)
        assert query["error"] == "invalid_request"
        assert "state" not in query

    @pytest.mark.asyncio
    async def test_scope_not_allowed_for_client(self, issuer):
        with pytest.raises(OAuthRedirectError) as exc_info:
            await issuer.validate_authorization_request(params(scope="view-user detail-user"))
        assert query_of(exc_info.value.location)["error"] == "invalid_scope"

    @pytest.mark.asyncio
    async def test_unknown_scope(self, issuer):
        with pytest.raises(OAuthRedirectError) as exc_info:
            await issuer.validate_authorization_request(params(scope="everything"))
        assert exc_info.value.error.error == "invalid_scope"

    @pytest.mark.asyncio
    async def test_plain_challenge_method_rejected(self, issuer):
        with pytest.raises(OAuthRedirectError) as exc_info:
            await issuer.validate_authorization_request(
                params(code_challenge=CHALLENGE, code_challenge_method="plain"))
        assert exc_info.value.error.error == "invalid_request"

    @pytest.mark.asyncio
    async def test_challenge_without_method_rejected(self, issuer):
        with pytest.raises(OAuthRedirectError):
            await issuer.validate_authorization_request(params(code_challenge=CHALLENGE))

    @pytest.mark.asyncio
    async def test_method_without_challenge_rejected(self, issuer):
        with pytest.raises(OAuthRedirectError):
            await issuer.validate_authorization_request(params(code_challenge_method="S256"))

    @pytest.mark.asyncio
    async def test_malformed_challenge_rejected(self, issuer):
        with pytest.raises(OAuthRedirectError):
            await issuer.validate_authorization_request(
                params(code_challenge="short", code_challenge_method="S256"))

    @pytest.mark.asyncio
    async def test_unknown_prompt_rejected(self, issuer):
        with pytest.raises(OAuthRedirectError) as exc_info:
            await issuer.validate_authorization_request(params(prompt="select_account"))
        assert exc_info.value.error.error == "invalid_request"

    @pytest.mark.asyncio
    async def test_client_without_code_grant(self, issuer):
        with pytest.raises(OAuthRedirectError) as exc_info:
            await issuer.validate_authorization_request(params(client_id="SERVICE"))
        assert exc_info.value.error.error == "unauthorized_client"


class TestValidRequests:
    @pytest.mark.asyncio
    async def test_valid_request(self, issuer):
        request = await issuer.validate_authorization_request(
            params(code_challenge=CHALLENGE, code_challenge_method="S256", prompt="consent login"))
        assert request.scopes == {Scope.VIEW_USER}
        assert request.prompt == {Prompt.CONSENT, Prompt.LOGIN}
        assert request.code_challenge == CHALLENGE
        assert request.request_id

    @pytest.mark.asyncio
    async def test_default_scope_when_omitted(self, issuer):
        request = await issuer.validate_authorization_request(params(scope=None))
        assert request.scopes == {Scope.VIEW_USER}

    @pytest.mark.asyncio
    async def test_requested_scopes_within_allowed(self, issuer):
        request = await issuer.validate_authorization_request(
            params(client_id="C2", scope="view-user detail-user"))
        assert request.scopes == {Scope.VIEW_USER, Scope.DETAIL_USER}


class TestConsentAndIssuance:
    @pytest.mark.asyncio
    async def test_consent_needed_until_granted(self, issuer, store):
        request = await issuer.validate_authorization_request(params())
        assert await issuer.needs_consent(request, "u1")

        await store.save_consent("u1", "C1", frozenset({Scope.VIEW_USER}))
        assert not await issuer.needs_consent(request, "u1")

    @pytest.mark.asyncio
    async def test_prompt_consent_forces_consent(self, issuer, store):
        await store.save_consent("u1", "C1", frozenset({Scope.VIEW_USER}))
        request = await issuer.validate_authorization_request(params(prompt="consent"))
        assert await issuer.needs_consent(request, "u1")

    @pytest.mark.asyncio
    async def test_consent_for_fewer_scopes_is_not_enough(self, issuer, store):
        await store.save_consent("u1", "C2", frozenset({Scope.VIEW_USER}))
        request = await issuer.validate_authorization_request(
            params(client_id="C2", scope="view-user detail-user"))
        assert await issuer.needs_consent(request, "u1")

    @pytest.mark.asyncio
    async def test_approve_issues_code(self, issuer, store):
        request = await issuer.validate_authorization_request(
            params(code_challenge=CHALLENGE, code_challenge_method="S256"))
        location = await issuer.approve(request, "u1")

        query = query_of(location)
        assert query["state"] == "xyz"
        grant = await store.get_authorization_code(query["code"])
        assert grant.user_id == "u1"
        assert grant.client_id == "C1"
        assert grant.redirect_uri == REDIRECT_URI
        assert grant.code_challenge == CHALLENGE
        assert not grant.consumed
        assert (grant.expires_at - grant.created_at).total_seconds() == 600
        # 32 random bytes, base64url encoded
        assert len(query["code"]) >= 43
        assert await store.get_consent("u1", "C1") == {Scope.VIEW_USER}

    @pytest.mark.asyncio
    async def test_deny_redirects_access_denied(self, issuer):
        request = await issuer.validate_authorization_request(params())
        query = query_of(issuer.deny(request))
        assert query == {
            "error": "access_denied",
            "error_description": "The resource owner denied the request.",
            "state": "xyz",
        }

    @pytest.mark.asyncio
    async def test_redirect_keeps_existing_query(self, store, credentials, settings):
        from conftest import make_client
        from grant_issuer import GrantIssuer

        await store.add_client(make_client("Q", {Scope.VIEW_USER},
                                           redirect_uris=("https://q.example.com/cb?tenant=7",)))
        issuer = GrantIssuer(store, credentials, settings)
        request = await issuer.validate_authorization_request(
            params(client_id="Q", redirect_uri="https://q.example.com/cb?tenant=7"))
        query = query_of(await issuer.approve(request, "u1"))
        assert query["tenant"] == "7"
        assert "code" in query
