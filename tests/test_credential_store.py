# Tests for client lookup and authentication.

import json

import pytest

from credential_store import load_clients_file, pwd_context
from errors import InvalidClientError
from scopes import Scope

from conftest import CLIENT_SECRET


class TestCredentialStore:
    @pytest.mark.asyncio
    async def test_lookup_known_client(self, credentials):
        client = await credentials.lookup_client("C1")
        assert client is not None
        assert client.allowed_scopes == {Scope.VIEW_USER}

    @pytest.mark.asyncio
    async def test_lookup_unknown_client(self, credentials):
        assert await credentials.lookup_client("nope") is None
        assert await credentials.lookup_client("") is None

    @pytest.mark.asyncio
    async def test_verify_secret(self, credentials):
        client = await credentials.lookup_client("C1")
        assert credentials.verify_secret(client, CLIENT_SECRET)
        assert not credentials.verify_secret(client, "wrong")

    @pytest.mark.asyncio
    async def test_authenticate_success(self, credentials):
        client = await credentials.authenticate("C1", CLIENT_SECRET)
        assert client.client_id == "C1"

    @pytest.mark.asyncio
    async def test_unknown_client_and_bad_secret_look_the_same(self, credentials):
        with pytest.raises(InvalidClientError) as unknown:
            await credentials.authenticate("nope", CLIENT_SECRET)
        with pytest.raises(InvalidClientError) as bad_secret:
            await credentials.authenticate("C1", "wrong")
        assert unknown.value.to_dict() == bad_secret.value.to_dict()
        assert unknown.value.status_code == bad_secret.value.status_code == 401

    @pytest.mark.asyncio
    async def test_missing_secret_rejected(self, credentials):
        with pytest.raises(InvalidClientError):
            await credentials.authenticate("C1", None)


class TestLoadClientsFile:
    def test_plain_secret_is_hashed(self, tmp_path):
        path = tmp_path / "clients.json"
        path.write_text(json.dumps([
            {
                "client_id": "web",
                "client_secret": "plain-secret",
                "redirect_uris": ["https://web.example.com/cb"],
                "allowed_grant_types": ["authorization_code", "refresh_token"],
                "allowed_scopes": ["view-user", "detail-user"],
                "approved_scopes": ["detail-user"],
            }
        ]))
        [client] = load_clients_file(path)
        assert client.client_id == "web"
        assert client.client_secret_hash != "plain-secret"
        assert pwd_context.verify("plain-secret", client.client_secret_hash)
        assert client.approved_scopes == {Scope.DETAIL_USER}

    def test_approved_must_be_allowed(self, tmp_path):
        path = tmp_path / "clients.json"
        path.write_text(json.dumps([
            {
                "client_id": "bad",
                "client_secret_hash": "x",
                "allowed_scopes": ["view-user"],
                "approved_scopes": ["detail-user"],
            }
        ]))
        with pytest.raises(ValueError):
            load_clients_file(path)
