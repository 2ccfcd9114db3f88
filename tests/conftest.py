# Shared fixtures for the authorization server tests.

import asyncio

import pytest
from passlib.hash import pbkdf2_sha256

from credential_manager import ServerSettings
from credential_store import CredentialStore
from grant_issuer import GrantIssuer
from models import Client, GrantType, User
from resource_gateway import ResourceGateway
from scopes import Scope
from store import InMemoryStore
from token_minter import TokenMinter

SECRET_KEY = "test-signing-key-0123456789abcdef"
CLIENT_SECRET = "s3cret"
REDIRECT_URI = "https://app.example.com/callback"

ALL_GRANTS = frozenset(GrantType)


def make_client(client_id, allowed, approved=(), grants=ALL_GRANTS, redirect_uris=(REDIRECT_URI,)):
    return Client(
        client_id=client_id,
        client_secret_hash=pbkdf2_sha256.hash(CLIENT_SECRET),
        redirect_uris=list(redirect_uris),
        allowed_grant_types=frozenset(grants),
        allowed_scopes=frozenset(allowed),
        approved_scopes=frozenset(approved),
    )


CLIENTS = [
    # view-user only
    make_client("C1", {Scope.VIEW_USER}),
    # may request detail-user but has no administrative approval
    make_client("C2", {Scope.VIEW_USER, Scope.DETAIL_USER}),
    # approved for detail-user
    make_client("C3", {Scope.VIEW_USER, Scope.DETAIL_USER}, approved={Scope.DETAIL_USER}),
    make_client("SERVICE", {Scope.VIEW_USER}, grants={GrantType.CLIENT_CREDENTIALS}),
    make_client("NOREFRESH", {Scope.VIEW_USER}, grants={GrantType.AUTHORIZATION_CODE}),
]

USER = User(
    id="u1",
    name="Aisyah Rahma",
    email="aisyah@example.com",
    username="aisyah",
    gender="female",
    bio="Backend developer",
    phone_number="+62 812 0000 0000",
    place_of_birth="Bandung",
    address="Jl. Merdeka 1",
)


async def _seed(store):
    for client in CLIENTS:
        await store.add_client(client)
    await store.add_user(USER)


@pytest.fixture
def settings():
    return ServerSettings(store_backend="memory")


@pytest.fixture
def store():
    store = InMemoryStore()
    asyncio.run(_seed(store))
    return store


@pytest.fixture
def credentials(store):
    return CredentialStore(store)


@pytest.fixture
def issuer(store, credentials, settings):
    return GrantIssuer(store, credentials, settings)


@pytest.fixture
def minter(store, credentials, settings):
    return TokenMinter(store, credentials, settings, SECRET_KEY)


@pytest.fixture
def gateway(store, settings):
    return ResourceGateway(store, settings, SECRET_KEY)
