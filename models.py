# models.py

from datetime import date, datetime, timezone
from enum import Enum
from typing import FrozenSet, List, Optional

from pydantic import BaseModel, Field, model_validator

from scopes import Scope


def utcnow():
    return datetime.now(timezone.utc)


class GrantType(str, Enum):
    AUTHORIZATION_CODE = "authorization_code"
    REFRESH_TOKEN = "refresh_token"
    CLIENT_CREDENTIALS = "client_credentials"


class Prompt(str, Enum):
    CONSENT = "consent"
    LOGIN = "login"


class User(BaseModel):
    id: str
    name: str
    email: str
    username: str
    profile_picture: Optional[str] = None
    gender: Optional[str] = None
    bio: Optional[str] = None
    phone_number: Optional[str] = None
    place_of_birth: Optional[str] = None
    date_of_birth: Optional[date] = None
    address: Optional[str] = None


class Client(BaseModel):
    client_id: str
    client_secret_hash: str
    redirect_uris: List[str] = []
    allowed_grant_types: FrozenSet[GrantType] = frozenset()
    allowed_scopes: FrozenSet[Scope] = frozenset()
    # Administrative sign-off, independent of user consent
    approved_scopes: FrozenSet[Scope] = frozenset()
    created_at: Optional[datetime] = None

    @model_validator(mode="after")
    def check_approved_within_allowed(self):
        if not self.approved_scopes <= self.allowed_scopes:
            raise ValueError("approved_scopes must be a subset of allowed_scopes")
        return self

    def allows_grant(self, grant_type: GrantType) -> bool:
        return grant_type in self.allowed_grant_types


class AuthorizationGrant(BaseModel):
    code: str
    client_id: str
    redirect_uri: str
    scopes: FrozenSet[Scope]
    user_id: str
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    expires_at: datetime
    consumed: bool = False
    created_at: datetime = Field(default_factory=utcnow)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


class AccessToken(BaseModel):
    token_value: str
    client_id: str
    user_id: Optional[str] = None  # None for client_credentials
    scopes: FrozenSet[Scope]
    issued_at: datetime
    expires_at: datetime
    revoked: bool = False
    grant_code: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


class RefreshToken(BaseModel):
    token_value: str
    client_id: str
    user_id: Optional[str] = None
    scopes: FrozenSet[Scope]
    issued_at: datetime
    expires_at: Optional[datetime] = None
    revoked: bool = False
    grant_code: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


class AuthorizationRequest(BaseModel):
    """A validated /oauth/authorize request awaiting login or consent."""

    request_id: str
    client_id: str
    redirect_uri: str
    scopes: FrozenSet[Scope]
    state: str
    prompt: FrozenSet[Prompt] = frozenset()
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None


class AuthenticatedUser(BaseModel):
    user_id: str
    auth_time: float  # unix timestamp of the last interactive login


class TokenResponse(BaseModel):
    token_type: str = "Bearer"
    expires_in: int
    access_token: str
    refresh_token: Optional[str] = None
    scope: str


class UserResponse(BaseModel):
    id: str
    name: str
    email: str
    profile_picture: Optional[str] = None
    username: str
    gender: Optional[str] = None


class UserDetailsResponse(UserResponse):
    bio: Optional[str] = None
    phone_number: Optional[str] = None
    place_of_birth: Optional[str] = None
    date_of_birth: Optional[date] = None
    address: Optional[str] = None
