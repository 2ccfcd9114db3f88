# errors.py
import urllib.parse
from typing import Dict, Optional

from fastapi import HTTPException


class OAuthError(HTTPException):
    """Base class for every error the server reports to a client.

    ``error`` is the RFC 6749 (or service-specific) error code; the HTTP
    status defaults per subclass and can be overridden when the same code
    is reported from a different endpoint.
    """

    error = "server_error"
    default_status = 400
    default_description = "The request could not be processed."

    def __init__(self, description: Optional[str] = None, hint: Optional[str] = None,
                 status_code: Optional[int] = None, headers: Optional[Dict[str, str]] = None):
        self.description = description or self.default_description
        self.hint = hint
        super().__init__(status_code=status_code or self.default_status,
                         detail=self.description, headers=headers)

    def to_dict(self):
        body = {
            "error": self.error,
            "error_description": self.description,
            "message": self.description,
        }
        if self.hint:
            body["hint"] = self.hint
        return body


# Request-shape errors
class InvalidRequestError(OAuthError):
    error = "invalid_request"
    default_description = "The request is missing a required parameter or is otherwise malformed."


class UnsupportedResponseTypeError(OAuthError):
    error = "unsupported_response_type"
    default_description = "Only the 'code' response type is supported."


class UnsupportedGrantTypeError(OAuthError):
    error = "unsupported_grant_type"
    default_description = "The authorization grant type is not supported."


# Client identity errors
class InvalidClientError(OAuthError):
    error = "invalid_client"
    default_status = 401
    default_description = "Client authentication failed."


class UnauthorizedClientError(OAuthError):
    error = "unauthorized_client"
    default_description = "The client is not allowed to use this grant type."


# Grant and token errors
class InvalidGrantError(OAuthError):
    error = "invalid_grant"
    default_description = "The provided authorization grant or refresh token is invalid."


class InvalidScopeError(OAuthError):
    error = "invalid_scope"
    default_description = "The requested scope is invalid or unknown."


class AccessDeniedError(OAuthError):
    error = "access_denied"
    default_status = 403
    default_description = "The resource owner denied the request."


# Resource layer errors
class UnauthenticatedError(OAuthError):
    error = "unauthenticated"
    default_status = 401
    default_description = "A bearer token is required."


class TokenInvalidError(OAuthError):
    error = "token_invalid"
    default_status = 401
    default_description = "The access token is invalid or has been revoked."


class TokenExpiredError(OAuthError):
    error = "token_expired"
    default_status = 401
    default_description = "The access token has expired."


class InsufficientScopeError(OAuthError):
    error = "insufficient_scope"
    default_status = 403
    default_description = "The access token does not carry the required scope."


class UnapprovedScopeError(OAuthError):
    error = "unapproved_scope"
    default_status = 403
    default_description = "The client has not been approved for this scope."


class PermissionDeniedError(OAuthError):
    error = "permission_denied"
    default_status = 403
    default_description = "The token is not permitted to access this resource."


# Transient errors
class ServerError(OAuthError):
    error = "server_error"
    default_status = 500
    default_description = "The server encountered an unexpected condition."


class TemporarilyUnavailableError(OAuthError):
    error = "temporarily_unavailable"
    default_status = 503
    default_description = "The server is temporarily unable to handle the request."


class RateLimitExceededError(OAuthError):
    error = "rate_limit_exceeded"
    default_status = 429
    default_description = "Too many requests."

    def __init__(self, retry_after: int, **kwargs):
        self.retry_after = retry_after
        super().__init__(**kwargs)

    def to_dict(self):
        body = super().to_dict()
        body["retry_after"] = self.retry_after
        return body


def add_query_params(url: str, params: Dict[str, Optional[str]]) -> str:
    """Append ``params`` to ``url`` keeping any query it already carries."""
    parts = urllib.parse.urlsplit(url)
    query = urllib.parse.parse_qsl(parts.query, keep_blank_values=True)
    query.extend((key, value) for key, value in params.items() if value is not None)
    return urllib.parse.urlunsplit(parts._replace(query=urllib.parse.urlencode(query)))


class OAuthRedirectError(Exception):
    """An authorize-endpoint error delivered back to a validated redirect URI."""

    def __init__(self, error: OAuthError, redirect_uri: str, state: Optional[str] = None):
        super().__init__(error.description)
        self.error = error
        self.redirect_uri = redirect_uri
        self.state = state

    @property
    def location(self) -> str:
        return add_query_params(self.redirect_uri, {
            "error": self.error.error,
            "error_description": self.error.description,
            "state": self.state,
        })
