# scopes.py
from enum import Enum
from typing import FrozenSet, Iterable, Optional

from errors import InvalidScopeError


class Scope(str, Enum):
    VIEW_USER = "view-user"
    DETAIL_USER = "detail-user"


# Scopes that need administrative sign-off on top of user consent
ELEVATED_SCOPES = frozenset({Scope.DETAIL_USER})

_ORDER = {scope: index for index, scope in enumerate(Scope)}


def parse_scopes(raw: Optional[str]) -> FrozenSet[Scope]:
    """Parse a space-delimited scope string into a set of known scopes.

    Unknown tokens raise ``invalid_scope``; an empty or missing string
    yields an empty set, leaving the default-scope policy to the caller.
    """
    if not raw:
        return frozenset()
    scopes = set()
    for token in raw.split():
        try:
            scopes.add(Scope(token))
        except ValueError:
            raise InvalidScopeError(f"Unknown scope: {token}") from None
    return frozenset(scopes)


def format_scopes(scopes: Iterable[Scope]) -> str:
    return " ".join(scope.value for scope in sorted(set(scopes), key=_ORDER.__getitem__))


def is_scope_allowed_for_client(client, scope: Scope) -> bool:
    return scope in client.allowed_scopes


def is_scope_approved_for_client(client, scope: Scope) -> bool:
    if scope not in ELEVATED_SCOPES:
        return True
    return scope in client.approved_scopes


def ensure_scopes_allowed(client, scopes: Iterable[Scope]) -> None:
    rejected = [scope for scope in scopes if not is_scope_allowed_for_client(client, scope)]
    if rejected:
        raise InvalidScopeError(
            f"Scope not allowed for this client: {format_scopes(rejected)}",
        )


def resolve_requested_scopes(client, raw: Optional[str], default: str) -> FrozenSet[Scope]:
    """Return the validated scope set for a request, applying the default when omitted."""
    scopes = parse_scopes(raw) or parse_scopes(default)
    ensure_scopes_allowed(client, scopes)
    return scopes
