# main.py
import sys
import logging
import time
from typing import Awaitable, Callable, Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.sessions import SessionMiddleware

from credential_manager import CredentialManager, ServerSettings
from credential_store import CredentialStore, load_clients_file
from db_helper import DBHelper
from errors import (
    InvalidRequestError,
    OAuthError,
    OAuthRedirectError,
    ServerError,
    TemporarilyUnavailableError,
    TokenInvalidError,
    add_query_params,
)
from grant_issuer import GrantIssuer
from models import AuthenticatedUser, AuthorizationRequest, Prompt, UserDetailsResponse, UserResponse, utcnow
from rate_limiter import RateLimiter
from resource_gateway import ResourceGateway, TokenContext, require_scope
from scopes import Scope
from store import InMemoryStore, StoreNotReady, StoreUnavailable
from token_minter import TokenMinter

# Configure logging to write to stdout only
logging.basicConfig(level=logging.INFO,
                    format='%(asctime)s %(levelname)s %(name)s %(message)s',
                    handlers=[
                        logging.StreamHandler(sys.stdout)
                    ])

logger = logging.getLogger(__name__)

NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}

Authenticator = Callable[[Request], Awaitable[Optional[AuthenticatedUser]]]


class OriginLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        origin = request.headers.get('origin')
        logger.info(f"{request.method} {request.url.path} from origin: {origin}")
        response = await call_next(request)
        return response


async def session_authenticator(request: Request) -> Optional[AuthenticatedUser]:
    """Resolve the logged-in user from the session cookie set by the login service."""
    user_id = request.session.get('user_id')
    if not user_id:
        return None
    return AuthenticatedUser(user_id=str(user_id), auth_time=request.session.get('auth_time', 0))


def build_store(settings: ServerSettings):
    if settings.store_backend == "memory":
        return InMemoryStore()
    if settings.store_backend == "postgres":
        return DBHelper(timeout=settings.store_timeout)
    raise ValueError(f"Unknown store backend: {settings.store_backend}")


async def read_form(request: Request) -> dict:
    content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
    if content_type != "application/x-www-form-urlencoded":
        raise InvalidRequestError("Content-Type must be application/x-www-form-urlencoded")
    form = await request.form()
    data = {}
    for key, value in form.multi_items():
        if key in data:
            raise InvalidRequestError(f"Parameter '{key}' was sent more than once")
        data[key] = value
    return data


def _redirect(location: str) -> RedirectResponse:
    return RedirectResponse(url=location, status_code=302)


def _login_required(request: Request, auth_request: AuthorizationRequest,
                    user: Optional[AuthenticatedUser]) -> bool:
    if user is None:
        return True
    if Prompt.LOGIN not in auth_request.prompt:
        return False
    forced_at = request.session.get('login_forced_at')
    if forced_at is not None and user.auth_time >= forced_at:
        request.session.pop('login_forced_at')
        return False
    request.session['login_forced_at'] = time.time()
    return True


router = APIRouter()


@router.get("/oauth/authorize")
async def authorize(request: Request):
    keys = [key for key, _ in request.query_params.multi_items()]
    if len(keys) != len(set(keys)):
        raise InvalidRequestError("Authorization request parameters must not repeat")

    state = request.app.state
    auth_request = await state.grant_issuer.validate_authorization_request(request.query_params)

    user = await state.authenticator(request)
    if _login_required(request, auth_request, user):
        logger.info(f"Redirecting to login for client '{auth_request.client_id}'")
        return _redirect(add_query_params(state.settings.login_url, {"next": str(request.url)}))

    if await state.grant_issuer.needs_consent(auth_request, user.user_id):
        request.session['pending_authorization'] = {
            'user_id': user.user_id,
            'request': auth_request.model_dump(mode="json"),
        }
        logger.info(f"Consent required for user '{user.user_id}' and client '{auth_request.client_id}'")
        return _redirect(add_query_params(state.settings.consent_url, {"request_id": auth_request.request_id}))

    return _redirect(await state.grant_issuer.approve(auth_request, user.user_id))


@router.post("/oauth/authorize/decision")
async def authorize_decision(request: Request):
    form = await read_form(request)
    pending = request.session.get('pending_authorization')
    if not pending or form.get("request_id") != pending['request']['request_id']:
        raise InvalidRequestError("No matching pending authorization request")

    decision = form.get("decision")
    if decision not in ("approve", "deny"):
        raise InvalidRequestError("decision must be 'approve' or 'deny'")

    user = await request.app.state.authenticator(request)
    if user is None or user.user_id != pending['user_id']:
        raise InvalidRequestError("The pending authorization belongs to another user")

    request.session.pop('pending_authorization')
    auth_request = AuthorizationRequest(**pending['request'])
    issuer = request.app.state.grant_issuer
    if decision == "approve":
        return _redirect(await issuer.approve(auth_request, user.user_id))
    return _redirect(issuer.deny(auth_request))


@router.post("/oauth/token")
async def token(request: Request):
    form = await read_form(request)
    body = await request.app.state.token_minter.exchange(form, request.headers.get("Authorization"))
    return JSONResponse(body, headers=NO_STORE)


@router.get("/oauth/token")
async def token_get():
    raise InvalidRequestError("The token endpoint only accepts POST", status_code=405, headers={"Allow": "POST"})


@router.post("/oauth/revoke")
async def revoke(request: Request):
    form = await read_form(request)
    await request.app.state.token_minter.revoke(form, request.headers.get("Authorization"))
    return Response(status_code=200, headers=NO_STORE)


async def _load_user(request: Request, context: TokenContext):
    user = await request.app.state.store.get_user(context.user_id)
    if user is None:
        raise TokenInvalidError("The user behind this token no longer exists")
    return user


@router.get("/api/user", response_model=UserResponse)
async def read_user(request: Request,
                    context: TokenContext = Depends(require_scope(Scope.VIEW_USER, "user"))):
    user = await _load_user(request, context)
    return UserResponse.model_validate(user.model_dump())


@router.get("/api/user/details", response_model=UserDetailsResponse)
async def read_user_details(request: Request,
                            context: TokenContext = Depends(require_scope(Scope.DETAIL_USER, "user_details"))):
    user = await _load_user(request, context)
    return UserDetailsResponse.model_validate(user.model_dump())


async def oauth_error_handler(request: Request, exc: OAuthError):
    if exc.status_code >= 500:
        logger.error(f"{request.url.path} failed: {exc.error}")
    headers = dict(NO_STORE)
    headers.update(exc.headers or {})
    return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=headers)


async def oauth_redirect_handler(request: Request, exc: OAuthRedirectError):
    return _redirect(exc.location)


async def store_unavailable_handler(request: Request, exc: StoreUnavailable):
    logger.error(f"Store unavailable while handling {request.url.path}: {exc}")
    if isinstance(exc, StoreNotReady):
        error = TemporarilyUnavailableError("The credential store is starting up", headers={"Retry-After": "1"})
    else:
        error = ServerError("The credential store did not respond in time")
    return await oauth_error_handler(request, error)


async def validation_error_handler(request: Request, exc: RequestValidationError):
    return await oauth_error_handler(request, InvalidRequestError("Malformed request parameters"))


def create_app(store=None, settings: Optional[ServerSettings] = None,
               authenticator: Optional[Authenticator] = None,
               secret_key: Optional[str] = None, clock=utcnow) -> FastAPI:
    settings = settings or CredentialManager.get_server_settings()
    secret_key = secret_key or CredentialManager.get_secret_key()
    store = store if store is not None else build_store(settings)

    app = FastAPI(title="Mubarokah ID")

    app.add_middleware(OriginLoggingMiddleware)
    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST"],
            allow_headers=["Authorization", "Content-Type"],
        )
    app.add_middleware(SessionMiddleware, secret_key=secret_key)

    credentials = CredentialStore(store)
    app.state.settings = settings
    app.state.store = store
    app.state.authenticator = authenticator or session_authenticator
    app.state.grant_issuer = GrantIssuer(store, credentials, settings, clock=clock)
    app.state.token_minter = TokenMinter(store, credentials, settings, secret_key, clock=clock)
    app.state.gateway = ResourceGateway(store, settings, secret_key, clock=clock)
    app.state.rate_limiters = {
        "user": RateLimiter(settings.user_rate_limit),
        "user_details": RateLimiter(settings.user_details_rate_limit),
    }

    app.add_exception_handler(OAuthError, oauth_error_handler)
    app.add_exception_handler(OAuthRedirectError, oauth_redirect_handler)
    app.add_exception_handler(StoreUnavailable, store_unavailable_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.include_router(router)

    @app.on_event("startup")
    async def startup():
        if isinstance(store, DBHelper):
            await store.init_db()
        if settings.clients_file:
            for client in load_clients_file(settings.clients_file):
                if await store.get_client(client.client_id) is None:
                    await store.add_client(client)

    @app.on_event("shutdown")
    async def shutdown():
        if isinstance(store, DBHelper):
            await store.close_pool()

    return app


app = create_app()
