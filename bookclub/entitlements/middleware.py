"""
Request gating for entitlement checks.

A stage is ``async (request, call_next) -> Response``. A stage either calls
``call_next`` to continue or returns a rejection without calling it.
Stages chain left to right with ``compose_middleware`` and can be mounted on
path prefixes with ``EnforcementMiddleware`` or used per-route through
``permission_dependency``.

The entitlement service is taken from ``request.app.state.entitlements``,
falling back to the configured default service.
"""

import json
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence

import jwt
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
from starlette.routing import Match

from bookclub.config import get_session_jwt_algorithms, get_session_jwt_secret, header_auth_allowed
from bookclub.entitlements.roles import ContextType
from bookclub.entitlements.service import EntitlementService, get_default_service
from bookclub.platform.errors import (
    AppError,
    AuthenticationError,
    CheckFailedError,
    PermissionDeniedError,
    error_response,
)
from bookclub.store.records import eq

logger = logging.getLogger(__name__)

Handler = Callable[[Request], Awaitable[Response]]
Stage = Callable[[Request, Handler], Awaitable[Response]]
ContextResolver = Callable[[Request], Optional[str]]
CustomCheck = Callable[[Request, str, EntitlementService], Awaitable[bool]]


# ============================================================================
# Authentication
# ============================================================================

@dataclass(frozen=True)
class AuthenticatedUser:
    user_id: str
    email: Optional[str] = None
    source: str = "session"


class SessionAuthenticator:
    """Bearer session token first, then x-user-id headers when allowed."""

    def __init__(
        self,
        secret: Optional[str] = None,
        algorithms: Optional[Sequence[str]] = None,
        allow_header_fallback: Optional[bool] = None,
    ):
        self._secret = secret if secret is not None else get_session_jwt_secret()
        self._algorithms = list(algorithms or get_session_jwt_algorithms())
        if allow_header_fallback is None:
            allow_header_fallback = header_auth_allowed(session_configured=bool(self._secret))
        self._allow_headers = allow_header_fallback

    def authenticate(self, request: Request) -> Optional[AuthenticatedUser]:
        user = self._from_session(request)
        if user is not None:
            return user
        if not self._allow_headers:
            return None
        user_id = request.headers.get("x-user-id", "").strip()
        if not user_id:
            return None
        return AuthenticatedUser(user_id=user_id, email=request.headers.get("x-user-email"), source="header")

    def _from_session(self, request: Request) -> Optional[AuthenticatedUser]:
        header = request.headers.get("authorization", "")
        if not self._secret or not header.lower().startswith("bearer "):
            return None
        token = header[7:].strip()
        try:
            claims = jwt.decode(token, self._secret, algorithms=self._algorithms, options={"require": ["sub"]})
        except jwt.PyJWTError as e:
            logger.info("Session token rejected", extra={"error": str(e)})
            return None
        return AuthenticatedUser(user_id=str(claims["sub"]), email=claims.get("email"), source="session")


def get_entitlement_service(request: Request) -> EntitlementService:
    service = getattr(request.app.state, "entitlements", None)
    return service if service is not None else get_default_service()


def _authenticator(request: Request) -> SessionAuthenticator:
    authenticator = getattr(request.app.state, "authenticator", None)
    return authenticator if authenticator is not None else SessionAuthenticator()


def _track(request: Request, user_id: str, allowed: bool, requirement: "PermissionRequirement", context_id):
    try:
        get_entitlement_service(request).tracker.track_middleware_enforcement(
            user_id,
            request.url.path,
            request.method,
            allowed,
            required_permission=requirement.entitlement,
            context_id=context_id,
            context_type=(requirement.context_type or ContextType.PLATFORM).value,
        )
    except Exception as e:
        logger.warning("Enforcement tracking failed", extra={"user_id": user_id, "error": str(e)})


async def require_authentication(request: Request, call_next: Handler) -> Response:
    try:
        user = _authenticator(request).authenticate(request)
    except Exception:
        logger.exception("Authentication check failed", extra={"path": request.url.path})
        return error_response(CheckFailedError("Authentication check failed"))

    if user is None:
        return error_response(AuthenticationError())

    request.state.user = user
    request.state.user_id = user.user_id
    return await call_next(request)


# ============================================================================
# Permission requirements
# ============================================================================

def request_param(name: str) -> ContextResolver:
    """Resolve a context id from the path parameters, then the query string."""

    def resolve(request: Request) -> Optional[str]:
        value = request.path_params.get(name) or request.query_params.get(name)
        return str(value) if value else None

    return resolve


@dataclass(frozen=True)
class PermissionRequirement:
    entitlement: Optional[str] = None
    context_id: Optional[ContextResolver] = None
    context_type: Optional[ContextType] = None
    custom_check: Optional[CustomCheck] = None

    def __post_init__(self):
        if not self.entitlement and self.custom_check is None:
            raise ValueError("entitlement or custom_check is required")


def require_permission(requirement: PermissionRequirement) -> Stage:
    async def stage(request: Request, call_next: Handler) -> Response:
        user_id = getattr(request.state, "user_id", None)
        if not user_id:
            return error_response(AuthenticationError())

        context_id = requirement.context_id(request) if requirement.context_id else None
        try:
            service = get_entitlement_service(request)
            if requirement.custom_check is not None:
                allowed = await requirement.custom_check(request, user_id, service)
            else:
                allowed = await service.check_permission(user_id, requirement.entitlement, context_id)
        except AppError as e:
            return error_response(e)
        except Exception:
            logger.exception(
                "Permission check failed",
                extra={"user_id": user_id, "entitlement": requirement.entitlement, "path": request.url.path},
            )
            return error_response(CheckFailedError())

        _track(request, user_id, allowed, requirement, context_id)

        if not allowed:
            logger.info(
                "Permission denied",
                extra={"user_id": user_id, "entitlement": requirement.entitlement, "context_id": context_id},
            )
            return error_response(PermissionDeniedError(
                "Insufficient permissions",
                details={
                    "required": requirement.entitlement,
                    "context": {
                        "type": requirement.context_type.value if requirement.context_type else None,
                        "id": context_id,
                    },
                },
            ))
        return await call_next(request)

    return stage


def require_club_permission(entitlement: str, param: str = "club_id") -> Stage:
    return require_permission(PermissionRequirement(
        entitlement=entitlement, context_id=request_param(param), context_type=ContextType.CLUB
    ))


def require_store_permission(entitlement: str, param: str = "store_id") -> Stage:
    return require_permission(PermissionRequirement(
        entitlement=entitlement, context_id=request_param(param), context_type=ContextType.STORE
    ))


def compose_middleware(*stages: Stage) -> Stage:
    """Chain stages; a stage that does not call ``call_next`` ends the chain."""

    async def composed(request: Request, call_next: Handler) -> Response:
        async def run(index: int, req: Request) -> Response:
            if index == len(stages):
                return await call_next(req)
            return await stages[index](req, lambda r: run(index + 1, r))

        return await run(0, request)

    return composed


# ============================================================================
# Presets
# ============================================================================

def with_auth() -> Stage:
    return require_authentication


def with_club_admin(param: str = "club_id") -> Stage:
    return compose_middleware(require_authentication, require_club_permission("CAN_MANAGE_CLUB", param))


def with_club_member(param: str = "club_id") -> Stage:
    resolve = request_param(param)

    async def is_member(request: Request, user_id: str, service: EntitlementService) -> bool:
        club_id = resolve(request)
        if not club_id:
            return False
        membership = await service.store.maybe_single(
            "club_members", [eq("user_id", user_id), eq("club_id", club_id)], columns=["club_id"]
        )
        if membership is not None:
            return True
        return await service.check_permission(user_id, "CAN_MODERATE_DISCUSSIONS", club_id)

    return compose_middleware(
        require_authentication,
        require_permission(PermissionRequirement(
            entitlement="CLUB_MEMBERSHIP", context_id=resolve, context_type=ContextType.CLUB, custom_check=is_member
        )),
    )


def with_store_admin(param: str = "store_id") -> Stage:
    return compose_middleware(require_authentication, require_store_permission("CAN_VIEW_STORE_ANALYTICS", param))


def with_platform_admin() -> Stage:
    return compose_middleware(
        require_authentication,
        require_permission(PermissionRequirement(entitlement="CAN_MANAGE_PLATFORM_SETTINGS")),
    )


# ============================================================================
# FastAPI integration
# ============================================================================

def _resolve_path_params(request: Request) -> None:
    """Populate path_params ahead of routing so context resolvers can read them."""
    app = request.scope.get("app")
    router = getattr(app, "router", None)
    for route in getattr(router, "routes", []):
        match, child_scope = route.matches(request.scope)
        if match == Match.FULL:
            request.scope["path_params"] = {**request.path_params, **child_scope.get("path_params", {})}
            return


class EnforcementMiddleware(BaseHTTPMiddleware):
    """Runs ``stage`` for requests whose path starts with one of ``prefixes``."""

    def __init__(self, app, stage: Stage, prefixes: Sequence[str] = ("/",), exclude: Sequence[str] = ("/health",)):
        super().__init__(app)
        self._stage = stage
        self._prefixes = tuple(prefixes)
        self._exclude = tuple(exclude)

    async def dispatch(self, request: Request, call_next) -> Response:
        path = request.url.path
        if path in self._exclude or not path.startswith(self._prefixes):
            return await call_next(request)
        _resolve_path_params(request)
        return await self._stage(request, call_next)


def permission_dependency(stage: Stage):
    """
    Run ``stage`` as a FastAPI dependency.

    A rejection is raised as the corresponding AppError so the error
    handler renders it.
    """

    async def dependency(request: Request) -> Optional[AuthenticatedUser]:
        passed = False

        async def proceed(req: Request) -> Response:
            nonlocal passed
            passed = True
            return Response(status_code=204)

        response = await stage(request, proceed)
        if not passed:
            raise _error_from_response(response)
        return getattr(request.state, "user", None)

    return dependency


def _error_from_response(response: Response) -> AppError:
    try:
        payload = json.loads(response.body)["error"]
    except (ValueError, KeyError, TypeError, AttributeError):
        return AppError("REQUEST_REJECTED", "Request rejected", response.status_code)
    return AppError(payload["code"], payload["message"], response.status_code, payload.get("details"))
