"""Request guards for session and API-key authenticated endpoints.

Each guard wraps a handler ``async def handler(request, ...)`` and returns a
FastAPI endpoint ``async def endpoint(request)``. Guards can be applied
directly (``require_auth(handler)``) or as decorators::

    @app.post("/api/dev/api-keys")
    @require_permission("apiKey", "create:own")
    async def create_key(request, user, context):
        ...

Guards hold no state of their own; identity is re-resolved on every request.
"""

import logging
from typing import Awaitable, Callable, Optional

from fastapi import Request, Response

from tenantauth.api.errors import (
    error_response,
    forbidden_response,
    unauthorized_response,
)
from tenantauth.api.services import get_services
from tenantauth.audit import AuditAction, AuditResource
from tenantauth.security.api_keys import ApiKeyContext
from tenantauth.security.errors import AuthorizationError
from tenantauth.security.rbac import (
    GlobalContext,
    OrganizationContext,
    UserContext,
    require_permission as evaluate_permission,
    role_name,
    role_satisfies,
)
from tenantauth.storage.models import User

logger = logging.getLogger(__name__)

Handler = Callable[..., Awaitable[Response]]
Endpoint = Callable[[Request], Awaitable[Response]]

BEARER_PREFIX = "Bearer "


def _endpoint(handler: Handler, endpoint: Endpoint) -> Endpoint:
    # functools.wraps would expose the handler's signature to FastAPI via __wrapped__
    endpoint.__name__ = handler.__name__
    endpoint.__qualname__ = handler.__qualname__
    endpoint.__doc__ = handler.__doc__
    return endpoint


def get_client_ip(request: Request) -> Optional[str]:
    """First ``X-Forwarded-For`` hop, else ``X-Real-IP``, else the peer address."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    return request.client.host if request.client else None


def get_user_agent(request: Request) -> Optional[str]:
    return request.headers.get("user-agent") or None


def get_organization_id(request: Request) -> Optional[str]:
    """Organization named by the request.

    Looks at the ``organization_id`` path parameter, then the path segment
    after ``organizations``, then the ``organizationId`` query parameter.
    """
    organization_id = request.path_params.get("organization_id")
    if organization_id:
        return organization_id

    parts = request.url.path.strip("/").split("/")
    if "organizations" in parts:
        index = parts.index("organizations") + 1
        if index < len(parts) and parts[index]:
            return parts[index]

    return request.query_params.get("organizationId") or None


async def get_authenticated_user(request: Request) -> Optional[User]:
    """User behind the session cookie, or None."""
    services = get_services(request)
    return services.users.resolve_session(request.cookies.get(services.cookie_name))


def build_user_context(
    request: Request, user: User, organization_id: Optional[str] = None
) -> UserContext:
    """Caller context, scoped to ``organization_id`` if the user actively belongs to it."""
    if organization_id:
        membership = get_services(request).store.get_membership(organization_id, user.user_id)
        if membership is not None:
            return OrganizationContext(
                user_id=user.user_id,
                role=role_name(user.role),
                organization_id=organization_id,
                organization_role=role_name(membership.role),
            )
    return GlobalContext(user_id=user.user_id, role=role_name(user.role))


def require_auth(handler: Handler) -> Endpoint:
    """401 unless a session resolves; calls ``handler(request, user)``."""

    async def endpoint(request: Request) -> Response:
        user = await get_authenticated_user(request)
        if user is None:
            return unauthorized_response()
        return await handler(request, user)

    return _endpoint(handler, endpoint)


def require_role(role: str, handler: Optional[Handler] = None):
    """403 unless the caller's global role is at or above ``role``.

    Calls ``handler(request, user)``.
    """
    required = role_name(role)

    def decorate(handler: Handler) -> Endpoint:
        async def endpoint(request: Request) -> Response:
            user = await get_authenticated_user(request)
            if user is None:
                return unauthorized_response()

            current = role_name(user.role)
            if not role_satisfies(current, required):
                logger.info(f"Role {current} below {required} for {request.url.path}")
                return forbidden_response(AuthorizationError(required=required, current=current))

            return await handler(request, user)

        return _endpoint(handler, endpoint)

    return decorate(handler) if handler is not None else decorate


def require_permission(resource: str, action: str, handler: Optional[Handler] = None):
    """403 unless the caller holds ``resource``/``action``.

    The organization role counts only for the organization the request names.
    Calls ``handler(request, user, context)``.
    """

    def decorate(handler: Handler) -> Endpoint:
        async def endpoint(request: Request) -> Response:
            user = await get_authenticated_user(request)
            if user is None:
                return unauthorized_response()

            context = build_user_context(request, user, get_organization_id(request))
            result = evaluate_permission(context, resource, action)
            if not result:
                logger.info(f"Denied {resource}:{action} to {user.user_id}")
                return forbidden_response(result.error)

            return await handler(request, user, context)

        return _endpoint(handler, endpoint)

    return decorate(handler) if handler is not None else decorate


def require_organization(handler: Handler) -> Endpoint:
    """400 without an organization id, 403 without an active membership in it.

    Calls ``handler(request, user, organization_id)``.
    """

    async def endpoint(request: Request) -> Response:
        user = await get_authenticated_user(request)
        if user is None:
            return unauthorized_response()

        organization_id = get_organization_id(request)
        if not organization_id:
            return error_response(400, "Bad Request - Organization ID required")

        if get_services(request).store.get_membership(organization_id, user.user_id) is None:
            return error_response(403, "Forbidden - Not a member of this organization")

        return await handler(request, user, organization_id)

    return _endpoint(handler, endpoint)


async def authenticate_api_key(request: Request) -> Optional[ApiKeyContext]:
    """Resolve ``Authorization: Bearer sk_...`` to a key context and audit the use."""
    header = request.headers.get("authorization")
    if not header or not header.startswith(BEARER_PREFIX):
        return None

    services = get_services(request)
    key = header[len(BEARER_PREFIX) :].strip()
    if not key.startswith(services.api_keys.prefix):
        return None

    context = services.api_keys.validate_api_key(key)
    if context is None:
        return None

    services.audit.log_event(
        AuditAction.API_KEY_USE,
        AuditResource.API_KEY,
        user_id=context.user_id,
        organization_id=context.organization_id,
        resource_id=context.api_key_id,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    return context


def require_api_key(resource: str, action: str, handler: Optional[Handler] = None):
    """401 without a usable key, 403 if the key lacks ``resource``/``action``.

    Calls ``handler(request, api_context)``.
    """
    required = f"{resource}:{action}"

    def decorate(handler: Handler) -> Endpoint:
        async def endpoint(request: Request) -> Response:
            context = await authenticate_api_key(request)
            if context is None:
                return unauthorized_response("Unauthorized - Valid API key required")

            if not context.has_permission(resource, action):
                return forbidden_response(
                    AuthorizationError(
                        "Forbidden - Insufficient API permissions", required=required
                    )
                )

            return await handler(request, context)

        return _endpoint(handler, endpoint)

    return decorate(handler) if handler is not None else decorate
