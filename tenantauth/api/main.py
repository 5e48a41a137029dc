"""FastAPI application for the tenantauth service.

Provides REST endpoints for accounts, two-factor authentication, developer
API keys, organizations and administration.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Literal, Optional, Type, TypeVar

import uvicorn
from fastapi import APIRouter, FastAPI, HTTPException, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field

from tenantauth import __version__
from tenantauth.api.errors import (
    error_response,
    rate_limited_response,
    register_exception_handlers,
)
from tenantauth.api.middleware import (
    get_client_ip,
    get_user_agent,
    require_api_key,
    require_auth,
    require_organization,
    require_permission,
    require_role,
)
from tenantauth.api.services import build_services, get_services
from tenantauth.audit import AuditAction, AuditResource
from tenantauth.core.config import Config, get_config
from tenantauth.core.logging_setup import configure_comprehensive_logging
from tenantauth.security.api_keys import ApiKeyContext
from tenantauth.security.errors import (
    AuthorizationError,
    NotFoundError,
    RateLimitError,
    TenantAuthError,
    TwoFactorStateError,
)
from tenantauth.security.rate_limit import get_rate_limit_error_message
from tenantauth.security.rbac import (
    OrganizationContext,
    UserContext,
    has_permission,
    is_super_admin,
    role_name,
)
from tenantauth.storage.models import ApiKeyView, OrganizationRole, Role, User, utc_now

logger = logging.getLogger(__name__)

router = APIRouter()

ModelT = TypeVar("ModelT", bound=BaseModel)


# Request models
class RequestModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class SignupRequest(RequestModel):
    email: EmailStr
    password: str = Field(..., min_length=1)
    name: str = Field(default="", max_length=200)


class LoginRequest(RequestModel):
    email: EmailStr
    password: str
    totp_code: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("totp_code", "totpCode", "code")
    )


class TwoFactorCodeRequest(RequestModel):
    code: str = Field(..., min_length=1, validation_alias=AliasChoices("code", "token"))
    action: Literal["enable", "verify"] = "verify"


class CreateApiKeyRequest(RequestModel):
    name: str = Field(..., min_length=1, max_length=100)
    permissions: List[str] = Field(default_factory=list)
    organization_id: Optional[str] = Field(default=None, alias="organizationId")
    expires_at: Optional[datetime] = Field(default=None, alias="expiresAt")


class UpdateApiKeyRequest(RequestModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    permissions: Optional[List[str]] = None
    is_active: Optional[bool] = Field(default=None, alias="isActive")
    expires_at: Optional[datetime] = Field(default=None, alias="expiresAt")


class CreateOrganizationRequest(RequestModel):
    name: str = Field(..., min_length=1, max_length=200)
    slug: str = Field(..., min_length=1, max_length=63)
    description: Optional[str] = None
    website: Optional[str] = None


class UpdateOrganizationRequest(RequestModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    website: Optional[str] = None
    logo: Optional[str] = None


class InviteRequest(RequestModel):
    email: EmailStr
    role: Literal["admin", "member"] = "member"


class MemberRoleRequest(RequestModel):
    role: OrganizationRole


class UpdateUserRequest(RequestModel):
    role: Optional[Role] = None
    is_active: Optional[bool] = Field(default=None, alias="isActive")


# Helpers
def json_response(content: Any, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=jsonable_encoder(content))


async def parse_body(request: Request, model: Type[ModelT]) -> ModelT:
    """Validate the JSON body against ``model`` (400 on malformed JSON)."""
    try:
        data = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Request body must be valid JSON")
    return model.model_validate(data)


def query_int(request: Request, name: str, default: int, minimum: int, maximum: int) -> int:
    raw = request.query_params.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Query parameter '{name}' must be an integer")
    return max(minimum, min(maximum, value))


def audit(request: Request, action: AuditAction, resource: AuditResource, **kwargs) -> None:
    get_services(request).audit.log_event(
        action,
        resource,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
        **kwargs,
    )


async def account_locked(request: Request, user: User) -> None:
    """Audit a fresh lockout and alert the account owner by email."""
    audit(request, AuditAction.ACCOUNT_LOCKED, AuditResource.USER, user_id=user.user_id)
    notifier = get_services(request).notifier
    await notifier.deliver(
        notifier.security_alert_message(
            user.email,
            user.name,
            "Account locked after repeated failed verification attempts",
            utc_now(),
            ip_address=get_client_ip(request),
        )
    )


def actor_organization_role(context: UserContext) -> str:
    """Organization role the caller acts with; super admins act as owners."""
    if is_super_admin(context):
        return OrganizationRole.OWNER.value
    if isinstance(context, OrganizationContext):
        return role_name(context.organization_role)
    return ""


def owned_api_key(request: Request, context: UserContext, key_id: str, verb: str) -> ApiKeyView:
    """Key ``key_id`` if the caller owns it or holds ``apiKey:<verb>:all``.

    Raises:
        NotFoundError: If the key does not exist
        AuthorizationError: If it belongs to someone else
    """
    api_key = get_services(request).api_keys.get_api_key(key_id)
    if api_key is None:
        raise NotFoundError("API key not found")
    if api_key.user_id != context.user_id and not has_permission(
        context, "apiKey", f"{verb}:all"
    ):
        raise AuthorizationError("Forbidden", required=f"apiKey:{verb}:all")
    return api_key


# Health
@router.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": __version__,
    }


# Accounts
@router.post("/api/auth/signup")
async def signup(request: Request) -> Response:
    """Register a new account."""
    body = await parse_body(request, SignupRequest)
    services = get_services(request)
    try:
        user = services.users.create_user(body.email, body.password, name=body.name)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    await services.notifier.deliver(services.notifier.welcome_message(user.email, user.name))
    return json_response({"user": user.public()}, status_code=201)


@router.post("/api/auth/login")
async def login(request: Request) -> Response:
    """Sign in and set the session cookie."""
    body = await parse_body(request, LoginRequest)
    services = get_services(request)

    try:
        user, token, session = services.users.authenticate(
            body.email,
            body.password,
            totp_code=body.totp_code,
            ip_address=get_client_ip(request),
            user_agent=get_user_agent(request),
        )
    except RateLimitError as e:
        locked = services.store.get_user_by_email(body.email) if e.locked_now else None
        if locked is not None:
            await account_locked(request, locked)
        raise

    response = json_response({"user": user.public(), "expiresAt": session.expires_at})
    response.set_cookie(
        services.cookie_name,
        token,
        max_age=int(services.authenticator.session_ttl.total_seconds()),
        httponly=True,
        samesite="lax",
        secure=request.url.scheme == "https",
    )
    return response


@router.post("/api/auth/logout")
@require_auth
async def logout(request: Request, user: User) -> Response:
    """End the current session."""
    services = get_services(request)
    token_data = services.authenticator.verify_token(request.cookies.get(services.cookie_name))
    services.users.logout(token_data.session_id, user_id=user.user_id)

    response = json_response({"success": True})
    response.delete_cookie(services.cookie_name)
    return response


@router.get("/api/auth/me")
@require_auth
async def me(request: Request, user: User) -> Response:
    """Current user with memberships and 2FA status."""
    services = get_services(request)
    organizations = [
        {"organization": organization, "role": role}
        for organization, role in services.organizations.get_user_organizations(user.user_id)
    ]
    status = services.two_factor.status(user.user_id)
    return json_response(
        {
            "user": user.public(),
            "organizations": organizations,
            "twoFactorEnabled": status.is_enabled,
        }
    )


# Two-factor authentication
@router.post("/api/2fa/setup")
@require_auth
async def two_factor_setup(request: Request, user: User) -> Response:
    """Provision a TOTP secret and backup codes."""
    setup = get_services(request).two_factor.setup(user.user_id, user.email)
    audit(request, AuditAction.TWO_FA_SETUP, AuditResource.TWO_FA, user_id=user.user_id)
    return json_response(
        {
            "secret": setup.secret,
            "provisioningUri": setup.provisioning_uri,
            "qrCodeUrl": setup.qr_code_url,
            "backupCodes": setup.backup_codes,
        }
    )


@router.post("/api/2fa/verify")
@require_auth
async def two_factor_verify(request: Request, user: User) -> Response:
    """Enable 2FA with a first code, or verify a code for an enabled user."""
    body = await parse_body(request, TwoFactorCodeRequest)
    engine = get_services(request).two_factor

    if body.action == "enable":
        verification = engine.enable(user.user_id, body.code)
        action = AuditAction.TWO_FA_ENABLE
    else:
        verification = engine.verify(user.user_id, body.code)
        action = AuditAction.TWO_FA_VERIFY

    if not verification.is_valid:
        result = verification.rate_limit
        message = get_rate_limit_error_message(result)
        if result.is_locked:
            await account_locked(request, user)
            return rate_limited_response(message, result)
        return error_response(400, message, remaining=result.remaining)

    audit(
        request,
        action,
        AuditResource.TWO_FA,
        user_id=user.user_id,
        details={"backupCodeUsed": verification.backup_code_used},
    )
    return json_response({"success": True, "backupCodeUsed": verification.backup_code_used})


@router.post("/api/2fa/disable")
@require_auth
async def two_factor_disable(request: Request, user: User) -> Response:
    """Turn 2FA off."""
    if not get_services(request).two_factor.disable(user.user_id):
        raise TwoFactorStateError("Two-factor authentication has not been set up")
    audit(request, AuditAction.TWO_FA_DISABLE, AuditResource.TWO_FA, user_id=user.user_id)
    return json_response({"success": True})


@router.get("/api/2fa/status")
@require_auth
async def two_factor_status(request: Request, user: User) -> Response:
    status = get_services(request).two_factor.status(user.user_id)
    return json_response(
        {
            "isEnabled": status.is_enabled,
            "hasBackupCodes": status.has_backup_codes,
            "backupCodesCount": status.backup_codes_count,
        }
    )


@router.post("/api/2fa/backup-codes")
@require_auth
async def two_factor_backup_codes(request: Request, user: User) -> Response:
    """Replace the backup codes of an enabled user."""
    codes = get_services(request).two_factor.regenerate_backup_codes(user.user_id)
    audit(request, AuditAction.TWO_FA_BACKUP_CODES, AuditResource.TWO_FA, user_id=user.user_id)
    return json_response({"backupCodes": codes})


# Developer API keys
@router.get("/api/dev/api-keys")
@require_permission("apiKey", "read:own")
async def list_api_keys(request: Request, user: User, context: UserContext) -> Response:
    """Caller's keys, or an organization's keys with ``?organizationId=``."""
    services = get_services(request)
    organization_id = request.query_params.get("organizationId")
    if organization_id:
        if not isinstance(context, OrganizationContext) and not has_permission(
            context, "apiKey", "read:all"
        ):
            return error_response(403, "Forbidden - Not a member of this organization")
        keys = services.api_keys.list_organization_keys(organization_id)
    else:
        keys = services.api_keys.list_user_keys(user.user_id)
    return json_response({"apiKeys": keys})


@router.post("/api/dev/api-keys")
@require_permission("apiKey", "create:own")
async def create_api_key(request: Request, user: User, context: UserContext) -> Response:
    """Issue a key. The plaintext is only ever returned here and on rotation."""
    body = await parse_body(request, CreateApiKeyRequest)
    services = get_services(request)

    if body.organization_id and not is_super_admin(context):
        if services.store.get_membership(body.organization_id, user.user_id) is None:
            return error_response(403, "Forbidden - Not a member of this organization")

    try:
        key, api_key = services.api_keys.create_api_key(
            user.user_id,
            body.name,
            organization_id=body.organization_id,
            permissions=body.permissions,
            expires_at=body.expires_at,
        )
    except Exception as e:
        logger.error(f"Failed to create API key: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to create API key")

    audit(
        request,
        AuditAction.API_KEY_CREATE,
        AuditResource.API_KEY,
        user_id=user.user_id,
        organization_id=body.organization_id,
        resource_id=api_key.key_id,
        details={"name": api_key.name, "permissions": api_key.permissions},
    )
    return json_response({"key": key, "apiKey": api_key}, status_code=201)


@router.get("/api/dev/api-keys/{key_id}")
@require_permission("apiKey", "read:own")
async def get_api_key(request: Request, user: User, context: UserContext) -> Response:
    api_key = owned_api_key(request, context, request.path_params["key_id"], "read")
    return json_response({"apiKey": api_key})


@router.put("/api/dev/api-keys/{key_id}")
@require_permission("apiKey", "update:own")
async def update_api_key(request: Request, user: User, context: UserContext) -> Response:
    """Change name, permissions, active flag or expiry (``null`` clears it)."""
    key_id = request.path_params["key_id"]
    owned_api_key(request, context, key_id, "update")
    body = await parse_body(request, UpdateApiKeyRequest)

    updates = body.model_dump(exclude_unset=True, exclude={"expires_at"})
    if "expires_at" in body.model_fields_set:
        updates["expires_at"] = body.expires_at

    updated = get_services(request).api_keys.update_api_key(key_id, **updates)
    if updated is None:
        raise NotFoundError("API key not found")

    audit(
        request,
        AuditAction.API_KEY_UPDATE,
        AuditResource.API_KEY,
        user_id=user.user_id,
        resource_id=key_id,
        details={"fields": sorted(updates)},
    )
    return json_response({"apiKey": updated})


@router.delete("/api/dev/api-keys/{key_id}")
@require_permission("apiKey", "delete:own")
async def delete_api_key(request: Request, user: User, context: UserContext) -> Response:
    key_id = request.path_params["key_id"]
    api_key = owned_api_key(request, context, key_id, "delete")

    if not get_services(request).api_keys.delete_api_key(key_id):
        raise NotFoundError("API key not found")

    audit(
        request,
        AuditAction.API_KEY_DELETE,
        AuditResource.API_KEY,
        user_id=user.user_id,
        resource_id=key_id,
        details={"name": api_key.name},
    )
    return json_response({"success": True})


@router.post("/api/dev/api-keys/{key_id}/rotate")
@require_permission("apiKey", "update:own")
async def rotate_api_key(request: Request, user: User, context: UserContext) -> Response:
    """Replace a key's secret; the old plaintext stops working immediately."""
    key_id = request.path_params["key_id"]
    owned_api_key(request, context, key_id, "update")

    rotated = get_services(request).api_keys.rotate_api_key(key_id)
    if rotated is None:
        raise NotFoundError("API key not found")

    key, api_key = rotated
    audit(
        request,
        AuditAction.API_KEY_ROTATE,
        AuditResource.API_KEY,
        user_id=user.user_id,
        resource_id=key_id,
    )
    return json_response({"key": key, "apiKey": api_key})


# Organizations
@router.get("/api/organizations")
@require_auth
async def list_organizations(request: Request, user: User) -> Response:
    memberships = get_services(request).organizations.get_user_organizations(user.user_id)
    return json_response(
        {
            "organizations": [
                {**organization.model_dump(mode="json"), "role": role}
                for organization, role in memberships
            ]
        }
    )


@router.post("/api/organizations")
@require_auth
async def create_organization(request: Request, user: User) -> Response:
    """Create an organization owned by the caller."""
    body = await parse_body(request, CreateOrganizationRequest)
    try:
        organization = get_services(request).organizations.create_organization(
            user.user_id,
            body.name,
            body.slug,
            description=body.description,
            website=body.website,
        )
    except (HTTPException, TenantAuthError):
        raise
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid organization: {e}")
    return json_response({"organization": organization}, status_code=201)


@router.get("/api/organizations/{organization_id}")
@require_organization
async def get_organization(request: Request, user: User, organization_id: str) -> Response:
    organization = get_services(request).organizations.get_organization(organization_id)
    if organization is None:
        raise NotFoundError("Organization not found")
    return json_response({"organization": organization})


@router.put("/api/organizations/{organization_id}")
@require_permission("organization", "update:own")
async def update_organization(request: Request, user: User, context: UserContext) -> Response:
    body = await parse_body(request, UpdateOrganizationRequest)
    organization = get_services(request).organizations.update_organization(
        request.path_params["organization_id"],
        updated_by=user.user_id,
        **body.model_dump(exclude_unset=True),
    )
    return json_response({"organization": organization})


@router.delete("/api/organizations/{organization_id}")
@require_permission("organization", "delete:own")
async def delete_organization(request: Request, user: User, context: UserContext) -> Response:
    organization_id = request.path_params["organization_id"]
    if not get_services(request).organizations.delete_organization(
        organization_id, deleted_by=user.user_id
    ):
        raise NotFoundError("Organization not found")
    return json_response({"success": True})


@router.post("/api/organizations/{organization_id}/invite")
@require_permission("organizationInvite", "create:own")
async def invite_member(request: Request, user: User, context: UserContext) -> Response:
    """Invite an address into the organization as admin or member."""
    body = await parse_body(request, InviteRequest)
    invite, email_sent = await get_services(request).organizations.invite_member(
        request.path_params["organization_id"], body.email, body.role, invited_by=user.user_id
    )
    return json_response({"invite": invite, "emailSent": email_sent}, status_code=201)


@router.get("/api/organizations/{organization_id}/invites")
@require_permission("organizationInvite", "read:own")
async def list_invites(request: Request, user: User, context: UserContext) -> Response:
    invites = get_services(request).organizations.list_pending_invites(
        request.path_params["organization_id"]
    )
    return json_response({"invites": invites})


@router.delete("/api/organizations/{organization_id}/invites/{invite_id}")
@require_permission("organizationInvite", "delete:own")
async def cancel_invite(request: Request, user: User, context: UserContext) -> Response:
    if not get_services(request).organizations.cancel_invite(
        request.path_params["organization_id"],
        request.path_params["invite_id"],
        cancelled_by=user.user_id,
    ):
        raise NotFoundError("Invite not found")
    return json_response({"success": True})


@router.patch("/api/organizations/{organization_id}/members/{member_id}")
@require_permission("organizationMember", "update:own")
async def update_member(request: Request, user: User, context: UserContext) -> Response:
    """Change a member's role. Only owners may grant or revoke ownership."""
    body = await parse_body(request, MemberRoleRequest)
    member = get_services(request).organizations.update_member_role(
        request.path_params["organization_id"],
        request.path_params["member_id"],
        body.role,
        actor_role=actor_organization_role(context),
        actor_id=user.user_id,
    )
    return json_response({"member": member})


@router.delete("/api/organizations/{organization_id}/members/{member_id}")
@require_permission("organizationMember", "delete:own")
async def remove_member(request: Request, user: User, context: UserContext) -> Response:
    get_services(request).organizations.remove_member(
        request.path_params["organization_id"],
        request.path_params["member_id"],
        actor_role=actor_organization_role(context),
        actor_id=user.user_id,
    )
    return json_response({"success": True})


@router.post("/api/invites/{token}/accept")
@require_auth
async def accept_invite(request: Request, user: User) -> Response:
    if not get_services(request).organizations.accept_invite(
        request.path_params["token"], user.user_id
    ):
        return error_response(400, "Invalid or expired invitation")
    return json_response({"success": True})


# Administration
@router.get("/api/admin/audit-logs")
@require_role(Role.ADMIN)
async def list_audit_logs(request: Request, user: User) -> Response:
    """Audit events, filtered by ``userId``, ``organizationId`` and ``action``."""
    params = request.query_params
    action = params.get("action")
    logs = get_services(request).audit.get_audit_logs(
        user_id=params.get("userId"),
        organization_id=params.get("organizationId"),
        actions=[action] if action else None,
        limit=query_int(request, "limit", 100, 1, 500),
        offset=query_int(request, "offset", 0, 0, 1_000_000),
    )
    return json_response({"logs": logs, "count": len(logs)})


@router.get("/api/admin/users")
@require_role(Role.ADMIN)
async def list_users(request: Request, user: User) -> Response:
    users = get_services(request).users.list_users(
        limit=query_int(request, "limit", 100, 1, 500),
        offset=query_int(request, "offset", 0, 0, 1_000_000),
    )
    return json_response({"users": [u.public() for u in users]})


@router.patch("/api/admin/users/{user_id}")
@require_permission("user", "update:all")
async def update_user(request: Request, user: User, context: UserContext) -> Response:
    """Change a user's global role or deactivate the account."""
    body = await parse_body(request, UpdateUserRequest)
    target_id = request.path_params["user_id"]
    users = get_services(request).users

    target = users.get_user(target_id)
    if target is None:
        raise NotFoundError("User not found")

    touches_super_admin = Role.SUPER_ADMIN.value in (role_name(target.role), body.role)
    if touches_super_admin and not is_super_admin(context):
        raise AuthorizationError(
            required=Role.SUPER_ADMIN.value, current=role_name(context.role)
        )

    if body.role is not None:
        target = users.update_user_role(target_id, body.role, changed_by=user.user_id)
    if body.is_active is False:
        target = users.deactivate_user(target_id, changed_by=user.user_id)
    elif body.is_active:
        raise HTTPException(status_code=400, detail="Reactivating accounts is not supported")

    return json_response({"user": target.public()})


# API-key authenticated endpoints
@router.get("/api/v1/whoami")
@require_api_key("apiKey", "read")
async def whoami(request: Request, api_context: ApiKeyContext) -> Response:
    """Identity behind the presented API key."""
    return json_response(
        {
            "apiKeyId": api_context.api_key_id,
            "userId": api_context.user_id,
            "organizationId": api_context.organization_id,
            "permissions": list(api_context.permissions),
        }
    )


def create_app(
    config: Optional[Config] = None,
    db_path: Optional[str] = None,
    configure_logging: bool = True,
) -> FastAPI:
    """Build the application.

    Args:
        config: Configuration (process-wide config if None)
        db_path: Database path override
        configure_logging: Install file and console logging at startup

    Returns:
        FastAPI application with services attached to ``app.state``
    """
    config = config or get_config()
    services = build_services(config, db_path=db_path)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler for startup and shutdown events."""
        if configure_logging:
            log_dir = Path(config.get("logging.directory", "logs"))
            level = getattr(logging, str(config.get("logging.level", "INFO")).upper(), logging.INFO)
            services.audit.audit_logger = configure_comprehensive_logging(
                log_dir=log_dir,
                level=level,
                use_json=bool(config.get("logging.json_format", False)),
                console_output=True,
            )

        logger.info("tenantauth API starting up...")
        logger.info(f"Database: {services.store.db_path}")

        yield

        logger.info("tenantauth API shutting down...")

    app = FastAPI(
        title="tenantauth API",
        description="Authentication and access control for a multi-tenant SaaS service",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.get("api.cors_origins", ["*"]),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)
    app.include_router(router)
    return app


def main() -> None:
    """Run the API server."""
    config = get_config()
    uvicorn.run(
        create_app(config),
        host=config.get("api.host", "127.0.0.1"),
        port=int(config.get("api.port", 8000)),
    )
