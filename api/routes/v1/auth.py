"""
api/routes/v1/auth.py -- Authentication and user management REST endpoints.

Routes:
  POST   /api/v1/auth/login                -- password login; sets session cookie, returns token
  POST   /api/v1/auth/logout               -- audit LOGOUT, destroy session; 200
  GET    /api/v1/auth/me                   -- current user, roles and permissions (requires auth)
  GET    /api/v1/auth/providers            -- list enabled identity providers (public)
  GET    /api/v1/auth/connections          -- the caller's provider connections (requires auth)
  DELETE /api/v1/auth/connections/{id}     -- unlink a provider (requires auth, ownership checked)
  POST   /api/v1/users                     -- create user (create:user:any)
  GET    /api/v1/users                     -- list users (read:user:any)
  GET    /api/v1/users/{id}                -- one user (read:user, own or any)
  PUT    /api/v1/users/{id}/roles          -- replace role list (admin role)
  GET    /api/v1/roles                     -- roles with permissions (read:role:any)
  GET    /api/v1/audit-logs                -- newest-first audit trail (admin role)

Security:
  [H2] POST /auth/login is rate-limited per IP, sharing one budget with the web POST /login.
  [C1] authenticate_with_password() provides timing equalization -- use it, never inline.
  [M4] PUT /users/{id}/roles blocks an admin from removing their own admin role.
  [M5] Cache-Control: no-store on login/logout responses.
  IDOR guard: DELETE /auth/connections/{id} passes user_id to the store; the store checks ownership.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from api.limiter import login_limit
from api.models import (
    AuditLogResponse,
    LoginRequest,
    LoginResponse,
    MeResponse,
    ProviderInfo,
    RoleResponse,
    UserCreate,
    UserResponse,
    UserRolesPatch,
)
from auth.audit import AuditAction
from auth.dependencies import (
    get_context,
    get_identity,
    require_user,
    require_user_with_permission,
    require_user_with_role,
)
from auth.errors import Forbidden, InvalidCredentials
from auth.models import User
from auth.permissions import user_has_permission
from auth.sessions import clear_session_cookie, set_session_cookie
from auth.tokens import hash_password

# Auth policy:
# - POST   /api/v1/auth/login:             public -- login endpoint must be unauthenticated
# - POST   /api/v1/auth/logout:            public -- destroying an absent session is a no-op
# - GET    /api/v1/auth/providers:         public -- login page calls this to render provider buttons
# - GET    /api/v1/auth/me:                requires auth (require_user)
# - GET    /api/v1/auth/connections:       requires auth (require_user)
# - DELETE /api/v1/auth/connections/{id}:  requires auth + ownership check in store
# - POST   /api/v1/users:                  create:user:any
# - GET    /api/v1/users:                  read:user:any
# - GET    /api/v1/users/{id}:             read:user own (self) or any
# - PUT    /api/v1/users/{id}/roles:       admin role
# - GET    /api/v1/roles:                  read:role:any
# - GET    /api/v1/audit-logs:             admin role
router = APIRouter()


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=LoginResponse)
@login_limit  # [H2] shared with POST /login; must sit BELOW @router
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; set the session cookie.

    Returns the same generic error for wrong username and wrong password
    ("bad_credentials") to avoid leaking username existence information.
    """
    identity = get_identity(request)
    try:
        issued = identity.login(body.username, body.password, remember=body.remember)
    except InvalidCredentials:
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": "Invalid username or password."}},
        )
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        return resp

    user = identity.store.get_by_id(issued.record.user_id)
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=issued.token,
            expires_at=issued.record.expires_at,
            user=UserResponse.from_user(user),
        ).model_dump(),
    )
    set_session_cookie(resp, issued)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/logout")
async def logout(request: Request) -> JSONResponse:
    """Destroy the server-side session and clear the cookie."""
    get_identity(request).logout(get_context(request))
    resp = JSONResponse(content={"message": "Logged out."})
    clear_session_cookie(resp)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.get("/auth/providers", response_model=list[ProviderInfo])
async def list_providers(request: Request) -> list[ProviderInfo]:
    """Return the configured identity providers. Empty when none are configured."""
    return [ProviderInfo(**p) for p in get_identity(request).providers.enabled()]


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
async def me(current_user: User = Depends(require_user)) -> MeResponse:
    return MeResponse.from_user(current_user)


@router.get("/auth/connections")
async def list_connections(request: Request, current_user: User = Depends(require_user)) -> list[dict]:
    connections = get_identity(request).store.list_connections(current_user.id)
    return [
        {"id": c.id, "provider_name": c.provider_name, "provider_id": c.provider_id, "created_at": c.created_at}
        for c in connections
    ]


@router.delete("/auth/connections/{connection_id}", status_code=204)
async def delete_connection(
    request: Request,
    connection_id: int,
    current_user: User = Depends(require_user),
) -> Response:
    """Unlink a provider account. Ownership is verified server-side [IDOR guard]."""
    identity = get_identity(request)
    if not identity.store.delete_connection(connection_id, current_user.id):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Connection not found."},
        )
    identity.audit.record(current_user.id, AuditAction.DELETE, "Connection", {"connection_id": connection_id})
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# User management
# ---------------------------------------------------------------------------


@router.post("/users", response_model=UserResponse, status_code=201)
async def create_user(
    request: Request,
    body: UserCreate,
    current_user: User = Depends(require_user_with_permission("create:user:any")),
) -> UserResponse:
    """Create a user account. A password is optional: provider-only users have none."""
    identity = get_identity(request)
    hashed_pw = hash_password(body.password) if body.password else None
    new_user = User(username=body.username, email=body.email, name=body.name)
    try:
        with identity.store.transaction() as conn:
            user_id = identity.store.create_user(new_user, password_hash=hashed_pw, role_names=body.roles, conn=conn)
            identity.audit.record(
                current_user.id, AuditAction.CREATE, "User", {"user_id": user_id, "roles": body.roles}, conn=conn
            )
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "A user with that username or email already exists."},
        ) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail={"code": "unknown_role", "message": str(exc)}) from exc
    return _user_to_response(identity.store.get_by_id(user_id))


@router.get("/users", response_model=list[UserResponse])
async def list_users(
    request: Request,
    current_user: User = Depends(require_user_with_permission("read:user:any")),
) -> list[UserResponse]:
    return [UserResponse.from_user(u) for u in get_identity(request).store.list_users()]


@router.get("/users/{user_id}", response_model=UserResponse)
async def get_user(
    request: Request,
    user_id: int,
    current_user: User = Depends(require_user),
) -> UserResponse:
    """Anyone may read their own record with read:user:own; others need read:user:any."""
    if not user_has_permission(current_user, "user", "read", owner_id=user_id):
        raise Forbidden("permissions: read:user")
    user = get_identity(request).store.get_by_id(user_id)
    if user is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "User not found."})
    return UserResponse.from_user(user)


@router.put("/users/{user_id}/roles", response_model=UserResponse)
async def set_user_roles(
    request: Request,
    user_id: int,
    body: UserRolesPatch,
    current_user: User = Depends(require_user_with_role("admin")),
) -> UserResponse:
    """Replace a user's roles. Admin only. The change and its audit row commit together."""
    identity = get_identity(request)
    target = identity.store.get_by_id(user_id)
    if target is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "User not found."})
    # [M4] Block self-demotion
    if target.id == current_user.id and "admin" not in body.roles:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_demotion", "message": "You cannot remove your own admin role."},
        )
    try:
        with identity.store.transaction() as conn:
            identity.store.set_user_roles(user_id, body.roles, conn=conn)
            identity.audit.record(
                current_user.id,
                AuditAction.UPDATE,
                "UserRoles",
                {"user_id": user_id, "before": [r.name for r in target.roles], "after": body.roles},
                conn=conn,
            )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail={"code": "unknown_role", "message": str(exc)}) from exc
    return _user_to_response(identity.store.get_by_id(user_id))


@router.get("/roles", response_model=list[RoleResponse])
async def list_roles(
    request: Request,
    current_user: User = Depends(require_user_with_permission("read:role:any")),
) -> list[RoleResponse]:
    return [RoleResponse.from_role(r) for r in get_identity(request).store.list_roles()]


@router.get("/audit-logs", response_model=list[AuditLogResponse])
async def list_audit_logs(
    request: Request,
    user_id: int | None = None,
    limit: int = 100,
    current_user: User = Depends(require_user_with_role("admin")),
) -> list[AuditLogResponse]:
    limit = max(1, min(limit, 500))
    entries = get_identity(request).store.list_audit_logs(user_id=user_id, limit=limit)
    return [AuditLogResponse.from_entry(e) for e in entries]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _user_to_response(user: User | None) -> UserResponse:
    if user is None:
        raise HTTPException(
            status_code=500,
            detail={"code": "internal_error", "message": "User not found after write."},
        )
    return UserResponse.from_user(user)
