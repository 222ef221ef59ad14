"""
API request and response models for the Staffwise identity REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.audit import AuditAction
from auth.models import AuditLogEntry, Role, User

USERNAME_PATTERN = r"^[a-zA-Z0-9_]+$"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=3, max_length=20, pattern=USERNAME_PATTERN)
    password: str = Field(min_length=6, max_length=100)
    remember: bool = False


class UserCreate(BaseModel):
    """Request body for POST /api/v1/users (admin only)."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=3, max_length=20, pattern=USERNAME_PATTERN)
    email: str = Field(min_length=3, max_length=100, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    name: Optional[str] = Field(default=None, max_length=40)
    password: Optional[str] = Field(default=None, min_length=6, max_length=100)
    roles: list[str] = Field(default_factory=lambda: ["user"], max_length=20)


class UserRolesPatch(BaseModel):
    """Request body for PUT /api/v1/users/{id}/roles -- replaces the role list."""

    roles: list[str] = Field(max_length=20)

    @field_validator("roles", mode="before")
    @classmethod
    def dedupe(cls, values: list) -> list[str]:
        """Drop duplicates, keep the first occurrence's position."""
        return list(dict.fromkeys(str(v) for v in values))


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class PermissionResponse(BaseModel):
    entity: str
    action: str
    access: str


class RoleResponse(BaseModel):
    name: str
    description: str
    permissions: list[PermissionResponse] = Field(default_factory=list)

    @classmethod
    def from_role(cls, role: Role) -> "RoleResponse":
        return cls(
            name=role.name,
            description=role.description,
            permissions=[PermissionResponse(entity=p.entity, action=p.action, access=p.access) for p in role.permissions],
        )


class UserResponse(BaseModel):
    id: int
    username: str
    email: str
    name: Optional[str] = None
    image_url: Optional[str] = None
    roles: list[str] = Field(default_factory=list)
    created_at: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            name=user.name,
            image_url=user.image_url,
            roles=[r.name for r in user.roles],
            created_at=user.created_at,
        )


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"  # noqa: S105 # nosec B105 -- OAuth token type, not a password
    expires_at: str
    user: UserResponse


class MeResponse(UserResponse):
    permissions: list[str] = Field(default_factory=list, description="'action:entity:access' strings")

    @classmethod
    def from_user(cls, user: User) -> "MeResponse":
        base = UserResponse.from_user(user).model_dump()
        perms = sorted({f"{p.action}:{p.entity}:{p.access}" for r in user.roles for p in r.permissions})
        return cls(**base, permissions=perms)


class ProviderInfo(BaseModel):
    name: str
    label: str


class AuditLogResponse(BaseModel):
    id: int
    user_id: int
    action: AuditAction
    entity: str
    details: Optional[dict] = None
    created_at: str

    @classmethod
    def from_entry(cls, entry: AuditLogEntry) -> "AuditLogResponse":
        return cls(
            id=entry.id,
            user_id=entry.user_id,
            action=entry.action,
            entity=entry.entity,
            details=entry.details,
            created_at=entry.created_at,
        )


class ErrorDetail(BaseModel):
    """Structured error detail returned in all API error responses.

    Provides a consistent envelope so clients can handle errors uniformly.
    """

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope for all API error responses.

    All error responses share this shape: {"error": {"code": ..., "message": ...}}
    """

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response body for GET /api/v1/health.

    Used by load balancers and monitoring systems to verify the API is alive.
    """

    status: str = "ok"
    version: str
