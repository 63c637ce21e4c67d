from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from pmoguard.storage.models import (
    GlobalRole,
    Project,
    ProjectMembership,
    ProjectRole,
    ProjectVisibility,
    Task,
    Tenant,
    TenantMembership,
    TenantRole,
    User,
)

# Maximum members accepted by one bulk-add call
MAX_BULK_MEMBERS = 200

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_token",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "tenant_context_missing",
    "invalid_assignees",
    "invalid_parent",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable ``code``."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_SLUG_PATTERN = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


# -- auth -----------------------------------------------------------------


class LoginRequest(BaseModel):
    # Not format-validated: a malformed email is just another failed login
    email: str = Field(..., min_length=1, max_length=254)
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _normalize_login_email(cls, value: str) -> str:
        return _normalize_unicode(value.strip().lower())


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_password_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class PasswordChangeRequest(BaseModel):
    """Request to change password (requires current password)."""

    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_changed_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class UserResponse(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    role: GlobalRole
    created_at: datetime

    @classmethod
    def from_model(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            role=user.role,
            created_at=user.created_at,
        )


class TenantResponse(BaseModel):
    id: str
    slug: str
    name: str
    domain_aliases: List[str] = Field(default_factory=list)
    role: Optional[TenantRole] = None

    @classmethod
    def from_model(
        cls, tenant: Tenant, membership: Optional[TenantMembership] = None
    ) -> "TenantResponse":
        return cls(
            id=tenant.id,
            slug=tenant.slug,
            name=tenant.name,
            domain_aliases=list(tenant.domain_aliases),
            role=membership.role if membership else None,
        )


class SessionResponse(BaseModel):
    """Body of /auth/login and /auth/me; ``token`` mirrors the cookie."""

    user: Optional[UserResponse] = None
    tenant: Optional[TenantResponse] = None
    token: Optional[str] = None


# -- tenants --------------------------------------------------------------


class TenantCreateRequest(BaseModel):
    slug: str = Field(..., min_length=1, max_length=63)
    name: Optional[str] = Field(default=None, max_length=200)
    domain_aliases: List[str] = Field(default_factory=list, max_length=20)

    @field_validator("slug")
    @classmethod
    def _validate_slug(cls, value: str) -> str:
        normalized = value.strip().lower()
        if not _SLUG_PATTERN.match(normalized):
            raise ValueError("slug must be lowercase letters, digits and hyphens")
        return normalized


class TenantMemberRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=128)
    role: TenantRole = TenantRole.MEMBER


class TenantMemberRoleRequest(BaseModel):
    role: TenantRole


class TenantMemberResponse(BaseModel):
    tenant_id: str
    user_id: str
    role: TenantRole
    created_at: datetime

    @classmethod
    def from_model(cls, membership: TenantMembership) -> "TenantMemberResponse":
        return cls(
            tenant_id=membership.tenant_id,
            user_id=membership.user_id,
            role=membership.role,
            created_at=membership.created_at,
        )


class UserRoleRequest(BaseModel):
    role: GlobalRole


# -- projects -------------------------------------------------------------


class ProjectCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    visibility: ProjectVisibility = ProjectVisibility.PRIVATE
    # accepted from older clients; folded into visibility on write
    is_shared_with_tenant: bool = False


class ProjectVisibilityRequest(BaseModel):
    visibility: ProjectVisibility


class ProjectResponse(BaseModel):
    id: str
    tenant_id: str
    owner_id: str
    name: str
    visibility: ProjectVisibility
    access_level: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_model(cls, project: Project, level: Any = None) -> "ProjectResponse":
        return cls(
            id=project.id,
            tenant_id=project.tenant_id,
            owner_id=project.owner_id,
            name=project.name,
            visibility=project.visibility,
            access_level=level.name if level is not None else None,
            created_at=project.created_at,
        )


class ProjectMemberRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=128)
    role: ProjectRole = ProjectRole.VIEW_ONLY


class ProjectMemberBulkRequest(BaseModel):
    members: List[ProjectMemberRequest] = Field(..., min_length=1, max_length=MAX_BULK_MEMBERS)


class ProjectMemberRoleRequest(BaseModel):
    role: ProjectRole


class ProjectMemberResponse(BaseModel):
    project_id: str
    user_id: str
    role: ProjectRole
    created_at: datetime

    @classmethod
    def from_model(cls, membership: ProjectMembership) -> "ProjectMemberResponse":
        return cls(
            project_id=membership.project_id,
            user_id=membership.user_id,
            role=membership.role,
            created_at=membership.created_at,
        )


# -- tasks ----------------------------------------------------------------


class TaskCreateRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)
    assignees: List[str] = Field(default_factory=list, max_length=100)
    parent_task_id: Optional[str] = Field(default=None, max_length=128)


class TaskAssigneesRequest(BaseModel):
    assignees: List[str] = Field(default_factory=list, max_length=100)


class TaskResponse(BaseModel):
    id: str
    project_id: str
    owner_id: str
    title: str
    parent_task_id: Optional[str] = None
    assignees: List[str] = Field(default_factory=list)
    created_at: datetime

    @classmethod
    def from_model(cls, task: Task) -> "TaskResponse":
        return cls(
            id=task.id,
            project_id=task.project_id,
            owner_id=task.owner_id,
            title=task.title,
            parent_task_id=task.parent_task_id,
            assignees=list(task.assignees),
            created_at=task.created_at,
        )
