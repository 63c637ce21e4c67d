from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class GlobalRole(str, Enum):
    """Platform-wide authority, independent of tenant."""

    USER = "USER"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"


class TenantRole(str, Enum):
    """Authority within a single tenant."""

    OWNER = "OWNER"
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"
    VIEWER = "VIEWER"


class ProjectVisibility(str, Enum):
    PRIVATE = "PRIVATE"
    TEAM = "TEAM"
    TENANT = "TENANT"


class ProjectRole(str, Enum):
    ADMIN = "ADMIN"
    EDIT = "EDIT"
    VIEW_ONLY = "VIEW_ONLY"


@dataclass
class User:
    id: str
    email: str
    name: Optional[str] = None
    role: GlobalRole = GlobalRole.USER
    created_at: datetime = field(default_factory=utcnow)
    is_active: bool = True


@dataclass
class Tenant:
    id: str
    slug: str
    name: str
    domain_aliases: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class TenantMembership:
    tenant_id: str
    user_id: str
    role: TenantRole = TenantRole.MEMBER
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Project:
    """A tenant-scoped project.

    ``visibility`` is always the effective sharing mode: the legacy
    ``isSharedWithTenant`` flag is folded into it when rows enter the store
    (see ``effective_visibility``), so callers never consult the flag.
    """

    id: str
    tenant_id: str
    owner_id: str
    name: str
    visibility: ProjectVisibility = ProjectVisibility.PRIVATE
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class ProjectMembership:
    project_id: str
    user_id: str
    role: ProjectRole = ProjectRole.VIEW_ONLY
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Task:
    id: str
    tenant_id: str
    project_id: str
    owner_id: str
    title: str
    parent_task_id: Optional[str] = None
    assignees: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    @property
    def is_subtask(self) -> bool:
        return self.parent_task_id is not None


def effective_visibility(
    visibility: ProjectVisibility | str | None, legacy_shared_with_tenant: bool = False
) -> ProjectVisibility:
    """Fold the legacy tenant-sharing flag into the visibility variant.

    PRIVATE with the flag set behaves as TENANT-wide read access; any other
    explicit visibility wins over the flag.
    """
    resolved = ProjectVisibility(visibility) if visibility else ProjectVisibility.PRIVATE
    if resolved == ProjectVisibility.PRIVATE and legacy_shared_with_tenant:
        return ProjectVisibility.TENANT
    return resolved
