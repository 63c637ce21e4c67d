from __future__ import annotations

from enum import IntEnum
from typing import Dict, Iterable, List, Optional, Protocol, Tuple

from pmoguard.logging import get_logger
from pmoguard.service.audit import AuditEvent, AuditSink, LoggingAuditSink
from pmoguard.service.errors import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
)
from pmoguard.service.guards import RoleGuard
from pmoguard.service.tenancy import TenantContext, require_tenant
from pmoguard.storage.errors import ConstraintViolation, RecordNotFound
from pmoguard.storage.models import (
    Project,
    ProjectMembership,
    ProjectRole,
    ProjectVisibility,
    TenantMembership,
    User,
)

logger = get_logger(__name__)


class AccessLevel(IntEnum):
    """Ordered access a single identity holds over a single project."""

    NONE = 0
    VIEW = 1
    EDIT = 2
    ADMIN = 3


PROJECT_ROLE_LEVELS: Dict[ProjectRole, AccessLevel] = {
    ProjectRole.ADMIN: AccessLevel.ADMIN,
    ProjectRole.EDIT: AccessLevel.EDIT,
    ProjectRole.VIEW_ONLY: AccessLevel.VIEW,
}


def resolve_access_level(
    project: Project,
    user_id: str,
    membership: Optional[ProjectMembership] = None,
    *,
    tenant_member: bool = True,
) -> AccessLevel:
    """Compute the caller's level over ``project``.

    The owner is always ADMIN. Otherwise visibility decides: PRIVATE grants
    nothing, TEAM maps the caller's project role, and TENANT gives VIEW to
    members of the project's tenant. Projects carrying the legacy
    tenant-sharing flag were stored as TENANT, so they land on VIEW too.
    """
    if project.owner_id == user_id:
        return AccessLevel.ADMIN
    if project.visibility == ProjectVisibility.PRIVATE:
        return AccessLevel.NONE
    if project.visibility == ProjectVisibility.TEAM:
        if membership is None or membership.user_id != user_id:
            return AccessLevel.NONE
        return PROJECT_ROLE_LEVELS[membership.role]
    if project.visibility == ProjectVisibility.TENANT:
        return AccessLevel.VIEW if tenant_member else AccessLevel.NONE
    return AccessLevel.NONE


def has_access(level: AccessLevel) -> bool:
    return level != AccessLevel.NONE


def can_edit(level: AccessLevel) -> bool:
    return level in (AccessLevel.EDIT, AccessLevel.ADMIN)


def has_admin_access(level: AccessLevel) -> bool:
    return level == AccessLevel.ADMIN


class ProjectStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_tenant_membership(self, tenant_id: str, user_id: str) -> Optional[TenantMembership]: ...

    def create_project(self, tenant_id: str, owner_id: str, name: str, **kwargs) -> Project: ...

    def get_project(self, tenant_id: str, project_id: str) -> Optional[Project]: ...

    def list_projects(self, tenant_id: str) -> List[Project]: ...

    def update_project_visibility(self, tenant_id: str, project_id: str, visibility: ProjectVisibility | str) -> Project: ...

    def add_project_member(self, tenant_id: str, project_id: str, user_id: str, role: ProjectRole | str = ...) -> ProjectMembership: ...

    def add_project_members(self, tenant_id: str, project_id: str, members: Iterable[Tuple[str, ProjectRole | str]]) -> List[ProjectMembership]: ...

    def get_project_membership(self, tenant_id: str, project_id: str, user_id: str) -> Optional[ProjectMembership]: ...

    def list_project_members(self, tenant_id: str, project_id: str) -> List[ProjectMembership]: ...

    def update_project_member_role(self, tenant_id: str, project_id: str, user_id: str, role: ProjectRole | str) -> Optional[ProjectMembership]: ...

    def remove_project_member(self, tenant_id: str, project_id: str, user_id: str) -> bool: ...


class ProjectAccessService:
    """Tenant-scoped project lookups gated by the caller's access level.

    A project outside the active tenant, or one the caller has no access to,
    is reported as not found so its existence does not leak. A caller who can
    see the project but lacks the level an operation needs gets Forbidden.
    """

    def __init__(
        self,
        store: ProjectStore,
        guard: RoleGuard,
        *,
        audit: Optional[AuditSink] = None,
    ) -> None:
        self.store = store
        self.guard = guard
        self.audit: AuditSink = audit or LoggingAuditSink()

    def level_for(self, user: User, project: Project) -> AccessLevel:
        membership = None
        if project.visibility == ProjectVisibility.TEAM:
            membership = self.store.get_project_membership(project.tenant_id, project.id, user.id)
        tenant_member = (
            project.visibility == ProjectVisibility.TENANT
            and self.guard.is_tenant_member(user, project.tenant_id)
        )
        return resolve_access_level(project, user.id, membership, tenant_member=tenant_member)

    def load(
        self,
        user_id: Optional[str],
        tenant: Optional[TenantContext],
        project_id: str,
        *,
        need: AccessLevel = AccessLevel.VIEW,
    ) -> Tuple[Project, AccessLevel]:
        context = require_tenant(tenant)
        user = self.guard.load_user(user_id)
        project = self.store.get_project(context.tenant_id, project_id)
        if project is None:
            raise NotFoundError("project not found")
        level = self.level_for(user, project)
        allowed = level >= need and has_access(level)
        self.audit.record(
            AuditEvent(
                action="access_decision",
                user_id=user.id,
                tenant_id=context.tenant_id,
                resource=f"project:{project.id}",
                outcome="allowed" if allowed else "denied",
                details={"level": level.name, "required": need.name},
            )
        )
        if not has_access(level):
            raise NotFoundError("project not found")
        if level < need:
            raise ForbiddenError("insufficient project access")
        return project, level

    def create_project(
        self,
        user_id: str,
        tenant: Optional[TenantContext],
        name: str,
        *,
        visibility: ProjectVisibility = ProjectVisibility.PRIVATE,
        legacy_shared_with_tenant: bool = False,
    ) -> Project:
        context = require_tenant(tenant)
        project = self.store.create_project(
            context.tenant_id,
            user_id,
            name,
            visibility=visibility,
            legacy_shared_with_tenant=legacy_shared_with_tenant,
        )
        logger.info(
            "project_created",
            project_id=project.id,
            tenant_id=context.tenant_id,
            visibility=project.visibility.value,
        )
        return project

    def list_accessible(
        self, user_id: Optional[str], tenant: Optional[TenantContext]
    ) -> List[Tuple[Project, AccessLevel]]:
        context = require_tenant(tenant)
        user = self.guard.load_user(user_id)
        results = []
        for project in self.store.list_projects(context.tenant_id):
            level = self.level_for(user, project)
            if has_access(level):
                results.append((project, level))
        return results

    def update_visibility(
        self,
        user_id: Optional[str],
        tenant: Optional[TenantContext],
        project_id: str,
        visibility: ProjectVisibility,
    ) -> Project:
        project, _ = self.load(user_id, tenant, project_id, need=AccessLevel.ADMIN)
        updated = self.store.update_project_visibility(project.tenant_id, project.id, visibility)
        logger.info("project_visibility_updated", project_id=project.id, visibility=visibility.value)
        return updated

    # -- membership management --------------------------------------------

    def list_members(
        self, user_id: Optional[str], tenant: Optional[TenantContext], project_id: str
    ) -> List[ProjectMembership]:
        project, _ = self.load(user_id, tenant, project_id)
        return self.store.list_project_members(project.tenant_id, project.id)

    def add_member(
        self,
        user_id: Optional[str],
        tenant: Optional[TenantContext],
        project_id: str,
        member_id: str,
        role: ProjectRole = ProjectRole.VIEW_ONLY,
    ) -> ProjectMembership:
        project, _ = self.load(user_id, tenant, project_id, need=AccessLevel.ADMIN)
        return self._add_member(project, member_id, role)

    def bulk_add_members(
        self,
        user_id: Optional[str],
        tenant: Optional[TenantContext],
        project_id: str,
        members: Iterable[Tuple[str, ProjectRole]],
    ) -> List[ProjectMembership]:
        """Add several members at once; all are validated before any is written.

        Existing task assignments are not re-validated here.
        """
        project, _ = self.load(user_id, tenant, project_id, need=AccessLevel.ADMIN)
        pending = list(dict(members).items())
        for member_id, _role in pending:
            self._check_candidate(project, member_id)
        try:
            added = self.store.add_project_members(project.tenant_id, project.id, pending)
        except RecordNotFound as exc:
            raise NotFoundError(f"{exc.kind} not found") from exc
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        logger.info("project_members_added", project_id=project.id, count=len(added))
        return added

    def update_member_role(
        self,
        user_id: Optional[str],
        tenant: Optional[TenantContext],
        project_id: str,
        member_id: str,
        role: ProjectRole,
    ) -> ProjectMembership:
        project, _ = self.load(user_id, tenant, project_id, need=AccessLevel.ADMIN)
        membership = self.store.update_project_member_role(project.tenant_id, project.id, member_id, role)
        if membership is None:
            raise NotFoundError("project member not found")
        logger.info("project_member_role_updated", project_id=project.id, user_id=member_id, role=role.value)
        return membership

    def remove_member(
        self,
        user_id: Optional[str],
        tenant: Optional[TenantContext],
        project_id: str,
        member_id: str,
    ) -> None:
        project, _ = self.load(user_id, tenant, project_id, need=AccessLevel.ADMIN)
        if not self.store.remove_project_member(project.tenant_id, project.id, member_id):
            raise NotFoundError("project member not found")
        logger.info("project_member_removed", project_id=project.id, user_id=member_id)

    def _check_candidate(self, project: Project, member_id: str) -> None:
        if member_id == project.owner_id:
            raise BadRequestError("project owner cannot be added as a member")
        if self.store.get_tenant_membership(project.tenant_id, member_id) is None:
            raise BadRequestError(
                "user is not a member of this tenant", detail={"user_id": member_id}
            )

    def _add_member(self, project: Project, member_id: str, role: ProjectRole) -> ProjectMembership:
        self._check_candidate(project, member_id)
        try:
            membership = self.store.add_project_member(project.tenant_id, project.id, member_id, role)
        except RecordNotFound as exc:
            raise NotFoundError(f"{exc.kind} not found") from exc
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        logger.info("project_member_added", project_id=project.id, user_id=member_id, role=role.value)
        return membership
