from __future__ import annotations

from typing import Iterable, List, Optional, Protocol, Set

from pmoguard.logging import get_logger
from pmoguard.service.access import AccessLevel, ProjectAccessService
from pmoguard.service.errors import InvalidAssigneesError, InvalidParentError, NotFoundError
from pmoguard.service.tenancy import TenantContext, require_tenant
from pmoguard.storage.models import Project, ProjectMembership, Task

logger = get_logger(__name__)


def eligible_assignees(project: Project, members: Iterable[ProjectMembership]) -> Set[str]:
    """Owner plus every project member, whatever their project role."""
    return {project.owner_id} | {m.user_id for m in members}


def validate_assignees(
    project: Project, members: Iterable[ProjectMembership], proposed: Iterable[str]
) -> List[str]:
    """Return ``proposed`` de-duplicated, or raise with the ids that are not eligible."""
    candidates = list(dict.fromkeys(proposed))
    valid = eligible_assignees(project, members)
    invalid = [user_id for user_id in candidates if user_id not in valid]
    if invalid:
        raise InvalidAssigneesError(invalid)
    return candidates


def validate_parent(project: Project, parent: Optional[Task]) -> None:
    """Subtasks nest one level deep and stay inside their parent's project."""
    if parent is None:
        raise InvalidParentError("parent task not found")
    if parent.project_id != project.id:
        raise InvalidParentError("parent task belongs to another project")
    if parent.is_subtask:
        raise InvalidParentError("subtasks cannot have subtasks")


class TaskStore(Protocol):
    def list_project_members(self, tenant_id: str, project_id: str) -> List[ProjectMembership]: ...

    def create_task(self, tenant_id: str, project_id: str, owner_id: str, title: str, **kwargs) -> Task: ...

    def get_task(self, tenant_id: str, task_id: str) -> Optional[Task]: ...

    def list_tasks(self, tenant_id: str, project_id: str) -> List[Task]: ...

    def update_task_assignees(self, tenant_id: str, task_id: str, assignees: Iterable[str]) -> Task: ...


class TaskService:
    """Task creation and assignment, validated against project membership."""

    def __init__(self, store: TaskStore, access: ProjectAccessService) -> None:
        self.store = store
        self.access = access

    def create_task(
        self,
        user_id: Optional[str],
        tenant: Optional[TenantContext],
        project_id: str,
        title: str,
        *,
        assignees: Iterable[str] = (),
        parent_task_id: Optional[str] = None,
    ) -> Task:
        project, _ = self.access.load(user_id, tenant, project_id, need=AccessLevel.EDIT)
        if parent_task_id is not None:
            validate_parent(project, self.store.get_task(project.tenant_id, parent_task_id))
        members = self.store.list_project_members(project.tenant_id, project.id)
        checked = validate_assignees(project, members, assignees)
        task = self.store.create_task(
            project.tenant_id,
            project.id,
            user_id,
            title,
            parent_task_id=parent_task_id,
            assignees=checked,
        )
        logger.info(
            "task_created",
            task_id=task.id,
            project_id=project.id,
            subtask=task.is_subtask,
            assignee_count=len(checked),
        )
        return task

    def list_tasks(
        self, user_id: Optional[str], tenant: Optional[TenantContext], project_id: str
    ) -> List[Task]:
        project, _ = self.access.load(user_id, tenant, project_id)
        return self.store.list_tasks(project.tenant_id, project.id)

    def set_assignees(
        self,
        user_id: Optional[str],
        tenant: Optional[TenantContext],
        task_id: str,
        assignees: Iterable[str],
    ) -> Task:
        context = require_tenant(tenant)
        task = self.store.get_task(context.tenant_id, task_id)
        if task is None:
            raise NotFoundError("task not found")
        project, _ = self.access.load(user_id, context, task.project_id, need=AccessLevel.EDIT)
        members = self.store.list_project_members(project.tenant_id, project.id)
        checked = validate_assignees(project, members, assignees)
        updated = self.store.update_task_assignees(context.tenant_id, task.id, checked)
        logger.info("task_assignees_updated", task_id=task.id, assignee_count=len(checked))
        return updated
