from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from pmoguard.logging import get_logger
from pmoguard.storage.errors import ConstraintViolation, RecordNotFound
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
    effective_visibility,
    new_id,
    utcnow,
)


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def _normalize_host(host: str) -> str:
    return host.strip().lower().rstrip(".")


class MemoryStore:
    """In-process store for identities, tenants, projects and tasks.

    Every read or write of a tenant-scoped row takes the ``tenant_id`` of the
    request explicitly; rows belonging to another tenant are invisible and
    behave exactly like missing rows. When ``fs_root`` is given the full state
    is written to ``<fs_root>/state/memory_store.json`` after each mutation.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.tenants: Dict[str, Tenant] = {}
        self.tenant_memberships: Dict[Tuple[str, str], TenantMembership] = {}
        self.projects: Dict[str, Project] = {}
        self.project_memberships: Dict[Tuple[str, str], ProjectMembership] = {}
        self.tasks: Dict[str, Task] = {}
        # RLock so helpers can be called while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # -- identities -------------------------------------------------------

    def create_user(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        role: GlobalRole | str = GlobalRole.USER,
        is_active: bool = True,
    ) -> User:
        normalized = _normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=new_id(),
                email=normalized,
                name=name,
                role=GlobalRole(role),
                is_active=is_active,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = _normalize_email(email)
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def update_user_role(self, user_id: str, role: GlobalRole | str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = GlobalRole(role)
            self._persist_state()
            return user

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            self._persist_state()
            return user

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # -- tenants ----------------------------------------------------------

    def create_tenant(
        self,
        slug: str,
        name: Optional[str] = None,
        *,
        domain_aliases: Optional[Iterable[str]] = None,
        tenant_id: Optional[str] = None,
    ) -> Tenant:
        normalized_slug = slug.strip().lower()
        aliases = [_normalize_host(d) for d in (domain_aliases or []) if d.strip()]
        with self._data_lock:
            if self._tenant_by_slug(normalized_slug):
                raise ConstraintViolation("tenant slug already exists", {"field": "slug"})
            for alias in aliases:
                if self._tenant_by_domain(alias):
                    raise ConstraintViolation(
                        "domain already claimed", {"field": "domain", "domain": alias}
                    )
            tenant = Tenant(
                id=tenant_id or new_id(),
                slug=normalized_slug,
                name=name or normalized_slug,
                domain_aliases=aliases,
            )
            self.tenants[tenant.id] = tenant
            self._persist_state()
            return tenant

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            return self.tenants.get(tenant_id)

    def get_tenant_by_slug(self, slug: str) -> Optional[Tenant]:
        with self._data_lock:
            return self._tenant_by_slug(slug.strip().lower())

    def get_tenant_by_domain(self, host: str) -> Optional[Tenant]:
        with self._data_lock:
            return self._tenant_by_domain(_normalize_host(host))

    def add_domain_alias(self, tenant_id: str, domain: str) -> Tenant:
        alias = _normalize_host(domain)
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            if not tenant:
                raise RecordNotFound("tenant", tenant_id)
            owner = self._tenant_by_domain(alias)
            if owner and owner.id != tenant_id:
                raise ConstraintViolation(
                    "domain already claimed", {"field": "domain", "domain": alias}
                )
            if alias not in tenant.domain_aliases:
                tenant.domain_aliases.append(alias)
                self._persist_state()
            return tenant

    def _tenant_by_slug(self, slug: str) -> Optional[Tenant]:
        return next((t for t in self.tenants.values() if t.slug == slug), None)

    def _tenant_by_domain(self, host: str) -> Optional[Tenant]:
        return next((t for t in self.tenants.values() if host in t.domain_aliases), None)

    # -- tenant memberships -----------------------------------------------

    def add_tenant_member(
        self, tenant_id: str, user_id: str, role: TenantRole | str = TenantRole.MEMBER
    ) -> TenantMembership:
        with self._data_lock:
            if tenant_id not in self.tenants:
                raise RecordNotFound("tenant", tenant_id)
            if user_id not in self.users:
                raise RecordNotFound("user", user_id)
            key = (tenant_id, user_id)
            if key in self.tenant_memberships:
                raise ConstraintViolation(
                    "user already belongs to tenant",
                    {"tenant_id": tenant_id, "user_id": user_id},
                )
            membership = TenantMembership(
                tenant_id=tenant_id, user_id=user_id, role=TenantRole(role)
            )
            self.tenant_memberships[key] = membership
            self._persist_state()
            return membership

    def get_tenant_membership(self, tenant_id: str, user_id: str) -> Optional[TenantMembership]:
        with self._data_lock:
            return self.tenant_memberships.get((tenant_id, user_id))

    def list_tenant_members(self, tenant_id: str) -> List[TenantMembership]:
        with self._data_lock:
            members = [m for (tid, _), m in self.tenant_memberships.items() if tid == tenant_id]
            return sorted(members, key=lambda m: m.created_at)

    def list_user_tenants(self, user_id: str) -> List[Tuple[Tenant, TenantMembership]]:
        with self._data_lock:
            results = []
            for (tenant_id, member_id), membership in self.tenant_memberships.items():
                tenant = self.tenants.get(tenant_id)
                if member_id == user_id and tenant is not None:
                    results.append((tenant, membership))
            return sorted(results, key=lambda pair: pair[1].created_at)

    def update_tenant_member_role(
        self, tenant_id: str, user_id: str, role: TenantRole | str
    ) -> Optional[TenantMembership]:
        with self._data_lock:
            membership = self.tenant_memberships.get((tenant_id, user_id))
            if not membership:
                return None
            membership.role = TenantRole(role)
            self._persist_state()
            return membership

    def remove_tenant_member(self, tenant_id: str, user_id: str) -> bool:
        with self._data_lock:
            removed = self.tenant_memberships.pop((tenant_id, user_id), None)
            if removed is None:
                return False
            # project memberships inside the tenant go with the tenant membership
            for project in self._projects_in(tenant_id):
                self.project_memberships.pop((project.id, user_id), None)
            self._persist_state()
            return True

    # -- projects ---------------------------------------------------------

    def create_project(
        self,
        tenant_id: str,
        owner_id: str,
        name: str,
        *,
        visibility: ProjectVisibility | str | None = None,
        legacy_shared_with_tenant: bool = False,
    ) -> Project:
        with self._data_lock:
            if tenant_id not in self.tenants:
                raise RecordNotFound("tenant", tenant_id)
            if owner_id not in self.users:
                raise RecordNotFound("user", owner_id)
            project = Project(
                id=new_id(),
                tenant_id=tenant_id,
                owner_id=owner_id,
                name=name,
                visibility=effective_visibility(visibility, legacy_shared_with_tenant),
            )
            self.projects[project.id] = project
            self._persist_state()
            return project

    def get_project(self, tenant_id: str, project_id: str) -> Optional[Project]:
        with self._data_lock:
            project = self.projects.get(project_id)
            if project is None or project.tenant_id != tenant_id:
                return None
            return project

    def list_projects(self, tenant_id: str) -> List[Project]:
        with self._data_lock:
            return sorted(self._projects_in(tenant_id), key=lambda p: p.created_at)

    def update_project_visibility(
        self, tenant_id: str, project_id: str, visibility: ProjectVisibility | str
    ) -> Project:
        with self._data_lock:
            project = self.get_project(tenant_id, project_id)
            if project is None:
                raise RecordNotFound("project", project_id)
            project.visibility = ProjectVisibility(visibility)
            self._persist_state()
            return project

    def _projects_in(self, tenant_id: str) -> List[Project]:
        return [p for p in self.projects.values() if p.tenant_id == tenant_id]

    # -- project memberships ----------------------------------------------

    def add_project_member(
        self,
        tenant_id: str,
        project_id: str,
        user_id: str,
        role: ProjectRole | str = ProjectRole.VIEW_ONLY,
    ) -> ProjectMembership:
        with self._data_lock:
            if self.get_project(tenant_id, project_id) is None:
                raise RecordNotFound("project", project_id)
            if user_id not in self.users:
                raise RecordNotFound("user", user_id)
            key = (project_id, user_id)
            if key in self.project_memberships:
                raise ConstraintViolation(
                    "user already a project member",
                    {"project_id": project_id, "user_id": user_id},
                )
            membership = ProjectMembership(
                project_id=project_id, user_id=user_id, role=ProjectRole(role)
            )
            self.project_memberships[key] = membership
            self._persist_state()
            return membership

    def add_project_members(
        self,
        tenant_id: str,
        project_id: str,
        members: Iterable[Tuple[str, ProjectRole | str]],
    ) -> List[ProjectMembership]:
        """Insert every (user, role) pair or none of them."""
        pending = list(members)
        with self._data_lock:
            if self.get_project(tenant_id, project_id) is None:
                raise RecordNotFound("project", project_id)
            seen = set()
            for user_id, _role in pending:
                if user_id not in self.users:
                    raise RecordNotFound("user", user_id)
                if (project_id, user_id) in self.project_memberships or user_id in seen:
                    raise ConstraintViolation(
                        "user already a project member",
                        {"project_id": project_id, "user_id": user_id},
                    )
                seen.add(user_id)
            added = []
            for user_id, role in pending:
                membership = ProjectMembership(
                    project_id=project_id, user_id=user_id, role=ProjectRole(role)
                )
                self.project_memberships[(project_id, user_id)] = membership
                added.append(membership)
            self._persist_state()
            return added

    def get_project_membership(
        self, tenant_id: str, project_id: str, user_id: str
    ) -> Optional[ProjectMembership]:
        with self._data_lock:
            if self.get_project(tenant_id, project_id) is None:
                return None
            return self.project_memberships.get((project_id, user_id))

    def list_project_members(self, tenant_id: str, project_id: str) -> List[ProjectMembership]:
        with self._data_lock:
            if self.get_project(tenant_id, project_id) is None:
                return []
            members = [
                m for (pid, _), m in self.project_memberships.items() if pid == project_id
            ]
            return sorted(members, key=lambda m: m.created_at)

    def update_project_member_role(
        self, tenant_id: str, project_id: str, user_id: str, role: ProjectRole | str
    ) -> Optional[ProjectMembership]:
        with self._data_lock:
            membership = self.get_project_membership(tenant_id, project_id, user_id)
            if membership is None:
                return None
            membership.role = ProjectRole(role)
            self._persist_state()
            return membership

    def remove_project_member(self, tenant_id: str, project_id: str, user_id: str) -> bool:
        with self._data_lock:
            if self.get_project(tenant_id, project_id) is None:
                return False
            removed = self.project_memberships.pop((project_id, user_id), None)
            if removed is None:
                return False
            self._persist_state()
            return True

    # -- tasks ------------------------------------------------------------

    def create_task(
        self,
        tenant_id: str,
        project_id: str,
        owner_id: str,
        title: str,
        *,
        parent_task_id: Optional[str] = None,
        assignees: Optional[Iterable[str]] = None,
    ) -> Task:
        with self._data_lock:
            if self.get_project(tenant_id, project_id) is None:
                raise RecordNotFound("project", project_id)
            task = Task(
                id=new_id(),
                tenant_id=tenant_id,
                project_id=project_id,
                owner_id=owner_id,
                title=title,
                parent_task_id=parent_task_id,
                assignees=list(dict.fromkeys(assignees or [])),
            )
            self.tasks[task.id] = task
            self._persist_state()
            return task

    def get_task(self, tenant_id: str, task_id: str) -> Optional[Task]:
        with self._data_lock:
            task = self.tasks.get(task_id)
            if task is None or task.tenant_id != tenant_id:
                return None
            return task

    def list_tasks(self, tenant_id: str, project_id: str) -> List[Task]:
        with self._data_lock:
            tasks = [
                t
                for t in self.tasks.values()
                if t.tenant_id == tenant_id and t.project_id == project_id
            ]
            return sorted(tasks, key=lambda t: t.created_at)

    def update_task_assignees(
        self, tenant_id: str, task_id: str, assignees: Iterable[str]
    ) -> Task:
        with self._data_lock:
            task = self.get_task(tenant_id, task_id)
            if task is None:
                raise RecordNotFound("task", task_id)
            task.assignees = list(dict.fromkeys(assignees))
            task.updated_at = utcnow()
            self._persist_state()
            return task

    # -- persistence ------------------------------------------------------

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {"user_id": user_id, "password_hash": creds[0], "password_algo": creds[1]}
                for user_id, creds in self.credentials.items()
            ],
            "tenants": [self._serialize_tenant(t) for t in self.tenants.values()],
            "tenant_memberships": [
                {
                    "tenant_id": m.tenant_id,
                    "user_id": m.user_id,
                    "role": m.role.value,
                    "created_at": self._serialize_datetime(m.created_at),
                }
                for m in self.tenant_memberships.values()
            ],
            "projects": [self._serialize_project(p) for p in self.projects.values()],
            "project_memberships": [
                {
                    "project_id": m.project_id,
                    "user_id": m.user_id,
                    "role": m.role.value,
                    "created_at": self._serialize_datetime(m.created_at),
                }
                for m in self.project_memberships.values()
            ],
            "tasks": [self._serialize_task(t) for t in self.tasks.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.tenants = {t["id"]: self._deserialize_tenant(t) for t in data.get("tenants", [])}
        self.tenant_memberships = {}
        for entry in data.get("tenant_memberships", []):
            membership = TenantMembership(
                tenant_id=entry["tenant_id"],
                user_id=entry["user_id"],
                role=TenantRole(entry.get("role", TenantRole.MEMBER.value)),
                created_at=self._deserialize_datetime(entry.get("created_at")) or utcnow(),
            )
            self.tenant_memberships[(membership.tenant_id, membership.user_id)] = membership
        self.projects = {
            p["id"]: self._deserialize_project(p) for p in data.get("projects", [])
        }
        self.project_memberships = {}
        for entry in data.get("project_memberships", []):
            membership = ProjectMembership(
                project_id=entry["project_id"],
                user_id=entry["user_id"],
                role=ProjectRole(entry.get("role", ProjectRole.VIEW_ONLY.value)),
                created_at=self._deserialize_datetime(entry.get("created_at")) or utcnow(),
            )
            self.project_memberships[(membership.project_id, membership.user_id)] = membership
        self.tasks = {t["id"]: self._deserialize_task(t) for t in data.get("tasks", [])}
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            tenants=len(self.tenants),
            projects=len(self.projects),
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "role": user.role.value,
            "created_at": self._serialize_datetime(user.created_at),
            "is_active": user.is_active,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            name=data.get("name"),
            role=GlobalRole(data.get("role", GlobalRole.USER.value)),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            is_active=data.get("is_active", True),
        )

    def _serialize_tenant(self, tenant: Tenant) -> dict:
        return {
            "id": tenant.id,
            "slug": tenant.slug,
            "name": tenant.name,
            "domain_aliases": list(tenant.domain_aliases),
            "created_at": self._serialize_datetime(tenant.created_at),
        }

    def _deserialize_tenant(self, data: dict) -> Tenant:
        return Tenant(
            id=str(data["id"]),
            slug=data["slug"],
            name=data.get("name") or data["slug"],
            domain_aliases=list(data.get("domain_aliases") or []),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _serialize_project(self, project: Project) -> dict:
        return {
            "id": project.id,
            "tenant_id": project.tenant_id,
            "owner_id": project.owner_id,
            "name": project.name,
            "visibility": project.visibility.value,
            "created_at": self._serialize_datetime(project.created_at),
        }

    def _deserialize_project(self, data: dict) -> Project:
        # rows written before visibility existed only carry isSharedWithTenant
        return Project(
            id=str(data["id"]),
            tenant_id=data["tenant_id"],
            owner_id=data["owner_id"],
            name=data.get("name", ""),
            visibility=effective_visibility(
                data.get("visibility"), bool(data.get("is_shared_with_tenant", False))
            ),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _serialize_task(self, task: Task) -> dict:
        return {
            "id": task.id,
            "tenant_id": task.tenant_id,
            "project_id": task.project_id,
            "owner_id": task.owner_id,
            "title": task.title,
            "parent_task_id": task.parent_task_id,
            "assignees": list(task.assignees),
            "created_at": self._serialize_datetime(task.created_at),
            "updated_at": self._serialize_datetime(task.updated_at),
        }

    def _deserialize_task(self, data: dict) -> Task:
        return Task(
            id=str(data["id"]),
            tenant_id=data["tenant_id"],
            project_id=data["project_id"],
            owner_id=data["owner_id"],
            title=data.get("title", ""),
            parent_task_id=data.get("parent_task_id"),
            assignees=list(data.get("assignees") or []),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")),
        )
