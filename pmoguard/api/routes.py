from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response

from pmoguard.api.deps import (
    TenantAccess,
    apply_auth_cookie,
    clear_auth_cookie,
    client_address,
    get_identity,
    get_identity_optional,
    get_tenant_context,
    require_admin,
    require_super_admin,
    require_tenant_role,
)
from pmoguard.api.schemas import (
    Envelope,
    LoginRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    ProjectCreateRequest,
    ProjectMemberBulkRequest,
    ProjectMemberRequest,
    ProjectMemberResponse,
    ProjectMemberRoleRequest,
    ProjectResponse,
    ProjectVisibilityRequest,
    SessionResponse,
    TaskAssigneesRequest,
    TaskCreateRequest,
    TaskResponse,
    TenantCreateRequest,
    TenantMemberRequest,
    TenantMemberResponse,
    TenantMemberRoleRequest,
    TenantResponse,
    UserResponse,
    UserRoleRequest,
)
from pmoguard.logging import get_logger
from pmoguard.service.audit import AuditEvent
from pmoguard.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    ForbiddenError,
)
from pmoguard.service.guards import ALL_TENANT_ROLES, TENANT_ADMIN_ROLES, TENANT_WRITE_ROLES
from pmoguard.service.runtime import get_runtime
from pmoguard.service.tenancy import TenantContext
from pmoguard.storage.errors import ConstraintViolation
from pmoguard.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

# Same body whether or not the email belongs to an account
_RESET_REQUESTED_MESSAGE = "If an account exists for that email, a reset link has been sent."


def _tenant_payload(runtime, tenant: Optional[TenantContext], user_id: Optional[str]) -> Optional[TenantResponse]:
    if tenant is None:
        return None
    record = runtime.store.get_tenant(tenant.tenant_id)
    if record is None:
        return None
    membership = runtime.store.get_tenant_membership(tenant.tenant_id, user_id) if user_id else None
    return TenantResponse.from_model(record, membership)


# -- auth -----------------------------------------------------------------


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    x_tenant_id: Optional[str] = Header(None, alias="X-Tenant-ID"),
):
    """Authenticate with email and password.

    Sets the auth cookie and echoes the same token in the body for clients
    whose browser drops third-party cookies.

    Raises:
        401: If credentials are invalid
        429: If the caller's address exhausted its login attempts
    """
    runtime = get_runtime()
    decision = await runtime.login_limiter.enforce(client_address(request))
    response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
    user = runtime.auth.authenticate_credentials(body.email, body.password)
    token = runtime.tokens.issue(user.id)
    apply_auth_cookie(response, token, runtime.settings)
    tenant = runtime.tenant_resolver.resolve(
        header_value=x_tenant_id, host=request.headers.get("host")
    )
    return Envelope(
        status="ok",
        data=SessionResponse(
            user=UserResponse.from_model(user),
            tenant=_tenant_payload(runtime, tenant, user.id),
            token=token,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response):
    """Clear the auth cookie. Tokens are stateless, so nothing is revoked server-side."""
    runtime = get_runtime()
    clear_auth_cookie(response, runtime.settings)
    return Envelope(status="ok", data={"message": "logged out"})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(
    response: Response,
    user_id: Optional[str] = Depends(get_identity_optional),
    tenant: Optional[TenantContext] = Depends(get_tenant_context),
):
    """Current identity, or nulls when unauthenticated. Never answers 401."""
    runtime = get_runtime()
    user = runtime.store.get_user(user_id) if user_id else None
    if user is None or not user.is_active:
        return Envelope(status="ok", data=SessionResponse())
    token = runtime.identity.refresh(user.id)
    if token:
        apply_auth_cookie(response, token, runtime.settings)
    return Envelope(
        status="ok",
        data=SessionResponse(
            user=UserResponse.from_model(user),
            tenant=_tenant_payload(runtime, tenant, user.id),
            token=token,
        ),
    )


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: PasswordResetRequest, request: Request):
    runtime = get_runtime()
    await runtime.password_reset_limiter.enforce(client_address(request))
    token = await runtime.auth.initiate_password_reset(body.email)
    if token:
        # delivery is an external collaborator; the token only leaves via it
        logger.info("password_reset_token_issued", delivery="external")
    return Envelope(status="ok", data={"message": _RESET_REQUESTED_MESSAGE})


@router.get("/auth/verify-reset-token", response_model=Envelope, tags=["auth"])
async def verify_reset_token(
    request: Request, token: str = Query(..., min_length=1, max_length=256)
):
    runtime = get_runtime()
    await runtime.password_reset_limiter.enforce(client_address(request))
    valid = await runtime.auth.verify_reset_token(token)
    return Envelope(status="ok", data={"valid": valid})


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm, request: Request):
    runtime = get_runtime()
    address = client_address(request)
    await runtime.password_reset_limiter.enforce(address)
    if not await runtime.auth.complete_password_reset(body.token, body.new_password):
        raise BadRequestError("invalid or expired reset token")
    # failed logins that led to the reset no longer count against the address
    await runtime.login_limiter.reset(address)
    return Envelope(status="ok", data={"message": "password updated"})


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(body: PasswordChangeRequest, user_id: str = Depends(get_identity)):
    """Change the current user's password.

    Requires the current password for verification. Wrong guesses share the
    login limiter under a per-user key.
    """
    runtime = get_runtime()
    user = runtime.guard.load_user(user_id)
    subject = f"password-change:{user.id}"
    await runtime.login_limiter.enforce(subject)
    if not runtime.auth.verify_password(user.id, body.current_password):
        raise AuthenticationError("current password is incorrect")
    runtime.auth.save_password(user.id, body.new_password)
    await runtime.login_limiter.reset(subject)
    logger.info("password_changed", user_id=user.id)
    return Envelope(status="ok", data={"status": "changed"})


# -- tenants --------------------------------------------------------------


@router.get("/tenants/my", response_model=Envelope, tags=["tenants"])
async def my_tenants(user_id: str = Depends(get_identity)):
    runtime = get_runtime()
    runtime.guard.load_user(user_id)
    tenants = [
        TenantResponse.from_model(tenant, membership)
        for tenant, membership in runtime.tenants.list_user_tenants(user_id)
    ]
    return Envelope(status="ok", data={"items": tenants})


@router.post("/tenants/switch/{tenant_id}", response_model=Envelope, tags=["tenants"])
async def switch_tenant(
    tenant_id: str = Path(..., max_length=128),
    user_id: str = Depends(get_identity),
):
    """Confirm the caller may act in ``tenant_id``; the client then sends it as X-Tenant-ID."""
    runtime = get_runtime()
    user = runtime.guard.load_user(user_id)
    tenant = runtime.store.get_tenant(tenant_id)
    membership = runtime.store.get_tenant_membership(tenant_id, user.id) if tenant else None
    allowed = tenant is not None and (membership is not None or runtime.guard.is_tenant_member(user, tenant_id))
    runtime.audit.record(
        AuditEvent(
            action="tenant_switch",
            user_id=user.id,
            tenant_id=tenant_id,
            outcome="allowed" if allowed else "denied",
        )
    )
    if not allowed:
        raise ForbiddenError("no access to this tenant")
    return Envelope(status="ok", data=TenantResponse.from_model(tenant, membership))


@router.get("/tenants/current", response_model=Envelope, tags=["tenants"])
async def current_tenant(access: TenantAccess = Depends(require_tenant_role(ALL_TENANT_ROLES))):
    runtime = get_runtime()
    tenant = runtime.tenants.get_tenant(access.tenant.tenant_id)
    return Envelope(status="ok", data=TenantResponse.from_model(tenant, access.membership))


@router.get("/tenants/current/users", response_model=Envelope, tags=["tenants"])
async def list_tenant_users(access: TenantAccess = Depends(require_tenant_role(TENANT_ADMIN_ROLES))):
    runtime = get_runtime()
    members = runtime.tenants.list_members(access.tenant.tenant_id)
    return Envelope(
        status="ok", data={"items": [TenantMemberResponse.from_model(m) for m in members]}
    )


@router.post("/tenants/current/users", response_model=Envelope, status_code=201, tags=["tenants"])
async def add_tenant_user(
    body: TenantMemberRequest,
    access: TenantAccess = Depends(require_tenant_role(TENANT_ADMIN_ROLES)),
):
    runtime = get_runtime()
    membership = runtime.tenants.add_member(access.tenant.tenant_id, body.user_id, body.role)
    return Envelope(status="ok", data=TenantMemberResponse.from_model(membership))


@router.put("/tenants/current/users/{user_id}", response_model=Envelope, tags=["tenants"])
async def update_tenant_user(
    body: TenantMemberRoleRequest,
    user_id: str = Path(..., max_length=128),
    access: TenantAccess = Depends(require_tenant_role(TENANT_ADMIN_ROLES)),
):
    runtime = get_runtime()
    membership = runtime.tenants.update_member_role(access.tenant.tenant_id, user_id, body.role)
    return Envelope(status="ok", data=TenantMemberResponse.from_model(membership))


@router.delete("/tenants/current/users/{user_id}", response_model=Envelope, tags=["tenants"])
async def remove_tenant_user(
    user_id: str = Path(..., max_length=128),
    access: TenantAccess = Depends(require_tenant_role(TENANT_ADMIN_ROLES)),
):
    runtime = get_runtime()
    runtime.tenants.remove_member(access.tenant.tenant_id, user_id)
    return Envelope(status="ok", data={"removed": user_id})


# -- platform administration ----------------------------------------------


@router.post("/admin/tenants", response_model=Envelope, status_code=201, tags=["admin"])
async def create_tenant(body: TenantCreateRequest, admin: User = Depends(require_admin)):
    runtime = get_runtime()
    tenant = runtime.tenants.create_tenant(
        body.slug, body.name, owner_id=admin.id, domain_aliases=body.domain_aliases
    )
    membership = runtime.store.get_tenant_membership(tenant.id, admin.id)
    return Envelope(status="ok", data=TenantResponse.from_model(tenant, membership))


@router.post("/admin/tenants/{tenant_id}/domains", response_model=Envelope, tags=["admin"])
async def add_tenant_domain(
    tenant_id: str = Path(..., max_length=128),
    domain: str = Query(..., min_length=3, max_length=253),
    _operator: User = Depends(require_super_admin),
):
    runtime = get_runtime()
    runtime.tenants.get_tenant(tenant_id)
    try:
        tenant = runtime.store.add_domain_alias(tenant_id, domain)
    except ConstraintViolation as exc:
        raise ConflictError(exc.message, detail=exc.detail) from exc
    return Envelope(status="ok", data=TenantResponse.from_model(tenant))


@router.put("/admin/users/{user_id}/role", response_model=Envelope, tags=["admin"])
async def update_user_role(
    body: UserRoleRequest,
    user_id: str = Path(..., max_length=128),
    admin: User = Depends(require_admin),
):
    runtime = get_runtime()
    user = runtime.auth.set_user_role(admin, user_id, body.role)
    return Envelope(status="ok", data=UserResponse.from_model(user))


# -- projects -------------------------------------------------------------


@router.post("/projects", response_model=Envelope, status_code=201, tags=["projects"])
async def create_project(
    body: ProjectCreateRequest,
    access: TenantAccess = Depends(require_tenant_role(TENANT_WRITE_ROLES)),
):
    runtime = get_runtime()
    project = runtime.projects.create_project(
        access.user.id,
        access.tenant,
        body.name,
        visibility=body.visibility,
        legacy_shared_with_tenant=body.is_shared_with_tenant,
    )
    _, level = runtime.projects.load(access.user.id, access.tenant, project.id)
    return Envelope(status="ok", data=ProjectResponse.from_model(project, level))


@router.get("/projects", response_model=Envelope, tags=["projects"])
async def list_projects(
    user_id: str = Depends(get_identity),
    tenant: Optional[TenantContext] = Depends(get_tenant_context),
):
    runtime = get_runtime()
    items = [
        ProjectResponse.from_model(project, level)
        for project, level in runtime.projects.list_accessible(user_id, tenant)
    ]
    return Envelope(status="ok", data={"items": items})


@router.get("/projects/{project_id}", response_model=Envelope, tags=["projects"])
async def get_project(
    project_id: str = Path(..., max_length=128),
    user_id: str = Depends(get_identity),
    tenant: Optional[TenantContext] = Depends(get_tenant_context),
):
    runtime = get_runtime()
    project, level = runtime.projects.load(user_id, tenant, project_id)
    return Envelope(status="ok", data=ProjectResponse.from_model(project, level))


@router.patch("/projects/{project_id}", response_model=Envelope, tags=["projects"])
async def update_project_visibility(
    body: ProjectVisibilityRequest,
    project_id: str = Path(..., max_length=128),
    user_id: str = Depends(get_identity),
    tenant: Optional[TenantContext] = Depends(get_tenant_context),
):
    runtime = get_runtime()
    project = runtime.projects.update_visibility(user_id, tenant, project_id, body.visibility)
    return Envelope(status="ok", data=ProjectResponse.from_model(project))


@router.get("/projects/{project_id}/members", response_model=Envelope, tags=["projects"])
async def list_project_members(
    project_id: str = Path(..., max_length=128),
    user_id: str = Depends(get_identity),
    tenant: Optional[TenantContext] = Depends(get_tenant_context),
):
    runtime = get_runtime()
    members = runtime.projects.list_members(user_id, tenant, project_id)
    return Envelope(
        status="ok", data={"items": [ProjectMemberResponse.from_model(m) for m in members]}
    )


@router.post("/projects/{project_id}/members", response_model=Envelope, status_code=201, tags=["projects"])
async def add_project_member(
    body: ProjectMemberRequest,
    project_id: str = Path(..., max_length=128),
    user_id: str = Depends(get_identity),
    tenant: Optional[TenantContext] = Depends(get_tenant_context),
):
    runtime = get_runtime()
    membership = runtime.projects.add_member(user_id, tenant, project_id, body.user_id, body.role)
    return Envelope(status="ok", data=ProjectMemberResponse.from_model(membership))


@router.post("/projects/{project_id}/members/bulk", response_model=Envelope, status_code=201, tags=["projects"])
async def bulk_add_project_members(
    body: ProjectMemberBulkRequest,
    project_id: str = Path(..., max_length=128),
    user_id: str = Depends(get_identity),
    tenant: Optional[TenantContext] = Depends(get_tenant_context),
):
    runtime = get_runtime()
    added = runtime.projects.bulk_add_members(
        user_id, tenant, project_id, [(m.user_id, m.role) for m in body.members]
    )
    return Envelope(
        status="ok", data={"items": [ProjectMemberResponse.from_model(m) for m in added]}
    )


@router.put("/projects/{project_id}/members/{member_id}", response_model=Envelope, tags=["projects"])
async def update_project_member(
    body: ProjectMemberRoleRequest,
    project_id: str = Path(..., max_length=128),
    member_id: str = Path(..., max_length=128),
    user_id: str = Depends(get_identity),
    tenant: Optional[TenantContext] = Depends(get_tenant_context),
):
    runtime = get_runtime()
    membership = runtime.projects.update_member_role(user_id, tenant, project_id, member_id, body.role)
    return Envelope(status="ok", data=ProjectMemberResponse.from_model(membership))


@router.delete("/projects/{project_id}/members/{member_id}", response_model=Envelope, tags=["projects"])
async def remove_project_member(
    project_id: str = Path(..., max_length=128),
    member_id: str = Path(..., max_length=128),
    user_id: str = Depends(get_identity),
    tenant: Optional[TenantContext] = Depends(get_tenant_context),
):
    runtime = get_runtime()
    runtime.projects.remove_member(user_id, tenant, project_id, member_id)
    return Envelope(status="ok", data={"removed": member_id})


# -- tasks ----------------------------------------------------------------


@router.post("/projects/{project_id}/tasks", response_model=Envelope, status_code=201, tags=["tasks"])
async def create_task(
    body: TaskCreateRequest,
    project_id: str = Path(..., max_length=128),
    user_id: str = Depends(get_identity),
    tenant: Optional[TenantContext] = Depends(get_tenant_context),
):
    """Create a task or, with ``parent_task_id``, a subtask.

    Raises:
        400: ``invalid_assignees`` or ``invalid_parent``
        403: If the caller cannot edit the project
        404: If the project is not visible to the caller
    """
    runtime = get_runtime()
    task = runtime.tasks.create_task(
        user_id,
        tenant,
        project_id,
        body.title,
        assignees=body.assignees,
        parent_task_id=body.parent_task_id,
    )
    return Envelope(status="ok", data=TaskResponse.from_model(task))


@router.get("/projects/{project_id}/tasks", response_model=Envelope, tags=["tasks"])
async def list_tasks(
    project_id: str = Path(..., max_length=128),
    user_id: str = Depends(get_identity),
    tenant: Optional[TenantContext] = Depends(get_tenant_context),
):
    runtime = get_runtime()
    tasks = runtime.tasks.list_tasks(user_id, tenant, project_id)
    return Envelope(status="ok", data={"items": [TaskResponse.from_model(t) for t in tasks]})


@router.put("/tasks/{task_id}/assignees", response_model=Envelope, tags=["tasks"])
async def set_task_assignees(
    body: TaskAssigneesRequest,
    task_id: str = Path(..., max_length=128),
    user_id: str = Depends(get_identity),
    tenant: Optional[TenantContext] = Depends(get_tenant_context),
):
    runtime = get_runtime()
    task = runtime.tasks.set_assignees(user_id, tenant, task_id, body.assignees)
    return Envelope(status="ok", data=TaskResponse.from_model(task))
