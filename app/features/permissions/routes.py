"""
Permission management API routes.

Provides endpoints for the catalog, role permissions, user role assignments,
user overrides, permission checks and the audit log.
"""
from typing import Annotated, List, Optional
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.users.dependencies import admin_rate_limit, get_current_user, get_current_admin_user, limiter
from app.features.users.models import User
from app.features.permissions import assignments, catalog, resolver, roles
from app.features.permissions.exceptions import NotFound
from app.features.permissions.models import AuditLog, Permission
from app.features.permissions.schemas import (
    ModuleResponse,
    RoleResponse,
    RolePermissionsResponse,
    AssignPermissionToRole,
    SyncRolePermissions,
    AssignRoleToUser,
    RoleAssignmentResponse,
    SetUserOverride,
    OverrideResponse,
    CheckMode,
    PermissionCheckRequest,
    PermissionCheckResponse,
    PermissionResponse,
    UserPermissionsResponse,
    AuditLogResponse,
    AuditLogListResponse,
)
from app.features.permissions.dependencies import ensure_permission, create_audit_log
from app.utils import get_logger


log = get_logger(__name__)
router = APIRouter()


async def _require_user(db: AsyncSession, user_id: int) -> User:
    user = await db.get(User, user_id)
    if user is None:
        raise NotFound(f"User {user_id} not found")
    return user


async def _require_permission_row(db: AsyncSession, permission_id: int) -> Permission:
    permission = await db.get(Permission, permission_id)
    if permission is None:
        raise NotFound(f"Permission {permission_id} not found")
    return permission


async def _require_editable_role(db: AsyncSession, role_id: int, user: User) -> None:
    # Roles apply in every branch, so managing one is a global action
    await ensure_permission(db, user, "roles.manage", None)
    role = await roles.get_role(db, role_id)
    if role.is_system_role and not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only platform admins can change system roles"
        )


# ============================================================================
# Catalog Routes
# ============================================================================

@router.get("/modules", response_model=List[ModuleResponse])
async def list_modules(
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(get_current_user)]
):
    """List active modules in display order with their permissions."""
    return await catalog.list_modules(db)


@router.get("/roles", response_model=List[RoleResponse])
async def list_roles(
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(get_current_user)]
):
    """List active roles, most authority first."""
    return await roles.list_roles(db)


# ============================================================================
# Role Permission Routes
# ============================================================================

@router.post("/roles/{role_id}/permissions", response_model=RolePermissionsResponse)
@limiter.limit(admin_rate_limit)
async def grant_permission_to_role(
    role_id: int,
    assignment: AssignPermissionToRole,
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(get_current_user)]
):
    """Grant a permission to a role."""
    await _require_editable_role(db, role_id, current_user)
    added = await roles.grant_role_permission(db, role_id, assignment.permission_id)

    if added:
        await create_audit_log(
            db,
            user_id=current_user.id,
            action="grant_permission",
            resource_type="role",
            resource_id=role_id,
            details={"permission_id": assignment.permission_id},
            request=request
        )
    await db.commit()

    current = await roles.permissions_of(db, role_id)
    return RolePermissionsResponse(role_id=role_id, permission_ids=sorted(p.id for p in current))


@router.delete("/roles/{role_id}/permissions/{permission_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit(admin_rate_limit)
async def revoke_permission_from_role(
    role_id: int,
    permission_id: int,
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(get_current_user)]
):
    """Revoke a permission from a role."""
    await _require_editable_role(db, role_id, current_user)
    if not await roles.revoke_role_permission(db, role_id, permission_id):
        raise HTTPException(status_code=404, detail="Permission assignment not found")

    await create_audit_log(
        db,
        user_id=current_user.id,
        action="revoke_permission",
        resource_type="role",
        resource_id=role_id,
        details={"permission_id": permission_id},
        request=request
    )
    await db.commit()
    return None


@router.put("/roles/{role_id}/permissions", response_model=RolePermissionsResponse)
@limiter.limit(admin_rate_limit)
async def sync_role_permissions(
    role_id: int,
    payload: SyncRolePermissions,
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(get_current_user)]
):
    """Replace a role's permissions with exactly the given set."""
    await _require_editable_role(db, role_id, current_user)
    permission_ids = await roles.sync_role_permissions(db, role_id, payload.permission_ids)

    await create_audit_log(
        db,
        user_id=current_user.id,
        action="sync_permissions",
        resource_type="role",
        resource_id=role_id,
        details={"permission_ids": sorted(permission_ids)},
        request=request
    )
    await db.commit()

    return RolePermissionsResponse(role_id=role_id, permission_ids=sorted(permission_ids))


# ============================================================================
# User Assignment Routes
# ============================================================================

@router.post("/users/{user_id}/roles", response_model=RoleAssignmentResponse)
@limiter.limit(admin_rate_limit)
async def assign_role_to_user(
    user_id: int,
    assignment: AssignRoleToUser,
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(get_current_user)]
):
    """Assign a role to a user, optionally within one branch."""
    await ensure_permission(db, current_user, "users.manage_roles", assignment.branch_id)
    await _require_user(db, user_id)
    await roles.get_role(db, assignment.role_id)

    row = await assignments.assign_user_role(
        db, user_id, assignment.role_id, assignment.branch_id, assignment.is_primary
    )

    await create_audit_log(
        db,
        user_id=current_user.id,
        action="assign_role",
        resource_type="user",
        resource_id=user_id,
        branch_id=assignment.branch_id,
        details={"role_id": assignment.role_id, "is_primary": assignment.is_primary},
        request=request
    )
    await db.commit()

    return RoleAssignmentResponse.model_validate(row)


@router.put("/users/{user_id}/overrides", response_model=OverrideResponse)
@limiter.limit(admin_rate_limit)
async def set_user_override(
    user_id: int,
    payload: SetUserOverride,
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(get_current_user)]
):
    """Grant or revoke a permission for one user, overriding their roles."""
    await ensure_permission(db, current_user, "users.manage_roles", payload.branch_id)
    await _require_user(db, user_id)
    permission = await _require_permission_row(db, payload.permission_id)

    row = await assignments.set_user_override(
        db, user_id, payload.permission_id, payload.branch_id, payload.granted
    )

    await create_audit_log(
        db,
        user_id=current_user.id,
        action="grant_override" if payload.granted else "revoke_override",
        resource_type="user",
        resource_id=user_id,
        branch_id=payload.branch_id,
        details={"permission_id": permission.id, "permission_slug": permission.slug},
        request=request
    )
    await db.commit()

    return OverrideResponse.model_validate(row)


@router.delete("/users/{user_id}/overrides/{permission_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit(admin_rate_limit)
async def remove_user_override(
    user_id: int,
    permission_id: int,
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(get_current_user)],
    branch_id: Optional[int] = None
):
    """Remove a user's override so their roles decide again."""
    await ensure_permission(db, current_user, "users.manage_roles", branch_id)
    if not await assignments.remove_user_override(db, user_id, permission_id, branch_id):
        raise HTTPException(status_code=404, detail="Override not found")

    await create_audit_log(
        db,
        user_id=current_user.id,
        action="remove_override",
        resource_type="user",
        resource_id=user_id,
        branch_id=branch_id,
        details={"permission_id": permission_id},
        request=request
    )
    await db.commit()
    return None


# ============================================================================
# Permission Check Routes
# ============================================================================

@router.post("/check", response_model=PermissionCheckResponse)
async def check_permission(
    check_request: PermissionCheckRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(get_current_user)]
):
    """Check if the current user has the given permissions."""
    if check_request.mode == CheckMode.ANY:
        has_perm = await resolver.has_any_permission(
            db, current_user.id, check_request.slugs, check_request.branch_id
        )
    else:
        has_perm = await resolver.has_all_permissions(
            db, current_user.id, check_request.slugs, check_request.branch_id
        )

    return PermissionCheckResponse(
        has_permission=has_perm,
        reason=None if has_perm else "Permission denied"
    )


@router.get("/users/{user_id}", response_model=UserPermissionsResponse)
async def get_user_permissions(
    user_id: int,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(get_current_user)],
    branch_id: Optional[int] = None
):
    """Get a user's effective permissions, grouped by module."""
    # Can only view own permissions unless admin or allowed to view users
    if user_id != current_user.id and not current_user.is_admin:
        if not await resolver.has_permission(db, current_user.id, "users.view", branch_id):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Not authorized to view other users' permissions"
            )

    permissions = await resolver.get_all_permissions(db, user_id, branch_id)
    grouped = catalog.group_by_module(permissions)

    return UserPermissionsResponse(
        user_id=user_id,
        branch_id=branch_id,
        permissions_by_module={
            module_id: [PermissionResponse.model_validate(p) for p in perms]
            for module_id, perms in grouped.items()
        },
        permission_slugs=sorted(p.slug for p in permissions)
    )


# ============================================================================
# Audit Log Routes
# ============================================================================

@router.get("/audit-logs", response_model=AuditLogListResponse)
async def list_audit_logs(
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(get_current_admin_user)],
    skip: int = 0,
    limit: int = 50,
    branch_id: Optional[int] = None,
    user_id: Optional[int] = None,
    action: Optional[str] = None,
    resource_type: Optional[str] = None
):
    """List audit logs with optional filtering (admin only)."""
    stmt = select(AuditLog)

    if branch_id is not None:
        stmt = stmt.where(AuditLog.branch_id == branch_id)
    if user_id is not None:
        stmt = stmt.where(AuditLog.user_id == user_id)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if resource_type:
        stmt = stmt.where(AuditLog.resource_type == resource_type)

    # Get total count
    count_stmt = select(func.count()).select_from(stmt.subquery())
    total_result = await db.execute(count_stmt)
    total = total_result.scalar() or 0

    # Get paginated results
    stmt = stmt.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt)
    logs = result.scalars().all()

    pages = (total + limit - 1) // limit if limit > 0 else 0
    page = (skip // limit) + 1 if limit > 0 else 1

    return AuditLogListResponse(
        items=[AuditLogResponse.model_validate(entry) for entry in logs],
        total=total,
        page=page,
        page_size=limit,
        pages=pages
    )
