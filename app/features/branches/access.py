"""
Cross-branch access convention.

The permission engine has no notion of "bypass". This module is the calling
code that gives three catalog permissions a special meaning:

- system.cross_branch_access: branch filtering is skipped entirely
- system.manage_all_branches: read and write across every branch
- system.view_all_branches: read-only across every branch

Holding any of them is checked with the any-of operation at global scope.
Everyone else is limited to their home branch, or, for branch admins, their
home branch and everything below it.
"""
from typing import Annotated, Optional, Set

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy import Select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.branches.tree import get_descendant_ids
from app.features.permissions import resolver
from app.features.permissions.assignments import roles_of
from app.features.permissions.roles import get_role_by_slug
from app.features.users.dependencies import get_current_user
from app.features.users.models import User
from app.utils import get_logger


log = get_logger(__name__)

CROSS_BRANCH_ACCESS = "system.cross_branch_access"
MANAGE_ALL_BRANCHES = "system.manage_all_branches"
VIEW_ALL_BRANCHES = "system.view_all_branches"

CROSS_BRANCH_PERMISSIONS = (CROSS_BRANCH_ACCESS, MANAGE_ALL_BRANCHES, VIEW_ALL_BRANCHES)

BRANCH_ADMIN_ROLE = "branch-admin"


async def has_cross_branch_access(db: AsyncSession, user_id: int) -> bool:
    """Whether branch filtering should be skipped for this user."""
    return await resolver.has_any_permission(db, user_id, CROSS_BRANCH_PERMISSIONS, None)


async def can_manage_all_branches(db: AsyncSession, user: User) -> bool:
    """Write access across branches: platform admin, manage-all or cross-branch holder."""
    if user.is_admin:
        return True
    return await resolver.has_any_permission(db, user.id, (MANAGE_ALL_BRANCHES, CROSS_BRANCH_ACCESS), None)


async def can_view_all_branches(db: AsyncSession, user: User) -> bool:
    """Read access across branches: any of the three cross-branch permissions."""
    if user.is_admin:
        return True
    return await has_cross_branch_access(db, user.id)


async def is_branch_admin(db: AsyncSession, user: User) -> bool:
    """Whether the user holds the branch-admin role at their home branch."""
    if user.branch_id is None:
        return False
    role = await get_role_by_slug(db, BRANCH_ADMIN_ROLE)
    if role is None or not role.is_active:
        return False
    return role.id in await roles_of(db, user.id, user.branch_id)


async def get_accessible_branch_ids(db: AsyncSession, user: User) -> Optional[Set[int]]:
    """
    Get the branches a user may see.

    Returns:
        None for unrestricted access, otherwise the set of branch ids
        (possibly empty)
    """
    if user.is_admin:
        return None

    if await has_cross_branch_access(db, user.id):
        return None

    if user.branch_id is None:
        return set()

    if await is_branch_admin(db, user):
        return await get_descendant_ids(db, user.branch_id, include_self=True)

    return {user.branch_id}


def apply_branch_filter(stmt: Select, column, accessible: Optional[Set[int]]) -> Select:
    """
    Restrict a query to the accessible branches.

    Usage:
        accessible = await get_accessible_branch_ids(db, user)
        stmt = apply_branch_filter(select(Student), Student.branch_id, accessible)
    """
    if accessible is None:
        return stmt
    return stmt.where(column.in_(accessible))


async def require_branch_access(
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(get_current_user)]
) -> User:
    """
    FastAPI dependency rejecting requests for a branch the user cannot reach.

    The branch is taken from the `branch_id` path or query parameter. Requests
    without one pass through and are expected to filter with
    apply_branch_filter.
    """
    requested = request.path_params.get("branch_id") or request.query_params.get("branch_id")
    if requested is None:
        return current_user

    try:
        branch_id = int(requested)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid branch_id")

    accessible = await get_accessible_branch_ids(db, current_user)
    if accessible is not None and branch_id not in accessible:
        log.info(f"User {current_user.id} denied access to branch {branch_id}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You do not have access to this branch"
        )

    return current_user
