"""
Assignment store: user roles and user permission overrides.

Reads apply the branch scope rule (see Scope); writes are plain upserts and
deletes keyed by (user, role, branch) and (user, permission, branch). No merge
logic lives here.
"""
from typing import Iterable, List, Optional, Set

from sqlalchemy import select, update, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.permissions.models import Role, UserRoleAssignment, UserPermissionOverride
from app.features.permissions.scope import Scope
from app.utils import get_logger


log = get_logger(__name__)


def _branch_equals(column, branch_id: Optional[int]):
    # NULL never compares equal in SQL, the global key needs IS NULL
    return column.is_(None) if branch_id is None else column == branch_id


# ============================================================================
# Reads
# ============================================================================

async def roles_of(db: AsyncSession, user_id: int, branch_id: Optional[int] = None) -> Set[int]:
    """Get the ids of the roles a user holds under the given branch scope."""
    scope = Scope.of(branch_id)
    stmt = select(UserRoleAssignment.role_id).where(
        and_(
            UserRoleAssignment.user_id == user_id,
            scope.clause(UserRoleAssignment.branch_id)
        )
    )
    result = await db.execute(stmt)
    return set(result.scalars().all())


async def role_assignments_of(db: AsyncSession, user_id: int) -> List[UserRoleAssignment]:
    """Get every role assignment of a user, primary first."""
    stmt = (
        select(UserRoleAssignment)
        .where(UserRoleAssignment.user_id == user_id)
        .order_by(UserRoleAssignment.is_primary.desc(), UserRoleAssignment.id.asc())
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def primary_role_of(db: AsyncSession, user_id: int) -> Optional[Role]:
    stmt = (
        select(Role)
        .join(UserRoleAssignment, UserRoleAssignment.role_id == Role.id)
        .where(
            and_(
                UserRoleAssignment.user_id == user_id,
                UserRoleAssignment.is_primary.is_(True)
            )
        )
    )
    result = await db.execute(stmt)
    return result.scalars().first()


async def overrides_of(
    db: AsyncSession,
    user_id: int,
    branch_id: Optional[int] = None,
    permission_ids: Optional[Iterable[int]] = None,
    global_only: bool = False
) -> List[UserPermissionOverride]:
    """
    Get a user's overrides under the given branch scope.

    Rows come back oldest-written first so later rows supersede earlier ones
    when they are collapsed.

    Args:
        db: Database session
        user_id: User to look up
        branch_id: Branch scope (None = every branch)
        permission_ids: Restrict to these permissions
        global_only: With no branch, only untagged rows
    """
    scope = Scope.of(branch_id, global_only)
    stmt = select(UserPermissionOverride).where(
        and_(
            UserPermissionOverride.user_id == user_id,
            scope.clause(UserPermissionOverride.branch_id)
        )
    )
    if permission_ids is not None:
        ids = set(permission_ids)
        if not ids:
            return []
        stmt = stmt.where(UserPermissionOverride.permission_id.in_(ids))

    stmt = stmt.order_by(UserPermissionOverride.updated_at.asc(), UserPermissionOverride.id.asc())
    result = await db.execute(stmt)
    return list(result.scalars().all())


# ============================================================================
# Writes
# ============================================================================

async def assign_user_role(
    db: AsyncSession,
    user_id: int,
    role_id: int,
    branch_id: Optional[int] = None,
    is_primary: bool = False
) -> UserRoleAssignment:
    """
    Give a user a role, optionally within one branch.

    Re-assigning an existing (user, role, branch) updates its primary flag.
    A user has at most one primary role: marking this one primary clears the
    flag on every other assignment of the user.
    """
    stmt = select(UserRoleAssignment).where(
        and_(
            UserRoleAssignment.user_id == user_id,
            UserRoleAssignment.role_id == role_id,
            _branch_equals(UserRoleAssignment.branch_id, branch_id)
        )
    )
    result = await db.execute(stmt)
    assignment = result.scalars().first()

    if assignment is None:
        assignment = UserRoleAssignment(
            user_id=user_id,
            role_id=role_id,
            branch_id=branch_id,
            is_primary=is_primary
        )
        db.add(assignment)
    else:
        assignment.is_primary = is_primary
    await db.flush()

    if is_primary:
        await db.execute(
            update(UserRoleAssignment)
            .where(
                and_(
                    UserRoleAssignment.user_id == user_id,
                    UserRoleAssignment.id != assignment.id
                )
            )
            .values(is_primary=False)
            .execution_options(synchronize_session="fetch")
        )
        await db.flush()

    log.info(f"Assigned role {role_id} to user {user_id} (branch={branch_id}, primary={is_primary})")
    return assignment


async def remove_user_role(
    db: AsyncSession,
    user_id: int,
    role_id: int,
    branch_id: Optional[int] = None
) -> bool:
    """Remove a (user, role, branch) assignment. Returns False if there was none."""
    stmt = select(UserRoleAssignment).where(
        and_(
            UserRoleAssignment.user_id == user_id,
            UserRoleAssignment.role_id == role_id,
            _branch_equals(UserRoleAssignment.branch_id, branch_id)
        )
    )
    result = await db.execute(stmt)
    assignments = result.scalars().all()
    for assignment in assignments:
        await db.delete(assignment)
    await db.flush()

    if assignments:
        log.info(f"Removed role {role_id} from user {user_id} (branch={branch_id})")
    return bool(assignments)


async def set_user_override(
    db: AsyncSession,
    user_id: int,
    permission_id: int,
    branch_id: Optional[int] = None,
    granted: bool = True
) -> UserPermissionOverride:
    """
    Grant (granted=True) or revoke (granted=False) a permission for one user.

    Upserts the row keyed by (user, permission, branch). If duplicate rows
    already exist for the key, the most recently written one is updated.
    """
    stmt = (
        select(UserPermissionOverride)
        .where(
            and_(
                UserPermissionOverride.user_id == user_id,
                UserPermissionOverride.permission_id == permission_id,
                _branch_equals(UserPermissionOverride.branch_id, branch_id)
            )
        )
        .order_by(UserPermissionOverride.updated_at.desc(), UserPermissionOverride.id.desc())
    )
    result = await db.execute(stmt)
    override = result.scalars().first()

    if override is None:
        override = UserPermissionOverride(
            user_id=user_id,
            permission_id=permission_id,
            branch_id=branch_id,
            granted=granted
        )
        db.add(override)
    else:
        override.granted = granted
    await db.flush()

    log.info(
        f"{'Granted' if granted else 'Revoked'} permission {permission_id} "
        f"for user {user_id} (branch={branch_id})"
    )
    return override


async def remove_user_override(
    db: AsyncSession,
    user_id: int,
    permission_id: int,
    branch_id: Optional[int] = None
) -> bool:
    """Delete every override row for (user, permission, branch). Returns False if there was none."""
    stmt = select(UserPermissionOverride).where(
        and_(
            UserPermissionOverride.user_id == user_id,
            UserPermissionOverride.permission_id == permission_id,
            _branch_equals(UserPermissionOverride.branch_id, branch_id)
        )
    )
    result = await db.execute(stmt)
    overrides = result.scalars().all()
    for override in overrides:
        await db.delete(override)
    await db.flush()

    if overrides:
        log.info(f"Removed override of permission {permission_id} for user {user_id} (branch={branch_id})")
    return bool(overrides)
