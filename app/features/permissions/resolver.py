"""
Permission resolution engine.

Answers "does user U hold permission P, optionally in branch B?" from two
sources: permissions of the user's (active) roles, and the user's own
grant/revoke overrides. An override beats the roles for its permission,
unconditionally. Every call reads current state; nothing is cached.

Branch scoping is exact-match plus global rows (see Scope). The engine never
expands a branch to its ancestors or descendants and knows nothing about
cross-branch bypass; that convention lives in app.features.branches.access.
"""
from typing import Dict, Iterable, List, Optional, Set

from sqlalchemy import select, exists, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import config
from app.features.permissions import catalog
from app.features.permissions.assignments import overrides_of
from app.features.permissions.exceptions import ConflictingOverride, storage_guard
from app.features.permissions.models import (
    Permission,
    Role,
    UserRoleAssignment,
    UserPermissionOverride,
    role_permissions,
)
from app.features.permissions.scope import Scope
from app.utils import get_logger


log = get_logger(__name__)


# ============================================================================
# Override Collapse
# ============================================================================

def collapse_overrides(
    overrides: List[UserPermissionOverride],
    scope: Scope
) -> Dict[int, bool]:
    """
    Reduce visible override rows to one decision per permission.

    `overrides` must be ordered oldest-written first. Per permission, a row
    tagged with exactly the queried branch beats a row visible only through
    the global wildcard; among equally specific rows the latest one wins.
    Rows sharing a (permission, branch) key are a data conflict: logged, or
    raised when STRICT_OVERRIDE_CONFLICTS is set.

    Returns:
        permission id -> granted
    """
    winners: Dict[int, UserPermissionOverride] = {}
    seen_keys: Dict[tuple, int] = {}

    for override in overrides:
        key = (override.permission_id, override.branch_id)
        seen_keys[key] = seen_keys.get(key, 0) + 1

        current = winners.get(override.permission_id)
        if current is None or scope.is_exact(override.branch_id) or not scope.is_exact(current.branch_id):
            winners[override.permission_id] = override

    for (permission_id, branch_id), count in seen_keys.items():
        if count < 2:
            continue
        user_id = winners[permission_id].user_id
        if config.STRICT_OVERRIDE_CONFLICTS:
            raise ConflictingOverride(user_id, permission_id, branch_id, count)
        log.warning(
            f"{count} override rows for user {user_id} permission {permission_id} "
            f"branch {branch_id}; using the most recent"
        )

    return {permission_id: override.granted for permission_id, override in winners.items()}


# ============================================================================
# Role Membership
# ============================================================================

def _role_grants(user_id: int, scope: Scope, permission_ids: Set[int]):
    """EXISTS clause: some active role of the user, visible in scope, holds one of the permissions."""
    return exists().where(
        and_(
            UserRoleAssignment.user_id == user_id,
            scope.clause(UserRoleAssignment.branch_id),
            Role.id == UserRoleAssignment.role_id,
            Role.is_active.is_(True),
            role_permissions.c.role_id == Role.id,
            role_permissions.c.permission_id.in_(permission_ids)
        )
    )


async def _any_role_grants(db: AsyncSession, user_id: int, scope: Scope, permission_ids: Set[int]) -> bool:
    if not permission_ids:
        return False
    result = await db.execute(select(_role_grants(user_id, scope, permission_ids)))
    return bool(result.scalar())


# ============================================================================
# Permission Checks
# ============================================================================

@storage_guard
async def has_permission(
    db: AsyncSession,
    user_id: int,
    slug: str,
    branch_id: Optional[int] = None,
    global_only: bool = False
) -> bool:
    """
    Check if a user holds a permission.

    1. Unknown slug: denied.
    2. An override visible in the branch scope decides, roles are not consulted.
    3. Otherwise: granted iff an active role of the user in scope holds it.

    Args:
        db: Database session
        user_id: User to check
        slug: Permission slug (e.g., "exams.view")
        branch_id: Branch context (None = any branch)
        global_only: With no branch, count only untagged assignments and
            overrides, i.e. the permission must hold in every branch

    Returns:
        True if the user has the permission, False otherwise
    """
    scope = Scope.of(branch_id, global_only)

    permission = await catalog.resolve_slug(db, slug)
    if permission is None:
        log.debug(f"Unknown permission {slug!r} - denied user {user_id}")
        return False

    decisions = collapse_overrides(
        await overrides_of(db, user_id, branch_id, permission_ids=[permission.id], global_only=global_only),
        scope
    )
    if permission.id in decisions:
        granted = decisions[permission.id]
        log.debug(f"User {user_id} {'granted' if granted else 'denied'} {slug} by override ({scope})")
        return granted

    granted = await _any_role_grants(db, user_id, scope, {permission.id})
    log.debug(f"User {user_id} {'granted' if granted else 'denied'} {slug} by roles ({scope})")
    return granted


@storage_guard
async def has_any_permission(
    db: AsyncSession,
    user_id: int,
    slugs: Iterable[str],
    branch_id: Optional[int] = None
) -> bool:
    """
    Check if a user holds at least one of the permissions.

    Batched: one catalog lookup, one override fetch, one role EXISTS query.
    A permission revoked by override is never brought back by a role. A bare
    string counts as a single slug.
    """
    if isinstance(slugs, str):
        slugs = [slugs]
    scope = Scope.of(branch_id)

    resolved = await catalog.resolve_slugs(db, slugs)
    if not resolved:
        return False
    permission_ids = {perm.id for perm in resolved.values()}

    decisions = collapse_overrides(
        await overrides_of(db, user_id, branch_id, permission_ids=permission_ids),
        scope
    )
    if any(decisions.values()):
        log.debug(f"User {user_id} granted one of {sorted(resolved)} by override ({scope})")
        return True

    remaining = permission_ids - set(decisions)
    granted = await _any_role_grants(db, user_id, scope, remaining)
    log.debug(f"User {user_id} {'granted' if granted else 'denied'} any of {sorted(resolved)} ({scope})")
    return granted


@storage_guard
async def has_all_permissions(
    db: AsyncSession,
    user_id: int,
    slugs: Iterable[str],
    branch_id: Optional[int] = None
) -> bool:
    """Check if a user holds every one of the permissions. Stops at the first miss."""
    if isinstance(slugs, str):
        slugs = [slugs]
    for slug in dict.fromkeys(slugs):
        if not await has_permission(db, user_id, slug, branch_id):
            return False
    return True


@storage_guard
async def get_all_permissions(
    db: AsyncSession,
    user_id: int,
    branch_id: Optional[int] = None
) -> List[Permission]:
    """
    Get the user's effective permissions in a branch scope.

    Starts from the union of the permissions of the user's active roles, then
    adds override grants and removes override revokes.

    Returns:
        List of distinct Permission objects
    """
    scope = Scope.of(branch_id)
    permissions_map: Dict[int, Permission] = {}

    # 1. Permissions from the user's roles in scope
    stmt = (
        select(Permission)
        .join(role_permissions, role_permissions.c.permission_id == Permission.id)
        .join(Role, Role.id == role_permissions.c.role_id)
        .join(UserRoleAssignment, UserRoleAssignment.role_id == Role.id)
        .where(
            and_(
                UserRoleAssignment.user_id == user_id,
                scope.clause(UserRoleAssignment.branch_id),
                Role.is_active.is_(True)
            )
        )
        .distinct()
    )
    result = await db.execute(stmt)
    for perm in result.scalars().all():
        permissions_map[perm.id] = perm

    # 2. Apply overrides
    decisions = collapse_overrides(await overrides_of(db, user_id, branch_id), scope)

    granted_ids = {pid for pid, granted in decisions.items() if granted and pid not in permissions_map}
    for perm in await catalog.get_permissions_by_ids(db, granted_ids):
        permissions_map[perm.id] = perm

    for pid, granted in decisions.items():
        if not granted:
            permissions_map.pop(pid, None)

    log.debug(f"User {user_id} holds {len(permissions_map)} permissions ({scope})")
    return list(permissions_map.values())
