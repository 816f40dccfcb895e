"""
Role store: the permissions each role holds.

Role permission sets are managed as a whole by the admin tooling, so
`sync_role_permissions` replaces the set exactly. `grant`/`revoke` exist for
one-off edits.
"""
from typing import Iterable, List, Set

from sqlalchemy import select, delete, insert, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.permissions.exceptions import NotFound
from app.features.permissions.models import Permission, Role, role_permissions
from app.utils import get_logger


log = get_logger(__name__)


async def get_role(db: AsyncSession, role_id: int) -> Role:
    """Get a role by id, raising NotFound if it does not exist."""
    role = await db.get(Role, role_id)
    if role is None:
        raise NotFound(f"Role {role_id} not found")
    return role


async def get_role_by_slug(db: AsyncSession, slug: str) -> Role | None:
    result = await db.execute(select(Role).where(Role.slug == slug))
    return result.scalars().first()


async def list_roles(db: AsyncSession, active_only: bool = True) -> List[Role]:
    """List roles from most to least authority."""
    stmt = select(Role)
    if active_only:
        stmt = stmt.where(Role.is_active.is_(True))
    stmt = stmt.order_by(Role.level.asc(), Role.id.asc())

    result = await db.execute(stmt)
    return list(result.scalars().all())


async def permissions_of(db: AsyncSession, role_id: int) -> Set[Permission]:
    """Get the permissions a role holds. Unknown roles hold nothing."""
    stmt = (
        select(Permission)
        .join(role_permissions, role_permissions.c.permission_id == Permission.id)
        .where(role_permissions.c.role_id == role_id)
    )
    result = await db.execute(stmt)
    return set(result.scalars().all())


async def _current_permission_ids(db: AsyncSession, role_id: int) -> Set[int]:
    result = await db.execute(
        select(role_permissions.c.permission_id).where(role_permissions.c.role_id == role_id)
    )
    return set(result.scalars().all())


async def _require_permissions(db: AsyncSession, permission_ids: Set[int]) -> None:
    if not permission_ids:
        return
    result = await db.execute(select(Permission.id).where(Permission.id.in_(permission_ids)))
    missing = permission_ids - set(result.scalars().all())
    if missing:
        raise NotFound(f"Permissions not found: {sorted(missing)}")


async def grant_role_permission(db: AsyncSession, role_id: int, permission_id: int) -> bool:
    """
    Add a permission to a role.

    Returns:
        True if the permission was added, False if the role already held it
    """
    await get_role(db, role_id)
    await _require_permissions(db, {permission_id})

    if permission_id in await _current_permission_ids(db, role_id):
        return False

    await db.execute(insert(role_permissions).values(role_id=role_id, permission_id=permission_id))
    await db.flush()
    log.info(f"Granted permission {permission_id} to role {role_id}")
    return True


async def revoke_role_permission(db: AsyncSession, role_id: int, permission_id: int) -> bool:
    """
    Remove a permission from a role.

    Returns:
        True if the permission was removed, False if the role did not hold it
    """
    await get_role(db, role_id)

    result = await db.execute(
        delete(role_permissions).where(
            and_(
                role_permissions.c.role_id == role_id,
                role_permissions.c.permission_id == permission_id
            )
        )
    )
    await db.flush()
    removed = result.rowcount > 0
    if removed:
        log.info(f"Revoked permission {permission_id} from role {role_id}")
    return removed


async def sync_role_permissions(db: AsyncSession, role_id: int, permission_ids: Iterable[int]) -> Set[int]:
    """
    Replace a role's permissions with exactly `permission_ids`.

    Anything not listed is removed. Running the same sync twice is a no-op.

    Returns:
        The role's permission ids after the sync
    """
    await get_role(db, role_id)
    wanted = set(permission_ids)
    await _require_permissions(db, wanted)

    current = await _current_permission_ids(db, role_id)
    to_remove = current - wanted
    to_add = wanted - current

    if to_remove:
        await db.execute(
            delete(role_permissions).where(
                and_(
                    role_permissions.c.role_id == role_id,
                    role_permissions.c.permission_id.in_(to_remove)
                )
            )
        )
    if to_add:
        await db.execute(
            insert(role_permissions),
            [{"role_id": role_id, "permission_id": pid} for pid in sorted(to_add)]
        )
    await db.flush()

    log.info(f"Synced role {role_id} permissions: +{len(to_add)} -{len(to_remove)} ({len(wanted)} total)")
    return wanted
