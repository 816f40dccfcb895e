"""
Permission catalog lookups.

Slugs are exact, case-sensitive matches. Unknown slugs are simply absent from
results; callers treat them as permissions nobody holds.
"""
from collections import defaultdict
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.permissions.models import Module, Permission


async def resolve_slug(db: AsyncSession, slug: str) -> Optional[Permission]:
    """Get the permission with this slug, or None."""
    result = await db.execute(select(Permission).where(Permission.slug == slug))
    return result.scalars().first()


async def resolve_slugs(db: AsyncSession, slugs: Iterable[str]) -> Dict[str, Permission]:
    """Map every known slug in `slugs` to its permission in one query."""
    wanted = set(slugs)
    if not wanted:
        return {}

    result = await db.execute(select(Permission).where(Permission.slug.in_(wanted)))
    return {perm.slug: perm for perm in result.scalars().all()}


async def get_permissions_by_ids(db: AsyncSession, permission_ids: Iterable[int]) -> List[Permission]:
    ids = set(permission_ids)
    if not ids:
        return []

    result = await db.execute(select(Permission).where(Permission.id.in_(ids)))
    return list(result.scalars().all())


async def list_modules(db: AsyncSession, active_only: bool = True) -> List[Module]:
    """List modules in display order with their permissions loaded."""
    stmt = select(Module)
    if active_only:
        stmt = stmt.where(Module.is_active.is_(True))
    stmt = stmt.order_by(Module.order.asc(), Module.id.asc())

    result = await db.execute(stmt)
    return list(result.scalars().all())


def group_by_module(permissions: Iterable[Permission]) -> Dict[int, List[Permission]]:
    """Group permissions by module id, each group sorted by slug."""
    grouped: Dict[int, List[Permission]] = defaultdict(list)
    for perm in permissions:
        grouped[perm.module_id].append(perm)

    return {module_id: sorted(perms, key=lambda p: p.slug) for module_id, perms in grouped.items()}
