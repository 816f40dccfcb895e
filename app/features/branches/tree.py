"""
Branch tree traversal.

Both directions run as a single recursive CTE so the cost of a lookup does not
grow with one round trip per tree level.
"""
from typing import List, Set

from sqlalchemy import select, literal
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import config
from app.features.branches.models import Branch
from app.features.permissions.exceptions import storage_guard
from app.utils import get_logger


log = get_logger(__name__)


@storage_guard
async def get_descendant_ids(db: AsyncSession, branch_id: int, include_self: bool = True) -> Set[int]:
    """
    Get the ids of every branch below `branch_id`.

    Args:
        db: Database session
        branch_id: Root of the subtree
        include_self: Whether `branch_id` itself is part of the result

    Returns:
        Set of branch ids, empty if the branch does not exist
    """
    # UNION (not UNION ALL) deduplicates, so a corrupted cycle still terminates
    tree = (
        select(Branch.id)
        .where(Branch.id == branch_id)
        .cte("branch_descendants", recursive=True)
    )
    tree = tree.union(
        select(Branch.id).join(tree, Branch.parent_branch_id == tree.c.id)
    )

    result = await db.execute(select(tree.c.id))
    ids = set(result.scalars().all())

    if not include_self:
        ids.discard(branch_id)

    log.debug(f"Branch {branch_id} descendants (include_self={include_self}): {sorted(ids)}")
    return ids


@storage_guard
async def get_ancestors(db: AsyncSession, branch_id: int) -> List[Branch]:
    """
    Get the parent chain of a branch, nearest parent first, ending at a root.

    Returns an empty list for a root branch or an unknown branch id.
    """
    chain = (
        select(Branch.parent_branch_id.label("id"), literal(1).label("depth"))
        .where(Branch.id == branch_id)
        .cte("branch_ancestors", recursive=True)
    )
    chain = chain.union_all(
        select(Branch.parent_branch_id, chain.c.depth + 1)
        .join(chain, Branch.id == chain.c.id)
        .where(chain.c.depth < config.MAX_BRANCH_DEPTH)
    )

    stmt = (
        select(Branch)
        .join(chain, Branch.id == chain.c.id)
        .order_by(chain.c.depth)
    )
    result = await db.execute(stmt)

    ancestors: List[Branch] = []
    seen = {branch_id}
    for branch in result.scalars().all():
        if branch.id in seen:
            log.warning(f"Cycle in branch hierarchy above branch {branch_id} at branch {branch.id}")
            break
        seen.add(branch.id)
        ancestors.append(branch)

    return ancestors
