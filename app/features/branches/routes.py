"""
Branch hierarchy routes.
"""
from typing import Annotated, List
from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.branches.access import (
    apply_branch_filter,
    can_manage_all_branches,
    can_view_all_branches,
    get_accessible_branch_ids,
    has_cross_branch_access,
    require_branch_access,
)
from app.features.branches.models import Branch
from app.features.branches.schemas import AccessibleBranchesResponse, BranchPublic, DescendantsResponse
from app.features.branches.tree import get_ancestors, get_descendant_ids
from app.features.users.dependencies import get_current_user
from app.features.users.models import User


router = APIRouter(tags=["branches"])


@router.get("/accessible", response_model=AccessibleBranchesResponse)
async def list_accessible_branches(
    user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Get the active branches the current user may select, used to populate branch pickers."""
    accessible = await get_accessible_branch_ids(db, user)

    stmt = select(Branch).where(Branch.is_active.is_(True))
    stmt = apply_branch_filter(stmt, Branch.id, accessible).order_by(Branch.name)
    result = await db.execute(stmt)

    return AccessibleBranchesResponse(
        branches=[BranchPublic.model_validate(b) for b in result.scalars().all()],
        user_branch_id=user.branch_id,
        all_branches=accessible is None,
        has_cross_branch_access=await has_cross_branch_access(db, user.id),
        can_manage_all_branches=await can_manage_all_branches(db, user),
        can_view_all_branches=await can_view_all_branches(db, user),
        accessible_branch_ids=None if accessible is None else sorted(accessible)
    )


@router.get("/{branch_id}/descendants", response_model=DescendantsResponse)
async def list_descendants(
    branch_id: int,
    user: Annotated[User, Depends(require_branch_access)],
    db: Annotated[AsyncSession, Depends(get_db)],
    include_self: bool = Query(True)
):
    """Get the ids of every branch below a branch."""
    ids = await get_descendant_ids(db, branch_id, include_self=include_self)
    return DescendantsResponse(branch_id=branch_id, include_self=include_self, descendant_ids=sorted(ids))


@router.get("/{branch_id}/ancestors", response_model=List[BranchPublic])
async def list_ancestors(
    branch_id: int,
    user: Annotated[User, Depends(require_branch_access)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Get the parent chain of a branch, nearest parent first."""
    return await get_ancestors(db, branch_id)
