"""
Pydantic schemas for branch responses.
"""
from typing import List, Optional
from pydantic import BaseModel, ConfigDict


class BranchPublic(BaseModel):
    """Public branch information."""
    id: int
    name: str
    code: str
    parent_branch_id: Optional[int] = None
    is_active: bool
    
    model_config = ConfigDict(from_attributes=True)


class DescendantsResponse(BaseModel):
    branch_id: int
    include_self: bool
    descendant_ids: List[int]


class AccessibleBranchesResponse(BaseModel):
    """Branches the current user may select, and what they may do across them."""
    branches: List[BranchPublic] = []
    user_branch_id: Optional[int] = None
    all_branches: bool
    has_cross_branch_access: bool
    can_manage_all_branches: bool
    can_view_all_branches: bool
    accessible_branch_ids: Optional[List[int]] = None
