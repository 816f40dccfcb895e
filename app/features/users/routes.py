"""
User feature routes.
"""
from typing import Annotated
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.users.models import User
from app.features.users.schemas import UserResponse, RoleAssignmentPublic
from app.features.users.dependencies import get_current_user
from app.features.permissions.assignments import role_assignments_of


router = APIRouter(tags=["users"])


@router.get("/me", response_model=UserResponse)
async def get_current_user_profile(
    user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Get current authenticated user's profile with role assignments."""
    assignments = await role_assignments_of(db, user.id)
    
    response = UserResponse.model_validate(user)
    response.roles = [
        RoleAssignmentPublic(
            role_id=a.role_id,
            role_slug=a.role.slug,
            branch_id=a.branch_id,
            is_primary=a.is_primary
        )
        for a in assignments
    ]
    return response
