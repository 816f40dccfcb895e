"""
Pydantic schemas for user-related responses.
"""
from datetime import datetime
from pydantic import BaseModel, EmailStr, Field


class UserBase(BaseModel):
    """Base user schema with common fields."""
    email: EmailStr
    name: str = Field(..., min_length=1, max_length=255)


class RoleAssignmentPublic(BaseModel):
    """A role held by the user, with its branch scope."""
    role_id: int
    role_slug: str
    branch_id: int | None = None
    is_primary: bool = False


class UserResponse(UserBase):
    """Schema for user responses."""
    id: int
    branch_id: int | None = None
    is_active: bool
    is_admin: bool
    last_login_at: datetime | None = None
    
    roles: list[RoleAssignmentPublic] = []
    
    model_config = {"from_attributes": True}
