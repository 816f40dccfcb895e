"""
Pydantic schemas for permission management.

Request and response models for the catalog, roles, assignments, checks and
audit logs.
"""
from datetime import datetime
from enum import Enum
from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator


# ============================================================================
# Catalog Schemas
# ============================================================================

class PermissionResponse(BaseModel):
    """Schema for permission response."""
    id: int
    module_id: int
    name: str
    slug: str
    action: str
    description: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class ModuleResponse(BaseModel):
    """Schema for a module and its permissions."""
    id: int
    name: str
    slug: str
    description: Optional[str] = None
    order: int
    permissions: List[PermissionResponse] = []

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Role Schemas
# ============================================================================

class RoleResponse(BaseModel):
    """Schema for role response."""
    id: int
    name: str
    slug: str
    description: Optional[str] = None
    level: int
    is_system_role: bool
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class RolePermissionsResponse(BaseModel):
    """A role's permission ids after a change."""
    role_id: int
    permission_ids: List[int]


# ============================================================================
# Assignment Schemas
# ============================================================================

class AssignPermissionToRole(BaseModel):
    """Schema for granting a permission to a role."""
    permission_id: int = Field(..., description="Permission ID")


class SyncRolePermissions(BaseModel):
    """Schema for replacing a role's permissions."""
    permission_ids: List[int] = Field(..., description="Exact set of permission IDs the role will hold")

    @field_validator('permission_ids')
    @classmethod
    def unique_ids(cls, v: List[int]) -> List[int]:
        """Drop duplicate ids, keeping order."""
        return list(dict.fromkeys(v))


class AssignRoleToUser(BaseModel):
    """Schema for assigning a role to a user, optionally within a branch."""
    role_id: int = Field(..., description="Role ID")
    branch_id: Optional[int] = Field(None, description="Branch ID (null = every branch)")
    is_primary: bool = Field(False, description="Mark as the user's primary role")


class RoleAssignmentResponse(BaseModel):
    user_id: int
    role_id: int
    branch_id: Optional[int] = None
    is_primary: bool

    model_config = ConfigDict(from_attributes=True)


class SetUserOverride(BaseModel):
    """Schema for granting or revoking a permission for one user."""
    permission_id: int = Field(..., description="Permission ID")
    branch_id: Optional[int] = Field(None, description="Branch ID (null = every branch)")
    granted: bool = Field(..., description="True grants, False revokes")


class OverrideResponse(BaseModel):
    user_id: int
    permission_id: int
    branch_id: Optional[int] = None
    granted: bool

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Permission Check Schemas
# ============================================================================

class CheckMode(str, Enum):
    ANY = "any"
    ALL = "all"


class PermissionCheckRequest(BaseModel):
    """Schema for checking if the current user has permissions."""
    slugs: List[str] = Field(..., min_length=1, description="Permission slugs, e.g. ['exams.view']")
    mode: CheckMode = Field(CheckMode.ALL, description="Require any or all of the slugs")
    branch_id: Optional[int] = Field(None, description="Branch context (null = any branch)")


class PermissionCheckResponse(BaseModel):
    """Schema for permission check response."""
    has_permission: bool
    reason: Optional[str] = None


# ============================================================================
# User Permissions Response
# ============================================================================

class UserPermissionsResponse(BaseModel):
    """A user's effective permissions in a branch scope."""
    user_id: int
    branch_id: Optional[int] = None
    permissions_by_module: Dict[int, List[PermissionResponse]] = {}
    permission_slugs: List[str] = []


# ============================================================================
# Audit Log Schemas
# ============================================================================

class AuditLogResponse(BaseModel):
    """Schema for audit log response."""
    id: int
    user_id: Optional[int]
    action: str
    resource_type: str
    resource_id: Optional[int]
    branch_id: Optional[int]
    details: Optional[Dict[str, Any]]
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AuditLogListResponse(BaseModel):
    """Schema for paginated audit log list."""
    items: List[AuditLogResponse]
    total: int
    page: int
    page_size: int
    pages: int
