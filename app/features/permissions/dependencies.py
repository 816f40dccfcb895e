"""
FastAPI dependencies for route protection and audit logging helpers.

The branch context of a guard comes from the request's `branch_id` path or
query parameter, if any. Routes that carry the branch in their JSON body check
after parsing it, with `ensure_permission`.
"""
from typing import Annotated, Any, Dict, List, Optional

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.permissions import resolver
from app.features.permissions.models import AuditLog
from app.features.users.dependencies import get_current_user
from app.features.users.models import User
from app.utils import get_logger


log = get_logger(__name__)


def get_request_branch_id(request: Request) -> Optional[int]:
    """Branch context of a request, from the path or the query string."""
    raw = request.path_params.get("branch_id") or request.query_params.get("branch_id")
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid branch_id")


def _forbidden(detail: str, required: List[str]) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"message": detail, "required_permissions": required}
    )


# ============================================================================
# Route Guards
# ============================================================================

def require_permission(slug: str):
    """
    FastAPI dependency to require a specific permission.

    Usage:
        @router.post("/exams")
        async def create_exam(
            user: User = Depends(require_permission("exams.create"))
        ):
            # User has exams.create in the requested branch
            pass

    Raises:
        HTTPException: 403 if the user doesn't have the permission
    """
    async def permission_dependency(
        request: Request,
        db: Annotated[AsyncSession, Depends(get_db)],
        current_user: Annotated[User, Depends(get_current_user)]
    ) -> User:
        branch_id = get_request_branch_id(request)
        if not await resolver.has_permission(db, current_user.id, slug, branch_id):
            raise _forbidden("You do not have permission to perform this action", [slug])
        return current_user

    return permission_dependency


def require_any_permission(slugs: List[str]):
    """
    FastAPI dependency to require ANY of the specified permissions.

    Usage:
        @router.get("/reports")
        async def get_reports(
            user: User = Depends(require_any_permission(["reports.view", "reports.generate"]))
        ):
            pass
    """
    async def permission_dependency(
        request: Request,
        db: Annotated[AsyncSession, Depends(get_db)],
        current_user: Annotated[User, Depends(get_current_user)]
    ) -> User:
        branch_id = get_request_branch_id(request)
        if not await resolver.has_any_permission(db, current_user.id, slugs, branch_id):
            raise _forbidden("You do not have permission to perform this action", list(slugs))
        return current_user

    return permission_dependency


def require_all_permissions(slugs: List[str]):
    """FastAPI dependency to require ALL of the specified permissions."""
    async def permission_dependency(
        request: Request,
        db: Annotated[AsyncSession, Depends(get_db)],
        current_user: Annotated[User, Depends(get_current_user)]
    ) -> User:
        branch_id = get_request_branch_id(request)
        if not await resolver.has_all_permissions(db, current_user.id, slugs, branch_id):
            raise _forbidden("You do not have permission to perform this action", list(slugs))
        return current_user

    return permission_dependency


async def ensure_permission(db: AsyncSession, user: User, slug: str, branch_id: Optional[int]) -> None:
    """
    In-handler check against the branch a payload targets.

    A branch target needs the permission in that branch. A global target
    needs it from an untagged assignment or override; holding it in some
    branch is not enough to act everywhere.

    Raises:
        HTTPException: 403 if the user doesn't have the permission there
    """
    if not await resolver.has_permission(db, user.id, slug, branch_id, global_only=branch_id is None):
        log.info(f"User {user.id} lacks {slug} for branch {branch_id}")
        raise _forbidden("You do not have permission to perform this action", [slug])


# ============================================================================
# Audit Logging
# ============================================================================

async def create_audit_log(
    db: AsyncSession,
    user_id: Optional[int],
    action: str,
    resource_type: str,
    resource_id: Optional[int] = None,
    branch_id: Optional[int] = None,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None
) -> AuditLog:
    """
    Create an audit log entry in the caller's transaction.

    Args:
        db: Database session
        user_id: User performing the action
        action: Action performed (e.g., "grant", "revoke", "sync", "assign_role")
        resource_type: Type of resource (e.g., "role", "user")
        resource_id: ID of the resource
        branch_id: Branch context
        details: Additional details
        request: Incoming request, for client IP and user agent

    Returns:
        Created AuditLog object
    """
    audit_log = AuditLog(
        user_id=user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        branch_id=branch_id,
        details=details,
        ip_address=request.client.host if request is not None and request.client else None,
        user_agent=request.headers.get("user-agent") if request is not None else None
    )

    db.add(audit_log)
    await db.flush()

    log.info(
        f"Audit: user={user_id} action={action} resource={resource_type}:{resource_id} branch={branch_id}"
    )

    return audit_log
