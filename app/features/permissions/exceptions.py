"""
Error taxonomy for the authorization engine.

Absence (unknown slug, user or branch) is not an error on read paths: those
return the denied/empty default. Only storage outages propagate, because a
silent False during an outage is indistinguishable from a real denial.
"""
import functools
from typing import Any, Awaitable, Callable, TypeVar

from sqlalchemy.exc import InterfaceError, OperationalError

T = TypeVar("T")


class AuthorizationError(Exception):
    """Base class for authorization engine errors."""


class NotFound(AuthorizationError):
    """An administrative operation referenced a role, permission or user that does not exist."""


class ConflictingOverride(AuthorizationError):
    """More than one override row exists for the same (user, permission, branch) key."""

    def __init__(self, user_id: int, permission_id: int, branch_id: int | None, count: int):
        self.user_id = user_id
        self.permission_id = permission_id
        self.branch_id = branch_id
        self.count = count
        super().__init__(
            f"{count} override rows for user={user_id} permission={permission_id} branch={branch_id}"
        )


class StorageFailure(AuthorizationError):
    """The underlying data source could not be reached."""


def storage_guard(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """Re-raise connectivity errors from an async store read as StorageFailure."""

    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        try:
            return await func(*args, **kwargs)
        except (OperationalError, InterfaceError) as e:
            raise StorageFailure(f"{func.__name__}: {e.orig or e}") from e

    return wrapper
