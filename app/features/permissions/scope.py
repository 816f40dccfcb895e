"""
Branch scope of a permission query.
"""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import ColumnElement, or_, true


@dataclass(frozen=True)
class Scope:
    """
    Either global (branch_id is None) or specific to one branch.

    A global scope sees every assignment and override of the user. A specific
    scope sees rows tagged with exactly that branch plus untagged (global) rows.
    A global-only scope sees untagged rows alone: what the user holds
    everywhere, not somewhere.
    """
    branch_id: Optional[int] = None
    global_only: bool = False

    @classmethod
    def of(cls, branch_id: Optional[int], global_only: bool = False) -> "Scope":
        return cls(branch_id, global_only and branch_id is None)

    @property
    def is_global(self) -> bool:
        return self.branch_id is None

    def matches(self, row_branch_id: Optional[int]) -> bool:
        """Whether a row tagged with `row_branch_id` is visible under this scope."""
        if self.global_only:
            return row_branch_id is None
        if self.is_global or row_branch_id is None:
            return True
        return row_branch_id == self.branch_id

    def is_exact(self, row_branch_id: Optional[int]) -> bool:
        """Whether a row is tagged with exactly this scope's branch (NULL for global)."""
        return row_branch_id == self.branch_id

    def clause(self, column) -> ColumnElement[bool]:
        """SQL form of `matches` for a branch_id column."""
        if self.global_only:
            return column.is_(None)
        if self.is_global:
            return true()
        return or_(column == self.branch_id, column.is_(None))

    def __str__(self) -> str:
        if self.global_only:
            return "global-only"
        return "global" if self.is_global else f"branch:{self.branch_id}"
