"""
Branch model for the multi-branch school hierarchy.
"""
from sqlalchemy import String, Boolean, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database.base import Base, TimestampMixin


class Branch(Base, TimestampMixin):
    """
    A school branch (campus).
    
    Branches may hang under a parent branch; a branch without a parent is a
    root. Creation and re-parenting belong to the admin tooling, the tree
    helpers in this package only read.
    """
    __tablename__ = "branches"
    
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    
    parent_branch_id: Mapped[int | None] = mapped_column(
        ForeignKey("branches.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    
    def __repr__(self) -> str:
        return f"<Branch(id={self.id}, code={self.code!r}, parent={self.parent_branch_id})>"
