"""
Module, Permission, Role and assignment models for branch-scoped RBAC.

This module implements the permission system with:
- Modules owning permissions (slug = "<module>.<action>")
- Roles holding permissions, independent of branch
- User roles, optionally scoped to a branch
- Per-user grant/revoke overrides, optionally scoped to a branch
- Audit log of administrative changes
"""
from typing import Any, Dict
from sqlalchemy import String, ForeignKey, Table, Column, JSON, Text, Boolean, Integer, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database.base import Base, TimestampMixin


# ============================================================================
# Association Tables for Many-to-Many Relationships
# ============================================================================

# Role-Permission relationship (no branch scoping at the role level)
role_permissions = Table(
    "role_permissions",
    Base.metadata,
    Column("role_id", Integer, ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    Column("permission_id", Integer, ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
)


# ============================================================================
# Catalog Models
# ============================================================================

class Module(Base, TimestampMixin):
    """
    A functional area of the school system (students, exams, fees, ...).

    Modules are listed in `order` and own the permissions for their actions.
    """
    __tablename__ = "modules"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    permissions: Mapped[list["Permission"]] = relationship(
        "Permission",
        back_populates="module",
        lazy="selectin",
        order_by="Permission.id"
    )

    def __repr__(self) -> str:
        return f"<Module(id={self.id}, slug={self.slug!r})>"


class Permission(Base, TimestampMixin):
    """
    Permission to perform one action within a module.

    The slug is globally unique and is what callers check against:
    - module="exams", action="view" -> slug="exams.view"
    - module="system", action="cross_branch_access" -> slug="system.cross_branch_access"
    """
    __tablename__ = "permissions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)

    module_id: Mapped[int] = mapped_column(
        ForeignKey("modules.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    slug: Mapped[str] = mapped_column(String(150), unique=True, nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_system_permission: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    module: Mapped["Module"] = relationship("Module", back_populates="permissions", lazy="selectin")

    def __repr__(self) -> str:
        return f"<Permission(id={self.id}, slug={self.slug!r})>"


class Role(Base, TimestampMixin):
    """
    Role model for grouping permissions.

    Lower `level` means more authority (super-admin is 1). A role's
    permissions are the same in every branch; branch scoping lives on the
    user's assignment.
    """
    __tablename__ = "roles"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)

    name: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    slug: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    level: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_system_role: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    permissions: Mapped[list["Permission"]] = relationship(
        "Permission",
        secondary=role_permissions,
        lazy="selectin"
    )

    def __repr__(self) -> str:
        return f"<Role(id={self.id}, slug={self.slug!r}, level={self.level})>"


# ============================================================================
# Assignment Models
# ============================================================================

class UserRoleAssignment(Base, TimestampMixin):
    """
    A role held by a user, optionally limited to one branch.

    branch_id NULL means the role applies whatever branch is queried
    (platform-level roles). A user may hold the same role in several branches.
    """
    __tablename__ = "user_roles"
    __table_args__ = (
        UniqueConstraint("user_id", "role_id", "branch_id", name="uq_user_roles_user_role_branch"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)

    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    role_id: Mapped[int] = mapped_column(
        ForeignKey("roles.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    branch_id: Mapped[int | None] = mapped_column(
        ForeignKey("branches.id", ondelete="CASCADE"),
        nullable=True,
        index=True
    )
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    role: Mapped["Role"] = relationship("Role", lazy="selectin")

    def __repr__(self) -> str:
        return (
            f"<UserRoleAssignment(user_id={self.user_id}, role_id={self.role_id}, "
            f"branch_id={self.branch_id}, primary={self.is_primary})>"
        )


class UserPermissionOverride(Base, TimestampMixin):
    """
    Per-user grant (granted=True) or revoke (granted=False) of one permission.

    An override beats whatever the user's roles say for the same scope.
    The unique constraint does not cover NULL branch ids on most databases,
    so duplicate global rows are tolerated and resolved by the engine.
    """
    __tablename__ = "user_permissions"
    __table_args__ = (
        UniqueConstraint("user_id", "permission_id", "branch_id", name="uq_user_permissions_user_perm_branch"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)

    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    permission_id: Mapped[int] = mapped_column(
        ForeignKey("permissions.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    branch_id: Mapped[int | None] = mapped_column(
        ForeignKey("branches.id"),
        nullable=True,
        index=True
    )
    granted: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<UserPermissionOverride(user_id={self.user_id}, permission_id={self.permission_id}, "
            f"branch_id={self.branch_id}, granted={self.granted})>"
        )


class AuditLog(Base, TimestampMixin):
    """
    Audit log for tracking permission-related actions.

    Tracks who did what, when, and from where.
    """
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)

    # Actor
    user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    # Action details
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)

    # Context
    branch_id: Mapped[int | None] = mapped_column(
        ForeignKey("branches.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    details: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, user_id={self.user_id}, action={self.action}, resource={self.resource_type})>"
