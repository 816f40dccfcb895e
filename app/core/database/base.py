"""
Declarative base shared by every model.

Constraint names follow a fixed convention so that the unique constraints on
user_roles and user_permissions keep stable names across SQLite and
PostgreSQL.
"""
from datetime import datetime
from sqlalchemy import DateTime, MetaData, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """
    Base class for all models.

    Usage:
        from app.core.database.base import Base

        class Branch(Base):
            __tablename__ = "branches"

            id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
            parent_branch_id: Mapped[int | None] = mapped_column(ForeignKey("branches.id"))
    """
    metadata = MetaData(naming_convention=NAMING_CONVENTION)


class TimestampMixin:
    """
    created_at / updated_at columns filled by the database.

    updated_at is what orders permission overrides from oldest to newest, so
    it is bumped on every UPDATE. SQLite stores it with one-second resolution;
    queries that order by it also order by id.
    """
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
