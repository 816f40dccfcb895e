"""
Async engine and session handling for the authorization store.

The default store is a local SQLite file through aiosqlite. Pointing
DATABASE_URL at postgresql+asyncpg works without code changes; the recursive
branch queries are portable CTEs.
"""
from collections.abc import AsyncGenerator
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool

from app.core import config
from app.utils import get_logger


log = get_logger(__name__)

IS_SQLITE = config.SQLALCHEMY_DATABASE_URL.startswith("sqlite")

engine = create_async_engine(
    config.SQLALCHEMY_DATABASE_URL,
    # SQLite file handles are cheap and do not share well between tasks
    poolclass=NullPool if IS_SQLITE else None,
    echo=False,
    future=True,
)

if IS_SQLITE:
    @event.listens_for(engine.sync_engine, "connect")
    def enable_sqlite_foreign_keys(dbapi_connection, _connection_record):
        # Branch deletion relies on ON DELETE SET NULL / CASCADE
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    One session per request, committed when the handler returns.

    Handlers that write call `db.commit()` themselves before building their
    response; the trailing commit here covers bookkeeping such as
    `last_login_at`. Any exception rolls the whole request back.

    Usage:
        @router.get("/{branch_id}/descendants")
        async def list_descendants(branch_id: int, db: AsyncSession = Depends(get_db)):
            return await get_descendant_ids(db, branch_id)
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


def import_models() -> None:
    """Import every model module so its tables are registered on Base.metadata."""
    from app.features.branches.models import Branch  # noqa: F401
    from app.features.users.models import User  # noqa: F401
    from app.features.permissions.models import (  # noqa: F401
        Module, Permission, Role, UserRoleAssignment, UserPermissionOverride, AuditLog
    )


async def init_db():
    """
    Create any missing tables. Existing tables are left untouched.

    Called from the app startup hook and from scripts/seed_permissions.py.
    """
    from app.core.database.base import Base

    import_models()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    log.info(f"Schema ready on {engine.url.render_as_string(hide_password=True)}")
