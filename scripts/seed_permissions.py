"""
Seed script to populate the default school catalog and roles.

Run this script after database initialization to create:
- Default modules and their permissions (slug = "<module>.<action>")
- The system.* cross-branch permissions
- Default roles and their permission sets

Running it again updates role permission sets to match this file.

Usage:
    python -m scripts.seed_permissions
"""
import asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db, init_db
from app.features.permissions.models import Module, Permission, Role
from app.features.permissions.roles import sync_role_permissions
from app.utils import get_logger


log = get_logger(__name__)


# (slug, name, order, actions)
DEFAULT_MODULES = [
    ("dashboard", "Dashboard", 1, ["view"]),
    ("students", "Students", 2, ["view", "create", "edit", "delete", "export", "promote", "transfer"]),
    ("teachers", "Teachers", 3, ["view", "create", "edit", "delete", "export"]),
    ("attendance", "Attendance", 4, ["view", "mark", "edit", "report", "export"]),
    ("branches", "Branches", 5, ["view", "create", "edit", "delete", "stats"]),
    ("fees", "Fees", 6, ["view", "create", "collect", "report"]),
    ("invoices", "Invoices", 7, ["view", "create", "send", "payment"]),
    ("exams", "Exams", 8, ["view", "create", "edit", "results"]),
    ("grades", "Grades", 9, ["view", "create", "edit", "delete"]),
    ("holidays", "Holidays", 10, ["view", "create", "edit", "delete"]),
    ("reports", "Reports", 11, ["view", "generate", "export"]),
    ("users", "Users", 12, ["view", "create", "edit", "delete", "manage_roles"]),
    ("roles", "Roles", 13, ["view", "manage"]),
    ("system", "System", 14, ["cross_branch_access", "manage_all_branches", "view_all_branches"]),
]


# slug -> (name, level, description, permission slugs or "ALL")
DEFAULT_ROLES = {
    "super-admin": ("Super Admin", 1, "Full access to every branch", "ALL"),
    "branch-admin": ("Branch Admin", 2, "Branch-level administration access", [
        "dashboard.view",
        "students.view", "students.create", "students.edit", "students.delete",
        "students.export", "students.promote", "students.transfer",
        "teachers.view", "teachers.create", "teachers.edit", "teachers.delete", "teachers.export",
        "attendance.view", "attendance.mark", "attendance.edit", "attendance.report", "attendance.export",
        "branches.view", "branches.create", "branches.edit", "branches.delete", "branches.stats",
        "fees.view", "fees.collect", "fees.report",
        "exams.view", "exams.create", "exams.edit", "exams.results",
        "grades.view", "grades.create", "grades.edit", "grades.delete",
        "holidays.view", "holidays.create", "holidays.edit", "holidays.delete",
        "reports.view", "reports.generate", "reports.export",
        "users.view",
    ]),
    "teacher": ("Teacher", 3, "Academic access", [
        "dashboard.view",
        "students.view",
        "attendance.view", "attendance.mark",
        "exams.view", "exams.results",
        "grades.view",
        "holidays.view",
    ]),
    "staff": ("Staff", 4, "Administrative access", [
        "dashboard.view",
        "students.view", "students.create", "students.edit",
        "teachers.view",
        "attendance.view", "attendance.mark",
        "fees.view", "fees.collect",
        "holidays.view",
    ]),
    "accountant": ("Accountant", 4, "Financial access", [
        "dashboard.view",
        "students.view",
        "fees.view", "fees.create", "fees.collect", "fees.report",
        "invoices.view", "invoices.create", "invoices.send", "invoices.payment",
        "reports.view", "reports.generate", "reports.export",
    ]),
    "student": ("Student", 5, "Limited view access", [
        "dashboard.view",
        "attendance.view",
        "exams.view",
        "fees.view",
        "holidays.view",
    ]),
    "parent": ("Parent", 6, "View children's information", [
        "dashboard.view",
        "students.view",
        "attendance.view",
        "exams.view",
        "fees.view",
        "holidays.view",
    ]),
}


async def seed_catalog(db: AsyncSession) -> dict[str, Permission]:
    """
    Create default modules and permissions.

    Returns:
        Dictionary mapping permission slugs to Permission objects
    """
    log.info("Creating default modules and permissions...")
    permissions_map: dict[str, Permission] = {}

    for module_slug, module_name, order, actions in DEFAULT_MODULES:
        result = await db.execute(select(Module).where(Module.slug == module_slug))
        module = result.scalars().first()

        if module is None:
            module = Module(name=module_name, slug=module_slug, order=order)
            db.add(module)
            await db.flush()
            log.info(f"Created module: {module_slug}")

        for action in actions:
            slug = f"{module_slug}.{action}"
            result = await db.execute(select(Permission).where(Permission.slug == slug))
            permission = result.scalars().first()

            if permission is None:
                permission = Permission(
                    module_id=module.id,
                    name=f"{action.replace('_', ' ').capitalize()} {module_name}",
                    slug=slug,
                    action=action,
                    is_system_permission=True
                )
                db.add(permission)
                log.debug(f"Created permission: {slug}")
            permissions_map[slug] = permission

    await db.flush()
    log.info(f"Catalog holds {len(permissions_map)} default permissions")
    return permissions_map


async def seed_roles(db: AsyncSession, permissions_map: dict[str, Permission]):
    """
    Create default roles and sync their permissions.

    Args:
        db: Database session
        permissions_map: Dictionary of permission slug -> Permission object
    """
    log.info("Creating default roles...")

    for role_slug, (name, level, description, wanted) in DEFAULT_ROLES.items():
        result = await db.execute(select(Role).where(Role.slug == role_slug))
        role = result.scalars().first()

        if role is None:
            role = Role(
                name=name,
                slug=role_slug,
                level=level,
                description=description,
                is_system_role=True
            )
            db.add(role)
            await db.flush()
            log.info(f"Created role '{role_slug}'")

        if wanted == "ALL":
            permission_ids = [perm.id for perm in permissions_map.values()]
        else:
            permission_ids = []
            for slug in wanted:
                if slug in permissions_map:
                    permission_ids.append(permissions_map[slug].id)
                else:
                    log.warning(f"Permission '{slug}' not found for role '{role_slug}'")

        await sync_role_permissions(db, role.id, permission_ids)

    log.info("Default roles created successfully")


async def main():
    """Main function to seed the catalog and roles."""
    log.info("Starting permission seeding...")

    # Initialize database tables first
    log.info("Initializing database tables...")
    await init_db()

    # Get database session
    async for db in get_db():
        try:
            permissions_map = await seed_catalog(db)
            await seed_roles(db, permissions_map)
            await db.commit()

            log.info("Permission seeding completed successfully!")
            for role_slug, (name, level, description, _) in DEFAULT_ROLES.items():
                log.info(f"  - {role_slug} (level {level}): {description}")

        except Exception as e:
            log.error(f"Error seeding permissions: {e}", exc_info=True)
            await db.rollback()
            raise

        break  # Only use first session


if __name__ == "__main__":
    asyncio.run(main())
