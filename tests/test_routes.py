"""
HTTP tests for the users, branches and permissions routers.
"""
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app.core import config
from app.core.database.engine import get_db
from app.features.permissions import resolver
from app.features.permissions.assignments import assign_user_role, set_user_override
from app.features.permissions.exceptions import StorageFailure
from app.features.users.auth import create_access_token
from app.features.users.dependencies import limiter
from app.main import app
from tests.helpers.school import ANNEX, EAST, MAIN, NORTH, SOUTH, WEST


pytestmark = pytest.mark.asyncio


def auth(user_id: int) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


@pytest_asyncio.fixture
async def client(session_factory, school):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    limiter.reset()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def staffed(db, school):
    """Give the seeded users their usual roles."""
    await assign_user_role(db, school.admin_id, school.roles["super-admin"], None, is_primary=True)
    await assign_user_role(db, school.teacher_id, school.roles["teacher"], EAST, is_primary=True)
    await assign_user_role(db, school.branch_admin_id, school.roles["branch-admin"], NORTH, is_primary=True)
    await db.commit()
    return school


class TestService:
    async def test_root_and_health(self, client):
        root = await client.get("/")
        assert root.status_code == 200
        assert root.json()["status"] == "online"

        health = await client.get("/health")
        assert health.json() == {"status": "healthy", "database": "ok"}


class TestAuthentication:
    async def test_bad_token(self, client):
        response = await client.get("/users/me", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    async def test_unknown_user(self, client):
        response = await client.get("/users/me", headers=auth(999))
        assert response.status_code == 401

    async def test_me_lists_role_assignments(self, client, staffed):
        response = await client.get("/users/me", headers=auth(staffed.teacher_id))
        assert response.status_code == 200
        body = response.json()
        assert body["email"] == "teacher@school.test"
        assert body["branch_id"] == EAST
        assert body["roles"] == [
            {"role_id": staffed.roles["teacher"], "role_slug": "teacher", "branch_id": EAST, "is_primary": True}
        ]


class TestPermissionCheck:
    async def test_check_by_branch(self, client, staffed):
        headers = auth(staffed.teacher_id)

        allowed = await client.post("/permissions/check", json={"slugs": ["exams.view"], "branch_id": EAST}, headers=headers)
        assert allowed.json() == {"has_permission": True, "reason": None}

        denied = await client.post("/permissions/check", json={"slugs": ["exams.view"], "branch_id": WEST}, headers=headers)
        assert denied.json()["has_permission"] is False
        assert denied.json()["reason"] == "Permission denied"

    async def test_check_modes(self, client, staffed):
        headers = auth(staffed.teacher_id)
        slugs = ["exams.view", "exams.create"]

        any_of = await client.post("/permissions/check", json={"slugs": slugs, "mode": "any", "branch_id": EAST}, headers=headers)
        all_of = await client.post("/permissions/check", json={"slugs": slugs, "mode": "all", "branch_id": EAST}, headers=headers)

        assert any_of.json()["has_permission"] is True
        assert all_of.json()["has_permission"] is False

    async def test_check_requires_slugs(self, client, staffed):
        response = await client.post("/permissions/check", json={"slugs": []}, headers=auth(staffed.teacher_id))
        assert response.status_code == 400
        assert "slugs" in response.json()

    async def test_storage_failure_is_503(self, client, staffed):
        with patch.object(resolver, "has_all_permissions", AsyncMock(side_effect=StorageFailure("down"))):
            response = await client.post(
                "/permissions/check", json={"slugs": ["exams.view"]}, headers=auth(staffed.teacher_id)
            )
        assert response.status_code == 503


class TestUserPermissions:
    async def test_own_permissions(self, client, staffed):
        response = await client.get(
            f"/permissions/users/{staffed.teacher_id}", params={"branch_id": EAST}, headers=auth(staffed.teacher_id)
        )
        assert response.status_code == 200
        body = response.json()
        assert body["permission_slugs"] == ["exams.view", "students.view"]
        assert set(body["permissions_by_module"]) == {
            str(staffed.modules["exams"]), str(staffed.modules["students"])
        }

    async def test_other_users_need_users_view(self, client, staffed):
        url = f"/permissions/users/{staffed.branch_admin_id}"

        denied = await client.get(url, headers=auth(staffed.teacher_id))
        assert denied.status_code == 403

        # branch-admin holds users.view; the engine checks it under the requested branch
        head = auth(staffed.branch_admin_id)
        assert (await client.get(f"/permissions/users/{staffed.teacher_id}", params={"branch_id": NORTH}, headers=head)).status_code == 200
        assert (await client.get(f"/permissions/users/{staffed.teacher_id}", params={"branch_id": EAST}, headers=head)).status_code == 403


class TestCatalogRoutes:
    async def test_modules_and_roles(self, client, staffed):
        headers = auth(staffed.teacher_id)

        modules = (await client.get("/permissions/modules", headers=headers)).json()
        assert [m["slug"] for m in modules] == ["exams", "students", "users", "roles", "system"]
        assert {p["slug"] for p in modules[0]["permissions"]} == {"exams.view", "exams.create", "exams.results"}

        roles = (await client.get("/permissions/roles", headers=headers)).json()
        assert [r["slug"] for r in roles] == ["super-admin", "branch-admin", "teacher"]


class TestRoleAdministration:
    async def test_sync_requires_roles_manage(self, client, staffed):
        response = await client.put(
            f"/permissions/roles/{staffed.roles['teacher']}/permissions",
            json={"permission_ids": []},
            headers=auth(staffed.teacher_id)
        )
        assert response.status_code == 403
        assert response.json()["detail"]["required_permissions"] == ["roles.manage"]

    async def test_sync_writes_audit_log(self, client, staffed):
        teacher_role = staffed.roles["teacher"]
        wanted = [staffed.perm("exams.view"), staffed.perm("exams.results")]

        response = await client.put(
            f"/permissions/roles/{teacher_role}/permissions",
            json={"permission_ids": wanted + wanted},
            headers=auth(staffed.admin_id)
        )
        assert response.status_code == 200
        assert response.json() == {"role_id": teacher_role, "permission_ids": sorted(wanted)}

        logs = await client.get("/permissions/audit-logs", headers=auth(staffed.admin_id))
        assert logs.status_code == 200
        body = logs.json()
        assert body["total"] == 1
        assert body["items"][0]["action"] == "sync_permissions"
        assert body["items"][0]["resource_id"] == teacher_role

    async def test_system_roles_need_platform_admin(self, client, db, staffed):
        await set_user_override(db, staffed.auditor_id, staffed.perm("roles.manage"), None, granted=True)
        await db.commit()
        headers = auth(staffed.auditor_id)

        system_role = await client.put(
            f"/permissions/roles/{staffed.roles['branch-admin']}/permissions",
            json={"permission_ids": []},
            headers=headers
        )
        assert system_role.status_code == 403

        plain_role = await client.put(
            f"/permissions/roles/{staffed.roles['teacher']}/permissions",
            json={"permission_ids": [staffed.perm("exams.view")]},
            headers=headers
        )
        assert plain_role.status_code == 200

        system_url = f"/permissions/roles/{staffed.roles['branch-admin']}/permissions"
        granted = await client.post(
            system_url, json={"permission_id": staffed.perm("system.cross_branch_access")}, headers=headers
        )
        assert granted.status_code == 403

        revoked = await client.delete(f"{system_url}/{staffed.perm('users.view')}", headers=headers)
        assert revoked.status_code == 403

        plain_url = f"/permissions/roles/{staffed.roles['teacher']}/permissions"
        assert (await client.post(plain_url, json={"permission_id": staffed.perm("exams.create")}, headers=headers)).status_code == 200
        assert (await client.delete(f"{plain_url}/{staffed.perm('exams.create')}", headers=headers)).status_code == 204

    async def test_branch_scoped_roles_manage_is_not_enough(self, client, db, staffed):
        await set_user_override(db, staffed.teacher_id, staffed.perm("roles.manage"), EAST, granted=True)
        await db.commit()

        response = await client.post(
            f"/permissions/roles/{staffed.roles['teacher']}/permissions",
            json={"permission_id": staffed.perm("roles.manage")},
            headers=auth(staffed.teacher_id)
        )
        assert response.status_code == 403
        assert response.json()["detail"]["required_permissions"] == ["roles.manage"]

    async def test_grant_and_revoke_role_permission(self, client, staffed):
        headers = auth(staffed.admin_id)
        url = f"/permissions/roles/{staffed.roles['teacher']}/permissions"

        granted = await client.post(url, json={"permission_id": staffed.perm("users.view")}, headers=headers)
        assert granted.status_code == 200
        assert staffed.perm("users.view") in granted.json()["permission_ids"]

        revoked = await client.delete(f"{url}/{staffed.perm('users.view')}", headers=headers)
        assert revoked.status_code == 204
        again = await client.delete(f"{url}/{staffed.perm('users.view')}", headers=headers)
        assert again.status_code == 404

    async def test_audit_logs_admin_only(self, client, staffed):
        response = await client.get("/permissions/audit-logs", headers=auth(staffed.branch_admin_id))
        assert response.status_code == 403


class TestUserAdministration:
    async def test_override_round_trip_changes_checks(self, client, staffed):
        admin = auth(staffed.admin_id)
        teacher = auth(staffed.teacher_id)
        check = {"slugs": ["exams.view"], "branch_id": WEST}

        response = await client.put(
            f"/permissions/users/{staffed.teacher_id}/overrides",
            json={"permission_id": staffed.perm("exams.view"), "branch_id": WEST, "granted": True},
            headers=admin
        )
        assert response.status_code == 200
        assert response.json()["granted"] is True
        assert (await client.post("/permissions/check", json=check, headers=teacher)).json()["has_permission"]

        removed = await client.delete(
            f"/permissions/users/{staffed.teacher_id}/overrides/{staffed.perm('exams.view')}",
            params={"branch_id": WEST},
            headers=admin
        )
        assert removed.status_code == 204
        assert not (await client.post("/permissions/check", json=check, headers=teacher)).json()["has_permission"]

    async def test_assign_role(self, client, staffed):
        response = await client.post(
            f"/permissions/users/{staffed.nobody_id}/roles",
            json={"role_id": staffed.roles["teacher"], "branch_id": MAIN, "is_primary": True},
            headers=auth(staffed.admin_id)
        )
        assert response.status_code == 200
        assert response.json() == {
            "user_id": staffed.nobody_id, "role_id": staffed.roles["teacher"], "branch_id": MAIN, "is_primary": True
        }

    async def test_assign_unknown_role_is_404(self, client, staffed):
        response = await client.post(
            f"/permissions/users/{staffed.nobody_id}/roles",
            json={"role_id": 999},
            headers=auth(staffed.admin_id)
        )
        assert response.status_code == 404
        assert "Role 999" in response.json()["error"]

    async def test_override_for_unknown_user_is_404(self, client, staffed):
        response = await client.put(
            "/permissions/users/999/overrides",
            json={"permission_id": staffed.perm("exams.view"), "granted": True},
            headers=auth(staffed.admin_id)
        )
        assert response.status_code == 404


class TestBranchScopedManager:
    """users.manage_roles held in EAST only: the payload's branch decides, not the route."""

    @pytest_asyncio.fixture
    async def manager(self, db, staffed):
        await set_user_override(db, staffed.teacher_id, staffed.perm("users.manage_roles"), EAST, granted=True)
        await db.commit()
        return staffed

    async def test_cannot_assign_global_role(self, client, manager):
        headers = auth(manager.teacher_id)
        response = await client.post(
            f"/permissions/users/{manager.teacher_id}/roles",
            json={"role_id": manager.roles["super-admin"], "branch_id": None},
            headers=headers
        )
        assert response.status_code == 403
        assert response.json()["detail"]["required_permissions"] == ["users.manage_roles"]

        check = await client.post("/permissions/check", json={"slugs": ["roles.manage"]}, headers=headers)
        assert check.json()["has_permission"] is False

    async def test_assign_only_in_own_branch(self, client, manager):
        headers = auth(manager.teacher_id)
        url = f"/permissions/users/{manager.nobody_id}/roles"

        other = await client.post(url, json={"role_id": manager.roles["teacher"], "branch_id": SOUTH}, headers=headers)
        assert other.status_code == 403

        omitted = await client.post(url, json={"role_id": manager.roles["teacher"]}, headers=headers)
        assert omitted.status_code == 403

        own = await client.post(url, json={"role_id": manager.roles["teacher"], "branch_id": EAST}, headers=headers)
        assert own.status_code == 200
        assert own.json()["branch_id"] == EAST

    async def test_overrides_only_in_own_branch(self, client, manager):
        headers = auth(manager.teacher_id)
        url = f"/permissions/users/{manager.nobody_id}/overrides"
        body = {"permission_id": manager.perm("exams.view"), "granted": True}

        assert (await client.put(url, json={**body, "branch_id": None}, headers=headers)).status_code == 403
        assert (await client.put(url, json={**body, "branch_id": SOUTH}, headers=headers)).status_code == 403
        assert (await client.put(url, json={**body, "branch_id": EAST}, headers=headers)).status_code == 200

        remove_url = f"{url}/{manager.perm('exams.view')}"
        assert (await client.delete(remove_url, headers=headers)).status_code == 403
        assert (await client.delete(remove_url, params={"branch_id": EAST}, headers=headers)).status_code == 204

    async def test_global_manager_may_assign_anywhere(self, client, db, manager):
        await set_user_override(db, manager.auditor_id, manager.perm("users.manage_roles"), None, granted=True)
        await db.commit()

        response = await client.post(
            f"/permissions/users/{manager.nobody_id}/roles",
            json={"role_id": manager.roles["teacher"], "branch_id": None},
            headers=auth(manager.auditor_id)
        )
        assert response.status_code == 200


class TestRateLimit:
    async def test_admin_mutations_are_rate_limited(self, client, staffed, monkeypatch):
        monkeypatch.setattr(config, "ADMIN_RATE_LIMIT", "2/minute")
        url = f"/permissions/roles/{staffed.roles['teacher']}/permissions"
        body = {"permission_ids": [staffed.perm("exams.view")]}
        headers = auth(staffed.admin_id)

        assert (await client.put(url, json=body, headers=headers)).status_code == 200
        assert (await client.put(url, json=body, headers=headers)).status_code == 200

        limited = await client.put(url, json=body, headers=headers)
        assert limited.status_code == 429
        assert limited.json() == {"error": "You are going too fast"}

        # Reads are not limited
        assert (await client.get("/permissions/roles", headers=headers)).status_code == 200


class TestBranchRoutes:
    async def test_accessible_for_branch_admin(self, client, staffed):
        body = (await client.get("/branches/accessible", headers=auth(staffed.branch_admin_id))).json()
        assert body["all_branches"] is False
        assert body["accessible_branch_ids"] == [NORTH, ANNEX]
        assert {b["id"] for b in body["branches"]} == {NORTH, ANNEX}

    async def test_accessible_for_platform_admin_hides_inactive(self, client, staffed):
        body = (await client.get("/branches/accessible", headers=auth(staffed.admin_id))).json()
        assert body["all_branches"] is True
        assert body["accessible_branch_ids"] is None
        assert body["can_manage_all_branches"] is True
        assert {b["id"] for b in body["branches"]} == {MAIN, NORTH, ANNEX, SOUTH, EAST}

    async def test_descendants(self, client, staffed):
        response = await client.get(
            f"/branches/{MAIN}/descendants", params={"include_self": False}, headers=auth(staffed.admin_id)
        )
        assert response.json()["descendant_ids"] == [NORTH, ANNEX, SOUTH]

    async def test_descendants_of_foreign_branch_forbidden(self, client, staffed):
        response = await client.get(f"/branches/{MAIN}/descendants", headers=auth(staffed.teacher_id))
        assert response.status_code == 403

    async def test_ancestors(self, client, staffed):
        response = await client.get(f"/branches/{ANNEX}/ancestors", headers=auth(staffed.branch_admin_id))
        assert response.status_code == 200
        assert [b["code"] for b in response.json()] == ["NORTH", "MAIN"]
