"""
Tests for branch tree traversal.
"""
import pytest

from app.features.branches.models import Branch
from app.features.branches.tree import get_ancestors, get_descendant_ids
from tests.helpers.school import ANNEX, EAST, MAIN, NORTH, SOUTH


pytestmark = pytest.mark.asyncio


class TestDescendants:
    async def test_root_includes_whole_subtree(self, db, branches):
        assert await get_descendant_ids(db, MAIN, include_self=True) == {MAIN, NORTH, ANNEX, SOUTH}

    async def test_exclude_self(self, db, branches):
        assert await get_descendant_ids(db, MAIN, include_self=False) == {NORTH, ANNEX, SOUTH}

    async def test_middle_of_chain(self, db, branches):
        assert await get_descendant_ids(db, NORTH) == {NORTH, ANNEX}

    async def test_leaf(self, db, branches):
        assert await get_descendant_ids(db, ANNEX, include_self=True) == {ANNEX}
        assert await get_descendant_ids(db, ANNEX, include_self=False) == set()

    async def test_unrelated_root_stays_separate(self, db, branches):
        assert await get_descendant_ids(db, EAST) == {EAST}

    async def test_unknown_branch_is_empty(self, db, branches):
        assert await get_descendant_ids(db, 404) == set()
        assert await get_descendant_ids(db, 404, include_self=False) == set()

    async def test_cycle_terminates(self, db):
        db.add_all([
            Branch(id=20, name="Loop A", code="LOOPA", parent_branch_id=21),
            Branch(id=21, name="Loop B", code="LOOPB", parent_branch_id=20),
        ])
        await db.commit()

        assert await get_descendant_ids(db, 20) == {20, 21}
        assert await get_descendant_ids(db, 20, include_self=False) == {21}


class TestAncestors:
    async def test_nearest_parent_first(self, db, branches):
        ancestors = await get_ancestors(db, ANNEX)
        assert [b.id for b in ancestors] == [NORTH, MAIN]

    async def test_single_level(self, db, branches):
        assert [b.id for b in await get_ancestors(db, SOUTH)] == [MAIN]

    async def test_root_has_no_ancestors(self, db, branches):
        assert await get_ancestors(db, MAIN) == []

    async def test_unknown_branch(self, db, branches):
        assert await get_ancestors(db, 404) == []

    async def test_cycle_stops_at_repeat(self, db):
        db.add_all([
            Branch(id=20, name="Loop A", code="LOOPA", parent_branch_id=21),
            Branch(id=21, name="Loop B", code="LOOPB", parent_branch_id=20),
        ])
        await db.commit()

        assert [b.id for b in await get_ancestors(db, 20)] == [21]
