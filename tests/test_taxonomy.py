"""Tests for the interest taxonomy store."""
import asyncio
from datetime import timedelta
from unittest.mock import patch

import pytest

from personalization.errors import (
    DuplicateInterestError,
    InvalidParentError,
    NotFoundError,
)
from personalization.locks import KeyedLocks
from personalization.models import InterestRow, PostInterestLinkRow
from personalization.services.seed import BASE_TAXONOMY, seed_base_taxonomy
from personalization.services.taxonomy import STRUCTURE_LOCK, InterestTaxonomy

from conftest import NOW


async def _link(session_factory, post_id, interest_id, created_at=NOW):
    async with session_factory() as session:
        async with session.begin():
            session.add(
                PostInterestLinkRow(
                    post_id=post_id,
                    interest_id=interest_id,
                    confidence=0.9,
                    post_created_at=created_at,
                )
            )


class TestCreate:
    """Creating nodes computes level/path from the parent."""

    async def test_root(self, taxonomy):
        interest = await taxonomy.create_interest("fashion", "Fashion")
        assert interest.id == "fashion"
        assert interest.level == 0
        assert interest.parent_id is None
        assert interest.path == ["fashion"]
        assert interest.is_active

    async def test_child_and_grandchild(self, taxonomy):
        await taxonomy.create_interest("fashion", "Fashion")
        child = await taxonomy.create_interest("models", "Models", parent_id="fashion")
        grandchild = await taxonomy.create_interest(
            "runway models", "Runway Models", parent_id=child.id
        )

        assert child.id == "fashion_models"
        assert child.level == 1
        assert child.path == ["fashion", "models"]
        assert grandchild.level == 2
        assert grandchild.path == ["fashion", "models", "runway models"]
        assert grandchild.level == len(grandchild.path) - 1

    async def test_unknown_parent(self, taxonomy):
        with pytest.raises(InvalidParentError) as info:
            await taxonomy.create_interest("models", "Models", parent_id="missing")
        assert info.value.field == "parent_id"

    async def test_inactive_parent(self, taxonomy):
        await taxonomy.create_interest("fashion", "Fashion")
        await taxonomy.deactivate("fashion")
        with pytest.raises(InvalidParentError):
            await taxonomy.create_interest("models", "Models", parent_id="fashion")

    async def test_explicit_id_equal_to_parent(self, taxonomy):
        await taxonomy.create_interest("fashion", "Fashion")
        with pytest.raises(InvalidParentError):
            await taxonomy.create_interest("x", "X", parent_id="fashion", interest_id="fashion")

    async def test_sibling_names_unique_case_insensitive(self, taxonomy):
        await taxonomy.create_interest("fashion", "Fashion")
        await taxonomy.create_interest("models", "Models", parent_id="fashion")
        with pytest.raises(DuplicateInterestError) as info:
            await taxonomy.create_interest(
                "Models", "Models again", parent_id="fashion", interest_id="other"
            )
        assert info.value.field == "name"

    async def test_same_name_under_different_parents(self, taxonomy):
        await taxonomy.create_interest("fashion", "Fashion")
        await taxonomy.create_interest("photography", "Photography")
        a = await taxonomy.create_interest("editorial", "Editorial", parent_id="fashion")
        b = await taxonomy.create_interest("editorial", "Editorial", parent_id="photography")
        assert a.id != b.id

    async def test_duplicate_id(self, taxonomy):
        await taxonomy.create_interest("fashion", "Fashion")
        with pytest.raises(DuplicateInterestError) as info:
            await taxonomy.create_interest("style", "Style", interest_id="fashion")
        assert info.value.field == "id"

    async def test_depth_limit(self, taxonomy, settings):
        settings.taxonomy_max_depth = 2
        await taxonomy.create_interest("a", "A")
        await taxonomy.create_interest("b", "B", parent_id="a")
        with pytest.raises(InvalidParentError):
            await taxonomy.create_interest("c", "C", parent_id="a_b")


class TestUpdate:
    """Partial updates and re-parenting."""

    @pytest.fixture
    async def tree(self, taxonomy):
        # a ─ b ─ c      x
        await taxonomy.create_interest("a", "A")
        await taxonomy.create_interest("b", "B", parent_id="a")
        await taxonomy.create_interest("c", "C", parent_id="a_b")
        await taxonomy.create_interest("x", "X")
        return taxonomy

    async def test_partial_fields(self, tree):
        updated = await tree.update_interest("a", display_name="Alpha", keywords=["first"])
        assert updated.display_name == "Alpha"
        assert updated.keywords == ["first"]
        assert updated.path == ["a"]

    async def test_unknown_id(self, tree):
        with pytest.raises(NotFoundError):
            await tree.update_interest("nope", display_name="Nope")

    async def test_reparent_to_self(self, tree):
        with pytest.raises(InvalidParentError):
            await tree.update_interest("a", parent_id="a")

    async def test_reparent_under_descendant_is_a_cycle(self, tree):
        with pytest.raises(InvalidParentError):
            await tree.update_interest("a", parent_id="a_b_c")
        # Nothing was written
        assert (await tree.get_interest("a")).parent_id is None

    async def test_reparent_recomputes_subtree(self, tree):
        moved = await tree.update_interest("a_b", parent_id="x")
        assert moved.level == 1
        assert moved.path == ["x", "b"]

        grandchild = await tree.get_interest("a_b_c")
        assert grandchild.level == 2
        assert grandchild.path == ["x", "b", "c"]

    async def test_reparent_to_root(self, tree):
        moved = await tree.update_interest("a_b", parent_id=None)
        assert moved.level == 0
        assert moved.parent_id is None
        assert (await tree.get_interest("a_b_c")).path == ["b", "c"]

    async def test_no_node_is_its_own_ancestor(self, tree):
        await tree.update_interest("x", parent_id="a_b_c")
        for interest in await tree.get_tree(full=True):
            ancestors = [i.id for i in (await tree.get_path(interest.id))[:-1]]
            assert interest.id not in ancestors
            assert interest.level == len(interest.path) - 1

    async def test_deactivate(self, tree):
        result = await tree.deactivate("x")
        assert not result.is_active
        assert "x" not in [i.id for i in await tree.get_tree()]
        assert (await tree.get_interest("x")).is_active is False

    async def test_deactivate_unknown(self, tree):
        with pytest.raises(NotFoundError):
            await tree.deactivate("nope")


class RecordingLocks(KeyedLocks):
    def __init__(self):
        super().__init__()
        self.keys = []

    def hold(self, key):
        self.keys.append(key)
        return super().hold(key)


def _assert_paths_consistent(interests):
    by_id = {i.id: i for i in interests}
    for interest in interests:
        if interest.parent_id is None:
            assert (interest.level, interest.path) == (0, [interest.name])
            continue
        parent = by_id[interest.parent_id]
        assert interest.level == parent.level + 1
        assert interest.path == parent.path + [interest.name]


class TestStructureConcurrency:
    """Creates racing moves and deactivation under the same parent."""

    @pytest.fixture
    async def tree(self, session_factory, settings, clock):
        taxonomy = InterestTaxonomy(session_factory, RecordingLocks(), settings, clock=clock)
        await taxonomy.create_interest("moveme", "Move me")
        await taxonomy.create_interest("target", "Target")
        return taxonomy

    async def test_create_while_parent_moves(self, tree):
        await asyncio.gather(
            tree.create_interest("kid", "Kid", parent_id="moveme"),
            tree.update_interest("moveme", parent_id="target"),
        )
        kid = await tree.get_interest("moveme_kid")
        assert kid.level == 2
        assert kid.path == ["target", "moveme", "kid"]
        _assert_paths_consistent(await tree.get_tree(full=True))

    async def test_move_while_child_created(self, tree):
        await asyncio.gather(
            tree.update_interest("moveme", parent_id="target"),
            tree.create_interest("kid", "Kid", parent_id="moveme"),
        )
        assert (await tree.get_interest("moveme_kid")).path == ["target", "moveme", "kid"]
        _assert_paths_consistent(await tree.get_tree(full=True))

    async def test_create_racing_deactivate(self, tree):
        created, _ = await asyncio.gather(
            tree.create_interest("kid", "Kid", parent_id="moveme"),
            tree.deactivate("moveme"),
            return_exceptions=True,
        )
        # Either the create saw an active parent and finished first, or it saw
        # the deactivated parent and was rejected
        if isinstance(created, Exception):
            assert isinstance(created, InvalidParentError)
        else:
            assert created.path == ["moveme", "kid"]

    async def test_structural_writes_share_one_lock(self, tree):
        locks = tree._locks
        locks.keys.clear()
        await tree.create_interest("kid", "Kid", parent_id="moveme")
        await tree.update_interest("moveme", parent_id="target")
        await tree.update_interest("target", is_active=False)
        await tree.deactivate("moveme_kid")
        assert locks.keys == [STRUCTURE_LOCK] * 4

        await tree.update_interest("moveme", display_name="Moved")
        assert locks.keys[-1] == "interest:moveme"


class TestQueries:
    async def test_tree_roots_and_full(self, seeded_taxonomy):
        roots = await seeded_taxonomy.get_tree()
        assert all(r.level == 0 for r in roots)
        assert len(roots) == 10

        full = await seeded_taxonomy.get_tree(full=True)
        assert len(full) == len(BASE_TAXONOMY)
        paths = [[p.lower() for p in i.path] for i in full]
        assert paths == sorted(paths)

    async def test_children(self, seeded_taxonomy):
        children = await seeded_taxonomy.get_children("photography")
        assert [c.id for c in children] == ["photography_landscape", "photography_portrait"]

    async def test_children_of_unknown(self, seeded_taxonomy):
        with pytest.raises(NotFoundError):
            await seeded_taxonomy.get_children("nope")

    async def test_path(self, seeded_taxonomy):
        crumbs = await seeded_taxonomy.get_path("fashion_models_runway")
        assert [c.id for c in crumbs] == ["fashion", "fashion_models", "fashion_models_runway"]

    async def test_search(self, seeded_taxonomy):
        hits = await seeded_taxonomy.search("street")
        assert hits[0].id == "fashion_streetwear"
        assert await seeded_taxonomy.search("   ") == []

    async def test_search_by_synonym(self, seeded_taxonomy):
        hits = await seeded_taxonomy.search("portraiture")
        assert [h.id for h in hits] == ["photography_portrait"]

    async def test_related_explicit_then_siblings(self, seeded_taxonomy):
        related = await seeded_taxonomy.get_related("fashion_shows")
        ids = [r.id for r in related]
        assert ids[0] == "fashion_models"
        assert set(ids[1:]) == {"fashion_streetwear", "fashion_haute_couture"}

    async def test_cache_invalidated_by_mutation(self, taxonomy):
        assert await taxonomy.get_tree() == []
        await taxonomy.create_interest("fashion", "Fashion")
        assert [i.id for i in await taxonomy.get_tree()] == ["fashion"]

    async def test_cache_serves_until_ttl(self, taxonomy, session_factory):
        await taxonomy.create_interest("fashion", "Fashion")
        await taxonomy.get_tree()
        # Written behind the store's back: invisible until refresh
        async with session_factory() as session:
            async with session.begin():
                session.add(InterestRow(id="art", name="art", display_name="Art", level=0, path=["art"]))
        assert [i.id for i in await taxonomy.get_tree()] == ["fashion"]

        taxonomy.invalidate()
        assert [i.id for i in await taxonomy.get_tree()] == ["art", "fashion"]


class TestStats:
    async def test_recalculate_counts_links(self, seeded_taxonomy, session_factory):
        await _link(session_factory, "p1", "fashion")
        await _link(session_factory, "p2", "fashion")
        await _link(session_factory, "p3", "travel")

        result = await seeded_taxonomy.recalculate_stats("fashion")
        assert (result.old_count, result.new_count) == (0, 2)
        assert result.updated
        assert (await seeded_taxonomy.get_interest("fashion")).post_count == 2

    async def test_recalculate_is_idempotent(self, seeded_taxonomy, session_factory):
        await _link(session_factory, "p1", "fashion")
        await seeded_taxonomy.recalculate_stats("fashion")
        again = await seeded_taxonomy.recalculate_stats("fashion")
        assert (again.old_count, again.new_count) == (1, 1)
        assert not again.updated

    async def test_concurrent_recalculate_same_node(self, seeded_taxonomy, session_factory):
        for i in range(3):
            await _link(session_factory, f"p{i}", "fashion")
        results = await asyncio.gather(
            *(seeded_taxonomy.recalculate_stats("fashion") for _ in range(4))
        )
        assert {r.new_count for r in results} == {3}
        assert sum(r.updated for r in results) == 1

    async def test_growth_windows(self, seeded_taxonomy, session_factory):
        await _link(session_factory, "p1", "travel", NOW - timedelta(days=1))
        await _link(session_factory, "p2", "travel", NOW - timedelta(days=2))
        await _link(session_factory, "p3", "travel", NOW - timedelta(days=9))

        result = await seeded_taxonomy.recalculate_stats("travel")
        assert result.weekly_growth == pytest.approx(1.0)   # 2 vs 1
        assert result.monthly_growth == pytest.approx(1.0)  # 3 vs 0

    async def test_recalculate_unknown(self, seeded_taxonomy):
        with pytest.raises(NotFoundError):
            await seeded_taxonomy.recalculate_stats("nope")

    async def test_recalculate_all_collects_errors(self, seeded_taxonomy, session_factory):
        await _link(session_factory, "p1", "art")
        original = InterestTaxonomy.recalculate_stats

        async def flaky(self, interest_id):
            if interest_id == "food":
                raise RuntimeError("db hiccup")
            return await original(self, interest_id)

        with patch.object(InterestTaxonomy, "recalculate_stats", flaky):
            result = await seeded_taxonomy.recalculate_all()

        assert result.errors == {"food": "db hiccup"}
        assert result.processed == len(BASE_TAXONOMY) - 1
        assert result.updated == 1

    async def test_trending(self, seeded_taxonomy, session_factory):
        for i in range(3):
            await _link(session_factory, f"p{i}", "travel", NOW - timedelta(hours=1))
        await _link(session_factory, "p9", "art", NOW - timedelta(days=10))
        await seeded_taxonomy.recalculate_all()

        trending = await seeded_taxonomy.trending(2)
        assert [t.interest.id for t in trending] == ["travel", "art"]
        assert trending[0].trend_score > trending[1].trend_score


class TestSeed:
    async def test_idempotent(self, taxonomy):
        assert await seed_base_taxonomy(taxonomy) == len(BASE_TAXONOMY)
        assert await seed_base_taxonomy(taxonomy) == 0

    async def test_hierarchy_invariants(self, seeded_taxonomy):
        everything = {i.id: i for i in await seeded_taxonomy.get_tree(full=True)}
        for interest in everything.values():
            if interest.parent_id is None:
                assert interest.level == 0
                assert interest.path == [interest.name]
            else:
                parent = everything[interest.parent_id]
                assert interest.level == parent.level + 1
                assert interest.path == parent.path + [interest.name]
