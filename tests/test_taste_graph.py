"""Tests for taste graph decay, blending and the per-user service."""
import asyncio
import math
from datetime import timedelta
from unittest.mock import patch

import pytest
from hypothesis import given, strategies as st
from sqlalchemy.exc import OperationalError

from personalization.errors import NotFoundError, TasteGraphUnavailable
from personalization.schemas import AffinitySource, InterestAffinity, TasteGraph
from personalization.services.taste_graph import TasteGraphService, blend, decayed_score

from conftest import NOW, make_post


def _affinity(interest_id, score, days_ago, decay=0.01, source=AffinitySource.INFERRED_FROM_SAVES):
    engaged = NOW - timedelta(days=days_ago)
    return InterestAffinity(
        interest_id=interest_id,
        score=score,
        source=source,
        first_engagement=engaged,
        last_engagement=engaged,
        decay_factor=decay,
    )


class TestDecay:
    """Read-time decay of affinity scores."""

    def test_fashion_outranks_stale_travel(self):
        graph = TasteGraph(
            user_id="u1",
            interests=[_affinity("travel", 0.3, 100), _affinity("fashion", 0.8, 10)],
        )
        fashion, travel = graph.interests[1], graph.interests[0]

        assert decayed_score(fashion, NOW) == pytest.approx(0.8 * math.exp(-0.1))
        assert decayed_score(fashion, NOW) == pytest.approx(0.724, abs=1e-3)
        assert decayed_score(travel, NOW) == pytest.approx(0.110, abs=1e-3)
        assert [a.interest_id for a in graph.top_interests(2, NOW)] == ["fashion", "travel"]

    def test_no_decay_at_engagement_time(self):
        assert decayed_score(_affinity("art", 0.6, 0), NOW) == pytest.approx(0.6)

    def test_future_engagement_does_not_inflate(self):
        affinity = _affinity("art", 0.6, -3)
        assert decayed_score(affinity, NOW) == pytest.approx(0.6)

    def test_approaches_zero(self):
        assert decayed_score(_affinity("art", 1.0, 5000), NOW) < 1e-6

    def test_score_clamped_on_construction(self):
        assert _affinity("art", 1.7, 0).score == 1.0
        assert _affinity("art", -0.2, 0).score == 0.0

    @given(
        score=st.floats(min_value=0.0, max_value=1.0),
        days=st.integers(min_value=0, max_value=3650),
        decay=st.floats(min_value=0.0, max_value=0.1),
    )
    def test_never_exceeds_base_score(self, score, days, decay):
        affinity = _affinity("art", score, days, decay)
        assert 0.0 <= decayed_score(affinity, NOW) <= score

    @given(
        score=st.floats(min_value=0.01, max_value=1.0),
        d1=st.integers(min_value=0, max_value=300),
        gap=st.integers(min_value=1, max_value=60),
        decay=st.floats(min_value=0.001, max_value=0.1),
    )
    def test_strictly_decreasing_in_time(self, score, d1, gap, decay):
        affinity = _affinity("art", score, 0, decay)
        earlier = decayed_score(affinity, NOW + timedelta(days=d1))
        later = decayed_score(affinity, NOW + timedelta(days=d1 + gap))
        assert later < earlier


class TestBlend:
    def test_example(self):
        assert blend(0.5, 1.0, 0.1) == pytest.approx(0.55)

    @given(
        old=st.floats(min_value=0.0, max_value=1.0),
        weight=st.floats(min_value=0.0, max_value=1.0),
        rate=st.floats(min_value=0.0, max_value=1.0),
    )
    def test_never_decreases_and_stays_bounded(self, old, weight, rate):
        assert old <= blend(old, weight, rate) <= 1.0

    @given(
        old=st.floats(min_value=0.0, max_value=1.0),
        w1=st.floats(min_value=0.0, max_value=1.0),
        w2=st.floats(min_value=0.0, max_value=1.0),
    )
    def test_monotone_in_weight(self, old, w1, w2):
        lo, hi = sorted((w1, w2))
        assert blend(old, lo, 0.1) <= blend(old, hi, 0.1)


class TestRecording:
    """Engagements fold into the stored graph."""

    async def test_first_engagement_creates_affinity(self, seeded_taxonomy, taste_graph):
        affinity = await taste_graph.record_engagement(
            "u1", "fashion", AffinitySource.INFERRED_FROM_SAVES, 0.8
        )
        assert affinity.score == pytest.approx(0.4)
        assert affinity.engagement_count == 1
        assert affinity.first_engagement == NOW
        assert affinity.decay_factor == pytest.approx(0.01)

        graph = await taste_graph.get_taste_graph("u1")
        assert [a.interest_id for a in graph.interests] == ["fashion"]

    async def test_repeat_engagement_blends(self, seeded_taxonomy, taste_graph, clock):
        await taste_graph.record_follow("u1", "fashion")
        clock.advance(days=2)
        affinity = await taste_graph.record_follow("u1", "fashion")

        assert affinity.score == pytest.approx(0.5 + 0.1 * 1.0 * 0.5)
        assert affinity.engagement_count == 2
        assert affinity.first_engagement == NOW
        assert affinity.last_engagement == NOW + timedelta(days=2)
        assert affinity.first_engagement <= affinity.last_engagement

    async def test_follow_decays_slower(self, seeded_taxonomy, taste_graph):
        affinity = await taste_graph.record_follow("u1", "fashion")
        assert affinity.source is AffinitySource.EXPLICIT_FOLLOW
        assert affinity.decay_factor == pytest.approx(0.005)

    async def test_weaker_signal_keeps_slower_decay(self, seeded_taxonomy, taste_graph):
        await taste_graph.record_follow("u1", "fashion")
        affinity = await taste_graph.record_search("u1", "fashion")
        assert affinity.source is AffinitySource.INFERRED_FROM_SEARCH
        assert affinity.decay_factor == pytest.approx(0.005)

    async def test_follow_after_inferred_slows_decay(self, seeded_taxonomy, taste_graph):
        await taste_graph.record_search("u1", "travel")
        affinity = await taste_graph.record_follow("u1", "travel")
        assert affinity.decay_factor == pytest.approx(0.005)

    async def test_unknown_interest(self, seeded_taxonomy, taste_graph):
        with pytest.raises(NotFoundError):
            await taste_graph.record_follow("u1", "underwater_basket_weaving")
        assert (await taste_graph.get_taste_graph("u1")).interests == []

    async def test_inactive_interest(self, seeded_taxonomy, taste_graph):
        await seeded_taxonomy.deactivate("travel")
        with pytest.raises(NotFoundError):
            await taste_graph.record_follow("u1", "travel")

    async def test_concurrent_engagements_all_counted(self, seeded_taxonomy, taste_graph):
        await asyncio.gather(*(taste_graph.record_follow("u1", "art") for _ in range(10)))
        graph = await taste_graph.get_taste_graph("u1")
        assert graph.affinity("art").engagement_count == 10

    async def test_save_scales_by_confidence(self, seeded_taxonomy, taste_graph):
        post = make_post("p1", classifications=[("fashion", 0.9), ("beauty", 0.6)])
        touched = await taste_graph.record_save("u1", post)
        scores = {a.interest_id: a.score for a in touched}
        assert scores == pytest.approx({"fashion": 0.8 * 0.9 * 0.5, "beauty": 0.8 * 0.6 * 0.5})
        assert all(a.source is AffinitySource.INFERRED_FROM_SAVES for a in touched)

    async def test_short_view_ignored(self, seeded_taxonomy, taste_graph):
        post = make_post("p1", classifications=[("fashion", 0.8)])
        assert await taste_graph.record_view("u1", post, 2.0) == []
        assert (await taste_graph.get_taste_graph("u1")).interests == []

    async def test_view_scaled_by_duration(self, seeded_taxonomy, taste_graph):
        post = make_post("p1", classifications=[("fashion", 0.8)])
        [affinity] = await taste_graph.record_view("u1", post, 15.0)
        assert affinity.score == pytest.approx(0.4 * 0.5 * 0.8 * 0.5)
        assert affinity.source is AffinitySource.INFERRED_FROM_VIEWS

    async def test_unclassified_post_records_nothing(self, seeded_taxonomy, taste_graph):
        assert await taste_graph.record_create("u1", make_post("p1")) == []


class TestFollowState:
    """Follow status survives later engagement and can be reversed."""

    async def test_inferred_engagement_is_not_a_follow(self, seeded_taxonomy, taste_graph):
        affinity = await taste_graph.record_search("u1", "travel")
        assert not affinity.followed

    async def test_later_view_keeps_follow(self, seeded_taxonomy, taste_graph):
        await taste_graph.record_follow("u1", "fashion")
        affinity = await taste_graph.record_engagement(
            "u1", "fashion", AffinitySource.INFERRED_FROM_VIEWS, 0.3
        )
        assert affinity.source is AffinitySource.INFERRED_FROM_VIEWS
        assert affinity.followed

        await seeded_taxonomy.recalculate_all()
        assert (await seeded_taxonomy.get_interest("fashion")).follower_count == 1

    async def test_unfollow(self, seeded_taxonomy, taste_graph):
        await taste_graph.record_follow("u1", "fashion")
        await taste_graph.record_follow("u2", "fashion")
        before = (await taste_graph.get_taste_graph("u1")).affinity("fashion")

        affinity = await taste_graph.unfollow("u1", "fashion")
        assert not affinity.followed
        assert affinity.decay_factor == pytest.approx(0.01)
        assert affinity.score == pytest.approx(before.score)

        stored = (await taste_graph.get_taste_graph("u1")).affinity("fashion")
        assert not stored.followed

        await seeded_taxonomy.recalculate_all()
        assert (await seeded_taxonomy.get_interest("fashion")).follower_count == 1

    async def test_unfollow_not_followed_is_noop(self, seeded_taxonomy, taste_graph):
        await taste_graph.record_search("u1", "travel")
        affinity = await taste_graph.unfollow("u1", "travel")
        assert not affinity.followed
        assert affinity.decay_factor == pytest.approx(0.01)

    async def test_unfollow_unknown_affinity(self, seeded_taxonomy, taste_graph):
        with pytest.raises(NotFoundError):
            await taste_graph.unfollow("u1", "fashion")


class TestReads:
    async def test_unknown_user_gets_empty_graph(self, taste_graph):
        graph = await taste_graph.get_taste_graph("nobody")
        assert graph.user_id == "nobody"
        assert graph.interests == []

    async def test_top_interests_ordered_and_idempotent(self, seeded_taxonomy, taste_graph, clock):
        await taste_graph.record_search("u1", "travel")
        await taste_graph.record_follow("u1", "fashion")
        await taste_graph.record_save("u1", make_post("p1", classifications=[("art", 0.5)]))

        as_of = NOW + timedelta(days=30)
        first = await taste_graph.top_interests("u1", 2, as_of=as_of)
        second = await taste_graph.top_interests("u1", 2, as_of=as_of)
        assert [a.interest_id for a in first] == ["fashion", "travel"]
        assert first == second

    async def test_top_interests_zero_count(self, seeded_taxonomy, taste_graph):
        await taste_graph.record_follow("u1", "fashion")
        assert await taste_graph.top_interests("u1", 0) == []

    async def test_timeout_becomes_unavailable(self, taste_graph):
        async def slow(self, user_id):
            await asyncio.sleep(1)

        with patch.object(TasteGraphService, "_load", slow):
            with pytest.raises(TasteGraphUnavailable):
                await taste_graph.get_taste_graph("u1", timeout=0.01)

    async def test_storage_error_becomes_unavailable(self, taste_graph):
        async def broken(self, user_id):
            raise OperationalError("SELECT", {}, Exception("connection refused"))

        with patch.object(TasteGraphService, "_load", broken):
            with pytest.raises(TasteGraphUnavailable):
                await taste_graph.get_taste_graph("u1")


class TestSuggestions:
    async def test_cold_start_gets_trending(self, seeded_taxonomy, taste_graph):
        suggestions = await taste_graph.suggested_interests("new_user", limit=3)
        assert len(suggestions) == 3
        assert all(s.level == 0 for s in suggestions)

    async def test_related_to_held_interests(self, seeded_taxonomy, taste_graph):
        await taste_graph.record_follow("u1", "fashion_shows")
        suggestions = await taste_graph.suggested_interests("u1", limit=5)
        ids = [s.id for s in suggestions]
        assert ids[0] == "fashion_models"
        assert "fashion_shows" not in ids
