"""Tests for the Kafka event handlers (no broker involved)."""
import logging
from types import SimpleNamespace

import pytest

from personalization.config import settings as app_settings
from personalization.errors import NotFoundError
from personalization.schemas import AffinitySource
from personalization.worker import (
    _deserialize,
    handle_engagement,
    handle_new_post,
    process_message,
)

from conftest import NOW, make_post


@pytest.fixture
def services(posts, classifier, taste_graph):
    return SimpleNamespace(posts=posts, classifier=classifier, taste_graph=taste_graph)


class TestNewPost:
    async def test_stores_classifies_and_credits_author(self, services, posts, taste_graph):
        await handle_new_post(
            {"post_id": "p1", "user_id": "maya", "tags": ["travel"], "created_at": NOW.isoformat()},
            services,
        )

        stored = await posts.get("p1")
        assert [c.interest_id for c in stored.classifications] == ["travel"]

        graph = await taste_graph.get_taste_graph("maya")
        affinity = graph.affinity("travel")
        assert affinity.source is AffinitySource.INFERRED_FROM_CREATES
        assert affinity.score == pytest.approx(0.7 * 1.0 * 0.5)

    async def test_malformed_event_is_skipped(self, services, posts, caplog):
        with caplog.at_level(logging.WARNING):
            await handle_new_post({"user_id": "maya"}, services)
        assert "Malformed NewPost" in caplog.text

    async def test_unclassified_post_does_not_touch_taste_graph(self, services, taste_graph):
        await handle_new_post({"post_id": "p1", "user_id": "maya", "caption": "hi"}, services)
        assert (await taste_graph.get_taste_graph("maya")).interests == []


class TestEngagement:
    async def test_follow(self, services, taste_graph):
        await handle_engagement({"user_id": "u1", "kind": "follow", "interest_id": "art"}, services)
        affinity = (await taste_graph.get_taste_graph("u1")).affinity("art")
        assert affinity.source is AffinitySource.EXPLICIT_FOLLOW

    async def test_unfollow(self, services, taste_graph):
        await handle_engagement({"user_id": "u1", "kind": "follow", "interest_id": "art"}, services)
        await handle_engagement({"user_id": "u1", "kind": "unfollow", "interest_id": "art"}, services)
        affinity = (await taste_graph.get_taste_graph("u1")).affinity("art")
        assert not affinity.followed
        assert affinity.engagement_count == 1

    async def test_follow_without_interest(self, services, taste_graph, caplog):
        with caplog.at_level(logging.WARNING):
            await handle_engagement({"user_id": "u1", "kind": "follow"}, services)
        assert "without interest_id" in caplog.text
        assert (await taste_graph.get_taste_graph("u1")).interests == []

    async def test_save_logs_engager_and_updates_graph(self, services, posts, classifier, taste_graph):
        await posts.upsert(make_post("p1", tags=["dessert"]))
        await classifier.reclassify("p1")

        await handle_engagement({"user_id": "u1", "kind": "save", "post_id": "p1"}, services)

        assert await posts.engagers("p1") == ["u1"]
        affinity = (await taste_graph.get_taste_graph("u1")).affinity("food_desserts")
        assert affinity.source is AffinitySource.INFERRED_FROM_SAVES

    async def test_short_view_only_logged(self, services, posts, classifier, taste_graph):
        await posts.upsert(make_post("p1", tags=["dessert"]))
        await classifier.reclassify("p1")

        await handle_engagement(
            {"user_id": "u1", "kind": "view", "post_id": "p1", "duration_seconds": 1.5}, services
        )
        assert await posts.engagers("p1") == ["u1"]
        assert (await taste_graph.get_taste_graph("u1")).interests == []

    async def test_like_only_logged(self, services, posts, taste_graph):
        await posts.upsert(make_post("p1", tags=["dessert"]))
        await handle_engagement({"user_id": "u1", "kind": "like", "post_id": "p1"}, services)
        assert await posts.engagers("p1") == ["u1"]
        assert (await taste_graph.get_taste_graph("u1")).interests == []

    async def test_unknown_post_raises_to_the_loop(self, services):
        with pytest.raises(NotFoundError):
            await handle_engagement({"user_id": "u1", "kind": "save", "post_id": "ghost"}, services)

    async def test_unknown_kind_is_skipped(self, services, caplog):
        with caplog.at_level(logging.WARNING):
            await handle_engagement({"user_id": "u1", "kind": "poke"}, services)
        assert "Malformed engagement" in caplog.text


class TestDispatch:
    async def test_routes_by_topic(self, services, taste_graph):
        await process_message(
            app_settings.kafka_topic_engagements,
            {"user_id": "u1", "kind": "search", "interest_id": "travel"},
            services,
        )
        affinity = (await taste_graph.get_taste_graph("u1")).affinity("travel")
        assert affinity.source is AffinitySource.INFERRED_FROM_SEARCH

    async def test_unknown_topic(self, services, caplog):
        with caplog.at_level(logging.WARNING):
            await process_message("other-topic", {}, services)
        assert "unexpected topic" in caplog.text

    def test_deserialize(self):
        assert _deserialize(b'{"a": 1}') == {"a": 1}
        assert _deserialize(b"\xff\xfe") is None
        assert _deserialize(b"not json") is None
