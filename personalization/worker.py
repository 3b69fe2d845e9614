"""
Personalization Worker — Kafka consumer.

Topics:
  'new-posts'    {post_id, user_id, caption, tags, board_name,
                  selected_interest_ids, created_at}
                 → store the post snapshot, classify it, and credit the
                   author's taste graph (inferred from creates)
  'engagements'  {user_id, kind, post_id?, interest_id?, duration_seconds?}
                 → append to the post engagement log and fold the event into
                   the user's taste graph

A malformed or failing event is logged and skipped; the loop never stops on
one bad message.

Run with:  python -m personalization.worker
"""
import asyncio
import json
import logging

from aiokafka import AIOKafkaConsumer
from opentelemetry import trace
from pydantic import ValidationError

from personalization.bootstrap import Services, build_services
from personalization.config import settings
from personalization.schemas import EngagementEvent, EngagementKind, Post, utcnow
from personalization.telemetry import setup_tracing

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)

tracer = trace.get_tracer(__name__)

INTEREST_KINDS = {EngagementKind.FOLLOW, EngagementKind.UNFOLLOW, EngagementKind.SEARCH}
POST_KINDS = {EngagementKind.SAVE, EngagementKind.VIEW, EngagementKind.CREATE, EngagementKind.LIKE}


# ─────────────────────────── Message Handlers ────────────────────────────

async def handle_new_post(msg: dict, services: Services) -> None:
    msg.setdefault("created_at", utcnow().isoformat())
    try:
        post = Post.model_validate(msg)
    except ValidationError as exc:
        logger.warning("Malformed NewPost event %s: %s", msg.get("post_id"), exc)
        return

    with tracer.start_as_current_span("worker.new_post") as span:
        span.set_attribute("post.id", post.post_id)
        await services.posts.upsert(post)
        classification = await services.classifier.reclassify(post.post_id)
        if post.user_id and classification.classifications:
            stored = await services.posts.get(post.post_id)
            await services.taste_graph.record_create(post.user_id, stored)


async def handle_engagement(msg: dict, services: Services) -> None:
    try:
        event = EngagementEvent.model_validate(msg)
    except ValidationError as exc:
        logger.warning("Malformed engagement event: %s", exc)
        return

    with tracer.start_as_current_span("worker.engagement") as span:
        span.set_attribute("user.id", event.user_id)
        span.set_attribute("engagement.kind", event.kind.value)

        if event.kind in INTEREST_KINDS:
            if not event.interest_id:
                logger.warning("%s event without interest_id: %s", event.kind.value, msg)
                return
            if event.kind is EngagementKind.FOLLOW:
                await services.taste_graph.record_follow(event.user_id, event.interest_id)
            elif event.kind is EngagementKind.UNFOLLOW:
                await services.taste_graph.unfollow(event.user_id, event.interest_id)
            else:
                await services.taste_graph.record_search(event.user_id, event.interest_id)
            return

        if event.kind in POST_KINDS:
            if not event.post_id:
                logger.warning("%s event without post_id: %s", event.kind.value, msg)
                return
            await services.posts.record_engagement(event.post_id, event.user_id, event.kind.value)
            post = await services.posts.get(event.post_id)
            if event.kind is EngagementKind.SAVE:
                await services.taste_graph.record_save(event.user_id, post)
            elif event.kind is EngagementKind.VIEW:
                await services.taste_graph.record_view(event.user_id, post, event.duration_seconds)
            elif event.kind is EngagementKind.CREATE:
                await services.taste_graph.record_create(event.user_id, post)


async def process_message(topic: str, msg: dict, services: Services) -> None:
    if topic == settings.kafka_topic_new_posts:
        await handle_new_post(msg, services)
    elif topic == settings.kafka_topic_engagements:
        await handle_engagement(msg, services)
    else:
        logger.warning("Message on unexpected topic '%s'", topic)


def _deserialize(value: bytes):
    try:
        return json.loads(value.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None


# ─────────────────────────── Main Loop ───────────────────────────────────

async def main() -> None:
    setup_tracing()
    services = await build_services(settings)

    consumer = AIOKafkaConsumer(
        settings.kafka_topic_new_posts,
        settings.kafka_topic_engagements,
        bootstrap_servers=settings.kafka_bootstrap_servers,
        group_id=settings.kafka_consumer_group,
        auto_offset_reset="earliest",
        value_deserializer=_deserialize,
    )
    await consumer.start()
    logger.info(
        "Personalization worker listening on topics '%s', '%s'",
        settings.kafka_topic_new_posts, settings.kafka_topic_engagements,
    )

    try:
        async for msg in consumer:
            if not isinstance(msg.value, dict):
                logger.warning("Skipping undecodable message at %s:%s", msg.topic, msg.offset)
                continue
            try:
                await process_message(msg.topic, msg.value, services)
            except Exception as exc:
                logger.error("Worker error for %s message %s: %s", msg.topic, msg.value, exc)
    finally:
        await consumer.stop()
        await services.close()


if __name__ == "__main__":
    asyncio.run(main())
