import asyncio
from typing import List

import httpx
import pytest

from core.entities import ProcessingStatus, Sentiment
from delivery.base import CallbackDelivery, DeliveryChannel
from ingestion.base import FeedClient, RateLimitedError, ThrottledError
from ingestion.selection import SequenceSelector
from processing.enrichment import EnrichmentStage
from services.config import PipelineConfig, parse_config
from workflows.orchestrator import STATUS_MESSAGES, ErrorState, PipelineOrchestrator
from workflows.pipeline_factory import create_orchestrator_from_config

from conftest import make_item, post_payload


class FakeFeed(FeedClient):
    """Returns (or raises) scripted results, then empty pages."""

    def __init__(self, results=()):
        self.results = list(results)
        self.calls: List[tuple] = []

    async def fetch(self, subreddit, sort):
        self.calls.append((subreddit, sort))
        result = self.results.pop(0) if self.results else []
        if isinstance(result, Exception):
            raise result
        return result


class ExplodingEnrichment(EnrichmentStage):
    def run(self, items, context):
        raise RuntimeError("boom")


class BrokenDelivery(DeliveryChannel):
    name = "broken"

    async def deliver(self, *, event):
        raise RuntimeError("channel down")


def build(feed, store, clock, config=None, **kwargs) -> PipelineOrchestrator:
    return PipelineOrchestrator(
        config or PipelineConfig(),
        feed,
        store=store,
        selector=SequenceSelector([("technology", "new")]),
        clock=clock,
        **kwargs,
    )


def raw_items(clock, *ids, **overrides):
    return [make_item(item_id, now=clock.now, **overrides) for item_id in ids]


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_single_item_flows_to_publication(self, clock, fake_store):
        item = make_item(
            "e2e",
            title="Amazing new AI breakthrough",
            score=120,
            num_comments=40,
            upvote_ratio=0.95,
            created_utc=clock.now - 3600,
            subreddit="technology",
        )
        received = []
        orchestrator = build(
            FakeFeed([[item]]), fake_store, clock, deliveries=[CallbackDelivery(received.append)]
        )

        assert await orchestrator.ingest_once() == 1
        published = await orchestrator.publish_tick()

        assert published.id == "e2e"
        assert published.processing_status == ProcessingStatus.PUBLISHED
        assert published.sentiment == Sentiment.POSITIVE
        assert "technology" in published.categories
        assert published.quality_score > 0.7
        assert published.priority_score > 0.5
        assert published.published_at == int(clock.now * 1000)

        assert [p.id for p in fake_store.published] == ["e2e"]
        assert fake_store.stages_for("e2e") == ["fetched", "enriched", "scored", "scheduled", "published"]
        assert received[0].item.id == "e2e"
        assert received[0].is_new
        assert len(orchestrator.working_set) == 0
        assert "e2e" in orchestrator.published

    @pytest.mark.asyncio
    async def test_works_without_store(self, clock):
        orchestrator = build(FakeFeed([raw_items(clock, "a")]), None, clock)

        await orchestrator.ingest_once()
        published = await orchestrator.publish_tick()
        assert published.id == "a"

    @pytest.mark.asyncio
    async def test_known_items_not_ingested_twice(self, clock, fake_store):
        batch = raw_items(clock, "a", "b")
        orchestrator = build(FakeFeed([batch, batch]), fake_store, clock)

        assert await orchestrator.ingest_once() == 2
        await orchestrator.publish_tick()
        assert await orchestrator.ingest_once() == 0
        assert len(orchestrator.working_set) + len(orchestrator.published) == 2

    @pytest.mark.asyncio
    async def test_safe_mode_drops_adult_items(self, clock, fake_store):
        batch = raw_items(clock, "a") + raw_items(clock, "b", over_18=True)
        orchestrator = build(FakeFeed([batch]), fake_store, clock)

        assert await orchestrator.ingest_once() == 1
        assert orchestrator.working_set.ids() == {"a"}

    @pytest.mark.asyncio
    async def test_working_set_cap(self, clock, fake_store):
        config = PipelineConfig(max_items_in_pipeline=2)
        orchestrator = build(FakeFeed([raw_items(clock, "a", "b", "c")]), fake_store, clock, config=config)

        await orchestrator.ingest_once()
        assert orchestrator.working_set.ids() == {"b", "c"}


class TestPublishing:
    @pytest.mark.asyncio
    async def test_one_item_per_tick_in_slot_order(self, clock, fake_store):
        orchestrator = build(FakeFeed([raw_items(clock, "a", "b", "c")]), fake_store, clock)
        await orchestrator.ingest_once()

        first = await orchestrator.publish_tick()
        assert first.id == "a"
        assert await orchestrator.publish_tick() is None

        clock.advance(2)
        assert (await orchestrator.publish_tick()).id == "b"
        clock.advance(2)
        assert (await orchestrator.publish_tick()).id == "c"
        assert orchestrator.published_total == 3

    @pytest.mark.asyncio
    async def test_delivery_failure_does_not_block(self, clock, fake_store):
        received = []
        orchestrator = build(
            FakeFeed([raw_items(clock, "a")]),
            fake_store,
            clock,
            deliveries=[BrokenDelivery(), CallbackDelivery(received.append)],
        )
        await orchestrator.ingest_once()

        published = await orchestrator.publish_tick()
        assert published.id == "a"
        assert [event.item.id for event in received] == ["a"]
        assert orchestrator.health()["publishing"].is_healthy

    @pytest.mark.asyncio
    async def test_stage_failure_marks_unhealthy(self, clock, fake_store):
        orchestrator = build(
            FakeFeed([raw_items(clock, "a")]), fake_store, clock, enrichment=ExplodingEnrichment()
        )
        await orchestrator.ingest_once()

        assert await orchestrator.publish_tick() is None

        health = orchestrator.health()
        assert not health["enrichment"].is_healthy
        assert health["enrichment"].last_error == "boom"
        assert health["enrichment"].queue_depth == 1
        assert health["publishing"].is_healthy
        assert orchestrator.working_set.get("a").processing_status == ProcessingStatus.RAW


class TestIngestionErrors:
    @pytest.mark.asyncio
    async def test_throttling_backoff(self, clock, fake_store):
        orchestrator = build(FakeFeed([ThrottledError("slow down")] * 4), fake_store, clock)

        multipliers = []
        for _ in range(4):
            await orchestrator.ingest_once()
            multipliers.append(orchestrator.backoff_multiplier)

        assert multipliers == [2, 4, 8, 8]
        assert orchestrator.error_state == ErrorState.CIRCUIT_BREAKER
        assert orchestrator.next_ingestion_delay() == 240.0

    @pytest.mark.asyncio
    async def test_rate_limit_backoff(self, clock, fake_store):
        orchestrator = build(FakeFeed([RateLimitedError("limited")] * 4), fake_store, clock)

        multipliers = []
        for _ in range(4):
            await orchestrator.ingest_once()
            multipliers.append(orchestrator.backoff_multiplier)

        assert multipliers == [1.5, 2.25, 3.375, 4.0]
        assert orchestrator.error_state == ErrorState.RATE_LIMITED

    @pytest.mark.asyncio
    async def test_generic_errors_back_off_after_three(self, clock, fake_store):
        orchestrator = build(FakeFeed([RuntimeError("socket")] * 5), fake_store, clock)

        multipliers = []
        for _ in range(5):
            await orchestrator.ingest_once()
            multipliers.append(orchestrator.backoff_multiplier)

        assert multipliers == [1, 1, 2, 4, 6]
        assert orchestrator.consecutive_errors == 5
        assert orchestrator.error_state == ErrorState.CONNECTION_ISSUES
        assert not orchestrator.health()["fetch"].is_healthy

    @pytest.mark.asyncio
    async def test_success_resets_backoff(self, clock, fake_store):
        feed = FakeFeed([ThrottledError("x"), ThrottledError("x"), raw_items(clock, "a")])
        orchestrator = build(feed, fake_store, clock)

        await orchestrator.ingest_once()
        await orchestrator.ingest_once()
        await orchestrator.ingest_once()

        assert orchestrator.backoff_multiplier == 1.0
        assert orchestrator.consecutive_errors == 0
        assert orchestrator.error_state == ErrorState.HEALTHY
        assert orchestrator.next_ingestion_delay() == 30.0

    @pytest.mark.asyncio
    async def test_empty_page_keeps_backoff(self, clock, fake_store):
        statuses = []
        limited = RateLimitedError("limited")
        feed = FakeFeed([limited, limited, limited, [], limited])
        orchestrator = build(feed, fake_store, clock, on_status=statuses.append)

        multipliers = []
        for _ in range(5):
            await orchestrator.ingest_once()
            multipliers.append(orchestrator.backoff_multiplier)

        assert multipliers == [1.5, 2.25, 3.375, 3.375, 4.0]
        assert orchestrator.consecutive_errors == 4
        assert orchestrator.error_state == ErrorState.RATE_LIMITED
        assert orchestrator.status_message == "limited"
        assert statuses == ["limited"]

    @pytest.mark.asyncio
    async def test_status_message_after_sustained_errors(self, clock, fake_store):
        statuses = []
        feed = FakeFeed([RuntimeError("socket")] * 3 + [raw_items(clock, "a")])
        orchestrator = build(feed, fake_store, clock, on_status=statuses.append)

        await orchestrator.ingest_once()
        await orchestrator.ingest_once()
        assert orchestrator.status_message is None

        await orchestrator.ingest_once()
        assert orchestrator.status_message == STATUS_MESSAGES[ErrorState.CONNECTION_ISSUES]

        await orchestrator.ingest_once()
        assert orchestrator.status_message is None
        assert statuses == [STATUS_MESSAGES[ErrorState.CONNECTION_ISSUES], None]

        severities = [e["severity"] for e in fake_store.events if e["event_type"] == "error"]
        assert severities == ["warning", "warning", "error"]

    @pytest.mark.asyncio
    async def test_upstream_message_preferred(self, clock, fake_store):
        orchestrator = build(FakeFeed([RateLimitedError("Please wait a moment")] * 3), fake_store, clock)

        for _ in range(3):
            await orchestrator.ingest_once()
        assert orchestrator.status_message == "Please wait a moment"


class TestIntrospection:
    @pytest.mark.asyncio
    async def test_stats_and_debug_info(self, clock, fake_store):
        orchestrator = build(FakeFeed([raw_items(clock, "a", "b", "c")]), fake_store, clock)
        await orchestrator.ingest_once()

        stats = orchestrator.stats()
        assert stats.raw_items == 3
        assert stats.total_items == 3

        await orchestrator.publish_tick()
        stats = orchestrator.stats()
        assert stats.scheduled_items == 2
        assert stats.published_items == 1
        assert stats.total_items == 3

        debug = orchestrator.debug_info()
        assert debug["pipeline"]["scheduled"] == 2
        assert debug["published"] == 1
        assert "scheduled_count" in debug["scheduler_stats"]

    def test_health_status_when_stopped(self, clock, fake_store):
        orchestrator = build(FakeFeed(), fake_store, clock)
        status = orchestrator.health_status()

        assert status["is_running"] is False
        assert status["error_state"] == "healthy"
        assert status["status_message"] is None
        assert status["next_ingestion_in"] is None


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, clock, fake_store):
        feed = FakeFeed([raw_items(clock, "a")])
        orchestrator = build(feed, fake_store, clock)

        await orchestrator.start()
        await asyncio.sleep(0.05)

        assert orchestrator.is_running
        assert orchestrator.health_status()["next_ingestion_in"] == 30.0

        await orchestrator.stop()

        assert not orchestrator.is_running
        assert feed.calls == [("technology", "new")]
        event_types = [event["event_type"] for event in fake_store.events]
        assert event_types[0] == "pipeline_start"
        assert event_types[-1] == "pipeline_stop"

    @pytest.mark.asyncio
    async def test_restart_stops_previous_loops(self, clock, fake_store):
        orchestrator = build(FakeFeed(), fake_store, clock)

        await orchestrator.start()
        await orchestrator.start()
        await asyncio.sleep(0.01)
        await orchestrator.stop()

        event_types = [event["event_type"] for event in fake_store.events]
        assert event_types.count("pipeline_start") == 2
        assert event_types.count("pipeline_stop") == 2

    @pytest.mark.asyncio
    async def test_stop_does_not_wait_for_slow_fetch(self, clock, fake_store):
        class SlowFeed(FeedClient):
            def __init__(self):
                self.started = asyncio.Event()

            async def fetch(self, subreddit, sort):
                self.started.set()
                await asyncio.sleep(60)
                return []

        feed = SlowFeed()
        orchestrator = build(feed, fake_store, clock)

        await orchestrator.start()
        await asyncio.wait_for(feed.started.wait(), timeout=1)
        await asyncio.wait_for(orchestrator.stop(), timeout=1)

        assert not orchestrator.is_running
        assert orchestrator.consecutive_errors == 0
        assert fake_store.events[-1]["event_type"] == "pipeline_stop"


class TestFactory:
    @pytest.mark.asyncio
    async def test_orchestrator_from_config(self, monkeypatch, fake_store):
        monkeypatch.delenv("FEED_URL", raising=False)
        config = parse_config({
            "pipeline": {"subreddits": ["science"], "content_mode": "unrestricted"},
            "feed": {"url": "http://feed.test/api/reddit", "max_retries": 0},
            "scoring": {"half_life_hours": 3},
        })

        def handler(request):
            posts = [post_payload("f1", subreddit="science"), post_payload("f2", over_18=True)]
            return httpx.Response(200, json={"success": True, "posts": posts})

        orchestrator = create_orchestrator_from_config(
            config,
            store=fake_store,
            transport=httpx.MockTransport(handler),
            selector=SequenceSelector([("science", "hot")]),
        )

        assert orchestrator.scoring.half_life_hours == 3
        assert orchestrator.sort_modes == ["new", "rising", "hot"]
        assert await orchestrator.ingest_once() == 2
