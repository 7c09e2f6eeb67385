import json

import pytest

from core.entities import ProcessingStatus, StageHealth
from services.database import Database
from services.pipeline_store import COMPONENT, PipelineStore

from conftest import PEAK_NOW, make_item

PEAK_MS = int(PEAK_NOW * 1000)


@pytest.fixture
def database(tmp_path):
    return Database(str(tmp_path / "livefeed.db"))


@pytest.fixture
def store(database):
    return PipelineStore(database)


class FailingDatabase(Database):
    async def add_stage_metric(self, *args, **kwargs):
        raise RuntimeError("disk full")


def published_item(item_id="p1", published_at=PEAK_MS):
    return make_item(
        item_id,
        status=ProcessingStatus.PUBLISHED,
        priority=0.8,
        quality_score=0.9,
        categories=["technology"],
        scheduled_at=published_at,
        published_at=published_at,
    )


class TestPipelineStore:
    @pytest.mark.asyncio
    async def test_record_published(self, store, database):
        assert await store.record_published(published_item("p1"))
        assert await store.record_published(published_item("p2", PEAK_MS - 120_000))

        rows = await store.get_recent_published(PEAK_MS - 60_000)
        assert [row[0] for row in rows] == ["p1"]
        assert rows[0][3] == 0.8

        attributes = await database.fetchone("SELECT attributes_json FROM published_items WHERE id = ?", ("p1",))
        assert json.loads(attributes[0])["categories"] == ["technology"]

    @pytest.mark.asyncio
    async def test_record_stage_metric(self, store, database):
        assert await store.record_stage_metric("enriched", "p1", 1.5, {"quality_score": 0.7})

        row = await database.fetchone("SELECT stage, item_id, duration_ms, metrics_json FROM stage_metrics")
        assert row[:3] == ("enriched", "p1", 1.5)
        assert json.loads(row[3]) == {"quality_score": 0.7}

    @pytest.mark.asyncio
    async def test_stage_health_upserted(self, store, database):
        await store.record_stage_health(StageHealth("enrichment", 4, True, None, PEAK_MS))
        await store.record_stage_health(StageHealth("enrichment", 0, False, "boom", PEAK_MS + 1))

        rows = await database.fetchall("SELECT stage, queue_depth, is_healthy, last_error FROM pipeline_health")
        assert rows == [("enrichment", 0, 0, "boom")]

    @pytest.mark.asyncio
    async def test_system_event(self, store, database):
        assert await store.log_system_event("pipeline_start", "info", "started", {"subreddits": ["science"]})

        row = await database.fetchone("SELECT event_type, severity, component, message, details_json FROM system_events")
        assert row[:4] == ("pipeline_start", "info", COMPONENT, "started")
        assert json.loads(row[4]) == {"subreddits": ["science"]}

    @pytest.mark.asyncio
    async def test_write_failure_is_swallowed(self, tmp_path):
        store = PipelineStore(FailingDatabase(str(tmp_path / "broken.db")))
        assert await store.record_stage_metric("scored", "p1") is False

    @pytest.mark.asyncio
    async def test_cleanup_keeps_fresh_records(self, store):
        await store.record_stage_metric("fetched", "p1")
        await store.log_system_event("error", "warning", "hiccup")

        assert await store.cleanup(days=30) == 0
