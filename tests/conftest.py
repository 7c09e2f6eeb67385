"""
Shared fixtures for the live feed pipeline tests
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest

from core.entities import Item, ProcessingStatus, StageHealth

# 15:00 UTC is inside the default peak window, 03:00 UTC is not
PEAK_NOW = datetime(2024, 6, 3, 15, 0, tzinfo=timezone.utc).timestamp()
OFF_PEAK_NOW = datetime(2024, 6, 3, 3, 0, tzinfo=timezone.utc).timestamp()


class FakeClock:
    """Settable epoch-seconds clock."""

    def __init__(self, now: float = PEAK_NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    def __init__(self):
        self.waits: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.waits.append(delay)


class FakeStore:
    """In-memory stand-in for PipelineStore that records every call."""

    def __init__(self):
        self.published: List[Item] = []
        self.metrics: List[Dict[str, Any]] = []
        self.health: List[StageHealth] = []
        self.events: List[Dict[str, Any]] = []

    async def record_published(self, item: Item) -> bool:
        self.published.append(item)
        return True

    async def record_stage_metric(self, stage, item_id, duration_ms=None, metrics=None) -> bool:
        self.metrics.append(
            {"stage": stage, "item_id": item_id, "duration_ms": duration_ms, "metrics": metrics or {}}
        )
        return True

    async def record_stage_health(self, health: StageHealth) -> bool:
        self.health.append(health)
        return True

    async def log_system_event(self, event_type, severity, message, details=None) -> bool:
        self.events.append(
            {"event_type": event_type, "severity": severity, "message": message, "details": details or {}}
        )
        return True

    def stages_for(self, item_id: str) -> List[str]:
        return [m["stage"] for m in self.metrics if m["item_id"] == item_id]


def post_payload(post_id: str, now: float = PEAK_NOW, **overrides: Any) -> Dict[str, Any]:
    """One upstream post as the feed endpoint returns it."""
    payload = {
        "id": post_id,
        "title": f"Interesting post number {post_id}",
        "selftext": "",
        "author": "someone",
        "subreddit": "technology",
        "url": f"https://example.com/{post_id}",
        "permalink": f"/r/technology/comments/{post_id}/",
        "score": 50,
        "num_comments": 10,
        "upvote_ratio": 0.9,
        "created_utc": now - 1800,
        "thumbnail": "",
        "domain": "example.com",
        "is_video": False,
        "over_18": False,
    }
    payload.update(overrides)
    return payload


def make_item(
    item_id: str = "a1",
    status: ProcessingStatus = ProcessingStatus.RAW,
    now: float = PEAK_NOW,
    priority: Optional[float] = None,
    **overrides: Any,
) -> Item:
    data = post_payload(item_id, now=now)
    data["processing_status"] = status
    if priority is not None:
        data["priority_score"] = priority
    data.update(overrides)
    return Item(**data)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def fake_store() -> FakeStore:
    return FakeStore()
