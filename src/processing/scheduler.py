"""
Scheduling stage: diversity filter, category interleaving and publish slots
"""
import logging
import time
from collections import Counter
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from core.entities import Item, ProcessingStatus
from services.config import SchedulingConfig
from workflows.base import PipelineStage, StageContext

logger = logging.getLogger(__name__)

ONE_HOUR_MS = 60 * 60 * 1000
MINUTE_MS = 60 * 1000


def _now_ms(now: Optional[float]) -> int:
    return int((time.time() if now is None else now) * 1000)


def group_by_category(items: Iterable[Item]) -> Dict[str, List[Item]]:
    """
    Group by primary category, keeping first-seen group order,
    each group sorted by priority descending.
    """
    groups: Dict[str, List[Item]] = {}
    for item in items:
        groups.setdefault(item.primary_category, []).append(item)

    for members in groups.values():
        members.sort(key=lambda item: item.priority_score or 0.0, reverse=True)
    return groups


def interleave(groups: Dict[str, List[Item]]) -> List[Item]:
    """Round-robin across groups: A1, B1, C1, A2, B2, ..."""
    interleaved: List[Item] = []
    longest = max((len(members) for members in groups.values()), default=0)

    for i in range(longest):
        for members in groups.values():
            if i < len(members):
                interleaved.append(members[i])
    return interleaved


def interval_variability(item: Item) -> float:
    """
    Minutes added to (or taken from) the base interval after this item.
    """
    variability = 0.0
    priority = item.priority_score or 0.0

    if priority > 0.8:
        variability -= 1
    if priority < 0.3:
        variability += 2
    if "news" in item.categories:
        variability -= 1
    if "entertainment" in item.categories:
        variability += 1

    return max(-3.0, min(5.0, variability))


class SchedulerStage(PipelineStage):
    """
    Turns scored items into a release plan.

    Remembers the last slot it handed out so later passes queue behind it.
    """

    name = "scheduling"
    input_status = ProcessingStatus.SCORED
    output_status = ProcessingStatus.SCHEDULED

    def __init__(self, config: Optional[SchedulingConfig] = None):
        self.config = config or SchedulingConfig()
        self._last_slot_ms: Optional[int] = None
        self._upcoming: Dict[str, Item] = {}

    @property
    def last_slot_ms(self) -> Optional[int]:
        return self._last_slot_ms

    def is_peak_hour(self, now: float) -> bool:
        hour = datetime.fromtimestamp(now, tz=timezone.utc).hour
        return hour in self.config.peak_hours_utc

    def base_interval_minutes(self, now: float) -> float:
        if self.is_peak_hour(now):
            return self.config.min_post_interval_minutes
        return self.config.max_post_interval_minutes

    def filter_by_diversity(
        self,
        items: List[Item],
        recently_published: Iterable[Item],
        now: float,
    ) -> List[Item]:
        """
        Keep items whose subreddit is under the hourly cap.

        Published items from the last hour, items already planned and items
        admitted earlier in this pass all count toward a subreddit's cap.
        Higher priority items are admitted first.
        """
        now_ms = _now_ms(now)
        cutoff = now_ms - ONE_HOUR_MS
        by_subreddit = Counter(
            item.subreddit.lower()
            for item in recently_published
            if (item.published_at or 0) > cutoff
        )
        by_subreddit.update(item.subreddit.lower() for item in self._upcoming.values())

        cap = self.config.max_posts_per_subreddit_per_hour
        candidates: List[Item] = []
        for item in sorted(items, key=lambda item: item.priority_score or 0.0, reverse=True):
            key = item.subreddit.lower()
            if by_subreddit[key] < cap:
                by_subreddit[key] += 1
                candidates.append(item)
        logger.info(f"Diversity filter: {len(items)} -> {len(candidates)} items")
        return candidates

    def next_available_slot(self, now_ms: int, base_minutes: float) -> int:
        earliest = now_ms + int(base_minutes * MINUTE_MS)
        if self._last_slot_ms is None:
            return earliest
        min_gap = int(self.config.min_post_interval_minutes * MINUTE_MS)
        return max(earliest, self._last_slot_ms + min_gap)

    def schedule(
        self,
        items: List[Item],
        recently_published: Iterable[Item] = (),
        now: Optional[float] = None,
    ) -> List[Item]:
        """
        Pick at most batch_size items and give each a publish time.
        Items left out stay scored and are considered again next pass.
        """
        now = time.time() if now is None else now
        now_ms = _now_ms(now)

        candidates = self.filter_by_diversity(items, recently_published, now)
        ordered = interleave(group_by_category(candidates))[: self.config.batch_size]

        base_minutes = self.base_interval_minutes(now)
        min_minutes = self.config.min_post_interval_minutes
        spacing_ms = int(self.config.immediate_spacing_seconds * 1000)
        next_slot = self.next_available_slot(now_ms, base_minutes)

        scheduled: List[Item] = []
        for i, item in enumerate(ordered):
            if i < self.config.immediate_slots:
                slot = now_ms + i * spacing_ms
            else:
                slot = next_slot
                step = max(base_minutes + interval_variability(item), min_minutes)
                next_slot = slot + int(step * MINUTE_MS)

            planned = item.advance(ProcessingStatus.SCHEDULED, scheduled_at=slot)
            scheduled.append(planned)
            self._upcoming[planned.id] = planned
            self._last_slot_ms = slot if self._last_slot_ms is None else max(self._last_slot_ms, slot)

        immediate = sum(1 for item in scheduled if item.scheduled_at <= now_ms + 10_000)
        logger.info(f"Scheduled {len(scheduled)} items: {immediate} immediate, {len(scheduled) - immediate} future")
        return scheduled

    def run(self, items: List[Item], context: StageContext) -> List[Item]:
        return self.schedule(items, context.recently_published, now=context.now)

    def metrics_for(self, item: Item, context: StageContext) -> dict:
        return {"priority_score": item.priority_score, "scheduled_at": item.scheduled_at}

    def ready_for_publishing(self, items: Iterable[Item], now: Optional[float] = None) -> List[Item]:
        """Scheduled items whose slot has arrived, earliest first."""
        now_ms = _now_ms(now)
        ready = [
            item for item in items
            if item.processing_status == ProcessingStatus.SCHEDULED
            and (item.scheduled_at or 0) <= now_ms
        ]
        ready.sort(key=lambda item: item.scheduled_at)
        return ready

    def mark_published(self, item: Item, now: Optional[float] = None) -> Item:
        published = item.advance(ProcessingStatus.PUBLISHED, published_at=_now_ms(now))
        self._upcoming.pop(item.id, None)
        return published

    def forget(self, item_ids: Iterable[str]) -> None:
        """Drop scheduled items that left the pipeline without being published."""
        for item_id in item_ids:
            self._upcoming.pop(item_id, None)

    def scheduling_stats(self, now: Optional[float] = None) -> dict:
        """
        Snapshot of the upcoming plan for monitoring.
        """
        now_ms = _now_ms(now)
        upcoming = sorted(
            (item for item in self._upcoming.values() if item.scheduled_at > now_ms),
            key=lambda item: item.scheduled_at,
        )

        intervals = [
            later.scheduled_at - earlier.scheduled_at
            for earlier, later in zip(upcoming, upcoming[1:])
            if later.scheduled_at > earlier.scheduled_at
        ]
        average_interval = sum(intervals) / len(intervals) / MINUTE_MS if intervals else 0.0

        return {
            "scheduled_count": len(upcoming),
            "next_publish_time": upcoming[0].scheduled_at if upcoming else None,
            "average_interval_minutes": average_interval,
            "category_distribution": dict(Counter(item.primary_category for item in upcoming)),
        }
