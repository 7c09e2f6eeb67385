"""
Live feed orchestrator: drives fetch -> enrich -> score -> schedule -> publish.
"""
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from core.entities import (
    Item,
    PipelineStats,
    ProcessingStatus,
    PublishedEvent,
    StageHealth,
)
from delivery.base import DeliveryChannel
from ingestion.base import FeedClient, FeedError, RateLimitedError, ThrottledError
from ingestion.selection import RandomSelector, SourceSelector
from processing.enrichment import EnrichmentStage
from processing.prefilter import filter_new_items
from processing.scheduler import SchedulerStage
from processing.scoring import ScoringStage
from services.config import PipelineConfig
from services.pipeline_store import PipelineStore
from services.scheduler import DelayedLoop
from workflows.base import PipelineStage, StageContext
from workflows.working_set import PublishedBuffer, WorkingSet

logger = logging.getLogger(__name__)

DEFAULT_SORT_MODES = ("new", "rising", "hot")

RATE_LIMIT_BACKOFF = (1.5, 4.0)
THROTTLE_BACKOFF = (2.0, 8.0)
CONNECTION_BACKOFF = (2.0, 6.0)
CONNECTION_BACKOFF_AFTER = 3
ERROR_SEVERITY_AFTER = 3


class ErrorState(str, Enum):
    HEALTHY = "healthy"
    RATE_LIMITED = "rate_limited"
    CIRCUIT_BREAKER = "circuit_breaker"
    CONNECTION_ISSUES = "connection_issues"


STATUS_MESSAGES: Dict[ErrorState, str] = {
    ErrorState.RATE_LIMITED: "Temporarily slowing down due to rate limits. Feed continues automatically.",
    ErrorState.CIRCUIT_BREAKER: "The feed source is temporarily throttling requests. Feed will resume automatically.",
    ErrorState.CONNECTION_ISSUES: "Temporary connection issues. Feed will resume automatically.",
}

# Which status feeds each stage's queue
QUEUE_STATUS: Dict[str, ProcessingStatus] = {
    "enrichment": ProcessingStatus.RAW,
    "scoring": ProcessingStatus.ENRICHED,
    "scheduling": ProcessingStatus.SCORED,
    "publishing": ProcessingStatus.SCHEDULED,
}


class PipelineOrchestrator:
    """
    Owns the working set and the published buffer and runs two loops on
    the event loop: ingestion (one fetch per cycle, with error backoff) and
    publishing (all stages once, then at most one publish per tick).

    Nothing raised by the feed, a stage, the store or a delivery channel
    stops the pipeline; failures are logged, recorded as stage health and
    retried on the next cycle.
    """

    def __init__(
        self,
        config: PipelineConfig,
        feed_client: FeedClient,
        *,
        enrichment: Optional[EnrichmentStage] = None,
        scoring: Optional[ScoringStage] = None,
        scheduler: Optional[SchedulerStage] = None,
        store: Optional[PipelineStore] = None,
        deliveries: Optional[List[DeliveryChannel]] = None,
        selector: Optional[SourceSelector] = None,
        sort_modes: Sequence[str] = DEFAULT_SORT_MODES,
        clock: Callable[[], float] = time.time,
        on_status: Optional[Callable[[Optional[str]], None]] = None,
    ):
        self.config = config
        self.feed_client = feed_client
        self.enrichment = enrichment or EnrichmentStage()
        self.scoring = scoring or ScoringStage()
        self.scheduler = scheduler or SchedulerStage()
        self.stages: List[PipelineStage] = [self.enrichment, self.scoring, self.scheduler]
        self.store = store
        self.deliveries = list(deliveries or [])
        self.selector = selector or RandomSelector()
        self.sort_modes = list(sort_modes)
        self.clock = clock
        self.on_status = on_status

        self.working_set = WorkingSet(max_items=config.max_items_in_pipeline)
        self.published = PublishedBuffer(retention_minutes=config.published_retention_minutes)

        self.is_running = False
        self.consecutive_errors = 0
        self.backoff_multiplier = 1.0
        self.error_state = ErrorState.HEALTHY
        self.status_message: Optional[str] = None
        self.last_ingestion_at: Optional[int] = None
        self.next_ingestion_at: Optional[int] = None
        self.published_total = 0
        self._health: Dict[str, StageHealth] = {}

        self._ingestion_loop = DelayedLoop("ingestion", self.ingest_once, self.next_ingestion_delay)
        self._publish_loop = DelayedLoop(
            "publishing", self.publish_tick, lambda: self.config.publish_interval_ms / 1000
        )

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    # ----------------------------
    # Lifecycle
    # ----------------------------
    async def start(self) -> None:
        if self.is_running:
            await self.stop()

        self.is_running = True
        logger.info("Live feed pipeline starting")

        await self._log_event(
            "pipeline_start",
            "info",
            "Live feed pipeline started",
            {
                "subreddits": self.config.subreddits,
                "content_mode": self.config.content_mode,
                "max_items": self.config.max_items_in_pipeline,
                "publish_interval_ms": self.config.publish_interval_ms,
            },
        )

        self._publish_loop.start()
        self._ingestion_loop.start()

    async def stop(self) -> None:
        logger.info("Live feed pipeline stopping")
        self.is_running = False

        # A fetch may be sleeping between retries; do not wait it out
        await self._ingestion_loop.stop(cancel_running=True)
        await self._publish_loop.stop()
        self.next_ingestion_at = None

        stats = self.stats()
        await self._log_event(
            "pipeline_stop",
            "info",
            "Live feed pipeline stopped",
            {"total_processed": stats.total_items, "published": self.published_total},
        )

    # ----------------------------
    # Ingestion loop
    # ----------------------------
    async def ingest_once(self) -> int:
        """
        One ingestion cycle: pick a source, fetch, filter and add raw items.

        Returns:
            Number of new items added to the working set
        """
        subreddit, sort = self.selector.choose(self.config.subreddits, self.sort_modes)
        logger.info(f"Ingesting r/{subreddit} ({sort})")

        try:
            fetched = await self.feed_client.fetch(subreddit, sort)
        except Exception as e:
            await self._handle_ingestion_error(e)
            return 0
        finally:
            self.last_ingestion_at = self._now_ms()

        fresh = filter_new_items(
            fetched,
            known_ids=self.working_set.ids() | self.published.ids(),
            content_mode=self.config.content_mode,
        )
        if not fresh:
            # An empty page says nothing about upstream health; keep any backoff
            logger.info(f"No new items available from r/{subreddit}")
            return 0

        self._reset_error_tracking()

        logger.info(f"Ingested {len(fresh)} new raw items from r/{subreddit}")
        await self.add_raw_items(fresh)
        return len(fresh)

    async def add_raw_items(self, items: List[Item]) -> None:
        evicted = self.working_set.add(items)
        self.scheduler.forget(item.id for item in evicted)

        now = self.clock()
        for item in items:
            await self._record_metric(
                "fetched",
                item.id,
                None,
                {
                    "quality_score": 0,
                    "engagement_score": item.score,
                    "recency_score": self.scoring.recency(item, now),
                    "score": item.score,
                    "num_comments": item.num_comments,
                    "upvote_ratio": item.upvote_ratio,
                },
            )
        await self._update_health("fetch", True)

    def next_ingestion_delay(self) -> float:
        """Seconds until the next ingestion, scaled by the error backoff."""
        delay_ms = self.config.ingestion_interval_ms * self.backoff_multiplier
        self.next_ingestion_at = self._now_ms() + int(delay_ms)
        logger.info(f"Next ingestion scheduled in {delay_ms / 1000:.1f} seconds")
        return delay_ms / 1000

    def _reset_error_tracking(self) -> None:
        self.consecutive_errors = 0
        self.backoff_multiplier = 1.0
        self.error_state = ErrorState.HEALTHY
        self._set_status(None)

    async def _handle_ingestion_error(self, error: Exception) -> None:
        self.consecutive_errors += 1
        logger.error(f"Data ingestion error (attempt {self.consecutive_errors}): {error}")

        if isinstance(error, ThrottledError):
            self.error_state = ErrorState.CIRCUIT_BREAKER
            factor, cap = THROTTLE_BACKOFF
            self.backoff_multiplier = min(self.backoff_multiplier * factor, cap)
        elif isinstance(error, RateLimitedError):
            self.error_state = ErrorState.RATE_LIMITED
            factor, cap = RATE_LIMIT_BACKOFF
            self.backoff_multiplier = min(self.backoff_multiplier * factor, cap)
        else:
            self.error_state = ErrorState.CONNECTION_ISSUES
            if self.consecutive_errors >= CONNECTION_BACKOFF_AFTER:
                factor, cap = CONNECTION_BACKOFF
                self.backoff_multiplier = min(self.backoff_multiplier * factor, cap)

        await self._update_health("fetch", False, error)
        await self._log_event(
            "error",
            "error" if self.consecutive_errors >= ERROR_SEVERITY_AFTER else "warning",
            f"Data ingestion error (attempt {self.consecutive_errors})",
            {
                "error": str(error),
                "error_state": self.error_state.value,
                "consecutive_errors": self.consecutive_errors,
                "backoff_multiplier": self.backoff_multiplier,
            },
        )

        if self.consecutive_errors >= self.config.degraded_after_errors:
            upstream_message = str(error) if isinstance(error, FeedError) else ""
            self._set_status(upstream_message or STATUS_MESSAGES[self.error_state])

    def _set_status(self, message: Optional[str]) -> None:
        if message == self.status_message:
            return
        self.status_message = message
        if self.on_status is None:
            return
        try:
            self.on_status(message)
        except Exception as e:
            logger.error(f"Status callback failed: {e}")

    # ----------------------------
    # Publishing loop
    # ----------------------------
    async def publish_tick(self) -> Optional[Item]:
        """Run every stage once, then publish at most one due item."""
        try:
            self.published.prune(self._now_ms())
            await self.run_processing_steps()
            published = await self.publish_next()
        except Exception as e:
            logger.exception(f"Publishing error: {e}")
            await self._update_health("publishing", False, e)
            return None

        await self._update_health("publishing", True)
        return published

    async def run_processing_steps(self) -> None:
        context = StageContext(now=self.clock(), recently_published=self.published.items())

        for stage in self.stages:
            waiting = self.working_set.with_status(stage.input_status)
            if not waiting:
                continue

            started = time.perf_counter()
            try:
                advanced = stage.run(waiting, context)
                applied = self.working_set.replace(advanced)
            except Exception as e:
                logger.exception(f"{stage.name} failed: {e}")
                await self._update_health(stage.name, False, e)
                continue
            duration_ms = (time.perf_counter() - started) * 1000

            per_item_ms = duration_ms / len(applied) if applied else 0.0
            for item in applied:
                await self._record_metric(
                    stage.output_status.value, item.id, per_item_ms, stage.metrics_for(item, context)
                )
            await self._update_health(stage.name, True)

    async def publish_next(self) -> Optional[Item]:
        now = self.clock()
        scheduled = self.working_set.with_status(ProcessingStatus.SCHEDULED)
        ready = self.scheduler.ready_for_publishing(scheduled, now)
        logger.debug(f"Checking for items to publish: {len(scheduled)} scheduled, {len(ready)} ready now")

        if not ready:
            return None

        item = self.scheduler.mark_published(ready[0], now)
        now_ms = self._now_ms()
        logger.info(f"Publishing: '{item.title[:50]}' (score: {item.priority_score:.3f})")

        self.working_set.remove(item.id)
        self.published.add(item, now_ms)
        self.published_total += 1

        await self._record_metric(
            "published",
            item.id,
            None,
            {
                "priority_score": item.priority_score,
                "quality_score": item.quality_score,
                "engagement_score": item.engagement_score,
            },
        )
        if self.store is not None:
            await self.store.record_published(item)

        await self._deliver(PublishedEvent(item=item, added_at=now_ms, is_new=True))
        return item

    async def _deliver(self, event: PublishedEvent) -> None:
        for channel in self.deliveries:
            try:
                await channel.deliver(event=event)
            except Exception as e:
                logger.error(f"Delivery failed: item={event.item.id}, channel={channel.name}, error={e}")

    # ----------------------------
    # Health and persistence
    # ----------------------------
    def _queue_depth(self, stage: str) -> int:
        status = QUEUE_STATUS.get(stage)
        return self.working_set.count(status) if status else 0

    async def _update_health(self, stage: str, is_healthy: bool, error: Optional[BaseException] = None) -> None:
        health = StageHealth(
            stage=stage,
            queue_depth=self._queue_depth(stage),
            is_healthy=is_healthy,
            last_error=str(error) if error is not None else None,
            updated_at=self._now_ms(),
        )
        self._health[stage] = health
        if self.store is not None:
            await self.store.record_stage_health(health)

    async def _record_metric(
        self, stage: str, item_id: str, duration_ms: Optional[float], metrics: Dict[str, Any]
    ) -> None:
        if self.store is not None:
            await self.store.record_stage_metric(stage, item_id, duration_ms, metrics)

    async def _log_event(self, event_type: str, severity: str, message: str, details: Dict[str, Any]) -> None:
        if self.store is not None:
            await self.store.log_system_event(event_type, severity, message, details)

    # ----------------------------
    # Introspection
    # ----------------------------
    def health(self) -> Dict[str, StageHealth]:
        return dict(self._health)

    def stats(self) -> PipelineStats:
        return PipelineStats(
            total_items=len(self.working_set) + len(self.published),
            raw_items=self.working_set.count(ProcessingStatus.RAW),
            enriched_items=self.working_set.count(ProcessingStatus.ENRICHED),
            scored_items=self.working_set.count(ProcessingStatus.SCORED),
            scheduled_items=self.working_set.count(ProcessingStatus.SCHEDULED),
            published_items=len(self.published),
            last_update=self._now_ms(),
        )

    def health_status(self) -> Dict[str, Any]:
        next_in = None
        if self.is_running and self.next_ingestion_at is not None:
            next_in = max(0.0, (self.next_ingestion_at - self._now_ms()) / 1000)
        return {
            "is_running": self.is_running,
            "total_items": len(self.working_set),
            "last_ingestion_time": self.last_ingestion_at,
            "error_state": self.error_state.value,
            "status_message": self.status_message,
            "next_ingestion_in": next_in,
        }

    def debug_info(self) -> Dict[str, Any]:
        return {
            "pipeline": {
                status.value: self.working_set.count(status)
                for status in ProcessingStatus
                if status != ProcessingStatus.PUBLISHED
            },
            "published": len(self.published),
            "scheduler_stats": self.scheduler.scheduling_stats(self.clock()),
        }
