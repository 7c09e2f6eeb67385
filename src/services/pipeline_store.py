"""
PipelineStore - Fire-and-forget persistence for the live feed pipeline.
Records published items, per-stage metrics, stage health and system events.
A failed write is logged and swallowed so it never blocks publishing.
"""
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from core.entities import Item, StageHealth
from services.database import Database

logger = logging.getLogger(__name__)

COMPONENT = "livefeed_pipeline"


class PipelineStore:
    """
    Thin async facade over Database used by the orchestrator.
    """

    def __init__(self, database: Database):
        self.db = database
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize the database tables."""
        if not self._initialized:
            await self.db.init_tables()
            self._initialized = True

    async def record_published(self, item: Item) -> bool:
        try:
            await self.initialize()
            attributes = {
                "priority_score": item.priority_score,
                "sentiment": item.sentiment.value if item.sentiment else None,
                "categories": item.categories,
                "quality_score": item.quality_score,
                "engagement_score": item.engagement_score,
                "processing_status": item.processing_status.value,
                "scheduled_at": item.scheduled_at,
            }
            await self.db.add_published_item(
                item_id=item.id,
                title=item.title,
                author=item.author,
                subreddit=item.subreddit,
                url=item.url,
                permalink=item.permalink,
                score=item.score,
                num_comments=item.num_comments,
                created_utc=item.created_utc,
                priority_score=item.priority_score,
                attributes_json=json.dumps(attributes),
                published_at=item.published_at or 0,
            )
            logger.debug(f"Saved published item: {item.id}")
            return True
        except Exception as e:
            logger.error(f"Failed to save published item {item.id}: {e}")
            return False

    async def record_stage_metric(
        self,
        stage: str,
        item_id: Optional[str],
        duration_ms: Optional[float] = None,
        metrics: Optional[Dict[str, Any]] = None,
    ) -> bool:
        try:
            await self.initialize()
            await self.db.add_stage_metric(
                stage=stage,
                item_id=item_id,
                duration_ms=duration_ms,
                metrics_json=json.dumps(metrics or {}, default=str),
            )
            return True
        except Exception as e:
            logger.error(f"Failed to track {stage} stats for item {item_id}: {e}")
            return False

    async def record_stage_health(self, health: StageHealth) -> bool:
        try:
            await self.initialize()
            await self.db.upsert_stage_health(
                stage=health.stage,
                queue_depth=health.queue_depth,
                is_healthy=health.is_healthy,
                last_error=health.last_error,
                updated_at=health.updated_at,
            )
            return True
        except Exception as e:
            logger.error(f"Failed to update pipeline stats for {health.stage}: {e}")
            return False

    async def log_system_event(
        self,
        event_type: str,
        severity: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> bool:
        try:
            await self.initialize()
            await self.db.add_system_event(
                event_type=event_type,
                severity=severity,
                component=COMPONENT,
                message=message,
                details_json=json.dumps(details or {}, default=str),
            )
            return True
        except Exception as e:
            logger.error(f"Failed to log {event_type} event: {e}")
            return False

    async def get_recent_published(self, since_ms: int) -> List[Tuple[str, str, str, Optional[float], int]]:
        """Published rows since the given epoch ms, newest first."""
        await self.initialize()
        return await self.db.get_recent_published(since_ms)

    async def cleanup(self, days: int = 30) -> int:
        """Remove old metric and event records."""
        await self.initialize()
        count = await self.db.cleanup_old_records(days=days)
        logger.info(f"Cleaned up {count} old pipeline records")
        return count
