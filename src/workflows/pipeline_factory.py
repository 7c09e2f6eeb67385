"""
Pipeline Factory - Creates the live feed orchestrator from configuration.
"""
import logging
from typing import Callable, List, Optional

import httpx

from delivery.base import DeliveryChannel
from ingestion.selection import SourceSelector
from ingestion.source_factory import create_feed_client, create_selector
from processing.enrichment import EnrichmentStage
from processing.scheduler import SchedulerStage
from processing.scoring import ScoringStage
from services.config import Config
from services.pipeline_store import PipelineStore
from workflows.orchestrator import PipelineOrchestrator

logger = logging.getLogger(__name__)


def create_orchestrator_from_config(
    config: Config,
    store: Optional[PipelineStore] = None,
    deliveries: Optional[List[DeliveryChannel]] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    selector: Optional[SourceSelector] = None,
    on_status: Optional[Callable[[Optional[str]], None]] = None,
) -> PipelineOrchestrator:
    """
    Factory function to wire the feed client and stages into an orchestrator.

    Args:
        config: Full application configuration
        store: Optional persistence for published items, metrics and events
        deliveries: Channels each published item is handed to
        transport: Optional httpx transport for the feed client
        selector: Subreddit/sort rotation, random by default
        on_status: Called whenever the degradation message changes

    Returns:
        Configured PipelineOrchestrator instance
    """
    orchestrator = PipelineOrchestrator(
        config=config.pipeline,
        feed_client=create_feed_client(config.feed, transport=transport),
        enrichment=EnrichmentStage(),
        scoring=ScoringStage.from_config(config.scoring),
        scheduler=SchedulerStage(config.scheduling),
        store=store,
        deliveries=deliveries,
        selector=selector or create_selector(),
        sort_modes=config.feed.sort_modes,
        on_status=on_status,
    )

    logger.info(
        f"Created live feed pipeline for {len(config.pipeline.subreddits)} subreddits "
        f"({config.pipeline.content_mode} mode)"
    )
    return orchestrator
