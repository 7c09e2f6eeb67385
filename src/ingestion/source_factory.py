"""
Source Factory - Creates the feed client and source selector from configuration.
"""
import logging
import random
from typing import Optional

import httpx

from ingestion.base import FeedClient
from ingestion.reddit import RedditFeedClient
from ingestion.selection import RandomSelector, SourceSelector
from services.config import FeedConfig

logger = logging.getLogger(__name__)


def create_feed_client(
    feed_config: FeedConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FeedClient:
    """
    Create the upstream feed client from configuration.

    Args:
        feed_config: Feed endpoint and retry settings
        transport: Optional httpx transport (used to stub the upstream)

    Returns:
        Configured FeedClient instance

    Raises:
        ValueError: If no feed URL is configured
    """
    if not feed_config.url:
        raise ValueError("Feed source requires a 'url'")

    client = RedditFeedClient(
        url=feed_config.url,
        limit=feed_config.limit,
        timeout=feed_config.timeout_seconds,
        max_retries=feed_config.max_retries,
        user_agent=feed_config.user_agent,
        transport=transport,
    )
    logger.info(f"Created feed client for {feed_config.url} (limit={feed_config.limit})")
    return client


def create_selector(seed: Optional[int] = None) -> SourceSelector:
    """Random subreddit/sort rotation; a seed makes the rotation reproducible."""
    return RandomSelector(random.Random(seed))
