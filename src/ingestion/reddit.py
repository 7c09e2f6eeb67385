"""
Ingest posts from the Reddit feed proxy with retry and backoff
"""
import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from pydantic import ValidationError

from core.entities import Item
from ingestion.base import FeedClient, RateLimitedError, ThrottledError

logger = logging.getLogger(__name__)

RATE_LIMIT_BASE_DELAY = 5.0
RATE_LIMIT_MAX_DELAY = 15.0
HTTP_ERROR_DELAY = 2.0
NETWORK_ERROR_DELAY = 3.0

# Fields the pipeline owns; never trusted from the upstream payload.
PIPELINE_FIELDS = {
    "processing_status", "sentiment", "categories", "quality_score",
    "engagement_score", "priority_score", "scheduled_at", "published_at",
}


def _json_or_empty(resp: httpx.Response) -> Dict[str, Any]:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _retry_after(resp: httpx.Response, body: Dict[str, Any]) -> Optional[float]:
    value = body.get("retryAfter", resp.headers.get("Retry-After"))
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class RedditFeedClient(FeedClient):
    """
    Fetches one page of posts per call from the feed endpoint.

    Every request gets a hard timeout. Up to max_retries extra attempts are
    made for transient failures; 403 and an open upstream circuit breaker
    end the cycle at once with no items.
    """

    def __init__(
        self,
        url: str,
        limit: int = 10,
        timeout: float = 15.0,
        max_retries: int = 2,
        user_agent: str = "livefeed-pipeline/1.0",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.url = url
        self.limit = limit
        self.timeout = timeout
        self.max_retries = max_retries
        self.user_agent = user_agent
        self.transport = transport
        self._sleep = sleep
        self._clock = clock

    async def fetch(self, subreddit: str, sort: str) -> List[Item]:
        headers = {"User-Agent": self.user_agent}
        params = {"subreddit": subreddit, "limit": self.limit, "sort": sort}
        attempts = self.max_retries + 1

        async with httpx.AsyncClient(
            timeout=self.timeout, headers=headers, transport=self.transport
        ) as client:
            for attempt in range(1, attempts + 1):
                final = attempt == attempts

                try:
                    resp = await asyncio.wait_for(
                        client.get(self.url, params=params), timeout=self.timeout
                    )
                except (asyncio.TimeoutError, httpx.TimeoutException):
                    logger.info(f"Timeout fetching r/{subreddit} (attempt {attempt})")
                    if final:
                        logger.warning(f"All attempts failed for r/{subreddit}, continuing with empty result")
                        return []
                    await self._backoff(NETWORK_ERROR_DELAY * attempt, subreddit, attempt)
                    continue
                except httpx.TransportError as e:
                    logger.info(f"Network error for r/{subreddit} (attempt {attempt}): {e}")
                    if final:
                        logger.warning(f"All attempts failed for r/{subreddit}, continuing with empty result")
                        return []
                    await self._backoff(NETWORK_ERROR_DELAY * attempt, subreddit, attempt)
                    continue

                if not resp.is_success:
                    body = _json_or_empty(resp)

                    if resp.status_code == 503 and body.get("circuitBreakerOpen"):
                        logger.info("Upstream circuit breaker is open, skipping this cycle")
                        if final and body.get("userMessage"):
                            raise ThrottledError(body["userMessage"])
                        return []

                    if resp.status_code == 429:
                        retry_after = _retry_after(resp, body)
                        if final:
                            raise RateLimitedError(
                                body.get("userMessage") or f"Rate limited while fetching r/{subreddit}",
                                retry_after=retry_after,
                            )
                        # Never shorter than upstream asked, still escalating per attempt
                        delay = min(
                            max(retry_after or 0.0, RATE_LIMIT_BASE_DELAY * attempt),
                            RATE_LIMIT_MAX_DELAY,
                        )
                        logger.info(f"Rate limited for r/{subreddit}, waiting {delay}s")
                        await self._backoff(delay, subreddit, attempt)
                        continue

                    if resp.status_code == 403:
                        logger.info(f"Access blocked for r/{subreddit} - may be private or restricted")
                        return []

                    if final:
                        logger.warning(f"Final attempt failed for r/{subreddit}: {resp.status_code}")
                        return []
                    await self._backoff(HTTP_ERROR_DELAY * attempt, subreddit, attempt)
                    continue

                data = _json_or_empty(resp)
                if not data:
                    logger.warning(f"Malformed response for r/{subreddit} (attempt {attempt})")
                    if final:
                        return []
                    await self._backoff(HTTP_ERROR_DELAY * attempt, subreddit, attempt)
                    continue

                if not data.get("success"):
                    error = str(data.get("error") or "")
                    logger.info(f"API message for r/{subreddit}: {error}")
                    lowered = error.lower()
                    if "rate limit" in lowered or "circuit breaker" in lowered:
                        return []
                    if final:
                        return []
                    await self._backoff(NETWORK_ERROR_DELAY * attempt, subreddit, attempt)
                    continue

                posts = data.get("posts")
                if not isinstance(posts, list):
                    logger.info(f"No posts array returned for r/{subreddit}")
                    return []

                if attempt > 1:
                    logger.info(f"Fetched r/{subreddit} on attempt {attempt}")
                return self._to_items(posts, subreddit)

        return []

    async def _backoff(self, delay: float, subreddit: str, attempt: int) -> None:
        logger.debug(f"Retrying r/{subreddit} in {delay}s (attempt {attempt}/{self.max_retries + 1})")
        await self._sleep(delay)

    def _to_items(self, posts: List[Any], subreddit: str) -> List[Item]:
        fetched_at = int(self._clock() * 1000)
        items: List[Item] = []

        for post in posts:
            if not isinstance(post, dict):
                continue
            data = {k: v for k, v in post.items() if k not in PIPELINE_FIELDS}
            data.setdefault("subreddit", subreddit)

            permalink = data.get("permalink") or ""
            if permalink.startswith("/"):
                data["permalink"] = f"https://reddit.com{permalink}"
            data["fetched_at"] = fetched_at

            try:
                items.append(Item.model_validate(data))
            except ValidationError as e:
                logger.warning(f"Skipping malformed post from r/{subreddit}: {e.error_count()} errors")

        return items
