"""
Base classes for Ingestion
"""
from abc import ABC, abstractmethod
from typing import List, Optional

from core.entities import Item


class FeedError(Exception):
    """
    Upstream failure worth reporting to the orchestrator.
    """


class RateLimitedError(FeedError):
    """
    Upstream kept answering 429 through the whole retry budget.
    """

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class ThrottledError(FeedError):
    """
    Upstream is temporarily throttling all requests (503 with an open circuit breaker).
    """


class FeedClient(ABC):
    """
    Base interface for upstream feed clients.
    """

    @abstractmethod
    async def fetch(self, subreddit: str, sort: str) -> List[Item]:
        """
        Fetch raw items for one subreddit and sort mode.
        Ordinary upstream failure yields an empty list; only sustained
        rate limiting or throttling raises a FeedError.
        """
        raise NotImplementedError
