from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator


class ProcessingStatus(str, Enum):
    """
    Lifecycle of an item inside the pipeline.
    """
    RAW = "raw"
    ENRICHED = "enriched"
    SCORED = "scored"
    SCHEDULED = "scheduled"
    PUBLISHED = "published"


ALLOWED_TRANSITIONS: Dict[ProcessingStatus, Optional[ProcessingStatus]] = {
    ProcessingStatus.RAW: ProcessingStatus.ENRICHED,
    ProcessingStatus.ENRICHED: ProcessingStatus.SCORED,
    ProcessingStatus.SCORED: ProcessingStatus.SCHEDULED,
    ProcessingStatus.SCHEDULED: ProcessingStatus.PUBLISHED,
    ProcessingStatus.PUBLISHED: None,
}


class Sentiment(str, Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


class InvalidTransitionError(ValueError):
    """Raised when an item is moved to a status it cannot reach from its current one."""

    def __init__(self, item_id: str, current: ProcessingStatus, target: ProcessingStatus):
        self.item_id = item_id
        self.current = current
        self.target = target
        super().__init__(
            f"Item {item_id}: cannot move from {current.value} to {target.value}"
        )


def can_transition(current: ProcessingStatus, target: ProcessingStatus) -> bool:
    return ALLOWED_TRANSITIONS.get(current) == target


class Item(BaseModel):
    """
    Canonical representation of a feed item moving through the pipeline.
    Field names follow the upstream feed payload so posts validate directly.
    """
    id: str
    title: str = ""
    selftext: str = ""
    author: str = ""
    subreddit: str = ""
    url: str = ""
    permalink: str = ""
    score: int = 0
    num_comments: int = 0
    upvote_ratio: float = 0.5
    created_utc: float = 0.0
    thumbnail: str = ""
    domain: str = ""
    is_video: bool = False
    over_18: bool = False
    fetched_at: Optional[int] = None

    processing_status: ProcessingStatus = ProcessingStatus.RAW
    sentiment: Optional[Sentiment] = None
    categories: List[str] = Field(default_factory=list)
    quality_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    engagement_score: float = Field(default=0.0, ge=0.0, le=1000.0)
    priority_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    scheduled_at: Optional[int] = None
    published_at: Optional[int] = None

    @model_validator(mode="before")
    @classmethod
    def _coerce_nulls(cls, data: Any) -> Any:
        # Upstream posts carry explicit nulls for missing text fields.
        if isinstance(data, dict):
            data = {k: v for k, v in data.items() if v is not None}
        return data

    @model_validator(mode="after")
    def _check_timestamps(self) -> "Item":
        if self.scheduled_at is not None and self.priority_score is None:
            raise ValueError("scheduled item must have a priority_score")
        if self.published_at is not None and self.scheduled_at is None:
            raise ValueError("published item must have been scheduled")
        return self

    @property
    def primary_category(self) -> str:
        return self.categories[0] if self.categories else "general"

    def advance(self, target: ProcessingStatus, **changes: Any) -> "Item":
        """
        Return a copy moved to the next status with the given field changes.

        Raises:
            InvalidTransitionError: if target is not the next status
            ValueError: if the timestamp invariants would be broken
        """
        if not can_transition(self.processing_status, target):
            raise InvalidTransitionError(self.id, self.processing_status, target)

        # Validate the result so field bounds hold after every transition
        updated = type(self).model_validate(
            {**self.model_dump(), **changes, "processing_status": target}
        )

        if target == ProcessingStatus.SCHEDULED:
            if updated.priority_score is None or updated.scheduled_at is None:
                raise ValueError(f"Item {self.id}: scheduling requires priority_score and scheduled_at")
        if target == ProcessingStatus.PUBLISHED and updated.published_at is None:
            raise ValueError(f"Item {self.id}: publishing requires published_at")

        return updated


@dataclass(frozen=True)
class PublishedEvent:
    """
    What delivery channels receive for each published item.
    """
    item: Item
    added_at: int
    is_new: bool = True


@dataclass
class StageHealth:
    """
    Last known health of one pipeline stage.
    """
    stage: str
    queue_depth: int
    is_healthy: bool
    last_error: Optional[str] = None
    updated_at: int = 0


@dataclass
class PipelineStats:
    total_items: int = 0
    raw_items: int = 0
    enriched_items: int = 0
    scored_items: int = 0
    scheduled_items: int = 0
    published_items: int = 0
    last_update: int = 0
