"""
Loads and handles config from config.yml
Deployment overrides (FEED_URL, DATABASE_PATH, LOG_LEVEL) are loaded from .env
"""
import logging
import os
from typing import Any, Dict, List, Literal, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

DEFAULT_SUBREDDIT_WEIGHTS: Dict[str, float] = {
    "worldnews": 1.2,
    "news": 1.15,
    "technology": 1.1,
    "science": 1.1,
    "programming": 1.05,
    "futurology": 1.0,
    "todayilearned": 0.95,
    "gaming": 0.9,
    "movies": 0.9,
    "music": 0.85,
    "askreddit": 0.85,
    "pics": 0.8,
    "funny": 0.75,
}


class PipelineConfig(BaseModel):
    """Working-set and loop settings for the orchestrator."""
    subreddits: List[str] = ["technology", "worldnews", "science"]
    content_mode: Literal["safe", "unrestricted"] = "safe"
    max_items_in_pipeline: int = Field(default=200, gt=0)
    publish_interval_ms: int = Field(default=3000, gt=0)
    ingestion_interval_ms: int = Field(default=30000, gt=0)
    published_retention_minutes: int = Field(default=60, gt=0)
    degraded_after_errors: int = Field(default=3, ge=1)

    @field_validator("subreddits")
    @classmethod
    def _non_empty(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("at least one subreddit is required")
        return value


class FeedConfig(BaseModel):
    """Upstream feed endpoint and retry budget."""
    url: str = "http://localhost:3000/api/reddit"
    limit: int = 10
    timeout_seconds: float = 15.0
    max_retries: int = Field(default=2, ge=0)
    sort_modes: List[str] = ["new", "rising", "hot"]
    user_agent: str = "livefeed-pipeline/1.0"


class WeightsConfig(BaseModel):
    engagement: float = 0.4
    recency: float = 0.3
    quality: float = 0.3


class ScoringConfig(BaseModel):
    half_life_hours: float = Field(default=6.0, gt=0)
    weights: WeightsConfig = WeightsConfig()
    subreddit_weights: Dict[str, float] = Field(
        default_factory=lambda: dict(DEFAULT_SUBREDDIT_WEIGHTS)
    )


class SchedulingConfig(BaseModel):
    peak_hours_utc: List[int] = [13, 14, 15, 16, 17, 18, 19, 20, 21, 22]
    max_posts_per_subreddit_per_hour: int = Field(default=3, ge=1)
    min_post_interval_minutes: float = Field(default=3.0, gt=0)
    max_post_interval_minutes: float = Field(default=8.0, gt=0)
    batch_size: int = Field(default=10, gt=0)
    # First items of every batch go out right away so the feed shows activity.
    immediate_slots: int = Field(default=3, ge=0)
    immediate_spacing_seconds: float = 2.0

    @model_validator(mode="after")
    def _interval_order(self) -> "SchedulingConfig":
        if self.max_post_interval_minutes < self.min_post_interval_minutes:
            raise ValueError("max_post_interval_minutes must be >= min_post_interval_minutes")
        return self


class Config(BaseModel):
    # Core
    DATABASE_PATH: str = "data/livefeed.db"
    OUTPUT_DIR: str = "output"
    LOG_LEVEL: str = "INFO"

    pipeline: PipelineConfig = PipelineConfig()
    feed: FeedConfig = FeedConfig()
    scoring: ScoringConfig = ScoringConfig()
    scheduling: SchedulingConfig = SchedulingConfig()


def _get_config_path() -> str:
    """Get the path to config.yml, handling different working directories."""
    # Try relative path first
    if os.path.exists('resources/config.yml'):
        return 'resources/config.yml'

    # Try from project root
    project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    config_path = os.path.join(project_root, 'resources', 'config.yml')
    if os.path.exists(config_path):
        return config_path

    raise FileNotFoundError("Cannot find resources/config.yml")


def parse_config(data: Dict[str, Any]) -> Config:
    """Build a Config from already-parsed YAML data, applying environment overrides."""
    data = dict(data or {})

    feed = dict(data.get("feed") or {})
    if os.getenv("FEED_URL"):
        feed["url"] = os.getenv("FEED_URL")

    return Config(
        DATABASE_PATH=os.getenv("DATABASE_PATH") or data.get("DATABASE_PATH", "data/livefeed.db"),
        OUTPUT_DIR=data.get("OUTPUT_DIR", "output"),
        LOG_LEVEL=(os.getenv("LOG_LEVEL") or data.get("LOG_LEVEL", "INFO")).upper(),
        pipeline=PipelineConfig(**(data.get("pipeline") or {})),
        feed=FeedConfig(**feed),
        scoring=ScoringConfig(**(data.get("scoring") or {})),
        scheduling=SchedulingConfig(**(data.get("scheduling") or {})),
    )


def load_config(path: Optional[str] = None) -> Config:
    """Load configuration from config.yml and overrides from .env."""
    load_dotenv()

    config_path = path or _get_config_path()

    with open(config_path, 'r') as file:
        config = yaml.safe_load(file) or {}

    logger.info(f"Loaded configuration from {config_path}")
    return parse_config(config)
