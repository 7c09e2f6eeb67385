"""
Scoring stage: one priority score per item from recency, engagement,
quality and category/source bonuses
"""
import logging
import time
from typing import Dict, List, Optional

from core.entities import Item, ProcessingStatus, Sentiment
from core.scoring import age_hours, clamp, normalize_engagement, recency_score
from services.config import DEFAULT_SUBREDDIT_WEIGHTS, ScoringConfig, WeightsConfig
from workflows.base import PipelineStage, StageContext

logger = logging.getLogger(__name__)

CATEGORY_BONUSES: Dict[str, float] = {
    "technology": 0.10,
    "news": 0.15,
    "education": 0.05,
}
POSITIVE_SENTIMENT_BONUS = 0.05
DEFAULT_QUALITY = 0.5


class ScoringStage(PipelineStage):
    name = "scoring"
    input_status = ProcessingStatus.ENRICHED
    output_status = ProcessingStatus.SCORED

    def __init__(
        self,
        half_life_hours: float = 6.0,
        weights: Optional[WeightsConfig] = None,
        subreddit_weights: Optional[Dict[str, float]] = None,
    ):
        self.half_life_hours = half_life_hours
        self.weights = weights or WeightsConfig()
        table = DEFAULT_SUBREDDIT_WEIGHTS if subreddit_weights is None else subreddit_weights
        self.subreddit_weights = {name.lower(): weight for name, weight in table.items()}

    @classmethod
    def from_config(cls, config: ScoringConfig) -> "ScoringStage":
        return cls(
            half_life_hours=config.half_life_hours,
            weights=config.weights,
            subreddit_weights=config.subreddit_weights,
        )

    def recency(self, item: Item, now: float) -> float:
        return recency_score(age_hours(item.created_utc, now), self.half_life_hours)

    def bonus_multiplier(self, item: Item) -> float:
        multiplier = 1.0
        for category, bonus in CATEGORY_BONUSES.items():
            if category in item.categories:
                multiplier += bonus
        if item.sentiment == Sentiment.POSITIVE:
            multiplier += POSITIVE_SENTIMENT_BONUS
        return multiplier

    def subreddit_weight(self, subreddit: str) -> float:
        return self.subreddit_weights.get((subreddit or "").lower(), 1.0)

    def priority(self, item: Item, now: float) -> float:
        quality = item.quality_score if item.quality_score is not None else DEFAULT_QUALITY
        base = (
            normalize_engagement(item.engagement_score) * self.weights.engagement
            + self.recency(item, now) * self.weights.recency
            + quality * self.weights.quality
        )
        return clamp(base * self.bonus_multiplier(item) * self.subreddit_weight(item.subreddit))

    def score(self, items: List[Item], now: Optional[float] = None) -> List[Item]:
        """
        Score enriched items. Returned highest priority first.
        """
        now = time.time() if now is None else now
        scored = [
            item.advance(ProcessingStatus.SCORED, priority_score=self.priority(item, now))
            for item in items
        ]
        scored.sort(key=lambda item: item.priority_score, reverse=True)

        if scored:
            logger.info(
                f"Scored {len(scored)} items (top={scored[0].priority_score:.3f}, "
                f"bottom={scored[-1].priority_score:.3f})"
            )
        return scored

    def run(self, items: List[Item], context: StageContext) -> List[Item]:
        return self.score(items, now=context.now)

    def metrics_for(self, item: Item, context: StageContext) -> dict:
        return {
            "quality_score": item.quality_score,
            "engagement_score": item.engagement_score,
            "recency_score": self.recency(item, context.now),
            "priority_score": item.priority_score,
        }
