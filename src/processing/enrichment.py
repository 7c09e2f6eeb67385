"""
Enrichment stage: sentiment, topic categories, quality and engagement scores
"""
import logging
import time
from typing import Dict, List, Optional, Tuple

from core.entities import Item, ProcessingStatus, Sentiment
from core.scoring import age_hours, clamp, engagement_score
from workflows.base import PipelineStage, StageContext

logger = logging.getLogger(__name__)

POSITIVE_WORDS: Tuple[str, ...] = (
    "amazing", "awesome", "great", "excellent", "breakthrough", "success",
    "win", "love", "best", "incredible", "happy", "positive", "improve",
    "celebrate", "wonderful",
)

NEGATIVE_WORDS: Tuple[str, ...] = (
    "terrible", "awful", "bad", "worst", "fail", "crisis", "disaster",
    "hate", "crash", "scandal", "negative", "death", "outage", "lawsuit",
)

# Order matters: the first matching group becomes the primary category.
CATEGORY_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "technology": (
        "technology", "tech", "programming", "software", "computer", "gadget",
        "coding", "developer", "robot",
    ),
    "news": (
        "news", "worldnews", "politics", "breaking", "election", "government",
        "report",
    ),
    "entertainment": (
        "entertainment", "movie", "film", "music", "gaming", "games", "funny",
        "celebrity", "netflix",
    ),
    "education": (
        "education", "science", "learn", "explain", "history", "study",
        "research", "askscience",
    ),
}

TRUSTED_DOMAINS = frozenset({
    "reuters.com", "apnews.com", "bbc.com", "bbc.co.uk", "npr.org",
    "nytimes.com", "theguardian.com", "washingtonpost.com", "nature.com",
    "arxiv.org", "github.com", "wikipedia.org", "en.wikipedia.org",
})

EMOJI_SPAM_MARKERS = ("🔥", "💯", "🚨", "😱", "💥", "👀", "‼", "⚠️", "🤯", "💰")


def detect_sentiment(text: str) -> Sentiment:
    lowered = text.lower()
    positive = sum(1 for word in POSITIVE_WORDS if word in lowered)
    negative = sum(1 for word in NEGATIVE_WORDS if word in lowered)

    if positive > negative:
        return Sentiment.POSITIVE
    if negative > positive:
        return Sentiment.NEGATIVE
    return Sentiment.NEUTRAL


def detect_categories(subreddit: str, title: str) -> List[str]:
    haystack = f"{subreddit} {title}".lower()
    categories = [
        category
        for category, keywords in CATEGORY_KEYWORDS.items()
        if any(keyword in haystack for keyword in keywords)
    ]
    return categories or ["general"]


def _normalize_domain(domain: str) -> str:
    domain = (domain or "").lower().strip()
    return domain[4:] if domain.startswith("www.") else domain


def quality_score(item: Item) -> float:
    """
    Heuristic 0..1 quality from title shape, body length, discussion and source.
    """
    title = item.title or ""
    score = 0.5

    if 10 < len(title) < 100:
        score += 0.10
    if title[:1].isupper():
        score += 0.05
    if "URGENT" not in title and "BREAKING" not in title:
        score += 0.05
    if len(item.selftext or "") > 100:
        score += 0.10
    if item.num_comments > 5:
        score += 0.10
    if item.upvote_ratio > 0.8:
        score += 0.10
    if _normalize_domain(item.domain) in TRUSTED_DOMAINS:
        score += 0.10

    if any(marker in title for marker in EMOJI_SPAM_MARKERS):
        score -= 0.10
    if title.isupper():
        score -= 0.20

    return clamp(score)


class EnrichmentStage(PipelineStage):
    name = "enrichment"
    input_status = ProcessingStatus.RAW
    output_status = ProcessingStatus.ENRICHED

    def enrich(self, items: List[Item], now: Optional[float] = None) -> List[Item]:
        now = time.time() if now is None else now
        enriched: List[Item] = []

        for item in items:
            text = f"{item.title} {item.selftext}"
            enriched.append(
                item.advance(
                    ProcessingStatus.ENRICHED,
                    sentiment=detect_sentiment(text),
                    categories=detect_categories(item.subreddit, item.title),
                    quality_score=quality_score(item),
                    engagement_score=engagement_score(
                        item.score, item.num_comments, age_hours(item.created_utc, now)
                    ),
                )
            )

        logger.info(f"Enriched {len(enriched)} items")
        return enriched

    def run(self, items: List[Item], context: StageContext) -> List[Item]:
        return self.enrich(items, now=context.now)

    def metrics_for(self, item: Item, context: StageContext) -> dict:
        return {
            "quality_score": item.quality_score,
            "engagement_score": item.engagement_score,
            "sentiment": item.sentiment.value if item.sentiment else None,
            "categories": item.categories,
        }
