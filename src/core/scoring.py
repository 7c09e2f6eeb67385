"""
Numeric helpers shared by the enrichment and scoring stages
"""
import math

LN2 = 0.693
ENGAGEMENT_DECAY_RATE = 0.1
MAX_ENGAGEMENT = 1000.0


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def age_hours(created_utc: float, now: float) -> float:
    """
    Hours elapsed since created_utc (epoch seconds). Items stamped in the
    future count as brand new.
    """
    return max(0.0, (now - created_utc) / 3600.0)


def engagement_score(score: int, num_comments: int, hours: float) -> float:
    """
    Age-decayed engagement: (score + 2 * comments) * e^(-0.1 * hours), capped at 1000.
    """
    raw = max(0.0, float(score) + 2.0 * float(num_comments))
    decay = math.exp(-ENGAGEMENT_DECAY_RATE * hours)
    return min(raw * decay, MAX_ENGAGEMENT)


def recency_score(hours: float, half_life_hours: float) -> float:
    """
    Half-life exponential decay, 1.0 for a brand new item and 0.5 at one half-life.
    """
    if half_life_hours <= 0:
        return 0.0
    return math.exp(-LN2 * hours / half_life_hours)


def normalize_engagement(value: float) -> float:
    return min(max(value, 0.0) / MAX_ENGAGEMENT, 1.0)
