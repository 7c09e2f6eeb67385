"""
Strategies for choosing which subreddit and sort mode to ingest next
"""
import itertools
import random
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional, Sequence, Tuple


class SourceSelector(ABC):
    @abstractmethod
    def choose(self, subreddits: Sequence[str], sort_modes: Sequence[str]) -> Tuple[str, str]:
        raise NotImplementedError


class RandomSelector(SourceSelector):
    """
    Uniform random pick of subreddit and sort mode, for feed variety.
    """

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    def choose(self, subreddits: Sequence[str], sort_modes: Sequence[str]) -> Tuple[str, str]:
        return self.rng.choice(list(subreddits)), self.rng.choice(list(sort_modes))


class SequenceSelector(SourceSelector):
    """
    Replays a fixed list of (subreddit, sort) pairs in a loop. The arguments
    to choose() are ignored.
    """

    def __init__(self, pairs: Iterable[Tuple[str, str]]):
        self.pairs: List[Tuple[str, str]] = list(pairs)
        if not self.pairs:
            raise ValueError("SequenceSelector needs at least one pair")
        self._cycle = itertools.cycle(self.pairs)

    def choose(self, subreddits: Sequence[str], sort_modes: Sequence[str]) -> Tuple[str, str]:
        return next(self._cycle)
