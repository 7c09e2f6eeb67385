"""
In-memory item collections owned by the orchestrator.
"""
import logging
from typing import Dict, Iterable, List, Optional, Set

from core.entities import Item, ProcessingStatus, can_transition

logger = logging.getLogger(__name__)


class WorkingSet:
    """
    Not-yet-published items keyed by id, oldest first.

    Callers only ever get copies; changes go back in through replace(),
    which enforces the status transition table.
    """

    def __init__(self, max_items: int = 200):
        self.max_items = max_items
        self._items: Dict[str, Item] = {}

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._items

    def ids(self) -> Set[str]:
        return set(self._items)

    def get(self, item_id: str) -> Optional[Item]:
        item = self._items.get(item_id)
        return item.model_copy(deep=True) if item else None

    def with_status(self, status: ProcessingStatus) -> List[Item]:
        return [
            item.model_copy(deep=True)
            for item in self._items.values()
            if item.processing_status == status
        ]

    def count(self, status: ProcessingStatus) -> int:
        return sum(1 for item in self._items.values() if item.processing_status == status)

    def add(self, items: Iterable[Item]) -> List[Item]:
        """
        Append new raw items, then trim the oldest past max_items.

        Returns:
            Items evicted by the cap
        """
        added = 0
        for item in items:
            if item.id in self._items:
                continue
            if item.processing_status != ProcessingStatus.RAW:
                raise ValueError(f"Item {item.id} must enter the pipeline as raw")
            self._items[item.id] = item.model_copy(deep=True)
            added += 1

        evicted: List[Item] = []
        while len(self._items) > self.max_items:
            oldest_id = next(iter(self._items))
            evicted.append(self._items.pop(oldest_id))

        if evicted:
            logger.info(f"Working set full, dropped {len(evicted)} oldest items")
        logger.debug(f"Added {added} raw items, working set size {len(self._items)}")
        return evicted

    def replace(self, updated: Iterable[Item]) -> List[Item]:
        """
        Store advanced copies of items by id.

        Only single forward steps are accepted. Unknown ids and disallowed
        transitions are skipped with a warning.

        Returns:
            The items that were applied
        """
        applied: List[Item] = []
        for item in updated:
            current = self._items.get(item.id)
            if current is None:
                logger.warning(f"Ignoring update for unknown item {item.id}")
                continue
            if current.processing_status == item.processing_status:
                continue
            if not can_transition(current.processing_status, item.processing_status):
                logger.warning(
                    f"Rejected transition for {item.id}: "
                    f"{current.processing_status.value} -> {item.processing_status.value}"
                )
                continue
            self._items[item.id] = item.model_copy(deep=True)
            applied.append(item)
        return applied

    def remove(self, item_id: str) -> Optional[Item]:
        return self._items.pop(item_id, None)


class PublishedBuffer:
    """
    Recently published items, kept only for diversity checks and dedup.
    """

    def __init__(self, retention_minutes: int = 60):
        self.retention_ms = retention_minutes * 60 * 1000
        self._items: Dict[str, Item] = {}

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._items

    def ids(self) -> Set[str]:
        return set(self._items)

    def add(self, item: Item, now_ms: int) -> None:
        if item.processing_status != ProcessingStatus.PUBLISHED:
            raise ValueError(f"Item {item.id} is not published")
        self._items[item.id] = item.model_copy(deep=True)
        self.prune(now_ms)

    def prune(self, now_ms: int) -> int:
        cutoff = now_ms - self.retention_ms
        stale = [item_id for item_id, item in self._items.items() if (item.published_at or 0) <= cutoff]
        for item_id in stale:
            del self._items[item_id]
        return len(stale)

    def items(self) -> List[Item]:
        return [item.model_copy(deep=True) for item in self._items.values()]
