import logging
from typing import Iterable, List, Set

from core.entities import Item

logger = logging.getLogger(__name__)


def passes_content_mode(item: Item, content_mode: str) -> bool:
    """Safe mode drops adult items; unrestricted keeps everything."""
    if content_mode == "safe":
        return not item.over_18
    return True


def filter_new_items(
    items: Iterable[Item],
    *,
    known_ids: Set[str],
    content_mode: str,
) -> List[Item]:
    """
    Drop items already known to the pipeline, repeated within the batch,
    or outside the configured content mode.

    Returns:
        List of items that may enter the working set
    """
    seen = set(known_ids)
    fresh: List[Item] = []
    total = 0

    for item in items:
        total += 1
        if item.id in seen:
            logger.debug(f"Duplicate item: {item.title[:30]}")
            continue

        if not passes_content_mode(item, content_mode):
            continue

        seen.add(item.id)
        fresh.append(item)

    logger.info(f"Prefilter: {total} -> {len(fresh)} items")
    return fresh
