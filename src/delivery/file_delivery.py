"""
File delivery channel
"""
import json
from datetime import datetime, timezone
from pathlib import Path

from core.entities import PublishedEvent
from delivery.base import DeliveryChannel


class FileDelivery(DeliveryChannel):
    """
    Appends each published item as one JSON line to a per-day file.
    """

    name = "file"

    def __init__(self, output_dir: str = "output"):
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, added_at: int) -> Path:
        day = datetime.fromtimestamp(added_at / 1000, tz=timezone.utc).date().isoformat()
        return self.output_dir / f"published_{day}.jsonl"

    async def deliver(self, *, event: PublishedEvent) -> None:
        record = event.item.model_dump(mode="json")
        record["added_at"] = event.added_at
        record["is_new"] = event.is_new

        with self.path_for(event.added_at).open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(record) + "\n")
