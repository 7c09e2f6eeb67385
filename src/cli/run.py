import argparse
import asyncio
import logging
import time
from typing import List, Optional

from core.entities import PublishedEvent
from delivery.base import CallbackDelivery, DeliveryChannel
from delivery.file_delivery import FileDelivery
from services.config import load_config
from services.database import Database
from services.logging import setup_logging
from services.pipeline_store import PipelineStore
from workflows.pipeline_factory import create_orchestrator_from_config


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the live feed pipeline")
    parser.add_argument("--config", default=None, help="Path to config.yml")
    parser.add_argument(
        "--duration",
        type=float,
        default=None,
        help="Stop after this many seconds (runs until interrupted by default)",
    )
    return parser.parse_args(argv)


async def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    start_time = time.perf_counter()

    setup_logging()
    logger = logging.getLogger(__name__)

    config = load_config(args.config)
    setup_logging(config.LOG_LEVEL)

    logger.info("Starting live feed pipeline run")

    # ----------------------------
    # Initialize shared services
    # ----------------------------
    db = Database(config.DATABASE_PATH)
    store = PipelineStore(db)
    await store.initialize()
    await store.cleanup(days=30)

    # ----------------------------
    # Initialize delivery channels
    # ----------------------------
    def log_published(event: PublishedEvent) -> None:
        item = event.item
        logger.info(f"Published r/{item.subreddit}: {item.title} ({item.url})")

    deliveries: List[DeliveryChannel] = [
        FileDelivery(config.OUTPUT_DIR),
        CallbackDelivery(log_published),
    ]

    def log_status(message: Optional[str]) -> None:
        if message:
            logger.warning(f"Feed degraded: {message}")
        else:
            logger.info("Feed recovered")

    orchestrator = create_orchestrator_from_config(
        config,
        store=store,
        deliveries=deliveries,
        on_status=log_status,
    )

    # ----------------------------
    # Run until duration elapses or interrupted
    # ----------------------------
    await orchestrator.start()
    try:
        if args.duration is not None:
            await asyncio.sleep(args.duration)
        else:
            await asyncio.Event().wait()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("Interrupted, shutting down")
    finally:
        await orchestrator.stop()

    stats = orchestrator.stats()
    logger.info(
        f"Live feed run completed: {orchestrator.published_total} published, "
        f"{stats.total_items} items tracked"
    )
    end_time = time.perf_counter()
    logger.info(f"Total time: {end_time - start_time}")


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
