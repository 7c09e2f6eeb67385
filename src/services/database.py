import aiosqlite
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, List, Optional, Tuple
import logging

logger = logging.getLogger(__name__)


class Database:
    def __init__(self, path: str):
        self.path = path

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[aiosqlite.Connection]:
        conn = await aiosqlite.connect(self.path)
        await conn.execute("PRAGMA journal_mode=WAL;")
        await conn.execute("PRAGMA foreign_keys=ON;")
        try:
            yield conn
        finally:
            await conn.close()

    async def execute(self, query: str, params: tuple = ()) -> None:
        async with self.connect() as conn:
            await conn.execute(query, params)
            await conn.commit()

    async def fetchone(self, query: str, params: tuple = ()):
        async with self.connect() as conn:
            cursor = await conn.execute(query, params)
            return await cursor.fetchone()

    async def fetchall(self, query: str, params: tuple = ()):
        async with self.connect() as conn:
            cursor = await conn.execute(query, params)
            return await cursor.fetchall()

    async def init_tables(self) -> None:
        """Initialize tables for published items, stage metrics, events and health."""
        async with self.connect() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS published_items (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    author TEXT,
                    subreddit TEXT NOT NULL,
                    url TEXT,
                    permalink TEXT,
                    score INTEGER,
                    num_comments INTEGER,
                    created_utc REAL,
                    priority_score REAL,
                    attributes_json TEXT,
                    published_at INTEGER NOT NULL,
                    recorded_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS stage_metrics (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    stage TEXT NOT NULL,
                    item_id TEXT,
                    duration_ms REAL,
                    metrics_json TEXT,
                    recorded_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS system_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    event_type TEXT NOT NULL,
                    severity TEXT NOT NULL,
                    component TEXT NOT NULL,
                    message TEXT NOT NULL,
                    details_json TEXT,
                    recorded_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS pipeline_health (
                    stage TEXT PRIMARY KEY,
                    queue_depth INTEGER NOT NULL,
                    is_healthy INTEGER NOT NULL,
                    last_error TEXT,
                    updated_at INTEGER NOT NULL
                )
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_published_items_published_at ON published_items(published_at)
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_stage_metrics_stage ON stage_metrics(stage)
            """)
            await conn.commit()
            logger.info("Database tables initialized")

    async def add_published_item(
        self,
        *,
        item_id: str,
        title: str,
        author: str,
        subreddit: str,
        url: str,
        permalink: str,
        score: int,
        num_comments: int,
        created_utc: float,
        priority_score: Optional[float],
        attributes_json: str,
        published_at: int,
    ) -> None:
        await self.execute(
            """
            INSERT OR REPLACE INTO published_items
            (id, title, author, subreddit, url, permalink, score, num_comments,
             created_utc, priority_score, attributes_json, published_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (item_id, title, author, subreddit, url, permalink, score, num_comments,
             created_utc, priority_score, attributes_json, published_at)
        )

    async def add_stage_metric(
        self,
        stage: str,
        item_id: Optional[str],
        duration_ms: Optional[float],
        metrics_json: str,
    ) -> int:
        async with self.connect() as conn:
            cursor = await conn.execute(
                "INSERT INTO stage_metrics (stage, item_id, duration_ms, metrics_json) VALUES (?, ?, ?, ?)",
                (stage, item_id, duration_ms, metrics_json)
            )
            await conn.commit()
            return cursor.lastrowid

    async def add_system_event(
        self,
        event_type: str,
        severity: str,
        component: str,
        message: str,
        details_json: str,
    ) -> int:
        async with self.connect() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO system_events (event_type, severity, component, message, details_json)
                VALUES (?, ?, ?, ?, ?)
                """,
                (event_type, severity, component, message, details_json)
            )
            await conn.commit()
            return cursor.lastrowid

    async def upsert_stage_health(
        self,
        stage: str,
        queue_depth: int,
        is_healthy: bool,
        last_error: Optional[str],
        updated_at: int,
    ) -> None:
        await self.execute(
            """
            INSERT OR REPLACE INTO pipeline_health (stage, queue_depth, is_healthy, last_error, updated_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (stage, queue_depth, int(is_healthy), last_error, updated_at)
        )

    async def get_recent_published(self, since_ms: int) -> List[Tuple[str, str, str, Optional[float], int]]:
        """Get (id, title, subreddit, priority_score, published_at) published since the given epoch ms."""
        return await self.fetchall(
            """SELECT id, title, subreddit, priority_score, published_at
               FROM published_items
               WHERE published_at >= ?
               ORDER BY published_at DESC""",
            (since_ms,)
        )

    async def cleanup_old_records(self, days: int = 30) -> int:
        """Remove metrics and events older than specified days."""
        cutoff = (datetime.now(timezone.utc) - timedelta(days=days)).strftime("%Y-%m-%d %H:%M:%S")
        async with self.connect() as conn:
            metrics = await conn.execute(
                "DELETE FROM stage_metrics WHERE recorded_at < ?", (cutoff,)
            )
            events = await conn.execute(
                "DELETE FROM system_events WHERE recorded_at < ?", (cutoff,)
            )
            await conn.commit()
            return metrics.rowcount + events.rowcount
