"""
Postgres storage backend with automatic schema initialization

使用 psycopg2-binary，支援 transaction handling 與 bulk upsert。
"""

from typing import Any, List, Sequence, Tuple
import logging
import psycopg2
from psycopg2.extras import execute_values
import json

from trend_engine.models import AggregateSnapshot, ContentItem, TopicSignalState, TopicTrend

logger = logging.getLogger(__name__)

SCHEMA_DDL = """
CREATE TABLE IF NOT EXISTS content_items (
    content_id TEXT PRIMARY KEY,
    title TEXT,
    mode TEXT NOT NULL,
    retired BOOLEAN NOT NULL DEFAULT FALSE,
    published_at TIMESTAMPTZ,
    updated_at TIMESTAMPTZ,
    json_payload JSONB NOT NULL
);

CREATE TABLE IF NOT EXISTS topic_signal_states (
    topic TEXT PRIMARY KEY,
    first_seen_at TIMESTAMPTZ,
    last_signal_at TIMESTAMPTZ,
    json_payload JSONB NOT NULL
);

CREATE TABLE IF NOT EXISTS topic_trends (
    topic TEXT PRIMARY KEY,
    momentum_score FLOAT NOT NULL,
    status TEXT NOT NULL,
    active BOOLEAN NOT NULL,
    priority_score FLOAT NOT NULL,
    recomputed_at TIMESTAMPTZ NOT NULL,
    json_payload JSONB NOT NULL
);

CREATE TABLE IF NOT EXISTS aggregate_snapshots (
    key TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    version INT NOT NULL,
    computed_at TIMESTAMPTZ NOT NULL,
    json_payload JSONB NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_topic_trends_momentum ON topic_trends(momentum_score DESC);
CREATE INDEX IF NOT EXISTS idx_aggregate_snapshots_kind ON aggregate_snapshots(kind);
"""


class PostgresStore:
    """Postgres 儲存後端（不 fallback，fail fast）"""

    def __init__(self, dsn: str, auto_init_schema: bool = True):
        """
        初始化 PostgresStore

        Args:
            dsn: Postgres connection string
            auto_init_schema: 是否自動建立 schema
        """
        self.dsn = dsn
        self.conn = None
        self._connect()

        if auto_init_schema:
            self.init_schema()

    def _connect(self):
        """建立資料庫連線（連線失敗直接拋出異常，不 fallback）"""
        try:
            self.conn = psycopg2.connect(self.dsn)
            self.conn.autocommit = False
            logger.info("✓ Connected to Postgres")
        except Exception as e:
            logger.error(f"✗ Failed to connect to Postgres: {e}")
            raise RuntimeError(f"Postgres connection failed (no fallback): {e}")

    def init_schema(self):
        """初始化資料庫 schema（若表不存在則建立）"""
        try:
            with self.conn.cursor() as cur:
                cur.execute(SCHEMA_DDL)
            self.conn.commit()
            logger.info("✓ Schema initialized successfully")
        except Exception as e:
            self.conn.rollback()
            logger.error(f"Failed to initialize schema: {e}")
            raise

    def _bulk_upsert(self, sql: str, values: Sequence[Tuple[Any, ...]], label: str) -> None:
        if not values:
            return

        try:
            with self.conn.cursor() as cur:
                execute_values(cur, sql, values)
            self.conn.commit()
            logger.info(f"✓ Saved {len(values)} {label} (bulk upsert)")
        except Exception as e:
            self.conn.rollback()
            logger.error(f"Failed to save {label}: {e}")
            raise

    def _fetch_payloads(self, table: str, order_by: str) -> List[dict]:
        with self.conn.cursor() as cur:
            cur.execute(f"SELECT json_payload FROM {table} ORDER BY {order_by}")
            rows = cur.fetchall()

        # psycopg2 會自動解析 JSONB；文字型態時手動 decode
        return [row[0] if isinstance(row[0], dict) else json.loads(row[0]) for row in rows]

    def save_content(self, items: List[ContentItem]) -> None:
        """Bulk upsert content items"""
        sql = """
        INSERT INTO content_items (
            content_id, title, mode, retired, published_at, updated_at, json_payload
        ) VALUES %s
        ON CONFLICT (content_id) DO UPDATE SET
            title = EXCLUDED.title,
            mode = EXCLUDED.mode,
            retired = EXCLUDED.retired,
            updated_at = EXCLUDED.updated_at,
            json_payload = EXCLUDED.json_payload
        """

        values = [
            (
                item.content_id, item.title, item.mode.value, item.retired,
                item.published_at, item.updated_at,
                json.dumps(item.model_dump(mode="json"), default=str)
            )
            for item in items
        ]
        self._bulk_upsert(sql, values, "content items")

    def save_topic_states(self, states: List[TopicSignalState]) -> None:
        """Bulk upsert topic signal 狀態"""
        sql = """
        INSERT INTO topic_signal_states (topic, first_seen_at, last_signal_at, json_payload)
        VALUES %s
        ON CONFLICT (topic) DO UPDATE SET
            last_signal_at = EXCLUDED.last_signal_at,
            json_payload = EXCLUDED.json_payload
        """

        values = [
            (
                state.topic, state.first_seen_at, state.last_signal_at,
                json.dumps(state.model_dump(mode="json"), default=str)
            )
            for state in states
        ]
        self._bulk_upsert(sql, values, "topic signal states")

    def save_trends(self, trends: List[TopicTrend]) -> None:
        """Bulk upsert topic trends"""
        sql = """
        INSERT INTO topic_trends (
            topic, momentum_score, status, active, priority_score, recomputed_at, json_payload
        ) VALUES %s
        ON CONFLICT (topic) DO UPDATE SET
            momentum_score = EXCLUDED.momentum_score,
            status = EXCLUDED.status,
            active = EXCLUDED.active,
            priority_score = EXCLUDED.priority_score,
            recomputed_at = EXCLUDED.recomputed_at,
            json_payload = EXCLUDED.json_payload
        """

        values = [
            (
                trend.topic, trend.momentum_score, trend.status.value, trend.active,
                trend.priority_score, trend.recomputed_at,
                json.dumps(trend.model_dump(mode="json"), default=str)
            )
            for trend in trends
        ]
        self._bulk_upsert(sql, values, "topic trends")

    def save_snapshots(self, snapshots: List[AggregateSnapshot]) -> None:
        """Bulk upsert aggregate snapshots (只保留較新的 version)"""
        sql = """
        INSERT INTO aggregate_snapshots (key, kind, version, computed_at, json_payload)
        VALUES %s
        ON CONFLICT (key) DO UPDATE SET
            kind = EXCLUDED.kind,
            version = EXCLUDED.version,
            computed_at = EXCLUDED.computed_at,
            json_payload = EXCLUDED.json_payload
        WHERE aggregate_snapshots.version < EXCLUDED.version
        """

        values = [
            (
                snapshot.key, snapshot.kind, snapshot.version, snapshot.computed_at,
                json.dumps(snapshot.model_dump(mode="json"), default=str)
            )
            for snapshot in snapshots
        ]
        self._bulk_upsert(sql, values, "snapshots")

    def read_content(self) -> List[ContentItem]:
        return [ContentItem(**row) for row in self._fetch_payloads("content_items", "content_id")]

    def read_topic_states(self) -> List[TopicSignalState]:
        return [TopicSignalState(**row) for row in self._fetch_payloads("topic_signal_states", "topic")]

    def read_trends(self) -> List[TopicTrend]:
        return [TopicTrend(**row) for row in self._fetch_payloads("topic_trends", "topic")]

    def read_snapshots(self) -> List[AggregateSnapshot]:
        return [AggregateSnapshot(**row) for row in self._fetch_payloads("aggregate_snapshots", "key")]

    def close(self):
        """關閉連線"""
        if self.conn:
            self.conn.close()
            logger.info("Postgres connection closed")
