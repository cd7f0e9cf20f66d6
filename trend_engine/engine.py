"""
TrendEngine

組合 Vector Index、Content Catalog、Trend Store、User History、Aggregate Cache、
Refresh Orchestrator 與 Recommender，並提供 request worker pool 與持久化。
"""

from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
import logging

from trend_engine.config import EngineConfig
from trend_engine.errors import RecomputeFailed
from trend_engine.index.hnsw import HNSWIndex
from trend_engine.models import (
    ActivityEvent, AggregateSnapshot, ContentItem, LearningMode, RecommendationResult, SignalRecord, TopicTrend
)
from trend_engine.processing.aggregates import (
    calculate_topic_health, calculate_trend_overview, calculate_user_analytics
)
from trend_engine.recommender import Recommender
from trend_engine.refresh.orchestrator import RefreshJob, RefreshOrchestrator
from trend_engine.storage.file_store import FileStore
from trend_engine.storage.pg_store import PostgresStore
from trend_engine.stores.content_catalog import ContentCatalog
from trend_engine.stores.snapshot_cache import SnapshotCache
from trend_engine.stores.trend_store import TrendStore
from trend_engine.stores.user_history import UserHistoryStore
from trend_engine.utils.time import utcnow

logger = logging.getLogger(__name__)

TREND_OVERVIEW_KEY = "trends:overview"
TREND_RECOMPUTE_JOB = "recompute:trends"


def user_key(user_id: str) -> str:
    return f"user:{user_id}"


def topic_key(topic: str) -> str:
    return f"topic:{topic.strip().lower()}"


def initialize_storage(cfg: EngineConfig) -> Optional[object]:
    """初始化儲存後端（fail fast，不 fallback）"""
    if cfg.storage.mode == "postgres":
        dsn = cfg.get_postgres_dsn()
        if not dsn:
            raise ValueError("Postgres mode requires storage.postgres_dsn_env to name a set environment variable")

        logger.info("Initializing Postgres storage...")
        return PostgresStore(dsn, auto_init_schema=True)

    elif cfg.storage.mode == "file":
        logger.info("Using file storage backend")
        return FileStore(cfg.storage.base_dir)

    elif cfg.storage.mode == "none":
        return None

    else:
        raise ValueError(f"Unsupported storage mode: {cfg.storage.mode}")


class TrendEngine:
    """
    Trend-aware recommendation & analytics engine

    Usage:
        engine = TrendEngine(EngineConfig.from_yaml("config.yaml"))
        engine.publish_content(item)
        engine.record_signal("llm-agents", "popularity", 500)
        engine.recompute_all()
        result = engine.recommend("u1", "discovery", 5)
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], datetime] = utcnow,
        storage: Optional[object] = None,
        auto_schedule: bool = True
    ):
        """
        Args:
            config: Engine 設定
            clock: 時間來源 (測試時注入)
            storage: FileStore / PostgresStore (None = 不持久化)
            auto_schedule: 新使用者 / topic 出現時自動排程對應的 aggregate refresh
        """
        self.config = config or EngineConfig()
        self.clock = clock
        self.storage = storage
        self.auto_schedule = auto_schedule

        self.index = HNSWIndex.from_config(self.config.index)
        self.catalog = ContentCatalog(self.index, clock)
        self.trends = TrendStore(self.config.trends, clock)
        self.history = UserHistoryStore(self.catalog.get, self.config.history.max_events_per_user)
        self.cache = SnapshotCache(clock)
        self.orchestrator = RefreshOrchestrator(self.cache, self.config.refresh, clock)
        self.recommender = Recommender(self.catalog, self.trends, self.history, self.config.scoring, clock)

        self.orchestrator.register_computer("user_analytics", self._compute_user_analytics)
        self.orchestrator.register_computer("topic_health", self._compute_topic_health)
        self.orchestrator.register_computer("trend_overview", self._compute_trend_overview)

        self._request_pool: Optional[ThreadPoolExecutor] = None
        self._recompute_pool: Optional[ThreadPoolExecutor] = None

    @classmethod
    def from_config(cls, config: EngineConfig, **kwargs) -> "TrendEngine":
        """依設定建立 engine 與儲存後端"""
        return cls(config, storage=initialize_storage(config), **kwargs)

    # ------------------------------------------------------------------
    # Content
    # ------------------------------------------------------------------

    def publish_content(self, item: ContentItem) -> ContentItem:
        return self.catalog.publish(item)

    def publish_many(self, items: Iterable[ContentItem]) -> int:
        return self.catalog.publish_many(items)

    def retire_content(self, content_id: str) -> bool:
        return self.catalog.retire(content_id)

    def get_content(self, content_id: str) -> Optional[ContentItem]:
        return self.catalog.get(content_id)

    # ------------------------------------------------------------------
    # Trends
    # ------------------------------------------------------------------

    def _maybe_schedule_topic(self, topic: str) -> None:
        if self.auto_schedule:
            key = topic_key(topic)
            if self.orchestrator.get_job(key) is None:
                self.orchestrator.schedule_refresh(key)

    def record_signal(self, topic: str, signal_kind: str, delta: int) -> None:
        self.trends.record_signal(topic, signal_kind, delta)
        self._maybe_schedule_topic(topic)

    def ingest_signals(self, records: Iterable[SignalRecord]) -> Tuple[int, int]:
        records = list(records)
        accepted, rejected = self.trends.ingest_batch(records)
        for topic in {r.topic for r in records} & set(self.trends.topics()):
            self._maybe_schedule_topic(topic)
        return accepted, rejected

    def recompute_topic(self, topic: str) -> TopicTrend:
        return self.trends.recompute(topic)

    def recompute_all(self, topics: Optional[Iterable[str]] = None) -> Tuple[Dict[str, TopicTrend], Dict[str, RecomputeFailed]]:
        return self.trends.recompute_all(topics, executor=self._recompute_pool)

    def get_topic_trend(self, topic: str) -> Optional[TopicTrend]:
        return self.trends.get(topic)

    def trending(self, min_momentum: float = 6.0, limit: int = 20) -> List[TopicTrend]:
        return self.trends.trending(min_momentum, limit)

    def _recompute_job(self) -> None:
        _, failures = self.recompute_all()
        if failures:
            first = failures[sorted(failures)[0]]
            raise RecomputeFailed(f"{len(failures)} topics ({', '.join(sorted(failures))})", first.cause)

    def schedule_trend_recompute(self, cadence: Optional[timedelta] = None) -> RefreshJob:
        """以 Trend cadence 週期性重算所有 topic"""
        return self.orchestrator.schedule_task(
            TREND_RECOMPUTE_JOB, self._recompute_job, cadence or self.config.trends.cadence
        )

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def _maybe_schedule_user(self, user_id: str) -> None:
        if self.auto_schedule:
            key = user_key(user_id)
            if self.orchestrator.get_job(key) is None:
                self.orchestrator.schedule_refresh(key)

    def set_profile(
        self,
        user_id: str,
        preferred_tags: Iterable[str] = (),
        exploration_modes: Iterable[LearningMode] = ()
    ) -> None:
        self.history.set_profile(user_id, preferred_tags, exploration_modes)

    def record_event(self, event: ActivityEvent) -> bool:
        applied = self.history.record_event(event)
        if applied:
            self._maybe_schedule_user(event.user_id)
        return applied

    def record_events(self, events: Iterable[ActivityEvent]) -> int:
        return sum(1 for event in events if self.record_event(event))

    def get_profile(self, user_id: str):
        return self.history.get_profile(user_id)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def recommend(
        self,
        user_id: str,
        mode: LearningMode,
        k: int,
        deadline_ms: Optional[int] = None
    ) -> RecommendationResult:
        return self.recommender.recommend(user_id, mode, k, deadline_ms)

    def submit_recommend(
        self,
        user_id: str,
        mode: LearningMode,
        k: int,
        deadline_ms: Optional[int] = None
    ) -> "Future[RecommendationResult]":
        """在 request worker pool 上執行 recommend"""
        if self._request_pool is None:
            self._request_pool = ThreadPoolExecutor(
                max_workers=self.config.workers.request_workers,
                thread_name_prefix="request"
            )
        return self._request_pool.submit(self.recommend, user_id, mode, k, deadline_ms)

    def get_snapshot(self, key: str) -> Optional[AggregateSnapshot]:
        """最後一個有效 snapshot；從不等待重算"""
        return self.cache.get(key)

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    def schedule_refresh(self, key: str, cadence: Optional[timedelta] = None) -> RefreshJob:
        return self.orchestrator.schedule_refresh(key, cadence)

    def force_refresh(self, key: str) -> AggregateSnapshot:
        return self.orchestrator.force_refresh(key)

    def tick(self, now: Optional[datetime] = None) -> List[str]:
        return self.orchestrator.tick(now)

    def _compute_user_analytics(self, key: str) -> Dict[str, Any]:
        user_id = key.partition(":")[2]
        return calculate_user_analytics(
            self.history.get_profile(user_id),
            self.history.events_for(user_id),
            self.catalog.get,
            self.clock()
        )

    def _compute_topic_health(self, key: str) -> Dict[str, Any]:
        topic = key.partition(":")[2]
        completions = {
            user_id: self.history.get_profile(user_id).completed_items
            for user_id in self.history.users()
        }
        return calculate_topic_health(
            topic,
            self.trends.get(topic),
            self.catalog.all_items(),
            completions,
            self.clock()
        )

    def _compute_trend_overview(self, key: str) -> Dict[str, Any]:
        return calculate_trend_overview(self.trends.all_trends(), self.clock())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """
        啟動背景 workers 與 refresh 排程

        Trend 重算與 trends:overview 由 engine 自行排程 (已排程時保留原本的 cadence)。
        """
        if self._recompute_pool is None:
            self._recompute_pool = ThreadPoolExecutor(
                max_workers=self.config.refresh.background_workers,
                thread_name_prefix="recompute"
            )
        if self.orchestrator.get_job(TREND_RECOMPUTE_JOB) is None:
            self.schedule_trend_recompute()
        if self.orchestrator.get_job(TREND_OVERVIEW_KEY) is None:
            self.schedule_refresh(TREND_OVERVIEW_KEY)
        self.orchestrator.start()

    def stop(self) -> None:
        self.orchestrator.stop()
        for pool in (self._recompute_pool, self._request_pool):
            if pool is not None:
                pool.shutdown(wait=True)
        self._recompute_pool = None
        self._request_pool = None

    def close(self) -> None:
        self.stop()
        if self.storage is not None and hasattr(self.storage, 'close'):
            self.storage.close()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def persist(self) -> bool:
        """
        寫入 content、topic signal state、trends 與 snapshots

        Returns:
            False 表示沒有設定儲存後端
        """
        if self.storage is None:
            logger.warning("No storage backend configured, skipping persist")
            return False

        states, trends = self.trends.export_state()
        self.storage.save_content(self.catalog.all_items())
        self.storage.save_topic_states(states)
        self.storage.save_trends(trends)
        self.storage.save_snapshots(self.cache.export())
        logger.info(f"Persisted {len(self.catalog)} content items, {len(states)} topics, " +
                    f"{len(self.cache.keys())} snapshots")
        return True

    def restore(self) -> bool:
        """
        從儲存後端載入狀態；Vector Index 由 content embeddings 重建

        Returns:
            False 表示沒有設定儲存後端
        """
        if self.storage is None:
            logger.warning("No storage backend configured, skipping restore")
            return False

        items = self.storage.read_content()
        self.catalog.publish_many(items)
        self.trends.load_state(self.storage.read_topic_states(), self.storage.read_trends())
        self.cache.load(self.storage.read_snapshots())
        logger.info(f"Restored {len(items)} content items (index size={len(self.index)})")
        return True
