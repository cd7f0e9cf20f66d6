"""
Trend Store

保存每個 topic 的 signal 累計計數與最近一次重算的 TopicTrend。
同一 topic 的 record/recompute 由 per-topic lock 序列化；不同 topic 之間沒有共用鎖。
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple
import logging
import threading

from trend_engine.config import TrendConfig
from trend_engine.errors import MalformedSignal, RecomputeFailed
from trend_engine.models import SignalKind, SignalRecord, TopicSignalState, TopicTrend, TrendStatus
from trend_engine.processing.momentum import compute_topic_trend
from trend_engine.utils.time import utcnow, window_index

logger = logging.getLogger(__name__)


class TrendStore:
    """Topic signal counters + momentum recompute"""

    def __init__(self, config: Optional[TrendConfig] = None, clock: Callable[[], datetime] = utcnow):
        self.config = config or TrendConfig()
        self.clock = clock
        self._states: Dict[str, TopicSignalState] = {}
        self._trends: Dict[str, TopicTrend] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, topic: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(topic)
            if lock is None:
                lock = threading.Lock()
                self._locks[topic] = lock
            return lock

    def topics(self) -> List[str]:
        # copy 後再排序，record_signal 可能同時新增 topic
        return sorted(self._states.copy())

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def validate_signal(self, topic: str, signal_kind: str, delta: int) -> SignalRecord:
        """
        邊界驗證

        Raises:
            MalformedSignal: topic 空白、未知 signal_kind、delta 非整數或為負
        """
        if not isinstance(topic, str) or not topic.strip():
            raise MalformedSignal(f"Invalid topic: {topic!r}")

        try:
            kind = SignalKind(signal_kind)
        except ValueError:
            raise MalformedSignal(f"Unknown signal kind: {signal_kind!r}")

        if kind.value not in self.config.signal_weights:
            raise MalformedSignal(f"Signal kind has no configured weight: {kind.value}")

        if isinstance(delta, bool) or not isinstance(delta, int) or delta < 0:
            raise MalformedSignal(f"Signal delta must be a non-negative integer: {delta!r}")

        return SignalRecord(topic=topic, signal_kind=kind, count=delta)

    def record_signal(self, topic: str, signal_kind: str, delta: int) -> None:
        """
        累加 signal 計數 (append-only)

        Args:
            topic: Topic key
            signal_kind: popularity | adoption | mentions
            delta: 新增計數 (>= 0)
        """
        record = self.validate_signal(topic, signal_kind, delta)
        now = self.clock()

        with self._lock_for(record.topic):
            state = self._states.get(record.topic)
            if state is None:
                state = TopicSignalState(topic=record.topic, first_seen_at=now)
                self._states[record.topic] = state
                logger.info(f"First signal observed for topic: {record.topic}")

            kind = record.signal_kind.value
            state.totals[kind] = state.totals.get(kind, 0) + record.count
            state.last_signal_at = now

    def ingest_batch(self, records: Iterable[SignalRecord]) -> Tuple[int, int]:
        """
        匯入一批 signal；不合法的 record 記錄後略過

        Returns:
            (accepted, rejected)
        """
        accepted = 0
        rejected = 0
        for record in records:
            try:
                kind = record.signal_kind.value if isinstance(record.signal_kind, SignalKind) else record.signal_kind
                self.record_signal(record.topic, kind, record.count)
                accepted += 1
            except MalformedSignal as e:
                logger.warning(f"Rejected signal {record}: {e}")
                rejected += 1

        logger.info(f"Ingested signal batch: {accepted} accepted, {rejected} rejected")
        return accepted, rejected

    # ------------------------------------------------------------------
    # Recompute
    # ------------------------------------------------------------------

    def _prune(self, state: TopicSignalState, window: int) -> None:
        """只保留計算所需的時間窗快照 (以及 horizon 之前最近的一筆作為基準)"""
        horizon = window - 2 * self.config.history_windows
        older = [w for w in state.window_totals if w < horizon]
        if len(older) <= 1:
            return
        keep = max(older)
        for w in older:
            if w != keep:
                del state.window_totals[w]

    def recompute(self, topic: str) -> TopicTrend:
        """
        重算單一 topic

        同一時間窗內、沒有新 signal 時重複執行會得到完全相同的結果。

        Raises:
            KeyError: topic 從未出現過
            RecomputeFailed: 計算失敗
        """
        topic = topic.strip().lower()
        if topic not in self._states:
            raise KeyError(f"Unknown topic: {topic}")

        with self._lock_for(topic):
            state = self._states.get(topic)
            if state is None:
                raise KeyError(f"Unknown topic: {topic}")

            window = window_index(self.clock(), self.config.cadence)
            try:
                state.window_totals[window] = dict(state.totals)
                self._prune(state, window)
                trend = compute_topic_trend(state, window, self.config)
            except Exception as e:
                logger.error(f"Recompute failed for topic {topic}: {e}", exc_info=True)
                raise RecomputeFailed(topic, e)

            self._trends[topic] = trend

        return trend

    def recompute_all(
        self,
        topics: Optional[Iterable[str]] = None,
        executor: Optional[ThreadPoolExecutor] = None
    ) -> Tuple[Dict[str, TopicTrend], Dict[str, RecomputeFailed]]:
        """
        平行重算多個 topic；單一 topic 失敗不影響其他 topic

        Args:
            topics: 要重算的 topics (None = 全部)
            executor: 背景 worker pool (None = 在呼叫端執行)

        Returns:
            (成功結果, 失敗)
        """
        targets = list(topics) if topics is not None else self.topics()
        results: Dict[str, TopicTrend] = {}
        failures: Dict[str, RecomputeFailed] = {}

        def run(topic: str):
            try:
                return topic, self.recompute(topic), None
            except RecomputeFailed as e:
                return topic, None, e
            except KeyError as e:
                return topic, None, RecomputeFailed(topic, e)

        if executor is None:
            outcomes = [run(topic) for topic in targets]
        else:
            outcomes = list(executor.map(run, targets))

        for topic, trend, error in outcomes:
            if error is None:
                results[topic] = trend
            else:
                failures[topic] = error

        logger.info(f"Recomputed {len(results)} topics ({len(failures)} failed)")
        return results, failures

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, topic: str) -> Optional[TopicTrend]:
        """最近一次重算結果；未知 topic 回傳 None"""
        return self._trends.get(topic.strip().lower())

    def all_trends(self) -> List[TopicTrend]:
        trends = self._trends.copy()
        return [trends[t] for t in sorted(trends)]

    def trending(self, min_momentum: float = 6.0, limit: int = 20) -> List[TopicTrend]:
        """
        Rising 且 momentum >= min_momentum 的 active topics

        依 momentum、priority 由高到低排序。
        """
        candidates = [
            t for t in self._trends.copy().values()
            if t.active and t.status == TrendStatus.RISING and t.momentum_score >= min_momentum
        ]
        candidates.sort(key=lambda t: (-t.momentum_score, -t.priority_score, t.topic))
        return candidates[:limit]

    # ------------------------------------------------------------------
    # Persistence support
    # ------------------------------------------------------------------

    def export_state(self) -> Tuple[List[TopicSignalState], List[TopicTrend]]:
        states = []
        for topic in self.topics():
            with self._lock_for(topic):
                states.append(self._states[topic].model_copy(deep=True))
        return states, self.all_trends()

    def load_state(self, states: Iterable[TopicSignalState], trends: Iterable[TopicTrend]) -> None:
        for state in states:
            with self._lock_for(state.topic):
                self._states[state.topic] = state
        for trend in trends:
            self._trends[trend.topic] = trend
        logger.info(f"Loaded {len(self._states)} topic states, {len(self._trends)} trends")
