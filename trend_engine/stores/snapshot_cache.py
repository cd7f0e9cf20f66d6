"""
Aggregate Snapshot Cache

讀取端拿到 AggregateSnapshot 的 copy；refresh 在外部完整算好後，
以單一 dict assignment 替換 (atomic swap)。讀取不取鎖，也不會等待重算。
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
import copy
import logging
import threading

from trend_engine.models import AggregateSnapshot
from trend_engine.utils import hashing
from trend_engine.utils.time import utcnow

logger = logging.getLogger(__name__)


def key_kind(key: str) -> str:
    """
    由 aggregate key 取得類型

    user:<id> → user_analytics, topic:<key> → topic_health, trends:overview → trend_overview
    """
    prefix, _, ident = key.partition(":")
    if not ident:
        raise ValueError(f"Malformed aggregate key: {key!r}")
    if prefix == "user":
        return "user_analytics"
    if prefix == "topic":
        return "topic_health"
    if prefix == "trends":
        return "trend_overview"
    raise ValueError(f"Unknown aggregate key prefix: {prefix!r}")


class SnapshotCache:
    """Versioned aggregate cache"""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self._entries: Dict[str, AggregateSnapshot] = {}
        # 只序列化 writer (version 遞增)；reader 不使用
        self._swap_lock = threading.Lock()

    def get(self, key: str) -> Optional[AggregateSnapshot]:
        """
        最後一個有效 snapshot；尚未計算過時回傳 None

        回傳 deep copy，呼叫端修改 payload 不會影響 cache 或其他 reader。
        """
        snapshot = self._entries.get(key)
        return None if snapshot is None else snapshot.model_copy(deep=True)

    def keys(self) -> List[str]:
        return sorted(self._entries.copy())

    def swap(self, key: str, payload: Dict[str, Any], staleness_budget_seconds: float) -> AggregateSnapshot:
        """
        以完整計算好的 payload 建立新 snapshot 並替換

        payload 會先 deep copy，之後呼叫端對原 dict 的修改不影響 snapshot；
        回傳的 snapshot 同樣是 copy。
        """
        frozen_payload = copy.deepcopy(payload)
        with self._swap_lock:
            previous = self._entries.get(key)
            snapshot = AggregateSnapshot(
                key=key,
                kind=key_kind(key),
                version=(previous.version + 1) if previous else 1,
                computed_at=self.clock(),
                staleness_budget_seconds=staleness_budget_seconds,
                payload=frozen_payload,
                payload_hash=hashing.payload_hash(frozen_payload)
            )
            self._entries[key] = snapshot

        logger.info(f"Swapped snapshot {key} -> v{snapshot.version}")
        return snapshot.model_copy(deep=True)

    def load(self, snapshots: List[AggregateSnapshot]) -> None:
        with self._swap_lock:
            for snapshot in snapshots:
                current = self._entries.get(snapshot.key)
                if current is None or snapshot.version > current.version:
                    self._entries[snapshot.key] = snapshot.model_copy(deep=True)
        logger.info(f"Loaded {len(snapshots)} snapshots")

    def export(self) -> List[AggregateSnapshot]:
        entries = self._entries.copy()
        return [entries[k].model_copy(deep=True) for k in sorted(entries)]
