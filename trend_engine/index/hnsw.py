"""
HNSW Vector Index

Layered proximity graph (Hierarchical Navigable Small World) for cosine ANN search.
寫入由單一 write lock 序列化；搜尋不取鎖，鄰居清單以 tuple 整體替換 (copy-on-write)，
新節點在連結完成後才會被其他節點指到。
"""

import heapq
import logging
import math
import random
import threading
import time
from typing import Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

import numpy as np

from trend_engine.config import IndexConfig
from trend_engine.errors import DeadlineExceeded, DimensionMismatch, InvalidVector

logger = logging.getLogger(__name__)

# exact scan 每批處理的向量數 (批次之間檢查 deadline)
SCAN_CHUNK_SIZE = 1024


class _Node:
    __slots__ = ("node_id", "vector", "norm", "level", "neighbors", "tags")

    def __init__(self, node_id: str, vector: np.ndarray, norm: float, level: int, tags: FrozenSet[str]):
        self.node_id = node_id
        self.vector = vector
        self.norm = norm
        self.level = level
        # neighbors[layer] 只會被整體替換，不會 in-place 修改
        self.neighbors: List[Tuple[str, ...]] = [() for _ in range(level + 1)]
        self.tags = tags


class HNSWIndex:
    """
    Cosine ANN index

    search() 回傳 (id, distance)，distance = 1 - cosine similarity，由小到大排序。
    """

    def __init__(
        self,
        dimension: int,
        m: int = 16,
        ef_construction: int = 100,
        ef_search: int = 50,
        recall_floor: float = 0.9,
        max_overfetch: int = 8,
        random_seed: int = 42
    ):
        self.dimension = dimension
        self.m = m
        self.ef_construction = ef_construction
        self.ef_search = ef_search
        self.recall_floor = recall_floor
        self.max_overfetch = max_overfetch

        self._nodes: Dict[str, _Node] = {}
        self._tag_index: Dict[str, FrozenSet[str]] = {}
        self._entry_point: Optional[str] = None
        self._max_level = -1
        self._write_lock = threading.Lock()
        self._rng = random.Random(random_seed)
        self._level_mult = 1 / math.log(max(m, 2))

    @classmethod
    def from_config(cls, config: IndexConfig) -> "HNSWIndex":
        return cls(
            dimension=config.dimension,
            m=config.m,
            ef_construction=config.ef_construction,
            ef_search=config.ef_search,
            recall_floor=config.recall_floor,
            max_overfetch=config.max_overfetch,
            random_seed=config.random_seed
        )

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._nodes

    def get_vector(self, node_id: str) -> Optional[np.ndarray]:
        node = self._nodes.get(node_id)
        return None if node is None else node.vector

    def validate(self, vector: Iterable[float]) -> Tuple[np.ndarray, float]:
        """
        驗證向量維度與數值

        Raises:
            DimensionMismatch: 維度不符
            InvalidVector: 含 NaN/Inf、無法轉換或為零向量
        """
        try:
            arr = np.asarray(vector, dtype=np.float32)
        except (TypeError, ValueError) as e:
            raise InvalidVector(f"Vector is not numeric: {e}")

        if arr.ndim != 1:
            raise DimensionMismatch(self.dimension, arr.size)
        if arr.shape[0] != self.dimension:
            raise DimensionMismatch(self.dimension, arr.shape[0])
        if not np.all(np.isfinite(arr)):
            raise InvalidVector("Vector contains NaN or Inf")

        norm = float(np.linalg.norm(arr))
        if norm == 0.0:
            raise InvalidVector("Zero vector has no direction")

        return arr, norm

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def upsert(self, node_id: str, vector: Iterable[float], tags: Optional[Iterable[str]] = None) -> None:
        """
        新增或更新向量 (更新 = 移除舊節點後重新插入)

        驗證在取鎖前完成，被拒絕的向量不會改變 index。
        """
        arr, norm = self.validate(vector)
        tag_set = frozenset(tags or ())

        with self._write_lock:
            if node_id in self._nodes:
                self._remove_locked(node_id)
            self._insert_locked(node_id, arr, norm, tag_set)

        logger.debug(f"Upserted {node_id} (size={len(self._nodes)})")

    def remove(self, node_id: str) -> bool:
        """移除節點；不存在時回傳 False"""
        with self._write_lock:
            if node_id not in self._nodes:
                return False
            self._remove_locked(node_id)
        return True

    def _random_level(self) -> int:
        return int(-math.log(1.0 - self._rng.random()) * self._level_mult)

    def _max_neighbors(self, layer: int) -> int:
        return self.m * 2 if layer == 0 else self.m

    def _insert_locked(self, node_id: str, arr: np.ndarray, norm: float, tags: FrozenSet[str]) -> None:
        level = self._random_level()
        node = _Node(node_id, arr, norm, level, tags)

        if self._entry_point is None:
            self._nodes[node_id] = node
            self._index_tags(node_id, tags)
            self._entry_point = node_id
            self._max_level = level
            return

        # 上層 greedy descent
        entry = [self._entry_point]
        for layer in range(self._max_level, level, -1):
            entry = [self._search_layer(arr, norm, entry, 1, layer)[0][1]]

        links: Dict[int, List[str]] = {}
        for layer in range(min(level, self._max_level), -1, -1):
            found = self._search_layer(arr, norm, entry, self.ef_construction, layer)
            selected = [nid for _, nid in found[:self._max_neighbors(layer)]]
            node.neighbors[layer] = tuple(selected)
            links[layer] = selected
            entry = [nid for _, nid in found]

        # 節點先完整建立，再被鄰居指到
        self._nodes[node_id] = node
        self._index_tags(node_id, tags)

        for layer, selected in links.items():
            for neighbor_id in selected:
                self._add_link(neighbor_id, node_id, layer)

        if level > self._max_level:
            self._max_level = level
            self._entry_point = node_id

    def _add_link(self, owner_id: str, target_id: str, layer: int) -> None:
        owner = self._nodes[owner_id]
        current = owner.neighbors[layer]
        if target_id in current:
            return
        candidates = list(current) + [target_id]
        if len(candidates) > self._max_neighbors(layer):
            candidates = self._closest_to(owner, candidates, self._max_neighbors(layer))
        owner.neighbors[layer] = tuple(candidates)

    def _remove_locked(self, node_id: str) -> None:
        node = self._nodes[node_id]

        # 連結不保證對稱 (pruning 後)，因此掃描所有節點修補
        for other in list(self._nodes.values()):
            if other.node_id == node_id:
                continue
            for layer in range(min(other.level, node.level) + 1):
                links = other.neighbors[layer]
                if node_id not in links:
                    continue
                candidates = {c for c in links if c != node_id}
                candidates.update(c for c in node.neighbors[layer] if c != other.node_id and c != node_id)
                other.neighbors[layer] = tuple(
                    self._closest_to(other, list(candidates), self._max_neighbors(layer))
                )

        del self._nodes[node_id]
        self._unindex_tags(node_id, node.tags)

        if self._entry_point == node_id:
            if self._nodes:
                top = max(self._nodes.values(), key=lambda n: (n.level, n.node_id))
                self._entry_point = top.node_id
                self._max_level = top.level
            else:
                self._entry_point = None
                self._max_level = -1

        for layer in range(min(node.level, self._max_level) + 1):
            self._relink_orphans(layer)

    def _relink_orphans(self, layer: int) -> None:
        """
        沒有任何 in-link 的節點 (entry point 除外) 由最近的節點連入

        修補連結不做 pruning，避免因此又產生新的 orphan。
        """
        layer_nodes = [n for n in self._nodes.values() if n.level >= layer]
        linked: Set[str] = set()
        for n in layer_nodes:
            linked.update(n.neighbors[layer])

        for orphan in layer_nodes:
            if orphan.node_id in linked or orphan.node_id == self._entry_point:
                continue
            others = [n.node_id for n in layer_nodes if n.node_id != orphan.node_id]
            if not others:
                continue
            owner = self._nodes[self._closest_to(orphan, others, 1)[0]]
            owner.neighbors[layer] = owner.neighbors[layer] + (orphan.node_id,)
            linked.add(orphan.node_id)
            logger.debug(f"Relinked orphan {orphan.node_id} from {owner.node_id} at layer {layer}")

    def _index_tags(self, node_id: str, tags: FrozenSet[str]) -> None:
        for tag in tags:
            self._tag_index[tag] = self._tag_index.get(tag, frozenset()) | {node_id}

    def _unindex_tags(self, node_id: str, tags: FrozenSet[str]) -> None:
        for tag in tags:
            remaining = self._tag_index.get(tag, frozenset()) - {node_id}
            if remaining:
                self._tag_index[tag] = remaining
            else:
                self._tag_index.pop(tag, None)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def _distance(self, query: np.ndarray, query_norm: float, node: _Node) -> float:
        return 1.0 - float(np.dot(query, node.vector)) / (query_norm * node.norm)

    def _closest_to(self, owner: _Node, candidate_ids: List[str], limit: int) -> List[str]:
        scored = []
        for cid in candidate_ids:
            candidate = self._nodes.get(cid)
            if candidate is not None:
                scored.append((self._distance(owner.vector, owner.norm, candidate), cid))
        scored.sort()
        return [cid for _, cid in scored[:limit]]

    def _search_layer(
        self,
        query: np.ndarray,
        query_norm: float,
        entry_ids: List[str],
        ef: int,
        layer: int,
        deadline: Optional[float] = None
    ) -> List[Tuple[float, str]]:
        """單層 best-first search，回傳最近的 ef 個 (distance, id)"""
        visited: Set[str] = set()
        candidates: List[Tuple[float, str]] = []
        results: List[Tuple[float, str]] = []

        for eid in entry_ids:
            entry = self._nodes.get(eid)
            if entry is None or eid in visited:
                continue
            visited.add(eid)
            d = self._distance(query, query_norm, entry)
            heapq.heappush(candidates, (d, eid))
            heapq.heappush(results, (-d, eid))

        while candidates:
            d, cid = heapq.heappop(candidates)
            if len(results) >= ef and d > -results[0][0]:
                break

            if deadline is not None and time.monotonic() > deadline:
                partial = sorted((-nd, rid) for nd, rid in results)
                raise DeadlineExceeded([(rid, dist) for dist, rid in partial])

            node = self._nodes.get(cid)
            if node is None or layer >= len(node.neighbors):
                continue

            for nid in node.neighbors[layer]:
                if nid in visited:
                    continue
                visited.add(nid)
                neighbor = self._nodes.get(nid)
                if neighbor is None:
                    continue
                nd = self._distance(query, query_norm, neighbor)
                if len(results) < ef or nd < -results[0][0]:
                    heapq.heappush(candidates, (nd, nid))
                    heapq.heappush(results, (-nd, nid))
                    if len(results) > ef:
                        heapq.heappop(results)

        return sorted((-nd, rid) for nd, rid in results)

    def _graph_search(
        self,
        query: np.ndarray,
        query_norm: float,
        k: int,
        ef: int,
        deadline: Optional[float]
    ) -> List[Tuple[str, float]]:
        entry_point = self._entry_point
        if entry_point is None:
            return []

        entry = [entry_point]
        for layer in range(self._max_level, 0, -1):
            found = self._search_layer(query, query_norm, entry, 1, layer)
            if found:
                entry = [found[0][1]]

        found = self._search_layer(query, query_norm, entry, max(ef, k), 0, deadline)
        return [(rid, dist) for dist, rid in found[:k]]

    def _exact_scan(
        self,
        query: np.ndarray,
        query_norm: float,
        node_ids: List[str],
        k: int,
        deadline: Optional[float]
    ) -> List[Tuple[str, float]]:
        """對指定節點做精確 cosine 掃描 (pre-filter 策略)"""
        scored: List[Tuple[float, str]] = []

        for start in range(0, len(node_ids), SCAN_CHUNK_SIZE):
            if start > 0 and deadline is not None and time.monotonic() > deadline:
                scored.sort()
                raise DeadlineExceeded([(rid, dist) for dist, rid in scored[:k]])

            nodes = [n for n in (self._nodes.get(nid) for nid in node_ids[start:start + SCAN_CHUNK_SIZE]) if n is not None]
            if not nodes:
                continue
            matrix = np.stack([n.vector for n in nodes])
            norms = np.array([n.norm for n in nodes], dtype=np.float32)
            distances = 1.0 - (matrix @ query) / (norms * query_norm)
            scored.extend((float(dist), n.node_id) for dist, n in zip(distances, nodes))

        scored.sort()
        return [(rid, dist) for dist, rid in scored[:k]]

    def matching_ids(self, tag_filter: Iterable[str]) -> FrozenSet[str]:
        """任一 tag 符合的節點"""
        matched: FrozenSet[str] = frozenset()
        for tag in tag_filter:
            matched = matched | self._tag_index.get(tag, frozenset())
        return matched

    def search(
        self,
        query_vector: Iterable[float],
        k: int,
        tag_filter: Optional[Iterable[str]] = None,
        ef: Optional[int] = None,
        deadline: Optional[float] = None
    ) -> List[Tuple[str, float]]:
        """
        ANN 搜尋

        Filter 策略：
        - 符合節點少，或 over-fetch 倍數需超過 max_overfetch 才能維持 recall_floor → pre-filter (exact scan)
        - 否則 post-filter：抓 k * factor 個再過濾，不足 k 時改用 exact scan

        Args:
            query_vector: 查詢向量
            k: 回傳數量
            tag_filter: 任一 tag 符合即保留 (None/空 = 不過濾)
            ef: 覆寫 ef_search
            deadline: time.monotonic() 截止時間

        Returns:
            [(id, distance)]，distance 由小到大

        Raises:
            DimensionMismatch / InvalidVector: 查詢向量不合法
            DeadlineExceeded: 超過 deadline，partial 為目前最佳結果
        """
        query, query_norm = self.validate(query_vector)

        if k <= 0 or not self._nodes:
            return []

        ef = max(ef or self.ef_search, k)
        tags = set(tag_filter or ())

        if not tags:
            hits = self._graph_search(query, query_norm, k, ef, deadline)
            expected = min(k, len(self._nodes))
            if len(hits) < expected:
                # 圖上有走不到的節點，結果不足時改用 exact scan
                logger.debug(f"Graph search returned {len(hits)}/{expected}, falling back to exact scan")
                return self._exact_scan(query, query_norm, sorted(self._nodes.copy()), k, deadline)
            return hits

        allowed = self.matching_ids(tags)
        if not allowed:
            return []

        total = len(self._nodes)
        selectivity = len(allowed) / total
        factor = math.ceil(1.0 / (selectivity * self.recall_floor))

        if factor > self.max_overfetch or len(allowed) <= k * self.max_overfetch:
            logger.debug(f"Pre-filter scan over {len(allowed)}/{total} nodes")
            return self._exact_scan(query, query_norm, sorted(allowed), k, deadline)

        fetch = min(total, k * factor)
        logger.debug(f"Post-filter search: fetch={fetch} (factor={factor}, selectivity={selectivity:.2f})")

        try:
            hits = self._graph_search(query, query_norm, fetch, max(ef, fetch), deadline)
        except DeadlineExceeded as e:
            raise DeadlineExceeded([h for h in e.partial if h[0] in allowed][:k])

        filtered = [h for h in hits if h[0] in allowed][:k]
        if len(filtered) < k:
            logger.debug(f"Post-filter returned {len(filtered)}/{k}, falling back to exact scan")
            return self._exact_scan(query, query_norm, sorted(allowed), k, deadline)

        return filtered
