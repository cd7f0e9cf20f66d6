"""
Recommender (Scoring Engine)

recommend(user_id, mode, k)：
1. Query vector = 最近互動內容的 embedding，否則為偏好 tags 的 centroid
2. Vector Index 搜尋 (filter = 偏好 tags，沒有符合內容時不過濾)，候選池 ≈ k * 4
3. 排除已完成內容
4. 四個 sub-score 加權 → composite
5. 依 composite / momentum / 時長排序，取前 k

沒有任何歷史的使用者改用 momentum-only 排序。超過 deadline 時回傳 partial 結果。
"""

from datetime import datetime
from typing import Callable, List, Optional, Set, Tuple
import logging
import time

import numpy as np

from trend_engine.config import ScoringConfig
from trend_engine.errors import DeadlineExceeded
from trend_engine.models import (
    ContentItem, LearningMode, Recommendation, RecommendationResult, ScoreBreakdown, UserProfile
)
from trend_engine.processing.scoring import momentum_rank_key, rank_key, resolve_momentum, score_item
from trend_engine.stores.content_catalog import ContentCatalog
from trend_engine.stores.trend_store import TrendStore
from trend_engine.stores.user_history import UserHistoryStore
from trend_engine.utils.time import utcnow

logger = logging.getLogger(__name__)


class Recommender:
    """Trend-aware content ranking"""

    def __init__(
        self,
        catalog: ContentCatalog,
        trends: TrendStore,
        history: UserHistoryStore,
        config: Optional[ScoringConfig] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.catalog = catalog
        self.trends = trends
        self.history = history
        self.config = config or ScoringConfig()
        self.clock = clock

    def recommend(
        self,
        user_id: str,
        mode: LearningMode,
        k: int,
        deadline_ms: Optional[int] = None
    ) -> RecommendationResult:
        """
        產生推薦清單

        Args:
            user_id: 使用者 ID (未知使用者視為沒有偏好與歷史)
            mode: 要求的 learning mode
            k: 最多回傳數量
            deadline_ms: 毫秒 deadline (None = 使用設定預設值)

        Returns:
            RecommendationResult (最多 k 筆，不足時不補齊)
        """
        mode = LearningMode(mode)
        if deadline_ms is None:
            deadline_ms = self.config.default_deadline_ms
        deadline = time.monotonic() + deadline_ms / 1000.0 if deadline_ms is not None else None

        result = RecommendationResult(user_id=user_id, mode=mode, k=k, generated_at=self.clock())
        if k <= 0:
            return result

        profile = self.history.get_profile(user_id)
        tag_filter = self._tag_filter(profile)

        query = self._query_vector(profile) if profile.has_history else None
        if query is None:
            scored, partial = self._momentum_only(profile, tag_filter, mode, deadline)
            result.strategy = "momentum_only"
        else:
            scored, partial = self._vector_ranked(profile, tag_filter, query, mode, k, deadline)

        result.items = [
            Recommendation(
                content_id=item.content_id,
                title=item.title,
                tags=item.tags,
                mode=item.mode,
                estimated_minutes=item.estimated_minutes,
                score=breakdown.composite,
                breakdown=breakdown
            )
            for item, breakdown in scored[:k]
        ]
        result.partial = partial

        if partial:
            logger.warning(f"Partial recommendations for {user_id}: {len(result.items)}/{k} (deadline {deadline_ms}ms)")
        logger.info(f"Recommended {len(result.items)} items for {user_id} " +
                    f"(mode={mode.value}, strategy={result.strategy})")
        return result

    def _tag_filter(self, profile: UserProfile) -> List[str]:
        """偏好 tags；沒有偏好或沒有任何符合內容時不過濾"""
        if profile.preferred_tags and self.catalog.has_tags(profile.preferred_tags):
            return profile.preferred_tags
        return []

    def _query_vector(self, profile: UserProfile) -> Optional[np.ndarray]:
        if profile.last_interaction_id:
            vector = self.catalog.index.get_vector(profile.last_interaction_id)
            if vector is not None:
                return vector
        if profile.preferred_tags:
            return self.catalog.tag_centroid(profile.preferred_tags)
        return None

    def _topic_momentum(self, item: ContentItem) -> Optional[float]:
        """內容所屬 active topics 中最高的 momentum"""
        best = None
        for topic in item.topic_keys:
            trend = self.trends.get(topic)
            if trend is not None and trend.active:
                best = trend.momentum_score if best is None else max(best, trend.momentum_score)
        return best

    def _score_candidates(
        self,
        candidates: List[ContentItem],
        profile: UserProfile,
        mode: LearningMode,
        deadline: Optional[float]
    ) -> Tuple[List[Tuple[ContentItem, ScoreBreakdown]], bool]:
        scored = []
        skipped_trends = False
        for item in candidates:
            if not skipped_trends and deadline is not None and time.monotonic() > deadline:
                skipped_trends = True

            topic_momentum = None if skipped_trends else self._topic_momentum(item)
            momentum, source = resolve_momentum(item, topic_momentum)
            breakdown = score_item(
                item, profile.preferred_tags, mode, momentum, self.config,
                momentum_source=source, partial=skipped_trends
            )
            scored.append((item, breakdown))
        return scored, skipped_trends

    def _vector_ranked(
        self,
        profile: UserProfile,
        tag_filter: List[str],
        query: np.ndarray,
        mode: LearningMode,
        k: int,
        deadline: Optional[float]
    ) -> Tuple[List[Tuple[ContentItem, ScoreBreakdown]], bool]:
        excluded: Set[str] = set(profile.completed_items)
        pool_size = k * self.config.candidate_multiplier + len(excluded)
        partial = False

        try:
            hits = self.catalog.index.search(query, pool_size, tag_filter=tag_filter, deadline=deadline)
        except DeadlineExceeded as e:
            hits = e.partial
            partial = True

        candidates = []
        for content_id, _ in hits:
            item = self.catalog.get(content_id)
            if item is None or item.retired or content_id in excluded:
                continue
            candidates.append(item)

        scored, skipped = self._score_candidates(candidates, profile, mode, deadline)
        scored.sort(key=lambda pair: rank_key(*pair))
        return scored, partial or skipped

    def _momentum_only(
        self,
        profile: UserProfile,
        tag_filter: List[str],
        mode: LearningMode,
        deadline: Optional[float]
    ) -> Tuple[List[Tuple[ContentItem, ScoreBreakdown]], bool]:
        """Cold-start：依 momentum 排序，優先使用要求的 mode"""
        excluded = set(profile.completed_items)
        wanted = set(tag_filter)

        candidates = [
            item for item in self.catalog.active_items()
            if item.content_id not in excluded and (not wanted or wanted & set(item.tags))
        ]
        same_mode = [item for item in candidates if item.mode == mode]
        if same_mode:
            candidates = same_mode

        scored, partial = self._score_candidates(candidates, profile, mode, deadline)
        scored.sort(key=lambda pair: momentum_rank_key(*pair))
        return scored, partial
