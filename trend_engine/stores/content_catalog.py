"""
Content Catalog

擁有 ContentItem：發布 / 編輯時更新 Vector Index，retire 時只做 soft-retire
(保留給 user history 參照，但從 index 移除)。
讀取不取鎖，列舉前先 copy dict (寫入可能同時進行)。
"""

from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional
import logging
import threading

import numpy as np

from trend_engine.index.hnsw import HNSWIndex
from trend_engine.models import ContentItem
from trend_engine.utils.time import utcnow

logger = logging.getLogger(__name__)


class ContentCatalog:
    """ContentItem 儲存 + index 同步"""

    def __init__(self, index: HNSWIndex, clock: Callable[[], datetime] = utcnow):
        self.index = index
        self.clock = clock
        self._items: Dict[str, ContentItem] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._items)

    def get(self, content_id: str) -> Optional[ContentItem]:
        """未知內容回傳 None"""
        return self._items.get(content_id)

    def active_items(self) -> List[ContentItem]:
        return [item for item in self._items.copy().values() if not item.retired]

    def all_items(self) -> List[ContentItem]:
        return list(self._items.copy().values())

    def publish(self, item: ContentItem) -> ContentItem:
        """
        發布或編輯內容

        先寫入 index (維度不符會在此被拒絕)，成功後才更新 catalog。

        Raises:
            DimensionMismatch / InvalidVector: embedding 不合法
        """
        now = self.clock()
        with self._lock:
            existing = self._items.get(item.content_id)
            published_at = item.published_at or (existing.published_at if existing else None) or now
            stored = item.model_copy(update={"published_at": published_at, "updated_at": now})

            if not stored.retired:
                self.index.upsert(stored.content_id, stored.embedding, tags=stored.tags)
            elif stored.content_id in self.index:
                self.index.remove(stored.content_id)

            self._items[stored.content_id] = stored

        action = "Updated" if existing else "Published"
        logger.info(f"{action} content {stored.content_id} (tags={stored.tags}, mode={stored.mode.value})")
        return stored

    def publish_many(self, items: Iterable[ContentItem]) -> int:
        count = 0
        for item in items:
            self.publish(item)
            count += 1
        return count

    def retire(self, content_id: str) -> bool:
        """Soft-retire；未知內容回傳 False"""
        with self._lock:
            item = self._items.get(content_id)
            if item is None:
                return False
            self._items[content_id] = item.model_copy(update={"retired": True, "updated_at": self.clock()})
            self.index.remove(content_id)

        logger.info(f"Retired content {content_id}")
        return True

    def has_tags(self, tags: Iterable[str]) -> bool:
        """是否有任何 active 內容帶有其中一個 tag"""
        return bool(self.index.matching_ids(tags))

    def tag_centroid(self, tags: Iterable[str]) -> Optional[np.ndarray]:
        """
        偏好 tags 對應內容的 embedding 平均 (profile-preference centroid)

        Returns:
            centroid，無符合內容時回傳 None
        """
        vectors = []
        for content_id in sorted(self.index.matching_ids(tags)):
            vector = self.index.get_vector(content_id)
            if vector is not None:
                vectors.append(vector / np.linalg.norm(vector))

        if not vectors:
            return None

        centroid = np.mean(np.stack(vectors), axis=0)
        if not np.any(centroid):
            return None
        return centroid
