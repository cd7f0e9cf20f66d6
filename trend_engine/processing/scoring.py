"""
Composite Recommendation Scoring

四個 sub-score 都在 0-10 尺度，再依 ScoringConfig 權重加總。
"""

from typing import Iterable, Optional, Tuple
import logging

from trend_engine.config import ScoringConfig
from trend_engine.models import ContentItem, LearningMode, ScoreBreakdown

logger = logging.getLogger(__name__)

EXPLORATORY_MODES = frozenset({LearningMode.DISCOVERY, LearningMode.EXPERIMENTATION})

NO_MATCH_ALIGNMENT = 3.0
NEUTRAL_ALIGNMENT = 5.0


def calculate_alignment_score(item_tags: Iterable[str], preferred_tags: Iterable[str]) -> float:
    """
    類別對齊 (graded)

    - 使用者沒有偏好 → 5 (neutral)
    - 沒有重疊 → 3
    - 重疊比例 (相對於較小的集合) 線性對應到 3-10

    Returns:
        Score 0-10
    """
    prefs = set(preferred_tags)
    tags = set(item_tags)
    if not prefs:
        return NEUTRAL_ALIGNMENT

    overlap = len(prefs & tags)
    if overlap == 0 or not tags:
        return NO_MATCH_ALIGNMENT

    ratio = min(1.0, overlap / min(len(prefs), len(tags)))
    return round(NO_MATCH_ALIGNMENT + (10.0 - NO_MATCH_ALIGNMENT) * ratio, 4)


def calculate_mode_score(item_mode: LearningMode, requested_mode: LearningMode) -> float:
    """
    Learning mode 匹配

    完全相同 = 10，探索型 mode (discovery / experimentation) = 7，其他 = 5
    """
    if item_mode == requested_mode:
        return 10.0
    if item_mode in EXPLORATORY_MODES:
        return 7.0
    return 5.0


def calculate_novelty_score(item: ContentItem) -> float:
    """Novelty 直接使用內容本身的 innovation_score (0-10)"""
    return max(0.0, min(10.0, item.innovation_score))


def calculate_composite(
    alignment: float,
    mode_match: float,
    momentum: float,
    novelty: float,
    config: ScoringConfig
) -> float:
    """加權總分 (0-10)"""
    score = (
        alignment * config.alignment_weight +
        mode_match * config.mode_weight +
        momentum * config.momentum_weight +
        novelty * config.novelty_weight
    )
    return round(max(0.0, min(10.0, score)), 4)


def score_item(
    item: ContentItem,
    preferred_tags: Iterable[str],
    requested_mode: LearningMode,
    momentum: float,
    config: ScoringConfig,
    momentum_source: str = "trend",
    partial: bool = False
) -> ScoreBreakdown:
    """
    計算單一內容的 score breakdown

    Args:
        item: ContentItem
        preferred_tags: 使用者偏好 tags
        requested_mode: 要求的 learning mode
        momentum: topic momentum (1-10)
        config: 權重設定
        momentum_source: trend | intrinsic
        partial: 是否因 deadline 略過 Trend Store 查詢

    Returns:
        ScoreBreakdown
    """
    alignment = calculate_alignment_score(item.tags, preferred_tags)
    mode_match = calculate_mode_score(item.mode, requested_mode)
    novelty = calculate_novelty_score(item)
    composite = calculate_composite(alignment, mode_match, momentum, novelty, config)

    logger.debug(f"Content {item.content_id} score: {composite:.2f} " +
                 f"(align={alignment:.1f}, mode={mode_match:.1f}, " +
                 f"mom={momentum:.1f}, nov={novelty:.1f})")

    return ScoreBreakdown(
        alignment=alignment,
        mode_match=mode_match,
        momentum=round(momentum, 4),
        novelty=novelty,
        composite=composite,
        momentum_source=momentum_source,
        partial=partial
    )


def rank_key(item: ContentItem, breakdown: ScoreBreakdown) -> Tuple[float, float, int, str]:
    """
    排序 key：composite 高者優先，平手時 momentum 高者優先，再平手時時長短者優先
    """
    return (-breakdown.composite, -breakdown.momentum, item.estimated_minutes, item.content_id)


def momentum_rank_key(item: ContentItem, breakdown: ScoreBreakdown) -> Tuple[float, int, str]:
    """Cold-start 排序 key：只看 momentum"""
    return (-breakdown.momentum, item.estimated_minutes, item.content_id)


def resolve_momentum(item: ContentItem, topic_momentum: Optional[float]) -> Tuple[float, str]:
    """
    Topic momentum 不存在時，退回內容本身的 trend_alignment

    Returns:
        (momentum, source)
    """
    if topic_momentum is not None:
        return topic_momentum, "trend"
    return item.trend_alignment, "intrinsic"
