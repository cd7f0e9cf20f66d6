"""
Aggregate Computations

從原始 history / trend 資料完整計算 aggregate payload，供 SnapshotCache 整體替換。
所有函數都是 pure function，回傳 JSON-serializable dict。
"""

from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
import logging

from trend_engine.models import ActivityEvent, ContentItem, EventKind, TopicTrend, UserProfile
from trend_engine.utils.time import get_daily_bucket

logger = logging.getLogger(__name__)

TREND_AWARENESS_WINDOW = timedelta(days=90)
DEFAULT_TREND_AWARENESS = 5.0


def _mean(values: List[float], default: float = 0.0) -> float:
    return sum(values) / len(values) if values else default


def calculate_user_analytics(
    profile: UserProfile,
    events: List[ActivityEvent],
    content_lookup: Callable[[str], Optional[ContentItem]],
    now: datetime
) -> Dict[str, Any]:
    """
    使用者 exploration analytics

    - exploration_velocity: 每週完成的相異內容數 (時間跨度至少一週)
    - innovation_index: 應用過內容的平均 novelty * 應用次數 / 10
    - trend_awareness: 最近 90 天接觸內容的平均 trend_alignment (預設 5)
    - overall_score: 上述三者與平均 proficiency 的等權平均

    Args:
        profile: UserProfile (含推導欄位)
        events: 該使用者的所有事件
        content_lookup: content_id → ContentItem
        now: 計算時間

    Returns:
        Analytics payload
    """
    completions = [e for e in events if e.event_kind == EventKind.COMPLETION]
    applications = [e for e in events if e.event_kind == EventKind.APPLICATION]

    # Exploration velocity
    if events:
        span = max(e.timestamp for e in events) - min(e.timestamp for e in events)
        weeks = max(span / timedelta(weeks=1), 1.0)
    else:
        weeks = 1.0
    distinct_completed = len({e.content_id for e in completions})
    exploration_velocity = distinct_completed / weeks

    # Innovation index
    applied_novelty = []
    for event in applications:
        item = content_lookup(event.content_id)
        if item is not None:
            applied_novelty.append(item.innovation_score)
    innovation_index = _mean(applied_novelty) * (len(applications) / 10.0)

    # Trend awareness
    recent_alignment = []
    for event in events:
        if now - event.timestamp > TREND_AWARENESS_WINDOW:
            continue
        item = content_lookup(event.content_id)
        if item is not None:
            recent_alignment.append(item.trend_alignment)
    trend_awareness = _mean(recent_alignment, DEFAULT_TREND_AWARENESS)

    avg_proficiency = _mean(list(profile.proficiency.values()))
    active_days = {get_daily_bucket(e.timestamp) for e in events}

    # Topics explored
    topic_counts: Counter = Counter()
    for content_id in {e.content_id for e in events}:
        item = content_lookup(content_id)
        if item is not None:
            topic_counts.update(item.tags)

    overall = (
        exploration_velocity * 0.25 +
        innovation_index * 0.25 +
        trend_awareness * 0.25 +
        avg_proficiency * 0.25
    )

    return {
        'user_id': profile.user_id,
        'completed_count': len(profile.completed_items),
        'application_count': len(applications),
        'total_minutes': round(sum(e.minutes_spent for e in events), 2),
        'exploration_velocity': round(exploration_velocity, 4),
        'innovation_index': round(innovation_index, 4),
        'trend_awareness_score': round(trend_awareness, 4),
        'avg_proficiency': round(avg_proficiency, 4),
        'proficiency': dict(profile.proficiency),
        'streak_days': profile.streak_days,
        'active_days': len(active_days),
        'topics_explored': dict(topic_counts.most_common(10)),
        'last_activity_at': profile.last_activity_at.isoformat() if profile.last_activity_at else None,
        'overall_score': round(overall, 2),
        'calculated_at': now.isoformat()
    }


def calculate_topic_health(
    topic: str,
    trend: Optional[TopicTrend],
    items: List[ContentItem],
    completions_by_user: Dict[str, List[str]],
    now: datetime
) -> Dict[str, Any]:
    """
    Topic health (ecosystem 健康度)

    Args:
        topic: Topic key
        trend: 最近的 TopicTrend (可能尚未計算)
        items: 所有內容 (含 retired)
        completions_by_user: user_id → 已完成的 content_ids
        now: 計算時間

    Returns:
        Topic health payload
    """
    tagged = [item for item in items if topic in item.topic_keys]
    active = [item for item in tagged if not item.retired]
    tagged_ids = {item.content_id for item in tagged}

    learners = sorted(
        user_id for user_id, completed in completions_by_user.items()
        if tagged_ids.intersection(completed)
    )

    updates = [item.updated_at for item in tagged if item.updated_at is not None]

    return {
        'topic': topic,
        'momentum_score': trend.momentum_score if trend else None,
        'status': trend.status.value if trend else None,
        'priority_score': trend.priority_score if trend else None,
        'active': trend.active if trend else False,
        'content_count': len(tagged),
        'active_content_count': len(active),
        'avg_trend_alignment': round(_mean([i.trend_alignment for i in active]), 4),
        'avg_innovation_score': round(_mean([i.innovation_score for i in active]), 4),
        'active_learners': len(learners),
        'last_content_update': max(updates).isoformat() if updates else None,
        'calculated_at': now.isoformat()
    }


def calculate_trend_overview(trends: List[TopicTrend], now: datetime, top_n: int = 10) -> Dict[str, Any]:
    """
    所有 topic 的 trend 概況

    Returns:
        狀態統計與 rising topics 排行
    """
    status_counts = Counter(t.status.value for t in trends)
    active = [t for t in trends if t.active]

    rising = sorted(
        (t for t in active if t.status.value == "rising"),
        key=lambda t: (-t.momentum_score, -t.priority_score, t.topic)
    )

    return {
        'topic_count': len(trends),
        'active_count': len(active),
        'inactive_count': len(trends) - len(active),
        'status_counts': dict(sorted(status_counts.items())),
        'avg_momentum': round(_mean([t.momentum_score for t in active]), 4),
        'top_rising': [
            {'topic': t.topic, 'momentum_score': t.momentum_score, 'priority_score': t.priority_score}
            for t in rising[:top_n]
        ],
        'calculated_at': now.isoformat()
    }
