"""
Topic Momentum Scoring

Momentum 是 signal 累計計數的決定性函數：
相同的 TopicSignalState + 相同的時間窗 → 完全相同的 TopicTrend。
"""

from datetime import timedelta
from typing import Dict, List, Tuple
import math
import logging

from trend_engine.config import TrendConfig
from trend_engine.models import TopicSignalState, TopicTrend, TrendStatus
from trend_engine.utils.time import window_start

logger = logging.getLogger(__name__)


def totals_at(state: TopicSignalState, window: int) -> Dict[str, int]:
    """
    取得時間窗結束時的累計計數 (沿用最近一個 <= window 的快照)

    Args:
        state: Topic signal 狀態
        window: 時間窗編號

    Returns:
        {signal_kind: total}
    """
    eligible = [w for w in state.window_totals if w <= window]
    if not eligible:
        return {}
    return state.window_totals[max(eligible)]


def normalized_growth(delta: int, saturation: int) -> float:
    """
    正規化成長率 (log scaling, 0-1)

    delta 達到 saturation 時為 1.0。
    """
    if delta <= 0:
        return 0.0

    score = math.log10(delta + 1) / math.log10(max(saturation, 1) + 1)
    return max(0.0, min(1.0, score))


def window_growth(
    state: TopicSignalState,
    window: int,
    config: TrendConfig
) -> Tuple[float, Dict[str, float]]:
    """
    單一時間窗的加權成長

    Args:
        state: Topic signal 狀態
        window: 時間窗編號
        config: Trend 設定

    Returns:
        (加權成長 0-1, {signal_kind: 正規化成長})
    """
    current = totals_at(state, window)
    previous = totals_at(state, window - 1)

    growth = {}
    for kind in sorted(config.signal_weights):
        delta = current.get(kind, 0) - previous.get(kind, 0)
        growth[kind] = round(normalized_growth(delta, config.signal_saturation.get(kind, 1000)), 6)

    weighted = sum(config.signal_weights[kind] * growth[kind] for kind in growth)
    return weighted, growth


def is_emerging(state: TopicSignalState, window: int, config: TrendConfig) -> bool:
    """第一次觀察到的時間在 emerging_window_days 內"""
    if state.first_seen_at is None:
        return False

    window_end = window_start(window + 1, config.cadence)
    return window_end - state.first_seen_at <= timedelta(days=config.emerging_window_days)


def momentum_at(state: TopicSignalState, window: int, config: TrendConfig) -> float:
    """
    計算某時間窗的 momentum

    近期時間窗的成長以 decay^i 加權累加；沒有新成長時逐步衰減回 min_score。
    新主題 (emerging) 且有成長時加上 velocity bonus。

    Returns:
        Momentum (min_score-max_score)
    """
    smoothed = 0.0
    for i in range(config.history_windows):
        weighted, _ = window_growth(state, window - i, config)
        smoothed += weighted * (config.decay ** i)
    smoothed = min(1.0, smoothed)

    score = config.min_score + (config.max_score - config.min_score) * smoothed

    if smoothed > 0 and is_emerging(state, window, config):
        score += config.emerging_bonus

    score = max(config.min_score, min(config.max_score, score))
    return round(score, 2)


def classify_status(history: List[float], epsilon: float) -> TrendStatus:
    """
    依最近兩個時間窗的 momentum 變化判定狀態

    Args:
        history: momentum (舊 -> 新)
        epsilon: 最小變化量

    Returns:
        TrendStatus
    """
    if len(history) < 2:
        return TrendStatus.FLAT

    delta = history[-1] - history[-2]
    if delta > epsilon:
        return TrendStatus.RISING
    if delta < -epsilon:
        return TrendStatus.FALLING
    return TrendStatus.FLAT


def calculate_confidence(totals: Dict[str, int], config: TrendConfig) -> float:
    """有資料的 signal 類型比例"""
    if not config.signal_weights:
        return 0.0
    observed = sum(1 for kind in config.signal_weights if totals.get(kind, 0) > 0)
    return round(observed / len(config.signal_weights), 4)


def calculate_priority(momentum: float, confidence: float, config: TrendConfig) -> float:
    """Learning priority：momentum 依 confidence 折減"""
    score = momentum * (0.5 + 0.5 * confidence)
    return round(max(config.min_score, min(config.max_score, score)), 2)


def compute_topic_trend(state: TopicSignalState, window: int, config: TrendConfig) -> TopicTrend:
    """
    由 signal 狀態計算 TopicTrend (pure function)

    Args:
        state: Topic signal 狀態 (已包含本時間窗快照)
        window: 時間窗編號
        config: Trend 設定

    Returns:
        TopicTrend
    """
    history = [
        momentum_at(state, w, config)
        for w in range(window - config.history_windows + 1, window + 1)
    ]
    momentum = history[-1]
    _, growth = window_growth(state, window, config)

    totals = dict(sorted(totals_at(state, window).items()))
    confidence = calculate_confidence(totals, config)

    window_end = window_start(window + 1, config.cadence)
    active = (
        state.last_signal_at is not None and
        window_end - state.last_signal_at <= timedelta(days=config.inactive_after_days)
    )

    trend = TopicTrend(
        topic=state.topic,
        momentum_score=momentum,
        status=classify_status(history, config.status_epsilon),
        active=active,
        priority_score=calculate_priority(momentum, confidence, config),
        confidence=confidence,
        signal_totals=totals,
        growth=growth,
        momentum_history=history,
        first_seen_at=state.first_seen_at,
        last_signal_at=state.last_signal_at,
        recomputed_at=window_start(window, config.cadence),
        window=window
    )

    logger.debug(f"Topic {state.topic} momentum: {momentum:.2f} " +
                 f"(status={trend.status.value}, growth={growth}, confidence={confidence:.2f})")

    return trend
