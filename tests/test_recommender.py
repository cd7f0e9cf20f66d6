"""
Tests for recommend()
"""

from datetime import timedelta

import numpy as np
import pytest

from trend_engine.config import EngineConfig, IndexConfig
from trend_engine.engine import TrendEngine
from trend_engine.models import ActivityEvent, ContentItem, EventKind, LearningMode

DIM = 4


def create_test_item(
    content_id: str,
    embedding,
    tags,
    mode: LearningMode = LearningMode.DISCOVERY,
    estimated_minutes: int = 30,
    innovation_score: float = 5.0,
    trend_alignment: float = 5.0,
    topics=None
) -> ContentItem:
    """Helper to create test item"""
    return ContentItem(
        content_id=content_id,
        title=f"Content {content_id}",
        embedding=list(embedding),
        tags=tags,
        topics=topics or [],
        mode=mode,
        estimated_minutes=estimated_minutes,
        innovation_score=innovation_score,
        trend_alignment=trend_alignment
    )


def create_engine(clock) -> TrendEngine:
    config = EngineConfig(index=IndexConfig(dimension=DIM))
    return TrendEngine(config, clock=clock, auto_schedule=False)


def seed_catalog(engine: TrendEngine, n: int = 20) -> None:
    rng = np.random.default_rng(0)
    for i in range(n):
        tags = ["ml"] if i % 2 == 0 else ["web"]
        engine.publish_content(create_test_item(f"c{i}", rng.normal(size=DIM), tags))


def complete(engine: TrendEngine, clock, user_id: str, content_id: str, minutes_ago: int = 0) -> None:
    engine.record_event(ActivityEvent(
        user_id=user_id,
        content_id=content_id,
        event_kind=EventKind.COMPLETION,
        timestamp=clock() - timedelta(minutes=minutes_ago),
        minutes_spent=30
    ))


def test_excludes_completed_items(clock):
    """測試不會推薦已完成的內容"""
    engine = create_engine(clock)
    seed_catalog(engine)
    engine.set_profile("u1", ["ml"])
    for i, content_id in enumerate(["c0", "c2", "c4"]):
        complete(engine, clock, "u1", content_id, minutes_ago=10 - i)

    result = engine.recommend("u1", LearningMode.DISCOVERY, 5)

    ids = [rec.content_id for rec in result.items]
    assert len(ids) == 5
    assert not {"c0", "c2", "c4"} & set(ids)
    assert all("ml" in rec.tags for rec in result.items)
    assert result.strategy == "vector"
    assert result.partial is False


def test_bounded_result_size(clock):
    """測試候選不足 k 時只回傳可用數量，不補齊"""
    engine = create_engine(clock)
    seed_catalog(engine)
    engine.set_profile("u1", ["ml"])
    complete(engine, clock, "u1", "c0")

    result = engine.recommend("u1", LearningMode.DISCOVERY, 50)

    assert len(result.items) == 9
    assert len({rec.content_id for rec in result.items}) == 9


def test_sorted_by_composite(clock):
    engine = create_engine(clock)
    seed_catalog(engine)
    complete(engine, clock, "u1", "c1")

    result = engine.recommend("u1", LearningMode.COMPARISON, 8)

    scores = [rec.score for rec in result.items]
    assert scores == sorted(scores, reverse=True)
    assert len(result.items) == 8


def test_novelty_raises_rank(clock):
    """測試相同內容中 novelty 較高者排名較前"""
    engine = create_engine(clock)
    engine.publish_content(create_test_item("seed", [1, 0, 0, 0], ["ml"]))
    engine.publish_content(create_test_item("plain", [1, 0.1, 0, 0], ["ml"], innovation_score=5.0))
    engine.publish_content(create_test_item("novel", [1, 0.1, 0, 0], ["ml"], innovation_score=8.0))
    complete(engine, clock, "u1", "seed")

    result = engine.recommend("u1", LearningMode.DISCOVERY, 2)

    assert [rec.content_id for rec in result.items] == ["novel", "plain"]
    assert result.items[0].score > result.items[1].score


def test_cold_start_momentum_ranking(clock):
    """測試沒有歷史的使用者依 momentum 排序，且只回傳偏好 tag 的內容"""
    engine = create_engine(clock)
    engine.publish_content(create_test_item("a", [1, 0, 0, 0], ["ml"], trend_alignment=4.0))
    engine.publish_content(create_test_item("b", [0, 1, 0, 0], ["ml"], trend_alignment=8.0))
    engine.publish_content(create_test_item("c", [0, 0, 1, 0], ["ml"], topics=["llm-agents"]))
    engine.publish_content(create_test_item("d", [0, 0, 0, 1], ["web"], trend_alignment=10.0))

    engine.record_signal("llm-agents", "popularity", 0)
    engine.recompute_topic("llm-agents")
    clock.advance(hours=1)
    engine.record_signal("llm-agents", "popularity", 5000)
    engine.record_signal("llm-agents", "adoption", 5000)
    engine.recompute_topic("llm-agents")
    engine.set_profile("u2", ["ml"])

    result = engine.recommend("u2", LearningMode.DISCOVERY, 5)

    assert result.strategy == "momentum_only"
    assert [rec.content_id for rec in result.items] == ["c", "b", "a"]
    assert result.items[0].breakdown.momentum_source == "trend"
    assert result.items[1].breakdown.momentum_source == "intrinsic"
    momenta = [rec.breakdown.momentum for rec in result.items]
    assert momenta == sorted(momenta, reverse=True)


def test_cold_start_falls_back_without_matching_tags(clock):
    """測試偏好 tag 沒有任何內容時不過濾"""
    engine = create_engine(clock)
    seed_catalog(engine, n=6)
    engine.set_profile("u3", ["rust"])

    result = engine.recommend("u3", LearningMode.DISCOVERY, 10)

    assert len(result.items) == 6


def test_cold_start_prefers_requested_mode(clock):
    engine = create_engine(clock)
    engine.publish_content(create_test_item("x", [1, 0, 0, 0], ["ml"], mode=LearningMode.DEEP_DIVE))
    engine.publish_content(create_test_item("y", [0, 1, 0, 0], ["ml"], mode=LearningMode.DISCOVERY, trend_alignment=9))

    result = engine.recommend("new-user", LearningMode.DEEP_DIVE, 5)

    assert [rec.content_id for rec in result.items] == ["x"]


def test_unknown_user_gets_results(clock):
    engine = create_engine(clock)
    seed_catalog(engine, n=4)

    result = engine.recommend("nobody", LearningMode.DISCOVERY, 3)

    assert len(result.items) == 3
    assert result.user_id == "nobody"


def test_retired_content_not_recommended(clock):
    engine = create_engine(clock)
    seed_catalog(engine, n=6)
    engine.retire_content("c0")

    result = engine.recommend("nobody", LearningMode.DISCOVERY, 10)

    assert "c0" not in [rec.content_id for rec in result.items]
    assert engine.get_content("c0").retired is True


def test_deadline_returns_partial(clock):
    """測試 deadline 過短時回傳標記為 partial 的結果而不是失敗"""
    engine = create_engine(clock)
    seed_catalog(engine, n=50)
    complete(engine, clock, "u1", "c1")

    result = engine.recommend("u1", LearningMode.DISCOVERY, 5, deadline_ms=0)

    assert result.partial is True
    assert len(result.items) <= 5
    assert all(rec.breakdown.partial for rec in result.items)
    assert all(rec.breakdown.momentum_source == "intrinsic" for rec in result.items)


def test_zero_k(clock):
    engine = create_engine(clock)
    seed_catalog(engine, n=4)

    assert engine.recommend("nobody", LearningMode.DISCOVERY, 0).items == []


def test_empty_catalog(clock):
    engine = create_engine(clock)

    result = engine.recommend("nobody", LearningMode.DISCOVERY, 5)

    assert result.items == []
    assert result.partial is False


def test_submit_recommend_uses_worker_pool(clock):
    engine = create_engine(clock)
    seed_catalog(engine, n=10)

    futures = [engine.submit_recommend("nobody", LearningMode.DISCOVERY, 3) for _ in range(8)]
    results = [future.result(timeout=10) for future in futures]
    engine.stop()

    assert all(len(result.items) == 3 for result in results)
    assert len({tuple(r.content_id for r in result.items) for result in results}) == 1


def test_invalid_mode_rejected(clock):
    engine = create_engine(clock)

    with pytest.raises(ValueError):
        engine.recommend("u1", "sightseeing", 3)
