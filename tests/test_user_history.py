"""
Tests for proficiency fast-path and user history
"""

from datetime import date, timedelta

import pytest

from trend_engine.models import ActivityEvent, ContentItem, EventKind, LearningMode
from trend_engine.processing.proficiency import (
    SkillCounters, apply_event, calculate_proficiency, calculate_streak
)
from trend_engine.stores.user_history import UserHistoryStore


def create_test_item(content_id: str, tags) -> ContentItem:
    """Helper to create test item"""
    return ContentItem(content_id=content_id, embedding=[1.0, 0.0], tags=tags)


def create_store() -> UserHistoryStore:
    catalog = {
        "py-intro": create_test_item("py-intro", ["python"]),
        "py-lab": create_test_item("py-lab", ["python", "testing"]),
    }
    return UserHistoryStore(catalog.get)


def create_event(clock, content_id: str, kind: EventKind, minutes: float = 60, days_ago: int = 0) -> ActivityEvent:
    return ActivityEvent(
        user_id="u1",
        content_id=content_id,
        event_kind=kind,
        timestamp=clock() - timedelta(days=days_ago),
        minutes_spent=minutes
    )


def test_proficiency_formula():
    """測試 proficiency = 3 + 0.8*完成 + 1.5*應用 + 學習時數/20 + 實作時數/15"""
    assert calculate_proficiency(SkillCounters()) == 3.0

    counters = apply_event(SkillCounters(), EventKind.COMPLETION, 60)
    assert calculate_proficiency(counters) == pytest.approx(3.85)

    counters = apply_event(counters, EventKind.APPLICATION, 90)
    assert calculate_proficiency(counters) == pytest.approx(5.45)


def test_proficiency_capped():
    counters = SkillCounters(completions=20, applications=10)

    assert calculate_proficiency(counters) == 10.0


def test_apply_event_does_not_mutate():
    counters = SkillCounters()

    updated = apply_event(counters, EventKind.PROGRESS, 30)

    assert counters.learning_minutes == 0.0
    assert updated.learning_minutes == 30.0
    assert updated.completions == 0


def test_streak():
    """測試連續活動天數 (以最後活動日為終點)"""
    d = date(2026, 3, 10)

    assert calculate_streak([]) == 0
    assert calculate_streak([d]) == 1
    assert calculate_streak([d, d - timedelta(days=1), d - timedelta(days=2)]) == 3
    assert calculate_streak([d, d - timedelta(days=2)]) == 1


def test_event_updates_proficiency_synchronously(clock):
    """測試事件寫入時同步更新 content tags 對應的 skills"""
    store = create_store()

    store.record_event(create_event(clock, "py-lab", EventKind.APPLICATION, minutes=90))
    profile = store.get_profile("u1")

    assert profile.proficiency == {"python": pytest.approx(4.6), "testing": pytest.approx(4.6)}
    assert profile.last_interaction_id == "py-lab"
    assert profile.has_history


def test_duplicate_event_ignored(clock):
    store = create_store()
    event = create_event(clock, "py-intro", EventKind.APPLICATION)

    assert store.record_event(event) is True
    assert store.record_event(event) is False
    assert store.get_profile("u1").proficiency["python"] == pytest.approx(4.57)
    assert len(store.events_for("u1")) == 1


def test_completion_counted_once(clock):
    """測試同一內容完成兩次只計一次"""
    store = create_store()

    assert store.record_event(create_event(clock, "py-intro", EventKind.COMPLETION, days_ago=1)) is True
    assert store.record_event(create_event(clock, "py-intro", EventKind.COMPLETION)) is False

    profile = store.get_profile("u1")
    assert profile.completed_items == ["py-intro"]
    assert profile.proficiency["python"] == pytest.approx(3.85)


def test_streak_from_events(clock):
    store = create_store()
    for days_ago in [0, 1, 2, 5]:
        store.record_event(create_event(clock, "py-lab", EventKind.PROGRESS, minutes=10, days_ago=days_ago))

    assert store.get_profile("u1").streak_days == 3


def test_unknown_user_default_profile():
    store = create_store()

    profile = store.get_profile("ghost")

    assert profile.user_id == "ghost"
    assert profile.completed_items == []
    assert profile.has_history is False


def test_set_profile_normalizes_tags():
    store = create_store()

    store.set_profile("u1", ["ML", " python ", "ml"], [LearningMode.DEEP_DIVE])
    profile = store.get_profile("u1")

    assert profile.preferred_tags == ["ml", "python"]
    assert profile.exploration_modes == [LearningMode.DEEP_DIVE]
    assert profile.has_history is False


def test_event_for_unknown_content(clock):
    store = create_store()

    assert store.record_event(create_event(clock, "missing", EventKind.COMPLETION)) is True
    profile = store.get_profile("u1")
    assert profile.completed_items == ["missing"]
    assert profile.proficiency == {}


def test_event_history_is_bounded(clock):
    """測試超過 max_events_per_user 時丟棄最舊的事件，推導欄位保留"""
    catalog = {"py-lab": create_test_item("py-lab", ["python", "testing"])}
    store = UserHistoryStore(catalog.get, max_events_per_user=3)
    events = [create_event(clock, "py-lab", EventKind.PROGRESS, minutes=10, days_ago=d) for d in [4, 3, 2, 1, 0]]
    for event in events:
        assert store.record_event(event) is True

    retained = store.events_for("u1")
    assert [e.timestamp for e in retained] == [e.timestamp for e in events[2:]]
    assert len(store._users["u1"].seen_event_ids) == 3
    assert store.get_profile("u1").streak_days == 5

    # 早於保留範圍的事件無法去重，直接忽略
    assert store.record_event(events[0]) is False
    assert store.record_event(events[1]) is False
    assert len(store.events_for("u1")) == 3


def test_repeated_completion_does_not_grow_history(clock):
    store = create_store()
    store.record_event(create_event(clock, "py-intro", EventKind.COMPLETION, days_ago=3))

    for days_ago in [2, 1, 0]:
        assert store.record_event(create_event(clock, "py-intro", EventKind.COMPLETION, days_ago=days_ago)) is False

    assert len(store._users["u1"].seen_event_ids) == 1


def test_reads_for_unknown_users_register_nothing():
    store = create_store()

    store.get_profile("ghost")
    store.events_for("ghost")

    assert store.users() == []
    assert store._locks == {}
