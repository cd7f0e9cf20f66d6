"""
End-to-end tests for TrendEngine wiring, aggregates and persistence
"""

import threading
from datetime import timedelta

import pytest

from trend_engine.config import EngineConfig, IndexConfig, StorageConfig
from trend_engine.engine import TREND_OVERVIEW_KEY, TREND_RECOMPUTE_JOB, TrendEngine, initialize_storage
from trend_engine.errors import DimensionMismatch
from trend_engine.models import ActivityEvent, ContentItem, EventKind, LearningMode
from trend_engine.processing.aggregates import calculate_trend_overview
from trend_engine.storage.file_store import FileStore


def create_test_item(content_id: str, embedding, tags, **kwargs) -> ContentItem:
    """Helper to create test item"""
    return ContentItem(content_id=content_id, title=content_id, embedding=embedding, tags=tags, **kwargs)


def create_engine(clock, storage=None, auto_schedule=True) -> TrendEngine:
    config = EngineConfig(index=IndexConfig(dimension=3))
    engine = TrendEngine(config, clock=clock, storage=storage, auto_schedule=auto_schedule)
    engine.publish_content(create_test_item("intro-ml", [1, 0, 0], ["ml"], innovation_score=6, trend_alignment=7))
    engine.publish_content(create_test_item("ml-lab", [0.9, 0.1, 0], ["ml"], mode=LearningMode.EXPERIMENTATION))
    engine.publish_content(create_test_item("web-basics", [0, 1, 0], ["web"], trend_alignment=3))
    return engine


def record(engine: TrendEngine, clock, content_id: str, kind: EventKind, minutes: float = 60) -> None:
    engine.record_event(ActivityEvent(
        user_id="u1",
        content_id=content_id,
        event_kind=kind,
        timestamp=clock(),
        minutes_spent=minutes
    ))


def test_publish_rejects_wrong_dimension(clock):
    """測試維度不符的內容被拒絕且 index 不變"""
    engine = create_engine(clock)

    with pytest.raises(DimensionMismatch):
        engine.publish_content(create_test_item("bad", [1, 0], ["ml"]))

    assert len(engine.index) == 3
    assert engine.get_content("bad") is None


def test_edit_keeps_published_at(clock):
    engine = create_engine(clock)
    original = engine.get_content("intro-ml")

    clock.advance(days=1)
    edited = engine.publish_content(create_test_item("intro-ml", [0, 0, 1], ["ml", "python"]))

    assert edited.published_at == original.published_at
    assert edited.updated_at == clock()
    assert engine.index.matching_ids(["python"]) == frozenset({"intro-ml"})


def test_user_analytics_snapshot(clock):
    """測試活動事件自動排程使用者 aggregate，tick 後可讀取"""
    engine = create_engine(clock)
    record(engine, clock, "intro-ml", EventKind.COMPLETION)
    record(engine, clock, "ml-lab", EventKind.APPLICATION, minutes=120)

    assert engine.get_snapshot("user:u1") is None
    engine.tick()

    snapshot = engine.get_snapshot("user:u1")
    assert snapshot.kind == "user_analytics"
    assert snapshot.payload["user_id"] == "u1"
    assert snapshot.payload["completed_count"] == 1
    assert snapshot.payload["application_count"] == 1
    assert snapshot.payload["exploration_velocity"] == 1.0
    assert snapshot.payload["innovation_index"] == pytest.approx(0.5)
    assert snapshot.payload["trend_awareness_score"] == pytest.approx(6.0)
    assert snapshot.payload["streak_days"] == 1
    assert snapshot.payload["active_days"] == 1
    assert snapshot.payload["topics_explored"] == {"ml": 2}


def test_snapshot_not_recomputed_on_read(clock):
    """測試讀取時不會重算 (新事件要等下一次 refresh)"""
    engine = create_engine(clock)
    record(engine, clock, "intro-ml", EventKind.COMPLETION)
    engine.tick()
    before = engine.get_snapshot("user:u1")

    clock.advance(minutes=1)
    record(engine, clock, "ml-lab", EventKind.COMPLETION)

    assert engine.get_snapshot("user:u1") == before
    assert engine.get_profile("u1").completed_items == ["intro-ml", "ml-lab"]

    engine.force_refresh("user:u1")
    assert engine.get_snapshot("user:u1").payload["completed_count"] == 2


def test_topic_health_snapshot(clock):
    engine = create_engine(clock)
    engine.record_signal("ml", "popularity", 100)
    engine.recompute_all()
    record(engine, clock, "intro-ml", EventKind.COMPLETION)
    engine.tick()

    health = engine.get_snapshot("topic:ml").payload

    assert health["topic"] == "ml"
    assert health["content_count"] == 2
    assert health["active_content_count"] == 2
    assert health["active_learners"] == 1
    assert health["status"] is not None


def test_trend_overview(clock):
    engine = create_engine(clock, auto_schedule=False)
    for topic, count in [("ml", 0), ("web", 0)]:
        engine.record_signal(topic, "popularity", count)
    engine.recompute_all()
    clock.advance(hours=1)
    engine.record_signal("ml", "popularity", 800)
    engine.recompute_all()

    snapshot = engine.force_refresh(TREND_OVERVIEW_KEY)

    assert snapshot.payload["topic_count"] == 2
    assert snapshot.payload["status_counts"] == {"flat": 1, "rising": 1}
    assert [t["topic"] for t in snapshot.payload["top_rising"]] == ["ml"]


def test_trend_overview_empty(clock):
    payload = calculate_trend_overview([], clock())

    assert payload["topic_count"] == 0
    assert payload["avg_momentum"] == 0.0


def test_scheduled_trend_recompute(clock):
    """測試排程的 trend 重算"""
    engine = create_engine(clock, auto_schedule=False)
    engine.record_signal("ml", "adoption", 10)
    job = engine.schedule_trend_recompute()

    assert TREND_RECOMPUTE_JOB in engine.tick()
    assert engine.get_topic_trend("ml") is not None
    assert job.next_due == clock() + timedelta(minutes=60)


def test_scheduled_trend_recompute_failure_backs_off(clock, monkeypatch):
    engine = create_engine(clock, auto_schedule=False)
    engine.record_signal("ml", "adoption", 10)
    job = engine.schedule_trend_recompute()

    def broken(state, window, config):
        raise IOError("feed unavailable")

    monkeypatch.setattr("trend_engine.stores.trend_store.compute_topic_trend", broken)

    assert engine.tick() == []
    assert job.failures == 1
    assert engine.get_topic_trend("ml") is None


def test_persist_and_restore(clock, tmp_path):
    """測試透過 FileStore 持久化並還原 (index 由 embeddings 重建)"""
    engine = create_engine(clock, storage=FileStore(str(tmp_path)))
    engine.retire_content("web-basics")
    engine.record_signal("ml", "popularity", 300)
    engine.recompute_all()
    engine.force_refresh(TREND_OVERVIEW_KEY)

    assert engine.persist() is True

    restored = TrendEngine(EngineConfig(index=IndexConfig(dimension=3)), clock=clock,
                           storage=FileStore(str(tmp_path)))
    assert restored.restore() is True

    assert len(restored.index) == 2
    assert restored.get_content("web-basics").retired is True
    assert restored.get_topic_trend("ml") == engine.get_topic_trend("ml")
    assert restored.get_snapshot(TREND_OVERVIEW_KEY) == engine.get_snapshot(TREND_OVERVIEW_KEY)
    assert restored.recompute_topic("ml") == engine.get_topic_trend("ml")


def test_persist_without_storage(clock):
    engine = create_engine(clock)

    assert engine.persist() is False
    assert engine.restore() is False


def test_initialize_storage(tmp_path, monkeypatch):
    assert initialize_storage(EngineConfig()) is None

    store = initialize_storage(EngineConfig(storage=StorageConfig(mode="file", base_dir=str(tmp_path))))
    assert isinstance(store, FileStore)

    monkeypatch.delenv("TREND_ENGINE_TEST_DSN", raising=False)
    with pytest.raises(ValueError):
        initialize_storage(EngineConfig(storage=StorageConfig(mode="postgres", postgres_dsn_env="TREND_ENGINE_TEST_DSN")))


def test_start_and_stop(clock):
    engine = create_engine(clock)
    engine.start()
    engine.stop()

    assert engine.orchestrator._thread is None


def test_start_schedules_trend_jobs(clock):
    """測試 start 會自行排程 trend 重算與 trends:overview"""
    engine = create_engine(clock, auto_schedule=False)
    engine.record_signal("ml", "popularity", 100)

    engine.start()
    engine.stop()

    assert engine.orchestrator.get_job(TREND_RECOMPUTE_JOB) is not None
    assert engine.orchestrator.get_job(TREND_OVERVIEW_KEY) is not None

    clock.advance(minutes=60)
    completed = engine.tick()

    assert TREND_RECOMPUTE_JOB in completed
    assert TREND_OVERVIEW_KEY in completed
    assert engine.get_topic_trend("ml") is not None
    assert engine.get_snapshot(TREND_OVERVIEW_KEY).payload["topic_count"] == 1


def test_start_keeps_existing_trend_schedule(clock):
    engine = create_engine(clock, auto_schedule=False)
    engine.schedule_trend_recompute(timedelta(minutes=15))

    engine.start()
    engine.stop()

    assert engine.orchestrator.get_job(TREND_RECOMPUTE_JOB).cadence == timedelta(minutes=15)


def test_reads_during_concurrent_writes(clock):
    """測試寫入同時進行時，cold-start 推薦與 trend 讀取不會失敗"""
    engine = create_engine(clock)
    errors = []
    done = threading.Event()

    def writer():
        try:
            for i in range(300):
                engine.publish_content(create_test_item(f"new-{i}", [1, 0.01 * i, 0], [f"tag-{i}"]))
                engine.record_signal(f"topic-{i}", "popularity", i)
                engine.recompute_topic(f"topic-{i}")
                engine.record_event(ActivityEvent(
                    user_id=f"writer-{i}",
                    content_id="intro-ml",
                    event_kind=EventKind.COMPLETION,
                    timestamp=clock(),
                    minutes_spent=5
                ))
        except Exception as e:
            errors.append(repr(e))
        finally:
            done.set()

    thread = threading.Thread(target=writer)
    thread.start()
    while not done.is_set():
        try:
            engine.recommend("u-new", LearningMode.DISCOVERY, 5)
            engine.trending(min_momentum=0)
            engine.trends.all_trends()
            engine.catalog.all_items()
            engine.history.users()
        except Exception as e:
            errors.append(repr(e))
    thread.join()

    assert errors == []
    assert len(engine.index) == 303
