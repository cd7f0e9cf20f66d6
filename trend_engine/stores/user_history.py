"""
User History Store

Profile 的靜態欄位 (偏好 tags、modes) 由外部 profile system 提供；
completed set、skill proficiency、streak 由 engine 依事件推導，並在事件寫入時同步更新。
"""

from datetime import date, datetime
from typing import Callable, Dict, Iterable, List, Optional, Set
import logging
import threading

from trend_engine.models import ActivityEvent, ContentItem, EventKind, LearningMode, UserProfile
from trend_engine.processing.proficiency import SkillCounters, apply_event, calculate_proficiency, calculate_streak
from trend_engine.utils import hashing
from trend_engine.utils.time import to_utc

logger = logging.getLogger(__name__)


class _UserState:
    __slots__ = (
        "preferred_tags", "exploration_modes", "completed", "seen_event_ids", "skills",
        "proficiency", "active_dates", "events", "horizon", "last_interaction_id", "last_activity_at"
    )

    def __init__(self):
        self.preferred_tags: List[str] = []
        self.exploration_modes: List[LearningMode] = []
        self.completed: Set[str] = set()
        # 與 events 一一對應 (保留中的事件)
        self.seen_event_ids: Set[str] = set()
        self.skills: Dict[str, SkillCounters] = {}
        self.proficiency: Dict[str, float] = {}
        self.active_dates: Set[date] = set()
        self.events: List[ActivityEvent] = []
        # 已丟棄事件中最新的 timestamp；不晚於此的事件無法再去重，一律忽略
        self.horizon: Optional[datetime] = None
        self.last_interaction_id: Optional[str] = None
        self.last_activity_at: Optional[datetime] = None


def _event_key(event: ActivityEvent, timestamp: datetime) -> str:
    return hashing.event_id(event.user_id, event.content_id, event.event_kind.value, timestamp)


class UserHistoryStore:
    """Per-user history with per-user locks"""

    def __init__(
        self,
        content_lookup: Callable[[str], Optional[ContentItem]],
        max_events_per_user: int = 5000
    ):
        self.content_lookup = content_lookup
        self.max_events_per_user = max_events_per_user
        self._users: Dict[str, _UserState] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, user_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[user_id] = lock
            return lock

    def _state(self, user_id: str) -> _UserState:
        state = self._users.get(user_id)
        if state is None:
            state = _UserState()
            self._users[user_id] = state
        return state

    def users(self) -> List[str]:
        # copy 後再排序，其他 thread 可能同時新增使用者
        return sorted(self._users.copy())

    def set_profile(
        self,
        user_id: str,
        preferred_tags: Iterable[str] = (),
        exploration_modes: Iterable[LearningMode] = ()
    ) -> None:
        """由外部 profile system 設定靜態欄位"""
        profile = UserProfile(
            user_id=user_id,
            preferred_tags=list(preferred_tags),
            exploration_modes=list(exploration_modes)
        )
        with self._lock_for(user_id):
            state = self._state(user_id)
            state.preferred_tags = profile.preferred_tags
            state.exploration_modes = profile.exploration_modes

    def record_event(self, event: ActivityEvent) -> bool:
        """
        寫入活動事件並同步更新推導欄位 (fast-path)

        只重算該內容 tags 對應的 skills，成本與 tags 數成正比。
        重複事件 (同 user/content/kind/timestamp) 會被忽略；同一內容完成兩次只計一次。
        事件數超過 max_events_per_user 時丟棄最舊的事件，早於保留範圍的事件會被忽略。

        Returns:
            True 表示事件被套用
        """
        timestamp = to_utc(event.timestamp)
        event_key = _event_key(event, timestamp)
        content = self.content_lookup(event.content_id)
        skills = content.tags if content is not None else []

        with self._lock_for(event.user_id):
            state = self._state(event.user_id)
            if event_key in state.seen_event_ids:
                logger.debug(f"Duplicate event ignored: {event_key}")
                return False
            if state.horizon is not None and timestamp <= state.horizon:
                logger.debug(f"Event {event_key} is older than retained history of {event.user_id}, ignored")
                return False
            if event.event_kind == EventKind.COMPLETION and event.content_id in state.completed:
                logger.debug(f"Content {event.content_id} already completed by {event.user_id}")
                return False

            state.seen_event_ids.add(event_key)
            state.events.append(event.model_copy(update={"timestamp": timestamp}))

            if event.event_kind == EventKind.COMPLETION:
                state.completed.add(event.content_id)

            for skill in skills:
                counters = apply_event(state.skills.get(skill, SkillCounters()), event.event_kind, event.minutes_spent)
                state.skills[skill] = counters
                state.proficiency[skill] = calculate_proficiency(counters)

            state.active_dates.add(timestamp.date())
            if state.last_activity_at is None or timestamp >= state.last_activity_at:
                state.last_activity_at = timestamp
                state.last_interaction_id = event.content_id

            if len(state.events) > self.max_events_per_user:
                self._trim_events(event.user_id, state)

        return True

    def _trim_events(self, user_id: str, state: _UserState) -> None:
        """丟棄最舊的事件 (completed / proficiency / streak 等推導欄位不變)"""
        state.events.sort(key=lambda e: e.timestamp)
        overflow = len(state.events) - self.max_events_per_user
        dropped = state.events[:overflow]
        state.events = state.events[overflow:]

        for old in dropped:
            state.seen_event_ids.discard(_event_key(old, old.timestamp))
        state.horizon = dropped[-1].timestamp
        logger.debug(f"Trimmed {overflow} events of {user_id} (horizon={state.horizon.isoformat()})")

    def record_events(self, events: Iterable[ActivityEvent]) -> int:
        applied = sum(1 for event in events if self.record_event(event))
        logger.info(f"Applied {applied} activity events")
        return applied

    def get_profile(self, user_id: str) -> UserProfile:
        """
        取得 profile view；未知使用者回傳空的預設 profile
        """
        if user_id not in self._users:
            return UserProfile(user_id=user_id)

        with self._lock_for(user_id):
            state = self._users[user_id]
            return UserProfile(
                user_id=user_id,
                preferred_tags=list(state.preferred_tags),
                exploration_modes=list(state.exploration_modes),
                completed_items=sorted(state.completed),
                proficiency=dict(sorted(state.proficiency.items())),
                streak_days=calculate_streak(state.active_dates),
                last_interaction_id=state.last_interaction_id,
                last_activity_at=state.last_activity_at
            )

    def events_for(self, user_id: str) -> List[ActivityEvent]:
        """保留中的事件 (最多 max_events_per_user 筆)"""
        if user_id not in self._users:
            return []

        with self._lock_for(user_id):
            return list(self._users[user_id].events)
