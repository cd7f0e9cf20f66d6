"""
Core data models for the Trend-Aware Recommendation Engine

定義 ContentItem、TopicTrend、UserProfile、AggregateSnapshot 等元件間傳遞的契約。
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, List, Dict, Any, Literal
from pydantic import BaseModel, ConfigDict, Field, field_validator


class LearningMode(str, Enum):
    """探索學習模式"""
    DISCOVERY = "discovery"
    COMPARISON = "comparison"
    DEEP_DIVE = "deep_dive"
    EXPERIMENTATION = "experimentation"
    SYNTHESIS = "synthesis"
    CONTRIBUTION = "contribution"


class SignalKind(str, Enum):
    """外部 signal 類型"""
    POPULARITY = "popularity"
    ADOPTION = "adoption"
    MENTIONS = "mentions"


class TrendStatus(str, Enum):
    """由最近時間窗的 momentum 變化推導，不可直接設定"""
    RISING = "rising"
    FLAT = "flat"
    FALLING = "falling"


class EventKind(str, Enum):
    """使用者活動事件類型"""
    COMPLETION = "completion"
    APPLICATION = "application"
    PROGRESS = "progress"


def _normalize_tags(tags: List[str]) -> List[str]:
    return sorted({t.strip().lower() for t in tags if t and t.strip()})


class ContentItem(BaseModel):
    """
    Learning content (每個內容一筆)

    content_id 不可變；embedding 由外部 embedding service 提供，
    編輯後需重新 upsert。被 user history 引用時只會 soft-retire。
    """
    content_id: str = Field(..., min_length=1, description="穩定 ID")
    title: str = Field(default="", description="標題")
    embedding: List[float] = Field(default_factory=list, description="固定維度 embedding")
    tags: List[str] = Field(default_factory=list, description="類別 / 主題標籤 (lowercase, 已排序)")
    topics: List[str] = Field(default_factory=list, description="Trend Store topic keys (空則使用 tags)")
    mode: LearningMode = Field(default=LearningMode.DISCOVERY, description="Learning mode")
    estimated_minutes: int = Field(default=30, ge=0, description="預估時長 (分鐘)")
    trend_alignment: float = Field(default=5.0, ge=1, le=10, description="內建 trend alignment (1-10)")
    innovation_score: float = Field(default=5.0, ge=0, le=10, description="Novelty / innovation (0-10)")
    retired: bool = Field(default=False, description="Soft-retired")
    published_at: Optional[datetime] = Field(None, description="發布時間")
    updated_at: Optional[datetime] = Field(None, description="最後更新時間")

    @field_validator("tags", "topics")
    @classmethod
    def normalize_tags(cls, value: List[str]) -> List[str]:
        return _normalize_tags(value)

    @property
    def topic_keys(self) -> List[str]:
        return self.topics or self.tags


class SignalRecord(BaseModel):
    """外部 signal ingestion 的一筆 (topic, signal_kind, count)"""
    topic: str = Field(..., min_length=1, description="Topic key")
    signal_kind: SignalKind = Field(..., description="Signal 類型")
    count: int = Field(..., ge=0, description="本批次新增計數 (append-only)")

    @field_validator("topic")
    @classmethod
    def normalize_topic(cls, value: str) -> str:
        value = value.strip().lower()
        if not value:
            raise ValueError("topic must not be blank")
        return value


class TopicSignalState(BaseModel):
    """
    Topic 的 signal 計數狀態 (recompute 的唯一輸入)

    window_totals 記錄每個時間窗結束時的累計值。
    """
    topic: str
    totals: Dict[str, int] = Field(default_factory=dict, description="累計計數")
    window_totals: Dict[int, Dict[str, int]] = Field(default_factory=dict, description="時間窗 -> 累計計數")
    first_seen_at: Optional[datetime] = Field(None, description="第一次觀察到 signal")
    last_signal_at: Optional[datetime] = Field(None, description="最後一次 signal")


class TopicTrend(BaseModel):
    """
    Topic momentum (每個 topic 一筆)

    momentum_score 永遠是 signal 計數的決定性函數，不可手動修改。
    """
    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={
            "example": {
                "topic": "llm-agents",
                "momentum_score": 7.42,
                "status": "rising",
                "active": True,
                "priority_score": 6.18,
                "confidence": 0.67,
                "signal_totals": {"popularity": 1200, "adoption": 80},
                "momentum_history": [1.0, 3.1, 7.42],
                "recomputed_at": "2026-02-13T11:00:00Z",
                "window": 493835
            }
        }
    )

    topic: str = Field(..., description="Topic key")
    momentum_score: float = Field(..., description="Momentum (min_score-max_score)")
    status: TrendStatus = Field(..., description="rising | flat | falling")
    active: bool = Field(default=True, description="長期無 signal 則為 False")
    priority_score: float = Field(..., description="Learning priority (1-10)")
    confidence: float = Field(..., description="有資料的 signal 類型比例 (0-1)")
    signal_totals: Dict[str, int] = Field(default_factory=dict, description="重算時的累計計數")
    growth: Dict[str, float] = Field(default_factory=dict, description="本時間窗的正規化成長率 (0-1)")
    momentum_history: List[float] = Field(default_factory=list, description="最近時間窗 momentum (舊 -> 新)")
    first_seen_at: Optional[datetime] = Field(None, description="第一次觀察到 signal")
    last_signal_at: Optional[datetime] = Field(None, description="最後一次 signal")
    recomputed_at: datetime = Field(..., description="重算所屬時間窗的起點")
    window: int = Field(..., description="時間窗編號")


class ActivityEvent(BaseModel):
    """Profile system 傳入的 (user_id, content_id, event_kind, timestamp)"""
    user_id: str = Field(..., min_length=1)
    content_id: str = Field(..., min_length=1)
    event_kind: EventKind
    timestamp: datetime
    minutes_spent: float = Field(default=0.0, ge=0, description="投入時間 (分鐘)")


class UserProfile(BaseModel):
    """
    使用者 profile

    preferred_tags / exploration_modes 由外部 profile system 擁有；
    completed_items、proficiency、streak_days 為 engine 推導的欄位。
    """
    user_id: str
    preferred_tags: List[str] = Field(default_factory=list, description="偏好類別")
    exploration_modes: List[LearningMode] = Field(default_factory=list, description="偏好 learning modes")
    completed_items: List[str] = Field(default_factory=list, description="已完成內容 (已排序)")
    proficiency: Dict[str, float] = Field(default_factory=dict, description="skill -> proficiency (1-10)")
    streak_days: int = Field(default=0, description="連續活動天數")
    last_interaction_id: Optional[str] = Field(None, description="最近互動的內容")
    last_activity_at: Optional[datetime] = Field(None, description="最近活動時間")

    @field_validator("preferred_tags")
    @classmethod
    def normalize_tags(cls, value: List[str]) -> List[str]:
        return _normalize_tags(value)

    @property
    def has_history(self) -> bool:
        return self.last_activity_at is not None


class ScoreBreakdown(BaseModel):
    """Composite score 拆解 (0-10 尺度)"""
    alignment: float
    mode_match: float
    momentum: float
    novelty: float
    composite: float
    momentum_source: Literal["trend", "intrinsic"] = Field(default="trend", description="momentum 來源")
    partial: bool = Field(default=False, description="deadline 內略過 Trend Store 查詢")


class Recommendation(BaseModel):
    """單一推薦結果"""
    content_id: str
    title: str
    tags: List[str]
    mode: LearningMode
    estimated_minutes: int
    score: float
    breakdown: ScoreBreakdown


class RecommendationResult(BaseModel):
    """recommend() 的回傳"""
    user_id: str
    mode: LearningMode
    k: int
    items: List[Recommendation] = Field(default_factory=list)
    partial: bool = Field(default=False, description="deadline 內未完成 (best-effort)")
    strategy: str = Field(default="vector", description="vector | momentum_only")
    generated_at: datetime


class AggregateSnapshot(BaseModel):
    """
    Aggregate cache entry

    建立後不可變；refresh 時以新的 snapshot 整體替換。
    """
    model_config = ConfigDict(frozen=True)

    key: str = Field(..., description="user:<id> | topic:<key> | trends:overview")
    kind: str = Field(..., description="Aggregate 類型")
    version: int = Field(..., ge=1, description="每次 swap 遞增")
    computed_at: datetime
    staleness_budget_seconds: float = Field(..., description="超過則視為 stale (仍可讀取)")
    payload: Dict[str, Any] = Field(default_factory=dict)
    payload_hash: str = Field(default="", description="payload fingerprint")

    def is_stale(self, now: datetime) -> bool:
        return now - self.computed_at > timedelta(seconds=self.staleness_budget_seconds)
