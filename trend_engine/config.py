"""
Configuration schemas using Pydantic

定義完整的配置結構，包含 Vector Index、Trend 重算、Scoring 權重、Refresh 排程與儲存後端。
"""

from datetime import timedelta
from typing import Dict, Optional, Literal
from pydantic import BaseModel, Field, model_validator
import os


class IndexConfig(BaseModel):
    """HNSW Vector Index 參數"""
    dimension: int = Field(default=384, gt=0, description="Embedding 維度")
    m: int = Field(default=16, ge=2, description="每層最大鄰居數 (layer 0 為 2*m)")
    ef_construction: int = Field(default=100, ge=1, description="建構時的候選集大小")
    ef_search: int = Field(default=50, ge=1, description="搜尋時的候選集大小 (recall/latency 取捨)")
    recall_floor: float = Field(default=0.9, gt=0, le=1, description="Filter 搜尋時的 recall 下限")
    max_overfetch: int = Field(default=8, ge=1, description="Post-filter over-fetch 倍數上限")
    random_seed: int = Field(default=42, description="Layer 抽樣 random seed")


class TrendConfig(BaseModel):
    """Momentum 重算參數"""
    cadence_minutes: int = Field(default=60, gt=0, description="重算時間窗 (分鐘)")
    signal_weights: Dict[str, float] = Field(
        default_factory=lambda: {"popularity": 0.4, "adoption": 0.3, "mentions": 0.3},
        description="各 signal 成長率權重"
    )
    signal_saturation: Dict[str, int] = Field(
        default_factory=lambda: {"popularity": 1000, "adoption": 1000, "mentions": 1000},
        description="單一時間窗內成長率飽和的計數"
    )
    min_score: float = Field(default=1.0, description="Momentum 下限 (baseline)")
    max_score: float = Field(default=10.0, description="Momentum 上限")
    emerging_window_days: int = Field(default=90, description="新主題加分期間 (天)")
    emerging_bonus: float = Field(default=1.5, description="新主題 velocity bonus")
    decay: float = Field(default=0.5, gt=0, lt=1, description="歷史時間窗衰減係數")
    history_windows: int = Field(default=6, ge=2, description="納入計算的時間窗數")
    status_epsilon: float = Field(default=0.25, ge=0, description="判定 rising/falling 的最小變化")
    inactive_after_days: int = Field(default=180, description="無 signal 多久後標記 inactive")

    @property
    def cadence(self) -> timedelta:
        return timedelta(minutes=self.cadence_minutes)


class ScoringConfig(BaseModel):
    """Composite score 權重 (可調整的起始值，非最佳化結果)"""
    alignment_weight: float = Field(default=0.3, description="類別對齊權重")
    mode_weight: float = Field(default=0.25, description="Learning mode 權重")
    momentum_weight: float = Field(default=0.25, description="Topic momentum 權重")
    novelty_weight: float = Field(default=0.2, description="Novelty 權重")
    candidate_multiplier: int = Field(default=4, ge=1, description="候選池大小 = k * multiplier")
    default_deadline_ms: Optional[int] = Field(None, description="recommend 預設 deadline (None=不限)")

    @model_validator(mode="after")
    def check_weights(self) -> "ScoringConfig":
        total = self.alignment_weight + self.mode_weight + self.momentum_weight + self.novelty_weight
        if abs(total - 1.0) > 0.01:
            raise ValueError(f"Scoring weights must sum to 1.0, got {total:.3f}")
        return self


class RefreshConfig(BaseModel):
    """Aggregate refresh 排程"""
    cadence_minutes: Dict[str, int] = Field(
        default_factory=lambda: {"trend_overview": 60, "topic_health": 60, "user_analytics": 240},
        description="各 aggregate 類型的 refresh 週期 (分鐘)"
    )
    retry_base_seconds: int = Field(default=30, gt=0, description="失敗重試的起始間隔")
    max_backoff_seconds: int = Field(default=3600, gt=0, description="重試間隔上限")
    tick_seconds: float = Field(default=5.0, gt=0, description="背景排程檢查間隔")
    background_workers: int = Field(default=2, ge=1, description="背景 worker 數")
    staleness_budget_factor: float = Field(default=2.0, gt=0, description="staleness budget = cadence * factor")

    def cadence_for(self, kind: str) -> timedelta:
        if kind not in self.cadence_minutes:
            raise ValueError(f"No refresh cadence configured for aggregate kind: {kind}")
        return timedelta(minutes=self.cadence_minutes[kind])


class WorkerConfig(BaseModel):
    """Request worker pool"""
    request_workers: int = Field(default=4, ge=1, description="recommend/get_snapshot worker 數")


class HistoryConfig(BaseModel):
    """使用者事件歷史保留"""
    max_events_per_user: int = Field(
        default=5000, ge=1,
        description="每位使用者保留的事件數；超過時丟棄最舊的事件 (推導欄位保留)"
    )


class StorageConfig(BaseModel):
    """儲存後端設定"""
    mode: Literal["none", "file", "postgres"] = Field(default="none", description="儲存後端")
    base_dir: str = Field(default="memory", description="File 後端目錄")
    postgres_dsn_env: Optional[str] = Field(None, description="Postgres DSN 的環境變數名稱")


class EngineConfig(BaseModel):
    """完整設定 schema"""
    index: IndexConfig = Field(default_factory=IndexConfig, description="Vector Index 參數")
    trends: TrendConfig = Field(default_factory=TrendConfig, description="Trend 重算參數")
    scoring: ScoringConfig = Field(default_factory=ScoringConfig, description="Scoring 權重")
    refresh: RefreshConfig = Field(default_factory=RefreshConfig, description="Refresh 排程")
    workers: WorkerConfig = Field(default_factory=WorkerConfig, description="Worker pool")
    history: HistoryConfig = Field(default_factory=HistoryConfig, description="事件歷史保留")
    storage: StorageConfig = Field(default_factory=StorageConfig, description="儲存後端")

    @classmethod
    def from_yaml(cls, yaml_path: str) -> "EngineConfig":
        """從 YAML 檔案載入設定"""
        import yaml
        with open(yaml_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return cls(**data)

    def get_postgres_dsn(self) -> Optional[str]:
        """取得 Postgres DSN (從環境變數)"""
        if self.storage.postgres_dsn_env:
            return os.environ.get(self.storage.postgres_dsn_env)
        return None
