"""
Skill proficiency (incremental fast-path)

Proficiency 是 skill 計數的 pure function；每次事件只更新該內容 tags 對應的 skills。
"""

from datetime import date
from typing import Iterable
from pydantic import BaseModel, Field

from trend_engine.models import EventKind

BASELINE_PROFICIENCY = 3.0
MAX_PROFICIENCY = 10.0

COMPLETION_WEIGHT = 0.8
APPLICATION_WEIGHT = 1.5
LEARNING_HOURS_PER_POINT = 20.0
PRACTICE_HOURS_PER_POINT = 15.0


class SkillCounters(BaseModel):
    """單一 skill 的累計計數"""
    completions: int = Field(default=0, ge=0)
    applications: int = Field(default=0, ge=0)
    learning_minutes: float = Field(default=0.0, ge=0)
    practice_minutes: float = Field(default=0.0, ge=0)


def apply_event(counters: SkillCounters, event_kind: EventKind, minutes: float) -> SkillCounters:
    """
    套用一個事件，回傳新的計數 (不修改輸入)

    - completion: completions + 1，時間計入 learning
    - application: applications + 1，時間計入 practice
    - progress: 只累加 learning 時間
    """
    update = {}
    if event_kind == EventKind.COMPLETION:
        update["completions"] = counters.completions + 1
        update["learning_minutes"] = counters.learning_minutes + minutes
    elif event_kind == EventKind.APPLICATION:
        update["applications"] = counters.applications + 1
        update["practice_minutes"] = counters.practice_minutes + minutes
    else:
        update["learning_minutes"] = counters.learning_minutes + minutes
    return counters.model_copy(update=update)


def calculate_proficiency(counters: SkillCounters) -> float:
    """
    Proficiency (BASELINE-10)

    baseline + 完成數 * 0.8 + 應用數 * 1.5 + 學習時數 / 20 + 實作時數 / 15
    """
    score = (
        BASELINE_PROFICIENCY +
        counters.completions * COMPLETION_WEIGHT +
        counters.applications * APPLICATION_WEIGHT +
        (counters.learning_minutes / 60.0) / LEARNING_HOURS_PER_POINT +
        (counters.practice_minutes / 60.0) / PRACTICE_HOURS_PER_POINT
    )
    return round(min(MAX_PROFICIENCY, score), 2)


def calculate_streak(active_dates: Iterable[date]) -> int:
    """
    以最後活動日為終點的連續天數

    Args:
        active_dates: 有活動的日期

    Returns:
        連續天數 (無活動為 0)
    """
    dates = set(active_dates)
    if not dates:
        return 0

    current = max(dates)
    streak = 0
    while current in dates:
        streak += 1
        current = date.fromordinal(current.toordinal() - 1)
    return streak
