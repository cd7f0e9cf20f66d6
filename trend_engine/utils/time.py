"""Time utilities for timezone-aware datetime handling and cadence windows."""

from datetime import datetime, timezone, timedelta
from typing import Optional
import pytz


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utcnow() -> datetime:
    """取得當前 UTC 時間 (tz-aware)"""
    return datetime.now(timezone.utc)


def to_utc(dt: datetime, tz_name: Optional[str] = None) -> datetime:
    """
    轉換時間為 UTC tz-aware datetime
    
    Args:
        dt: 輸入時間
        tz_name: 原時區名稱 (若 dt 為 naive)
    
    Returns:
        UTC tz-aware datetime
    """
    if dt.tzinfo is None:
        # Naive datetime，需要指定時區
        if tz_name:
            tz = pytz.timezone(tz_name)
            dt = tz.localize(dt)
        else:
            # 假設為 UTC
            dt = dt.replace(tzinfo=timezone.utc)
    
    return dt.astimezone(timezone.utc)


def window_index(dt: datetime, cadence: timedelta) -> int:
    """
    取得 cadence 時間窗編號
    
    同一個時間窗內的 recompute 會得到相同的結果 (idempotent)。
    
    Args:
        dt: 時間 (會轉換為 UTC)
        cadence: 時間窗長度
    
    Returns:
        自 epoch 起的時間窗編號
    """
    seconds = cadence.total_seconds()
    if seconds <= 0:
        raise ValueError(f"Cadence must be positive: {cadence}")
    
    return int((to_utc(dt) - EPOCH).total_seconds() // seconds)


def window_start(index: int, cadence: timedelta) -> datetime:
    """時間窗起點 (UTC)"""
    return EPOCH + cadence * index


def get_daily_bucket(dt: datetime) -> str:
    """
    取得日期桶 (YYYY-MM-DD)
    
    Args:
        dt: 時間 (會轉換為 UTC)
    
    Returns:
        YYYY-MM-DD 格式字串
    """
    return to_utc(dt).strftime("%Y-%m-%d")
