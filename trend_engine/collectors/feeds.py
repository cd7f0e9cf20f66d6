"""
Boundary Loaders

從 JSONL 檔案讀取外部協作系統提供的資料：
- signal batches: {"topic", "signal_kind", "count"}
- activity events: {"user_id", "content_id", "event_kind", "timestamp", "minutes_spent"}
- content items: ContentItem 欄位 (embedding 由外部 embedding service 產生)

不合法的資料列在邊界記錄後略過，不會進入 index / store。
"""

from pathlib import Path
from typing import Any, Callable, Iterator, List, Optional, Tuple, TypeVar
import json
import logging

from pydantic import BaseModel, ValidationError

from trend_engine.models import ActivityEvent, ContentItem, SignalRecord
from trend_engine.utils import time as time_utils

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


def iter_jsonl(path: str) -> Iterator[Tuple[int, Any]]:
    """
    逐行讀取 JSONL (略過空行)

    Yields:
        (line_number, parsed value 或 JSONDecodeError)
    """
    with open(Path(path), 'r', encoding='utf-8') as f:
        for line_no, line in enumerate(f, 1):
            if not line.strip():
                continue
            try:
                yield line_no, json.loads(line)
            except json.JSONDecodeError as e:
                yield line_no, e


def _load_records(
    path: str,
    model: type,
    label: str,
    check: Optional[Callable[[Any], None]] = None
) -> Tuple[List[T], int]:
    records = []
    rejected = 0

    for line_no, row in iter_jsonl(path):
        if isinstance(row, json.JSONDecodeError):
            logger.warning(f"{path}:{line_no} rejected {label}: invalid JSON ({row})")
            rejected += 1
            continue
        if not isinstance(row, dict):
            logger.warning(f"{path}:{line_no} rejected {label}: expected an object")
            rejected += 1
            continue

        try:
            record = model(**row)
            if check is not None:
                check(record)
        except (ValidationError, ValueError) as e:
            logger.warning(f"{path}:{line_no} rejected {label}: {e}")
            rejected += 1
            continue

        records.append(record)

    logger.info(f"Loaded {len(records)} {label} records from {path} ({rejected} rejected)")
    return records, rejected


def load_signal_batch(path: str) -> Tuple[List[SignalRecord], int]:
    """
    讀取 signal batch

    Args:
        path: JSONL 檔案路徑

    Returns:
        (SignalRecords, rejected_count)
    """
    return _load_records(path, SignalRecord, "signal")


def load_activity_events(path: str, run_timezone: Optional[str] = None) -> Tuple[List[ActivityEvent], int]:
    """
    讀取 activity events

    Args:
        path: JSONL 檔案路徑
        run_timezone: naive timestamp 的時區 (None = UTC)

    Returns:
        (ActivityEvents, rejected_count)，timestamp 已轉為 UTC
    """
    events, rejected = _load_records(path, ActivityEvent, "event")
    events = [
        event.model_copy(update={"timestamp": time_utils.to_utc(event.timestamp, run_timezone)})
        for event in events
    ]
    return events, rejected


def load_content_items(path: str, dimension: Optional[int] = None) -> Tuple[List[ContentItem], int]:
    """
    讀取 content items

    Args:
        path: JSONL 檔案路徑
        dimension: 預期的 embedding 維度 (None = 不檢查)

    Returns:
        (ContentItems, rejected_count)
    """
    def check_dimension(item: ContentItem) -> None:
        if dimension is not None and not item.retired and len(item.embedding) != dimension:
            raise ValueError(f"embedding dimension {len(item.embedding)} != {dimension}")

    return _load_records(path, ContentItem, "content", check_dimension)
