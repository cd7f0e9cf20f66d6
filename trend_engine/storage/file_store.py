"""
File-based storage backend

Engine 狀態 (content、topic signal state、trends、aggregate snapshots) 儲存在本地檔案系統。
"""

import json
from typing import List
from pathlib import Path
import logging

from trend_engine.models import AggregateSnapshot, ContentItem, TopicSignalState, TopicTrend

logger = logging.getLogger(__name__)


class FileStore:
    """檔案儲存後端"""

    def __init__(self, base_dir: str = "memory"):
        """
        初始化 FileStore

        Args:
            base_dir: 基礎目錄
        """
        self.base_dir = Path(base_dir)
        self.content_dir = self.base_dir / "content"
        self.topics_dir = self.base_dir / "topics"
        self.snapshots_dir = self.base_dir / "snapshots"

        for dir_path in [self.content_dir, self.topics_dir, self.snapshots_dir]:
            dir_path.mkdir(parents=True, exist_ok=True)

        logger.info(f"FileStore initialized at {self.base_dir}")

    def _write_jsonl(self, file_path: Path, records: list) -> None:
        with open(file_path, 'w', encoding='utf-8') as f:
            for record in records:
                json_line = json.dumps(record.model_dump(mode="json"), ensure_ascii=False, default=str)
                f.write(json_line + '\n')

    def _read_jsonl(self, file_path: Path) -> List[dict]:
        if not file_path.exists():
            return []

        rows = []
        with open(file_path, 'r', encoding='utf-8') as f:
            for line in f:
                if line.strip():
                    rows.append(json.loads(line))
        return rows

    def save_content(self, items: List[ContentItem]) -> None:
        """寫入 content items (JSONL格式)"""
        file_path = self.content_dir / "items.jsonl"
        self._write_jsonl(file_path, items)
        logger.info(f"Written {len(items)} content items: {file_path}")

    def save_topic_states(self, states: List[TopicSignalState]) -> None:
        """寫入 topic signal 狀態 (JSONL格式)"""
        file_path = self.topics_dir / "signal_states.jsonl"
        self._write_jsonl(file_path, states)
        logger.info(f"Written {len(states)} topic signal states: {file_path}")

    def save_trends(self, trends: List[TopicTrend]) -> None:
        """寫入 topic trends (JSON格式)"""
        file_path = self.topics_dir / "trends.json"
        trends_data = [trend.model_dump(mode="json") for trend in trends]

        with open(file_path, 'w', encoding='utf-8') as f:
            json.dump(trends_data, f, indent=2, ensure_ascii=False, default=str)

        logger.info(f"Written {len(trends)} topic trends: {file_path}")

    def save_snapshots(self, snapshots: List[AggregateSnapshot]) -> None:
        """寫入 aggregate snapshots (JSONL格式)"""
        file_path = self.snapshots_dir / "snapshots.jsonl"
        self._write_jsonl(file_path, snapshots)
        logger.info(f"Written {len(snapshots)} snapshots: {file_path}")

    def read_content(self) -> List[ContentItem]:
        """讀取 content items"""
        return [ContentItem(**row) for row in self._read_jsonl(self.content_dir / "items.jsonl")]

    def read_topic_states(self) -> List[TopicSignalState]:
        """讀取 topic signal 狀態"""
        return [TopicSignalState(**row) for row in self._read_jsonl(self.topics_dir / "signal_states.jsonl")]

    def read_trends(self) -> List[TopicTrend]:
        """讀取 topic trends"""
        file_path = self.topics_dir / "trends.json"

        if not file_path.exists():
            return []

        with open(file_path, 'r', encoding='utf-8') as f:
            trends_data = json.load(f)

        return [TopicTrend(**trend_data) for trend_data in trends_data]

    def read_snapshots(self) -> List[AggregateSnapshot]:
        """讀取 aggregate snapshots"""
        return [AggregateSnapshot(**row) for row in self._read_jsonl(self.snapshots_dir / "snapshots.jsonl")]
