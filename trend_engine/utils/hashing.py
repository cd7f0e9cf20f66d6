"""Hashing utilities for event identity and config fingerprints."""

import hashlib
import json
from datetime import datetime
from typing import Dict, Any


def event_id(user_id: str, content_id: str, event_kind: str, timestamp: datetime) -> str:
    """
    產生 activity event 的穩定 ID (用於去重)
    
    Args:
        user_id: 使用者 ID
        content_id: 內容 ID
        event_kind: 事件類型
        timestamp: 事件時間
    
    Returns:
        SHA256 hash (hex, 前 16 字元)
    """
    key = f"{user_id}|{content_id}|{event_kind}|{timestamp.isoformat()}"
    return hashlib.sha256(key.encode('utf-8')).hexdigest()[:16]


def payload_hash(payload: Dict[str, Any]) -> str:
    """
    產生 snapshot payload 的 fingerprint
    
    Args:
        payload: JSON-serializable dict
    
    Returns:
        SHA256 hash (hex)
    """
    json_str = json.dumps(payload, sort_keys=True, ensure_ascii=False, default=str)
    return hashlib.sha256(json_str.encode('utf-8')).hexdigest()


def config_hash(config_dict: Dict[str, Any]) -> str:
    """
    產生 config hash
    
    Args:
        config_dict: 設定字典
    
    Returns:
        SHA256 hash (hex, 前 16 字元)
    """
    # 排除與計算結果無關的欄位 (例如 storage)
    stable_keys = ['index', 'trends', 'scoring']
    stable_config = {k: config_dict.get(k) for k in stable_keys if k in config_dict}
    
    json_str = json.dumps(stable_config, sort_keys=True, ensure_ascii=False)
    return hashlib.sha256(json_str.encode('utf-8')).hexdigest()[:16]
