"""
Error taxonomy

Input 驗證錯誤在邊界同步拒絕；背景重算錯誤只在 engine 內部重試與記錄。
"""

from typing import List, Optional, Tuple


class TrendEngineError(Exception):
    """Base error"""


class InputRejected(TrendEngineError, ValueError):
    """邊界輸入不合法，資料不會進入 index / store"""


class DimensionMismatch(InputRejected):
    """Embedding 維度與 index 設定不符"""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Expected vector of dimension {expected}, got {actual}")


class InvalidVector(InputRejected):
    """Embedding 含 NaN/Inf 或為零向量"""


class MalformedSignal(InputRejected):
    """Signal tuple 不合法 (未知 kind、負數 delta、空 topic)"""


class RecomputeFailed(TrendEngineError):
    """背景重算失敗 (transient，會以 backoff 重試)"""

    def __init__(self, key: str, cause: Optional[BaseException] = None):
        self.key = key
        self.cause = cause
        message = f"Recompute failed for {key}"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)


class DeadlineExceeded(TrendEngineError):
    """搜尋超過 deadline；partial 帶有目前為止的最佳結果"""

    def __init__(self, partial: Optional[List[Tuple[str, float]]] = None):
        self.partial = partial or []
        super().__init__(f"Deadline exceeded with {len(self.partial)} partial results")
