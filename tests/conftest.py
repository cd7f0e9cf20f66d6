"""
Shared fixtures
"""

import pytest
from datetime import datetime, timedelta, timezone


class FakeClock:
    """可控制的時間來源 (注入各元件的 clock 參數)"""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    # 整點開始，方便對齊 cadence 時間窗
    return FakeClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))
