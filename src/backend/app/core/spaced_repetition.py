"""
间隔复习调度工具类
"""
from datetime import datetime, timedelta
from typing import Optional

from app.core.timeutils import utcnow


class SpacedRepetitionScheduler:
    """复习间隔调度器"""

    INITIAL_INTERVAL_DAYS = 1
    MAX_INTERVAL_DAYS = 30

    # 复习分数档位
    GROW_THRESHOLD = 80   # >= 80 间隔翻倍
    RESET_THRESHOLD = 50  # < 50 间隔重置

    @classmethod
    def calculate_next_interval(cls, current_interval: int, score: int) -> int:
        """
        根据复习分数计算下一次复习间隔

        Args:
            current_interval: 当前间隔（天）
            score: 本次复习分数 0-100

        Returns:
            int: 新间隔（天），范围 [1, 30]
        """
        if score >= cls.GROW_THRESHOLD:
            interval = min(current_interval * 2, cls.MAX_INTERVAL_DAYS)
        elif score < cls.RESET_THRESHOLD:
            interval = cls.INITIAL_INTERVAL_DAYS
        else:
            interval = current_interval
        return max(cls.INITIAL_INTERVAL_DAYS, min(interval, cls.MAX_INTERVAL_DAYS))

    @classmethod
    def next_review_at(cls, interval_days: int, now: Optional[datetime] = None) -> datetime:
        """计算下次复习时间"""
        return (now or utcnow()) + timedelta(days=interval_days)
