"""
时间工具

数据库统一存储不带时区的 UTC 时间（naive datetime）。
"""
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """获取当前 UTC 时间（naive，与数据库存储格式一致）"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """把带时区的时间转换为 naive UTC，naive 时间原样返回"""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def days_since(value: Optional[datetime], now: Optional[datetime] = None) -> Optional[int]:
    """
    计算距今经过的整天数

    Args:
        value: 起始时间，为 None 时返回 None
        now: 当前时间（默认 utcnow）

    Returns:
        Optional[int]: 经过的整天数
    """
    if value is None:
        return None
    now = to_naive_utc(now) if now else utcnow()
    return (now - to_naive_utc(value)).days
