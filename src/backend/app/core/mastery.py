"""
掌握度计算

所有"按时间衰减的掌握度"都只经过 recency_weight 这一处，
知识图谱、概念详情、统计分桶、复习优先级共用同一套档位。
"""
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from app.core.timeutils import to_naive_utc, utcnow

# 统计分桶阈值
MASTERED_THRESHOLD = 80
LEARNING_THRESHOLD = 40

# 需要复习的判定
NEEDS_REVIEW_MASTERY = 60
NEEDS_REVIEW_STALE_DAYS = 7

# 薄弱点判定
WEAK_SPOT_MIN_ENCOUNTERS = 2
WEAK_SPOT_MASTERY = 50

# 概念重要性权重
IMPORTANCE_WEIGHTS = {
    "core": 1.15,
    "supporting": 1.0,
    "detail": 0.85,
}

# 阶段权重：越靠后的阶段越能证明掌握
PHASE_WEIGHTS = {
    "simplify": 1.1,
    "second_attempt": 1.0,
    "learning": 0.9,
    "first_attempt": 0.85,
}

# (天数上限, 权重)，上限含边界
_RECENCY_TIERS = (
    (7, 1.0),
    (14, 0.9),
    (30, 0.75),
    (60, 0.5),
)
_STALE_WEIGHT = 0.25


def round_half_up(value: float) -> int:
    """四舍五入（0.5 进位），避免 Python 内置 round 的银行家舍入"""
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def recency_weight(last_seen_at: Optional[datetime], now: Optional[datetime] = None) -> float:
    """
    根据最后一次出现时间计算衰减权重

    从未出现（None）按最陈旧档位处理。
    """
    if last_seen_at is None:
        return _STALE_WEIGHT
    now = to_naive_utc(now) if now else utcnow()
    elapsed = now - to_naive_utc(last_seen_at)
    for limit, weight in _RECENCY_TIERS:
        if elapsed <= timedelta(days=limit):
            return weight
    return _STALE_WEIGHT


def decayed_mastery(mastery: int, last_seen_at: Optional[datetime], now: Optional[datetime] = None) -> float:
    """衰减后的掌握度（不取整），统计分桶和平均值都用它"""
    return mastery * recency_weight(last_seen_at, now)


def effective_mastery(mastery: int, last_seen_at: Optional[datetime], now: Optional[datetime] = None) -> int:
    """衰减后的掌握度，取整后用于展示"""
    return round_half_up(decayed_mastery(mastery, last_seen_at, now))


def mastery_bucket(mastery: float) -> str:
    """掌握度分桶: mastered / learning / new"""
    if mastery >= MASTERED_THRESHOLD:
        return "mastered"
    if mastery >= LEARNING_THRESHOLD:
        return "learning"
    return "new"


def compute_mastery_score(
    times_encountered: int,
    times_demonstrated: int,
    importance: Optional[str],
    demonstrated_phase: Optional[str],
) -> int:
    """
    计算概念掌握度

    基础分 = 展示次数 / 出现次数 * 100；仅在本次被展示时再乘以重要性和阶段权重。

    Args:
        times_encountered: 累计出现次数（已包含本次）
        times_demonstrated: 累计展示次数（已包含本次）
        importance: 概念重要性 core / supporting / detail
        demonstrated_phase: 本次展示所在阶段，未展示时为 None

    Returns:
        int: 掌握度 0-100
    """
    if times_encountered <= 0:
        return 0
    base = times_demonstrated / times_encountered * 100
    if demonstrated_phase:
        base *= IMPORTANCE_WEIGHTS.get(importance or "supporting", 1.0)
        base *= PHASE_WEIGHTS.get(demonstrated_phase, 1.0)
    return min(100, round_half_up(base))


def normalize_concept_name(name: str) -> str:
    """概念名归一化（小写、去首尾空白）"""
    return name.strip().lower()
