"""
免费额度

免费用户每天（UTC）可提交的评估次数有限，付费用户不限。
检查发生在评估之前，计数在提交事务中递增。
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from app.core.config import EngineConfig, get_engine_config
from app.core.errors import UsageLimitExceededError
from app.core.timeutils import utcnow
from app.models import User

logger = logging.getLogger(__name__)


def _next_reset(now: datetime) -> datetime:
    return datetime(now.year, now.month, now.day) + timedelta(days=1)


class UsageService:
    """用量服务"""

    @staticmethod
    def _used_today(user: User, now: datetime) -> int:
        """已用次数；上次重置早于今天 UTC 零点时视为 0"""
        midnight = datetime(now.year, now.month, now.day)
        if user.usage_reset_at is None or user.usage_reset_at < midnight:
            return 0
        return user.loops_used_today or 0

    @staticmethod
    def get_usage(
        user: User,
        config: Optional[EngineConfig] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        config = config or get_engine_config()
        now = now or utcnow()
        used = UsageService._used_today(user, now)
        limit = config.free_tier_daily_limit
        return {
            "loops_used_today": used,
            "daily_limit": limit,
            "remaining_loops": None if user.is_paid else max(0, limit - used),
            "is_paid": bool(user.is_paid),
            "reset_at": _next_reset(now).isoformat(),
        }

    @staticmethod
    def check_limit(
        user: User,
        config: Optional[EngineConfig] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """
        评估前检查额度

        Raises:
            UsageLimitExceededError: 免费用户当日次数已用完
        """
        if user.is_paid:
            return
        config = config or get_engine_config()
        now = now or utcnow()
        if UsageService._used_today(user, now) >= config.free_tier_daily_limit:
            logger.info(f"用户 {user.id} 已达每日免费上限")
            raise UsageLimitExceededError(
                f"今日免费次数（{config.free_tier_daily_limit} 次）已用完，升级后可无限使用",
                usage=UsageService.get_usage(user, config, now),
            )

    @staticmethod
    def record_usage(db: Session, user: User, now: Optional[datetime] = None) -> None:
        """计数 +1（不提交事务，随提交记录一起提交）"""
        if user.is_paid:
            return
        now = now or utcnow()
        user.loops_used_today = UsageService._used_today(user, now) + 1
        user.usage_reset_at = now
        db.add(user)
