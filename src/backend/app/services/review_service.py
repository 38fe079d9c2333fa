"""
间隔复习服务

循环完成时创建或刷新复习计划（每个循环唯一，冲突走 upsert）；
每次复习按分数调整间隔：>= 80 翻倍（上限 30 天），< 50 重置为 1 天，其余不变。
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from app.core.database import upsert
from app.core.errors import (
    AccessDeniedError,
    InvalidRequestError,
    LoopNotFoundError,
    ReviewNotFoundError,
)
from app.core.spaced_repetition import SpacedRepetitionScheduler
from app.core.timeutils import utcnow
from app.models import LearningLoop, ReviewSchedule, ReviewStatus
from app.services.evaluation_service import EvaluationService, compute_score
from app.services.usage_service import UsageService
from app.services.user_service import UserService

logger = logging.getLogger(__name__)

LOOP_PREVIEW_CHARS = 200


class ReviewService:
    """复习调度服务"""

    @staticmethod
    def schedule_on_completion(
        db: Session,
        user_id: str,
        loop_id: str,
        now: Optional[datetime] = None,
    ) -> ReviewSchedule:
        """
        创建或刷新复习计划（不提交事务）

        新计划与已有计划都重置为初始间隔并恢复为 scheduled。
        """
        now = now or utcnow()
        interval = SpacedRepetitionScheduler.INITIAL_INTERVAL_DAYS
        next_review_at = SpacedRepetitionScheduler.next_review_at(interval, now)
        upsert(
            db,
            ReviewSchedule,
            {
                "user_id": user_id,
                "loop_id": loop_id,
                "next_review_at": next_review_at,
                "interval_days": interval,
                "status": ReviewStatus.SCHEDULED.value,
                "created_at": now,
                "updated_at": now,
            },
            ["loop_id"],
            {
                "next_review_at": next_review_at,
                "interval_days": interval,
                "status": ReviewStatus.SCHEDULED.value,
                "updated_at": now,
            },
        )
        schedule = (
            db.query(ReviewSchedule)
            .populate_existing()
            .filter(ReviewSchedule.loop_id == loop_id)
            .one()
        )
        logger.info(f"循环 {loop_id} 已安排复习: {next_review_at.isoformat()}")
        return schedule

    @staticmethod
    def get_schedule(db: Session, schedule_id: str, user_id: Optional[str] = None) -> ReviewSchedule:
        """
        Raises:
            ReviewNotFoundError: 复习计划不存在
            AccessDeniedError: 复习计划属于其他用户
        """
        schedule = db.query(ReviewSchedule).filter(ReviewSchedule.id == schedule_id).first()
        if not schedule:
            raise ReviewNotFoundError("复习计划不存在")
        if user_id is not None and schedule.user_id != user_id:
            raise AccessDeniedError("无权访问该复习计划")
        return schedule

    @staticmethod
    def get_schedule_for_loop(db: Session, loop_id: str) -> Optional[ReviewSchedule]:
        return db.query(ReviewSchedule).filter(ReviewSchedule.loop_id == loop_id).first()

    @staticmethod
    def apply_review(
        db: Session,
        schedule: ReviewSchedule,
        score: int,
        now: Optional[datetime] = None,
    ) -> ReviewSchedule:
        """按复习分数更新间隔与下次复习时间（不提交事务）"""
        now = now or utcnow()
        previous = schedule.interval_days
        schedule.interval_days = SpacedRepetitionScheduler.calculate_next_interval(previous, score)
        schedule.times_reviewed = (schedule.times_reviewed or 0) + 1
        schedule.last_reviewed_at = now
        schedule.last_score = score
        schedule.next_review_at = SpacedRepetitionScheduler.next_review_at(schedule.interval_days, now)
        schedule.updated_at = now
        db.add(schedule)
        logger.info(
            f"复习完成 {schedule.id}: 分数 {score}，间隔 {previous} -> {schedule.interval_days} 天"
        )
        return schedule

    @staticmethod
    def complete_review(
        db: Session,
        schedule_id: str,
        score: int,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ReviewSchedule:
        """
        记录一次复习结果

        Args:
            db: 数据库会话
            schedule_id: 复习计划ID
            score: 复习分数 0-100
            user_id: 调用者（用于校验归属，可选）
            now: 当前时间

        Returns:
            ReviewSchedule: 更新后的复习计划
        """
        try:
            schedule = ReviewService.get_schedule(db, schedule_id, user_id)
            db.refresh(schedule, with_for_update=True)
            ReviewService.apply_review(db, schedule, score, now)
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.refresh(schedule)
        return schedule

    @staticmethod
    def get_due_reviews(db: Session, user_id: str, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """
        获取到期复习：next_review_at <= now 且状态为 scheduled，最早的在前

        每条附带循环摘要（标题、材料前 200 字、关键概念）。
        """
        now = now or utcnow()
        rows = (
            db.query(ReviewSchedule, LearningLoop)
            .outerjoin(LearningLoop, LearningLoop.id == ReviewSchedule.loop_id)
            .filter(ReviewSchedule.user_id == user_id)
            .filter(ReviewSchedule.next_review_at <= now)
            .filter(ReviewSchedule.status == ReviewStatus.SCHEDULED.value)
            .order_by(ReviewSchedule.next_review_at.asc())
            .all()
        )
        return [
            {
                "schedule": schedule,
                "loop": {
                    "id": loop.id,
                    "title": loop.title,
                    "source_preview": loop.source_text[:LOOP_PREVIEW_CHARS],
                    "key_concepts": loop.key_concepts or [],
                } if loop else None,
            }
            for schedule, loop in rows
        ]

    @staticmethod
    def get_review_loop(db: Session, schedule: ReviewSchedule) -> LearningLoop:
        loop = db.query(LearningLoop).filter(LearningLoop.id == schedule.loop_id).first()
        if not loop:
            raise LoopNotFoundError("复习对应的学习循环不存在")
        return loop

    @staticmethod
    async def submit_review(
        db: Session,
        evaluator: EvaluationService,
        schedule_id: str,
        user_id: str,
        transcript: str,
        persona: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        提交一次复习讲解

        使用宽松的快速复习评估，分数公式与正式提交一致，然后按分数调整间隔。
        不修改循环本身，也不创建 LoopAttempt。

        Returns:
            Dict: {"schedule", "score", "evaluation"}

        Raises:
            InvalidRequestError: 讲解为空或人设不可用
            UsageLimitExceededError: 超出免费额度
            EvaluationUnavailableError: 评估服务不可用
        """
        if not transcript or not transcript.strip():
            raise InvalidRequestError("讲解内容不能为空")

        schedule = ReviewService.get_schedule(db, schedule_id, user_id)
        loop = ReviewService.get_review_loop(db, schedule)
        user = UserService.require_user(db, user_id)
        persona = UserService.resolve_persona(user, persona)
        UsageService.check_limit(user, evaluator.config)

        evaluation = await evaluator.evaluate_explanation(
            source_text=loop.source_text,
            transcript=transcript,
            key_concepts=[c.get("concept", "") for c in loop.key_concepts or []],
            persona=persona,
            attempt_type="quick_review",
            precision=loop.precision,
        )
        score = compute_score(evaluation.coverage, evaluation.accuracy)

        try:
            db.refresh(schedule, with_for_update=True)
            ReviewService.apply_review(db, schedule, score)
            UsageService.record_usage(db, user)
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.refresh(schedule)
        return {"schedule": schedule, "score": score, "evaluation": evaluation}
