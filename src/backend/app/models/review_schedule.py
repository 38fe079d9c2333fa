"""
间隔复习计划
每个 (user, loop) 唯一，在循环完成时创建或刷新
"""
import uuid
from enum import Enum

from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship

from app.core.timeutils import utcnow
from .base import Base


class ReviewStatus(str, Enum):
    SCHEDULED = "scheduled"
    DUE = "due"
    COMPLETED = "completed"
    PAUSED = "paused"


class ReviewSchedule(Base):
    """复习计划"""
    __tablename__ = "review_schedules"
    __table_args__ = (
        UniqueConstraint("loop_id", name="uq_review_schedule_loop"),
        UniqueConstraint("user_id", "loop_id", name="uq_review_schedule_user_loop"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    loop_id = Column(String(36), ForeignKey("learning_loops.id"), nullable=False)

    next_review_at = Column(DateTime, nullable=False, index=True)
    interval_days = Column(Integer, default=1, nullable=False)
    times_reviewed = Column(Integer, default=0, nullable=False)
    last_reviewed_at = Column(DateTime, nullable=True)
    last_score = Column(Integer, nullable=True)
    status = Column(String(20), default=ReviewStatus.SCHEDULED.value, nullable=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    loop = relationship("LearningLoop", back_populates="review_schedule")
