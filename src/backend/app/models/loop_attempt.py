"""
讲解提交记录
只追加、不修改，按 attempt_number 排序
"""
import uuid

from sqlalchemy import Column, String, Integer, Float, DateTime, ForeignKey, Text, JSON, UniqueConstraint
from sqlalchemy.orm import relationship

from app.core.timeutils import utcnow
from .base import Base


class LoopAttempt(Base):
    """一次讲解提交"""
    __tablename__ = "loop_attempts"
    __table_args__ = (
        UniqueConstraint("loop_id", "attempt_number", name="uq_loop_attempt_number"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    loop_id = Column(String(36), ForeignKey("learning_loops.id"), nullable=False, index=True)
    attempt_number = Column(Integer, nullable=False)  # 从 1 开始
    attempt_type = Column(String(30), nullable=False)  # full_explanation | simplify_challenge

    transcript = Column(Text, nullable=False)
    duration_seconds = Column(Integer, nullable=True)

    score = Column(Integer, nullable=False)
    coverage = Column(Float, nullable=False)
    accuracy = Column(Float, nullable=False)

    # {"covered_points", "missed_points", "feedback", "delivery_script"}
    analysis = Column(JSON, nullable=False)
    speech_metrics = Column(JSON, nullable=True)

    score_delta = Column(Integer, nullable=True)  # 第一次提交为空
    newly_covered = Column(JSON, nullable=False, default=list)
    persona = Column(String(20), nullable=True)

    created_at = Column(DateTime, default=utcnow)

    loop = relationship("LearningLoop", back_populates="attempts")

    @property
    def covered_points(self):
        return list((self.analysis or {}).get("covered_points") or [])

    @property
    def missed_points(self):
        return list((self.analysis or {}).get("missed_points") or [])
