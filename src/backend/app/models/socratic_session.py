"""
苏格拉底式补漏对话
一个循环同一时间最多一个 active 会话，历史会话保留
"""
import uuid
from enum import Enum

from sqlalchemy import Column, String, DateTime, ForeignKey, JSON
from sqlalchemy.orm import relationship

from app.core.timeutils import utcnow
from .base import Base


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


class SocraticSession(Base):
    """补漏对话会话"""
    __tablename__ = "socratic_sessions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    loop_id = Column(String(36), ForeignKey("learning_loops.id"), nullable=False, index=True)
    attempt_id = Column(String(36), ForeignKey("loop_attempts.id"), nullable=True)

    target_concepts = Column(JSON, nullable=False, default=list)
    # [{"role": "assistant" | "user", "content", "created_at"}]，只追加
    messages = Column(JSON, nullable=False, default=list)
    # 只增不减
    concepts_addressed = Column(JSON, nullable=False, default=list)

    status = Column(String(20), default=SessionStatus.ACTIVE.value, nullable=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    completed_at = Column(DateTime, nullable=True)

    loop = relationship("LearningLoop", back_populates="socratic_sessions")

    @property
    def all_addressed(self) -> bool:
        targets = self.target_concepts or []
        addressed = set(self.concepts_addressed or [])
        return bool(targets) and all(t in addressed for t in targets)

    @property
    def remaining_concepts(self):
        addressed = set(self.concepts_addressed or [])
        return [t for t in (self.target_concepts or []) if t not in addressed]
