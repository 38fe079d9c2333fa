"""
学习循环模型
一次学习循环对应一份材料，从讲解、补漏到复述直至掌握
"""
import uuid
from enum import Enum

from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Text, JSON
from sqlalchemy.orm import relationship

from app.core.phases import EntryMode, LoopPhase
from app.core.timeutils import utcnow
from .base import Base


class LoopStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    MASTERED = "mastered"
    ABANDONED = "abandoned"


class Precision(str, Enum):
    """评估严格程度"""
    ESSENTIAL = "essential"
    BALANCED = "balanced"
    PRECISE = "precise"


class SourceType(str, Enum):
    TEXT = "text"
    ARTICLE = "article"
    VIDEO = "video"
    BOOK_CHAPTER = "book_chapter"


class LearningLoop(Base):
    """学习循环"""
    __tablename__ = "learning_loops"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    subject = Column(String(100), nullable=True, index=True)  # 可选分组

    title = Column(String(255), nullable=False)
    source_text = Column(Text, nullable=False)
    source_word_count = Column(Integer, default=0, nullable=False)
    source_type = Column(String(20), default=SourceType.TEXT.value, nullable=False)
    precision = Column(String(20), default=Precision.BALANCED.value, nullable=False)
    entry_mode = Column(String(20), default=EntryMode.STANDARD.value, nullable=False)

    # 提取一次后缓存
    key_concepts = Column(JSON, nullable=True)  # [{"concept", "explanation", "importance"}]
    concept_map = Column(JSON, nullable=True)   # {"relationships": [{"from", "to", "type"}]}

    status = Column(String(20), default=LoopStatus.IN_PROGRESS.value, nullable=False, index=True)
    current_phase = Column(String(30), default=LoopPhase.FIRST_ATTEMPT.value, nullable=False)

    prior_knowledge_transcript = Column(Text, nullable=True)
    prior_knowledge_analysis = Column(JSON, nullable=True)
    prior_knowledge_score = Column(Integer, nullable=True)

    meta_data = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    completed_at = Column(DateTime, nullable=True)

    # 关联关系
    attempts = relationship(
        "LoopAttempt",
        back_populates="loop",
        order_by="LoopAttempt.attempt_number",
    )
    socratic_sessions = relationship(
        "SocraticSession",
        back_populates="loop",
        order_by="SocraticSession.created_at",
    )
    loop_concepts = relationship("LoopConcept", back_populates="loop")
    review_schedule = relationship("ReviewSchedule", back_populates="loop", uselist=False)

    def __repr__(self):
        return f"<LearningLoop(id='{self.id}' phase='{self.current_phase}' status='{self.status}')>"
