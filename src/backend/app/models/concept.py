"""
知识图谱模型
Concept 按归一化名称去重；UserConcept 记录每个用户的原始掌握度（读取时再按时间衰减）
"""
import uuid
from enum import Enum

from sqlalchemy import (
    Column, String, Integer, Float, Boolean, DateTime, ForeignKey, Text, UniqueConstraint,
)
from sqlalchemy.orm import relationship

from app.core.timeutils import utcnow
from .base import Base


class ConceptImportance(str, Enum):
    CORE = "core"
    SUPPORTING = "supporting"
    DETAIL = "detail"


class RelationshipType(str, Enum):
    CAUSES = "causes"
    ENABLES = "enables"
    EXEMPLIFIES = "exemplifies"
    CONTRASTS = "contrasts"
    PREREQUISITE = "prerequisite"


class Concept(Base):
    """去重后的概念节点"""
    __tablename__ = "concepts"
    __table_args__ = (
        UniqueConstraint("normalized_name", name="uq_concept_normalized_name"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(255), nullable=False)
    normalized_name = Column(String(255), nullable=False, index=True)
    description = Column(Text, nullable=True)
    category = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=utcnow)


class UserConcept(Base):
    """用户对概念的掌握记录"""
    __tablename__ = "user_concepts"
    __table_args__ = (
        UniqueConstraint("user_id", "concept_id", name="uq_user_concept"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    concept_id = Column(String(36), ForeignKey("concepts.id"), nullable=False)

    mastery_score = Column(Integer, default=0, nullable=False)  # 原始值，不衰减
    times_encountered = Column(Integer, default=0, nullable=False)
    times_demonstrated = Column(Integer, default=0, nullable=False)
    last_seen_at = Column(DateTime, nullable=True)
    last_demonstrated_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    concept = relationship("Concept")


class ConceptRelationship(Base):
    """概念之间的有向带权边，strength 只累加"""
    __tablename__ = "concept_relationships"
    __table_args__ = (
        UniqueConstraint(
            "from_concept_id", "to_concept_id", "relationship_type",
            name="uq_concept_relationship",
        ),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    from_concept_id = Column(String(36), ForeignKey("concepts.id"), nullable=False, index=True)
    to_concept_id = Column(String(36), ForeignKey("concepts.id"), nullable=False, index=True)
    relationship_type = Column(String(20), nullable=False)
    strength = Column(Float, default=1.0, nullable=False)
    created_at = Column(DateTime, default=utcnow)


class LoopConcept(Base):
    """循环与概念的关联，记录是否在某阶段被讲出来"""
    __tablename__ = "loop_concepts"
    __table_args__ = (
        UniqueConstraint("loop_id", "concept_id", name="uq_loop_concept"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    loop_id = Column(String(36), ForeignKey("learning_loops.id"), nullable=False, index=True)
    concept_id = Column(String(36), ForeignKey("concepts.id"), nullable=False)
    importance = Column(String(20), default=ConceptImportance.SUPPORTING.value, nullable=False)
    explanation = Column(Text, nullable=True)

    was_demonstrated = Column(Boolean, default=False, nullable=False)
    demonstrated_at = Column(DateTime, nullable=True)
    demonstrated_in_phase = Column(String(30), nullable=True)

    loop = relationship("LearningLoop", back_populates="loop_concepts")
    concept = relationship("Concept")
