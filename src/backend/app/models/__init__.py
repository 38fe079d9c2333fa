"""
Models package
Export all database models
"""
import logging

from .base import Base
from .user import User
from .learning_loop import LearningLoop, LoopStatus, Precision, SourceType
from .loop_attempt import LoopAttempt
from .socratic_session import SocraticSession, SessionStatus
from .review_schedule import ReviewSchedule, ReviewStatus
from .concept import (
    Concept,
    ConceptImportance,
    ConceptRelationship,
    LoopConcept,
    RelationshipType,
    UserConcept,
)

logger = logging.getLogger(__name__)

__all__ = [
    "Base",
    "User",
    "LearningLoop",
    "LoopStatus",
    "Precision",
    "SourceType",
    "LoopAttempt",
    "SocraticSession",
    "SessionStatus",
    "ReviewSchedule",
    "ReviewStatus",
    "Concept",
    "ConceptImportance",
    "ConceptRelationship",
    "LoopConcept",
    "RelationshipType",
    "UserConcept",
]


def init_db(bind=None):
    """初始化数据库"""
    if bind is None:
        from ..core.database import engine as bind

    # 创建所有表
    Base.metadata.create_all(bind=bind)
    logger.info("数据库表创建完成")


def drop_all(bind=None):
    """删除所有表（仅开发测试用）"""
    if bind is None:
        from ..core.database import engine as bind

    Base.metadata.drop_all(bind=bind)
    logger.warning("所有数据表已删除")
