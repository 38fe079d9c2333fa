"""
知识图谱API路由
掌握度在读取时按最近出现时间衰减
"""
from typing import List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.services.knowledge_service import KnowledgeService


router = APIRouter(prefix="/knowledge", tags=["知识图谱"])


# Schemas
class KnowledgeStatsResponse(BaseModel):
    """掌握度统计"""
    total_concepts: int
    average_mastery: float
    mastered_count: int
    learning_count: int
    new_count: int


class ConceptSummary(BaseModel):
    """概念掌握情况"""
    id: str
    name: str
    category: str | None
    mastery: int
    raw_mastery: int
    times_encountered: int
    times_demonstrated: int
    last_seen: str | None
    days_since_last_seen: int | None


# Endpoints
@router.get("/stats", response_model=KnowledgeStatsResponse)
async def get_stats(user_id: str, db: Session = Depends(get_db)):
    """掌握度统计（mastered >= 80，learning 40-79，new < 40）"""
    return KnowledgeService.get_stats(db, user_id)


@router.get("/needs-review", response_model=List[ConceptSummary])
async def get_needs_review(
    user_id: str,
    limit: int = Query(default=5, ge=1, le=50),
    db: Session = Depends(get_db),
):
    """需要复习的概念：掌握度低于 60 或超过 7 天未出现"""
    return KnowledgeService.get_needs_review(db, user_id, limit)


@router.get("/weak-spots", response_model=List[ConceptSummary])
async def get_weak_spots(
    user_id: str,
    limit: int = Query(default=5, ge=1, le=50),
    db: Session = Depends(get_db),
):
    """薄弱点：多次出现仍未掌握"""
    return KnowledgeService.get_weak_spots(db, user_id, limit)


@router.get("/recent-progress", response_model=List[ConceptSummary])
async def get_recent_progress(
    user_id: str,
    limit: int = Query(default=8, ge=1, le=50),
    db: Session = Depends(get_db),
):
    """最近 7 天的进展"""
    return KnowledgeService.get_recent_progress(db, user_id, limit)


@router.get("/cross-connections")
async def get_cross_connections(
    user_id: str,
    limit: int = Query(default=5, ge=1, le=50),
    db: Session = Depends(get_db),
):
    """跨材料关联：在多个循环中出现的概念"""
    return KnowledgeService.get_cross_connections(db, user_id, limit)


@router.get("/insights")
async def get_insights(user_id: str, db: Session = Depends(get_db)):
    """洞察汇总"""
    return KnowledgeService.get_insights(db, user_id)


@router.get("/concepts", response_model=List[ConceptSummary])
async def list_concepts(user_id: str, db: Session = Depends(get_db)):
    """用户接触过的全部概念"""
    return KnowledgeService.list_concepts(db, user_id)


@router.get("/concepts/{concept_id}")
async def get_concept_detail(concept_id: str, user_id: str, db: Session = Depends(get_db)):
    """概念详情与双向关联"""
    return KnowledgeService.get_concept_detail(db, user_id, concept_id)


@router.get("/graph")
async def get_graph(user_id: str, db: Session = Depends(get_db)):
    """知识图谱：节点、边与统计"""
    return KnowledgeService.get_graph(db, user_id)
