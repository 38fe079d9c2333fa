"""
间隔复习API路由
已掌握的循环按自适应间隔重新出现
"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.services.evaluation_service import EvaluationService, get_evaluation_service
from app.services.review_service import ReviewService


router = APIRouter(prefix="/reviews", tags=["间隔复习"])


# Schemas
class ReviewScheduleResponse(BaseModel):
    """复习计划"""
    id: str
    loop_id: str
    next_review_at: datetime
    interval_days: int
    times_reviewed: int
    last_reviewed_at: Optional[datetime]
    last_score: int | None
    status: str

    class Config:
        from_attributes = True


class ReviewLoopSummary(BaseModel):
    """复习对应的循环摘要"""
    id: str
    title: str
    source_preview: str
    key_concepts: list


class DueReviewResponse(BaseModel):
    """到期复习"""
    schedule: ReviewScheduleResponse
    loop: ReviewLoopSummary | None


class CompleteReviewRequest(BaseModel):
    """直接记录复习分数"""
    score: int = Field(..., ge=0, le=100)


class SubmitReviewRequest(BaseModel):
    """提交复习讲解"""
    transcript: str = Field(..., min_length=1)
    persona: Optional[str] = None


class SubmitReviewResponse(BaseModel):
    """复习评估结果"""
    schedule: ReviewScheduleResponse
    score: int
    covered_points: List[str]
    missed_points: List[str]
    feedback: str


# Endpoints
@router.get("/due", response_model=List[DueReviewResponse])
async def get_due_reviews(user_id: str, db: Session = Depends(get_db)):
    """
    获取到期复习

    next_review_at 已到且状态为 scheduled，最早到期的在前
    """
    return ReviewService.get_due_reviews(db, user_id)


@router.post("/{schedule_id}/complete", response_model=ReviewScheduleResponse)
async def complete_review(
    schedule_id: str,
    request: CompleteReviewRequest,
    user_id: str,
    db: Session = Depends(get_db),
):
    """记录复习分数并重新计算间隔"""
    return ReviewService.complete_review(db, schedule_id, request.score, user_id=user_id)


@router.post("/{schedule_id}/submit", response_model=SubmitReviewResponse)
async def submit_review(
    schedule_id: str,
    request: SubmitReviewRequest,
    user_id: str,
    db: Session = Depends(get_db),
    evaluator: EvaluationService = Depends(get_evaluation_service),
):
    """提交复习讲解，评估后重新计算间隔"""
    result = await ReviewService.submit_review(
        db,
        evaluator,
        schedule_id,
        user_id,
        request.transcript,
        persona=request.persona,
    )
    evaluation = result["evaluation"]
    return SubmitReviewResponse(
        schedule=ReviewScheduleResponse.model_validate(result["schedule"]),
        score=result["score"],
        covered_points=evaluation.covered_points,
        missed_points=evaluation.missed_points,
        feedback=evaluation.feedback,
    )
