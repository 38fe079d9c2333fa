"""
学习循环API路由
讲解 -> 评估 -> 补漏 -> 复述 -> 掌握
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.api.review import ReviewScheduleResponse
from app.core.database import get_db
from app.services.attempt_service import AttemptService
from app.services.evaluation_service import EvaluationService, get_evaluation_service
from app.services.loop_service import LoopService
from app.services.socratic_service import SocraticService


router = APIRouter(prefix="/loops", tags=["学习循环"])


# Schemas
class LoopCreateRequest(BaseModel):
    """创建学习循环请求"""
    source_text: str = Field(..., min_length=1)
    title: Optional[str] = None
    source_type: Optional[str] = None
    precision: Optional[str] = None
    entry_mode: Optional[str] = None
    subject: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class LoopResponse(BaseModel):
    """学习循环响应"""
    id: str
    user_id: str
    subject: str | None
    title: str
    source_type: str
    source_word_count: int
    precision: str
    entry_mode: str
    key_concepts: list | None
    concept_map: dict | None
    status: str
    current_phase: str
    prior_knowledge_score: int | None
    prior_knowledge_analysis: dict | None
    meta_data: dict | None
    created_at: Optional[datetime]
    updated_at: Optional[datetime]
    completed_at: Optional[datetime]

    class Config:
        from_attributes = True


class AttemptRequest(BaseModel):
    """讲解提交请求"""
    transcript: str = Field(..., min_length=1)
    attempt_type: Optional[str] = None
    persona: Optional[str] = None
    duration_seconds: Optional[int] = Field(default=None, ge=0)
    speech_metrics: Optional[Dict[str, Any]] = None


class AttemptResponse(BaseModel):
    """讲解提交记录"""
    id: str
    loop_id: str
    attempt_number: int
    attempt_type: str
    transcript: str
    duration_seconds: int | None
    score: int
    coverage: float
    accuracy: float
    analysis: dict
    speech_metrics: dict | None
    score_delta: int | None
    newly_covered: list
    persona: str | None
    created_at: Optional[datetime]

    class Config:
        from_attributes = True


class AttemptResultResponse(BaseModel):
    """提交结果：记录、推进后的循环与额度"""
    attempt: AttemptResponse
    loop: LoopResponse
    usage: dict


class SessionResponse(BaseModel):
    """补漏对话会话"""
    id: str
    loop_id: str
    attempt_id: str | None
    target_concepts: list
    concepts_addressed: list
    remaining_concepts: list
    all_addressed: bool
    messages: list
    status: str
    created_at: Optional[datetime]
    completed_at: Optional[datetime]

    class Config:
        from_attributes = True


class LoopDetailResponse(BaseModel):
    """学习循环详情"""
    loop: LoopResponse
    attempts: List[AttemptResponse]
    active_session: SessionResponse | None
    review_schedule: ReviewScheduleResponse | None


class PhaseUpdateRequest(BaseModel):
    """阶段推进请求（target_phase 用于校验）"""
    target_phase: Optional[str] = None


class PriorKnowledgeRequest(BaseModel):
    transcript: str = Field(..., min_length=1)


class PriorKnowledgeResponse(BaseModel):
    """已有知识评估结果"""
    loop: LoopResponse
    analysis: dict


class SocraticStartRequest(BaseModel):
    attempt_id: Optional[str] = None


class SocraticMessageRequest(BaseModel):
    content: str = Field(..., min_length=1)


class SocraticMessageResponse(BaseModel):
    """补漏对话回复"""
    reply: str
    addressed_concept: str | None
    session: SessionResponse
    loop: LoopResponse


# Endpoints
@router.post("/", response_model=LoopResponse, status_code=status.HTTP_201_CREATED)
async def create_loop(
    request: LoopCreateRequest,
    user_id: str,
    db: Session = Depends(get_db),
    evaluator: EvaluationService = Depends(get_evaluation_service),
):
    """
    创建学习循环

    创建后立即提取关键概念；提取失败不影响创建
    """
    return await LoopService.create_loop(
        db,
        evaluator,
        user_id=user_id,
        source_text=request.source_text,
        title=request.title,
        source_type=request.source_type,
        precision=request.precision,
        entry_mode=request.entry_mode,
        subject=request.subject,
        metadata=request.metadata,
    )


@router.get("/", response_model=List[LoopResponse])
async def list_loops(
    user_id: str,
    loop_status: Optional[str] = Query(default=None, alias="status"),
    subject: Optional[str] = None,
    db: Session = Depends(get_db),
):
    """列出学习循环（最近更新的在前）"""
    return LoopService.list_loops(db, user_id, status=loop_status, subject=subject)


@router.get("/{loop_id}", response_model=LoopDetailResponse)
async def get_loop(loop_id: str, user_id: str, db: Session = Depends(get_db)):
    """获取学习循环详情"""
    return LoopService.get_loop_detail(db, loop_id, user_id)


@router.get("/{loop_id}/attempts", response_model=List[AttemptResponse])
async def list_attempts(loop_id: str, user_id: str, db: Session = Depends(get_db)):
    """获取提交记录（按编号升序）"""
    return AttemptService.list_attempts(db, loop_id, user_id)


@router.post("/{loop_id}/attempts", response_model=AttemptResultResponse, status_code=status.HTTP_201_CREATED)
async def submit_attempt(
    loop_id: str,
    request: AttemptRequest,
    user_id: str,
    db: Session = Depends(get_db),
    evaluator: EvaluationService = Depends(get_evaluation_service),
):
    """
    提交一次讲解

    只在 first_attempt / second_attempt / simplify 阶段接受
    """
    outcome = await AttemptService.submit_attempt(
        db,
        evaluator,
        loop_id=loop_id,
        user_id=user_id,
        transcript=request.transcript,
        attempt_type=request.attempt_type,
        persona=request.persona,
        duration_seconds=request.duration_seconds,
        speech_metrics=request.speech_metrics,
    )
    return AttemptResultResponse(
        attempt=AttemptResponse.model_validate(outcome.attempt),
        loop=LoopResponse.model_validate(outcome.loop),
        usage=outcome.usage,
    )


@router.post("/{loop_id}/phase", response_model=LoopResponse)
async def update_phase(
    loop_id: str,
    request: PhaseUpdateRequest,
    user_id: str,
    db: Session = Depends(get_db),
):
    """推进到下一阶段（结果阶段按最近一次分数分支）"""
    return LoopService.update_phase(db, loop_id, user_id, request.target_phase)


@router.post("/{loop_id}/prior-knowledge", response_model=PriorKnowledgeResponse)
async def submit_prior_knowledge(
    loop_id: str,
    request: PriorKnowledgeRequest,
    user_id: str,
    db: Session = Depends(get_db),
    evaluator: EvaluationService = Depends(get_evaluation_service),
):
    """提交已有知识讲解"""
    loop, analysis = await LoopService.submit_prior_knowledge(
        db, evaluator, loop_id, user_id, request.transcript
    )
    return PriorKnowledgeResponse(
        loop=LoopResponse.model_validate(loop),
        analysis=analysis.model_dump(),
    )


@router.post("/{loop_id}/prior-knowledge/skip", response_model=LoopResponse)
async def skip_prior_knowledge(loop_id: str, user_id: str, db: Session = Depends(get_db)):
    """跳过已有知识评估"""
    return LoopService.skip_prior_knowledge(db, loop_id, user_id)


@router.post("/{loop_id}/focus-areas/acknowledge", response_model=LoopResponse)
async def acknowledge_focus_areas(loop_id: str, user_id: str, db: Session = Depends(get_db)):
    """确认重点关注领域"""
    return LoopService.acknowledge_focus_areas(db, loop_id, user_id)


@router.post("/{loop_id}/reading/finish", response_model=LoopResponse)
async def finish_reading(loop_id: str, user_id: str, db: Session = Depends(get_db)):
    """阅读完成"""
    return LoopService.finish_reading(db, loop_id, user_id)


@router.post("/{loop_id}/abandon", response_model=LoopResponse)
async def abandon_loop(loop_id: str, user_id: str, db: Session = Depends(get_db)):
    """放弃学习循环"""
    return LoopService.abandon_loop(db, loop_id, user_id)


@router.post("/{loop_id}/socratic", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
async def start_socratic(
    loop_id: str,
    request: SocraticStartRequest,
    user_id: str,
    db: Session = Depends(get_db),
    evaluator: EvaluationService = Depends(get_evaluation_service),
):
    """
    开始补漏对话

    目标为该次提交漏讲的要点
    """
    session, _ = await SocraticService.start_session(
        db, evaluator, loop_id, user_id, attempt_id=request.attempt_id
    )
    return session


@router.post("/{loop_id}/socratic/skip", response_model=LoopResponse)
async def skip_socratic(loop_id: str, user_id: str, db: Session = Depends(get_db)):
    """跳过补漏对话，直接进入第二次讲解"""
    return SocraticService.skip(db, loop_id, user_id)


@router.post("/{loop_id}/socratic/{session_id}/messages", response_model=SocraticMessageResponse)
async def send_socratic_message(
    loop_id: str,
    session_id: str,
    request: SocraticMessageRequest,
    user_id: str,
    db: Session = Depends(get_db),
    evaluator: EvaluationService = Depends(get_evaluation_service),
):
    """发送补漏对话消息"""
    session, loop, reply = await SocraticService.send_message(
        db, evaluator, loop_id, session_id, user_id, request.content
    )
    return SocraticMessageResponse(
        reply=reply.message,
        addressed_concept=reply.addressed_concept,
        session=SessionResponse.model_validate(session),
        loop=LoopResponse.model_validate(loop),
    )
