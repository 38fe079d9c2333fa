"""
学习循环服务

负责循环的创建、读取、阶段推进与放弃。
阶段迁移全部经过 PhaseMachine，服务层只负责加载、加锁、写入与提交。
每个写操作只提交一次，异常时回滚，循环停留在最后一次成功持久化的阶段。
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from app.core.errors import (
    AccessDeniedError,
    InvalidRequestError,
    LoopClosedError,
    LoopNotFoundError,
    PhaseContractError,
)
from app.core.phases import (
    EntryMode,
    LoopEvent,
    LoopPhase,
    PhaseMachine,
    TransitionContext,
)
from app.core.timeutils import utcnow
from app.llm.schemas import PriorKnowledgeAnalysis
from app.models import (
    LearningLoop,
    LoopAttempt,
    LoopStatus,
    Precision,
    SessionStatus,
    SocraticSession,
    SourceType,
)
from app.services.evaluation_service import EvaluationService
from app.services.knowledge_service import KnowledgeService
from app.services.review_service import ReviewService
from app.services.user_service import UserService

logger = logging.getLogger(__name__)

TITLE_FALLBACK_CHARS = 60

# 无需额外输入即可推进的阶段及其事件
ADVANCE_EVENTS: Dict[LoopPhase, LoopEvent] = {
    LoopPhase.FOCUS_AREAS_DISPLAY: LoopEvent.FOCUS_AREAS_ACKNOWLEDGED,
    LoopPhase.READING: LoopEvent.READING_FINISHED,
    LoopPhase.FIRST_RESULTS: LoopEvent.CONTINUE,
    LoopPhase.SECOND_RESULTS: LoopEvent.CONTINUE,
    LoopPhase.SIMPLIFY_RESULTS: LoopEvent.CONTINUE,
}


def _parse_choice(enum_cls, value: Optional[str], default, field: str):
    if value is None:
        return default
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise InvalidRequestError(f"{field} 取值无效: {value!r}（可选: {allowed}）")


class LoopService:
    """学习循环服务"""

    # ------------------------------------------------------------------
    # 加载与校验
    # ------------------------------------------------------------------

    @staticmethod
    def get_loop(db: Session, loop_id: str, user_id: str) -> LearningLoop:
        """
        加载循环并校验归属与持久化阶段

        Raises:
            LoopNotFoundError: 循环不存在
            AccessDeniedError: 循环属于其他用户
            DataIntegrityError: 阶段或入口模式无法识别
        """
        loop = db.query(LearningLoop).filter(LearningLoop.id == loop_id).first()
        if not loop:
            raise LoopNotFoundError("学习循环不存在")
        if loop.user_id != user_id:
            raise AccessDeniedError("无权访问该学习循环")
        LoopService.state_of(loop)
        return loop

    @staticmethod
    def state_of(loop: LearningLoop) -> Tuple[EntryMode, LoopPhase]:
        """解析循环的入口模式与当前阶段"""
        entry_mode = PhaseMachine.parse_entry_mode(loop.entry_mode)
        return entry_mode, PhaseMachine.parse_phase(loop.current_phase, entry_mode)

    @staticmethod
    def require_in_progress(loop: LearningLoop) -> None:
        """
        Raises:
            LoopClosedError: 循环已放弃或已完成
        """
        if loop.status != LoopStatus.IN_PROGRESS.value:
            raise LoopClosedError(f"学习循环已{'完成' if loop.status == LoopStatus.MASTERED.value else '放弃'}")

    @staticmethod
    def lock_for_write(db: Session, loop: LearningLoop, expected_phase: Optional[LoopPhase] = None) -> LoopPhase:
        """
        重新加载并锁定循环，确认在等待评估期间状态没有变化

        评估返回时循环已被放弃，则丢弃评估结果；阶段已被其他请求推进，则拒绝写入。

        Returns:
            LoopPhase: 当前阶段

        Raises:
            LoopClosedError: 循环已放弃或已完成
            PhaseContractError: 阶段已变化
        """
        db.refresh(loop, with_for_update=True)
        if loop.status != LoopStatus.IN_PROGRESS.value:
            logger.warning(f"循环 {loop.id} 状态为 {loop.status}，丢弃本次评估结果")
        LoopService.require_in_progress(loop)
        _, phase = LoopService.state_of(loop)
        if expected_phase is not None and phase != expected_phase:
            logger.warning(f"循环 {loop.id} 阶段已从 {expected_phase.value} 变为 {phase.value}，丢弃本次写入")
            raise PhaseContractError(f"学习循环阶段已变为 {phase.value}，请刷新后重试")
        return phase

    @staticmethod
    def latest_attempt(db: Session, loop_id: str) -> Optional[LoopAttempt]:
        return (
            db.query(LoopAttempt)
            .filter(LoopAttempt.loop_id == loop_id)
            .order_by(LoopAttempt.attempt_number.desc())
            .first()
        )

    @staticmethod
    def active_session(db: Session, loop_id: str) -> Optional[SocraticSession]:
        return (
            db.query(SocraticSession)
            .filter(
                SocraticSession.loop_id == loop_id,
                SocraticSession.status == SessionStatus.ACTIVE.value,
            )
            .order_by(SocraticSession.created_at.desc())
            .first()
        )

    @staticmethod
    def abandon_active_sessions(db: Session, loop_id: str) -> int:
        """把循环所有 active 会话标记为 abandoned（不提交事务）"""
        return (
            db.query(SocraticSession)
            .filter(
                SocraticSession.loop_id == loop_id,
                SocraticSession.status == SessionStatus.ACTIVE.value,
            )
            .update(
                {
                    SocraticSession.status: SessionStatus.ABANDONED.value,
                    SocraticSession.updated_at: utcnow(),
                },
                synchronize_session="fetch",
            )
        )

    # ------------------------------------------------------------------
    # 阶段迁移
    # ------------------------------------------------------------------

    @staticmethod
    def apply_transition(
        db: Session,
        loop: LearningLoop,
        event: LoopEvent,
        score: Optional[int] = None,
        has_focus_areas: bool = False,
        now: Optional[datetime] = None,
    ) -> LoopPhase:
        """
        计算并写入下一阶段（不提交事务）

        进入 complete 时同时标记掌握、安排复习并更新知识图谱。

        Raises:
            PhaseContractError: 非法迁移
        """
        entry_mode, current = LoopService.state_of(loop)
        ctx = TransitionContext(entry_mode, score=score, has_focus_areas=has_focus_areas)
        target = PhaseMachine.next_phase(current, event, ctx)

        loop.current_phase = target.value
        loop.updated_at = now or utcnow()
        db.add(loop)
        logger.info(f"循环 {loop.id} 阶段迁移: {current.value} --{event.value}--> {target.value}")

        if target == LoopPhase.COMPLETE:
            LoopService._complete_loop(db, loop, now)
        return target

    @staticmethod
    def _complete_loop(db: Session, loop: LearningLoop, now: Optional[datetime] = None) -> None:
        now = now or utcnow()
        loop.status = LoopStatus.MASTERED.value
        loop.completed_at = now
        db.flush()
        ReviewService.schedule_on_completion(db, loop.user_id, loop.id, now)
        KnowledgeService.update_on_completion(db, loop, now)
        logger.info(f"循环 {loop.id} 已掌握")

    # ------------------------------------------------------------------
    # 创建与读取
    # ------------------------------------------------------------------

    @staticmethod
    async def create_loop(
        db: Session,
        evaluator: EvaluationService,
        user_id: str,
        source_text: str,
        title: Optional[str] = None,
        source_type: Optional[str] = None,
        precision: Optional[str] = None,
        entry_mode: Optional[str] = None,
        subject: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> LearningLoop:
        """
        创建学习循环并提取关键概念

        概念提取失败不会导致创建失败，提交讲解时会再次尝试。

        Args:
            db: 数据库会话
            evaluator: 评估服务
            user_id: 所属用户
            source_text: 学习材料
            title: 标题（默认取材料开头）
            source_type: text / article / video / book_chapter
            precision: essential / balanced / precise
            entry_mode: standard / prior_knowledge / reading_first
            subject: 可选分组
            metadata: 任意附加信息

        Returns:
            LearningLoop: 新建的循环
        """
        if not source_text or not source_text.strip():
            raise InvalidRequestError("学习材料不能为空")
        UserService.require_user(db, user_id)

        source_type = _parse_choice(SourceType, source_type, SourceType.TEXT, "source_type")
        precision = _parse_choice(Precision, precision, Precision.BALANCED, "precision")
        mode = _parse_choice(EntryMode, entry_mode, EntryMode.STANDARD, "entry_mode")

        source_text = source_text.strip()
        loop = LearningLoop(
            user_id=user_id,
            subject=subject,
            title=(title or "").strip() or source_text[:TITLE_FALLBACK_CHARS],
            source_text=source_text,
            source_word_count=len(source_text.split()),
            source_type=source_type.value,
            precision=precision.value,
            entry_mode=mode.value,
            status=LoopStatus.IN_PROGRESS.value,
            current_phase=PhaseMachine.initial_phase(mode).value,
            meta_data=metadata,
        )
        db.add(loop)
        db.commit()
        db.refresh(loop)
        logger.info(f"创建学习循环 {loop.id}: 入口 {mode.value}，阶段 {loop.current_phase}，{loop.source_word_count} 词")

        await LoopService.ensure_concepts(db, evaluator, loop)
        return loop

    @staticmethod
    async def ensure_concepts(db: Session, evaluator: EvaluationService, loop: LearningLoop) -> List[str]:
        """
        确保循环已缓存关键概念，没有时调用提取并同步到知识图谱

        Returns:
            List[str]: 关键概念名称（提取失败时为空列表）
        """
        if loop.key_concepts:
            return [c.get("concept", "") for c in loop.key_concepts]

        extraction = await evaluator.extract_concepts(source_text=loop.source_text, precision=loop.precision)
        if extraction.is_empty:
            logger.warning(f"循环 {loop.id} 未提取到关键概念")
            return []

        try:
            loop.key_concepts = [c.model_dump() for c in extraction.concepts]
            loop.concept_map = extraction.concept_map.to_storage()
            db.add(loop)
            db.flush()
            KnowledgeService.sync_loop_concepts(db, loop)
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.refresh(loop)
        return [c.concept for c in extraction.concepts]

    @staticmethod
    def get_loop_detail(db: Session, loop_id: str, user_id: str) -> Dict[str, Any]:
        """循环详情：提交记录（按编号）、当前补漏会话、复习计划"""
        loop = LoopService.get_loop(db, loop_id, user_id)
        attempts = (
            db.query(LoopAttempt)
            .filter(LoopAttempt.loop_id == loop.id)
            .order_by(LoopAttempt.attempt_number.asc())
            .all()
        )
        return {
            "loop": loop,
            "attempts": attempts,
            "active_session": LoopService.active_session(db, loop.id),
            "review_schedule": ReviewService.get_schedule_for_loop(db, loop.id),
        }

    @staticmethod
    def list_loops(
        db: Session,
        user_id: str,
        status: Optional[str] = None,
        subject: Optional[str] = None,
    ) -> List[LearningLoop]:
        query = db.query(LearningLoop).filter(LearningLoop.user_id == user_id)
        if status:
            query = query.filter(LearningLoop.status == _parse_choice(LoopStatus, status, None, "status").value)
        if subject:
            query = query.filter(LearningLoop.subject == subject)
        return query.order_by(LearningLoop.updated_at.desc()).all()

    # ------------------------------------------------------------------
    # 已有知识
    # ------------------------------------------------------------------

    @staticmethod
    async def submit_prior_knowledge(
        db: Session,
        evaluator: EvaluationService,
        loop_id: str,
        user_id: str,
        transcript: str,
    ) -> Tuple[LearningLoop, PriorKnowledgeAnalysis]:
        """
        评估学习前的已有知识并推进阶段

        有重点关注领域时进入 focus_areas_display，否则进入 reading 或 first_attempt。

        Raises:
            PhaseContractError: 循环不在 prior_knowledge 阶段
            EvaluationUnavailableError: 评估服务不可用
        """
        if not transcript or not transcript.strip():
            raise InvalidRequestError("讲解内容不能为空")

        loop = LoopService.get_loop(db, loop_id, user_id)
        LoopService.require_in_progress(loop)
        _, phase = LoopService.state_of(loop)
        if phase != LoopPhase.PRIOR_KNOWLEDGE:
            raise PhaseContractError(f"阶段 {phase.value} 不接受已有知识评估")

        concepts = await LoopService.ensure_concepts(db, evaluator, loop)
        analysis = await evaluator.assess_prior_knowledge(
            source_text=loop.source_text,
            target_concepts=concepts,
            transcript=transcript,
        )

        try:
            LoopService.lock_for_write(db, loop, LoopPhase.PRIOR_KNOWLEDGE)
            loop.prior_knowledge_transcript = transcript
            loop.prior_knowledge_analysis = analysis.model_dump()
            loop.prior_knowledge_score = analysis.confidence_score
            LoopService.apply_transition(
                db,
                loop,
                LoopEvent.PRIOR_KNOWLEDGE_ASSESSED,
                has_focus_areas=bool(analysis.focus_areas),
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.refresh(loop)
        return loop, analysis

    @staticmethod
    def skip_prior_knowledge(db: Session, loop_id: str, user_id: str) -> LearningLoop:
        """跳过已有知识评估，记录 0 分"""
        loop = LoopService.get_loop(db, loop_id, user_id)
        try:
            LoopService.lock_for_write(db, loop)
            loop.prior_knowledge_score = 0
            LoopService.apply_transition(db, loop, LoopEvent.PRIOR_KNOWLEDGE_SKIPPED)
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.refresh(loop)
        return loop

    # ------------------------------------------------------------------
    # 推进
    # ------------------------------------------------------------------

    @staticmethod
    def _advance(
        db: Session,
        loop_id: str,
        user_id: str,
        event: Optional[LoopEvent] = None,
        target: Optional[LoopPhase] = None,
    ) -> LearningLoop:
        loop = LoopService.get_loop(db, loop_id, user_id)
        try:
            phase = LoopService.lock_for_write(db, loop)
            if event is None:
                event = ADVANCE_EVENTS.get(phase)
                if event is None:
                    raise PhaseContractError(f"阶段 {phase.value} 不能直接推进")

            score = None
            if event == LoopEvent.CONTINUE:
                latest = LoopService.latest_attempt(db, loop.id)
                score = latest.score if latest else None

            entry_mode, _ = LoopService.state_of(loop)
            expected = PhaseMachine.next_phase(phase, event, TransitionContext(entry_mode, score=score))
            if target is not None and expected != target:
                raise PhaseContractError(
                    f"阶段 {phase.value} 的下一阶段是 {expected.value}，不能进入 {target.value}"
                )
            LoopService.apply_transition(db, loop, event, score=score)
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.refresh(loop)
        return loop

    @staticmethod
    def update_phase(
        db: Session,
        loop_id: str,
        user_id: str,
        target_phase: Optional[str] = None,
    ) -> LearningLoop:
        """
        从当前阶段推进到下一阶段

        结果阶段按最近一次提交的分数分支；给出 target_phase 时必须与状态机计算结果一致。

        Raises:
            PhaseContractError: 当前阶段需要提交或对话才能推进，或目标阶段不合法
        """
        target = None
        if target_phase is not None:
            try:
                target = LoopPhase(target_phase)
            except ValueError:
                raise InvalidRequestError(f"未知的阶段: {target_phase!r}")
        return LoopService._advance(db, loop_id, user_id, target=target)

    @staticmethod
    def acknowledge_focus_areas(db: Session, loop_id: str, user_id: str) -> LearningLoop:
        return LoopService._advance(db, loop_id, user_id, LoopEvent.FOCUS_AREAS_ACKNOWLEDGED)

    @staticmethod
    def finish_reading(db: Session, loop_id: str, user_id: str) -> LearningLoop:
        """阅读完成，进入第一次讲解"""
        return LoopService._advance(db, loop_id, user_id, LoopEvent.READING_FINISHED)

    @staticmethod
    def abandon_loop(db: Session, loop_id: str, user_id: str) -> LearningLoop:
        """
        放弃循环（状态写入，不删除）

        进行中的评估返回时会发现循环已放弃并丢弃结果。
        """
        loop = LoopService.get_loop(db, loop_id, user_id)
        try:
            db.refresh(loop, with_for_update=True)
            LoopService.require_in_progress(loop)
            loop.status = LoopStatus.ABANDONED.value
            loop.updated_at = utcnow()
            db.add(loop)
            LoopService.abandon_active_sessions(db, loop.id)
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.refresh(loop)
        logger.info(f"循环 {loop.id} 已放弃")
        return loop
