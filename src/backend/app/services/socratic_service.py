"""
苏格拉底式补漏对话服务

会话针对某次提交漏讲的要点逐一追问；
回复判断某个目标概念已讲清时加入 concepts_addressed（只增不减），
全部讲清后会话完成，循环在同一事务中进入 second_attempt。
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from app.core.errors import (
    InvalidRequestError,
    PhaseContractError,
    SessionNotFoundError,
)
from app.core.mastery import normalize_concept_name
from app.core.phases import LoopEvent, LoopPhase, PhaseMachine, TransitionContext
from app.core.timeutils import utcnow
from app.llm.schemas import SocraticReply
from app.models import LearningLoop, LoopAttempt, SessionStatus, SocraticSession
from app.services.evaluation_service import EvaluationService
from app.services.loop_service import LoopService

logger = logging.getLogger(__name__)


def _message(role: str, content: str) -> Dict[str, Any]:
    return {"role": role, "content": content, "created_at": utcnow().isoformat()}


def match_target(concept: Optional[str], remaining: List[str]) -> Optional[str]:
    """把回复中的概念对应到剩余目标（忽略大小写与首尾空白），不属于目标时返回 None"""
    if not concept:
        return None
    wanted = normalize_concept_name(concept)
    for target in remaining:
        if normalize_concept_name(target) == wanted:
            return target
    return None


class SocraticService:
    """补漏对话服务"""

    @staticmethod
    def _target_attempt(db: Session, loop: LearningLoop, attempt_id: Optional[str]) -> LoopAttempt:
        if attempt_id:
            attempt = (
                db.query(LoopAttempt)
                .filter(LoopAttempt.id == attempt_id, LoopAttempt.loop_id == loop.id)
                .first()
            )
        else:
            attempt = LoopService.latest_attempt(db, loop.id)
        if not attempt:
            raise InvalidRequestError("没有可用于补漏的讲解提交")
        return attempt

    @staticmethod
    def get_session(db: Session, loop: LearningLoop, session_id: str) -> SocraticSession:
        session = (
            db.query(SocraticSession)
            .filter(SocraticSession.id == session_id, SocraticSession.loop_id == loop.id)
            .first()
        )
        if not session:
            raise SessionNotFoundError("补漏对话不存在")
        return session

    @staticmethod
    async def start_session(
        db: Session,
        evaluator: EvaluationService,
        loop_id: str,
        user_id: str,
        attempt_id: Optional[str] = None,
    ) -> Tuple[SocraticSession, LearningLoop]:
        """
        开始补漏对话

        循环处于 first_results 时，分数低于门槛的迁移到 learning 与会话创建一起提交；
        已有的 active 会话会被放弃。

        Raises:
            PhaseContractError: 阶段不是 first_results / learning，或分数已达门槛
            InvalidRequestError: 没有漏讲的要点
            EvaluationUnavailableError: 评估服务不可用
        """
        loop = LoopService.get_loop(db, loop_id, user_id)
        LoopService.require_in_progress(loop)
        entry_mode, phase = LoopService.state_of(loop)

        attempt = SocraticService._target_attempt(db, loop, attempt_id)
        if phase == LoopPhase.FIRST_RESULTS:
            following = PhaseMachine.next_phase(
                phase, LoopEvent.CONTINUE, TransitionContext(entry_mode, score=attempt.score)
            )
            if following != LoopPhase.LEARNING:
                raise PhaseContractError(f"分数已达掌握门槛，下一阶段是 {following.value}，无需补漏")
        elif phase != LoopPhase.LEARNING:
            raise PhaseContractError(f"阶段 {phase.value} 不能开始补漏对话")

        targets = attempt.missed_points
        if not targets:
            raise InvalidRequestError("本次讲解没有漏讲的要点，无需补漏")

        question = await evaluator.socratic_question(
            source_text=loop.source_text,
            target_concepts=targets,
            addressed_concepts=[],
            stage="start",
        )

        try:
            LoopService.lock_for_write(db, loop, phase)
            LoopService.abandon_active_sessions(db, loop.id)
            session = SocraticSession(
                loop_id=loop.id,
                attempt_id=attempt.id,
                target_concepts=list(targets),
                messages=[_message("assistant", question)],
                concepts_addressed=[],
                status=SessionStatus.ACTIVE.value,
            )
            db.add(session)
            if phase == LoopPhase.FIRST_RESULTS:
                LoopService.apply_transition(db, loop, LoopEvent.CONTINUE, score=attempt.score)
            db.commit()
        except Exception:
            db.rollback()
            raise

        db.refresh(session)
        db.refresh(loop)
        logger.info(f"循环 {loop.id} 开始补漏对话 {session.id}，目标 {len(targets)} 个概念")
        return session, loop

    @staticmethod
    async def send_message(
        db: Session,
        evaluator: EvaluationService,
        loop_id: str,
        session_id: str,
        user_id: str,
        content: str,
    ) -> Tuple[SocraticSession, LearningLoop, SocraticReply]:
        """
        发送一条学习者消息并获取回复

        Returns:
            (会话, 循环, 回复)

        Raises:
            SessionNotFoundError: 会话不存在
            PhaseContractError: 会话已结束或循环不在 learning 阶段
        """
        if not content or not content.strip():
            raise InvalidRequestError("消息内容不能为空")

        loop = LoopService.get_loop(db, loop_id, user_id)
        LoopService.require_in_progress(loop)
        _, phase = LoopService.state_of(loop)
        if phase != LoopPhase.LEARNING:
            raise PhaseContractError(f"阶段 {phase.value} 不接受补漏对话消息")

        session = SocraticService.get_session(db, loop, session_id)
        if session.status != SessionStatus.ACTIVE.value:
            raise PhaseContractError(f"补漏对话已{'完成' if session.status == SessionStatus.COMPLETED.value else '放弃'}")

        reply = await evaluator.socratic_reply(
            source_text=loop.source_text,
            key_concepts=loop.key_concepts or [],
            target_concepts=session.target_concepts or [],
            addressed_concepts=session.concepts_addressed or [],
            history=[{"role": m["role"], "content": m["content"]} for m in session.messages or []],
            user_message=content,
        )

        try:
            LoopService.lock_for_write(db, loop, LoopPhase.LEARNING)
            db.refresh(session, with_for_update=True)
            if session.status != SessionStatus.ACTIVE.value:
                logger.warning(f"会话 {session.id} 已结束，丢弃本次回复")
                raise PhaseContractError("补漏对话已结束")

            session.messages = list(session.messages or []) + [
                _message("user", content),
                _message("assistant", reply.message),
            ]
            addressed = match_target(reply.addressed_concept, session.remaining_concepts)
            if addressed:
                session.concepts_addressed = list(session.concepts_addressed or []) + [addressed]
                logger.info(f"会话 {session.id} 讲清概念: {addressed}")

            session.updated_at = utcnow()
            if session.all_addressed:
                session.status = SessionStatus.COMPLETED.value
                session.completed_at = session.updated_at
                LoopService.apply_transition(db, loop, LoopEvent.SOCRATIC_COMPLETED)
                logger.info(f"会话 {session.id} 已完成全部目标概念")
            db.add(session)
            db.commit()
        except Exception:
            db.rollback()
            raise

        db.refresh(session)
        db.refresh(loop)
        return session, loop, reply

    @staticmethod
    def skip(db: Session, loop_id: str, user_id: str) -> LearningLoop:
        """跳过补漏：放弃 active 会话（如有），直接进入 second_attempt"""
        loop = LoopService.get_loop(db, loop_id, user_id)
        try:
            LoopService.lock_for_write(db, loop, LoopPhase.LEARNING)
            LoopService.abandon_active_sessions(db, loop.id)
            LoopService.apply_transition(db, loop, LoopEvent.SOCRATIC_SKIPPED)
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.refresh(loop)
        logger.info(f"循环 {loop.id} 跳过补漏对话")
        return loop
