"""
讲解提交服务（提交记录账本）

一次提交：校验阶段 -> 检查额度 -> 调用评估 -> 加锁重新校验 ->
插入提交记录（编号冲突时重试）-> 计算与上一次的差异 -> 推进阶段 -> 写入知识图谱 -> 计数。
以上写入在同一个事务中提交，不会出现有提交无阶段迁移或有迁移无提交的状态。
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import EngineConfig
from app.core.errors import InvalidRequestError, PhaseContractError
from app.core.phases import AttemptType, LoopEvent, PhaseMachine
from app.core.timeutils import utcnow
from app.llm.schemas import EvaluationResult
from app.models import LearningLoop, LoopAttempt
from app.services.evaluation_service import EvaluationService, compute_score
from app.services.knowledge_service import KnowledgeService
from app.services.loop_service import LoopService
from app.services.usage_service import UsageService
from app.services.user_service import UserService

logger = logging.getLogger(__name__)


def compute_attempt_delta(
    previous_score: Optional[int],
    previous_covered: Optional[Sequence[str]],
    score: int,
    covered: Sequence[str],
) -> Tuple[Optional[int], List[str]]:
    """
    计算与上一次提交的差异

    Args:
        previous_score: 上一次的分数，没有上一次时为 None
        previous_covered: 上一次讲到的要点
        score: 本次分数
        covered: 本次讲到的要点

    Returns:
        (score_delta, newly_covered)：第一次提交为 (None, [])；
        newly_covered 按字符串精确匹配做差集，保持本次要点的顺序
    """
    if previous_score is None:
        return None, []
    seen = set(previous_covered or [])
    newly_covered = []
    for point in covered:
        if point not in seen and point not in newly_covered:
            newly_covered.append(point)
    return score - previous_score, newly_covered


@dataclass
class AttemptOutcome:
    """一次提交的结果"""
    attempt: LoopAttempt
    loop: LearningLoop
    evaluation: EvaluationResult
    usage: Dict[str, Any]


class AttemptService:
    """讲解提交服务"""

    @staticmethod
    def list_attempts(db: Session, loop_id: str, user_id: str) -> List[LoopAttempt]:
        loop = LoopService.get_loop(db, loop_id, user_id)
        return (
            db.query(LoopAttempt)
            .filter(LoopAttempt.loop_id == loop.id)
            .order_by(LoopAttempt.attempt_number.asc())
            .all()
        )

    @staticmethod
    def _parse_attempt_type(value: Optional[str], default: AttemptType) -> AttemptType:
        if value is None:
            return default
        try:
            return AttemptType(value)
        except ValueError:
            raise InvalidRequestError(f"未知的提交类型: {value!r}")

    @staticmethod
    def _insert_attempt(
        db: Session,
        loop: LearningLoop,
        config: EngineConfig,
        expected_phase,
        values: Dict[str, Any],
    ) -> Tuple[LoopAttempt, Optional[LoopAttempt]]:
        """
        加锁后插入提交记录，编号 = 已有数量 + 1

        (loop_id, attempt_number) 唯一约束冲突时回滚并重新加锁重试，
        重试前重新校验阶段，阶段已被并发提交推进则拒绝。

        Returns:
            (新提交, 上一次提交)
        """
        for attempt_try in range(config.attempt_insert_retries + 1):
            LoopService.lock_for_write(db, loop, expected_phase)
            count = (
                db.query(func.count(LoopAttempt.id))
                .filter(LoopAttempt.loop_id == loop.id)
                .scalar()
            ) or 0
            previous = LoopService.latest_attempt(db, loop.id)

            attempt = LoopAttempt(loop_id=loop.id, attempt_number=count + 1, **values)
            db.add(attempt)
            try:
                db.flush()
                return attempt, previous
            except IntegrityError:
                db.rollback()
                logger.warning(
                    f"循环 {loop.id} 提交编号 {count + 1} 冲突，重试 {attempt_try + 1}/{config.attempt_insert_retries}"
                )

        raise PhaseContractError("提交编号冲突次数过多，请刷新后重试")

    @staticmethod
    async def submit_attempt(
        db: Session,
        evaluator: EvaluationService,
        loop_id: str,
        user_id: str,
        transcript: str,
        attempt_type: Optional[str] = None,
        persona: Optional[str] = None,
        duration_seconds: Optional[int] = None,
        speech_metrics: Optional[Dict[str, Any]] = None,
    ) -> AttemptOutcome:
        """
        提交一次讲解

        Args:
            db: 数据库会话
            evaluator: 评估服务
            loop_id: 循环ID
            user_id: 调用者
            transcript: 讲解转写文本
            attempt_type: full_explanation / simplify_challenge（默认按当前阶段）
            persona: 讲评人设（默认使用用户偏好）
            duration_seconds: 讲解时长
            speech_metrics: 语速、停顿等指标

        Returns:
            AttemptOutcome: 提交记录、更新后的循环、评估结果和额度

        Raises:
            PhaseContractError: 当前阶段不接受该类型的提交
            LoopClosedError: 循环已放弃或已完成（含评估期间被放弃）
            UsageLimitExceededError: 超出免费额度
            EvaluationUnavailableError: 评估服务不可用，不会写入任何数据
        """
        if not transcript or not transcript.strip():
            raise InvalidRequestError("讲解内容不能为空")

        loop = LoopService.get_loop(db, loop_id, user_id)
        LoopService.require_in_progress(loop)
        _, phase = LoopService.state_of(loop)
        accepted = PhaseMachine.accepted_attempt_type(phase)
        if accepted is None:
            raise PhaseContractError(f"阶段 {phase.value} 不接受讲解提交")
        kind = AttemptService._parse_attempt_type(attempt_type, accepted)
        PhaseMachine.require_attempt_accepted(phase, kind)

        user = UserService.require_user(db, user_id)
        persona = UserService.resolve_persona(user, persona)
        UsageService.check_limit(user, evaluator.config)

        concepts = await LoopService.ensure_concepts(db, evaluator, loop)
        evaluation = await evaluator.evaluate_explanation(
            source_text=loop.source_text,
            transcript=transcript,
            key_concepts=concepts,
            persona=persona,
            attempt_type=kind.value,
            precision=loop.precision,
            prior_knowledge=loop.prior_knowledge_analysis,
        )
        score = compute_score(evaluation.coverage, evaluation.accuracy)
        now = utcnow()

        try:
            attempt, previous = AttemptService._insert_attempt(
                db,
                loop,
                evaluator.config,
                phase,
                {
                    "attempt_type": kind.value,
                    "transcript": transcript,
                    "duration_seconds": duration_seconds,
                    "score": score,
                    "coverage": evaluation.coverage,
                    "accuracy": evaluation.accuracy,
                    "analysis": {
                        "covered_points": evaluation.covered_points,
                        "missed_points": evaluation.missed_points,
                        "feedback": evaluation.feedback,
                        "delivery_script": evaluation.delivery_script.render(score).model_dump(),
                    },
                    "speech_metrics": speech_metrics,
                    "persona": persona,
                    "created_at": now,
                },
            )
            delta, newly_covered = compute_attempt_delta(
                previous.score if previous else None,
                previous.covered_points if previous else None,
                score,
                evaluation.covered_points,
            )
            attempt.score_delta = delta
            attempt.newly_covered = newly_covered

            LoopService.apply_transition(db, loop, LoopEvent.ATTEMPT_SUBMITTED, score=score, now=now)
            KnowledgeService.record_attempt(db, loop, evaluation.covered_points, phase, now)
            UsageService.record_usage(db, user, now)
            db.commit()
        except Exception:
            db.rollback()
            raise

        db.refresh(attempt)
        db.refresh(loop)
        logger.info(
            f"循环 {loop.id} 第 {attempt.attempt_number} 次提交: {score} 分"
            f"（变化 {delta if delta is not None else '-'}），进入 {loop.current_phase}"
        )
        return AttemptOutcome(
            attempt=attempt,
            loop=loop,
            evaluation=evaluation,
            usage=UsageService.get_usage(user, evaluator.config),
        )
