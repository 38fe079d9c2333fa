"""
学习循环阶段状态机

显式迁移表：(当前阶段, 事件) -> 下一阶段。
纯函数，不访问数据库，所有迁移只由 (phase, event, score / 会话完成情况) 决定。

标准顺序：
    prior_knowledge -> first_attempt -> first_results -> learning -> second_attempt
    -> second_results -> simplify -> simplify_results -> complete

入口模式：
    standard        从 first_attempt 开始
    prior_knowledge 先评估已有知识，可选地展示 focus_areas_display
    reading_first   视频/长文：先评估已有知识，再 focus_areas_display / reading
"""
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, FrozenSet, Optional, Tuple, Union

from app.core.errors import DataIntegrityError, PhaseContractError


# 唯一的掌握门槛，first_results 与 second_results 两处分支共用
MASTERY_GATE = 85


class LoopPhase(str, Enum):
    """学习循环阶段"""
    PRIOR_KNOWLEDGE = "prior_knowledge"
    FOCUS_AREAS_DISPLAY = "focus_areas_display"
    READING = "reading"
    FIRST_ATTEMPT = "first_attempt"
    FIRST_RESULTS = "first_results"
    LEARNING = "learning"
    SECOND_ATTEMPT = "second_attempt"
    SECOND_RESULTS = "second_results"
    SIMPLIFY = "simplify"
    SIMPLIFY_RESULTS = "simplify_results"
    COMPLETE = "complete"


class EntryMode(str, Enum):
    """学习循环入口模式"""
    STANDARD = "standard"
    PRIOR_KNOWLEDGE = "prior_knowledge"
    READING_FIRST = "reading_first"


class LoopEvent(str, Enum):
    """驱动阶段迁移的事件"""
    PRIOR_KNOWLEDGE_ASSESSED = "prior_knowledge_assessed"
    PRIOR_KNOWLEDGE_SKIPPED = "prior_knowledge_skipped"
    FOCUS_AREAS_ACKNOWLEDGED = "focus_areas_acknowledged"
    READING_FINISHED = "reading_finished"
    ATTEMPT_SUBMITTED = "attempt_submitted"
    CONTINUE = "continue"
    SOCRATIC_COMPLETED = "socratic_completed"
    SOCRATIC_SKIPPED = "socratic_skipped"


class AttemptType(str, Enum):
    """讲解提交类型"""
    FULL_EXPLANATION = "full_explanation"
    SIMPLIFY_CHALLENGE = "simplify_challenge"


_CORE_PHASES = frozenset({
    LoopPhase.FIRST_ATTEMPT,
    LoopPhase.FIRST_RESULTS,
    LoopPhase.LEARNING,
    LoopPhase.SECOND_ATTEMPT,
    LoopPhase.SECOND_RESULTS,
    LoopPhase.SIMPLIFY,
    LoopPhase.SIMPLIFY_RESULTS,
    LoopPhase.COMPLETE,
})

VALID_PHASES: Dict[EntryMode, FrozenSet[LoopPhase]] = {
    EntryMode.STANDARD: _CORE_PHASES,
    EntryMode.PRIOR_KNOWLEDGE: _CORE_PHASES | {
        LoopPhase.PRIOR_KNOWLEDGE,
        LoopPhase.FOCUS_AREAS_DISPLAY,
    },
    EntryMode.READING_FIRST: _CORE_PHASES | {
        LoopPhase.PRIOR_KNOWLEDGE,
        LoopPhase.FOCUS_AREAS_DISPLAY,
        LoopPhase.READING,
    },
}

ENTRY_PHASES: Dict[EntryMode, LoopPhase] = {
    EntryMode.STANDARD: LoopPhase.FIRST_ATTEMPT,
    EntryMode.PRIOR_KNOWLEDGE: LoopPhase.PRIOR_KNOWLEDGE,
    EntryMode.READING_FIRST: LoopPhase.PRIOR_KNOWLEDGE,
}

# 接受提交的阶段及其对应的提交类型
ATTEMPT_PHASES: Dict[LoopPhase, AttemptType] = {
    LoopPhase.FIRST_ATTEMPT: AttemptType.FULL_EXPLANATION,
    LoopPhase.SECOND_ATTEMPT: AttemptType.FULL_EXPLANATION,
    LoopPhase.SIMPLIFY: AttemptType.SIMPLIFY_CHALLENGE,
}


@dataclass(frozen=True)
class TransitionContext:
    """
    迁移判定所需的上下文

    Attributes:
        entry_mode: 循环的入口模式
        score: 最近一次提交的分数（仅结果阶段需要）
        has_focus_areas: 已有知识评估是否给出了重点关注领域
    """
    entry_mode: EntryMode
    score: Optional[int] = None
    has_focus_areas: bool = False


def passes_mastery_gate(score: int) -> bool:
    """分数是否达到掌握门槛"""
    return score >= MASTERY_GATE


def _after_prior_knowledge(ctx: TransitionContext) -> LoopPhase:
    if ctx.has_focus_areas:
        return LoopPhase.FOCUS_AREAS_DISPLAY
    return _after_focus_areas(ctx)


def _after_prior_knowledge_skipped(ctx: TransitionContext) -> LoopPhase:
    return _after_focus_areas(ctx)


def _after_focus_areas(ctx: TransitionContext) -> LoopPhase:
    if ctx.entry_mode == EntryMode.READING_FIRST:
        return LoopPhase.READING
    return LoopPhase.FIRST_ATTEMPT


def _gated(passed: LoopPhase, failed: LoopPhase) -> Callable[[TransitionContext], LoopPhase]:
    def resolve(ctx: TransitionContext) -> LoopPhase:
        if ctx.score is None:
            raise PhaseContractError("结果阶段的迁移需要最近一次提交的分数")
        return passed if passes_mastery_gate(ctx.score) else failed
    return resolve


_Target = Union[LoopPhase, Callable[[TransitionContext], LoopPhase]]

TRANSITIONS: Dict[Tuple[LoopPhase, LoopEvent], _Target] = {
    (LoopPhase.PRIOR_KNOWLEDGE, LoopEvent.PRIOR_KNOWLEDGE_ASSESSED): _after_prior_knowledge,
    (LoopPhase.PRIOR_KNOWLEDGE, LoopEvent.PRIOR_KNOWLEDGE_SKIPPED): _after_prior_knowledge_skipped,
    (LoopPhase.FOCUS_AREAS_DISPLAY, LoopEvent.FOCUS_AREAS_ACKNOWLEDGED): _after_focus_areas,
    (LoopPhase.READING, LoopEvent.READING_FINISHED): LoopPhase.FIRST_ATTEMPT,
    (LoopPhase.FIRST_ATTEMPT, LoopEvent.ATTEMPT_SUBMITTED): LoopPhase.FIRST_RESULTS,
    (LoopPhase.FIRST_RESULTS, LoopEvent.CONTINUE): _gated(LoopPhase.SIMPLIFY, LoopPhase.LEARNING),
    (LoopPhase.LEARNING, LoopEvent.SOCRATIC_COMPLETED): LoopPhase.SECOND_ATTEMPT,
    (LoopPhase.LEARNING, LoopEvent.SOCRATIC_SKIPPED): LoopPhase.SECOND_ATTEMPT,
    (LoopPhase.SECOND_ATTEMPT, LoopEvent.ATTEMPT_SUBMITTED): LoopPhase.SECOND_RESULTS,
    (LoopPhase.SECOND_RESULTS, LoopEvent.CONTINUE): _gated(LoopPhase.COMPLETE, LoopPhase.SIMPLIFY),
    (LoopPhase.SIMPLIFY, LoopEvent.ATTEMPT_SUBMITTED): LoopPhase.SIMPLIFY_RESULTS,
    (LoopPhase.SIMPLIFY_RESULTS, LoopEvent.CONTINUE): LoopPhase.COMPLETE,
}


class PhaseMachine:
    """学习循环阶段状态机"""

    @staticmethod
    def initial_phase(entry_mode: EntryMode) -> LoopPhase:
        """入口模式对应的起始阶段"""
        return ENTRY_PHASES[entry_mode]

    @staticmethod
    def next_phase(
        current: LoopPhase,
        event: LoopEvent,
        ctx: TransitionContext,
    ) -> LoopPhase:
        """
        计算下一阶段

        Args:
            current: 当前阶段
            event: 触发事件
            ctx: 迁移上下文

        Returns:
            LoopPhase: 下一阶段

        Raises:
            PhaseContractError: (current, event) 不是合法迁移，或结果不属于该入口模式
        """
        if current not in VALID_PHASES[ctx.entry_mode]:
            raise PhaseContractError(
                f"阶段 {current.value} 不属于入口模式 {ctx.entry_mode.value}"
            )

        target = TRANSITIONS.get((current, event))
        if target is None:
            raise PhaseContractError(
                f"阶段 {current.value} 不接受事件 {event.value}"
            )

        result = target(ctx) if callable(target) else target
        if result not in VALID_PHASES[ctx.entry_mode]:
            raise PhaseContractError(
                f"迁移结果 {result.value} 不属于入口模式 {ctx.entry_mode.value}"
            )
        return result

    @staticmethod
    def successors(current: LoopPhase, entry_mode: EntryMode) -> FrozenSet[LoopPhase]:
        """列出某阶段在给定入口模式下所有可能的后继阶段（用于校验与测试）"""
        results = set()
        for (phase, _event), target in TRANSITIONS.items():
            if phase != current:
                continue
            if not callable(target):
                results.add(target)
                continue
            for score in (0, MASTERY_GATE):
                for has_focus_areas in (False, True):
                    ctx = TransitionContext(entry_mode, score=score, has_focus_areas=has_focus_areas)
                    results.add(target(ctx))
        return frozenset(p for p in results if p in VALID_PHASES[entry_mode])

    @staticmethod
    def accepted_attempt_type(phase: LoopPhase) -> Optional[AttemptType]:
        """该阶段接受的提交类型，不接受提交时返回 None"""
        return ATTEMPT_PHASES.get(phase)

    @staticmethod
    def require_attempt_accepted(phase: LoopPhase, attempt_type: AttemptType) -> None:
        """
        校验当前阶段可以接受该类型的提交

        Raises:
            PhaseContractError: 阶段不接受提交或类型不匹配
        """
        expected = ATTEMPT_PHASES.get(phase)
        if expected is None:
            raise PhaseContractError(f"阶段 {phase.value} 不接受讲解提交")
        if expected != attempt_type:
            raise PhaseContractError(
                f"阶段 {phase.value} 只接受 {expected.value} 类型的提交，收到 {attempt_type.value}"
            )

    @staticmethod
    def parse_entry_mode(value: str) -> EntryMode:
        """
        解析持久化的入口模式

        Raises:
            DataIntegrityError: 值不是已知入口模式
        """
        try:
            return EntryMode(value)
        except ValueError:
            raise DataIntegrityError(f"未知的入口模式: {value!r}")

    @staticmethod
    def parse_phase(value: str, entry_mode: EntryMode) -> LoopPhase:
        """
        解析持久化的阶段值，拒绝静默回退

        Raises:
            DataIntegrityError: 值不是已知阶段，或不属于该入口模式
        """
        try:
            phase = LoopPhase(value)
        except ValueError:
            raise DataIntegrityError(f"未知的循环阶段: {value!r}")
        if phase not in VALID_PHASES[entry_mode]:
            raise DataIntegrityError(
                f"阶段 {phase.value} 不属于入口模式 {entry_mode.value}"
            )
        return phase
