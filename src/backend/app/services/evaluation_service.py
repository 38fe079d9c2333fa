"""
评估服务

把外部 LLM 当作黑盒评估器使用：概念提取、讲解评估、已有知识评估、补漏对话。
超时与上游错误统一转换为可重试的 EvaluationUnavailableError，不会返回空结构。
分数由引擎计算，不采用模型给出的分数。
"""
import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from app.core.config import EngineConfig, get_engine_config
from app.core.errors import EvaluationUnavailableError
from app.core.mastery import round_half_up
from app.core.personas import get_persona
from app.llm import LLMClient, LLMError, get_llm_client, trace_llm_call
from app.llm.schemas import (
    ConceptExtraction,
    EvaluationResult,
    PriorKnowledgeAnalysis,
    SocraticReply,
)
from prompts import PromptLoader, prompt_loader

logger = logging.getLogger(__name__)

# 分数权重
COVERAGE_WEIGHT = 0.6
ACCURACY_WEIGHT = 0.4

# 传给模型的材料截断长度
EXTRACTION_SOURCE_CHARS = 8000
EVALUATION_SOURCE_CHARS = 2000
PRIOR_KNOWLEDGE_SOURCE_CHARS = 1500
SOCRATIC_QUESTION_SOURCE_CHARS = 3000
SOCRATIC_REPLY_SOURCE_CHARS = 2000

ALL_ADDRESSED_QUESTION = "Great work! You've addressed all the gaps. Ready to explain again?"
ALL_ADDRESSED_REPLY = (
    "Excellent! You've demonstrated understanding of all the concepts we were working on. "
    "You're ready for another attempt at explaining the full material!"
)
FALLBACK_QUESTION = "What do you think the main idea here is?"
FALLBACK_REPLY = "Interesting. Can you elaborate on that?"


def compute_score(coverage: float, accuracy: float) -> int:
    """score = round((coverage * 0.6 + accuracy * 0.4) * 100)，四舍五入，范围 0-100"""
    raw = (coverage * COVERAGE_WEIGHT + accuracy * ACCURACY_WEIGHT) * 100
    return max(0, min(100, round_half_up(raw)))


def truncate_source(text: str, limit: int) -> str:
    if len(text) > limit:
        return text[:limit] + "..."
    return text


class EvaluationService:
    """LLM 评估服务"""

    def __init__(
        self,
        llm_client: LLMClient,
        config: Optional[EngineConfig] = None,
        loader: Optional[PromptLoader] = None,
        retry_delay: float = 1.0,
    ):
        self.llm = llm_client
        self.config = config or get_engine_config()
        self.loader = loader or prompt_loader
        self.retry_delay = retry_delay

    async def _complete(self, template: str, **variables) -> str:
        """渲染模板并调用模型，超时与调用失败转换为可重试错误"""
        messages = self.loader.get_messages(template, **variables)
        settings = self.loader.get_settings(template)
        try:
            response = await asyncio.wait_for(
                self.llm.chat(
                    messages,
                    temperature=settings.get("temperature", 0.3),
                    max_tokens=settings.get("max_tokens"),
                    json_mode=settings.get("json_mode", False),
                ),
                timeout=self.config.evaluation_timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"评估服务超时: {template} ({self.config.evaluation_timeout}s)")
            raise EvaluationUnavailableError("评估服务超时，请稍后重试", cause=e)
        except LLMError as e:
            logger.error(f"评估服务调用失败: {template}: {e}")
            raise EvaluationUnavailableError("评估服务暂时不可用，请稍后重试", cause=e)
        return response.content or ""

    async def _complete_json(self, template: str, **variables) -> Dict[str, Any]:
        content = await self._complete(template, **variables)
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            logger.error(f"评估结果无法解析为 JSON: {template}: {content[:200]!r}")
            raise EvaluationUnavailableError("评估结果无法解析，请稍后重试", cause=e)
        if not isinstance(data, dict):
            raise EvaluationUnavailableError("评估结果格式错误，请稍后重试")
        return data

    @trace_llm_call("concept_extraction", tags=["extraction"])
    async def extract_concepts(self, *, source_text: str, precision: str = "balanced") -> ConceptExtraction:
        """
        提取关键概念与概念关系

        失败时按退避重试，重试耗尽返回空结果，不抛出异常。
        """
        retries = self.config.concept_extraction_retries
        variables = {
            "source_text": truncate_source(source_text, EXTRACTION_SOURCE_CHARS),
            "precision": precision,
        }

        for attempt in range(retries + 1):
            if attempt > 0:
                logger.info(f"概念提取重试 {attempt}/{retries}")
                await asyncio.sleep(self.retry_delay * attempt)
            try:
                data = await self._complete_json("concept_extraction", **variables)
                extraction = ConceptExtraction.model_validate(data)
            except (EvaluationUnavailableError, ValidationError) as e:
                logger.warning(f"概念提取失败（第 {attempt + 1} 次）: {e}")
                continue
            if extraction.is_empty:
                logger.warning("概念提取返回空列表")
                continue
            logger.info(f"概念提取成功: {len(extraction.concepts)} 个概念")
            return extraction

        logger.error("概念提取重试耗尽，返回空结果")
        return ConceptExtraction()

    @trace_llm_call("explanation_evaluation", tags=["evaluation"])
    async def evaluate_explanation(
        self,
        *,
        source_text: str,
        transcript: str,
        key_concepts: List[str],
        persona: str,
        attempt_type: str,
        precision: str = "balanced",
        prior_knowledge: Optional[Dict[str, Any]] = None,
    ) -> EvaluationResult:
        """
        评估一次讲解

        Raises:
            EvaluationUnavailableError: 超时、调用失败或输出无法解析
        """
        data = await self._complete_json(
            "explanation_evaluation",
            persona_prefix=get_persona(persona).prompt_prefix,
            source_text=truncate_source(source_text, EVALUATION_SOURCE_CHARS),
            transcript=transcript,
            key_concepts=key_concepts,
            precision=precision,
            attempt_type=attempt_type,
            prior_knowledge=_prior_knowledge_context(prior_knowledge),
        )
        try:
            return EvaluationResult.from_llm(data)
        except ValidationError as e:
            raise EvaluationUnavailableError("评估结果字段不完整，请稍后重试", cause=e)

    @trace_llm_call("prior_knowledge_assessment", tags=["prior_knowledge"])
    async def assess_prior_knowledge(
        self,
        *,
        source_text: str,
        target_concepts: List[str],
        transcript: str,
    ) -> PriorKnowledgeAnalysis:
        """
        评估学习前的已有知识

        Raises:
            EvaluationUnavailableError: 超时、调用失败或输出无法解析
        """
        data = await self._complete_json(
            "prior_knowledge",
            source_text=truncate_source(source_text, PRIOR_KNOWLEDGE_SOURCE_CHARS),
            target_concepts=target_concepts,
            transcript=transcript,
        )
        try:
            return PriorKnowledgeAnalysis.model_validate(data)
        except ValidationError as e:
            raise EvaluationUnavailableError("已有知识评估结果字段不完整，请稍后重试", cause=e)

    async def socratic_question(
        self,
        *,
        source_text: str,
        target_concepts: List[str],
        addressed_concepts: List[str],
        stage: str = "start",
    ) -> str:
        """生成补漏对话的提问"""
        remaining = [c for c in target_concepts if c not in addressed_concepts]
        if not remaining:
            return ALL_ADDRESSED_QUESTION

        content = await self._complete(
            "socratic_question",
            source_text=truncate_source(source_text, SOCRATIC_QUESTION_SOURCE_CHARS),
            remaining_concepts=remaining,
            addressed_concepts=addressed_concepts,
            stage=stage,
        )
        return content.strip() or FALLBACK_QUESTION

    async def socratic_reply(
        self,
        *,
        source_text: str,
        key_concepts: List[Dict[str, Any]],
        target_concepts: List[str],
        addressed_concepts: List[str],
        history: List[Dict[str, Any]],
        user_message: str,
    ) -> SocraticReply:
        """
        生成补漏对话的回复，并判断当前概念是否已讲清

        回复无法解析时以追问继续对话，不标记任何概念。
        """
        remaining = [c for c in target_concepts if c not in addressed_concepts]
        if not remaining:
            return SocraticReply(message=ALL_ADDRESSED_REPLY)

        content = await self._complete(
            "socratic_reply",
            source_text=truncate_source(source_text, SOCRATIC_REPLY_SOURCE_CHARS),
            key_concepts=[
                {"concept": c.get("concept", ""), "explanation": c.get("explanation", "")}
                for c in key_concepts
            ],
            remaining_concepts=remaining,
            history=history,
            user_message=user_message,
        )
        try:
            reply = SocraticReply.model_validate(json.loads(content))
        except (json.JSONDecodeError, ValidationError, TypeError):
            logger.warning(f"补漏对话回复无法解析: {content[:200]!r}")
            return SocraticReply(message=FALLBACK_REPLY)
        if not reply.message:
            reply.message = "Tell me more about that."
        return reply


def _prior_knowledge_context(analysis: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not analysis:
        return None
    return {
        "known_concepts": analysis.get("known_concepts") or [],
        "focus_areas": analysis.get("focus_areas") or [],
        "misconceptions": [
            {"claim": m.get("claim", ""), "correction": m.get("correction", "")}
            for m in analysis.get("misconceptions") or []
        ],
    }


_evaluation_service: Optional[EvaluationService] = None


def get_evaluation_service() -> EvaluationService:
    """FastAPI 依赖：获取评估服务（单例）"""
    global _evaluation_service
    if _evaluation_service is None:
        _evaluation_service = EvaluationService(get_llm_client(), get_engine_config())
    return _evaluation_service
