"""
评估服务结构化输出

LLM 返回的 JSON 先经过这里校验与规整：比例裁剪到 [0, 1]，
列表字段缺失时视为空列表，未知的重要性/关系类型被规整或丢弃。
"""
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator

from app.core.mastery import round_half_up
from app.models.concept import ConceptImportance, RelationshipType


def _as_str_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    return [str(v) for v in value if v is not None and str(v).strip()]


def _clamp(value: Any, low: float, high: float) -> float:
    if value is None:
        return low
    try:
        number = float(value)
    except (TypeError, ValueError):
        return low
    return max(low, min(high, number))


class DeliveryScript(BaseModel):
    """反馈播报脚本"""
    intro: str = ""
    score_announcement: str = ""
    covered_summary: str = ""
    missed_summary: str = ""
    closing: str = ""

    class Config:
        populate_by_name = True

    def render(self, score: int) -> "DeliveryScript":
        """填充 {score} 占位符"""
        return self.model_copy(update={
            "score_announcement": self.score_announcement.replace("{score}", str(score)),
        })


class EvaluationResult(BaseModel):
    """讲解评估结果（分数由引擎计算，不由模型给出）"""
    covered_points: List[str] = Field(default_factory=list)
    missed_points: List[str] = Field(default_factory=list)
    coverage: float
    accuracy: float
    feedback: str = ""
    delivery_script: DeliveryScript = Field(default_factory=DeliveryScript)

    class Config:
        populate_by_name = True

    @field_validator("covered_points", "missed_points", mode="before")
    @classmethod
    def _points(cls, value):
        return _as_str_list(value)

    @field_validator("coverage", "accuracy", mode="before")
    @classmethod
    def _ratio(cls, value):
        # 缺失或非数值视为输出不完整
        if value is None or isinstance(value, bool):
            raise ValueError("ratio is required")
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise ValueError(f"ratio is not a number: {value!r}")
        return max(0.0, min(1.0, number))

    @field_validator("delivery_script", mode="before")
    @classmethod
    def _script(cls, value):
        return value if isinstance(value, (dict, DeliveryScript)) else {}

    @field_validator("feedback", mode="before")
    @classmethod
    def _feedback(cls, value):
        return value or ""

    @classmethod
    def from_llm(cls, data: dict) -> "EvaluationResult":
        """兼容 tts_script 旧字段名"""
        if "delivery_script" not in data and isinstance(data.get("tts_script"), dict):
            data = {**data, "delivery_script": data["tts_script"]}
        return cls.model_validate(data)


class KeyConcept(BaseModel):
    concept: str
    explanation: str = ""
    importance: str = ConceptImportance.SUPPORTING.value

    @field_validator("importance", mode="before")
    @classmethod
    def _importance(cls, value):
        allowed = {i.value for i in ConceptImportance}
        value = str(value or "").strip().lower()
        return value if value in allowed else ConceptImportance.SUPPORTING.value

    @field_validator("explanation", mode="before")
    @classmethod
    def _explanation(cls, value):
        return value or ""


class ConceptLink(BaseModel):
    from_concept: str = Field(alias="from")
    to_concept: str = Field(alias="to")
    type: str = RelationshipType.ENABLES.value

    class Config:
        populate_by_name = True

    @property
    def is_known_type(self) -> bool:
        return self.type in {t.value for t in RelationshipType}


class ConceptMap(BaseModel):
    relationships: List[ConceptLink] = Field(default_factory=list)

    @field_validator("relationships", mode="before")
    @classmethod
    def _relationships(cls, value):
        return value or []

    def known_relationships(self) -> List[ConceptLink]:
        return [r for r in self.relationships if r.is_known_type]

    def to_storage(self) -> dict:
        return {
            "relationships": [
                {"from": r.from_concept, "to": r.to_concept, "type": r.type}
                for r in self.known_relationships()
            ]
        }


class ConceptExtraction(BaseModel):
    """概念提取结果"""
    concepts: List[KeyConcept] = Field(default_factory=list)
    concept_map: ConceptMap = Field(default_factory=ConceptMap, alias="conceptMap")

    class Config:
        populate_by_name = True

    @field_validator("concepts", mode="before")
    @classmethod
    def _concepts(cls, value):
        return [c for c in (value or []) if isinstance(c, dict) and c.get("concept")]

    @property
    def is_empty(self) -> bool:
        return not self.concepts


class Misconception(BaseModel):
    claim: str = ""
    correction: str = ""


class PriorKnowledgeAnalysis(BaseModel):
    """已有知识评估结果"""
    known_concepts: List[str] = Field(default_factory=list, alias="knownConcepts")
    partial_concepts: List[str] = Field(default_factory=list, alias="partialConcepts")
    unknown_concepts: List[str] = Field(default_factory=list, alias="unknownConcepts")
    misconceptions: List[Misconception] = Field(default_factory=list)
    focus_areas: List[str] = Field(default_factory=list, alias="focusAreas")
    confidence_score: int = Field(default=0, alias="confidenceScore")
    feedback: str = ""

    class Config:
        populate_by_name = True

    @field_validator("known_concepts", "partial_concepts", "unknown_concepts", "focus_areas", mode="before")
    @classmethod
    def _lists(cls, value):
        return _as_str_list(value)

    @field_validator("misconceptions", mode="before")
    @classmethod
    def _misconceptions(cls, value):
        return [m for m in (value or []) if isinstance(m, dict)]

    @field_validator("confidence_score", mode="before")
    @classmethod
    def _confidence(cls, value):
        return round_half_up(_clamp(value, 0, 100))

    @field_validator("feedback", mode="before")
    @classmethod
    def _feedback(cls, value):
        return value or ""


class SocraticReply(BaseModel):
    """补漏对话回复"""
    message: str = ""
    addressed: bool = False
    current_concept: Optional[str] = Field(default=None, alias="currentConcept")

    class Config:
        populate_by_name = True

    @property
    def addressed_concept(self) -> Optional[str]:
        return self.current_concept if self.addressed and self.current_concept else None
