"""
Pytest 配置和通用 Fixtures

提供内存 SQLite 数据库、脚本化的假 LLM 客户端和基于它的评估服务
"""
import json
import os
from collections import defaultdict
from typing import Any, Dict, List, Optional

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("LANGFUSE_ENABLED", "false")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import EngineConfig
from app.llm.base import ChatResponse, LLMClient, LLMError
from app.models import drop_all, init_db
from app.services.evaluation_service import EvaluationService
from app.services.user_service import UserService


# ==================== 假 LLM 客户端 ====================

# 根据 system prompt 中的标志性语句判断调用类型
_PROMPT_MARKERS = (
    ("extract the key concepts", "concept_extraction"),
    ("evaluating a learner's spoken explanation", "explanation_evaluation"),
    ("assessing a learner's prior knowledge", "prior_knowledge"),
    ("Socratic tutor helping", "socratic_question"),
    ("Socratic tutor in an ongoing dialogue", "socratic_reply"),
)


def classify_prompt(messages: List[Dict[str, str]]) -> str:
    system = messages[0]["content"] if messages else ""
    for marker, kind in _PROMPT_MARKERS:
        if marker in system:
            return kind
    return "unknown"


class FakeLLMClient(LLMClient):
    """
    脚本化的 LLM 客户端

    按调用类型排队回复；队列为空时使用默认回复。
    回复可以是 dict（序列化为 JSON）、str、异常或接收 messages 的函数。
    """

    def __init__(self):
        self.queues: Dict[str, List[Any]] = defaultdict(list)
        self.defaults: Dict[str, Any] = {
            "concept_extraction": extraction_payload(),
            "socratic_question": "What do you think the main idea here is?",
        }
        self.calls: List[Dict[str, Any]] = []

    def script(self, kind: str, *responses: Any) -> "FakeLLMClient":
        self.queues[kind].extend(responses)
        return self

    def set_default(self, kind: str, response: Any) -> "FakeLLMClient":
        self.defaults[kind] = response
        return self

    def calls_of(self, kind: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["kind"] == kind]

    async def chat(
        self,
        messages: List[Dict[str, str]],
        *,
        model: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: Optional[int] = None,
        json_mode: bool = False,
    ) -> ChatResponse:
        kind = classify_prompt(messages)
        self.calls.append({"kind": kind, "messages": messages, "json_mode": json_mode})

        queue = self.queues.get(kind)
        response = queue.pop(0) if queue else self.defaults.get(kind)
        if response is None:
            raise LLMError(f"假客户端没有为 {kind} 配置回复")
        if callable(response):
            response = response(messages)
        if isinstance(response, Exception):
            raise response
        if not isinstance(response, str):
            response = json.dumps(response)
        return ChatResponse(content=response, model=self.default_model)

    @property
    def default_model(self) -> str:
        return "fake-model"

    @property
    def is_available(self) -> bool:
        return True


# ==================== 回复构造 ====================

CONCEPTS = [
    {"concept": "Photosynthesis", "explanation": "Plants turn light into chemical energy", "importance": "core"},
    {"concept": "Chlorophyll", "explanation": "Pigment that absorbs light", "importance": "supporting"},
    {"concept": "Calvin cycle", "explanation": "Fixes carbon dioxide into sugar", "importance": "core"},
    {"concept": "Stomata", "explanation": "Pores that exchange gases", "importance": "detail"},
]

CONCEPT_NAMES = [c["concept"] for c in CONCEPTS]

RELATIONSHIPS = [
    {"from": "Chlorophyll", "to": "Photosynthesis", "type": "enables"},
    {"from": "Photosynthesis", "to": "Calvin cycle", "type": "causes"},
    {"from": "Stomata", "to": "Calvin cycle", "type": "prerequisite"},
]

SOURCE_TEXT = (
    "Photosynthesis is how plants turn light into chemical energy. Chlorophyll absorbs "
    "light in the leaves. The Calvin cycle fixes carbon dioxide into sugar, and stomata "
    "let gases move in and out of the leaf."
)


def extraction_payload(concepts=None, relationships=None) -> Dict[str, Any]:
    return {
        "concepts": CONCEPTS if concepts is None else concepts,
        "conceptMap": {"relationships": RELATIONSHIPS if relationships is None else relationships},
    }


def evaluation_payload(
    covered: List[str],
    missed: List[str],
    coverage: float,
    accuracy: float,
    feedback: str = "Solid effort.",
) -> Dict[str, Any]:
    return {
        "covered_points": covered,
        "missed_points": missed,
        "coverage": coverage,
        "accuracy": accuracy,
        "feedback": feedback,
        "delivery_script": {
            "intro": "Alright.",
            "score_announcement": "You scored {score} out of 100.",
            "covered_summary": "You covered the basics.",
            "missed_summary": "You missed a few points.",
            "closing": "Keep going.",
        },
    }


def socratic_reply_payload(message: str, concept: Optional[str] = None) -> Dict[str, Any]:
    return {
        "message": message,
        "addressed": concept is not None,
        "currentConcept": concept,
    }


# ==================== Fixtures ====================

@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def engine_config():
    return EngineConfig(
        evaluation_timeout=5.0,
        concept_extraction_retries=1,
        attempt_insert_retries=3,
        free_tier_daily_limit=50,
    )


@pytest.fixture
def fake_llm():
    return FakeLLMClient()


@pytest.fixture
def evaluator(fake_llm, engine_config):
    return EvaluationService(fake_llm, engine_config, retry_delay=0)


@pytest.fixture
def user(db_session):
    return UserService.get_or_create_user(db_session, nickname="tester")


@pytest.fixture
def other_user(db_session):
    return UserService.get_or_create_user(db_session, nickname="someone-else")
