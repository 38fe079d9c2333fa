"""
HTTP 接口测试

数据库与评估服务通过 dependency_overrides 替换
"""
import pytest
from fastapi.testclient import TestClient

from app.core.database import get_db
from app.core.timeutils import utcnow
from app.services.evaluation_service import get_evaluation_service
from main import app

from conftest import CONCEPT_NAMES, SOURCE_TEXT, evaluation_payload, socratic_reply_payload


@pytest.fixture
def client(session_factory, evaluator):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_evaluation_service] = lambda: evaluator
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def create_user(client, nickname="api-tester"):
    response = client.post("/api/users/", json={"nickname": nickname})
    assert response.status_code == 201
    return response.json()["id"]


def create_loop(client, user_id, **body):
    payload = {"source_text": SOURCE_TEXT, **body}
    response = client.post("/api/loops/", params={"user_id": user_id}, json=payload)
    assert response.status_code == 201
    return response.json()


class TestHealth:
    def test_health_without_llm_key(self, client, monkeypatch):
        """未配置 LLM 时健康检查仍返回正常"""
        from app.llm import reset_llm_client

        monkeypatch.delenv("LLM_API_KEY", raising=False)
        reset_llm_client()
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["llm_available"] is False
        assert body["langfuse_enabled"] is False


class TestUserEndpoints:
    """测试用户接口"""

    def test_create_is_deterministic_by_nickname(self, client):
        """同一昵称得到同一用户"""
        assert create_user(client, "alice") == create_user(client, "alice")

    def test_personas(self, client):
        """列出语气角色及其付费标记"""
        response = client.get("/api/users/personas")
        keys = {p["key"]: p["is_paid"] for p in response.json()}
        assert keys["coach"] is False
        assert keys["sergeant"] is True

    def test_paid_persona_requires_paid_user(self, client):
        """付费语气只对付费用户开放"""
        user_id = create_user(client)
        response = client.put(f"/api/users/{user_id}/preferences", json={"persona": "hype"})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

        response = client.put(f"/api/users/{user_id}/preferences", json={"persona": "hype", "is_paid": True})
        assert response.status_code == 200
        assert response.json()["persona"] == "hype"

    def test_usage(self, client):
        """新用户当日用量为 0"""
        user_id = create_user(client)
        body = client.get(f"/api/users/{user_id}/usage").json()
        assert body["loops_used_today"] == 0
        assert body["remaining_loops"] == body["daily_limit"]

    def test_unknown_user(self, client):
        """不存在的用户返回 404"""
        assert client.get("/api/users/nobody").status_code == 404


class TestLoopEndpoints:
    """测试学习循环接口"""

    def test_full_loop_over_http(self, client, fake_llm):
        """通过 HTTP 走完整个学习循环"""
        user_id = create_user(client)
        loop = create_loop(client, user_id, title="Leaves")
        assert loop["current_phase"] == "first_attempt"
        assert [c["concept"] for c in loop["key_concepts"]] == CONCEPT_NAMES
        params = {"user_id": user_id}

        fake_llm.script("explanation_evaluation", evaluation_payload(["Photosynthesis"], ["Stomata"], 0.5, 0.5))
        response = client.post(f"/api/loops/{loop['id']}/attempts", params=params, json={"transcript": "Light."})
        assert response.status_code == 201
        result = response.json()
        assert result["attempt"]["score"] == 50
        assert result["attempt"]["score_delta"] is None
        assert result["loop"]["current_phase"] == "first_results"
        assert result["usage"]["loops_used_today"] == 1

        response = client.post(f"/api/loops/{loop['id']}/socratic", params=params, json={})
        assert response.status_code == 201
        session = response.json()
        assert session["target_concepts"] == ["Stomata"]
        assert session["remaining_concepts"] == ["Stomata"]

        fake_llm.script("socratic_reply", socratic_reply_payload("Yes.", "Stomata"))
        response = client.post(
            f"/api/loops/{loop['id']}/socratic/{session['id']}/messages",
            params=params,
            json={"content": "Pores for gas."},
        )
        body = response.json()
        assert body["addressed_concept"] == "Stomata"
        assert body["session"]["all_addressed"] is True
        assert body["loop"]["current_phase"] == "second_attempt"

        fake_llm.script("explanation_evaluation", evaluation_payload(CONCEPT_NAMES, [], 1.0, 1.0))
        result = client.post(f"/api/loops/{loop['id']}/attempts", params=params, json={"transcript": "All."}).json()
        assert result["attempt"]["score_delta"] == 50
        assert result["attempt"]["newly_covered"] == ["Chlorophyll", "Calvin cycle", "Stomata"]

        response = client.post(f"/api/loops/{loop['id']}/phase", params=params, json={"target_phase": "complete"})
        assert response.status_code == 200
        assert response.json()["status"] == "mastered"

        detail = client.get(f"/api/loops/{loop['id']}", params=params).json()
        assert [a["attempt_number"] for a in detail["attempts"]] == [1, 2]
        assert detail["review_schedule"]["interval_days"] == 1

        graph = client.get("/api/knowledge/graph", params=params).json()
        assert len(graph["nodes"]) == 4

    def test_list_with_status_filter(self, client):
        """按状态筛选循环列表"""
        user_id = create_user(client)
        first = create_loop(client, user_id)
        create_loop(client, user_id)
        client.post(f"/api/loops/{first['id']}/abandon", params={"user_id": user_id})

        response = client.get("/api/loops/", params={"user_id": user_id, "status": "abandoned"})
        assert [l["id"] for l in response.json()] == [first["id"]]

    def test_prior_knowledge_endpoints(self, client, fake_llm):
        """先读后讲模式的接口流程"""
        user_id = create_user(client)
        loop = create_loop(client, user_id, entry_mode="reading_first")
        params = {"user_id": user_id}

        fake_llm.script("prior_knowledge", {"focusAreas": ["Stomata"], "confidenceScore": 20})
        response = client.post(f"/api/loops/{loop['id']}/prior-knowledge", params=params, json={"transcript": "Hmm."})
        assert response.json()["loop"]["current_phase"] == "focus_areas_display"
        assert response.json()["analysis"]["focus_areas"] == ["Stomata"]

        response = client.post(f"/api/loops/{loop['id']}/focus-areas/acknowledge", params=params)
        assert response.json()["current_phase"] == "reading"
        response = client.post(f"/api/loops/{loop['id']}/reading/finish", params=params)
        assert response.json()["current_phase"] == "first_attempt"


class TestErrorMapping:
    """测试引擎异常到 HTTP 状态码的映射"""

    def test_not_found(self, client):
        """循环不存在返回 404"""
        user_id = create_user(client)
        response = client.get("/api/loops/missing", params={"user_id": user_id})
        assert response.status_code == 404
        assert response.json()["error"] == "loop_not_found"

    def test_access_denied(self, client):
        """访问他人的循环返回 403"""
        owner = create_user(client, "owner")
        intruder = create_user(client, "intruder")
        loop = create_loop(client, owner)

        response = client.get(f"/api/loops/{loop['id']}", params={"user_id": intruder})
        assert response.status_code == 403
        assert response.json()["error"] == "access_denied"

    def test_phase_contract_violation(self, client):
        """非法阶段操作返回 409 且不可重试"""
        user_id = create_user(client)
        loop = create_loop(client, user_id)
        response = client.post(f"/api/loops/{loop['id']}/socratic/skip", params={"user_id": user_id})
        assert response.status_code == 409
        assert response.json()["error"] == "phase_contract_violation"
        assert response.json()["retryable"] is False

    def test_closed_loop(self, client):
        """已放弃的循环拒绝提交"""
        user_id = create_user(client)
        loop = create_loop(client, user_id)
        client.post(f"/api/loops/{loop['id']}/abandon", params={"user_id": user_id})
        response = client.post(
            f"/api/loops/{loop['id']}/attempts", params={"user_id": user_id}, json={"transcript": "Late."}
        )
        assert response.status_code == 409
        assert response.json()["error"] == "loop_closed"

    def test_evaluation_unavailable(self, client, fake_llm):
        """评估服务故障返回 503 且可重试"""
        from app.llm.base import LLMError

        user_id = create_user(client)
        loop = create_loop(client, user_id)
        fake_llm.script("explanation_evaluation", LLMError("down"))
        response = client.post(
            f"/api/loops/{loop['id']}/attempts", params={"user_id": user_id}, json={"transcript": "Light."}
        )
        assert response.status_code == 503
        assert response.json()["retryable"] is True

    def test_usage_limit(self, client, session_factory, evaluator):
        """超出免费额度返回 429 并附带用量"""
        from app.models import User

        user_id = create_user(client)
        loop = create_loop(client, user_id)
        db = session_factory()
        user = db.query(User).filter(User.id == user_id).one()
        user.loops_used_today = evaluator.config.free_tier_daily_limit
        user.usage_reset_at = utcnow()
        db.commit()
        db.close()

        response = client.post(
            f"/api/loops/{loop['id']}/attempts", params={"user_id": user_id}, json={"transcript": "Light."}
        )
        assert response.status_code == 429
        body = response.json()
        assert body["error"] == "usage_limit_exceeded"
        assert body["usage"]["remaining_loops"] == 0

    def test_validation_error(self, client):
        """空讲解内容返回 422"""
        user_id = create_user(client)
        loop = create_loop(client, user_id)
        response = client.post(
            f"/api/loops/{loop['id']}/attempts", params={"user_id": user_id}, json={"transcript": ""}
        )
        assert response.status_code == 422


class TestReviewEndpoints:
    """测试复习接口"""

    def _mastered_loop(self, client, fake_llm, user_id):
        loop = create_loop(client, user_id)
        params = {"user_id": user_id}
        fake_llm.script("explanation_evaluation", evaluation_payload(CONCEPT_NAMES, [], 1.0, 1.0))
        client.post(f"/api/loops/{loop['id']}/attempts", params=params, json={"transcript": "All."})
        client.post(f"/api/loops/{loop['id']}/phase", params=params, json={})
        fake_llm.script("explanation_evaluation", evaluation_payload(CONCEPT_NAMES, [], 1.0, 1.0))
        client.post(f"/api/loops/{loop['id']}/attempts", params=params, json={"transcript": "Simple."})
        response = client.post(f"/api/loops/{loop['id']}/phase", params=params, json={})
        assert response.json()["current_phase"] == "complete"
        return client.get(f"/api/loops/{loop['id']}", params=params).json()

    def test_due_is_empty_until_interval_passes(self, client, fake_llm):
        """间隔未到时没有待复习项"""
        user_id = create_user(client)
        self._mastered_loop(client, fake_llm, user_id)
        assert client.get("/api/reviews/due", params={"user_id": user_id}).json() == []

    def test_complete_and_submit(self, client, fake_llm):
        """手动完成复习与提交复习讲解"""
        user_id = create_user(client)
        detail = self._mastered_loop(client, fake_llm, user_id)
        schedule_id = detail["review_schedule"]["id"]
        params = {"user_id": user_id}

        response = client.post(f"/api/reviews/{schedule_id}/complete", params=params, json={"score": 90})
        assert response.json()["interval_days"] == 2

        fake_llm.script("explanation_evaluation", evaluation_payload(["Photosynthesis"], CONCEPT_NAMES[1:], 0.25, 0.5))
        response = client.post(f"/api/reviews/{schedule_id}/submit", params=params, json={"transcript": "Plants."})
        body = response.json()
        assert body["score"] == 35
        assert body["schedule"]["interval_days"] == 1
        assert body["schedule"]["times_reviewed"] == 2
        prompt = fake_llm.calls_of("explanation_evaluation")[-1]["messages"][0]["content"]
        assert "QUICK REVIEW" in prompt

    def test_score_out_of_range(self, client, fake_llm):
        """复习分数超出范围返回 422"""
        user_id = create_user(client)
        detail = self._mastered_loop(client, fake_llm, user_id)
        response = client.post(
            f"/api/reviews/{detail['review_schedule']['id']}/complete",
            params={"user_id": user_id},
            json={"score": 120},
        )
        assert response.status_code == 422
