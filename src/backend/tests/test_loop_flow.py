"""
学习循环端到端流程测试

从创建、讲解、补漏、复述到掌握与复习的完整路径
"""
from datetime import timedelta

import pytest

from app.core.errors import (
    AccessDeniedError,
    InvalidRequestError,
    LoopClosedError,
    LoopNotFoundError,
    PhaseContractError,
    SessionNotFoundError,
)
from app.models import (
    ConceptRelationship,
    LoopConcept,
    ReviewSchedule,
    SocraticSession,
    UserConcept,
)
from app.services.attempt_service import AttemptService
from app.services.knowledge_service import KnowledgeService
from app.services.loop_service import LoopService
from app.services.review_service import ReviewService
from app.services.socratic_service import SocraticService

from conftest import (
    CONCEPT_NAMES,
    SOURCE_TEXT,
    evaluation_payload,
    socratic_reply_payload,
)


async def submit(db, evaluator, fake_llm, loop, user, covered, missed, coverage, accuracy, **kwargs):
    fake_llm.script("explanation_evaluation", evaluation_payload(covered, missed, coverage, accuracy))
    return await AttemptService.submit_attempt(db, evaluator, loop.id, user.id, "My explanation.", **kwargs)


class TestLoopCreation:
    """测试循环创建"""

    @pytest.mark.asyncio
    async def test_create_extracts_and_syncs_concepts(self, db_session, evaluator, fake_llm, user):
        """创建时提取概念并写入图谱"""
        loop = await LoopService.create_loop(
            db_session, evaluator, user.id, SOURCE_TEXT, title="Photosynthesis", precision="precise",
            subject="biology", metadata={"url": "https://example.com/leaf"},
        )

        assert loop.current_phase == "first_attempt"
        assert loop.status == "in_progress"
        assert loop.source_word_count == len(SOURCE_TEXT.split())
        assert [c["concept"] for c in loop.key_concepts] == CONCEPT_NAMES
        assert len(loop.concept_map["relationships"]) == 3
        assert loop.meta_data == {"url": "https://example.com/leaf"}
        assert db_session.query(LoopConcept).filter_by(loop_id=loop.id).count() == 4

        system_prompt = fake_llm.calls_of("concept_extraction")[0]["messages"][0]["content"]
        assert "PRECISION MODE: PRECISE" in system_prompt

    @pytest.mark.asyncio
    async def test_title_defaults_to_source_start(self, db_session, evaluator, user):
        """未给标题时取原文开头"""
        loop = await LoopService.create_loop(db_session, evaluator, user.id, SOURCE_TEXT)
        assert loop.title == SOURCE_TEXT[:60]

    @pytest.mark.asyncio
    async def test_extraction_failure_does_not_block_creation(self, db_session, evaluator, fake_llm, user):
        """概念提取失败不影响创建"""
        fake_llm.set_default("concept_extraction", {"concepts": []})
        loop = await LoopService.create_loop(db_session, evaluator, user.id, SOURCE_TEXT)

        assert loop.key_concepts is None
        assert len(fake_llm.calls_of("concept_extraction")) == 2

        # 提交讲解时再次尝试提取
        from conftest import extraction_payload
        fake_llm.set_default("concept_extraction", extraction_payload())
        fake_llm.script("explanation_evaluation", evaluation_payload(["Photosynthesis"], [], 0.5, 0.5))
        await AttemptService.submit_attempt(db_session, evaluator, loop.id, user.id, "Plants.")
        db_session.refresh(loop)
        assert [c["concept"] for c in loop.key_concepts] == CONCEPT_NAMES

    @pytest.mark.asyncio
    async def test_invalid_choices(self, db_session, evaluator, user):
        """非法选项被拒绝"""
        with pytest.raises(InvalidRequestError):
            await LoopService.create_loop(db_session, evaluator, user.id, SOURCE_TEXT, entry_mode="speedrun")
        with pytest.raises(InvalidRequestError):
            await LoopService.create_loop(db_session, evaluator, user.id, "  ")

    @pytest.mark.asyncio
    async def test_ownership(self, db_session, evaluator, user, other_user):
        """只能访问自己的循环"""
        loop = await LoopService.create_loop(db_session, evaluator, user.id, SOURCE_TEXT)
        with pytest.raises(AccessDeniedError):
            LoopService.get_loop(db_session, loop.id, other_user.id)
        with pytest.raises(LoopNotFoundError):
            LoopService.get_loop(db_session, "missing", user.id)

    @pytest.mark.asyncio
    async def test_list_filters(self, db_session, evaluator, user, other_user):
        """列表按用户、状态和分组筛选"""
        bio = await LoopService.create_loop(db_session, evaluator, user.id, SOURCE_TEXT, subject="biology")
        await LoopService.create_loop(db_session, evaluator, user.id, SOURCE_TEXT, subject="history")
        await LoopService.create_loop(db_session, evaluator, other_user.id, SOURCE_TEXT, subject="biology")
        LoopService.abandon_loop(db_session, bio.id, user.id)

        assert len(LoopService.list_loops(db_session, user.id)) == 2
        assert [l.id for l in LoopService.list_loops(db_session, user.id, subject="biology")] == [bio.id]
        assert [l.id for l in LoopService.list_loops(db_session, user.id, status="abandoned")] == [bio.id]
        with pytest.raises(InvalidRequestError):
            LoopService.list_loops(db_session, user.id, status="paused")


class TestStandardFlow:
    """测试标准入口的完整路径"""

    @pytest.mark.asyncio
    async def test_low_score_goes_through_socratic_to_mastery(self, db_session, evaluator, fake_llm, user):
        """低分经过补漏对话后掌握"""
        loop = await LoopService.create_loop(db_session, evaluator, user.id, SOURCE_TEXT)

        first = await submit(db_session, evaluator, fake_llm, loop, user,
                             ["Photosynthesis"], ["Chlorophyll", "Calvin cycle"], 0.5, 0.8)
        assert first.attempt.score == 62
        assert first.loop.current_phase == "first_results"

        session, loop = await SocraticService.start_session(db_session, evaluator, loop.id, user.id)
        assert loop.current_phase == "learning"
        assert session.target_concepts == ["Chlorophyll", "Calvin cycle"]
        assert session.messages[0]["role"] == "assistant"
        assert session.attempt_id == first.attempt.id

        fake_llm.script(
            "socratic_reply",
            socratic_reply_payload("Nice, and what about sugar?", "chlorophyll"),
            socratic_reply_payload("Hmm, think again.", None),
            socratic_reply_payload("Exactly right.", "Calvin cycle"),
        )
        session, loop, reply = await SocraticService.send_message(
            db_session, evaluator, loop.id, session.id, user.id, "Chlorophyll absorbs light."
        )
        assert session.concepts_addressed == ["Chlorophyll"]
        assert session.remaining_concepts == ["Calvin cycle"]
        assert loop.current_phase == "learning"

        session, loop, _ = await SocraticService.send_message(
            db_session, evaluator, loop.id, session.id, user.id, "Not sure."
        )
        assert session.concepts_addressed == ["Chlorophyll"]

        session, loop, reply = await SocraticService.send_message(
            db_session, evaluator, loop.id, session.id, user.id, "The Calvin cycle fixes carbon."
        )
        assert session.status == "completed"
        assert session.all_addressed
        assert loop.current_phase == "second_attempt"
        assert len(session.messages) == 7

        second = await submit(db_session, evaluator, fake_llm, loop, user, CONCEPT_NAMES, [], 0.9, 0.9)
        assert second.attempt.score == 90
        assert second.attempt.score_delta == 28
        assert second.loop.current_phase == "second_results"

        loop = LoopService.update_phase(db_session, loop.id, user.id)
        assert loop.current_phase == "complete"
        assert loop.status == "mastered"
        assert loop.completed_at is not None

        schedule = db_session.query(ReviewSchedule).filter_by(loop_id=loop.id).one()
        assert schedule.interval_days == 1
        assert schedule.status == "scheduled"
        assert schedule.next_review_at == loop.completed_at + timedelta(days=1)

        reviewed = ReviewService.complete_review(
            db_session, schedule.id, 90, user_id=user.id, now=schedule.next_review_at
        )
        assert reviewed.interval_days == 2

    @pytest.mark.asyncio
    async def test_high_score_goes_to_simplify(self, db_session, evaluator, fake_llm, user):
        """高分直接进入简化挑战"""
        loop = await LoopService.create_loop(db_session, evaluator, user.id, SOURCE_TEXT)
        await submit(db_session, evaluator, fake_llm, loop, user, CONCEPT_NAMES, [], 0.9, 0.8)

        with pytest.raises(PhaseContractError):
            await SocraticService.start_session(db_session, evaluator, loop.id, user.id)

        loop = LoopService.update_phase(db_session, loop.id, user.id, "simplify")
        assert loop.current_phase == "simplify"

        outcome = await submit(db_session, evaluator, fake_llm, loop, user, CONCEPT_NAMES, [], 0.4, 0.4)
        assert outcome.attempt.attempt_type == "simplify_challenge"
        assert outcome.loop.current_phase == "simplify_results"
        simplify_prompt = fake_llm.calls_of("explanation_evaluation")[-1]["messages"][0]["content"]
        assert "SIMPLIFY CHALLENGE" in simplify_prompt

        # simplify 之后无论分数都完成
        loop = LoopService.update_phase(db_session, loop.id, user.id)
        assert loop.current_phase == "complete"

    @pytest.mark.asyncio
    async def test_second_attempt_below_gate_goes_to_simplify(self, db_session, evaluator, fake_llm, user):
        """第二次未达标也进入简化挑战"""
        loop = await LoopService.create_loop(db_session, evaluator, user.id, SOURCE_TEXT)
        await submit(db_session, evaluator, fake_llm, loop, user, [], CONCEPT_NAMES, 0.2, 0.2)
        LoopService.update_phase(db_session, loop.id, user.id)
        SocraticService.skip(db_session, loop.id, user.id)
        await submit(db_session, evaluator, fake_llm, loop, user, ["Photosynthesis"], [], 0.7, 0.7)

        with pytest.raises(PhaseContractError):
            LoopService.update_phase(db_session, loop.id, user.id, "complete")
        loop = LoopService.update_phase(db_session, loop.id, user.id)
        assert loop.current_phase == "simplify"

    @pytest.mark.asyncio
    async def test_attempt_phases_cannot_be_skipped(self, db_session, evaluator, user):
        """讲解阶段不能手动跳过"""
        loop = await LoopService.create_loop(db_session, evaluator, user.id, SOURCE_TEXT)
        with pytest.raises(PhaseContractError):
            LoopService.update_phase(db_session, loop.id, user.id)
        with pytest.raises(PhaseContractError):
            SocraticService.skip(db_session, loop.id, user.id)


class TestSocraticSessions:
    """测试补漏对话的边界"""

    @pytest.mark.asyncio
    async def test_restart_abandons_previous_session(self, db_session, evaluator, fake_llm, user):
        """重新开始对话时放弃旧会话"""
        loop = await LoopService.create_loop(db_session, evaluator, user.id, SOURCE_TEXT)
        await submit(db_session, evaluator, fake_llm, loop, user, [], ["Stomata"], 0.3, 0.3)

        first, _ = await SocraticService.start_session(db_session, evaluator, loop.id, user.id)
        second, _ = await SocraticService.start_session(db_session, evaluator, loop.id, user.id)
        db_session.refresh(first)

        assert first.status == "abandoned"
        assert second.status == "active"
        assert LoopService.active_session(db_session, loop.id).id == second.id

    @pytest.mark.asyncio
    async def test_no_missed_points(self, db_session, evaluator, fake_llm, user):
        """没有遗漏要点时不能开始对话"""
        loop = await LoopService.create_loop(db_session, evaluator, user.id, SOURCE_TEXT)
        await submit(db_session, evaluator, fake_llm, loop, user, ["Photosynthesis"], [], 0.3, 0.3)
        with pytest.raises(InvalidRequestError):
            await SocraticService.start_session(db_session, evaluator, loop.id, user.id)

        db_session.refresh(loop)
        assert loop.current_phase == "first_results"

    @pytest.mark.asyncio
    async def test_unknown_concept_in_reply_is_ignored(self, db_session, evaluator, fake_llm, user):
        """回复中的未知概念被忽略"""
        loop = await LoopService.create_loop(db_session, evaluator, user.id, SOURCE_TEXT)
        await submit(db_session, evaluator, fake_llm, loop, user, [], ["Stomata"], 0.3, 0.3)
        session, _ = await SocraticService.start_session(db_session, evaluator, loop.id, user.id)

        fake_llm.script("socratic_reply", socratic_reply_payload("Good.", "Mitochondria"))
        session, loop, _ = await SocraticService.send_message(
            db_session, evaluator, loop.id, session.id, user.id, "Mitochondria make energy."
        )
        assert session.concepts_addressed == []
        assert session.status == "active"

    @pytest.mark.asyncio
    async def test_unparseable_reply_keeps_dialogue_going(self, db_session, evaluator, fake_llm, user):
        """回复无法解析时对话继续"""
        loop = await LoopService.create_loop(db_session, evaluator, user.id, SOURCE_TEXT)
        await submit(db_session, evaluator, fake_llm, loop, user, [], ["Stomata"], 0.3, 0.3)
        session, _ = await SocraticService.start_session(db_session, evaluator, loop.id, user.id)

        fake_llm.script("socratic_reply", "not json at all")
        session, _, reply = await SocraticService.send_message(
            db_session, evaluator, loop.id, session.id, user.id, "Pores?"
        )
        assert reply.message == "Interesting. Can you elaborate on that?"
        assert session.concepts_addressed == []
        assert session.messages[-1]["content"] == reply.message

    @pytest.mark.asyncio
    async def test_skip_abandons_active_session(self, db_session, evaluator, fake_llm, user):
        """跳过对话时放弃当前会话"""
        loop = await LoopService.create_loop(db_session, evaluator, user.id, SOURCE_TEXT)
        await submit(db_session, evaluator, fake_llm, loop, user, [], ["Stomata"], 0.3, 0.3)
        session, _ = await SocraticService.start_session(db_session, evaluator, loop.id, user.id)

        loop = SocraticService.skip(db_session, loop.id, user.id)
        db_session.refresh(session)
        assert loop.current_phase == "second_attempt"
        assert session.status == "abandoned"

        with pytest.raises(PhaseContractError):
            await SocraticService.send_message(db_session, evaluator, loop.id, session.id, user.id, "Late.")

    @pytest.mark.asyncio
    async def test_unknown_session(self, db_session, evaluator, fake_llm, user):
        """会话不存在"""
        loop = await LoopService.create_loop(db_session, evaluator, user.id, SOURCE_TEXT)
        await submit(db_session, evaluator, fake_llm, loop, user, [], ["Stomata"], 0.3, 0.3)
        await SocraticService.start_session(db_session, evaluator, loop.id, user.id)
        with pytest.raises(SessionNotFoundError):
            await SocraticService.send_message(db_session, evaluator, loop.id, "missing", user.id, "Hi.")


class TestPriorKnowledgeFlow:
    """测试已有知识与先读后讲入口"""

    @pytest.mark.asyncio
    async def test_focus_areas_then_first_attempt(self, db_session, evaluator, fake_llm, user):
        """展示重点后进入第一次讲解"""
        loop = await LoopService.create_loop(db_session, evaluator, user.id, SOURCE_TEXT, entry_mode="prior_knowledge")
        assert loop.current_phase == "prior_knowledge"

        fake_llm.script("prior_knowledge", {
            "knownConcepts": ["Photosynthesis"],
            "partialConcepts": ["Chlorophyll"],
            "unknownConcepts": ["Calvin cycle", "Stomata"],
            "misconceptions": [{"claim": "Plants eat soil", "correction": "They make sugar from light"}],
            "focusAreas": ["Calvin cycle"],
            "confidenceScore": 35,
            "feedback": "Good start.",
        })
        loop, analysis = await LoopService.submit_prior_knowledge(
            db_session, evaluator, loop.id, user.id, "I know plants need light."
        )
        assert loop.current_phase == "focus_areas_display"
        assert loop.prior_knowledge_score == 35
        assert analysis.focus_areas == ["Calvin cycle"]

        loop = LoopService.acknowledge_focus_areas(db_session, loop.id, user.id)
        assert loop.current_phase == "first_attempt"

        await submit(db_session, evaluator, fake_llm, loop, user, ["Photosynthesis"], ["Calvin cycle"], 0.5, 0.5)
        prompt = fake_llm.calls_of("explanation_evaluation")[-1]["messages"][0]["content"]
        assert "Plants eat soil" in prompt
        assert "Calvin cycle" in prompt

    @pytest.mark.asyncio
    async def test_no_focus_areas_skips_display(self, db_session, evaluator, fake_llm, user):
        """没有重点时跳过展示"""
        loop = await LoopService.create_loop(db_session, evaluator, user.id, SOURCE_TEXT, entry_mode="prior_knowledge")
        fake_llm.script("prior_knowledge", {"knownConcepts": CONCEPT_NAMES, "confidenceScore": 140})
        loop, analysis = await LoopService.submit_prior_knowledge(db_session, evaluator, loop.id, user.id, "All of it.")
        assert loop.current_phase == "first_attempt"
        assert analysis.confidence_score == 100

    @pytest.mark.asyncio
    async def test_reading_first(self, db_session, evaluator, fake_llm, user):
        """先读后讲模式进入阅读"""
        loop = await LoopService.create_loop(db_session, evaluator, user.id, SOURCE_TEXT, entry_mode="reading_first")
        fake_llm.script("prior_knowledge", {"focusAreas": ["Stomata"], "confidenceScore": 10})
        loop, _ = await LoopService.submit_prior_knowledge(db_session, evaluator, loop.id, user.id, "Not much.")
        assert loop.current_phase == "focus_areas_display"

        loop = LoopService.update_phase(db_session, loop.id, user.id)
        assert loop.current_phase == "reading"
        loop = LoopService.finish_reading(db_session, loop.id, user.id)
        assert loop.current_phase == "first_attempt"

    @pytest.mark.asyncio
    async def test_skip_records_zero(self, db_session, evaluator, fake_llm, user):
        """跳过预备知识记 0 分"""
        loop = await LoopService.create_loop(db_session, evaluator, user.id, SOURCE_TEXT, entry_mode="reading_first")
        loop = LoopService.skip_prior_knowledge(db_session, loop.id, user.id)
        assert loop.prior_knowledge_score == 0
        assert loop.current_phase == "reading"
        assert fake_llm.calls_of("prior_knowledge") == []

    @pytest.mark.asyncio
    async def test_prior_knowledge_only_once(self, db_session, evaluator, fake_llm, user):
        """预备知识只能提交一次"""
        loop = await LoopService.create_loop(db_session, evaluator, user.id, SOURCE_TEXT, entry_mode="prior_knowledge")
        LoopService.skip_prior_knowledge(db_session, loop.id, user.id)
        with pytest.raises(PhaseContractError):
            await LoopService.submit_prior_knowledge(db_session, evaluator, loop.id, user.id, "Again.")
        with pytest.raises(PhaseContractError):
            LoopService.skip_prior_knowledge(db_session, loop.id, user.id)

    @pytest.mark.asyncio
    async def test_standard_loop_rejects_reading(self, db_session, evaluator, user):
        """标准模式不能结束阅读"""
        loop = await LoopService.create_loop(db_session, evaluator, user.id, SOURCE_TEXT)
        with pytest.raises(PhaseContractError):
            LoopService.finish_reading(db_session, loop.id, user.id)


class TestAbandon:
    """测试放弃循环"""

    @pytest.mark.asyncio
    async def test_abandon_keeps_history(self, db_session, evaluator, fake_llm, user):
        """放弃后保留历史记录"""
        loop = await LoopService.create_loop(db_session, evaluator, user.id, SOURCE_TEXT)
        await submit(db_session, evaluator, fake_llm, loop, user, [], ["Stomata"], 0.3, 0.3)
        session, _ = await SocraticService.start_session(db_session, evaluator, loop.id, user.id)

        loop = LoopService.abandon_loop(db_session, loop.id, user.id)
        db_session.refresh(session)
        assert loop.status == "abandoned"
        assert loop.current_phase == "learning"
        assert session.status == "abandoned"

        detail = LoopService.get_loop_detail(db_session, loop.id, user.id)
        assert len(detail["attempts"]) == 1
        assert detail["active_session"] is None
        assert detail["review_schedule"] is None

    @pytest.mark.asyncio
    async def test_closed_loop_rejects_writes(self, db_session, evaluator, user):
        """已关闭的循环拒绝写入"""
        loop = await LoopService.create_loop(db_session, evaluator, user.id, SOURCE_TEXT)
        LoopService.abandon_loop(db_session, loop.id, user.id)
        with pytest.raises(LoopClosedError):
            LoopService.abandon_loop(db_session, loop.id, user.id)
        with pytest.raises(LoopClosedError):
            LoopService.update_phase(db_session, loop.id, user.id)


class TestKnowledgeIntegration:
    """测试提交与完成对知识图谱的写入"""

    @pytest.mark.asyncio
    async def test_attempts_feed_user_concepts(self, db_session, evaluator, fake_llm, user):
        """提交更新用户概念掌握度"""
        loop = await LoopService.create_loop(db_session, evaluator, user.id, SOURCE_TEXT)
        await submit(db_session, evaluator, fake_llm, loop, user,
                     ["Photosynthesis", "Chlorophyll"], ["Calvin cycle", "Stomata"], 0.5, 0.9)

        rows = db_session.query(UserConcept).filter_by(user_id=user.id).all()
        assert len(rows) == 4
        assert all(r.times_encountered == 1 for r in rows)
        assert sum(r.times_demonstrated for r in rows) == 2

        stats = KnowledgeService.get_stats(db_session, user.id)
        assert stats["total_concepts"] == 4

    @pytest.mark.asyncio
    async def test_completion_strengthens_relationships(self, db_session, evaluator, fake_llm, user):
        """完成时加强已展示概念之间的关系"""
        loop = await LoopService.create_loop(db_session, evaluator, user.id, SOURCE_TEXT)
        await submit(db_session, evaluator, fake_llm, loop, user, ["Photosynthesis"], ["Chlorophyll"], 0.5, 0.5)
        session, _ = await SocraticService.start_session(db_session, evaluator, loop.id, user.id)
        fake_llm.script("socratic_reply", socratic_reply_payload("Yes!", "Chlorophyll"))
        await SocraticService.send_message(db_session, evaluator, loop.id, session.id, user.id, "Pigment.")

        await submit(db_session, evaluator, fake_llm, loop, user, ["Photosynthesis", "Calvin cycle"], [], 0.95, 0.95)
        LoopService.update_phase(db_session, loop.id, user.id)

        strengths = {
            r.relationship_type: r.strength
            for r in db_session.query(ConceptRelationship).populate_existing().all()
        }
        assert strengths == {"enables": 2.0, "causes": 2.0, "prerequisite": 1.0}
        assert db_session.query(SocraticSession).filter_by(loop_id=loop.id).one().status == "completed"
