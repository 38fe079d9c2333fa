"""
知识图谱与掌握度服务

写入：
- 概念按归一化名称去重（upsert）
- upsert_progress 是 UserConcept 的唯一写入路径，写入调用方给出的绝对值
- 关系强度只通过 ON CONFLICT 累加

读取：
- 掌握度在读取时按 recency_weight 衰减，从不回写
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from app.core.database import upsert
from app.core.errors import ConceptNotFoundError
from app.core.mastery import (
    NEEDS_REVIEW_MASTERY,
    NEEDS_REVIEW_STALE_DAYS,
    WEAK_SPOT_MASTERY,
    WEAK_SPOT_MIN_ENCOUNTERS,
    compute_mastery_score,
    decayed_mastery,
    effective_mastery,
    mastery_bucket,
    normalize_concept_name,
)
from app.core.phases import LoopPhase
from app.core.timeutils import days_since, utcnow
from app.models import (
    Concept,
    ConceptRelationship,
    LearningLoop,
    LoopConcept,
    SocraticSession,
    UserConcept,
)

logger = logging.getLogger(__name__)


class KnowledgeService:
    """知识图谱服务"""

    # ------------------------------------------------------------------
    # 写入
    # ------------------------------------------------------------------

    @staticmethod
    def ensure_concept(
        db: Session,
        name: str,
        description: Optional[str] = None,
        category: Optional[str] = None,
    ) -> Concept:
        """
        按归一化名称创建或合并概念

        冲突时更新显示名称，描述只在新值非空时覆盖；分类只在原先为空时写入。
        """
        normalized = normalize_concept_name(name)
        table = Concept.__table__
        upsert(
            db,
            Concept,
            {
                "name": name.strip(),
                "normalized_name": normalized,
                "description": description,
                "category": category,
            },
            ["normalized_name"],
            lambda excluded: {
                "name": excluded.name,
                "description": func.coalesce(excluded.description, table.c.description),
                "category": func.coalesce(table.c.category, excluded.category),
            },
        )
        return (
            db.query(Concept)
            .populate_existing()
            .filter(Concept.normalized_name == normalized)
            .one()
        )

    @staticmethod
    def link_loop_concept(
        db: Session,
        loop_id: str,
        concept_id: str,
        importance: str,
        explanation: Optional[str] = None,
    ) -> None:
        """关联循环与概念（重复关联时更新重要性）"""
        table = LoopConcept.__table__
        upsert(
            db,
            LoopConcept,
            {
                "loop_id": loop_id,
                "concept_id": concept_id,
                "importance": importance,
                "explanation": explanation,
            },
            ["loop_id", "concept_id"],
            lambda excluded: {
                "importance": excluded.importance,
                "explanation": func.coalesce(excluded.explanation, table.c.explanation),
            },
        )

    @staticmethod
    def ensure_relationship(
        db: Session,
        from_concept_id: str,
        to_concept_id: str,
        relationship_type: str,
        strength: float = 1.0,
    ) -> None:
        """创建关系边，已存在时不改动强度"""
        upsert(
            db,
            ConceptRelationship,
            {
                "from_concept_id": from_concept_id,
                "to_concept_id": to_concept_id,
                "relationship_type": relationship_type,
                "strength": strength,
            },
            ["from_concept_id", "to_concept_id", "relationship_type"],
        )

    @staticmethod
    def increment_relationship_strength(
        db: Session,
        from_concept_id: str,
        to_concept_id: str,
        relationship_type: str,
        amount: float = 1.0,
    ) -> None:
        """关系强度累加（不存在时以 amount 创建）"""
        table = ConceptRelationship.__table__
        upsert(
            db,
            ConceptRelationship,
            {
                "from_concept_id": from_concept_id,
                "to_concept_id": to_concept_id,
                "relationship_type": relationship_type,
                "strength": amount,
            },
            ["from_concept_id", "to_concept_id", "relationship_type"],
            lambda excluded: {"strength": table.c.strength + excluded.strength},
        )

    @staticmethod
    def upsert_progress(
        db: Session,
        user_id: str,
        concept_id: str,
        *,
        mastery_score: int,
        times_encountered: int,
        times_demonstrated: int,
        demonstrated: bool,
        now: Optional[datetime] = None,
    ) -> None:
        """
        写入用户对概念的掌握记录

        计数由调用方计算后传入绝对值，重复调用相同参数不会重复累加。
        last_seen_at 总是更新；last_demonstrated_at 只在 demonstrated 时更新，否则保留原值。
        """
        now = now or utcnow()
        values = {
            "user_id": user_id,
            "concept_id": concept_id,
            "mastery_score": mastery_score,
            "times_encountered": times_encountered,
            "times_demonstrated": times_demonstrated,
            "last_seen_at": now,
            "last_demonstrated_at": now if demonstrated else None,
            "updated_at": now,
        }
        update = {
            "mastery_score": mastery_score,
            "times_encountered": times_encountered,
            "times_demonstrated": times_demonstrated,
            "last_seen_at": now,
            "updated_at": now,
        }
        if demonstrated:
            update["last_demonstrated_at"] = now
        upsert(db, UserConcept, values, ["user_id", "concept_id"], update)

    @staticmethod
    def mark_demonstrated(
        db: Session,
        loop_id: str,
        concept_id: str,
        phase: str,
        now: Optional[datetime] = None,
    ) -> None:
        db.query(LoopConcept).filter(
            LoopConcept.loop_id == loop_id,
            LoopConcept.concept_id == concept_id,
        ).update(
            {
                LoopConcept.was_demonstrated: True,
                LoopConcept.demonstrated_at: now or utcnow(),
                LoopConcept.demonstrated_in_phase: phase,
            },
            synchronize_session=False,
        )

    @staticmethod
    def sync_loop_concepts(db: Session, loop: LearningLoop) -> Dict[str, str]:
        """
        把循环缓存的关键概念与概念关系写入知识图谱

        Returns:
            Dict[str, str]: 归一化概念名 -> concept_id
        """
        concept_ids: Dict[str, str] = {}
        for item in loop.key_concepts or []:
            name = (item.get("concept") or "").strip()
            if not name:
                continue
            concept = KnowledgeService.ensure_concept(
                db, name, item.get("explanation") or None, category=loop.subject or None
            )
            concept_ids[concept.normalized_name] = concept.id
            KnowledgeService.link_loop_concept(
                db,
                loop.id,
                concept.id,
                item.get("importance") or "supporting",
                item.get("explanation") or None,
            )

        for rel in (loop.concept_map or {}).get("relationships") or []:
            from_id = concept_ids.get(normalize_concept_name(rel.get("from") or ""))
            to_id = concept_ids.get(normalize_concept_name(rel.get("to") or ""))
            if from_id and to_id and rel.get("type"):
                KnowledgeService.ensure_relationship(db, from_id, to_id, rel["type"], 1.0)

        return concept_ids

    @staticmethod
    def _loop_concept_rows(db: Session, loop_id: str):
        return (
            db.query(LoopConcept, Concept)
            .populate_existing()
            .join(Concept, Concept.id == LoopConcept.concept_id)
            .filter(LoopConcept.loop_id == loop_id)
            .all()
        )

    @staticmethod
    def record_attempt(
        db: Session,
        loop: LearningLoop,
        covered_points: Iterable[str],
        phase: LoopPhase,
        now: Optional[datetime] = None,
    ) -> int:
        """
        把一次提交的结果写入知识图谱（不提交事务）

        循环的每个概念出现次数 +1；被讲到的概念展示次数 +1，
        掌握度按重要性和阶段加权，并在 LoopConcept 上记录展示阶段。

        Returns:
            int: 本次被讲到的概念数
        """
        now = now or utcnow()
        covered = {normalize_concept_name(p) for p in covered_points}
        demonstrated_count = 0

        for link, concept in KnowledgeService._loop_concept_rows(db, loop.id):
            demonstrated = concept.normalized_name in covered
            existing = (
                db.query(UserConcept)
                .populate_existing()
                .filter(UserConcept.user_id == loop.user_id, UserConcept.concept_id == concept.id)
                .first()
            )
            times_encountered = (existing.times_encountered if existing else 0) + 1
            times_demonstrated = (existing.times_demonstrated if existing else 0) + (1 if demonstrated else 0)
            mastery = compute_mastery_score(
                times_encountered,
                times_demonstrated,
                link.importance,
                phase.value if demonstrated else None,
            )

            KnowledgeService.upsert_progress(
                db,
                loop.user_id,
                concept.id,
                mastery_score=mastery,
                times_encountered=times_encountered,
                times_demonstrated=times_demonstrated,
                demonstrated=demonstrated,
                now=now,
            )
            if demonstrated:
                demonstrated_count += 1
                KnowledgeService.mark_demonstrated(db, loop.id, concept.id, phase.value, now)

        return demonstrated_count

    @staticmethod
    def update_on_completion(db: Session, loop: LearningLoop, now: Optional[datetime] = None) -> None:
        """
        循环完成时更新知识图谱（不提交事务）

        1. 最近一次补漏对话中讲清的概念，若尚未展示，记为在 learning 阶段展示
        2. 两端概念都已展示的关系边强度 +1.0
        """
        now = now or utcnow()
        latest_session = (
            db.query(SocraticSession)
            .filter(SocraticSession.loop_id == loop.id)
            .order_by(SocraticSession.created_at.desc())
            .first()
        )
        addressed = {
            normalize_concept_name(c)
            for c in (latest_session.concepts_addressed if latest_session else None) or []
        }

        demonstrated = set()
        concept_ids: Dict[str, str] = {}
        for link, concept in KnowledgeService._loop_concept_rows(db, loop.id):
            concept_ids[concept.normalized_name] = concept.id
            if link.was_demonstrated:
                demonstrated.add(concept.normalized_name)
            elif concept.normalized_name in addressed:
                KnowledgeService.mark_demonstrated(db, loop.id, concept.id, LoopPhase.LEARNING.value, now)
                demonstrated.add(concept.normalized_name)

        strengthened = 0
        for rel in (loop.concept_map or {}).get("relationships") or []:
            from_name = normalize_concept_name(rel.get("from") or "")
            to_name = normalize_concept_name(rel.get("to") or "")
            if from_name not in concept_ids or to_name not in concept_ids or not rel.get("type"):
                continue
            if from_name in demonstrated and to_name in demonstrated:
                KnowledgeService.increment_relationship_strength(
                    db, concept_ids[from_name], concept_ids[to_name], rel["type"], 1.0
                )
                strengthened += 1

        logger.info(f"循环 {loop.id} 完成，知识图谱已更新：{len(demonstrated)} 个概念已展示，{strengthened} 条关系加强")

    # ------------------------------------------------------------------
    # 读取（掌握度统一经过 effective_mastery 衰减）
    # ------------------------------------------------------------------

    @staticmethod
    def _concept_summary(user_concept: UserConcept, concept: Concept, now: datetime) -> Dict[str, Any]:
        return {
            "id": concept.id,
            "name": concept.name,
            "category": concept.category,
            "mastery": effective_mastery(user_concept.mastery_score, user_concept.last_seen_at, now),
            "raw_mastery": user_concept.mastery_score,
            "times_encountered": user_concept.times_encountered,
            "times_demonstrated": user_concept.times_demonstrated,
            "last_seen": user_concept.last_seen_at.isoformat() if user_concept.last_seen_at else None,
            "days_since_last_seen": days_since(user_concept.last_seen_at, now),
        }

    @staticmethod
    def _user_concept_query(db: Session, user_id: str):
        return (
            db.query(UserConcept, Concept)
            .join(Concept, Concept.id == UserConcept.concept_id)
            .filter(UserConcept.user_id == user_id)
        )

    @staticmethod
    def get_stats(db: Session, user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        掌握度统计：总数、平均（衰减后）掌握度、mastered / learning / new 分桶
        """
        now = now or utcnow()
        rows = db.query(UserConcept).filter(UserConcept.user_id == user_id).all()
        return KnowledgeService._build_stats(
            [decayed_mastery(uc.mastery_score, uc.last_seen_at, now) for uc in rows]
        )

    @staticmethod
    def _build_stats(masteries: List[float]) -> Dict[str, Any]:
        """按未取整的衰减掌握度分桶和求平均"""
        buckets = {"mastered": 0, "learning": 0, "new": 0}
        for value in masteries:
            buckets[mastery_bucket(value)] += 1
        average = sum(masteries) / len(masteries) if masteries else 0.0
        return {
            "total_concepts": len(masteries),
            "average_mastery": average,
            "mastered_count": buckets["mastered"],
            "learning_count": buckets["learning"],
            "new_count": buckets["new"],
        }

    @staticmethod
    def get_needs_review(db: Session, user_id: str, limit: int = 5, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """原始掌握度 < 60 或超过 7 天未出现；陈旧的优先，其次掌握度升序"""
        now = now or utcnow()
        stale_before = now - timedelta(days=NEEDS_REVIEW_STALE_DAYS)
        is_stale = UserConcept.last_seen_at < stale_before
        rows = (
            KnowledgeService._user_concept_query(db, user_id)
            .filter(UserConcept.times_encountered > 0)
            .filter((UserConcept.mastery_score < NEEDS_REVIEW_MASTERY) | is_stale)
            .order_by(case((is_stale, 0), else_=1), UserConcept.mastery_score.asc())
            .limit(limit)
            .all()
        )
        return [KnowledgeService._concept_summary(uc, c, now) for uc, c in rows]

    @staticmethod
    def get_weak_spots(db: Session, user_id: str, limit: int = 5, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """多次出现仍未掌握：出现 >= 2 次且原始掌握度 < 50"""
        now = now or utcnow()
        rows = (
            KnowledgeService._user_concept_query(db, user_id)
            .filter(UserConcept.times_encountered >= WEAK_SPOT_MIN_ENCOUNTERS)
            .filter(UserConcept.mastery_score < WEAK_SPOT_MASTERY)
            .order_by(UserConcept.times_encountered.desc(), UserConcept.mastery_score.asc())
            .limit(limit)
            .all()
        )
        return [KnowledgeService._concept_summary(uc, c, now) for uc, c in rows]

    @staticmethod
    def get_recent_progress(db: Session, user_id: str, limit: int = 8, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """最近 7 天出现过的概念，最近的在前"""
        now = now or utcnow()
        since = now - timedelta(days=NEEDS_REVIEW_STALE_DAYS)
        rows = (
            KnowledgeService._user_concept_query(db, user_id)
            .filter(UserConcept.times_encountered > 0)
            .filter(UserConcept.last_seen_at >= since)
            .order_by(UserConcept.last_seen_at.desc())
            .limit(limit)
            .all()
        )
        return [KnowledgeService._concept_summary(uc, c, now) for uc, c in rows]

    @staticmethod
    def get_cross_connections(db: Session, user_id: str, limit: int = 5, max_loop_titles: int = 3) -> List[Dict[str, Any]]:
        """在至少两个循环中出现的概念，按循环数降序"""
        loop_count = func.count(func.distinct(LoopConcept.loop_id))
        groups = (
            db.query(LoopConcept.concept_id, loop_count.label("loop_count"))
            .join(LearningLoop, LearningLoop.id == LoopConcept.loop_id)
            .filter(LearningLoop.user_id == user_id)
            .group_by(LoopConcept.concept_id)
            .having(loop_count >= 2)
            .order_by(loop_count.desc(), LoopConcept.concept_id)
            .limit(limit)
            .all()
        )

        results = []
        for concept_id, count in groups:
            concept = db.query(Concept).filter(Concept.id == concept_id).first()
            loops = (
                db.query(LearningLoop.id, LearningLoop.title)
                .join(LoopConcept, LoopConcept.loop_id == LearningLoop.id)
                .filter(LoopConcept.concept_id == concept_id, LearningLoop.user_id == user_id)
                .order_by(LearningLoop.created_at.desc())
                .limit(max_loop_titles)
                .all()
            )
            results.append({
                "concept_id": concept_id,
                "name": concept.name if concept else None,
                "loop_count": count,
                "loops": [{"id": loop_id, "title": title} for loop_id, title in loops],
            })
        return results

    @staticmethod
    def get_insights(db: Session, user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """洞察汇总：需要复习、最近进展、薄弱点、跨材料关联、统计"""
        now = now or utcnow()
        return {
            "needs_review": KnowledgeService.get_needs_review(db, user_id, 5, now),
            "recent_progress": KnowledgeService.get_recent_progress(db, user_id, 8, now),
            "weak_spots": KnowledgeService.get_weak_spots(db, user_id, 5, now),
            "cross_connections": KnowledgeService.get_cross_connections(db, user_id, 5),
            "stats": KnowledgeService.get_stats(db, user_id, now),
        }

    @staticmethod
    def list_concepts(db: Session, user_id: str, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        now = now or utcnow()
        rows = KnowledgeService._user_concept_query(db, user_id).order_by(Concept.name).all()
        return [KnowledgeService._concept_summary(uc, c, now) for uc, c in rows]

    @staticmethod
    def get_graph(db: Session, user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """知识图谱视图：节点（衰减后掌握度）、用户概念之间的边、统计"""
        now = now or utcnow()
        rows = KnowledgeService._user_concept_query(db, user_id).all()
        nodes = [
            {
                "id": c.id,
                "name": c.name,
                "mastery": effective_mastery(uc.mastery_score, uc.last_seen_at, now),
                "category": c.category,
                "times_encountered": uc.times_encountered,
                "last_seen": uc.last_seen_at.isoformat() if uc.last_seen_at else None,
            }
            for uc, c in rows
        ]
        concept_ids = [c.id for _, c in rows]
        edges = []
        if concept_ids:
            relationships = (
                db.query(ConceptRelationship)
                .filter(ConceptRelationship.from_concept_id.in_(concept_ids))
                .filter(ConceptRelationship.to_concept_id.in_(concept_ids))
                .all()
            )
            edges = [
                {
                    "source": r.from_concept_id,
                    "target": r.to_concept_id,
                    "type": r.relationship_type,
                    "strength": float(r.strength),
                }
                for r in relationships
            ]
        return {
            "nodes": nodes,
            "edges": edges,
            "stats": KnowledgeService._build_stats(
                [decayed_mastery(uc.mastery_score, uc.last_seen_at, now) for uc, _ in rows]
            ),
        }

    @staticmethod
    def get_concept_detail(db: Session, user_id: str, concept_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        概念详情：衰减后掌握度、计数、双向关联概念

        Raises:
            ConceptNotFoundError: 概念不存在
        """
        now = now or utcnow()
        concept = db.query(Concept).filter(Concept.id == concept_id).first()
        if not concept:
            raise ConceptNotFoundError("概念不存在")

        mastery_by_concept = {
            uc.concept_id: uc
            for uc in db.query(UserConcept).filter(UserConcept.user_id == user_id).all()
        }
        own = mastery_by_concept.get(concept_id)

        related = []
        outgoing = db.query(ConceptRelationship).filter(ConceptRelationship.from_concept_id == concept_id).all()
        incoming = db.query(ConceptRelationship).filter(ConceptRelationship.to_concept_id == concept_id).all()
        for direction, relationships, other_attr in (
            ("outgoing", outgoing, "to_concept_id"),
            ("incoming", incoming, "from_concept_id"),
        ):
            for rel in relationships:
                other_id = getattr(rel, other_attr)
                user_concept = mastery_by_concept.get(other_id)
                if user_concept is None:
                    continue
                other = db.query(Concept).filter(Concept.id == other_id).first()
                related.append({
                    "concept": {
                        "id": other.id,
                        "name": other.name,
                        "description": other.description,
                        "category": other.category,
                    },
                    "relationship": {
                        "type": rel.relationship_type,
                        "strength": float(rel.strength),
                        "direction": direction,
                    },
                    "mastery": effective_mastery(user_concept.mastery_score, user_concept.last_seen_at, now),
                })

        return {
            "concept": {
                "id": concept.id,
                "name": concept.name,
                "description": concept.description,
                "category": concept.category,
            },
            "mastery": effective_mastery(own.mastery_score, own.last_seen_at, now) if own else 0,
            "times_encountered": own.times_encountered if own else 0,
            "times_demonstrated": own.times_demonstrated if own else 0,
            "last_seen": own.last_seen_at.isoformat() if own and own.last_seen_at else None,
            "related_concepts": related,
        }
