"""
用户管理模块
支持Dev模式（免注册快速体验）和生产模式
"""
import hashlib
import logging
import uuid
from typing import Optional

from sqlalchemy.orm import Session

from app.core.errors import InvalidRequestError
from app.core.personas import DEFAULT_PERSONA, get_persona
from app.core.timeutils import utcnow
from app.models import User

logger = logging.getLogger(__name__)


class UserService:
    """用户服务"""

    @staticmethod
    def _generate_user_id_from_nickname(nickname: str) -> str:
        """根据昵称生成确定性的用户ID（同一昵称总是得到同一ID）"""
        hash_bytes = hashlib.sha256(nickname.encode("utf-8")).digest()
        return str(uuid.UUID(bytes=hash_bytes[:16]))

    @staticmethod
    def get_or_create_user(db: Session, user_id: Optional[str] = None, nickname: Optional[str] = None) -> User:
        """
        获取或创建用户（Dev模式）

        - 提供 user_id 且存在时直接返回
        - 提供 nickname 时基于昵称生成确定性ID
        - 都没有时创建随机ID的新用户
        """
        if user_id:
            user = db.query(User).filter(User.id == user_id).first()
            if user:
                return user

        if nickname:
            new_id = UserService._generate_user_id_from_nickname(nickname)
            user = db.query(User).filter(User.id == new_id).first()
            if user:
                return user
        else:
            new_id = user_id or str(uuid.uuid4())
            nickname = f"learner-{new_id[:6]}"

        user = User(
            id=new_id,
            username=f"dev_{new_id[:8]}",
            nickname=nickname,
            is_temp_user=True,
            created_at=utcnow(),
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        logger.info(f"创建 Dev 用户: {user.id}")
        return user

    @staticmethod
    def get_user(db: Session, user_id: str) -> Optional[User]:
        return db.query(User).filter(User.id == user_id).first()

    @staticmethod
    def require_user(db: Session, user_id: str) -> User:
        """
        获取用户，不存在时报错

        Raises:
            InvalidRequestError: 用户不存在
        """
        user = UserService.get_user(db, user_id)
        if not user:
            raise InvalidRequestError("用户不存在")
        return user

    @staticmethod
    def update_last_login(db: Session, user_id: str):
        user = db.query(User).filter(User.id == user_id).first()
        if user:
            user.last_login = utcnow()
            db.commit()

    @staticmethod
    def update_preferences(
        db: Session,
        user_id: str,
        persona: Optional[str] = None,
        is_paid: Optional[bool] = None,
    ) -> User:
        """
        更新讲评人设（付费人设需要付费用户）

        Raises:
            InvalidRequestError: 用户不存在、未知人设或人设需要付费
        """
        user = UserService.require_user(db, user_id)
        if is_paid is not None:
            user.is_paid = is_paid
        if persona is not None:
            config = get_persona(persona)
            if config.is_paid and not user.is_paid:
                raise InvalidRequestError(f"人设 {persona} 需要付费")
            user.persona = persona
        db.commit()
        db.refresh(user)
        return user

    @staticmethod
    def resolve_persona(user: User, persona: Optional[str] = None) -> str:
        """
        确定本次评估使用的人设：显式传入优先，否则使用用户偏好

        Raises:
            InvalidRequestError: 未知人设，或免费用户使用付费人设
        """
        key = persona or user.persona or DEFAULT_PERSONA
        config = get_persona(key)
        if config.is_paid and not user.is_paid:
            raise InvalidRequestError(f"人设 {key} 需要付费")
        return key
