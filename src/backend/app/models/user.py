"""
用户模型
支持Dev模式（免注册）和生产模式
"""
from sqlalchemy import Column, String, Boolean, Integer, DateTime

from app.core.timeutils import utcnow
from .base import Base


class User(Base):
    """用户模型"""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, index=True)
    username = Column(String(50), unique=True, nullable=False, index=True)
    nickname = Column(String(100), nullable=True)
    is_temp_user = Column(Boolean, default=False)
    persona = Column(String(20), default="coach", nullable=False)  # 讲评人设
    is_paid = Column(Boolean, default=False, nullable=False)

    # 免费额度：每日提交次数，UTC 零点重置
    loops_used_today = Column(Integer, default=0, nullable=False)
    usage_reset_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    last_login = Column(DateTime)

    def __repr__(self):
        return f"<User(id='{self.id}' username='{self.username}' persona='{self.persona}' is_paid={self.is_paid})>"
