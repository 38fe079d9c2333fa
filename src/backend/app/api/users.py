"""
用户管理API路由
支持Dev模式（免注册快速体验）
"""
from typing import Optional
from datetime import datetime
from pydantic import BaseModel
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.personas import list_personas
from app.services.usage_service import UsageService
from app.services.user_service import UserService


router = APIRouter(prefix="/users", tags=["用户管理"])


# Schemas
class UserCreateRequest(BaseModel):
    """创建用户请求"""
    nickname: Optional[str] = None


class UserResponse(BaseModel):
    """用户响应"""
    id: str
    username: str
    nickname: Optional[str]
    is_temp_user: bool
    persona: str
    is_paid: bool
    created_at: Optional[datetime]
    last_login: Optional[datetime]

    class Config:
        from_attributes = True


class PreferencesRequest(BaseModel):
    """偏好设置"""
    persona: Optional[str] = None
    is_paid: Optional[bool] = None


class PersonaResponse(BaseModel):
    key: str
    name: str
    description: str
    is_paid: bool

    class Config:
        from_attributes = True


class UsageResponse(BaseModel):
    """今日额度"""
    loops_used_today: int
    daily_limit: int
    remaining_loops: int | None
    is_paid: bool
    reset_at: str


# Endpoints
@router.post("/", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def create_or_get_user(
    request: UserCreateRequest,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """
    获取或创建用户（Dev模式）

    Dev模式下，如果没有提供user_id，会自动创建新用户
    """
    user = UserService.get_or_create_user(db, user_id=user_id, nickname=request.nickname)
    UserService.update_last_login(db, str(user.id))
    return user


@router.get("/personas", response_model=list[PersonaResponse])
async def get_personas():
    """可选的讲评人设"""
    return list_personas()


@router.get("/{user_id}", response_model=UserResponse)
async def get_user(user_id: str, db: Session = Depends(get_db)):
    """获取用户信息"""
    user = UserService.get_user(db, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="用户不存在")
    return user


@router.put("/{user_id}/preferences", response_model=UserResponse)
async def update_preferences(
    user_id: str,
    request: PreferencesRequest,
    db: Session = Depends(get_db)
):
    """更新讲评人设等偏好（付费人设需要付费用户）"""
    return UserService.update_preferences(
        db, user_id, persona=request.persona, is_paid=request.is_paid
    )


@router.get("/{user_id}/usage", response_model=UsageResponse)
async def get_usage(user_id: str, db: Session = Depends(get_db)):
    """获取今日免费额度使用情况"""
    user = UserService.get_user(db, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="用户不存在")
    return UsageService.get_usage(user)
