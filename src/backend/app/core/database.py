"""
数据库配置
支持SQLite（开发）和PostgreSQL（生产）
"""
import os
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional, Union

from sqlalchemy import create_engine
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session, sessionmaker

# 数据库连接配置
DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "sqlite:///./data/learnloop.db"  # 默认SQLite
)

# SQLite 文件所在目录需要预先存在
if DATABASE_URL.startswith("sqlite:///") and ":memory:" not in DATABASE_URL:
    Path(DATABASE_URL[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)

# 创建引擎
engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False} if "sqlite" in DATABASE_URL else {}
)

# 创建会话工厂
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


# 依赖注入
def get_db():
    """数据库会话依赖注入"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def dialect_insert(db: Session, model):
    """按当前连接方言选择支持 ON CONFLICT 的 insert 构造"""
    if db.get_bind().dialect.name == "postgresql":
        return postgresql.insert(model)
    return sqlite.insert(model)


def upsert(
    db: Session,
    model,
    values: Dict[str, Any],
    conflict_columns: Iterable[str],
    update: Optional[Union[Dict[str, Any], Callable[[Any], Dict[str, Any]]]] = None,
) -> None:
    """
    插入一行，自然键冲突时更新指定字段

    Args:
        db: 数据库会话
        model: ORM 模型
        values: 插入的字段值
        conflict_columns: 唯一约束列
        update: 冲突时更新的字段；可以是接收 excluded 的函数，用于构造累加表达式；
            为 None 时忽略冲突

    不提交事务，由调用方统一 commit。
    """
    stmt = dialect_insert(db, model).values(**values)
    if update is None:
        stmt = stmt.on_conflict_do_nothing(index_elements=list(conflict_columns))
    else:
        set_ = update(stmt.excluded) if callable(update) else update
        stmt = stmt.on_conflict_do_update(
            index_elements=list(conflict_columns),
            set_=set_,
        )
    db.execute(stmt)
