"""
FastAPI应用入口
"""
from dotenv import load_dotenv
from pathlib import Path
import os
import logging

# 加载环境变量 - 优先从根目录加载，回退到当前目录
root_env = Path(__file__).parent.parent.parent / ".env"
if root_env.exists():
    load_dotenv(root_env)
else:
    load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from app.api import users, loops, knowledge, review
from app.core.errors import LearningLoopError
from app.llm import get_llm_client
from app.llm.langfuse_wrapper import is_langfuse_enabled


def _get_cors_config() -> tuple[list[str], str | None]:
    """
    获取 CORS 配置

    Returns:
        (allow_origins, allow_origin_regex)
        - 生产环境：使用精确匹配的 origins 列表
        - 开发环境：使用正则匹配本地端口，方便本地开发
    """
    origins_str = os.getenv("ALLOWED_ORIGINS", "")
    if origins_str:
        origins = [origin.strip() for origin in origins_str.split(",") if origin.strip()]
        if origins:
            return origins, None

    # 开发环境：使用正则匹配所有本地端口
    if os.getenv("DEV_MODE", "false").lower() == "true":
        return [], r"http://(localhost|127\.0\.0\.1)(:\d+)?"

    # 非开发环境且未配置 ALLOWED_ORIGINS：拒绝所有跨域
    logger.warning("未配置 ALLOWED_ORIGINS 且非开发模式，CORS 将拒绝所有跨域请求")
    return [], None


app = FastAPI(
    title="LearnLoop API",
    description="Explain-to-learn loop engine - evaluation, remediation and spaced review",
    version="0.1.0"
)

# CORS配置 - 从环境变量读取允许的源
allow_origins, allow_origin_regex = _get_cors_config()
logger.info(f"CORS 配置: origins={allow_origins}, regex={allow_origin_regex}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_origin_regex=allow_origin_regex,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LearningLoopError)
async def learning_loop_error_handler(request: Request, exc: LearningLoopError):
    """把引擎异常转换为带错误码的响应"""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} 失败: {exc}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# 包含所有路由
app.include_router(users.router, prefix="/api", tags=["用户管理"])
app.include_router(loops.router, prefix="/api", tags=["学习循环"])
app.include_router(knowledge.router, prefix="/api", tags=["知识图谱"])
app.include_router(review.router, prefix="/api", tags=["间隔复习"])


@app.get("/")
async def root():
    """根路径"""
    return {"message": "LearnLoop API", "docs": "/docs"}


@app.get("/health")
async def health():
    """健康检查"""
    try:
        llm_available = get_llm_client().is_available
    except ValueError:
        # 未配置 LLM_API_KEY
        llm_available = False
    return {
        "status": "healthy",
        "llm_available": llm_available,
        "langfuse_enabled": is_langfuse_enabled(),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
