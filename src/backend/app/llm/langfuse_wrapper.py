"""
Langfuse 监控封装模块

通过装饰器记录评估调用的输入、输出和耗时。
未配置密钥时装饰器直接透传。

兼容 Langfuse SDK v2.x
"""

import logging
from datetime import datetime
from functools import wraps
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from .config import get_langfuse_config

logger = logging.getLogger(__name__)

R = TypeVar("R")

# 全局 Langfuse 客户端（延迟初始化）
_langfuse_client = None
_langfuse_enabled: Optional[bool] = None


def _get_langfuse_client():
    """获取 Langfuse 客户端，未启用时返回 None"""
    global _langfuse_client, _langfuse_enabled

    if _langfuse_enabled is False:
        return None
    if _langfuse_client is not None:
        return _langfuse_client

    config = get_langfuse_config()
    if not config.enabled or not config.is_valid():
        logger.debug("Langfuse 监控未启用或配置无效")
        _langfuse_enabled = False
        return None

    from langfuse import Langfuse

    _langfuse_client = Langfuse(
        public_key=config.public_key,
        secret_key=config.secret_key,
        host=config.host,
    )
    _langfuse_enabled = True
    logger.info(f"Langfuse 客户端已初始化，地址: {config.host}")
    return _langfuse_client


def reset_langfuse_client():
    """重置 Langfuse 客户端（用于测试或重新配置）"""
    global _langfuse_client, _langfuse_enabled
    _langfuse_client = None
    _langfuse_enabled = None


def is_langfuse_enabled() -> bool:
    return _get_langfuse_client() is not None


def _summarize_output(result: Any) -> Optional[Dict[str, Any]]:
    if hasattr(result, "model_dump"):
        return result.model_dump()
    if hasattr(result, "content"):
        return {"content": str(result.content)[:500]}
    if isinstance(result, str):
        return {"content": result[:500]}
    return None


def trace_llm_call(
    name: str,
    *,
    metadata: Optional[Dict[str, Any]] = None,
    tags: Optional[List[str]] = None,
):
    """
    追踪异步 LLM 调用的装饰器

    使用示例:
        @trace_llm_call("explanation_evaluation", tags=["evaluation"])
        async def evaluate(self, ...):
            ...

    Args:
        name: 追踪名称（在 Langfuse 中显示）
        metadata: 额外的元数据
        tags: 标签列表
    """
    def decorator(func: Callable[..., Awaitable[R]]) -> Callable[..., Awaitable[R]]:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> R:
            client = _get_langfuse_client()
            if client is None:
                return await func(*args, **kwargs)

            start_time = datetime.now()
            input_data = {k: str(v)[:300] for k, v in kwargs.items()}

            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                duration_ms = (datetime.now() - start_time).total_seconds() * 1000
                client.trace(
                    name=name,
                    input=input_data,
                    output={"error": str(e)},
                    metadata={"duration_ms": duration_ms, "error": True, **(metadata or {})},
                    tags=(tags or []) + ["error"],
                )
                client.flush()
                raise

            output_data = _summarize_output(result)
            trace = client.trace(
                name=name,
                input=input_data,
                output=output_data,
                metadata=metadata or {},
                tags=tags or [],
            )
            trace.span(
                name=f"{name}_call",
                input=input_data,
                output=output_data,
                start_time=start_time,
                end_time=datetime.now(),
                metadata={
                    "duration_ms": (datetime.now() - start_time).total_seconds() * 1000,
                    **(metadata or {}),
                },
            )
            client.flush()
            return result

        return wrapper

    return decorator
