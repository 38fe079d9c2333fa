"""
LLM 封装模块

评估服务（讲解评估、概念提取、已有知识评估、补漏对话）的统一调用接口。

使用示例:
    from app.llm import get_llm_client

    llm = get_llm_client()
    response = await llm.chat(messages, json_mode=True)
"""

from typing import Optional

from .base import ChatResponse, LLMClient, LLMError, MessageRole
from .config import LLMConfig, LangfuseConfig, get_langfuse_config, get_llm_config
from .langfuse_wrapper import is_langfuse_enabled, reset_langfuse_client, trace_llm_call
from .openai_client import OpenAIClient

# 全局 LLM 客户端实例（延迟初始化）
_llm_client: Optional[LLMClient] = None


def get_llm_client(config: Optional[LLMConfig] = None) -> LLMClient:
    """
    获取 LLM 客户端实例（单例模式）

    Raises:
        ValueError: 当 API Key 未配置时
    """
    global _llm_client

    if _llm_client is not None and config is None:
        return _llm_client

    _llm_client = OpenAIClient(config or get_llm_config())
    return _llm_client


def reset_llm_client():
    """重置 LLM 客户端（用于测试或重新配置）"""
    global _llm_client
    _llm_client = None


__all__ = [
    "LLMClient",
    "OpenAIClient",
    "get_llm_client",
    "reset_llm_client",
    "ChatResponse",
    "LLMError",
    "MessageRole",
    "LLMConfig",
    "LangfuseConfig",
    "get_llm_config",
    "get_langfuse_config",
    "trace_llm_call",
    "is_langfuse_enabled",
    "reset_langfuse_client",
]
