"""
OpenAI 兼容客户端实现

支持 OpenAI 及其兼容接口（如 DeepSeek、Azure OpenAI 等）。
"""

import logging
from typing import Dict, List, Optional

from openai import AsyncOpenAI

from .base import ChatResponse, LLMClient, LLMError
from .config import LLMConfig

logger = logging.getLogger(__name__)


class OpenAIClient(LLMClient):
    """
    OpenAI 兼容客户端

    使用示例:
        client = OpenAIClient(LLMConfig(api_key="sk-xxx"))
        response = await client.chat(messages, json_mode=True)
    """

    def __init__(self, config: LLMConfig):
        self._config = config
        self._async_client: Optional[AsyncOpenAI] = None

    def _get_async_client(self) -> AsyncOpenAI:
        """获取异步客户端（延迟初始化）"""
        if self._async_client is None:
            self._async_client = AsyncOpenAI(
                api_key=self._config.api_key,
                base_url=self._config.base_url,
                timeout=self._config.timeout,
                max_retries=self._config.max_retries,
            )
        return self._async_client

    async def chat(
        self,
        messages: List[Dict[str, str]],
        *,
        model: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: Optional[int] = None,
        json_mode: bool = False,
    ) -> ChatResponse:
        client = self._get_async_client()

        params = {
            "model": model or self._config.model,
            "messages": messages,
            "temperature": temperature,
        }
        if max_tokens is not None:
            params["max_tokens"] = max_tokens
        if json_mode and self._config.json_mode:
            params["response_format"] = {"type": "json_object"}

        try:
            response = await client.chat.completions.create(**params)
        except Exception as e:
            logger.error(f"LLM 调用失败: {e}")
            raise LLMError(f"LLM 调用失败: {str(e)}", cause=e)

        choice = response.choices[0]
        if json_mode and choice.finish_reason == "length":
            logger.warning(f"LLM 输出达到 max_tokens 被截断，JSON 可能不完整（模型 {response.model}）")
        return ChatResponse(
            content=choice.message.content or "",
            model=response.model,
            usage={
                "prompt_tokens": response.usage.prompt_tokens,
                "completion_tokens": response.usage.completion_tokens,
                "total_tokens": response.usage.total_tokens,
            } if response.usage else None,
            finish_reason=choice.finish_reason,
        )

    @property
    def default_model(self) -> str:
        return self._config.model

    @property
    def is_available(self) -> bool:
        return bool(self._config.api_key)
