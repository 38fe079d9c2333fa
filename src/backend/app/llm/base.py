"""
LLM 客户端抽象基类

评估、概念提取、补漏对话都只依赖这里定义的 chat 接口，
测试中用脚本化的假客户端替换。
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional


class MessageRole(str, Enum):
    """消息角色枚举"""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class ChatResponse:
    """
    聊天响应

    Attributes:
        content: 响应内容（JSON 模式下为 JSON 字符串）
        model: 使用的模型名称
        usage: Token 使用情况
        finish_reason: 完成原因
    """
    content: str
    model: str
    usage: Optional[Dict[str, int]] = None
    finish_reason: Optional[str] = None


class LLMClient(ABC):
    """LLM 客户端抽象基类"""

    @abstractmethod
    async def chat(
        self,
        messages: List[Dict[str, str]],
        *,
        model: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: Optional[int] = None,
        json_mode: bool = False,
    ) -> ChatResponse:
        """
        聊天补全

        Args:
            messages: 消息列表，格式为 [{"role": "user", "content": "..."}]
            model: 模型名称，为 None 时使用默认模型
            temperature: 温度参数
            max_tokens: 最大生成 Token 数
            json_mode: 是否要求返回 JSON 对象

        Returns:
            ChatResponse 响应对象

        Raises:
            LLMError: LLM 调用失败时抛出
        """

    @property
    @abstractmethod
    def default_model(self) -> str:
        """获取默认模型名称"""

    @property
    @abstractmethod
    def is_available(self) -> bool:
        """检查客户端是否可用（配置是否正确）"""


class LLMError(Exception):
    """LLM 调用异常"""

    def __init__(self, message: str, cause: Optional[Exception] = None):
        self.message = message
        self.cause = cause
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.cause:
            return f"{self.message} (caused by: {self.cause})"
        return self.message
