"""
学习循环引擎异常定义

异常分类：
- 契约违规（PhaseContractError、DataIntegrityError）：调用方 bug，不可重试
- 上游失败（EvaluationUnavailableError）：可重试，引擎不会留下部分写入
- 用量限制（UsageLimitExceededError）：与"稍后重试"区分，提示升级
"""
from typing import Any, Dict, Optional


class LearningLoopError(Exception):
    """学习循环引擎异常基类"""

    status_code: int = 400
    code: str = "learning_loop_error"
    retryable: bool = False

    def __init__(self, message: str, cause: Optional[Exception] = None):
        self.message = message
        self.cause = cause
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.cause:
            return f"{self.message} (caused by: {self.cause})"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        """转换为 API 错误响应体"""
        return {
            "error": self.code,
            "detail": self.message,
            "retryable": self.retryable,
        }


class InvalidRequestError(LearningLoopError):
    """请求参数不合法"""
    status_code = 400
    code = "invalid_request"


class AccessDeniedError(LearningLoopError):
    """访问他人的学习循环"""
    status_code = 403
    code = "access_denied"


class LoopNotFoundError(LearningLoopError):
    """学习循环不存在"""
    status_code = 404
    code = "loop_not_found"


class SessionNotFoundError(LearningLoopError):
    """苏格拉底会话不存在"""
    status_code = 404
    code = "session_not_found"


class ReviewNotFoundError(LearningLoopError):
    """复习计划不存在"""
    status_code = 404
    code = "review_not_found"


class ConceptNotFoundError(LearningLoopError):
    """概念不存在"""
    status_code = 404
    code = "concept_not_found"


class PhaseContractError(LearningLoopError):
    """阶段契约违规：非法迁移、在不接受提交的阶段提交等"""
    status_code = 409
    code = "phase_contract_violation"


class LoopClosedError(LearningLoopError):
    """学习循环已放弃或已完成，拒绝继续写入"""
    status_code = 409
    code = "loop_closed"


class DataIntegrityError(LearningLoopError):
    """持久化数据无法识别（如未知阶段值）"""
    status_code = 500
    code = "data_integrity_error"


class EvaluationUnavailableError(LearningLoopError):
    """评估服务超时或失败（可重试）"""
    status_code = 503
    code = "evaluation_unavailable"
    retryable = True


class UsageLimitExceededError(LearningLoopError):
    """超出用量上限（需要升级而非重试）"""
    status_code = 429
    code = "usage_limit_exceeded"

    def __init__(self, message: str, usage: Dict[str, Any]):
        super().__init__(message)
        self.usage = usage

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["usage"] = self.usage
        return result
