"""
学习循环引擎配置

配置优先级：环境变量 > 默认值
算法常量（85 分门槛、复习间隔规则、衰减档位）不在此处配置。
"""
import os
from dataclasses import dataclass


@dataclass
class EngineConfig:
    """
    引擎运行配置

    Attributes:
        evaluation_timeout: 单次评估调用超时（秒）
        concept_extraction_retries: 概念提取失败后的重试次数
        attempt_insert_retries: 提交编号冲突后的重试次数
        free_tier_daily_limit: 免费用户每日提交上限
    """
    evaluation_timeout: float = 60.0
    concept_extraction_retries: int = 2
    attempt_insert_retries: int = 3
    free_tier_daily_limit: int = 5


def get_engine_config() -> EngineConfig:
    """
    从环境变量获取引擎配置

    环境变量：
        EVALUATION_TIMEOUT: 评估调用超时时间
        CONCEPT_EXTRACTION_RETRIES: 概念提取重试次数
        ATTEMPT_INSERT_RETRIES: 提交编号冲突重试次数
        FREE_TIER_DAILY_LIMIT: 免费用户每日上限

    Returns:
        EngineConfig 配置对象
    """
    return EngineConfig(
        evaluation_timeout=float(os.getenv("EVALUATION_TIMEOUT", "60.0")),
        concept_extraction_retries=int(os.getenv("CONCEPT_EXTRACTION_RETRIES", "2")),
        attempt_insert_retries=int(os.getenv("ATTEMPT_INSERT_RETRIES", "3")),
        free_tier_daily_limit=int(os.getenv("FREE_TIER_DAILY_LIMIT", "5")),
    )
