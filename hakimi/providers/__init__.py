"""
LLM 提供者模块 - 通过 LiteLLM 以同一套接口对接多家大模型服务。

- base.py: LLMProvider 抽象基类与 LLMResponse 数据结构
- litellm_provider.py: 基于 LiteLLM 的实现
- registry.py: 服务商注册表（环境变量、模型前缀、参数覆盖）
"""

from hakimi.providers.base import LLMProvider, LLMResponse
from hakimi.providers.litellm_provider import LiteLLMProvider

__all__ = ["LLMProvider", "LLMResponse", "LiteLLMProvider"]
