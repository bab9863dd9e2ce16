"""
Agent 模块 - hakimi 的"大脑"。

- base: 会话层依赖的运行时接口（AgentRuntime / AgentInstance / 事件类型）
- LLMAgentRuntime / LLMAgent: 基于 LiteLLM 的实现，每个会话一个实例
- ContextBuilder: 组装系统提示词和消息列表
"""

from hakimi.agent.base import (
    AgentHooks,
    AgentIdentity,
    AgentInstance,
    AgentRuntime,
    ApprovalRequest,
    ContentChunk,
    TurnInterrupted,
)
from hakimi.agent.context import ContextBuilder
from hakimi.agent.loop import LLMAgent, LLMAgentRuntime

__all__ = [
    "AgentHooks",
    "AgentIdentity",
    "AgentInstance",
    "AgentRuntime",
    "ApprovalRequest",
    "ContentChunk",
    "TurnInterrupted",
    "ContextBuilder",
    "LLMAgent",
    "LLMAgentRuntime",
]
