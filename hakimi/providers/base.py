"""
LLM 提供者接口。

LLMAgent 只依赖这里的三样东西：
- ToolCallRequest: LLM 要求调用的一个工具，能还原成写回历史的 OpenAI 格式
- LLMResponse: 一次推理的结果，能直接生成写回历史的助手消息
- LLMProvider: 抽象基类，唯一的实现是 LiteLLMProvider

调用链：
  LLMAgent._chat() → LLMProvider.chat() → LiteLLM → 服务商 API

约定：chat() 对服务商错误不抛异常，而是返回 is_error 的响应；
但必须让 asyncio.CancelledError 原样穿过，LLMAgent.interrupt() 靠它打断推理。
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


@dataclass
class ToolCallRequest:
    """LLM 返回的一次工具调用。id 用于把工具结果回填到对应的调用上。"""
    id: str
    name: str
    arguments: dict[str, Any]

    def to_message(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {
                "name": self.name,
                "arguments": json.dumps(self.arguments, ensure_ascii=False),
            },
        }


@dataclass
class LLMResponse:
    """
    LLM 的统一响应。

    属性:
        content: 文本内容（只有工具调用时可能为 None）
        tool_calls: 工具调用列表
        finish_reason: "stop" / "tool_calls" / "error"
        reasoning_content: 部分模型（Kimi、DeepSeek-R1）返回的思考过程，下一轮需要原样带回
    """
    content: str | None
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    finish_reason: str = "stop"
    reasoning_content: str | None = None

    @classmethod
    def failure(cls, reason: str) -> "LLMResponse":
        return cls(content=reason, finish_reason="error")

    @property
    def is_error(self) -> bool:
        return self.finish_reason == "error"

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    def to_assistant_message(self) -> dict[str, Any]:
        """生成写回会话历史的助手消息。"""
        msg: dict[str, Any] = {"role": "assistant", "content": self.content or ""}
        if self.tool_calls:
            msg["tool_calls"] = [tc.to_message() for tc in self.tool_calls]
        if self.reasoning_content:
            msg["reasoning_content"] = self.reasoning_content
        return msg


class LLMProvider(ABC):
    """LLM 提供者抽象基类。"""

    default_model: str = ""

    @abstractmethod
    async def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ) -> LLMResponse:
        """
        发送一次对话补全请求。

        参数:
            messages: OpenAI 格式的消息列表
            tools: OpenAI 函数调用格式的工具定义
            model: 模型名，为空时使用 default_model

        返回:
            LLMResponse。服务商出错时返回 LLMResponse.failure(...)。
        """

    def get_default_model(self) -> str:
        return self.default_model
