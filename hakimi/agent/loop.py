"""
Agent 循环模块 - 基于 LLM 的 AgentRuntime 实现。

每个会话拥有一个 LLMAgent 实例，实例在内存中保存该会话的对话历史。
一轮对话（run）就是一个 ReAct 循环：

    LLM 推理 → 有工具调用？ → 执行工具 → 把结果回填 → 再次推理 → ... → 没有工具调用，结束

与会话层的交互：
- run() 是异步生成器，产出 ContentChunk（助手文本，仅记日志）和
  ApprovalRequest（需要批准的工具调用，等 approve() 之后才执行）
- interrupt() 取消正在进行的 LLM 请求，run() 随后抛出 TurnInterrupted
- 回复用户只能通过 send_message 工具

【Java 开发者类比】
- LLMAgentRuntime 相当于 Prototype Bean 的工厂
- run() 相当于返回 Flux<AgentEvent> 的响应式方法，interrupt() 相当于 dispose()
"""

import asyncio
import json
import uuid
from pathlib import Path
from typing import Any, AsyncIterator

from loguru import logger

from hakimi.agent.base import (
    AgentEvent,
    AgentHooks,
    AgentIdentity,
    AgentInstance,
    AgentRuntime,
    ApprovalRequest,
    ContentChunk,
    TurnInterrupted,
)
from hakimi.agent.context import ContextBuilder
from hakimi.agent.tools import (
    ReadConfigTool,
    ReloadTool,
    SendMessageTool,
    ToolRegistry,
    WriteConfigTool,
)
from hakimi.providers.base import LLMProvider, LLMResponse


class LLMAgentRuntime(AgentRuntime):
    """
    LLM Agent 运行时，为每个会话创建一个 LLMAgent。

    参数:
        provider: LLM 提供者
        workspace: 工作区路径
        model: 模型名，为空时使用提供者的默认模型
        max_tokens: 最大输出 token 数
        temperature: 采样温度
        max_iterations: 一轮对话最多调用 LLM 的次数
        config_path: read_config / write_config 操作的配置文件
    """

    def __init__(
        self,
        provider: LLMProvider,
        workspace: Path,
        model: str | None = None,
        max_tokens: int = 8192,
        temperature: float = 0.7,
        max_iterations: int = 20,
        config_path: Path | None = None,
    ):
        self.provider = provider
        self.workspace = workspace
        self.model = model or provider.get_default_model()
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.max_iterations = max_iterations
        self.config_path = config_path

    async def create_instance(
        self,
        session_key: str,
        identity: AgentIdentity,
        hooks: AgentHooks,
    ) -> "LLMAgent":
        context = ContextBuilder(self.workspace, identity)
        context.ensure_skill_file()

        tools = ToolRegistry()
        tools.register(SendMessageTool(send_callback=hooks.on_send))
        tools.register(ReloadTool(on_reload=hooks.on_reload))
        tools.register(ReadConfigTool(config_path=self.config_path))
        tools.register(WriteConfigTool(config_path=self.config_path))

        logger.info(f"Starting agent session hakimi-{session_key}")
        return LLMAgent(
            session_key=session_key,
            provider=self.provider,
            context=context,
            tools=tools,
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            max_iterations=self.max_iterations,
        )


class LLMAgent(AgentInstance):
    """
    单个会话的 LLM Agent。

    历史只在"一致点"提交（用户消息之后、一组工具结果全部回填之后、最终回复之后），
    被打断的那一步不会留下没有工具结果的 tool_calls。
    """

    def __init__(
        self,
        session_key: str,
        provider: LLMProvider,
        context: ContextBuilder,
        tools: ToolRegistry,
        model: str,
        max_tokens: int = 8192,
        temperature: float = 0.7,
        max_iterations: int = 20,
        max_history_messages: int = 200,
    ):
        self.session_key = session_key
        self.provider = provider
        self.context = context
        self.tools = tools
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.max_iterations = max_iterations
        self.max_history_messages = max_history_messages

        self.history: list[dict[str, Any]] = []
        self._running = False
        self._interrupted = False
        self._closed = False
        self._chat_task: asyncio.Task | None = None
        self._approvals: dict[str, asyncio.Future] = {}

    async def run(self, prompt: str) -> AsyncIterator[AgentEvent]:
        if self._closed:
            raise RuntimeError(f"Agent for {self.session_key} is closed")

        self._running = True
        self._interrupted = False
        messages = self.context.build_messages(self._trimmed_history(), prompt)
        self._commit(messages)

        try:
            for iteration in range(1, self.max_iterations + 1):
                response = await self._chat(messages)
                if response.is_error:
                    raise RuntimeError(response.content or "LLM call failed")

                if response.content:
                    yield ContentChunk(response.content)

                messages.append(response.to_assistant_message())
                if not response.has_tool_calls:
                    self._commit(messages)
                    return

                for tool_call in response.tool_calls:
                    self._check_interrupted()
                    if self.tools.requires_approval(tool_call.name):
                        request = ApprovalRequest(
                            id=tool_call.id or uuid.uuid4().hex,
                            tool_name=tool_call.name,
                            arguments=tool_call.arguments,
                        )
                        future = asyncio.get_running_loop().create_future()
                        self._approvals[request.id] = future
                        yield request
                        approved = await future
                        self._approvals.pop(request.id, None)
                        self._check_interrupted()
                        if not approved:
                            result = f"Error: {tool_call.name} was not approved"
                            self.context.add_tool_result(messages, tool_call.id, tool_call.name, result)
                            continue

                    args_str = json.dumps(tool_call.arguments, ensure_ascii=False)
                    logger.info(f"Tool call: {tool_call.name}({args_str[:200]})")
                    result = await self.tools.execute(tool_call.name, tool_call.arguments)
                    self.context.add_tool_result(messages, tool_call.id, tool_call.name, result)

                self._commit(messages)
                self._check_interrupted()

            logger.warning(f"Agent {self.session_key} reached {self.max_iterations} iterations without finishing")
        finally:
            self._running = False
            self._chat_task = None
            for future in self._approvals.values():
                if not future.done():
                    future.cancel()
            self._approvals.clear()

    async def approve(self, request_id: str) -> None:
        future = self._approvals.get(request_id)
        if future and not future.done():
            future.set_result(True)

    def interrupt(self) -> None:
        if not self._running:
            return
        self._interrupted = True
        if self._chat_task and not self._chat_task.done():
            self._chat_task.cancel()
        for future in self._approvals.values():
            if not future.done():
                future.set_result(False)

    async def close(self) -> None:
        if self._closed:
            return
        self.interrupt()
        self._closed = True
        logger.debug(f"Agent {self.session_key} closed")

    async def _chat(self, messages: list[dict[str, Any]]) -> LLMResponse:
        """调用 LLM。请求作为独立任务运行，interrupt() 取消它时抛出 TurnInterrupted。"""
        self._check_interrupted()
        self._chat_task = asyncio.ensure_future(self.provider.chat(
            messages=messages,
            tools=self.tools.get_definitions(),
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        ))
        try:
            return await self._chat_task
        except asyncio.CancelledError:
            if self._interrupted:
                raise TurnInterrupted() from None
            raise
        finally:
            self._chat_task = None

    def _check_interrupted(self) -> None:
        if self._interrupted:
            raise TurnInterrupted()

    def _commit(self, messages: list[dict[str, Any]]) -> None:
        # 第一条是系统提示词，每轮重新生成
        self.history = messages[1:]

    def _trimmed_history(self) -> list[dict[str, Any]]:
        """保留最近的消息，并保证历史从一条用户消息开始。"""
        history = self.history[-self.max_history_messages:]
        while history and history[0].get("role") != "user":
            history = history[1:]
        return history
