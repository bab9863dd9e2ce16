"""
Agent 运行时接口 - 会话层与具体 Agent 实现之间的契约。

会话层（TurnSerializer）只依赖本模块定义的抽象：
- AgentRuntime.create_instance(): 为一个会话创建一个长期存活的 Agent 实例
- AgentInstance.run(): 运行一轮对话，以异步迭代器的形式产出事件
- AgentInstance.interrupt(): 打断正在进行的一轮（run 的迭代器随后抛出 TurnInterrupted）
- AgentInstance.close(): 释放实例

Agent 给用户的回复不通过 run() 的返回值传递，而是由 Agent 调用 send_message
工具触发 AgentHooks.on_send，这样一轮对话里可以发出多条短消息。

【Java 开发者类比】
- AgentRuntime 相当于工厂接口（Factory），AgentInstance 相当于有状态的 Prototype Bean
- run() 返回的 AsyncIterator 类似于 Reactor 的 Flux<Event>
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable


@dataclass
class ContentChunk:
    """Agent 产出的一段文本（仅用于日志，不会直接发给用户）。"""
    text: str


@dataclass
class ApprovalRequest:
    """Agent 在执行某个工具前请求批准。"""
    id: str
    tool_name: str
    arguments: dict[str, Any] = field(default_factory=dict)


AgentEvent = ContentChunk | ApprovalRequest


class TurnInterrupted(Exception):
    """当前一轮被 interrupt() 打断。"""


@dataclass
class AgentIdentity:
    """
    Agent 的身份信息，用于构造系统提示词。

    属性:
        name: 对用户展示的名字
        is_terminal: 是否运行在本地终端（否则运行在 IM 平台上）
    """
    name: str = "Hakimi"
    is_terminal: bool = False


@dataclass
class AgentHooks:
    """
    Agent 回调会话层的钩子。

    属性:
        on_send: 发送一条消息给用户，返回是否发送成功
        on_reload: 请求在本轮结束后重新加载配置
    """
    on_send: Callable[[str], Awaitable[bool]]
    on_reload: Callable[[], None] | None = None


class AgentInstance(ABC):
    """单个会话独占的 Agent 实例，保存该会话的对话历史。"""

    @abstractmethod
    def run(self, prompt: str) -> AsyncIterator[AgentEvent]:
        """运行一轮对话。被打断时迭代器抛出 TurnInterrupted。"""

    @abstractmethod
    async def approve(self, request_id: str) -> None:
        """批准一个 ApprovalRequest。"""

    @abstractmethod
    def interrupt(self) -> None:
        """打断正在进行的一轮，不等待其结束。没有进行中的一轮时无效果。"""

    @abstractmethod
    async def close(self) -> None:
        """释放实例。重复调用无副作用。"""


class AgentRuntime(ABC):
    """Agent 实例工厂。"""

    @abstractmethod
    async def create_instance(
        self,
        session_key: str,
        identity: AgentIdentity,
        hooks: AgentHooks,
    ) -> AgentInstance:
        """为指定会话创建 Agent 实例。"""
