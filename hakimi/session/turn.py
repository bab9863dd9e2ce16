"""
回合串行器 - 保证每个会话同一时刻最多只有一轮 Agent 对话在运行。

处理规则：
- 会话空闲时：标记 processing，懒创建 Agent，处理消息，然后把处理期间
  到达的待处理消息逐条取出继续处理，最后清除 processing
- 会话忙碌时：新消息写入单槽"信箱"（pending_message，后到的覆盖先到的），
  打断当前一轮后立即返回

因此用户在 Agent 思考时连发 B、C 两条消息，最终只会处理 C
（"最新意图优先"，这是有意的丢弃策略，不是 FIFO）。

【Java 开发者类比】
- processing 标志相当于一个非阻塞的 tryLock()
- pending_message 相当于容量为 1、写入即覆盖的 mailbox
"""

import inspect
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable

from loguru import logger

from hakimi.agent.base import (
    AgentHooks,
    AgentIdentity,
    AgentInstance,
    AgentRuntime,
    ApprovalRequest,
    ContentChunk,
    TurnInterrupted,
)

NO_SEND_REPROMPT = "You did not send a message to the user. Please use the send_message tool to reply."
NO_SEND_APOLOGY = "Sorry, I encountered an error processing your message."


@dataclass
class ChatSession:
    """
    一个用户与一个机器人账号之间的长期会话。

    属性:
        session_id: "platform-botId-userId"
        platform: 平台标识
        bot_id: 机器人在平台上的 ID
        user_id: 用户在平台上的 ID
        account: 消息进入时所在的机器人账号键
        send: 绑定到原始账号的发送函数（已包装重试，返回是否成功）
        processing: 是否有一轮对话正在进行
        pending_message: 单槽信箱
        agent: 懒创建的 Agent 实例
    """
    session_id: str
    platform: str
    bot_id: str
    user_id: str
    account: str
    send: Callable[[str], Awaitable[bool]]
    processing: bool = False
    pending_message: str | None = None
    agent: AgentInstance | None = None
    created_at: datetime = field(default_factory=datetime.now)
    last_activity: datetime = field(default_factory=datetime.now)
    closed: bool = False
    # 当前这条消息的处理过程中 Agent 是否调用过 send_message
    sent_reply: bool = False
    reload_requested: bool = False


class TurnSerializer:
    """
    把消息串行地交给会话的 Agent 处理。

    参数:
        runtime: Agent 运行时
        identity: Agent 身份（名字、是否终端）
        on_log: 面向 UI 的日志回调
        on_reload: Agent 请求重新加载配置时，在该消息处理完后调用（可返回 awaitable）
        max_send_reprompts: Agent 没有调用 send_message 时最多追问几次
    """

    def __init__(
        self,
        runtime: AgentRuntime,
        identity: AgentIdentity,
        on_log: Callable[[str], None] | None = None,
        on_reload: Callable[[], Any] | None = None,
        max_send_reprompts: int = 3,
    ):
        self.runtime = runtime
        self.identity = identity
        self.on_log = on_log
        self.on_reload = on_reload
        self.max_send_reprompts = max_send_reprompts

    async def submit(self, session: ChatSession, content: str) -> None:
        """提交一条消息。会话忙碌时写入信箱并打断当前一轮后立即返回。"""
        session.last_activity = datetime.now()

        if session.processing:
            session.pending_message = content
            if session.agent:
                self._log(f"Interrupting session {session.session_id} for a newer message")
                session.agent.interrupt()
            return

        # 必须在第一个 await 之前置位
        session.processing = True
        try:
            await self._run_message(session, content)
            while session.pending_message is not None and not session.closed:
                next_message = session.pending_message
                session.pending_message = None
                await self._run_message(session, next_message)
        finally:
            session.processing = False

    async def close(self, session: ChatSession) -> None:
        """打断并关闭会话的 Agent。可重复调用。"""
        session.closed = True
        session.pending_message = None
        agent = session.agent
        session.agent = None
        if agent is None:
            return
        try:
            agent.interrupt()
            await agent.close()
        except Exception as e:
            logger.warning(f"Error closing agent for {session.session_id}: {e}")

    # ------------------------------------------------------------------
    # 单条消息
    # ------------------------------------------------------------------

    async def _run_message(self, session: ChatSession, content: str) -> None:
        if session.closed:
            return
        session.sent_reply = False
        session.reload_requested = False

        try:
            agent = await self._ensure_agent(session)
            await self._run_turn(session, agent, f"User message: {content}")

            reprompts = 0
            while not session.sent_reply and reprompts < self.max_send_reprompts:
                reprompts += 1
                logger.warning(
                    f"Agent did not reply in {session.session_id}, reprompting ({reprompts}/{self.max_send_reprompts})"
                )
                await self._run_turn(session, agent, NO_SEND_REPROMPT)

            if not session.sent_reply:
                await session.send(NO_SEND_APOLOGY)
        except TurnInterrupted:
            logger.debug(f"Turn interrupted in {session.session_id}")
        except Exception as e:
            logger.error(f"Error processing message in {session.session_id}: {e}")
            self._log(f"Error in session {session.session_id}: {e}")
            await session.send(f"Sorry, an error occurred: {e}")

        if session.reload_requested and self.on_reload:
            session.reload_requested = False
            self._log("Agent requested a configuration reload")
            try:
                result = self.on_reload()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Reload requested by {session.session_id} failed: {e}")
                self._log(f"Configuration reload failed: {e}")

    async def _run_turn(self, session: ChatSession, agent: AgentInstance, prompt: str) -> None:
        async for event in agent.run(prompt):
            if isinstance(event, ApprovalRequest):
                logger.debug(f"Auto-approving {event.tool_name} in {session.session_id}")
                await agent.approve(event.id)
            elif isinstance(event, ContentChunk):
                logger.debug(f"[{session.session_id}] {event.text}")

    async def _ensure_agent(self, session: ChatSession) -> AgentInstance:
        if session.agent is None:
            session.agent = await self.runtime.create_instance(
                session.session_id, self.identity, self._hooks(session)
            )
            logger.info(f"Created agent for session {session.session_id}")
        return session.agent

    def _hooks(self, session: ChatSession) -> AgentHooks:
        async def on_send(text: str) -> bool:
            session.sent_reply = True
            return await session.send(text)

        def on_reload() -> None:
            session.reload_requested = True

        return AgentHooks(on_send=on_send, on_reload=on_reload)

    def _log(self, message: str) -> None:
        logger.info(message)
        if self.on_log:
            self.on_log(message)
