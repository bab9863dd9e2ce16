"""
会话路由器 - 把所有机器人账号收到的私聊消息分发到各自的长期会话。

处理流程：
  适配器 → MessageBus → 消费任务 → handle_message()
    1. 私聊过滤：群聊消息直接丢弃（判定规则由各平台适配器的 is_private() 决定）
    2. 会话定位：key = "platform-botId-userId"，缓存未命中则新建会话
    3. 通知上层：on_session_start（仅新会话）→ on_message
    4. 提交给 TurnSerializer（独立任务，不阻塞消费循环）

会话的回复通过创建时绑定的发送函数送回原始账号，发送失败按
min(3s × n, 30s) 退避重试，最多 10 次，耗尽后只记日志，不向上抛出。

空闲会话由 SessionCache 按滑动 TTL 淘汰，淘汰时关闭其 Agent 并通知 on_session_end。

【Java 开发者类比】
- ChatRouter 相当于一个 Facade，组合了 SessionCache、TurnSerializer 和 ChannelManager
- _consume_inbound() 相当于 @KafkaListener 的消费循环
"""

import asyncio
from typing import Any, Awaitable, Callable

from loguru import logger

from hakimi.agent.base import AgentIdentity, AgentRuntime
from hakimi.bus.events import InboundMessage, OutboundMessage
from hakimi.bus.queue import MessageBus
from hakimi.channels.base import BaseChannel
from hakimi.channels.manager import BotRecord, ChannelFactory, ChannelManager, StartResult
from hakimi.channels.registry import create_channel
from hakimi.config.schema import BotAccountConfig, Config
from hakimi.session.cache import SessionCache
from hakimi.session.turn import ChatSession, TurnSerializer


class ChatRouter:
    """
    会话路由器。

    参数:
        config: 根配置（agent_name、bot_accounts、router 参数）
        runtime: Agent 运行时
        on_message: 每条进入会话的消息 (session_key, text)
        on_session_start: 新会话创建 (ChatSession)
        on_session_end: 会话被淘汰 (session_key)
        on_bot_status_change: 任一账号状态变化 (list[BotRecord])
        on_log: 面向 UI 的日志行
        on_reload: Agent 请求重新加载配置
        channel_factory: 适配器工厂，测试时可替换
    """

    def __init__(
        self,
        config: Config,
        runtime: AgentRuntime,
        on_message: Callable[[str, str], None],
        on_session_start: Callable[[ChatSession], None],
        on_session_end: Callable[[str], None],
        on_bot_status_change: Callable[[list[BotRecord]], None] | None = None,
        on_log: Callable[[str], None] | None = None,
        on_reload: Callable[[], Any] | None = None,
        channel_factory: ChannelFactory | None = None,
    ):
        self.config = config
        self.settings = config.router
        self.runtime = runtime
        self.on_message = on_message
        self.on_session_start = on_session_start
        self.on_session_end = on_session_end
        self.on_bot_status_change = on_bot_status_change
        self.on_log = on_log
        self.on_reload = on_reload
        self._channel_factory = channel_factory or create_channel

        self.accounts: list[BotAccountConfig] = list(config.bot_accounts)
        self.bus: MessageBus | None = None
        self.channels: ChannelManager | None = None
        self.sessions: SessionCache[ChatSession] | None = None
        self.turns: TurnSerializer | None = None

        self._running = False
        self._consumer_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._close_tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # 生命周期
    # ------------------------------------------------------------------

    async def start(self, accounts: list[BotAccountConfig] | None = None) -> StartResult:
        """
        启动路由器。

        没有配置账号、或账号在重试后仍无法启动时返回 success=False，不抛异常。
        """
        if self._running:
            return StartResult(success=True)

        if accounts is not None:
            self.accounts = list(accounts)
        if not self.accounts:
            self._log("No bot accounts configured", level="warning")
            return StartResult(success=False, error="No bot accounts configured")

        self.bus = MessageBus()
        self.sessions = SessionCache(on_expire=self._on_session_expired, ttl=self.settings.session_ttl_s)
        self.turns = TurnSerializer(
            self.runtime,
            AgentIdentity(name=self.config.agent_name, is_terminal=False),
            on_log=self.on_log,
            on_reload=self.on_reload,
        )
        self.channels = ChannelManager(
            self.accounts,
            self.bus,
            settings=self.settings,
            on_status_change=self._on_status_change,
            on_log=self.on_log,
            channel_factory=self._channel_factory,
        )

        self._running = True
        self._consumer_task = asyncio.create_task(self._consume_inbound())

        self._log(f"Starting {len(self.accounts)} bot account(s)...")
        result = await self.channels.start_all()
        if not result.success:
            self._log(f"Router failed to start: {result.error}", level="error")
            await self._teardown(stop_channels=False)
            return result

        self._log("Router started")
        return result

    async def stop(self) -> None:
        """停止路由器：淘汰所有会话（关闭 Agent），断开所有账号。可重复调用。"""
        if not self._running:
            return
        await self._teardown()
        self._log("Router stopped")

    async def restart(self, accounts: list[BotAccountConfig] | None = None) -> StartResult:
        """先停止再以新的（或原来的）账号列表启动。"""
        await self.stop()
        return await self.start(accounts)

    async def reload(self, config: Config) -> StartResult:
        """换用新配置（名字、账号、路由参数）重启。"""
        await self.stop()
        self.config = config
        self.settings = config.router
        return await self.start(list(config.bot_accounts))

    async def _teardown(self, stop_channels: bool = True) -> None:
        self._running = False

        if self._consumer_task:
            self._consumer_task.cancel()
            try:
                await self._consumer_task
            except asyncio.CancelledError:
                pass
            self._consumer_task = None

        if self.sessions:
            self.sessions.clear()
        if self._close_tasks:
            await asyncio.gather(*self._close_tasks, return_exceptions=True)

        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        # 启动失败时连接已由 start_all 停止，记录保持 error
        if self.channels and stop_channels:
            await self.channels.stop_all()

    # ------------------------------------------------------------------
    # 入站消息
    # ------------------------------------------------------------------

    async def _consume_inbound(self) -> None:
        """入站消费循环，1 秒超时轮询以便及时响应停止。"""
        while self._running:
            try:
                msg = await asyncio.wait_for(self.bus.consume_inbound(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            try:
                await self.handle_message(msg)
            except Exception as e:
                logger.error(f"Error routing message from {msg.platform}: {e}")

    async def handle_message(self, msg: InboundMessage) -> ChatSession | None:
        """
        路由一条入站消息。

        返回:
            消息进入的会话；被过滤（群聊、账号未知）时返回 None
        """
        channel = self.channels.get_channel(msg.account) if self.channels else None
        if channel is None:
            logger.warning(f"Message from unknown bot account {msg.account}, dropped")
            return None

        if not channel.is_private(msg):
            logger.debug(f"Ignoring non-private message from {msg.platform} chat {msg.chat_id}")
            return None

        key = msg.session_key
        session = self.sessions.get(key)
        if session is None:
            session = ChatSession(
                session_id=key,
                platform=msg.platform,
                bot_id=msg.bot_id,
                user_id=msg.user_id,
                account=msg.account,
                send=self._bind_send(channel, msg),
            )
            self.sessions.set(key, session)
            self._log(f"New session {key}")
            self.on_session_start(session)

        self.on_message(key, msg.content)

        task = asyncio.create_task(self.turns.submit(session, msg.content))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return session

    def _bind_send(self, channel: BaseChannel, msg: InboundMessage) -> Callable[[str], Awaitable[bool]]:
        """绑定会话的发送函数：回复总是送回消息进入的那个账号和对话。"""
        async def send(text: str) -> bool:
            outbound = OutboundMessage(
                platform=msg.platform,
                chat_id=msg.chat_id,
                content=text,
                metadata=dict(msg.metadata),
            )
            return await self.send_with_retry(
                lambda: channel.send(outbound), self.settings.send_max_attempts
            )
        return send

    async def send_with_retry(
        self,
        fn: Callable[[], Awaitable[Any]],
        max_attempts: int = 10,
    ) -> bool:
        """
        调用 fn，失败时按 min(base × n, cap) 退避重试。

        返回:
            是否最终发送成功（从不抛出异常）
        """
        last_error: Exception | None = None
        for attempt in range(1, max_attempts + 1):
            try:
                await fn()
                return True
            except Exception as e:
                last_error = e
                if attempt < max_attempts:
                    delay = min(self.settings.send_retry_base_s * attempt, self.settings.send_retry_max_s)
                    logger.warning(f"Send failed ({attempt}/{max_attempts}): {e}, retrying in {delay:g}s")
                    await asyncio.sleep(delay)
        self._log(f"Send failed after {max_attempts} retries: {last_error}", level="error")
        return False

    # ------------------------------------------------------------------
    # 回调
    # ------------------------------------------------------------------

    def _on_session_expired(self, key: str, session: ChatSession) -> None:
        """缓存淘汰钩子：异步关闭 Agent，并通知上层会话结束。"""
        task = asyncio.create_task(self.turns.close(session))
        self._close_tasks.add(task)
        task.add_done_callback(self._close_tasks.discard)
        self._log(f"Session {key} ended")
        self.on_session_end(key)

    def _on_status_change(self, records: list[BotRecord]) -> None:
        if self.on_bot_status_change:
            self.on_bot_status_change(records)

    def _log(self, message: str, level: str = "info") -> None:
        logger.log(level.upper(), message)
        if self.on_log:
            self.on_log(message)

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    @property
    def active_sessions(self) -> int:
        return self.sessions.size if self.sessions else 0

    @property
    def bot_statuses(self) -> list[BotRecord]:
        return self.channels.snapshot() if self.channels else []

    def get_session(self, key: str) -> ChatSession | None:
        """查找会话。和收到消息一样算一次活动，会刷新过期时间。"""
        if not self.sessions:
            return None
        return self.sessions.get(key)
