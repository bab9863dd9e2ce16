"""
适配器基类模块 - 定义所有机器人账号连接的统一接口。

每个机器人账号（一个 Telegram Bot、一个 Slack App、一个飞书应用）在运行时
对应一个 BaseChannel 子类实例。路由器和连接管理器只通过本模块定义的接口
与它们交互，不关心具体平台的协议细节。

【核心抽象方法】
- start(): 连接平台，握手成功后返回；消息接收在后台任务中进行
- stop(): 断开连接并释放资源
- send(): 向平台发送一条文本（失败时抛出异常，由上层负责重试）

【公共能力】
- is_private(): 判断入站消息是否为私聊（只有私聊会进入会话）
- is_allowed(): 基于白名单的权限控制
- _set_state(): 向连接管理器报告连接状态变化
- _handle_message(): 消息预处理与发布（权限检查 → 构造 InboundMessage → 发布到总线）

【连接状态】
适配器用 ConnectionState 报告底层连接的粗粒度状态（0~4，与各平台 SDK 的
机器人状态码一致），连接管理器再把它折算成面向用户的 BotStatus。

【Java 开发者类比】
- BaseChannel 相当于 Java 的 abstract class + interface
- _handle_message() 相当于 Template Method 模式中的模板方法
- set_state_listener() 相当于注册一个 Observer
"""

from abc import ABC, abstractmethod
from enum import Enum, IntEnum
from typing import Any, Callable

from loguru import logger

from hakimi.bus.events import InboundMessage, OutboundMessage
from hakimi.bus.queue import MessageBus
from hakimi.config.schema import BotAccountConfig


class ConnectionState(IntEnum):
    """底层连接状态码。"""
    OFFLINE = 0
    ONLINE = 1
    CONNECT = 2
    DISCONNECT = 3
    RECONNECT = 4


class BotStatus(str, Enum):
    """面向用户展示的机器人账号状态。"""
    CONNECTING = "connecting"
    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"


# 连接状态 → 展示状态。ERROR 只在整体启动失败时由连接管理器设置，不会由运行时事件产生
STATE_TO_STATUS: dict[ConnectionState, BotStatus] = {
    ConnectionState.ONLINE: BotStatus.ACTIVE,
    ConnectionState.CONNECT: BotStatus.CONNECTING,
    ConnectionState.RECONNECT: BotStatus.CONNECTING,
    ConnectionState.OFFLINE: BotStatus.INACTIVE,
    ConnectionState.DISCONNECT: BotStatus.INACTIVE,
}


StateListener = Callable[[str, ConnectionState], None]


class BaseChannel(ABC):
    """
    机器人账号连接的抽象基类。

    属性:
        name: 平台标识（"telegram"、"slack"、"feishu"），子类覆盖
        account: 原始账号配置
        config: 按平台校验后的类型化配置（TelegramAccount 等）
        bus: 入站消息总线
        key: 账号键，在连接管理器中唯一
        self_id: 机器人在平台上的 ID，连接成功后由子类填写
        display_name: 机器人在平台上的名字，连接成功后由子类填写
    """

    name: str = "base"

    def __init__(self, account: BotAccountConfig, bus: MessageBus, key: str):
        self.account = account
        self.config: Any = account.typed()
        self.bus = bus
        self.key = key
        self.self_id: str | None = None
        self.display_name: str | None = None
        self._running = False
        self._state = ConnectionState.OFFLINE
        self._state_listener: StateListener | None = None

    @abstractmethod
    async def start(self) -> None:
        """
        连接平台。

        必须在连接真正可用（握手完成、拿到 self_id）之后才返回，
        连接失败时抛出异常。消息的持续接收放在后台任务中，不阻塞调用方。
        """

    @abstractmethod
    async def stop(self) -> None:
        """断开连接并取消所有后台任务。"""

    @abstractmethod
    async def send(self, msg: OutboundMessage) -> None:
        """
        发送一条消息到平台。

        平台特有的格式转换（如 Markdown → Telegram HTML）在这里完成。
        发送失败时直接抛出异常，重试由路由器的 send_with_retry 负责。
        """

    async def reconnect(self) -> None:
        """重新建立连接。默认实现为先停止再启动，失败时抛出异常。"""
        await self.stop()
        await self.start()

    def is_private(self, msg: InboundMessage) -> bool:
        """判断消息是否来自私聊。默认以是否带群组 ID 区分。"""
        return not msg.guild_id

    def is_allowed(self, sender_id: str) -> bool:
        """
        检查发送者是否有权限使用该机器人。

        白名单为空时允许所有人；支持 "id|username" 形式的复合 ID 逐段匹配。
        """
        allow_list = getattr(self.config, "allow_from", [])
        if not allow_list:
            return True

        sender_str = str(sender_id)
        if sender_str in allow_list:
            return True
        if "|" in sender_str:
            for part in sender_str.split("|"):
                if part and part in allow_list:
                    return True
        return False

    # ------------------------------------------------------------------
    # 状态报告
    # ------------------------------------------------------------------

    def set_state_listener(self, listener: StateListener | None) -> None:
        """注册连接状态监听器（由 ChannelManager 调用）。"""
        self._state_listener = listener

    def _set_state(self, state: ConnectionState) -> None:
        """更新连接状态并通知监听器。"""
        self._state = state
        if self._state_listener:
            self._state_listener(self.key, state)

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # 入站消息
    # ------------------------------------------------------------------

    def _build_message(
        self,
        sender_id: str,
        chat_id: str,
        content: str,
        guild_id: str | None = None,
        media: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
        allow_id: str | None = None,
    ) -> InboundMessage | None:
        """
        构造标准化的入站消息。发送者不在白名单时返回 None。

        参数:
            sender_id: 发送者的平台用户 ID
            chat_id: 回复目标（会话/频道 ID）
            content: 消息文本
            guild_id: 群组 ID，私聊时为 None
            media: 媒体附件引用
            metadata: 平台特有的元数据
            allow_id: 用于白名单匹配的 ID（默认同 sender_id，可带 "|username"）
        """
        if not self.is_allowed(allow_id or sender_id):
            logger.warning(
                f"Access denied for sender {allow_id or sender_id} on bot {self.key}. "
                f"Add them to allowFrom in the account config to grant access."
            )
            return None

        return InboundMessage(
            platform=self.name,
            account=self.key,
            bot_id=self.self_id or self.key,
            user_id=str(sender_id),
            chat_id=str(chat_id),
            content=content,
            guild_id=guild_id,
            media=media or [],
            metadata=metadata or {},
        )

    async def _handle_message(
        self,
        sender_id: str,
        chat_id: str,
        content: str,
        guild_id: str | None = None,
        media: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
        allow_id: str | None = None,
    ) -> None:
        """处理平台推送的消息：构造 InboundMessage 并发布到总线。"""
        msg = self._build_message(sender_id, chat_id, content, guild_id, media, metadata, allow_id)
        if msg:
            await self.bus.publish_inbound(msg)
