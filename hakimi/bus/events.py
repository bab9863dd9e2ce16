"""
消息事件类型定义模块 - 定义消息总线中传输的数据结构。

本模块定义了两个核心数据类：
- InboundMessage：入站消息（从机器人账号到路由器）
- OutboundMessage：出站消息（从会话到机器人账号）

所有平台适配器都把各自的原生消息格式转换成 InboundMessage，
路由器只认识这一种统一结构，从而与具体平台的协议细节完全解耦。

【Java 开发者类比】
- 使用 Python 的 @dataclass 装饰器，等价于 Java 的 record 类或 Lombok 的 @Data
- field(default_factory=...) 等价于 Java 中在构造器里 new ArrayList<>()
- @property 等价于 Java 的 getter 方法

【设计要点】
- session_key 由 平台 + 机器人 ID + 用户 ID 组成，同一个用户在同一个机器人上
  的私聊始终落到同一个会话；同一个用户和两个不同机器人聊天则是两个会话
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass
class InboundMessage:
    """
    入站消息 - 某个机器人账号收到的一条用户消息。

    属性:
        platform: 平台标识（'telegram'、'slack'、'feishu'）
        account: 收到消息的机器人账号键（对应 ChannelManager 中的连接记录）
        bot_id: 机器人自身在平台上的 ID（selfId）
        user_id: 发送者在平台上的 ID
        chat_id: 回复时使用的会话/频道 ID（私聊时通常就是和用户的对话窗口）
        content: 消息文本
        guild_id: 群组/服务器 ID，私聊时为 None
        timestamp: 消息时间戳，默认为当前时间
        media: 附带的媒体引用列表（图片、文件等）
        metadata: 平台特有的附加数据（如 Slack 的 channel_type、Telegram 的 message_id）
    """

    platform: str           # 来源平台
    account: str            # 机器人账号键
    bot_id: str             # 机器人 ID
    user_id: str            # 发送者 ID
    chat_id: str            # 回复目标
    content: str            # 消息正文
    guild_id: str | None = None                                # 群组 ID（私聊为空）
    timestamp: datetime = field(default_factory=datetime.now)  # 接收时间戳
    media: list[str] = field(default_factory=list)             # 媒体附件引用
    metadata: dict[str, Any] = field(default_factory=dict)     # 平台特有的元数据

    @property
    def session_key(self) -> str:
        """
        生成唯一的会话标识键。

        格式为 "platform-botId-userId"，例如 "telegram-bot1-user1"。

        返回:
            格式化的会话标识字符串
        """
        return f"{self.platform}-{self.bot_id}-{self.user_id}"


@dataclass
class OutboundMessage:
    """
    出站消息 - 要发回某个平台会话的文本。

    属性:
        platform: 目标平台标识
        chat_id: 目标会话 ID
        content: 回复文本内容
        reply_to: 可选的引用消息 ID
        media: 附带的媒体文件引用
        metadata: 平台特有的附加数据（原样从入站消息带回，便于适配器选择线程等）
    """

    platform: str
    chat_id: str
    content: str
    reply_to: str | None = None
    media: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
