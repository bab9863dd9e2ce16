"""
适配器模块 - 各 IM 平台机器人账号的接入层。

- BaseChannel: 所有平台适配器的抽象基类
- ChannelManager: 多账号连接的启动、重试与重连
- ADAPTERS: 平台注册表（延迟导入具体实现）
"""

from hakimi.channels.base import BaseChannel, BotStatus, ConnectionState
from hakimi.channels.manager import BotRecord, ChannelManager, StartResult
from hakimi.channels.registry import ADAPTERS, create_channel

__all__ = [
    "BaseChannel",
    "BotStatus",
    "ConnectionState",
    "BotRecord",
    "ChannelManager",
    "StartResult",
    "ADAPTERS",
    "create_channel",
]
