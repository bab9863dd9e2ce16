"""
消息总线模块 - 平台适配器与会话路由器之间的解耦通道。

消息流向：
  用户消息 → 适配器(Channel) → InboundMessage → 消息总线 → ChatRouter
  Agent 回复 → 会话绑定的发送函数 → 适配器(Channel) → 用户
"""

from hakimi.bus.events import InboundMessage, OutboundMessage
from hakimi.bus.queue import MessageBus

__all__ = ["MessageBus", "InboundMessage", "OutboundMessage"]
