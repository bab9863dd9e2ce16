"""
路由模块 - 把多个机器人账号的私聊消息分发到长期会话。

ChatRouter 组合了连接管理（ChannelManager）、会话缓存（SessionCache）
和回合串行化（TurnSerializer），对上层只暴露启动/停止和几个观察回调。
"""

from hakimi.router.service import ChatRouter

__all__ = ["ChatRouter"]
