"""
会话模块 - 会话缓存与回合串行化。

- SessionCache: 带滑动过期时间的内存缓存，空闲会话到期自动淘汰
- ChatSession: 一个用户与一个机器人账号之间的会话状态
- TurnSerializer: 保证每个会话同一时刻只有一轮对话在运行

会话只保存在内存中，进程重启后重新开始。
"""

from hakimi.session.cache import SessionCache
from hakimi.session.turn import ChatSession, TurnSerializer

__all__ = ["SessionCache", "ChatSession", "TurnSerializer"]
