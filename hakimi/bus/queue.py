"""
异步消息队列模块 - 适配器与路由器之间的入站通道。

适配器（Telegram/Slack/飞书）在各自的回调里收到消息后调用 publish_inbound()，
路由器的消费任务通过 consume_inbound() 逐条取出并分发到会话。

入站流程：
  平台适配器 → publish_inbound() → inbound 队列 → consume_inbound() → ChatRouter

出站方向不经过总线：每个会话在创建时就绑定了原始适配器的发送函数，
回复直接送回收到消息的那个机器人账号，不需要再按名称查找渠道。

【Java 开发者类比】
- asyncio.Queue 类似于 Java 的 LinkedBlockingQueue
- publish/consume 模式类似于 BlockingQueue.put()/take()
"""

import asyncio

from hakimi.bus.events import InboundMessage


class MessageBus:
    """
    异步入站消息总线。

    属性:
        inbound: 入站消息异步队列（适配器 → 路由器）
    """

    def __init__(self):
        self.inbound: asyncio.Queue[InboundMessage] = asyncio.Queue()

    async def publish_inbound(self, msg: InboundMessage) -> None:
        """发布入站消息（适配器 → 路由器）。"""
        await self.inbound.put(msg)

    def publish_inbound_nowait(self, msg: InboundMessage) -> None:
        """
        非阻塞地发布入站消息。

        供运行在事件循环外部线程里的 SDK（如飞书 WebSocket 客户端）通过
        loop.call_soon_threadsafe() 投递消息使用。
        """
        self.inbound.put_nowait(msg)

    async def consume_inbound(self) -> InboundMessage:
        """
        消费下一条入站消息（阻塞等待）。

        返回:
            下一条入站消息
        """
        return await self.inbound.get()

    @property
    def inbound_size(self) -> int:
        """待处理的入站消息数量。"""
        return self.inbound.qsize()
