"""
Slack 适配器 - 基于 Socket Mode（WebSocket）。

Socket Mode 由机器人主动连接 Slack，无需公网回调地址。需要两个令牌：
- token（xapp-...）：App-Level Token，用于建立 Socket Mode 连接
- bot_token（xoxb-...）：Bot Token，用于调用 Web API 发送消息

【连接状态】
- start() 在 auth_test 成功且 WebSocket 建立后返回，上报 ONLINE
- SDK 自带的自动重连被关闭，由后台监控任务检测断线并上报 DISCONNECT，
  交给 ChannelManager 统一按固定延迟重连

【私聊判定】
Slack 的私信事件没有 guild 概念，频道类型为 "im"，频道 ID 以 "D" 开头。
非 im 频道的消息带上 guild_id；is_private() 额外把 D 开头的频道视为私聊。
"""

import asyncio
import re

from loguru import logger
from slack_sdk.socket_mode.request import SocketModeRequest
from slack_sdk.socket_mode.response import SocketModeResponse
from slack_sdk.socket_mode.websockets import SocketModeClient
from slack_sdk.web.async_client import AsyncWebClient

from hakimi.bus.events import InboundMessage, OutboundMessage
from hakimi.bus.queue import MessageBus
from hakimi.channels.base import BaseChannel, ConnectionState
from hakimi.config.schema import BotAccountConfig, SlackAccount

HEALTH_CHECK_INTERVAL_S = 5.0


class SlackChannel(BaseChannel):
    """
    Slack 机器人账号。

    属性:
        config: SlackAccount 配置（token、bot_token）
        _web_client: Web API 异步客户端（发送消息）
        _socket_client: Socket Mode 客户端（接收事件）
        _monitor_task: 连接健康检查任务
    """

    name = "slack"

    def __init__(self, account: BotAccountConfig, bus: MessageBus, key: str):
        super().__init__(account, bus, key)
        self.config: SlackAccount = self.config
        self._web_client: AsyncWebClient | None = None
        self._socket_client: SocketModeClient | None = None
        self._monitor_task: asyncio.Task | None = None

    async def start(self) -> None:
        """建立 Socket Mode 连接。令牌缺失或握手失败时抛出异常。"""
        if not self.config.bot_token or not self.config.token:
            raise ValueError("Slack app token (xapp-) and bot token (xoxb-) are both required")

        self._set_state(ConnectionState.CONNECT)
        self._web_client = AsyncWebClient(token=self.config.bot_token)
        self._socket_client = SocketModeClient(
            app_token=self.config.token,
            web_client=self._web_client,
            auto_reconnect_enabled=False,
        )
        self._socket_client.socket_mode_request_listeners.append(self._on_socket_request)

        logger.info(f"Starting Slack Socket Mode client {self.key}...")
        try:
            auth = await self._web_client.auth_test()
            await self._socket_client.connect()
        except Exception:
            await self._close_socket()
            self._set_state(ConnectionState.OFFLINE)
            raise

        self.self_id = auth.get("user_id")
        self.display_name = auth.get("user")
        self._running = True
        logger.info(f"Slack bot connected as {self.self_id}")
        self._monitor_task = asyncio.create_task(self._monitor_connection())
        self._set_state(ConnectionState.ONLINE)

    async def stop(self) -> None:
        """关闭 WebSocket 连接。"""
        self._running = False
        if self._monitor_task:
            self._monitor_task.cancel()
            self._monitor_task = None
        await self._close_socket()
        self._set_state(ConnectionState.OFFLINE)

    async def _close_socket(self) -> None:
        client, self._socket_client = self._socket_client, None
        if client is None:
            return
        try:
            await client.close()
        except Exception as e:
            logger.warning(f"Slack socket close failed: {e}")

    async def _monitor_connection(self) -> None:
        """定期检查 WebSocket 是否仍然连接，断开时上报 DISCONNECT。"""
        try:
            while self._running and self._socket_client:
                await asyncio.sleep(HEALTH_CHECK_INTERVAL_S)
                if self._socket_client and not await self._socket_client.is_connected():
                    logger.warning(f"Slack socket for {self.key} lost connection")
                    self._monitor_task = None
                    self._set_state(ConnectionState.DISCONNECT)
                    return
        except asyncio.CancelledError:
            pass

    async def send(self, msg: OutboundMessage) -> None:
        """通过 Web API 发送消息。频道消息回复在线程里，私信直接回复。"""
        if not self._web_client:
            raise RuntimeError(f"Slack bot {self.key} not running")

        slack_meta = msg.metadata.get("slack", {}) if msg.metadata else {}
        thread_ts = slack_meta.get("thread_ts")
        use_thread = thread_ts and slack_meta.get("channel_type") != "im"
        await self._web_client.chat_postMessage(
            channel=msg.chat_id,
            text=msg.content or "",
            thread_ts=thread_ts if use_thread else None,
        )

    def is_private(self, msg: InboundMessage) -> bool:
        return not msg.guild_id or msg.chat_id.startswith("D")

    async def _on_socket_request(self, client: SocketModeClient, req: SocketModeRequest) -> None:
        """Socket Mode 事件入口。先 ACK（Slack 要求 3 秒内确认），再解析消息。"""
        if req.type != "events_api":
            return

        await client.send_socket_mode_response(SocketModeResponse(envelope_id=req.envelope_id))

        event = (req.payload or {}).get("event") or {}
        if event.get("type") != "message":
            return
        # 带 subtype 的是机器人或系统消息
        if event.get("subtype"):
            return

        sender_id = event.get("user")
        chat_id = event.get("channel")
        if not sender_id or not chat_id or sender_id == self.self_id:
            return

        channel_type = event.get("channel_type") or ""
        text = self._strip_bot_mention(event.get("text") or "")
        logger.debug(f"Slack message from {sender_id} in {chat_id} ({channel_type}): {text[:80]}")

        await self._handle_message(
            sender_id=sender_id,
            chat_id=chat_id,
            content=text,
            guild_id=None if channel_type == "im" else chat_id,
            metadata={
                "slack": {
                    "thread_ts": event.get("thread_ts") or event.get("ts"),
                    "channel_type": channel_type,
                }
            },
        )

    def _strip_bot_mention(self, text: str) -> str:
        """去除 <@BOT_ID> 形式的提及。"""
        if not text or not self.self_id:
            return text
        return re.sub(rf"<@{re.escape(self.self_id)}>\s*", "", text).strip()
