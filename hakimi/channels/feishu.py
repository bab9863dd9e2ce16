"""
飞书/Lark 适配器 - 基于 lark-oapi SDK 的 WebSocket 长连接。

架构：
- 接收：lark.ws.Client 在独立 daemon 线程中运行（SDK 的 start() 是阻塞调用），
  收到事件后通过 loop.call_soon_threadsafe 把 InboundMessage 投递到主事件循环的总线
- 发送：通过飞书 Open API 发送交互式卡片（Markdown + 原生表格），
  同步 SDK 调用放在线程池中执行，避免阻塞事件循环

【连接状态】
- start() 启动线程后上报 ONLINE；self_id 为应用的 App ID
- WebSocket 线程意外退出时上报 DISCONNECT，由 ChannelManager 安排重连

【私聊判定】
chat_type 为 "group" 的消息带上 guild_id（群 chat_id）。

前置要求：在飞书开放平台创建应用，启用机器人能力并订阅 im.message.receive_v1 事件。
"""

import asyncio
import json
import re
import threading
from collections import OrderedDict
from typing import Any

import lark_oapi as lark
from lark_oapi.api.im.v1 import CreateMessageRequest, CreateMessageRequestBody, P2ImMessageReceiveV1
from loguru import logger

from hakimi.bus.events import OutboundMessage
from hakimi.bus.queue import MessageBus
from hakimi.channels.base import BaseChannel, ConnectionState
from hakimi.config.schema import BotAccountConfig, FeishuAccount

# 非文本消息的占位文本
MSG_TYPE_MAP = {
    "image": "[image]",
    "audio": "[audio]",
    "file": "[file]",
    "sticker": "[sticker]",
}


class FeishuChannel(BaseChannel):
    """
    飞书机器人账号。

    属性:
        config: FeishuAccount 配置（app_id、app_secret 等）
        _client: lark API 客户端（发送消息）
        _ws_client: WebSocket 客户端（接收事件）
        _ws_thread: WebSocket 运行线程
        _processed_message_ids: 有序去重缓存（飞书可能重复推送事件）
    """

    name = "feishu"

    def __init__(self, account: BotAccountConfig, bus: MessageBus, key: str):
        super().__init__(account, bus, key)
        self.config: FeishuAccount = self.config
        self._client: Any = None
        self._ws_client: Any = None
        self._ws_thread: threading.Thread | None = None
        self._processed_message_ids: OrderedDict[str, None] = OrderedDict()
        self._loop: asyncio.AbstractEventLoop | None = None

    async def start(self) -> None:
        """创建 API 客户端并在后台线程中启动 WebSocket 长连接。"""
        if not self.config.app_id or not self.config.app_secret:
            raise ValueError("Feishu app_id and app_secret not configured")

        self._set_state(ConnectionState.CONNECT)
        self._loop = asyncio.get_running_loop()

        self._client = lark.Client.builder() \
            .app_id(self.config.app_id) \
            .app_secret(self.config.app_secret) \
            .log_level(lark.LogLevel.INFO) \
            .build()

        event_handler = lark.EventDispatcherHandler.builder(
            self.config.encrypt_key or "",
            self.config.verification_token or "",
        ).register_p2_im_message_receive_v1(
            self._on_message_sync
        ).build()

        self._ws_client = lark.ws.Client(
            self.config.app_id,
            self.config.app_secret,
            event_handler=event_handler,
            log_level=lark.LogLevel.INFO,
        )

        self._running = True
        self._ws_thread = threading.Thread(target=self._run_ws, daemon=True)
        self._ws_thread.start()

        self.self_id = self.config.app_id
        self.display_name = self.config.app_id
        logger.info(f"Feishu bot {self.key} started with WebSocket long connection")
        self._set_state(ConnectionState.ONLINE)

    def _run_ws(self) -> None:
        """WebSocket 线程主体。start() 阻塞直到连接结束。"""
        ws_client = self._ws_client
        try:
            ws_client.start()
        except Exception as e:
            logger.warning(f"Feishu WebSocket error on {self.key}: {e}")
        # stop() 之后的正常退出不算掉线
        if self._running and self._ws_client is ws_client and self._loop and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._on_ws_closed)

    def _on_ws_closed(self) -> None:
        if self._running:
            self._running = False
            self._set_state(ConnectionState.DISCONNECT)

    async def stop(self) -> None:
        """停止 WebSocket 客户端。"""
        self._running = False
        ws_client, self._ws_client = self._ws_client, None
        if ws_client and hasattr(ws_client, "stop"):
            try:
                ws_client.stop()
            except Exception as e:
                logger.warning(f"Error stopping Feishu WebSocket client: {e}")
        self._ws_thread = None
        logger.info(f"Feishu bot {self.key} stopped")
        self._set_state(ConnectionState.OFFLINE)

    # ------------------------------------------------------------------
    # 发送
    # ------------------------------------------------------------------

    # Markdown 表格（表头行 + 分隔行 + 数据行）
    _TABLE_RE = re.compile(
        r"((?:^[ \t]*\|.+\|[ \t]*\n)(?:^[ \t]*\|[-:\s|]+\|[ \t]*\n)(?:^[ \t]*\|.+\|[ \t]*\n?)+)",
        re.MULTILINE,
    )

    @staticmethod
    def _parse_md_table(table_text: str) -> dict | None:
        """把 Markdown 表格转换为飞书卡片的原生 table 元素，行数不足时返回 None。"""
        lines = [line.strip() for line in table_text.strip().split("\n") if line.strip()]
        if len(lines) < 3:
            return None

        def split(line: str) -> list[str]:
            return [c.strip() for c in line.strip("|").split("|")]

        headers = split(lines[0])
        rows = [split(line) for line in lines[2:]]
        columns = [
            {"tag": "column", "name": f"c{i}", "display_name": h, "width": "auto"}
            for i, h in enumerate(headers)
        ]
        return {
            "tag": "table",
            "page_size": len(rows) + 1,
            "columns": columns,
            "rows": [{f"c{i}": r[i] if i < len(r) else "" for i in range(len(headers))} for r in rows],
        }

    def _build_card_elements(self, content: str) -> list[dict]:
        """把文本拆成 markdown 与 table 元素列表。"""
        elements, last_end = [], 0
        for m in self._TABLE_RE.finditer(content):
            before = content[last_end:m.start()].strip()
            if before:
                elements.append({"tag": "markdown", "content": before})
            elements.append(self._parse_md_table(m.group(1)) or {"tag": "markdown", "content": m.group(1)})
            last_end = m.end()
        remaining = content[last_end:].strip()
        if remaining:
            elements.append({"tag": "markdown", "content": remaining})
        return elements or [{"tag": "markdown", "content": content}]

    async def send(self, msg: OutboundMessage) -> None:
        """
        以交互式卡片发送消息。

        chat_id 以 "oc_" 开头视为群聊 chat_id，否则视为用户 open_id。
        API 返回失败时抛出 RuntimeError。
        """
        if not self._client:
            raise RuntimeError(f"Feishu bot {self.key} not running")

        receive_id_type = "chat_id" if msg.chat_id.startswith("oc_") else "open_id"
        card = {
            "config": {"wide_screen_mode": True},
            "elements": self._build_card_elements(msg.content),
        }
        request = CreateMessageRequest.builder() \
            .receive_id_type(receive_id_type) \
            .request_body(
                CreateMessageRequestBody.builder()
                .receive_id(msg.chat_id)
                .msg_type("interactive")
                .content(json.dumps(card, ensure_ascii=False))
                .build()
            ).build()

        loop = asyncio.get_running_loop()
        response = await loop.run_in_executor(None, self._client.im.v1.message.create, request)
        if not response.success():
            raise RuntimeError(
                f"Failed to send Feishu message: code={response.code}, "
                f"msg={response.msg}, log_id={response.get_log_id()}"
            )
        logger.debug(f"Feishu message sent to {msg.chat_id}")

    # ------------------------------------------------------------------
    # 接收
    # ------------------------------------------------------------------

    def _on_message_sync(self, data: P2ImMessageReceiveV1) -> None:
        """
        消息接收回调（在 WebSocket 线程中执行）。

        解析完成后通过 call_soon_threadsafe 把消息投递到主事件循环的总线。
        """
        try:
            msg = self._parse_event(data)
        except Exception as e:
            logger.error(f"Error processing Feishu message: {e}")
            return
        if msg and self._loop and self._loop.is_running():
            self._loop.call_soon_threadsafe(self.bus.publish_inbound_nowait, msg)

    def _parse_event(self, data: P2ImMessageReceiveV1):
        event = data.event
        message = event.message
        sender = event.sender

        message_id = message.message_id
        if message_id in self._processed_message_ids:
            return None
        self._processed_message_ids[message_id] = None
        while len(self._processed_message_ids) > 1000:
            self._processed_message_ids.popitem(last=False)

        if sender.sender_type == "bot":
            return None

        sender_id = sender.sender_id.open_id if sender.sender_id else "unknown"
        chat_id = message.chat_id
        is_group = message.chat_type == "group"

        if message.message_type == "text":
            try:
                content = json.loads(message.content).get("text", "")
            except json.JSONDecodeError:
                content = message.content or ""
        else:
            content = MSG_TYPE_MAP.get(message.message_type, f"[{message.message_type}]")
        if not content:
            return None

        # 私聊回复到用户 open_id，群聊回复到群 chat_id
        return self._build_message(
            sender_id=sender_id,
            chat_id=chat_id if is_group else sender_id,
            content=content,
            guild_id=chat_id if is_group else None,
            metadata={
                "message_id": message_id,
                "chat_type": message.chat_type,
                "msg_type": message.message_type,
            },
        )
