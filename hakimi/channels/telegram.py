"""
Telegram 适配器 - 基于 python-telegram-bot 的长轮询模式。

长轮询无需公网 IP 或 Webhook，一个 Bot Token 即可接入。

【连接状态】
- start() 在 get_me() 握手成功、轮询开始后返回，并上报 ONLINE
- 轮询过程中出现网络错误时上报 DISCONNECT，由 ChannelManager 安排重连
- stop() 上报 OFFLINE

【私聊判定】
chat.type 不是 "private" 的消息会带上 guild_id（群组 ID），被路由器过滤。

【消息处理流程】
1. Telegram 服务器 → python-telegram-bot 接收消息
2. _on_message() 提取文本，启动"正在输入"指示器
3. _handle_message()（继承自 BaseChannel）发布到消息总线
4. 会话回复时调用 send()，Markdown 转为 Telegram HTML 后发送
"""

from __future__ import annotations

import asyncio
import re

from loguru import logger
from telegram import Update
from telegram.error import NetworkError, TelegramError
from telegram.ext import Application, ContextTypes, MessageHandler, filters
from telegram.request import HTTPXRequest

from hakimi.bus.events import OutboundMessage
from hakimi.bus.queue import MessageBus
from hakimi.channels.base import BaseChannel, ConnectionState
from hakimi.config.schema import BotAccountConfig, TelegramAccount


def _markdown_to_telegram_html(text: str) -> str:
    """
    将 Markdown 转换为 Telegram 支持的 HTML 子集。

    采用"保护-转换-恢复"三步：先用占位符替换代码块和行内代码，
    再转换其余语法，最后把代码内容转义后放回 <pre>/<code> 标签。
    """
    if not text:
        return ""

    code_blocks: list[str] = []

    def save_code_block(m: re.Match) -> str:
        code_blocks.append(m.group(1))
        return f"\x00CB{len(code_blocks) - 1}\x00"

    text = re.sub(r'```[\w]*\n?([\s\S]*?)```', save_code_block, text)

    inline_codes: list[str] = []

    def save_inline_code(m: re.Match) -> str:
        inline_codes.append(m.group(1))
        return f"\x00IC{len(inline_codes) - 1}\x00"

    text = re.sub(r'`([^`]+)`', save_inline_code, text)

    # 标题与引用：Telegram 不支持，退化为纯文本
    text = re.sub(r'^#{1,6}\s+(.+)$', r'\1', text, flags=re.MULTILINE)
    text = re.sub(r'^>\s*(.*)$', r'\1', text, flags=re.MULTILINE)

    # 转义必须在生成任何标签之前
    text = _escape_html(text)

    text = re.sub(r'\[([^\]]+)\]\(([^)]+)\)', r'<a href="\2">\1</a>', text)
    text = re.sub(r'\*\*(.+?)\*\*', r'<b>\1</b>', text)
    text = re.sub(r'__(.+?)__', r'<b>\1</b>', text)
    # 排除 some_var_name 这类变量名中的下划线
    text = re.sub(r'(?<![a-zA-Z0-9])_([^_]+)_(?![a-zA-Z0-9])', r'<i>\1</i>', text)
    text = re.sub(r'~~(.+?)~~', r'<s>\1</s>', text)
    text = re.sub(r'^[-*]\s+', '• ', text, flags=re.MULTILINE)

    for i, code in enumerate(inline_codes):
        text = text.replace(f"\x00IC{i}\x00", f"<code>{_escape_html(code)}</code>")
    for i, code in enumerate(code_blocks):
        text = text.replace(f"\x00CB{i}\x00", f"<pre><code>{_escape_html(code)}</code></pre>")

    return text


def _escape_html(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


class TelegramChannel(BaseChannel):
    """
    Telegram 机器人账号。

    属性:
        config: TelegramAccount 配置（token、代理）
        _app: python-telegram-bot 的 Application 实例
        _typing_tasks: 聊天 ID → "正在输入"指示器任务
    """

    name = "telegram"

    def __init__(self, account: BotAccountConfig, bus: MessageBus, key: str):
        super().__init__(account, bus, key)
        self.config: TelegramAccount = self.config
        self._app: Application | None = None
        self._typing_tasks: dict[str, asyncio.Task] = {}

    async def start(self) -> None:
        """
        连接 Telegram 并开始长轮询。

        握手（get_me）失败时抛出异常，由 ChannelManager 负责重试。
        """
        if not self.config.token:
            raise ValueError("Telegram bot token not configured")

        self._set_state(ConnectionState.CONNECT)

        # 较大的连接池避免长时间运行时的池超时
        req = HTTPXRequest(connection_pool_size=16, pool_timeout=5.0, connect_timeout=30.0, read_timeout=30.0)
        builder = Application.builder().token(self.config.token).request(req).get_updates_request(req)
        if self.config.proxy:
            builder = builder.proxy(self.config.proxy).get_updates_proxy(self.config.proxy)
        self._app = builder.build()
        self._app.add_error_handler(self._on_error)
        self._app.add_handler(
            MessageHandler(
                filters.TEXT | filters.PHOTO | filters.VOICE | filters.AUDIO | filters.Document.ALL,
                self._on_message,
            )
        )

        logger.info(f"Starting Telegram bot {self.key} (polling mode)...")
        try:
            await self._app.initialize()
            await self._app.start()
            bot_info = await self._app.bot.get_me()
            await self._app.updater.start_polling(
                allowed_updates=["message"],
                drop_pending_updates=True,
                error_callback=self._on_polling_error,
            )
        except Exception:
            await self._shutdown_app()
            self._set_state(ConnectionState.OFFLINE)
            raise

        self.self_id = str(bot_info.id)
        self.display_name = bot_info.username
        self._running = True
        logger.info(f"Telegram bot @{bot_info.username} connected")
        self._set_state(ConnectionState.ONLINE)

    async def stop(self) -> None:
        """停止轮询并释放资源。"""
        self._running = False
        for chat_id in list(self._typing_tasks):
            self._stop_typing(chat_id)
        if self._app:
            logger.info(f"Stopping Telegram bot {self.key}...")
            await self._shutdown_app()
        self._set_state(ConnectionState.OFFLINE)

    async def _shutdown_app(self) -> None:
        app, self._app = self._app, None
        if app is None:
            return
        try:
            if app.updater and app.updater.running:
                await app.updater.stop()
            if app.running:
                await app.stop()
            await app.shutdown()
        except Exception as e:
            logger.warning(f"Error shutting down Telegram bot {self.key}: {e}")

    async def send(self, msg: OutboundMessage) -> None:
        """
        发送消息。HTML 发送失败时回退为纯文本；纯文本也失败则抛出异常。
        """
        if not self._app:
            raise RuntimeError(f"Telegram bot {self.key} not running")

        self._stop_typing(msg.chat_id)
        chat_id = int(msg.chat_id)
        try:
            await self._app.bot.send_message(
                chat_id=chat_id,
                text=_markdown_to_telegram_html(msg.content),
                parse_mode="HTML",
            )
        except NetworkError:
            raise
        except TelegramError as e:
            logger.warning(f"HTML parse failed, falling back to plain text: {e}")
            await self._app.bot.send_message(chat_id=chat_id, text=msg.content)

    async def _on_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """处理用户消息：提取文本，群聊带上 guild_id，发布到总线。"""
        if not update.message or not update.effective_user:
            return

        message = update.message
        user = update.effective_user

        # 白名单兼容：数字 ID 与用户名都可匹配
        sender_id = str(user.id)
        allow_id = f"{sender_id}|{user.username}" if user.username else sender_id

        parts = []
        if message.text:
            parts.append(message.text)
        if message.caption:
            parts.append(message.caption)
        if message.photo:
            parts.append("[image]")
        elif message.voice or message.audio:
            parts.append("[audio]")
        elif message.document:
            parts.append(f"[file: {message.document.file_name or 'unnamed'}]")
        content = "\n".join(parts) if parts else "[empty message]"

        chat_id = str(message.chat_id)
        is_group = message.chat.type != "private"
        logger.debug(f"Telegram message from {sender_id} on {self.key}: {content[:50]}...")

        if not is_group:
            self._start_typing(chat_id)

        await self._handle_message(
            sender_id=sender_id,
            chat_id=chat_id,
            content=content,
            guild_id=chat_id if is_group else None,
            metadata={
                "message_id": message.message_id,
                "username": user.username,
                "first_name": user.first_name,
            },
            allow_id=allow_id,
        )

    def _start_typing(self, chat_id: str) -> None:
        self._stop_typing(chat_id)
        self._typing_tasks[chat_id] = asyncio.create_task(self._typing_loop(chat_id))

    def _stop_typing(self, chat_id: str) -> None:
        task = self._typing_tasks.pop(chat_id, None)
        if task and not task.done():
            task.cancel()

    async def _typing_loop(self, chat_id: str) -> None:
        # typing 状态 5 秒后消失，每 4 秒续一次
        try:
            while self._app:
                await self._app.bot.send_chat_action(chat_id=int(chat_id), action="typing")
                await asyncio.sleep(4)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug(f"Typing indicator stopped for {chat_id}: {e}")

    def _on_polling_error(self, error: TelegramError) -> None:
        """轮询出错回调（同步）。网络错误视为掉线。"""
        logger.warning(f"Telegram polling error on {self.key}: {error}")
        if isinstance(error, NetworkError) and self._running and self.state == ConnectionState.ONLINE:
            self._set_state(ConnectionState.DISCONNECT)

    async def _on_error(self, update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
        logger.error(f"Telegram error on {self.key}: {context.error}")
