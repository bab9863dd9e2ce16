"""
连接管理器模块 - 维护多个机器人账号连接的生命周期与健康状态。

本模块负责：
1. 根据账号列表创建适配器实例（延迟导入，未安装 SDK 的平台只打印警告）
2. 统一启动：失败时按退避策略整体重试，超过上限后报告结构化失败
3. 运行期掉线：固定延迟后重连，失败无限次重新排队，同一账号同一时刻最多一个待执行的重连
4. 维护每个账号的 BotRecord，任何变化都通过 on_status_change 推送快照

【启动失败 vs 运行期掉线】
- 启动阶段的失败是有界的：最多 start_max_attempts 次，之后所有账号标记为 error
- 运行期的掉线是无界的：账号只会在 inactive / connecting / active 之间切换，
  不会因为网络波动进入 error

【Java 开发者类比】
- ChannelManager 相当于一个带健康检查的连接池管理器
- _reconnect_tasks 相当于 Map<String, ScheduledFuture<?>>，重新调度前先 cancel
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from typing import Callable, Iterable

from loguru import logger

from hakimi.bus.queue import MessageBus
from hakimi.channels.base import STATE_TO_STATUS, BaseChannel, BotStatus, ConnectionState
from hakimi.channels.registry import create_channel
from hakimi.config.schema import BotAccountConfig, RouterConfig


@dataclass
class BotRecord:
    """
    机器人账号的连接记录（对外展示用）。

    属性:
        key: 账号键
        platform: 平台类型
        status: 当前状态
        self_id: 机器人在平台上的 ID
        name: 机器人在平台上的名字
        error: 最近一次启动失败的原因
    """
    key: str
    platform: str
    status: BotStatus = BotStatus.INACTIVE
    self_id: str | None = None
    name: str | None = None
    error: str | None = None


@dataclass
class StartResult:
    """启动结果。启动失败不抛异常，而是返回 success=False 和原因。"""
    success: bool
    error: str | None = None


ChannelFactory = Callable[[BotAccountConfig, MessageBus, str], BaseChannel]


def account_key(account: BotAccountConfig, index: int) -> str:
    """账号键：优先使用配置的 name，否则为 "{type}-{序号}"。"""
    return account.name or f"{account.type}-{index}"


class ChannelManager:
    """
    机器人账号连接管理器。

    属性:
        accounts: 账号配置列表
        bus: 入站消息总线，所有适配器共享
        settings: 重试与重连参数
        channels: 已创建的适配器 {账号键: 实例}
        records: 连接记录 {账号键: BotRecord}
    """

    def __init__(
        self,
        accounts: Iterable[BotAccountConfig],
        bus: MessageBus,
        settings: RouterConfig | None = None,
        on_status_change: Callable[[list[BotRecord]], None] | None = None,
        on_log: Callable[[str], None] | None = None,
        channel_factory: ChannelFactory = create_channel,
    ):
        self.accounts = list(accounts)
        self.bus = bus
        self.settings = settings or RouterConfig()
        self.on_status_change = on_status_change
        self.on_log = on_log
        self._channel_factory = channel_factory

        self.channels: dict[str, BaseChannel] = {}
        self.records: dict[str, BotRecord] = {}
        self._reconnect_tasks: dict[str, asyncio.Task] = {}
        self._reconnecting: set[str] = set()
        self._running = False

        self._init_channels()

    def _init_channels(self) -> None:
        """
        为每个账号创建适配器实例（只创建，不连接）。

        平台 SDK 未安装或账号配置不合法时只记录错误，不影响其他账号。
        """
        for index, account in enumerate(self.accounts):
            key = account_key(account, index)
            self.records[key] = BotRecord(key=key, platform=account.type)
            try:
                channel = self._channel_factory(account, self.bus, key)
            except (ImportError, ValueError) as e:
                logger.warning(f"{account.type} channel not available for {key}: {e}")
                self.records[key].error = str(e)
                continue
            channel.set_state_listener(self._on_state)
            self.channels[key] = channel
            logger.info(f"Bot account {key} ({account.type}) enabled")

    # ------------------------------------------------------------------
    # 启动 / 停止
    # ------------------------------------------------------------------

    async def start_all(self) -> StartResult:
        """
        启动所有尚未在线的连接。

        第 n 次尝试失败后等待 min(base × n, cap) 秒再试，
        共 start_max_attempts 次；仍失败则停止已启动的连接并把所有记录标记为 error。
        """
        if not self.channels:
            return StartResult(success=False, error="No bot accounts could be created")

        for key in self.channels:
            self._update(key, status=BotStatus.CONNECTING, error=None)

        max_attempts = self.settings.start_max_attempts
        last_error: str | None = None

        for attempt in range(1, max_attempts + 1):
            pending = [k for k in self.channels if self.records[k].status != BotStatus.ACTIVE]
            results = await asyncio.gather(
                *(self._start_channel(k) for k in pending), return_exceptions=True
            )
            failures = [(k, r) for k, r in zip(pending, results) if isinstance(r, Exception)]
            if not failures:
                self._running = True
                logger.info(f"All bot accounts started ({len(self.channels)})")
                return StartResult(success=True)

            last_error = str(failures[0][1])
            if attempt < max_attempts:
                delay = min(self.settings.start_retry_base_s * attempt, self.settings.start_retry_max_s)
                for key, e in failures:
                    self._log(
                        f"Start failed for {key} ({attempt}/{max_attempts}): {e}, retrying in {delay:g}s",
                        level="warning",
                    )
                await asyncio.sleep(delay)
            else:
                for key, e in failures:
                    self._log(f"Start failed for {key} ({attempt}/{max_attempts}): {e}", level="error")

        # 先停止再标记 error，避免停止时上报的 OFFLINE 覆盖 error
        await self._stop_channels()
        for key in self.records:
            self._update(key, status=BotStatus.ERROR, error=last_error)
        return StartResult(
            success=False,
            error=f"Failed to start bot accounts after {max_attempts} attempts: {last_error}",
        )

    async def _start_channel(self, key: str) -> None:
        channel = self.channels[key]
        logger.info(f"Starting bot {key}...")
        self._update(key, status=BotStatus.CONNECTING)
        await channel.start()
        self._update(
            key,
            status=BotStatus.ACTIVE,
            self_id=channel.self_id,
            name=channel.display_name,
            error=None,
        )

    async def stop_all(self) -> None:
        """取消所有待执行的重连，停止所有连接，所有记录标记为 inactive。"""
        logger.info("Stopping all bot accounts...")
        self._running = False

        tasks = list(self._reconnect_tasks.values())
        self._reconnect_tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        await self._stop_channels()
        for key in self.records:
            self._update(key, status=BotStatus.INACTIVE)

    async def _stop_channels(self) -> None:
        for key, channel in self.channels.items():
            try:
                await channel.stop()
                logger.info(f"Stopped bot {key}")
            except Exception as e:
                logger.error(f"Error stopping {key}: {e}")

    async def restart(self) -> StartResult:
        await self.stop_all()
        return await self.start_all()

    # ------------------------------------------------------------------
    # 健康状态与重连
    # ------------------------------------------------------------------

    def _on_state(self, key: str, state: ConnectionState) -> None:
        """适配器上报的连接状态变化。"""
        record = self.records.get(key)
        channel = self.channels.get(key)
        if record is None or channel is None:
            return

        self._update(
            key,
            status=STATE_TO_STATUS[state],
            self_id=channel.self_id or record.self_id,
            name=channel.display_name or record.name,
        )

        if state == ConnectionState.DISCONNECT and self._running and key not in self._reconnecting:
            self._log(f"Bot {key} disconnected", level="warning")
            self.schedule_reconnect(key)

    def schedule_reconnect(self, key: str) -> None:
        """在 reconnect_delay_s 秒后重连。已有待执行的重连会先被取消。"""
        existing = self._reconnect_tasks.pop(key, None)
        if existing and not existing.done():
            existing.cancel()
        self._reconnect_tasks[key] = asyncio.create_task(self._reconnect_after_delay(key))

    async def _reconnect_after_delay(self, key: str) -> None:
        await asyncio.sleep(self.settings.reconnect_delay_s)
        if self._reconnect_tasks.get(key) is asyncio.current_task():
            del self._reconnect_tasks[key]
        if not self._running:
            return

        channel = self.channels[key]
        self._log(f"Attempting to reconnect bot {key}...")
        self._update(key, status=BotStatus.CONNECTING)
        self._reconnecting.add(key)
        try:
            await channel.reconnect()
        except Exception as e:
            self._log(f"Reconnect failed for {key}: {e}", level="warning")
            self._update(key, status=BotStatus.INACTIVE)
            if self._running:
                self.schedule_reconnect(key)
            return
        finally:
            self._reconnecting.discard(key)

        self._update(key, status=BotStatus.ACTIVE, self_id=channel.self_id, name=channel.display_name)
        self._log(f"Bot {key} reconnected")

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    def snapshot(self) -> list[BotRecord]:
        """所有连接记录的副本。"""
        return [replace(r) for r in self.records.values()]

    def get_channel(self, key: str) -> BaseChannel | None:
        return self.channels.get(key)

    @property
    def enabled_channels(self) -> list[str]:
        return list(self.channels.keys())

    @property
    def running(self) -> bool:
        return self._running

    @property
    def pending_reconnects(self) -> list[str]:
        """有待执行重连的账号键。"""
        return [k for k, t in self._reconnect_tasks.items() if not t.done()]

    # ------------------------------------------------------------------
    # 内部工具
    # ------------------------------------------------------------------

    def _update(self, key: str, **changes) -> None:
        record = self.records[key]
        for name, value in changes.items():
            setattr(record, name, value)
        if self.on_status_change:
            try:
                self.on_status_change(self.snapshot())
            except Exception as e:
                logger.error(f"Status observer failed: {e}")

    def _log(self, message: str, level: str = "info") -> None:
        logger.log(level.upper(), message)
        if self.on_log:
            self.on_log(message)
