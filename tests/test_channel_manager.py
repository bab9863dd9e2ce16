"""Tests for bot connection supervision: bounded start retry and unbounded reconnect."""

import asyncio

import pytest

from hakimi.bus.queue import MessageBus
from hakimi.channels.base import BotStatus
from hakimi.channels.manager import ChannelManager, account_key
from hakimi.config.schema import BotAccountConfig
from tests.conftest import ChannelFactory, wait_until


def make_manager(accounts, settings, behaviours=None, factory=None):
    logs: list[str] = []
    snapshots: list[list] = []
    factory = factory or ChannelFactory(behaviours)
    manager = ChannelManager(
        accounts,
        MessageBus(),
        settings=settings,
        on_status_change=snapshots.append,
        on_log=logs.append,
        channel_factory=factory,
    )
    return manager, factory, logs, snapshots


def statuses(manager: ChannelManager) -> dict[str, BotStatus]:
    return {r.key: r.status for r in manager.snapshot()}


# =============================================================================
# Account keys
# =============================================================================


class TestAccountKey:
    def test_named_account_uses_name(self):
        assert account_key(BotAccountConfig(type="slack", name="work"), 3) == "work"

    def test_unnamed_account_uses_type_and_index(self):
        assert account_key(BotAccountConfig(type="telegram"), 0) == "telegram-0"


# =============================================================================
# Start
# =============================================================================


class TestStartAll:
    @pytest.mark.asyncio
    async def test_all_accounts_start(self, telegram_account, slack_account, fast_settings):
        manager, factory, _, snapshots = make_manager([telegram_account, slack_account], fast_settings)

        result = await manager.start_all()

        assert result.success is True
        assert manager.running is True
        assert statuses(manager) == {"telegram-0": BotStatus.ACTIVE, "slack-1": BotStatus.ACTIVE}
        record = next(r for r in manager.snapshot() if r.key == "slack-1")
        assert record.self_id == "bot-slack-1"
        assert record.name == "Bot slack-1"
        assert snapshots, "status observer was never notified"

    @pytest.mark.asyncio
    async def test_no_channels_is_a_failure(self, fast_settings):
        manager, _, _, _ = make_manager([], fast_settings)

        result = await manager.start_all()

        assert result.success is False
        assert result.error == "No bot accounts could be created"

    @pytest.mark.asyncio
    async def test_flaky_account_retries_until_it_starts(self, telegram_account, slack_account, fast_settings):
        manager, factory, logs, _ = make_manager(
            [telegram_account, slack_account],
            fast_settings,
            behaviours={"slack-1": {"start_failures": 3}},
        )

        result = await manager.start_all()

        assert result.success is True
        retry_logs = [line for line in logs if line.startswith("Start failed for slack")]
        assert len(retry_logs) == 3
        assert "(1/5)" in retry_logs[0]
        # the healthy account is not restarted on retries
        assert factory.created["telegram-0"].start_calls == 1
        assert factory.created["slack-1"].start_calls == 4

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, telegram_account, slack_account, fast_settings):
        manager, factory, logs, _ = make_manager(
            [telegram_account, slack_account],
            fast_settings,
            behaviours={"slack-1": {"start_failures": -1}},
        )

        result = await manager.start_all()

        assert result.success is False
        assert "after 5 attempts" in result.error
        assert "slack-1 handshake refused" in result.error
        assert factory.created["slack-1"].start_calls == 5
        assert statuses(manager) == {"telegram-0": BotStatus.ERROR, "slack-1": BotStatus.ERROR}
        assert all(r.error for r in manager.snapshot())
        # connections that did come up are torn down again
        assert factory.created["telegram-0"].stop_calls == 1
        assert manager.running is False

    @pytest.mark.asyncio
    async def test_uncreatable_account_is_skipped(self, telegram_account, slack_account, fast_settings):
        inner = ChannelFactory()

        def factory(account, bus, key):
            if account.type == "slack":
                raise ImportError("No module named 'slack_sdk'")
            return inner(account, bus, key)

        manager, _, _, _ = make_manager([telegram_account, slack_account], fast_settings, factory=factory)

        result = await manager.start_all()

        assert result.success is True
        assert manager.enabled_channels == ["telegram-0"]
        slack = next(r for r in manager.snapshot() if r.key == "slack-1")
        assert "slack_sdk" in slack.error


# =============================================================================
# Runtime disconnects
# =============================================================================


class TestReconnect:
    @pytest.mark.asyncio
    async def test_drop_schedules_reconnect(self, telegram_account, fast_settings):
        manager, factory, logs, _ = make_manager([telegram_account], fast_settings)
        await manager.start_all()
        channel = factory.created["telegram-0"]

        channel.drop()
        assert statuses(manager)["telegram-0"] == BotStatus.INACTIVE
        assert manager.pending_reconnects == ["telegram-0"]

        await wait_until(lambda: statuses(manager)["telegram-0"] == BotStatus.ACTIVE)
        assert channel.reconnect_calls == 1
        assert "Bot telegram-0 reconnected" in logs

    @pytest.mark.asyncio
    async def test_reconnect_retries_without_limit(self, telegram_account, fast_settings):
        manager, factory, logs, _ = make_manager(
            [telegram_account], fast_settings, behaviours={"telegram-0": {"reconnect_failures": 7}}
        )
        await manager.start_all()
        channel = factory.created["telegram-0"]

        channel.drop()
        await wait_until(lambda: statuses(manager)["telegram-0"] == BotStatus.ACTIVE, timeout=5.0)

        assert channel.reconnect_calls == 8
        assert sum(1 for line in logs if line.startswith("Reconnect failed for telegram-0")) == 7
        # runtime failures never produce the error status
        assert all(r.error is None for r in manager.snapshot())

    @pytest.mark.asyncio
    async def test_repeated_drops_keep_one_pending_reconnect(self, telegram_account, fast_settings):
        manager, factory, _, _ = make_manager([telegram_account], fast_settings)
        await manager.start_all()
        channel = factory.created["telegram-0"]

        channel.drop()
        channel.drop()
        channel.drop()

        assert manager.pending_reconnects == ["telegram-0"]
        await wait_until(lambda: statuses(manager)["telegram-0"] == BotStatus.ACTIVE)
        await asyncio.sleep(fast_settings.reconnect_delay_s * 3)
        assert channel.reconnect_calls == 1

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_reconnect(self, telegram_account, fast_settings):
        manager, factory, _, _ = make_manager([telegram_account], fast_settings)
        await manager.start_all()
        channel = factory.created["telegram-0"]

        channel.drop()
        await manager.stop_all()
        await asyncio.sleep(fast_settings.reconnect_delay_s * 3)

        assert manager.pending_reconnects == []
        assert channel.reconnect_calls == 0
        assert statuses(manager) == {"telegram-0": BotStatus.INACTIVE}

    @pytest.mark.asyncio
    async def test_drop_before_start_is_ignored(self, telegram_account, fast_settings):
        manager, factory, _, _ = make_manager([telegram_account], fast_settings)

        factory.created["telegram-0"].drop()

        assert manager.pending_reconnects == []

    @pytest.mark.asyncio
    async def test_restart_brings_everything_back(self, telegram_account, fast_settings):
        manager, factory, _, _ = make_manager([telegram_account], fast_settings)
        await manager.start_all()

        result = await manager.restart()

        assert result.success is True
        assert factory.created["telegram-0"].start_calls == 2
        assert statuses(manager) == {"telegram-0": BotStatus.ACTIVE}
