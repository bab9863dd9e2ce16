"""End-to-end tests for the chat router: private filtering, session routing, send retry, lifecycle."""

import asyncio

import pytest

from hakimi.channels.base import BotStatus
from hakimi.config.schema import BotAccountConfig, Config
from hakimi.router.service import ChatRouter
from tests.conftest import ChannelFactory, wait_until


class Recorder:
    """Collects every upward callback in arrival order."""

    def __init__(self):
        self.events: list[tuple] = []
        self.logs: list[str] = []
        self.statuses: list[list] = []

    def on_message(self, key, text):
        self.events.append(("message", key, text))

    def on_session_start(self, session):
        self.events.append(("start", session.session_id))

    def on_session_end(self, key):
        self.events.append(("end", key))

    def of(self, kind: str) -> list[tuple]:
        return [e for e in self.events if e[0] == kind]


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


def make_router(accounts, settings, runtime, recorder, behaviours=None, **overrides):
    factory = ChannelFactory(behaviours)
    config = Config(bot_accounts=accounts, router=settings)
    router = ChatRouter(
        config,
        runtime,
        on_message=recorder.on_message,
        on_session_start=recorder.on_session_start,
        on_session_end=recorder.on_session_end,
        on_bot_status_change=recorder.statuses.append,
        on_log=recorder.logs.append,
        channel_factory=factory,
        **overrides,
    )
    return router, factory


@pytest.fixture
async def started(telegram_account, fast_settings, runtime, recorder):
    router, factory = make_router([telegram_account], fast_settings, runtime, recorder)
    result = await router.start()
    assert result.success
    yield router, factory.created["telegram-0"]
    await router.stop()


# =============================================================================
# Start / stop
# =============================================================================


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_without_accounts(self, fast_settings, runtime, recorder):
        router, _ = make_router([], fast_settings, runtime, recorder)

        result = await router.start()

        assert result.success is False
        assert result.error == "No bot accounts configured"
        assert router.running is False

    @pytest.mark.asyncio
    async def test_two_accounts_with_flaky_slack(self, telegram_account, slack_account, fast_settings, runtime, recorder):
        router, factory = make_router(
            [telegram_account, slack_account],
            fast_settings,
            runtime,
            recorder,
            behaviours={"slack-1": {"start_failures": 3}},
        )

        result = await router.start()

        assert result.success is True
        assert len([line for line in recorder.logs if line.startswith("Start failed for slack")]) == 3
        assert {r.key: r.status for r in router.bot_statuses} == {
            "telegram-0": BotStatus.ACTIVE,
            "slack-1": BotStatus.ACTIVE,
        }
        await router.stop()

    @pytest.mark.asyncio
    async def test_start_failure_leaves_error_statuses(self, telegram_account, fast_settings, runtime, recorder):
        router, _ = make_router(
            [telegram_account], fast_settings, runtime, recorder,
            behaviours={"telegram-0": {"start_failures": -1}},
        )

        result = await router.start()

        assert result.success is False
        assert router.running is False
        assert [r.status for r in router.bot_statuses] == [BotStatus.ERROR]

    @pytest.mark.asyncio
    async def test_start_twice_is_a_no_op(self, started):
        router, channel = started

        result = await router.start()

        assert result.success is True
        assert channel.start_calls == 1

    @pytest.mark.asyncio
    async def test_stop_ends_every_session(self, started, runtime, recorder):
        router, channel = started
        await channel.deliver("alice", "hi")
        await channel.deliver("bob", "hi")
        await wait_until(lambda: len(channel.sent) == 2)

        await router.stop()
        await router.stop()

        assert sorted(e[1] for e in recorder.of("end")) == [
            "telegram-bot-telegram-0-alice",
            "telegram-bot-telegram-0-bob",
        ]
        assert all(agent.closed for agent in runtime.agents)
        assert router.active_sessions == 0
        assert [r.status for r in router.bot_statuses] == [BotStatus.INACTIVE]

    @pytest.mark.asyncio
    async def test_reload_switches_accounts(self, started, slack_account, fast_settings):
        router, _ = started
        new_config = Config(agent_name="Mimi", bot_accounts=[slack_account], router=fast_settings)

        result = await router.reload(new_config)

        assert result.success is True
        assert router.config.agent_name == "Mimi"
        assert [r.key for r in router.bot_statuses] == ["slack-0"]


# =============================================================================
# Routing
# =============================================================================


class TestRouting:
    @pytest.mark.asyncio
    async def test_hi_end_to_end(self, started, runtime, recorder):
        router, channel = started

        await channel.deliver("alice", "hi")
        await wait_until(lambda: channel.sent)
        await asyncio.sleep(0.01)

        key = "telegram-bot-telegram-0-alice"
        assert recorder.events == [("start", key), ("message", key, "hi")]
        assert runtime.agents_for(key)[0].prompts == ["User message: hi"]
        assert len(channel.sent) == 1
        assert channel.sent[0].content == "echo: hi"
        assert channel.sent[0].chat_id == "dm-alice"
        assert channel.sent[0].platform == "telegram"

    @pytest.mark.asyncio
    async def test_group_messages_are_ignored(self, started, runtime, recorder):
        router, channel = started

        await channel.deliver("alice", "hello everyone", guild_id="group-42")
        await asyncio.sleep(0.05)

        assert recorder.events == []
        assert runtime.agents == []
        assert router.active_sessions == 0

    @pytest.mark.asyncio
    async def test_same_user_reuses_the_session(self, started, runtime, recorder):
        router, channel = started

        await channel.deliver("alice", "one")
        await wait_until(lambda: len(channel.sent) == 1)
        await channel.deliver("alice", "two")
        await wait_until(lambda: len(channel.sent) == 2)

        assert len(recorder.of("start")) == 1
        assert len(runtime.agents) == 1
        assert router.get_session("telegram-bot-telegram-0-alice") is not None

    @pytest.mark.asyncio
    async def test_one_user_on_two_bots_gets_two_sessions(
        self, telegram_account, fast_settings, runtime, recorder
    ):
        second = BotAccountConfig(type="telegram", name="backup", config={"token": "456:def"})
        router, factory = make_router([telegram_account, second], fast_settings, runtime, recorder)
        await router.start()

        await factory.created["telegram-0"].deliver("alice", "hi")
        await factory.created["backup"].deliver("alice", "hi")
        await wait_until(lambda: factory.created["backup"].sent and factory.created["telegram-0"].sent)

        assert sorted(e[1] for e in recorder.of("start")) == [
            "telegram-bot-backup-alice",
            "telegram-bot-telegram-0-alice",
        ]
        await router.stop()

    @pytest.mark.asyncio
    async def test_stop_message_interrupts_the_running_turn(self, started, runtime, recorder):
        router, channel = started
        runtime.hold = True

        await channel.deliver("alice", "write a long essay")
        await wait_until(lambda: runtime.agents and runtime.agents[0].waiting)
        agent = runtime.agents[0]

        await channel.deliver("alice", "stop")
        await wait_until(lambda: len(agent.prompts) == 2 and agent.waiting)
        runtime.hold = False
        agent.release()
        await wait_until(lambda: channel.sent)

        assert agent.interrupts == 1
        assert agent.prompts == ["User message: write a long essay", "User message: stop"]
        assert [m.content for m in channel.sent] == ["echo: stop"]
        assert [e[2] for e in recorder.of("message")] == ["write a long essay", "stop"]

    @pytest.mark.asyncio
    async def test_idle_session_expires(self, telegram_account, runtime, recorder):
        from hakimi.config.schema import RouterConfig

        router, factory = make_router(
            [telegram_account], RouterConfig(session_ttl_s=0.05), runtime, recorder
        )
        await router.start()
        channel = factory.created["telegram-0"]

        await channel.deliver("alice", "hi")
        await wait_until(lambda: recorder.of("end"))
        await wait_until(lambda: runtime.agents[0].closed)

        assert recorder.of("end") == [("end", "telegram-bot-telegram-0-alice")]
        assert "Session telegram-bot-telegram-0-alice ended" in recorder.logs
        assert router.active_sessions == 0
        await router.stop()

    @pytest.mark.asyncio
    async def test_get_session_counts_as_activity(self, telegram_account, runtime, recorder):
        from hakimi.config.schema import RouterConfig

        router, factory = make_router(
            [telegram_account], RouterConfig(session_ttl_s=0.3), runtime, recorder
        )
        await router.start()
        key = "telegram-bot-telegram-0-alice"
        await factory.created["telegram-0"].deliver("alice", "hi")
        await wait_until(lambda: router.active_sessions == 1)

        for _ in range(6):
            await asyncio.sleep(0.1)
            assert router.get_session(key) is not None

        assert recorder.of("end") == []
        await wait_until(lambda: recorder.of("end"))
        assert router.get_session(key) is None
        await router.stop()


# =============================================================================
# Outbound retry
# =============================================================================


class TestSendRetry:
    @pytest.mark.asyncio
    async def test_transient_send_failures_are_retried(
        self, telegram_account, fast_settings, runtime, recorder
    ):
        router, factory = make_router(
            [telegram_account], fast_settings, runtime, recorder,
            behaviours={"telegram-0": {"send_failures": 2}},
        )
        await router.start()
        channel = factory.created["telegram-0"]

        await channel.deliver("alice", "hi")
        await wait_until(lambda: channel.sent)

        assert channel.send_calls == 3
        assert [m.content for m in channel.sent] == ["echo: hi"]
        await router.stop()

    @pytest.mark.asyncio
    async def test_exhausted_retries_are_logged_not_raised(self, fast_settings, runtime, recorder):
        router, _ = make_router([], fast_settings, runtime, recorder)
        calls = 0

        async def always_fails():
            nonlocal calls
            calls += 1
            raise ConnectionError("network down")

        delivered = await router.send_with_retry(always_fails, max_attempts=10)

        assert delivered is False
        assert calls == 10
        assert "Send failed after 10 retries: network down" in recorder.logs
