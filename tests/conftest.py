"""Shared fixtures: fake bot channels, a scripted agent runtime and a simulated clock."""

import asyncio
from typing import Any, Callable

import pytest

from hakimi.agent.base import (
    AgentHooks,
    AgentIdentity,
    AgentInstance,
    AgentRuntime,
    ApprovalRequest,
    ContentChunk,
    TurnInterrupted,
)
from hakimi.bus.events import OutboundMessage
from hakimi.bus.queue import MessageBus
from hakimi.channels.base import BaseChannel, ConnectionState
from hakimi.config.schema import BotAccountConfig, RouterConfig


# =============================================================================
# Simulated clock
# =============================================================================


class FakeTimer:
    def __init__(self, when: float, callback: Callable[[], None]):
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeClock:
    """Drop-in scheduler/clock pair for SessionCache. Timers fire only from advance()."""

    def __init__(self):
        self.now = 0.0
        self._timers: list[FakeTimer] = []

    def clock(self) -> float:
        return self.now

    def scheduler(self, delay: float, callback: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(self.now + delay, callback)
        self._timers.append(timer)
        return timer

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            due = [t for t in self._timers if not t.cancelled and t.when <= target]
            if not due:
                break
            timer = min(due, key=lambda t: t.when)
            self._timers.remove(timer)
            self.now = timer.when
            timer.callback()
        self.now = target

    @property
    def pending(self) -> int:
        return sum(1 for t in self._timers if not t.cancelled)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


# =============================================================================
# Fake bot channels
# =============================================================================


class FakeChannel(BaseChannel):
    """
    In-memory bot account.

    start_failures: how many start() calls raise before one succeeds (-1 = always).
    send_failures: how many send() calls raise before one succeeds.
    reconnect_failures: how many reconnect() calls raise before one succeeds.
    """

    def __init__(
        self,
        account: BotAccountConfig,
        bus: MessageBus,
        key: str,
        start_failures: int = 0,
        send_failures: int = 0,
        reconnect_failures: int = 0,
    ):
        super().__init__(account, bus, key)
        self.name = account.type
        self.start_failures = start_failures
        self.send_failures = send_failures
        self.reconnect_failures = reconnect_failures
        self.start_calls = 0
        self.stop_calls = 0
        self.reconnect_calls = 0
        self.send_calls = 0
        self.sent: list[OutboundMessage] = []

    async def start(self) -> None:
        self.start_calls += 1
        self._set_state(ConnectionState.CONNECT)
        if self.start_failures < 0 or self.start_calls <= self.start_failures:
            self._set_state(ConnectionState.OFFLINE)
            raise ConnectionError(f"{self.key} handshake refused")
        self.self_id = f"bot-{self.key}"
        self.display_name = f"Bot {self.key}"
        self._running = True
        self._set_state(ConnectionState.ONLINE)

    async def stop(self) -> None:
        self.stop_calls += 1
        self._running = False
        self._set_state(ConnectionState.OFFLINE)

    async def reconnect(self) -> None:
        self.reconnect_calls += 1
        if self.reconnect_calls <= self.reconnect_failures:
            raise ConnectionError(f"{self.key} still unreachable")
        self._running = True
        self._set_state(ConnectionState.ONLINE)

    async def send(self, msg: OutboundMessage) -> None:
        self.send_calls += 1
        if self.send_calls <= self.send_failures:
            raise ConnectionError("send timed out")
        self.sent.append(msg)

    async def deliver(self, user_id: str, text: str, guild_id: str | None = None) -> None:
        """Simulate the platform pushing a message from user_id."""
        await self._handle_message(
            sender_id=user_id,
            chat_id=guild_id or f"dm-{user_id}",
            content=text,
            guild_id=guild_id,
        )

    def drop(self) -> None:
        """Simulate the platform connection dropping."""
        self._running = False
        self._set_state(ConnectionState.DISCONNECT)


class ChannelFactory:
    """channel_factory replacement that records created channels and applies per-key behaviour."""

    def __init__(self, behaviours: dict[str, dict[str, Any]] | None = None):
        self.behaviours = behaviours or {}
        self.created: dict[str, FakeChannel] = {}

    def __call__(self, account: BotAccountConfig, bus: MessageBus, key: str) -> FakeChannel:
        channel = FakeChannel(account, bus, key, **self.behaviours.get(key, {}))
        self.created[key] = channel
        return channel


@pytest.fixture
def telegram_account() -> BotAccountConfig:
    return BotAccountConfig(type="telegram", config={"token": "123:abc"})


@pytest.fixture
def slack_account() -> BotAccountConfig:
    return BotAccountConfig(type="slack", config={"token": "xapp-1", "bot_token": "xoxb-1"})


@pytest.fixture
def fast_settings() -> RouterConfig:
    """Router settings with near-zero backoff so retry paths run instantly."""
    return RouterConfig(
        send_retry_base_s=0.001,
        send_retry_max_s=0.001,
        start_retry_base_s=0.001,
        start_retry_max_s=0.001,
        reconnect_delay_s=0.01,
    )


# =============================================================================
# Scripted agent runtime
# =============================================================================


def echo(prompt: str) -> str | None:
    if prompt.startswith("User message: "):
        return "echo: " + prompt[len("User message: "):]
    return None


class FakeAgent(AgentInstance):
    """
    Agent whose turns are driven by its runtime's settings.

    With runtime.hold set, every turn parks until release() or interrupt().
    """

    def __init__(self, session_key: str, identity: AgentIdentity, hooks: AgentHooks, runtime: "FakeRuntime"):
        self.session_key = session_key
        self.identity = identity
        self.hooks = hooks
        self.runtime = runtime
        self.prompts: list[str] = []
        self.approved: list[str] = []
        self.interrupts = 0
        self.closed = False
        self._interrupted = False
        self._wake: asyncio.Event | None = None

    async def run(self, prompt: str):
        rt = self.runtime
        self.prompts.append(prompt)
        self._interrupted = False
        rt.active += 1
        rt.max_active = max(rt.max_active, rt.active)
        try:
            if rt.hold:
                self._wake = asyncio.Event()
                await self._wake.wait()
            if self._interrupted:
                raise TurnInterrupted()

            if rt.ask_approval:
                yield ApprovalRequest(id=f"req-{len(self.prompts)}", tool_name="write_config")

            yield ContentChunk(f"thinking about {prompt!r}")
            if rt.request_reload and self.hooks.on_reload:
                self.hooks.on_reload()
            text = rt.respond(prompt)
            if text is not None:
                await self.hooks.on_send(text)
        finally:
            rt.active -= 1
            self._wake = None

    async def approve(self, request_id: str) -> None:
        self.approved.append(request_id)

    def interrupt(self) -> None:
        self.interrupts += 1
        self._interrupted = True
        if self._wake:
            self._wake.set()

    def release(self) -> None:
        if self._wake:
            self._wake.set()

    async def close(self) -> None:
        self.closed = True

    @property
    def waiting(self) -> bool:
        return self._wake is not None and not self._wake.is_set()


class FakeRuntime(AgentRuntime):
    def __init__(self, respond: Callable[[str], str | None] = echo):
        self.respond = respond
        self.hold = False
        self.ask_approval = False
        self.request_reload = False
        self.active = 0
        self.max_active = 0
        self.agents: list[FakeAgent] = []

    async def create_instance(self, session_key: str, identity: AgentIdentity, hooks: AgentHooks) -> FakeAgent:
        agent = FakeAgent(session_key, identity, hooks, self)
        self.agents.append(agent)
        return agent

    def agents_for(self, session_key: str) -> list[FakeAgent]:
        return [a for a in self.agents if a.session_key == session_key]


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


# =============================================================================
# Helpers
# =============================================================================


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the event loop until predicate() holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)
