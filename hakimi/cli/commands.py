"""
CLI 命令模块 - hakimi 的所有命令行命令定义。

命令：
- onboard：初始化配置和工作空间
- gateway：启动网关（所有机器人账号 + 会话路由器 + Agent）
- chat：在终端里直接与 Agent 对话（单条消息或交互式）
- accounts：机器人账号管理（list / add / remove）
- status：查看系统状态

技术栈：
- Typer：CLI 框架（基于 Click，支持类型注解自动生成帮助文档）
- Rich：终端美化输出（Markdown 渲染、表格）
- prompt_toolkit：交互式输入（历史记录、多行粘贴）
"""

import asyncio
import sys
from contextlib import nullcontext
from pathlib import Path

import typer
from loguru import logger
from prompt_toolkit import PromptSession
from prompt_toolkit.formatted_text import HTML
from prompt_toolkit.history import FileHistory
from prompt_toolkit.patch_stdout import patch_stdout
from rich.console import Console
from rich.markdown import Markdown
from rich.table import Table
from rich.text import Text

from hakimi import __logo__, __version__

app = typer.Typer(
    name="hakimi",
    help=f"{__logo__} hakimi - one assistant, many chat apps",
    no_args_is_help=True,
)

console = Console()
EXIT_COMMANDS = {"exit", "quit", "/exit", "/quit", ":q"}

# 终端会话的固定身份：平台 terminal，机器人 local，用户 user
TERMINAL_SESSION_ID = "terminal-local-user"

STATUS_STYLES = {
    "connecting": "yellow",
    "active": "green",
    "inactive": "dim",
    "error": "red",
}

# ---------------------------------------------------------------------------
# CLI 输入：prompt_toolkit
# ---------------------------------------------------------------------------

_PROMPT_SESSION: PromptSession | None = None
_SAVED_TERM_ATTRS = None


def _restore_terminal() -> None:
    """恢复 prompt_toolkit 修改过的终端属性（回显、行缓冲）。"""
    if _SAVED_TERM_ATTRS is None:
        return
    try:
        import termios
        termios.tcsetattr(sys.stdin.fileno(), termios.TCSADRAIN, _SAVED_TERM_ATTRS)
    except (ImportError, OSError):
        pass


def _init_prompt_session() -> None:
    """创建 prompt_toolkit 会话，历史保存在 ~/.hakimi/history/cli_history。"""
    global _PROMPT_SESSION, _SAVED_TERM_ATTRS

    try:
        import termios
        _SAVED_TERM_ATTRS = termios.tcgetattr(sys.stdin.fileno())
    except (ImportError, OSError):
        pass

    history_file = Path.home() / ".hakimi" / "history" / "cli_history"
    history_file.parent.mkdir(parents=True, exist_ok=True)

    _PROMPT_SESSION = PromptSession(
        history=FileHistory(str(history_file)),
        enable_open_in_editor=False,
        multiline=False,
    )


async def _read_interactive_input_async() -> str:
    if _PROMPT_SESSION is None:
        raise RuntimeError("Call _init_prompt_session() first")
    try:
        with patch_stdout():
            return await _PROMPT_SESSION.prompt_async(HTML("<b fg='ansiblue'>You:</b> "))
    except EOFError as exc:
        raise KeyboardInterrupt from exc


def _print_agent_message(name: str, text: str, render_markdown: bool) -> None:
    body = Markdown(text or "") if render_markdown else Text(text or "")
    console.print()
    console.print(f"[cyan]{__logo__} {name}[/cyan]")
    console.print(body)
    console.print()


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} hakimi v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
):
    """hakimi CLI 根命令回调。"""


# ============================================================================
# Onboard / Setup
# ============================================================================


@app.command()
def onboard():
    """
    初始化 hakimi 配置和工作空间。

    1. 在 ~/.hakimi/ 下创建默认配置文件 config.json
    2. 创建工作空间及引导文件（AGENTS.md、SOUL.md、USER.md）
    3. 写入内置的 hakimi-config 技能
    """
    from hakimi.agent.base import AgentIdentity
    from hakimi.agent.context import ContextBuilder
    from hakimi.config.loader import get_config_path, save_config
    from hakimi.config.schema import Config
    from hakimi.utils.helpers import get_workspace_path

    config_path = get_config_path()

    if config_path.exists():
        console.print(f"[yellow]Config already exists at {config_path}[/yellow]")
        if not typer.confirm("Overwrite?"):
            raise typer.Exit()

    config = Config()
    save_config(config)
    console.print(f"[green]✓[/green] Created config at {config_path}")

    workspace = get_workspace_path()
    console.print(f"[green]✓[/green] Created workspace at {workspace}")
    _create_workspace_templates(workspace)
    ContextBuilder(workspace, AgentIdentity(name=config.agent_name)).ensure_skill_file()
    console.print("  [dim]Created skills/hakimi-config/SKILL.md[/dim]")

    console.print(f"\n{__logo__} hakimi is ready!")
    console.print("\nNext steps:")
    console.print("  1. Add your API key to [cyan]~/.hakimi/config.json[/cyan] under providers")
    console.print("  2. Chat: [cyan]hakimi chat[/cyan] (ask it to set up a Telegram/Slack/Feishu bot)")
    console.print("  3. Or add a bot directly: [cyan]hakimi accounts add telegram --token ...[/cyan]")
    console.print("  4. Go live: [cyan]hakimi gateway[/cyan]")


def _create_workspace_templates(workspace: Path):
    templates = {
        "AGENTS.md": """# Agent Instructions

You are a helpful assistant that lives in chat apps. Be concise, accurate, and friendly.

## Guidelines

- Reply with send_message, several short messages are better than one long one
- Ask for clarification when the request is ambiguous
""",
        "SOUL.md": """# Soul

## Personality

- Helpful and friendly
- Concise and to the point
""",
        "USER.md": """# User

Information about the user goes here.

## Preferences

- Communication style: (casual/formal)
- Language: (your preferred language)
""",
    }

    for filename, content in templates.items():
        file_path = workspace / filename
        if not file_path.exists():
            file_path.write_text(content, encoding="utf-8")
            console.print(f"  [dim]Created {filename}[/dim]")


def _make_provider(config):
    """根据配置创建 LiteLLM 提供者，未配置 API Key 时退出。"""
    from hakimi.providers.litellm_provider import LiteLLMProvider

    p = config.get_provider()
    model = config.agents.defaults.model
    if not (p and p.api_key):
        console.print("[red]Error: No API key configured.[/red]")
        console.print("Set one in ~/.hakimi/config.json under providers section")
        raise typer.Exit(1)
    return LiteLLMProvider(
        api_key=p.api_key,
        api_base=config.get_api_base(),
        default_model=model,
        extra_headers=p.extra_headers,
        provider_name=config.get_provider_name(),
    )


def _make_runtime(config, provider):
    from hakimi.agent.loop import LLMAgentRuntime
    from hakimi.utils.helpers import ensure_dir

    defaults = config.agents.defaults
    return LLMAgentRuntime(
        provider=provider,
        workspace=ensure_dir(config.workspace_path),
        model=defaults.model,
        max_tokens=defaults.max_tokens,
        temperature=defaults.temperature,
        max_iterations=defaults.max_tool_iterations,
    )


def _print_bot_statuses(records) -> None:
    parts = []
    for r in records:
        style = STATUS_STYLES.get(r.status.value, "white")
        label = f"{r.key}" + (f" ({r.name})" if r.name else "")
        parts.append(f"{label}: [{style}]{r.status.value}[/{style}]")
    if parts:
        console.print("[dim]Bots[/dim] " + " | ".join(parts))


# ============================================================================
# Gateway
# ============================================================================


@app.command()
def gateway(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """
    启动 hakimi 网关：连接所有机器人账号，把私聊消息路由到各自的会话。

    Agent 调用 reload_hakimi 后，重新读取配置并重启路由器。
    """
    from hakimi.config.loader import load_config
    from hakimi.router.service import ChatRouter

    # verbose 时 loguru 直接输出 debug 日志；否则只保留警告，普通日志走 on_log 打印
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "WARNING")

    config = load_config()
    provider = _make_provider(config)
    runtime = _make_runtime(config, provider)

    console.print(f"{__logo__} Starting {config.agent_name} gateway...")
    if not config.bot_accounts:
        console.print("[yellow]No bot accounts configured.[/yellow] Add one with [cyan]hakimi accounts add[/cyan].")
        raise typer.Exit(1)

    async def run():
        router: ChatRouter | None = None
        reload_tasks: set[asyncio.Task] = set()

        async def do_reload():
            console.print("[cyan]Reloading configuration...[/cyan]")
            result = await router.reload(load_config())
            if result.success:
                console.print("[green]✓[/green] Reloaded")
            else:
                console.print(f"[red]Reload failed: {result.error}[/red]")

        def on_reload():
            # 重启会取消所有回合任务，不能在回合任务里直接 await
            task = asyncio.create_task(do_reload())
            reload_tasks.add(task)
            task.add_done_callback(reload_tasks.discard)

        router = ChatRouter(
            config,
            runtime,
            on_message=lambda key, text: console.print(f"[dim]{key}[/dim] {text}"),
            on_session_start=lambda s: console.print(f"[green]+[/green] session {s.session_id}"),
            on_session_end=lambda key: console.print(f"[dim]- session {key}[/dim]"),
            on_bot_status_change=_print_bot_statuses,
            on_log=None if verbose else (lambda line: console.print(f"[dim]{line}[/dim]")),
            on_reload=on_reload,
        )

        result = await router.start()
        if not result.success:
            console.print(f"[red]Error: {result.error}[/red]")
            raise typer.Exit(1)

        console.print(f"[green]✓[/green] {config.agent_name} is online. Press Ctrl+C to stop.")
        try:
            await asyncio.Event().wait()
        finally:
            await router.stop()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\nShutting down...")


# ============================================================================
# Terminal chat
# ============================================================================


@app.command()
def chat(
    message: str = typer.Option(None, "--message", "-m", help="Message to send to the agent"),
    markdown: bool = typer.Option(True, "--markdown/--no-markdown", help="Render replies as Markdown"),
    logs: bool = typer.Option(False, "--logs/--no-logs", help="Show hakimi runtime logs during chat"),
):
    """
    在终端里与 Agent 对话。

    与 IM 会话走同一套 TurnSerializer：回复通过 send_message 直接打印到终端。
    """
    from hakimi.agent.base import AgentIdentity
    from hakimi.config.loader import load_config
    from hakimi.session.turn import ChatSession, TurnSerializer

    config = load_config()
    provider = _make_provider(config)
    runtime = _make_runtime(config, provider)

    if logs:
        logger.enable("hakimi")
    else:
        logger.disable("hakimi")

    def on_reload():
        console.print("[dim]Configuration saved. Run [cyan]hakimi gateway[/cyan] to apply bot account changes.[/dim]")

    turns = TurnSerializer(
        runtime,
        AgentIdentity(name=config.agent_name, is_terminal=True),
        on_reload=on_reload,
    )

    async def send(text: str) -> bool:
        _print_agent_message(config.agent_name, text, render_markdown=markdown)
        return True

    session = ChatSession(
        session_id=TERMINAL_SESSION_ID,
        platform="terminal",
        bot_id="local",
        user_id="user",
        account="terminal",
        send=send,
    )

    def _thinking_ctx():
        if logs:
            return nullcontext()
        return console.status(f"[dim]{config.agent_name} is thinking...[/dim]", spinner="dots")

    if message:
        async def run_once():
            with _thinking_ctx():
                await turns.submit(session, message)
            await turns.close(session)

        asyncio.run(run_once())
        return

    _init_prompt_session()
    console.print(f"{__logo__} Chatting with {config.agent_name} (type [bold]exit[/bold] or [bold]Ctrl+C[/bold] to quit)\n")

    async def run_interactive():
        try:
            while True:
                try:
                    user_input = await _read_interactive_input_async()
                except KeyboardInterrupt:
                    break
                command = user_input.strip()
                if not command:
                    continue
                if command.lower() in EXIT_COMMANDS:
                    break
                with _thinking_ctx():
                    await turns.submit(session, user_input)
        finally:
            await turns.close(session)
            _restore_terminal()
            console.print("\nGoodbye!")

    try:
        asyncio.run(run_interactive())
    except KeyboardInterrupt:
        _restore_terminal()


# ============================================================================
# Bot accounts
# ============================================================================


accounts_app = typer.Typer(help="Manage bot accounts")
app.add_typer(accounts_app, name="accounts")


def _account_summary(account) -> str:
    from hakimi.agent.tools.config import _mask_value

    cfg = account.config
    if account.type == "telegram":
        return f"token: {_mask_value(cfg.get('token', ''))}" if cfg.get("token") else "[dim]not configured[/dim]"
    if account.type == "slack":
        ok = cfg.get("token") and cfg.get("bot_token")
        return "socket mode" if ok else "[dim]not configured[/dim]"
    if account.type == "feishu":
        return f"app_id: {cfg['app_id']}" if cfg.get("app_id") else "[dim]not configured[/dim]"
    return ""


def _accounts_table(config) -> Table:
    from hakimi.channels.manager import account_key
    from hakimi.channels.registry import find_adapter

    table = Table(title="Bot Accounts")
    table.add_column("Key", style="cyan")
    table.add_column("Platform", style="green")
    table.add_column("Configuration", style="yellow")
    for index, account in enumerate(config.bot_accounts):
        spec = find_adapter(account.type)
        table.add_row(
            account_key(account, index),
            spec.label if spec else account.type,
            _account_summary(account),
        )
    return table


@accounts_app.command("list")
def accounts_list():
    """列出已配置的机器人账号。"""
    from hakimi.config.loader import load_config

    config = load_config()
    if not config.bot_accounts:
        console.print("[dim]No bot accounts configured.[/dim]")
        return
    console.print(_accounts_table(config))


@accounts_app.command("add")
def accounts_add(
    platform: str = typer.Argument(..., help="telegram, slack or feishu"),
    name: str = typer.Option("", "--name", "-n", help="Account name (defaults to <platform>-<index>)"),
    token: str = typer.Option("", "--token", help="Telegram bot token or Slack app token (xapp-)"),
    bot_token: str = typer.Option("", "--bot-token", help="Slack bot token (xoxb-)"),
    app_id: str = typer.Option("", "--app-id", help="Feishu App ID"),
    app_secret: str = typer.Option("", "--app-secret", help="Feishu App Secret"),
    proxy: str = typer.Option("", "--proxy", help="Telegram proxy URL"),
):
    """添加一个机器人账号。"""
    from hakimi.channels.registry import ADAPTERS
    from hakimi.config.loader import load_config, save_config
    from hakimi.config.schema import BotAccountConfig

    spec = ADAPTERS.get(platform)
    if spec is None:
        console.print(f"[red]Unknown platform: {platform}[/red] (choose from {', '.join(ADAPTERS)})")
        raise typer.Exit(1)

    values = {
        "token": token,
        "bot_token": bot_token,
        "app_id": app_id,
        "app_secret": app_secret,
        "proxy": proxy,
    }
    missing = [f"--{f.replace('_', '-')}" for f in spec.required_fields if not values.get(f)]
    if missing:
        console.print(f"[red]Missing required options for {spec.label}: {', '.join(missing)}[/red]")
        raise typer.Exit(1)

    account_config = {"protocol": "polling" if platform == "telegram" else "ws"}
    account_config.update({k: v for k, v in values.items() if v})

    config = load_config()
    if name and any(a.name == name for a in config.bot_accounts):
        console.print(f"[red]An account named {name} already exists[/red]")
        raise typer.Exit(1)

    config.bot_accounts.append(BotAccountConfig(type=platform, name=name, config=account_config))
    save_config(config)
    console.print(f"[green]✓[/green] Added {spec.label} account")


@accounts_app.command("remove")
def accounts_remove(
    key: str = typer.Argument(..., help="Account key as shown by 'hakimi accounts list'"),
):
    """删除一个机器人账号。"""
    from hakimi.channels.manager import account_key
    from hakimi.config.loader import load_config, save_config

    config = load_config()
    for index, account in enumerate(config.bot_accounts):
        if account_key(account, index) == key:
            del config.bot_accounts[index]
            save_config(config)
            console.print(f"[green]✓[/green] Removed {key}")
            return

    console.print(f"[red]No bot account with key {key}[/red]")
    raise typer.Exit(1)


# ============================================================================
# Status
# ============================================================================


@app.command()
def status():
    """显示配置、工作空间、模型、提供商密钥和机器人账号的状态。"""
    from hakimi.config.loader import get_config_path, load_config
    from hakimi.providers.registry import PROVIDERS

    config_path = get_config_path()
    config = load_config()
    workspace = config.workspace_path

    console.print(f"{__logo__} hakimi Status\n")
    console.print(f"Config: {config_path} {'[green]✓[/green]' if config_path.exists() else '[red]✗[/red]'}")
    console.print(f"Workspace: {workspace} {'[green]✓[/green]' if workspace.exists() else '[red]✗[/red]'}")

    if not config_path.exists():
        return

    console.print(f"Agent name: {config.agent_name}")
    console.print(f"Model: {config.agents.defaults.model}")
    for spec in PROVIDERS:
        p = getattr(config.providers, spec.name, None)
        if p is None:
            continue
        if spec.is_local:
            if p.api_base:
                console.print(f"{spec.label}: [green]✓ {p.api_base}[/green]")
            else:
                console.print(f"{spec.label}: [dim]not set[/dim]")
        else:
            console.print(f"{spec.label}: {'[green]✓[/green]' if p.api_key else '[dim]not set[/dim]'}")

    console.print()
    if config.bot_accounts:
        console.print(_accounts_table(config))
    else:
        console.print("[dim]No bot accounts configured.[/dim]")


if __name__ == "__main__":
    app()
