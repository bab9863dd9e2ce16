"""
上下文构建器 - 负责组装 Agent 的系统提示词和消息列表。

系统提示词由以下部分拼接（用 "---" 分隔）：
  1. 核心身份 - 名字、运行平台（终端 / IM）、持久会话说明、回复规则
  2. 引导文件 - workspace 下的 AGENTS.md、SOUL.md、USER.md
  3. hakimi-config 技能 - 教 Agent 如何帮用户配置机器人账号

【Java 开发者类比】
类似于一个 PromptTemplateService，把模板 + 变量渲染成最终的提示词字符串。
"""

import platform
import time as _time
from datetime import datetime
from pathlib import Path
from typing import Any

from loguru import logger

from hakimi.agent.base import AgentIdentity
from hakimi.utils.helpers import ensure_dir

HAKIMI_CONFIG_SKILL = """---
name: hakimi-config
description: Configure Hakimi bot accounts (Telegram/Slack/Feishu). Use this skill when the user wants to set up, modify, or troubleshoot bot account configuration.
---

# Hakimi Configuration

Hakimi connects to instant messaging platforms via bot accounts.

## Config File

Path: `~/.hakimi/config.json`

Use `read_config` to see the current config (secrets are masked) and `write_config`
to replace it. Masked values you leave untouched are kept as they are on disk.
After writing, call `reload_hakimi` to apply the changes.

## Config Format

```json
{
  "agentName": "Hakimi",
  "botAccounts": [
    {"type": "telegram", "config": {"protocol": "polling", "token": "BOT_TOKEN_FROM_BOTFATHER"}},
    {"type": "slack", "config": {"protocol": "ws", "token": "xapp-...", "botToken": "xoxb-..."}},
    {"type": "feishu", "config": {"protocol": "ws", "appId": "cli_xxx", "appSecret": "xxx"}}
  ]
}
```

## Bot Account Setup

### Telegram
1. Message @BotFather on Telegram
2. Send /newbot and follow the prompts
3. Copy the token provided
4. Config: `{"type": "telegram", "config": {"protocol": "polling", "token": "YOUR_TOKEN"}}`

### Slack
1. Create an app at https://api.slack.com/apps
2. Enable Socket Mode
3. Generate an App-Level Token with the `connections:write` scope
4. Install the app and copy the Bot User OAuth Token
5. Config: `{"type": "slack", "config": {"protocol": "ws", "token": "xapp-...", "botToken": "xoxb-..."}}`

### Feishu
1. Create an app at https://open.feishu.cn
2. Copy the App ID and App Secret
3. Enable events with WebSocket (long connection) mode
4. Config: `{"type": "feishu", "config": {"protocol": "ws", "appId": "...", "appSecret": "..."}}`
"""


class ContextBuilder:
    """
    上下文构建器。

    属性:
        workspace: 工作区路径，引导文件和技能文件都在这里
        identity: Agent 身份
        BOOTSTRAP_FILES: 按顺序加载的引导文件
    """

    BOOTSTRAP_FILES = ["AGENTS.md", "SOUL.md", "USER.md"]

    def __init__(self, workspace: Path, identity: AgentIdentity):
        self.workspace = workspace
        self.identity = identity

    def ensure_skill_file(self) -> Path:
        """把内置的 hakimi-config 技能写入 workspace/skills/，每次都覆盖以保持最新。"""
        skill_dir = ensure_dir(self.workspace / "skills" / "hakimi-config")
        skill_file = skill_dir / "SKILL.md"
        skill_file.write_text(HAKIMI_CONFIG_SKILL, encoding="utf-8")
        logger.debug(f"Skill file written to {skill_file}")
        return skill_file

    def build_system_prompt(self) -> str:
        parts = [self._get_identity()]

        bootstrap = self._load_bootstrap_files()
        if bootstrap:
            parts.append(bootstrap)

        parts.append(f"# Skills\n\n{HAKIMI_CONFIG_SKILL}")
        return "\n\n---\n\n".join(parts)

    def _get_identity(self) -> str:
        """生成核心身份描述，包含当前时间和运行环境。"""
        name = self.identity.name
        now = datetime.now().strftime("%Y-%m-%d %H:%M (%A)")
        tz = _time.strftime("%Z") or "UTC"
        system = platform.system()
        runtime = f"{'macOS' if system == 'Darwin' else system} {platform.machine()}, Python {platform.python_version()}"
        if self.identity.is_terminal:
            platform_note = "You are running in a terminal interface."
        else:
            platform_note = "You are accessible via instant messaging platforms (Telegram/Slack/Feishu)."

        return f"""# {name}

Your name is "{name}". Always introduce yourself as "{name}".

{platform_note}

You have PERSISTENT conversation history with each user. You CAN and SHOULD remember what you discussed with the user earlier in this conversation. Never claim you cannot access previous messages.

Reply in the same language the user writes in.

IMPORTANT: You MUST use the send_message tool to reply to the user. Your assistant message content is NOT shown to the user. Only messages sent via send_message reach the user.

IMPORTANT: Prefer calling send_message several times with shorter messages rather than once with one long message.

## Current Time
{now} ({tz})

## Runtime
{runtime}

## Workspace
Your workspace is at: {self.workspace.expanduser().resolve()}"""

    def _load_bootstrap_files(self) -> str:
        """读取 workspace 根目录下存在的引导文件，不存在的跳过。"""
        parts = []
        for filename in self.BOOTSTRAP_FILES:
            file_path = self.workspace / filename
            if file_path.exists():
                content = file_path.read_text(encoding="utf-8")
                parts.append(f"## {filename}\n\n{content}")
        return "\n\n".join(parts)

    def build_messages(self, history: list[dict[str, Any]], current_message: str) -> list[dict[str, Any]]:
        """系统提示词 + 历史 + 当前消息。"""
        messages: list[dict[str, Any]] = [{"role": "system", "content": self.build_system_prompt()}]
        messages.extend(history)
        messages.append({"role": "user", "content": current_message})
        return messages

    def add_tool_result(
        self,
        messages: list[dict[str, Any]],
        tool_call_id: str,
        tool_name: str,
        result: str,
    ) -> list[dict[str, Any]]:
        messages.append({
            "role": "tool",
            "tool_call_id": tool_call_id,
            "name": tool_name,
            "content": result,
        })
        return messages
