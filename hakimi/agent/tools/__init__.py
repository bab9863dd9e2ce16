"""
Agent 工具模块。

- Tool / ToolRegistry: 工具基类与注册表
- SendMessageTool: 给用户发消息（回复的唯一途径）
- ReloadTool: 本轮结束后重新加载配置
- ReadConfigTool / WriteConfigTool: 读写 ~/.hakimi/config.json
"""

from hakimi.agent.tools.base import Tool
from hakimi.agent.tools.config import ReadConfigTool, WriteConfigTool
from hakimi.agent.tools.message import SendMessageTool
from hakimi.agent.tools.registry import ToolRegistry
from hakimi.agent.tools.reload import ReloadTool

__all__ = ["Tool", "ToolRegistry", "SendMessageTool", "ReloadTool", "ReadConfigTool", "WriteConfigTool"]
