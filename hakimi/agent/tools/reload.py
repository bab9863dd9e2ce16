"""
重新加载工具 (agent/tools/reload.py)

Agent 修改配置后调用 reload_hakimi。工具本身只做标记，真正的重载
（重新读取配置、重启所有机器人账号）在当前这条消息处理完之后执行，
避免在 Agent 还在回复时就把自己所在的会话关掉。
"""

from typing import Callable

from hakimi.agent.tools.base import NoParams, Tool


class ReloadTool(Tool):
    """请求在本轮结束后重新加载配置。"""

    name = "reload_hakimi"
    description = (
        "Reload the configuration and restart all bot accounts. "
        "Call this after changing the config with write_config. "
        "The reload happens after your current reply is finished."
    )

    def __init__(self, on_reload: Callable[[], None] | None):
        self._on_reload = on_reload

    async def run(self, params: NoParams) -> str:
        if not self._on_reload:
            return "Error: reload is not available in this session."
        self._on_reload()
        return "Reload scheduled. It will take effect after this reply."
