"""
消息发送工具模块 (agent/tools/message.py)

send_message 是 Agent 回复用户的唯一途径：Agent 的普通文本输出只会进日志，
只有调用这个工具的内容才会真正发到 IM 平台或终端。

数据流：
    LLM tool_call("send_message", {message: "你好"})
      → SendMessageTool.run()
        → AgentHooks.on_send(text)（会话绑定的发送函数，带重试）
          → 原始机器人账号 → 用户
"""

from typing import Awaitable, Callable

from pydantic import BaseModel, Field

from hakimi.agent.tools.base import Tool


class SendMessageParams(BaseModel):
    message: str = Field(min_length=1, description="The message text to send")


class SendMessageTool(Tool):
    """把一条消息发给当前会话的用户。"""

    name = "send_message"
    description = (
        "Send a message to the user. This is the ONLY way the user can see your reply. "
        "You may call it several times to send several short messages."
    )
    Params = SendMessageParams

    def __init__(self, send_callback: Callable[[str], Awaitable[bool]]):
        self._send_callback = send_callback

    async def run(self, params: SendMessageParams) -> str:
        if await self._send_callback(params.message):
            return "Message sent."
        return "Error: the message could not be delivered."
