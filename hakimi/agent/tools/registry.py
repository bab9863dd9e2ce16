"""
工具注册表模块 (agent/tools/registry.py)

LLMAgent 持有一个 ToolRegistry：
1. 创建实例时注册该会话可用的工具
2. 调用 LLM 前用 get_definitions() 取得工具定义
3. 遇到需要批准的工具先问 requires_approval()
4. 执行时用 execute(name, arguments)

execute() 从不抛出异常，错误以文本形式回填给 LLM，让它自己修正参数再试。
"""

from typing import Any, Iterable

from pydantic import ValidationError

from hakimi.agent.tools.base import Tool


def _format_errors(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        where = ".".join(str(p) for p in err["loc"]) or "parameters"
        parts.append(f"{where}: {err['msg']}")
    return "; ".join(parts)


class ToolRegistry:
    """Agent 工具注册表 {工具名: 工具实例}。"""

    def __init__(self, tools: Iterable[Tool] = ()):
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        """注册工具，同名工具会被覆盖。"""
        self._tools[tool.name] = tool

    def requires_approval(self, name: str) -> bool:
        tool = self._tools.get(name)
        return bool(tool and tool.requires_approval)

    def get_definitions(self) -> list[dict[str, Any]]:
        return [tool.to_schema() for tool in self._tools.values()]

    async def execute(self, name: str, arguments: dict[str, Any]) -> str:
        """
        按名称执行工具：查找 → 用 Params 校验参数 → run()。

        返回:
            执行结果文本；工具不存在、参数不合法或执行出错时返回 "Error..." 文本
        """
        tool = self._tools.get(name)
        if not tool:
            return f"Error: Tool '{name}' not found"

        try:
            params = tool.Params.model_validate(arguments)
        except ValidationError as e:
            return f"Error: Invalid parameters for tool '{name}': {_format_errors(e)}"

        try:
            return await tool.run(params)
        except Exception as e:
            return f"Error executing {name}: {e}"

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools
