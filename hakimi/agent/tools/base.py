"""
工具基类模块 (agent/tools/base.py)

每个工具是 Tool 的子类，用类属性声明 name、description 和参数模型 Params
（一个 pydantic BaseModel），实现 run(params)。

- 发给 LLM 的函数定义由 Params.model_json_schema() 生成
- LLM 给出的参数由 ToolRegistry 用 Params.model_validate() 校验，run() 收到的是模型实例
- requires_approval 为 True 的工具在执行前会让 Agent 产出一个 ApprovalRequest，
  由会话层批准后才真正执行（会修改用户配置的工具都应如此）

设计模式对比（Java 视角）：
    Params 相当于带 @Valid 注解的请求 DTO，run() 相当于 Controller 方法体。
"""

from abc import ABC, abstractmethod
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict


class NoParams(BaseModel):
    """不需要参数的工具使用的空模型。"""
    model_config = ConfigDict(extra="ignore")


class Tool(ABC):
    """Agent 工具的抽象基类。"""

    name: ClassVar[str]
    description: ClassVar[str]
    Params: ClassVar[type[BaseModel]] = NoParams
    requires_approval: ClassVar[bool] = False

    @abstractmethod
    async def run(self, params: Any) -> str:
        """执行工具，返回回填给 LLM 的文本结果。params 是 Params 的实例。"""

    async def execute(self, **arguments: Any) -> str:
        """直接按关键字参数调用：先用 Params 校验（不合法时抛出 ValidationError），再 run()。"""
        return await self.run(self.Params.model_validate(arguments))

    @classmethod
    def parameters(cls) -> dict[str, Any]:
        """参数的 JSON Schema（去掉 pydantic 生成的 title 噪音）。"""
        schema = cls.Params.model_json_schema()
        schema.pop("title", None)
        for prop in schema.get("properties", {}).values():
            prop.pop("title", None)
        return schema

    @classmethod
    def to_schema(cls) -> dict[str, Any]:
        """转换为 LLM API tools 参数所需的函数描述格式。"""
        return {
            "type": "function",
            "function": {
                "name": cls.name,
                "description": cls.description,
                "parameters": cls.parameters(),
            },
        }
