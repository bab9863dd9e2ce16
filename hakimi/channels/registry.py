"""
适配器注册表 - 各 IM 平台差异的集中声明处。

与 providers/registry.py 的思路相同：平台之间的差异（实现类所在模块、
展示名、账号配置说明）全部写在 ADAPTERS 表中，路由器和连接管理器里
不出现任何 if platform == "slack" 之类的分支。

私聊判定、文本格式化等行为差异由各 BaseChannel 子类覆盖方法实现。

添加新平台只需三步：
  1. 在 config/schema.py 中添加账号配置类并登记到 ACCOUNT_MODELS
  2. 创建 channels/your_platform.py 继承 BaseChannel
  3. 在下方 ADAPTERS 中新增一条 AdapterSpec
"""

from __future__ import annotations

import importlib
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from hakimi.bus.queue import MessageBus
    from hakimi.channels.base import BaseChannel
    from hakimi.config.schema import BotAccountConfig


@dataclass(frozen=True)
class AdapterSpec:
    """
    单个 IM 平台的元数据。

    属性:
        type: 账号配置中的 type 字段值
        module: 实现类所在模块（延迟导入，未使用的平台无需安装 SDK）
        class_name: 实现类名
        display_name: 展示名称
        required_fields: 账号 config 中必须填写的字段（snake_case）
    """

    type: str
    module: str
    class_name: str
    display_name: str = ""
    required_fields: tuple[str, ...] = ()

    @property
    def label(self) -> str:
        return self.display_name or self.type.title()


ADAPTERS: dict[str, AdapterSpec] = {
    # Telegram：Bot API 长轮询
    "telegram": AdapterSpec(
        type="telegram",
        module="hakimi.channels.telegram",
        class_name="TelegramChannel",
        display_name="Telegram",
        required_fields=("token",),
    ),
    # Slack：Socket Mode，需要 xapp- 应用令牌和 xoxb- 机器人令牌
    "slack": AdapterSpec(
        type="slack",
        module="hakimi.channels.slack",
        class_name="SlackChannel",
        display_name="Slack",
        required_fields=("token", "bot_token"),
    ),
    # 飞书：WebSocket 长连接
    "feishu": AdapterSpec(
        type="feishu",
        module="hakimi.channels.feishu",
        class_name="FeishuChannel",
        display_name="Feishu",
        required_fields=("app_id", "app_secret"),
    ),
}


def find_adapter(type_: str) -> AdapterSpec | None:
    """按账号类型查找适配器规格。"""
    return ADAPTERS.get(type_)


def create_channel(account: BotAccountConfig, bus: MessageBus, key: str) -> BaseChannel:
    """
    根据账号类型创建适配器实例。

    平台 SDK 未安装时抛出 ImportError；未知类型抛出 ValueError。
    """
    spec = find_adapter(account.type)
    if spec is None:
        raise ValueError(f"Unknown adapter type: {account.type}")
    module = importlib.import_module(spec.module)
    cls = getattr(module, spec.class_name)
    return cls(account, bus, key)
