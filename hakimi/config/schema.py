"""
配置数据模型定义 (config/schema.py)
=================================
本模块使用 Pydantic 定义 hakimi 的完整配置结构。
所有配置项都有默认值，用户只需在 config.json 中覆盖需要修改的部分。

整体配置结构（树形）：
Config (根配置)
├── agent_name    - 助手对用户展示的名字（默认 "Hakimi"）
├── bot_accounts  - 机器人账号列表（每项为 telegram / slack / feishu 之一）
├── agents        - Agent 相关配置（模型、温度、工具迭代次数等）
├── providers     - LLM 提供商配置（API Key、API Base URL 等）
└── router        - 会话路由器的时间参数（TTL、发送重试、启动重试、重连延迟）

对于 Java 开发者：
- Pydantic 的 BaseModel 类似于 Java 的 POJO/Record，但自带字段验证和默认值
- BaseSettings 类似于 Spring 的 @ConfigurationProperties，额外支持从环境变量读取配置
- Field(default_factory=...) 类似于 Java 中用工厂方法创建可变默认值，避免共享引用问题
"""

from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# ==============================================================================
# 机器人账号配置
# 磁盘上每个账号是 {type, name, config} 三元组，config 的结构随 type 变化，
# 由下面的三个类型化视图负责校验
# ==============================================================================


class TelegramAccount(BaseModel):
    """Telegram 机器人账号。使用 Bot API 长轮询方式接收消息。"""
    protocol: str = "polling"  # 目前只支持 polling
    token: str = ""  # 从 @BotFather 获取的 Bot Token
    proxy: str | None = None  # HTTP/SOCKS5 代理地址，如 "http://127.0.0.1:7890"
    allow_from: list[str] = Field(default_factory=list)  # 用户 ID / 用户名白名单，空表示不限制


class SlackAccount(BaseModel):
    """Slack 机器人账号。使用 Socket Mode 接收事件（无需公网回调）。"""
    protocol: str = "ws"
    token: str = ""  # App-Level Token (xapp-...)，Socket Mode 必需
    bot_token: str = ""  # Bot Token (xoxb-...)，调用 Web API 发消息
    allow_from: list[str] = Field(default_factory=list)


class FeishuAccount(BaseModel):
    """飞书/Lark 机器人账号。使用 WebSocket 长连接接收事件。"""
    protocol: str = "ws"
    app_id: str = ""  # 飞书开放平台的 App ID
    app_secret: str = ""  # 飞书开放平台的 App Secret
    encrypt_key: str = ""  # 事件订阅的加密密钥（可选）
    verification_token: str = ""  # 事件订阅的验证令牌（可选）
    allow_from: list[str] = Field(default_factory=list)  # 用户 open_id 白名单


AdapterType = Literal["telegram", "slack", "feishu"]

# 账号类型 → 类型化配置视图
ACCOUNT_MODELS: dict[str, type[BaseModel]] = {
    "telegram": TelegramAccount,
    "slack": SlackAccount,
    "feishu": FeishuAccount,
}


class BotAccountConfig(BaseModel):
    """
    单个机器人账号描述。

    name 为空时，连接管理器会用 "{type}-{序号}" 作为账号键。
    """
    type: AdapterType
    name: str = ""
    config: dict[str, Any] = Field(default_factory=dict)

    def typed(self) -> BaseModel:
        """按账号类型把 config 字典校验成对应的类型化模型。"""
        return ACCOUNT_MODELS[self.type].model_validate(self.config)


# ==============================================================================
# Agent 配置
# ==============================================================================


class AgentDefaults(BaseModel):
    """
    Agent 默认配置。

    - model: 使用哪个 LLM 模型（格式: provider/model）
    - max_tool_iterations: 单个回合内工具调用轮次上限，防止死循环
    """
    workspace: str = "~/.hakimi/workspace"  # Agent 工作区目录
    model: str = "moonshot/kimi-k2.5"
    max_tokens: int = 8192
    temperature: float = 0.7
    max_tool_iterations: int = 20


class AgentsConfig(BaseModel):
    """Agent 配置容器。"""
    defaults: AgentDefaults = Field(default_factory=AgentDefaults)


# ==============================================================================
# LLM 提供商配置
# ==============================================================================


class ProviderConfig(BaseModel):
    """单个 LLM 提供商的配置。"""
    api_key: str = ""  # 留空表示未配置该提供商
    api_base: str | None = None  # 自定义 API 基础 URL（私有部署或代理）
    extra_headers: dict[str, str] | None = None  # 额外请求头


class ProvidersConfig(BaseModel):
    """所有 LLM 提供商的聚合配置（用户只需配置使用的那个）。"""
    openrouter: ProviderConfig = Field(default_factory=ProviderConfig)
    moonshot: ProviderConfig = Field(default_factory=ProviderConfig)
    anthropic: ProviderConfig = Field(default_factory=ProviderConfig)
    openai: ProviderConfig = Field(default_factory=ProviderConfig)
    deepseek: ProviderConfig = Field(default_factory=ProviderConfig)
    gemini: ProviderConfig = Field(default_factory=ProviderConfig)
    dashscope: ProviderConfig = Field(default_factory=ProviderConfig)
    vllm: ProviderConfig = Field(default_factory=ProviderConfig)


# ==============================================================================
# 路由器配置
# ==============================================================================


class RouterConfig(BaseModel):
    """
    会话路由器的时间与重试参数。

    退避延迟统一按 min(base × 第几次, cap) 计算：
    - 发送失败：3s, 6s, 9s ... 最多 30s，共 10 次
    - 启动失败：5s, 10s, 15s ... 最多 30s，共 5 次
    - 运行中掉线：固定 5s 后重连，无次数上限
    """
    session_ttl_s: float = 300.0  # 会话空闲多久后回收（滑动窗口）
    send_max_attempts: int = 10
    send_retry_base_s: float = 3.0
    send_retry_max_s: float = 30.0
    start_max_attempts: int = 5
    start_retry_base_s: float = 5.0
    start_retry_max_s: float = 30.0
    reconnect_delay_s: float = 5.0


# ==============================================================================
# 根配置类
# ==============================================================================


class Config(BaseSettings):
    """
    hakimi 根配置类。

    继承自 Pydantic 的 BaseSettings，除了支持从 JSON 文件加载外，
    还支持从环境变量读取配置：
    - 环境变量前缀: HAKIMI_
    - 嵌套分隔符: __ (双下划线)
    - 示例: HAKIMI_ROUTER__SESSION_TTL_S=600 可覆盖 router.session_ttl_s
    """
    agent_name: str = "Hakimi"
    bot_accounts: list[BotAccountConfig] = Field(default_factory=list)
    agents: AgentsConfig = Field(default_factory=AgentsConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    router: RouterConfig = Field(default_factory=RouterConfig)

    @property
    def workspace_path(self) -> Path:
        """获取展开后的工作区绝对路径（将 ~ 展开为用户主目录）。"""
        return Path(self.agents.defaults.workspace).expanduser()

    def _match_provider(self, model: str | None = None) -> tuple["ProviderConfig | None", str | None]:
        """
        根据模型名称匹配对应的 LLM 提供商配置。

        1. 关键词匹配：模型名中包含提供商关键词（如 "kimi" → moonshot），且该提供商已配置 api_key
        2. 兜底匹配：返回第一个已配置 api_key 的提供商（网关类排在最前）
        """
        from hakimi.providers.registry import PROVIDERS
        model_lower = (model or self.agents.defaults.model).lower()

        for spec in PROVIDERS:
            p = getattr(self.providers, spec.name, None)
            if p and any(kw in model_lower for kw in spec.keywords) and p.api_key:
                return p, spec.name

        for spec in PROVIDERS:
            p = getattr(self.providers, spec.name, None)
            if p and p.api_key:
                return p, spec.name
        return None, None

    def get_provider(self, model: str | None = None) -> ProviderConfig | None:
        """获取匹配的提供商配置。"""
        p, _ = self._match_provider(model)
        return p

    def get_provider_name(self, model: str | None = None) -> str | None:
        """获取匹配的提供商注册名称（如 "moonshot"、"openrouter"）。"""
        _, name = self._match_provider(model)
        return name

    def get_api_base(self, model: str | None = None) -> str | None:
        """
        获取指定模型对应的 API Base URL。

        显式配置优先；否则只有网关类提供商返回其默认地址。
        """
        from hakimi.providers.registry import find_by_name
        p, name = self._match_provider(model)
        if p and p.api_base:
            return p.api_base
        if name:
            spec = find_by_name(name)
            if spec and spec.is_gateway and spec.api_base:
                return spec.api_base
        return None

    model_config = SettingsConfigDict(
        env_prefix="HAKIMI_",
        env_nested_delimiter="__",
    )
