"""
LLM 服务商注册表 - 各服务商差异的集中声明处。

hakimi 只用到服务商之间的四种差异：API Key 环境变量、LiteLLM 路由前缀、
默认 API 地址、模型级参数覆盖。它们都写在 PROVIDERS 里，LiteLLMProvider
和 Config._match_provider 只读表，不写分支。

添加新的服务商：
  1. 在下方 PROVIDERS 中新增一条 ProviderSpec
  2. 在 config/schema.py 的 ProvidersConfig 中新增同名字段

顺序即优先级：网关排在最前，在没有关键词命中时作为兜底。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

ProviderKind = Literal["gateway", "standard", "local"]


@dataclass(frozen=True)
class ProviderSpec:
    """
    单个 LLM 服务商的元数据。

    属性:
        name: ProvidersConfig 中的字段名
        keywords: 模型名关键词（小写）
        env_key: LiteLLM 读取的 API Key 环境变量名
        kind: gateway 可路由任意模型；local 为本地部署，api_base 必填
        prefix: LiteLLM 路由前缀（"moonshot" → "moonshot/kimi-k2.5"）
        api_base: 默认 API 地址
        api_base_env: LiteLLM 读取 API 地址的环境变量名
        key_prefix: 通过 API Key 前缀识别网关（如 "sk-or-"）
        overrides: 模型级参数覆盖 ((模型名片段, 参数), ...)
    """

    name: str
    keywords: tuple[str, ...]
    env_key: str
    display_name: str = ""
    kind: ProviderKind = "standard"
    prefix: str = ""
    api_base: str = ""
    api_base_env: str = ""
    key_prefix: str = ""
    overrides: tuple[tuple[str, dict[str, Any]], ...] = ()

    @property
    def label(self) -> str:
        return self.display_name or self.name.title()

    @property
    def is_gateway(self) -> bool:
        return self.kind == "gateway"

    @property
    def is_local(self) -> bool:
        return self.kind == "local"

    def matches(self, model: str) -> bool:
        model_lower = model.lower()
        return any(kw in model_lower for kw in self.keywords)

    def qualify(self, model: str) -> str:
        """
        为模型名加上路由前缀。

        已带本服务商前缀的不动；标准服务商遇到网关前缀（如 "openrouter/..."）也不动，
        那是用户显式指定的路由。
        """
        if not self.prefix:
            return model
        head = model.split("/", 1)[0] if "/" in model else ""
        if head == self.prefix:
            return model
        if not self.is_gateway and head in _GATEWAY_PREFIXES:
            return model
        return f"{self.prefix}/{model}"

    def overrides_for(self, model: str) -> dict[str, Any]:
        model_lower = model.lower()
        for pattern, params in self.overrides:
            if pattern in model_lower:
                return dict(params)
        return {}


PROVIDERS: tuple[ProviderSpec, ...] = (
    # ===== 网关 =====
    ProviderSpec(
        name="openrouter",
        keywords=("openrouter",),
        env_key="OPENROUTER_API_KEY",
        display_name="OpenRouter",
        kind="gateway",
        prefix="openrouter",
        api_base="https://openrouter.ai/api/v1",
        key_prefix="sk-or-",
    ),

    # ===== 标准服务商 =====
    # Kimi K2.5 的 API 要求 temperature 为 1.0
    ProviderSpec(
        name="moonshot",
        keywords=("moonshot", "kimi"),
        env_key="MOONSHOT_API_KEY",
        display_name="Moonshot",
        prefix="moonshot",
        api_base="https://api.moonshot.ai/v1",
        api_base_env="MOONSHOT_API_BASE",
        overrides=(("kimi-k2.5", {"temperature": 1.0}),),
    ),
    ProviderSpec(
        name="anthropic",
        keywords=("anthropic", "claude"),
        env_key="ANTHROPIC_API_KEY",
        display_name="Anthropic",
    ),
    ProviderSpec(
        name="openai",
        keywords=("openai", "gpt"),
        env_key="OPENAI_API_KEY",
        display_name="OpenAI",
    ),
    ProviderSpec(
        name="deepseek",
        keywords=("deepseek",),
        env_key="DEEPSEEK_API_KEY",
        display_name="DeepSeek",
        prefix="deepseek",
    ),
    ProviderSpec(
        name="gemini",
        keywords=("gemini",),
        env_key="GEMINI_API_KEY",
        display_name="Gemini",
        prefix="gemini",
    ),
    ProviderSpec(
        name="dashscope",
        keywords=("qwen", "dashscope"),
        env_key="DASHSCOPE_API_KEY",
        display_name="DashScope",
        prefix="dashscope",
    ),

    # ===== 本地部署 =====
    ProviderSpec(
        name="vllm",
        keywords=("vllm",),
        env_key="HOSTED_VLLM_API_KEY",
        display_name="vLLM/Local",
        kind="local",
        prefix="hosted_vllm",
    ),
)

_GATEWAY_PREFIXES = frozenset(spec.prefix for spec in PROVIDERS if spec.is_gateway)


def find_by_name(name: str) -> ProviderSpec | None:
    for spec in PROVIDERS:
        if spec.name == name:
            return spec
    return None


def find_by_model(model: str) -> ProviderSpec | None:
    """按模型名关键词匹配标准服务商。"""
    for spec in PROVIDERS:
        if spec.kind == "standard" and spec.matches(model):
            return spec
    return None


def resolve(
    model: str,
    provider_name: str | None = None,
    api_key: str | None = None,
    api_base: str | None = None,
) -> ProviderSpec | None:
    """
    决定一次请求走哪个服务商。

    顺序：配置字段名指向网关 / 本地部署 → API Key 前缀或 api_base 指向网关 → 按模型名匹配。
    """
    named = find_by_name(provider_name) if provider_name else None
    if named and named.kind != "standard":
        return named

    for spec in PROVIDERS:
        if not spec.is_gateway:
            continue
        if spec.key_prefix and api_key and api_key.startswith(spec.key_prefix):
            return spec
        if api_base and spec.name in api_base:
            return spec

    return find_by_model(model)
