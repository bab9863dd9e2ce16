"""
基于 LiteLLM 的 LLM 提供者。

LiteLLM 把上百家服务商的 API 统一成 OpenAI 格式（类比 Java 世界的 JDBC）。
本模块负责三件事：
1. 模型名解析：按注册表为模型名加上 LiteLLM 路由前缀（kimi-k2.5 → moonshot/kimi-k2.5）
2. 环境变量：按注册表设置 LiteLLM 需要的 API Key / API Base 环境变量
3. 容错：调用失败时返回 finish_reason="error" 的响应，不打断 Agent 循环

注意：interrupt() 通过取消正在 await 的任务实现，CancelledError 不会被这里的
except Exception 吞掉。
"""

import json
import os
from typing import Any

import litellm
from litellm import acompletion
from loguru import logger

from hakimi.providers.base import LLMProvider, LLMResponse, ToolCallRequest
from hakimi.providers.registry import ProviderSpec, find_by_model, resolve


class LiteLLMProvider(LLMProvider):
    """
    LiteLLM 提供者。

    参数:
        api_key: API 密钥
        api_base: 自定义 API 地址（代理、网关、本地部署）
        default_model: 默认模型
        extra_headers: 额外请求头
        provider_name: 配置中的服务商字段名，用于识别网关 / 本地部署
    """

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        default_model: str = "moonshot/kimi-k2.5",
        extra_headers: dict[str, str] | None = None,
        provider_name: str | None = None,
    ):
        self.api_key = api_key
        self.api_base = api_base
        self.default_model = default_model
        self.extra_headers = extra_headers or {}

        spec = resolve(default_model, provider_name, api_key, api_base)
        # 网关和本地部署接管所有模型；标准服务商按每次请求的模型名匹配
        self._pinned = spec if spec and spec.kind != "standard" else None

        if api_key and spec:
            self._setup_env(spec, api_key, api_base)
        if api_base:
            litellm.api_base = api_base

        litellm.suppress_debug_info = True
        # 丢弃服务商不支持的参数
        litellm.drop_params = True

    def _setup_env(self, spec: ProviderSpec, api_key: str, api_base: str | None) -> None:
        """设置 LiteLLM 读取的环境变量。网关强制覆盖，其他不覆盖已有值。"""
        if spec.is_gateway:
            os.environ[spec.env_key] = api_key
        else:
            os.environ.setdefault(spec.env_key, api_key)

        base = api_base or spec.api_base
        if spec.api_base_env and base:
            os.environ.setdefault(spec.api_base_env, base)

    def _spec_for(self, model: str) -> ProviderSpec | None:
        return self._pinned or find_by_model(model)

    def _build_request(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        model: str,
        max_tokens: int,
        temperature: float,
    ) -> dict[str, Any]:
        spec = self._spec_for(model)
        kwargs: dict[str, Any] = {
            "model": spec.qualify(model) if spec else model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if spec:
            kwargs.update(spec.overrides_for(model))
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.extra_headers:
            kwargs["extra_headers"] = self.extra_headers
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        return kwargs

    async def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ) -> LLMResponse:
        kwargs = self._build_request(messages, tools, model or self.default_model, max_tokens, temperature)
        try:
            response = await acompletion(**kwargs)
        except Exception as e:
            logger.error(f"LLM call failed ({kwargs['model']}): {e}")
            return LLMResponse.failure(f"Error calling LLM: {e}")
        return self._parse_response(response)

    def _parse_response(self, response: Any) -> LLMResponse:
        """把 OpenAI 格式的原始响应转换为 LLMResponse。"""
        choice = response.choices[0]
        message = choice.message

        tool_calls = []
        for tc in getattr(message, "tool_calls", None) or []:
            args = tc.function.arguments
            if isinstance(args, str):
                try:
                    args = json.loads(args)
                except json.JSONDecodeError:
                    args = {"raw": args}
            tool_calls.append(ToolCallRequest(id=tc.id, name=tc.function.name, arguments=args))

        return LLMResponse(
            content=message.content,
            tool_calls=tool_calls,
            finish_reason=choice.finish_reason or "stop",
            reasoning_content=getattr(message, "reasoning_content", None),
        )
