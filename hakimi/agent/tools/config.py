"""
配置工具 (agent/tools/config.py)

让 Agent 帮用户配置机器人账号：
- read_config: 读取 ~/.hakimi/config.json（密钥字段打码后返回）
- write_config: 校验并写入完整配置（需要批准）

写入前先用 Config 模型校验，格式不对时返回错误文本让 Agent 修正，
不会把损坏的配置落盘。
"""

import json
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from hakimi.agent.tools.base import NoParams, Tool
from hakimi.config.loader import _migrate_config, convert_keys, get_config_path
from hakimi.config.schema import Config

# 这些键的值在 read_config 的输出中打码
SECRET_KEYS = {"token", "botToken", "appSecret", "apiKey", "encryptKey", "verificationToken"}


def _mask(data: Any) -> Any:
    if isinstance(data, dict):
        return {
            k: (_mask_value(v) if k in SECRET_KEYS else _mask(v))
            for k, v in data.items()
        }
    if isinstance(data, list):
        return [_mask(item) for item in data]
    return data


def _mask_value(value: Any) -> Any:
    if not isinstance(value, str) or not value:
        return value
    return value[:6] + "***" if len(value) > 10 else "***"


class WriteConfigParams(BaseModel):
    config: dict[str, Any] = Field(description="The complete configuration object")


class ReadConfigTool(Tool):
    """读取当前配置文件。"""

    name = "read_config"
    description = "Read the current hakimi configuration (config.json). Secret values are masked."

    def __init__(self, config_path: Path | None = None):
        self._config_path = config_path

    async def run(self, params: NoParams) -> str:
        path = self._config_path or get_config_path()
        if not path.exists():
            return "No configuration file exists yet. The current configuration is empty."
        data = json.loads(path.read_text(encoding="utf-8"))
        return json.dumps(_mask(data), indent=2, ensure_ascii=False)


class WriteConfigTool(Tool):
    """
    写入完整配置。

    由于 read_config 返回的密钥是打码的，写回时值为打码形式（以 *** 结尾）的
    密钥字段会保留磁盘上同一账号的原值；找不到对应原值时拒绝写入。
    """

    name = "write_config"
    description = (
        "Write the full hakimi configuration (camelCase JSON, same shape as read_config). "
        "Bot accounts go in botAccounts as {type, name, config}. "
        "Call reload_hakimi afterwards to apply the change."
    )
    Params = WriteConfigParams
    requires_approval = True

    def __init__(self, config_path: Path | None = None):
        self._config_path = config_path

    async def run(self, params: WriteConfigParams) -> str:
        config = params.config
        path = self._config_path or get_config_path()
        existing: dict[str, Any] = {}
        if path.exists():
            try:
                existing = json.loads(path.read_text(encoding="utf-8"))
            except json.JSONDecodeError:
                logger.warning(f"Existing config at {path} is not valid JSON, overwriting")

        try:
            data = _restore_secrets(_migrate_config(dict(config)), existing)
        except ValueError as e:
            return f"Error: {e}. Provide the full secret value instead of the masked one."
        try:
            Config.model_validate(convert_keys(data))
        except ValidationError as e:
            return f"Error: invalid configuration: {e}"

        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
        logger.info(f"Configuration written to {path}")
        return "Configuration saved. Call reload_hakimi to apply it."


def _restore_secrets(new: Any, old: Any, path: str = "") -> Any:
    """
    把新配置中仍是打码形式的密钥替换回旧配置中的原值。

    列表元素按 (type, name) 与旧配置配对，而不是按下标，删除或调整账号顺序后
    密钥仍然跟着原来的账号走。打码值必须与旧值打码后的结果一致才会还原，
    否则抛出 ValueError，整次写入被拒绝。
    """
    if isinstance(new, dict):
        old_dict = old if isinstance(old, dict) else {}
        result = {}
        for k, v in new.items():
            if k in SECRET_KEYS and _is_masked(v):
                original = old_dict.get(k)
                if not isinstance(original, str) or _mask_value(original) != v:
                    raise ValueError(f"masked value at {path}{k} does not match a stored secret")
                result[k] = original
            else:
                result[k] = _restore_secrets(v, old_dict.get(k), f"{path}{k}.")
        return result
    if isinstance(new, list):
        old_list = old if isinstance(old, list) else []
        return [
            _restore_secrets(v, _match_item(v, old_list, i), f"{path}{i}.")
            for i, v in enumerate(new)
        ]
    return new


def _is_masked(value: Any) -> bool:
    return isinstance(value, str) and value.endswith("***")


def _match_item(item: Any, old_list: list[Any], index: int) -> Any:
    """在旧列表中找与 item 同 type、同 name 的元素；不是账号形状的元素才按下标配对。"""
    if not isinstance(item, dict) or not ("type" in item or "name" in item):
        return old_list[index] if index < len(old_list) else None

    candidates = [
        o for o in old_list
        if isinstance(o, dict) and o.get("type") == item.get("type") and o.get("name") == item.get("name")
    ]
    if index < len(old_list) and any(o is old_list[index] for o in candidates):
        return old_list[index]
    return candidates[0] if candidates else None
