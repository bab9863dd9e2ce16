"""
配置模块 - 负责 hakimi 的配置加载与管理。

- Config: 根配置模型（Pydantic BaseSettings，支持 HAKIMI_ 环境变量覆盖）
- load_config / get_config_path: 从 ~/.hakimi/config.json 加载配置
"""

from hakimi.config.loader import get_config_path, load_config, save_config
from hakimi.config.schema import BotAccountConfig, Config, RouterConfig

__all__ = ["Config", "BotAccountConfig", "RouterConfig", "load_config", "save_config", "get_config_path"]
