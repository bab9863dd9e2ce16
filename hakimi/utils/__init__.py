"""
工具函数模块 - 路径与字符串辅助函数。
"""

from hakimi.utils.helpers import ensure_dir, get_data_path, get_workspace_path, truncate_string

__all__ = ["ensure_dir", "get_data_path", "get_workspace_path", "truncate_string"]
