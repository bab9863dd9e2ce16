"""
工具函数集合 - hakimi 全局通用的辅助函数。

函数分类：
- 路径管理：ensure_dir, get_data_path, get_workspace_path
- 字符串工具：truncate_string
"""

from pathlib import Path


def ensure_dir(path: Path) -> Path:
    """确保目录存在，不存在则递归创建，返回原路径。"""
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_path() -> Path:
    """获取 hakimi 数据目录（~/.hakimi）。自动创建不存在的目录。"""
    return ensure_dir(Path.home() / ".hakimi")


def get_workspace_path(workspace: str | None = None) -> Path:
    """
    获取工作空间路径。

    工作空间存放 Agent 的引导文件（AGENTS.md、SOUL.md、USER.md）。

    参数:
        workspace: 自定义工作空间路径。为 None 时使用默认路径 ~/.hakimi/workspace

    返回:
        展开并确保存在的工作空间路径
    """
    if workspace:
        path = Path(workspace).expanduser()
    else:
        path = Path.home() / ".hakimi" / "workspace"
    return ensure_dir(path)


def truncate_string(s: str, max_len: int = 100, suffix: str = "...") -> str:
    """截断字符串到指定最大长度（包含后缀），超出时添加后缀。"""
    if len(s) <= max_len:
        return s
    return s[: max_len - len(suffix)] + suffix
