"""
hakimi - 多平台即时通讯机器人的会话路由器

模块概述：
    本文件是 hakimi 包的入口文件（__init__.py），定义了包的元信息。
    hakimi 把 Telegram / Slack / 飞书等多个机器人账号桥接到同一个对话 Agent 上，
    对外表现为一个统一的"助手"。

    整个框架的核心功能包括：
    - 多账号机器人连接管理（启动重试、断线重连、状态汇总）
    - 会话路由（按 平台 + 机器人 + 用户 定位会话）
    - 每个会话同一时刻只执行一个 Agent 回合（新消息打断并排队）
    - 空闲会话按滑动 TTL 自动回收
"""

# 版本号，遵循语义化版本规范（主版本.次版本.修订号）
__version__ = "0.1.0"

# 项目 logo 表情符号，用于 CLI 输出等场景的品牌标识
__logo__ = "🐾"
