"""
工具函数模块 - 提供 zapbot 项目全局通用的辅助函数。

本模块包含：
- ensure_dir：目录管理
- jid_user / is_group_or_broadcast：远端标识解析
- KeyedLocks：按键互斥锁
"""

from zapbot.utils.helpers import (
    KeyedLocks,
    ensure_dir,
    is_group_or_broadcast,
    jid_user,
    truncate_string,
)

__all__ = ["ensure_dir", "jid_user", "is_group_or_broadcast", "KeyedLocks", "truncate_string"]
