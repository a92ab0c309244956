"""
工具函数集合 - zapbot 项目全局通用的辅助函数。

函数分类：
- 路径管理：ensure_dir
- 字符串工具：truncate_string, safe_filename, normalize_whitespace
- 标识工具：new_id, jid_user, is_group_or_broadcast
- 并发工具：KeyedLocks
"""

import asyncio
import re
import uuid
from pathlib import Path

# 群组、广播、频道类的远端标识后缀（这类消息不参与自动回复）
_NON_DIRECT_SUFFIXES = ("@g.us", "@broadcast", "@newsletter")

_WHITESPACE_RE = re.compile(r"\s+")


def ensure_dir(path: Path) -> Path:
    """
    确保目录存在，不存在则递归创建。

    参数:
        path: 目标目录路径

    返回:
        创建后的目录路径（原样返回）
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def truncate_string(s: str, max_len: int = 100, suffix: str = "...") -> str:
    """截断字符串到指定最大长度，超出时添加后缀。"""
    if len(s) <= max_len:
        return s
    return s[: max_len - len(suffix)] + suffix


def safe_filename(name: str) -> str:
    """
    将字符串转换为安全的文件名（替换 < > : " / \\ | ? * 为下划线）。

    参数:
        name: 原始文件名

    返回:
        安全的文件名字符串
    """
    unsafe = '<>:"/\\|?*'
    for char in unsafe:
        name = name.replace(char, "_")
    return name.strip()


def normalize_whitespace(text: str) -> str:
    """去掉首尾空白，并将内部连续空白折叠为单个空格。"""
    return _WHITESPACE_RE.sub(" ", text).strip()


def new_id() -> str:
    """生成一个新的随机标识（UUID4 十六进制字符串）。"""
    return uuid.uuid4().hex


def jid_user(jid: str) -> str:
    """
    提取远端标识的用户部分。

    例: "5511999999999@s.whatsapp.net" → "5511999999999"
    设备后缀同样去掉: "5511999999999:12@s.whatsapp.net" → "5511999999999"
    """
    user = jid.split("@", 1)[0]
    return user.split(":", 1)[0]


def is_group_or_broadcast(jid: str) -> bool:
    """判断远端标识是否为群组、广播或频道。"""
    return jid.endswith(_NON_DIRECT_SUFFIXES)


class KeyedLocks:
    """
    按键分配的异步互斥锁集合。

    同一个键永远拿到同一把 asyncio.Lock，用来串行化同一对话上的处理步骤，
    不同键之间互不阻塞。锁在无人持有也无人等待时回收。
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def lock(self, key: str) -> "_KeyedLockContext":
        return _KeyedLockContext(self, key)

    def __len__(self) -> int:
        return len(self._locks)

    def _acquire_ref(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        return lock

    def _release_ref(self, key: str) -> None:
        self._users[key] -= 1
        if self._users[key] == 0:
            del self._users[key]
            del self._locks[key]


class _KeyedLockContext:
    def __init__(self, owner: KeyedLocks, key: str):
        self._owner = owner
        self._key = key
        self._lock: asyncio.Lock | None = None

    async def __aenter__(self) -> None:
        self._lock = self._owner._acquire_ref(self._key)
        try:
            await self._lock.acquire()
        except BaseException:
            self._owner._release_ref(self._key)
            raise

    async def __aexit__(self, *exc) -> None:
        self._lock.release()
        self._owner._release_ref(self._key)
