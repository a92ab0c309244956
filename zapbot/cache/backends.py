"""
缓存后端模块 - ReplyCache 的键值存储实现。

- CacheBackend：抽象接口（get / set，带过期时间）
- MemoryCacheBackend：进程内字典，按单调时钟判断过期
- RedisCacheBackend：基于 redis.asyncio，使用 SET ... EX 设置过期

缓存只是建议性的：后端抛出的任何异常都由 ReplyCache 捕获并降级为"未命中"，
所以后端实现不需要自己吞异常。
"""

import time
from abc import ABC, abstractmethod
from typing import Callable


class CacheBackend(ABC):
    """带过期时间的字符串键值存储。"""

    @abstractmethod
    async def get(self, key: str) -> str | None:
        pass

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        pass

    async def close(self) -> None:
        """释放后端资源（默认无需处理）。"""


class MemoryCacheBackend(CacheBackend):
    """
    进程内缓存后端。

    参数:
        clock: 单调时钟函数，默认 time.monotonic（测试中可注入假时钟）
        max_entries: 最大条目数，超出时先清理过期条目，再按插入顺序淘汰最旧的
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, max_entries: int = 10_000):
        self._clock = clock
        self._max_entries = max_entries
        self._entries: dict[str, tuple[str, float]] = {}  # key → (value, expires_at)

    async def get(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._entries.pop(key, None)
        if len(self._entries) >= self._max_entries:
            self._evict()
        self._entries[key] = (value, self._clock() + ttl_seconds)

    def _evict(self) -> None:
        now = self._clock()
        for k in [k for k, (_, exp) in self._entries.items() if exp <= now]:
            del self._entries[k]
        while len(self._entries) >= self._max_entries:
            del self._entries[next(iter(self._entries))]

    def __len__(self) -> int:
        return len(self._entries)


class RedisCacheBackend(CacheBackend):
    """
    Redis 缓存后端。

    连接是惰性的：redis.asyncio 在第一次命令时才真正建立连接，
    所以 Redis 不可用时构造不会失败，只会在 get/set 时抛异常（由 ReplyCache 降级处理）。

    参数:
        url: Redis 连接地址
        timeout: 建立连接和单次读写的超时时间（秒），超时后的异常同样按未命中处理
    """

    def __init__(self, url: str = "redis://localhost:6379/0", timeout: float = 2.0):
        from redis.asyncio import Redis

        self.url = url
        self._client = Redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=timeout,
            socket_timeout=timeout,
        )

    async def get(self, key: str) -> str | None:
        return await self._client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._client.set(key, value, ex=ttl_seconds)

    async def close(self) -> None:
        await self._client.aclose()
