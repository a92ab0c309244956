"""
回复缓存模块 - 按提示词内容寻址的 LLM 回复缓存。

同一段提示词（最近几轮历史 + 最新一条用户消息）在有效期内只生成一次回复：

  get_or_generate(prompt, generate_fn)
    ├─ 规范化提示词 → MD5 → 缓存键
    ├─ 命中：直接返回缓存文本，不调用 generate_fn
    ├─ 同键已有生成在途：等待那一次调用的结果（单飞去重）
    └─ 未命中：调用 generate_fn，成功后按 TTL 写入缓存

缓存是建议性的：后端读写失败只记录警告并按"未命中"处理，
丢失缓存只会多花一次生成，不影响正确性。generate_fn 的异常原样抛给调用方，且不会被缓存。
"""

import asyncio
import hashlib
from typing import Awaitable, Callable

from loguru import logger

from zapbot.cache.backends import CacheBackend, MemoryCacheBackend
from zapbot.utils.helpers import normalize_whitespace

GenerateFn = Callable[[str], Awaitable[str]]

DEFAULT_PROMPT_TEMPLATE = (
    "Histórico resumido:\n{history}\n\n"
    "Usuário: {message}\n"
    "Responda de forma curta e objetiva (máx. 2 frases):"
)


def build_prompt(
    user_message: str,
    history: list[str],
    window: int = 5,
    template: str = DEFAULT_PROMPT_TEMPLATE,
) -> str:
    """
    构建发给 LLM 的提示词。

    只保留最近 window 条历史（滑动窗口），window <= 0 时不带历史。

    参数:
        user_message: 最新一条用户消息
        history: 按时间顺序排列的历史行（如 "Usuário: oi"）
        window: 历史窗口大小
        template: 提示词模板，包含 {history} 和 {message} 两个占位符

    返回:
        完整提示词文本
    """
    recent = history[-window:] if window > 0 else []
    return template.format(history="\n".join(recent), message=user_message)


def prompt_hash(prompt: str) -> str:
    """规范化提示词后计算 128 位 MD5 摘要（十六进制）。"""
    return hashlib.md5(normalize_whitespace(prompt).encode("utf-8")).hexdigest()


class ReplyCache:
    """
    带单飞去重的回复缓存。

    属性:
        backend: 缓存后端（默认进程内字典）
        ttl_seconds: 缓存有效期，默认一小时
        key_prefix: 缓存键前缀，便于与同一 Redis 中的其他数据隔离
        _inflight: 正在生成中的键 → 共享的 Future
    """

    def __init__(
        self,
        backend: CacheBackend | None = None,
        ttl_seconds: int = 3600,
        key_prefix: str = "zapbot:reply:",
    ):
        self.backend = backend if backend is not None else MemoryCacheBackend()
        self.ttl_seconds = ttl_seconds
        self.key_prefix = key_prefix
        self._inflight: dict[str, asyncio.Future[str]] = {}
        self.hits = 0
        self.misses = 0

    def key_for(self, prompt: str) -> str:
        return f"{self.key_prefix}{prompt_hash(prompt)}"

    async def get_or_generate(self, prompt: str, generate_fn: GenerateFn) -> str:
        """
        返回提示词对应的回复，必要时调用 generate_fn 生成。

        参数:
            prompt: 完整提示词
            generate_fn: 异步生成函数，接收提示词，返回回复文本

        返回:
            回复文本（来自缓存或新生成）
        """
        key = self.key_for(prompt)

        cached = await self._read(key)
        if cached is not None:
            self.hits += 1
            return cached

        # 同一键已经有生成在途时，等待同一个结果，避免重复的外部调用
        pending = self._inflight.get(key)
        if pending is not None:
            logger.debug(f"Awaiting in-flight generation for {key}")
            try:
                return await asyncio.shield(pending)
            except asyncio.CancelledError:
                if not pending.cancelled():
                    raise
                # 发起方被取消了，由当前调用方重新发起
                return await self.get_or_generate(prompt, generate_fn)

        self.misses += 1
        future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            reply = await generate_fn(prompt)
        except BaseException as e:
            if isinstance(e, asyncio.CancelledError):
                future.cancel()
            else:
                future.set_exception(e)
                # 没有其他等待者时也要取走异常，避免 "exception was never retrieved"
                future.exception()
            raise
        else:
            future.set_result(reply)
            await self._write(key, reply)
            return reply
        finally:
            self._inflight.pop(key, None)

    async def _read(self, key: str) -> str | None:
        try:
            return await self.backend.get(key)
        except Exception as e:
            logger.warning(f"Reply cache read failed, treating as miss: {e}")
            return None

    async def _write(self, key: str, value: str) -> None:
        try:
            await self.backend.set(key, value, self.ttl_seconds)
        except Exception as e:
            logger.warning(f"Reply cache write failed: {e}")

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    async def close(self) -> None:
        await self.backend.close()
