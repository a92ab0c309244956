"""
回复缓存模块 - 以提示词哈希为键缓存 LLM 回复，并对并发的相同请求去重。

- reply_cache.py：ReplyCache、build_prompt、prompt_hash
- backends.py：MemoryCacheBackend / RedisCacheBackend
"""

from zapbot.cache.backends import CacheBackend, MemoryCacheBackend, RedisCacheBackend
from zapbot.cache.reply_cache import ReplyCache, build_prompt, prompt_hash

__all__ = [
    "ReplyCache",
    "build_prompt",
    "prompt_hash",
    "CacheBackend",
    "MemoryCacheBackend",
    "RedisCacheBackend",
]
