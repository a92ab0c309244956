"""
消息流水线模块 - 入站消息 → 持久化 → LLM 回复 → 持久化 → 发送 → 发布。
"""

from zapbot.pipeline.pipeline import FALLBACK_REPLY, MessagePipeline, accept_transport_message

__all__ = ["MessagePipeline", "accept_transport_message", "FALLBACK_REPLY"]
