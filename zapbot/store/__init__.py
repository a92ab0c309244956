"""
存储模块 - 会话、对话、消息的持久化账本。

- models.py：数据模型（Session / Conversation / Message / SessionStatus）
- base.py：ConversationStore 抽象接口
- json_store.py：基于 JSON 文件的默认实现
"""

from zapbot.store.base import ConversationStore
from zapbot.store.json_store import JsonStore
from zapbot.store.models import Conversation, Message, Session, SessionStatus

__all__ = ["ConversationStore", "JsonStore", "Session", "Conversation", "Message", "SessionStatus"]
