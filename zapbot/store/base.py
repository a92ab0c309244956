"""
持久化存储抽象层 - 会话、对话、消息的 CRUD 契约。

ConversationStore 是一个抽象基类，定义了流水线和监督器所依赖的全部存储操作。
仓库自带 JsonStore 实现（json_store.py）；接入数据库时只需新增一个实现类。

实现约定：
- 所有方法都是异步的，失败时抛出 StoreError
- 查不到的记录：get_* 返回 None，update_*/touch_* 抛出 NotFoundError
- create_conversation 必须对 (session_id, contact_identifier) 施加唯一约束，
  冲突时抛出 ConflictError，由调用方重新查询（"唯一约束 + 冲突重试"）
- list_messages 按 (created_at, seq) 升序返回
"""

from abc import ABC, abstractmethod
from datetime import datetime

from zapbot.store.models import Conversation, Message, Session, SessionStatus

# update_session 的"未传参"哨兵，用来区分"不修改"和"清空为 None"
UNSET: object = object()


class ConversationStore(ABC):
    """会话/对话/消息的持久化接口。"""

    # ---- Session ----

    @abstractmethod
    async def create_session(self, owner_id: str, session_id: str | None = None) -> Session:
        """创建一条 pending 状态的会话记录。"""

    @abstractmethod
    async def get_session(self, session_id: str) -> Session | None:
        pass

    @abstractmethod
    async def list_sessions(self, owner_id: str | None = None) -> list[Session]:
        """列出会话（owner_id 为空时列出全部），按创建时间升序。"""

    @abstractmethod
    async def update_session(
        self,
        session_id: str,
        *,
        status: SessionStatus | None = None,
        qr_payload: str | None | object = UNSET,
    ) -> Session:
        """更新会话状态和/或二维码；qr_payload=None 表示清空。"""

    @abstractmethod
    async def delete_session(self, session_id: str) -> bool:
        """删除会话及其全部对话和消息，返回是否真的删除了记录。"""

    # ---- Conversation ----

    @abstractmethod
    async def create_conversation(
        self,
        session_id: str,
        contact_identifier: str | None = None,
        contact_name: str | None = None,
    ) -> Conversation:
        pass

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        pass

    @abstractmethod
    async def find_conversation(self, session_id: str, contact_identifier: str) -> Conversation | None:
        pass

    @abstractmethod
    async def list_conversations(self, session_id: str) -> list[Conversation]:
        """列出会话下的对话，最近活跃的排在前面。"""

    @abstractmethod
    async def touch_conversation(self, conversation_id: str) -> datetime:
        """把 last_message_at 推进到一个严格更晚的时间点并返回它。"""

    # ---- Message ----

    @abstractmethod
    async def add_message(
        self,
        conversation_id: str,
        sender_identifier: str,
        body: str,
        from_self: bool,
        type: str = "text",
    ) -> Message:
        pass

    @abstractmethod
    async def list_messages(self, conversation_id: str, limit: int | None = None) -> list[Message]:
        """按顺序列出消息；limit 只保留最后 limit 条。"""
