"""
JSON 文件存储实现 - ConversationStore 的默认实现。

采用"内存索引 + 磁盘快照"的双层架构：
- 内存层：三个字典分别保存会话、对话、消息，所有读操作直接走内存
- 磁盘层：每次写操作后把完整快照写入一个 JSON 文件，程序重启后可恢复

【存储格式】
{
  "seq": 42,                       # 最近分配的消息序号
  "sessions": [...],               # Session.to_dict() 列表
  "conversations": [...],          # Conversation.to_dict() 列表
  "messages": [...]                # Message.to_dict() 列表
}

写入先落到同目录的临时文件，再 os.replace 原子替换，避免写到一半崩溃时损坏快照。
path 为 None 时只在内存中工作（测试和临时运行使用）。

【并发】
所有写操作在同一把 asyncio.Lock 内执行；对话的唯一约束检查与插入处于同一临界区，
因此并发的"查找或创建"不会产生重复对话。
"""

import asyncio
import json
import os
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable

from loguru import logger

from zapbot.errors import ConflictError, NotFoundError, StoreError
from zapbot.store.base import UNSET, ConversationStore
from zapbot.store.models import Conversation, Message, Session, SessionStatus, utcnow
from zapbot.utils.helpers import ensure_dir, new_id

_TICK = timedelta(microseconds=1)


class JsonStore(ConversationStore):
    """
    基于单个 JSON 文件的会话/对话/消息存储。

    属性:
        path: 快照文件路径（None 表示纯内存）
        _sessions / _conversations / _messages: 内存索引
        _by_contact: (session_id, contact_identifier) → conversation_id 唯一索引
        _seq: 消息序号计数器
        _last_ts: 单调时钟的上一个取值
    """

    def __init__(self, path: Path | None = None):
        self.path = path
        self._sessions: dict[str, Session] = {}
        self._conversations: dict[str, Conversation] = {}
        self._messages: dict[str, list[Message]] = {}
        self._by_contact: dict[tuple[str, str], str] = {}
        self._seq = 0
        self._last_ts: datetime | None = None
        self._lock = asyncio.Lock()

        if path is not None:
            ensure_dir(path.parent)
            self._load()

    # ------------------------------------------------------------------
    # 磁盘读写
    # ------------------------------------------------------------------

    def _load(self) -> None:
        """从快照文件恢复内存索引。文件不存在时以空库启动，文件损坏时抛出 StoreError。"""
        if not self.path.exists():
            return

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise StoreError(f"Failed to load store from {self.path}: {e}") from e

        for raw in data.get("sessions", []):
            session = Session.from_dict(raw)
            self._sessions[session.id] = session
        for raw in data.get("conversations", []):
            conv = Conversation.from_dict(raw)
            self._conversations[conv.id] = conv
            if conv.contact_identifier is not None:
                self._by_contact[(conv.session_id, conv.contact_identifier)] = conv.id
        for raw in data.get("messages", []):
            msg = Message.from_dict(raw)
            self._messages.setdefault(msg.conversation_id, []).append(msg)
            self._observe_ts(msg.created_at)
        for msgs in self._messages.values():
            msgs.sort(key=lambda m: (m.created_at, m.seq))
        for conv in self._conversations.values():
            if conv.last_message_at:
                self._observe_ts(conv.last_message_at)
        self._seq = int(data.get("seq", 0))

        logger.debug(
            f"Loaded store from {self.path}: {len(self._sessions)} sessions, "
            f"{len(self._conversations)} conversations"
        )

    def _snapshot(self) -> dict[str, Any]:
        return {
            "seq": self._seq,
            "sessions": [s.to_dict() for s in self._sessions.values()],
            "conversations": [c.to_dict() for c in self._conversations.values()],
            "messages": [m.to_dict() for msgs in self._messages.values() for m in msgs],
        }

    def _flush(self) -> None:
        if self.path is None:
            return
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(self._snapshot(), f, ensure_ascii=False)
            os.replace(tmp, self.path)
        except OSError as e:
            raise StoreError(f"Failed to write store to {self.path}: {e}") from e

    def _commit(self, undo: Callable[[], None]) -> None:
        """落盘；失败时执行 undo 回滚内存改动后再抛出。"""
        try:
            self._flush()
        except StoreError:
            undo()
            raise

    # ------------------------------------------------------------------
    # 单调时钟
    # ------------------------------------------------------------------

    def _observe_ts(self, ts: datetime) -> None:
        if self._last_ts is None or ts > self._last_ts:
            self._last_ts = ts

    def _next_ts(self) -> datetime:
        """返回一个严格晚于之前所有取值的时间戳（系统时钟回拨时也成立）。"""
        now = utcnow()
        if self._last_ts is not None and now <= self._last_ts:
            now = self._last_ts + _TICK
        self._last_ts = now
        return now

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    async def create_session(self, owner_id: str, session_id: str | None = None) -> Session:
        async with self._lock:
            sid = session_id or new_id()
            if sid in self._sessions:
                raise ConflictError(f"Session already exists: {sid}")
            session = Session(id=sid, owner_id=owner_id, created_at=self._next_ts())
            self._sessions[sid] = session
            self._commit(lambda: self._sessions.pop(sid, None))
            return session

    async def get_session(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    async def list_sessions(self, owner_id: str | None = None) -> list[Session]:
        sessions = [
            s for s in self._sessions.values()
            if owner_id is None or s.owner_id == owner_id
        ]
        return sorted(sessions, key=lambda s: s.created_at)

    async def update_session(
        self,
        session_id: str,
        *,
        status: SessionStatus | None = None,
        qr_payload: str | None | object = UNSET,
    ) -> Session:
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise NotFoundError("session", session_id)
            old_status, old_qr = session.status, session.qr_payload
            if status is not None:
                session.status = status
            if qr_payload is not UNSET:
                session.qr_payload = qr_payload

            def undo() -> None:
                session.status, session.qr_payload = old_status, old_qr

            self._commit(undo)
            return session

    async def delete_session(self, session_id: str) -> bool:
        async with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is None:
                return False
            removed_convs = [c for c in self._conversations.values() if c.session_id == session_id]
            removed_msgs: dict[str, list[Message]] = {}
            for conv in removed_convs:
                del self._conversations[conv.id]
                if conv.contact_identifier is not None:
                    self._by_contact.pop((session_id, conv.contact_identifier), None)
                removed_msgs[conv.id] = self._messages.pop(conv.id, [])

            def undo() -> None:
                self._sessions[session_id] = session
                for conv in removed_convs:
                    self._conversations[conv.id] = conv
                    if conv.contact_identifier is not None:
                        self._by_contact[(session_id, conv.contact_identifier)] = conv.id
                self._messages.update({k: v for k, v in removed_msgs.items() if v})

            self._commit(undo)
            return True

    # ------------------------------------------------------------------
    # Conversation
    # ------------------------------------------------------------------

    async def create_conversation(
        self,
        session_id: str,
        contact_identifier: str | None = None,
        contact_name: str | None = None,
    ) -> Conversation:
        async with self._lock:
            if session_id not in self._sessions:
                raise NotFoundError("session", session_id)
            key = (session_id, contact_identifier)
            if contact_identifier is not None and key in self._by_contact:
                raise ConflictError(
                    f"Conversation for {contact_identifier} already exists in session {session_id}"
                )

            conv = Conversation(
                id=new_id(),
                session_id=session_id,
                contact_identifier=contact_identifier,
                contact_name=contact_name,
                created_at=self._next_ts(),
            )
            self._conversations[conv.id] = conv
            if contact_identifier is not None:
                self._by_contact[key] = conv.id

            def undo() -> None:
                self._conversations.pop(conv.id, None)
                if contact_identifier is not None:
                    self._by_contact.pop(key, None)

            self._commit(undo)
            return conv

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        return self._conversations.get(conversation_id)

    async def find_conversation(self, session_id: str, contact_identifier: str) -> Conversation | None:
        conv_id = self._by_contact.get((session_id, contact_identifier))
        return self._conversations.get(conv_id) if conv_id else None

    async def list_conversations(self, session_id: str) -> list[Conversation]:
        convs = [c for c in self._conversations.values() if c.session_id == session_id]
        # 最近活跃的对话排在前面；没有消息的对话按创建时间排
        return sorted(convs, key=lambda c: c.last_message_at or c.created_at, reverse=True)

    async def touch_conversation(self, conversation_id: str) -> datetime:
        async with self._lock:
            conv = self._conversations.get(conversation_id)
            if conv is None:
                raise NotFoundError("conversation", conversation_id)
            previous = conv.last_message_at
            conv.last_message_at = self._next_ts()

            def undo() -> None:
                conv.last_message_at = previous

            self._commit(undo)
            return conv.last_message_at

    # ------------------------------------------------------------------
    # Message
    # ------------------------------------------------------------------

    async def add_message(
        self,
        conversation_id: str,
        sender_identifier: str,
        body: str,
        from_self: bool,
        type: str = "text",
    ) -> Message:
        async with self._lock:
            if conversation_id not in self._conversations:
                raise NotFoundError("conversation", conversation_id)
            self._seq += 1
            msg = Message(
                id=new_id(),
                conversation_id=conversation_id,
                sender_identifier=sender_identifier,
                from_self=from_self,
                body=body,
                type=type,
                created_at=self._next_ts(),
                seq=self._seq,
            )
            bucket = self._messages.setdefault(conversation_id, [])
            bucket.append(msg)

            def undo() -> None:
                bucket.remove(msg)
                self._seq -= 1

            self._commit(undo)
            return msg

    async def list_messages(self, conversation_id: str, limit: int | None = None) -> list[Message]:
        msgs = self._messages.get(conversation_id, [])
        if limit is not None:
            return list(msgs[-limit:]) if limit > 0 else []
        return list(msgs)
