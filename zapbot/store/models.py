"""
数据模型定义模块 - 会话、对话、消息三类持久化实体。

- Session：一个可寻址的聊天传输身份（有独立的连接生命周期与凭证）
- Conversation：会话与某个对端之间的有序消息线程
- Message：对话中的一条消息，创建后不可变

这些类同时也是事件总线上 MessageEvent 的载荷类型，
to_dict()/from_dict() 用于 JSON 存储和对外推送时的序列化。

【排序约定】
消息按 (created_at, seq) 排序：seq 由存储层按写入顺序单调分配，
created_at 由存储层的单调时钟给出，因此回复一定晚于它所回答的入站消息。
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class SessionStatus(str, Enum):
    """会话状态：pending（等待/重连中）→ qr（等待扫码）→ connected；disconnected 为终态。"""

    PENDING = "pending"
    QR = "qr"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@dataclass
class Session:
    """
    会话记录。

    属性:
        id: 会话唯一标识
        owner_id: 所属用户
        status: 当前连接状态（只由 ConnectionSupervisor 和 disconnect 修改）
        qr_payload: 待扫描的二维码内容，仅在 qr 状态下非空
        created_at: 创建时间
    """

    id: str
    owner_id: str
    status: SessionStatus = SessionStatus.PENDING
    qr_payload: str | None = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "status": self.status.value,
            "qr_payload": self.qr_payload,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        return cls(
            id=data["id"],
            owner_id=data["owner_id"],
            status=SessionStatus(data.get("status", SessionStatus.PENDING.value)),
            qr_payload=data.get("qr_payload"),
            created_at=_dt(data.get("created_at")) or utcnow(),
        )


@dataclass
class Conversation:
    """
    对话记录。

    contact_identifier 为空表示"裸对话"（例如直接与助手聊天，不绑定任何联系人）；
    非空时 (session_id, contact_identifier) 唯一。
    """

    id: str
    session_id: str
    contact_identifier: str | None = None
    contact_name: str | None = None
    last_message_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "contact_identifier": self.contact_identifier,
            "contact_name": self.contact_name,
            "last_message_at": self.last_message_at.isoformat() if self.last_message_at else None,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Conversation":
        return cls(
            id=data["id"],
            session_id=data["session_id"],
            contact_identifier=data.get("contact_identifier"),
            contact_name=data.get("contact_name"),
            last_message_at=_dt(data.get("last_message_at")),
            created_at=_dt(data.get("created_at")) or utcnow(),
        )


@dataclass(frozen=True)
class Message:
    """
    消息记录（不可变）。

    属性:
        id: 消息唯一标识
        conversation_id: 所属对话
        sender_identifier: 发送方标识（入站为联系人，回复为会话自身）
        from_self: 是否由本方发出（自动回复为 True）
        body: 文本内容
        type: 消息类型，目前只有 "text"
        created_at: 创建时间（存储层单调时钟）
        seq: 存储层全局递增序号
    """

    id: str
    conversation_id: str
    sender_identifier: str
    from_self: bool
    body: str
    type: str = "text"
    created_at: datetime = field(default_factory=utcnow)
    seq: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "sender_identifier": self.sender_identifier,
            "from_self": self.from_self,
            "body": self.body,
            "type": self.type,
            "created_at": self.created_at.isoformat(),
            "seq": self.seq,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        return cls(
            id=data["id"],
            conversation_id=data["conversation_id"],
            sender_identifier=data["sender_identifier"],
            from_self=bool(data["from_self"]),
            body=data["body"],
            type=data.get("type", "text"),
            created_at=_dt(data.get("created_at")) or utcnow(),
            seq=int(data.get("seq", 0)),
        )
