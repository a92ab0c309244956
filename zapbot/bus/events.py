"""
事件类型定义模块 - 定义事件总线中传输的数据结构。

本模块用带标签的联合类型取代字符串事件名：每种事件一个数据类，
kind 字段是类级常量，订阅者可以按类型过滤。

- QrEvent：会话产生了新的配对二维码（payload 为二维码内容）
- StatusEvent：会话状态变化（payload 为 SessionStatus）
- MessageEvent：对话有新消息（payload 为 {conversation_id, messages}）

所有事件都携带 session_id，下游推送层可以按会话分组广播。
MessageEvent 总是携带对话的完整有序历史而不是增量，客户端无需合并或排序。
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Union

from zapbot.store.models import Message, SessionStatus, utcnow


class EventKind(str, Enum):
    QR = "qr"
    STATUS = "status"
    MESSAGE = "message"


@dataclass(frozen=True)
class QrEvent:
    """配对二维码事件。"""

    kind: ClassVar[EventKind] = EventKind.QR

    session_id: str
    qr: str
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def payload(self) -> str:
        return self.qr


@dataclass(frozen=True)
class StatusEvent:
    """会话状态变化事件。"""

    kind: ClassVar[EventKind] = EventKind.STATUS

    session_id: str
    status: SessionStatus
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def payload(self) -> str:
        return self.status.value


@dataclass(frozen=True)
class MessageEvent:
    """
    对话消息事件。

    属性:
        session_id: 所属会话
        conversation_id: 发生变化的对话
        messages: 该对话的完整消息列表（按时间顺序）
    """

    kind: ClassVar[EventKind] = EventKind.MESSAGE

    session_id: str
    conversation_id: str
    messages: tuple[Message, ...]
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def payload(self) -> dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "messages": [m.to_dict() for m in self.messages],
        }


BusEvent = Union[QrEvent, StatusEvent, MessageEvent]
