"""
传输层基类模块 - 定义聊天传输连接的统一接口。

监督器把具体的聊天协议（配对、加密、帧格式）当作黑盒，只依赖这里的契约：

  Transport.open(session_id, credentials) -> TransportHandle
  handle.on(kind, callback)       # 注册事件回调
  await handle.send(recipient, text)
  await handle.close()

【事件类型】
- qr               : 新的配对二维码，回调参数为二维码字符串
- connection_open  : 连接建立
- connection_close : 连接关闭，回调参数为 CloseCause
- message_batch    : 一批入站消息，回调参数为 list[TransportMessage]
- creds_update     : 凭证更新，回调参数为 dict（由监督器负责持久化）

【回调注册时机】
open() 返回的句柄在调用方下一次 await 之前不会投递事件，
调用方应在 open() 返回后立即（同步地）注册全部回调。
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from loguru import logger

# Baileys 的 DisconnectReason.loggedOut 与 HTTP 401 相同
LOGGED_OUT_CODE = 401


class TransportEventKind(str, Enum):
    QR = "qr"
    OPEN = "connection_open"
    CLOSE = "connection_close"
    MESSAGES = "message_batch"
    CREDS = "creds_update"


@dataclass(frozen=True)
class CloseCause:
    """
    连接关闭原因。

    属性:
        code: 状态码（如 401 / 408 / 515），未知时为 None
        reason: 可读的原因描述
        logged_out: 传输层是否明确报告"已登出"
    """

    code: int | None = None
    reason: str = ""
    logged_out: bool = False

    @property
    def is_terminal(self) -> bool:
        """登出或 401 类错误是终止性的：凭证已失效，不再自动重连。"""
        return self.logged_out or self.code == LOGGED_OUT_CODE


@dataclass(frozen=True)
class TransportMessage:
    """
    传输层投递的一条入站消息（已标准化）。

    属性:
        id: 传输层消息 ID
        remote_jid: 对端标识（私聊为 "<号码>@s.whatsapp.net"，群组以 "@g.us" 结尾）
        from_me: 是否由本账号自己发出
        text: 提取到的文本内容，非文本消息为 None
        push_name: 对端昵称
        timestamp: 传输层时间戳（秒）
    """

    id: str
    remote_jid: str
    from_me: bool = False
    text: str | None = None
    push_name: str | None = None
    timestamp: int | None = None

    @classmethod
    def from_raw(cls, data: dict[str, Any]) -> "TransportMessage":
        """
        从桥接服务的 JSON 解析消息。

        兼容两种形态：
        - Baileys 原始结构：{"key": {...}, "message": {"conversation": ...}, "pushName": ...}
        - 扁平结构：{"id", "remoteJid", "fromMe", "text", "pushName", "timestamp"}
        """
        key = data.get("key") or {}
        body = data.get("message") or {}
        text = data.get("text")
        if text is None and isinstance(body, dict):
            # 普通文本在 conversation 字段，带引用/链接预览的文本在 extendedTextMessage.text
            text = body.get("conversation") or (body.get("extendedTextMessage") or {}).get("text")

        ts = data.get("messageTimestamp", data.get("timestamp"))
        return cls(
            id=str(key.get("id") or data.get("id") or ""),
            remote_jid=str(key.get("remoteJid") or data.get("remoteJid") or data.get("chatId") or ""),
            from_me=bool(key.get("fromMe", data.get("fromMe", False))),
            text=text,
            push_name=data.get("pushName"),
            timestamp=int(ts) if ts is not None else None,
        )


Callback = Callable[..., Awaitable[None]]


class TransportHandle(ABC):
    """
    一条传输连接的运行时句柄。

    子类只需实现 send() 和 close()，并在收到底层事件时调用 _emit()。
    """

    def __init__(self, session_id: str):
        self.session_id = session_id
        self._callbacks: dict[TransportEventKind, list[Callback]] = {}

    def on(self, kind: TransportEventKind, callback: Callback) -> None:
        """注册事件回调，同一事件可以注册多个。"""
        self._callbacks.setdefault(TransportEventKind(kind), []).append(callback)

    async def _emit(self, kind: TransportEventKind, *args: Any) -> None:
        for callback in self._callbacks.get(kind, []):
            try:
                await callback(*args)
            except Exception as e:
                logger.error(f"Error in {kind.value} handler for session {self.session_id}: {e}")

    @abstractmethod
    async def send(self, recipient: str, text: str) -> None:
        """发送一条文本消息，失败时抛出 TransportError。"""

    @abstractmethod
    async def close(self) -> None:
        """关闭连接。必须幂等：对已关闭的连接调用不抛异常。"""


class Transport(ABC):
    """传输连接工厂。"""

    @abstractmethod
    async def open(self, session_id: str, credentials: dict[str, Any] | None) -> TransportHandle:
        """
        为会话建立一条新连接。

        参数:
            session_id: 会话 ID
            credentials: 上次保存的凭证（首次配对时为 None）

        返回:
            连接句柄

        异常:
            TransportError: 无法建立连接
        """
